"""Rolling-window alerting on negative sentiment per channel."""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional, List, Dict, Any

from config import config
from database import FeedbackStore
from models import Alert, utcnow
from broadcaster import (
    EventBroadcaster, TOPIC_ALERT_NEW, TOPIC_ALERT_CRITICAL, TOPIC_ALERT_UPDATED
)
from schemas import (
    Sentiment, AlertType, AlertSeverity, AlertStatus, NEGATIVE_SENTIMENTS
)

logger = logging.getLogger(__name__)

ONE_HOUR = timedelta(hours=1)
ONE_DAY = timedelta(hours=24)


class AlertEngine:
    """Raises deduplicated alerts when a channel's negative feedback spikes.

    Evaluated after every sentiment job. Checks, each independent:
    - HIGH_VOLUME_NEGATIVE / HIGH: 1h negative count >= high_volume_count_1h
    - SENTIMENT_SPIKE / CRITICAL: 1h negative ratio >= spike_ratio_1h with at
      least spike_min_sample_1h results in the hour
    - SENTIMENT_SPIKE / HIGH: 1h negative count >= spike_count_1h
    - SENTIMENT_SPIKE / MEDIUM: 24h negative count >= spike_count_24h

    An alert is skipped when an open or in-progress alert with the same
    (type, channel) was created within the dedup window.
    """

    def __init__(
        self,
        store: FeedbackStore,
        broadcaster: EventBroadcaster,
        high_volume_count_1h: int = None,
        spike_ratio_1h: float = None,
        spike_min_sample_1h: int = None,
        spike_count_1h: int = None,
        spike_count_24h: int = None,
        dedup_window: timedelta = None,
        clock=utcnow
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.high_volume_count_1h = (
            high_volume_count_1h if high_volume_count_1h is not None else config.ALERT_HIGH_VOLUME_COUNT_1H
        )
        self.spike_ratio_1h = spike_ratio_1h if spike_ratio_1h is not None else config.ALERT_SPIKE_RATIO_1H
        self.spike_min_sample_1h = (
            spike_min_sample_1h if spike_min_sample_1h is not None else config.ALERT_SPIKE_MIN_SAMPLE_1H
        )
        self.spike_count_1h = spike_count_1h if spike_count_1h is not None else config.ALERT_SPIKE_COUNT_1H
        self.spike_count_24h = spike_count_24h if spike_count_24h is not None else config.ALERT_SPIKE_COUNT_24H
        self.dedup_window = (
            dedup_window if dedup_window is not None else timedelta(seconds=config.ALERT_DEDUP_WINDOW_SECONDS)
        )
        self._clock = clock
        self._lock = asyncio.Lock()

    def thresholds(self) -> Dict[str, Any]:
        return {
            "high_volume_count_1h": self.high_volume_count_1h,
            "spike_ratio_1h": self.spike_ratio_1h,
            "spike_min_sample_1h": self.spike_min_sample_1h,
            "spike_count_1h": self.spike_count_1h,
            "spike_count_24h": self.spike_count_24h
        }

    async def window_stats(self, channel: str, now: datetime = None) -> Dict[str, Any]:
        """Counts for the trailing 1h and 24h windows of a channel."""
        now = now or self._clock()
        negative = [s.value for s in NEGATIVE_SENTIMENTS]

        negative_1h = await self.store.count_results(channel, now - ONE_HOUR, negative)
        total_1h = await self.store.count_results(channel, now - ONE_HOUR)
        negative_24h = await self.store.count_results(channel, now - ONE_DAY, negative)

        return {
            "channel": channel,
            "negative_1h": negative_1h,
            "total_1h": total_1h,
            "negative_ratio_1h": negative_1h / total_1h if total_1h else 0.0,
            "negative_24h": negative_24h
        }

    async def check_thresholds(self, channel: str, sentiment: Sentiment) -> List[Alert]:
        """Evaluate the channel after a result with `sentiment` was stored.

        Returns:
            Alerts created by this evaluation (possibly empty)
        """
        if sentiment not in NEGATIVE_SENTIMENTS:
            return []

        channel = getattr(channel, "value", channel)
        stats = await self.window_stats(channel)

        created: List[Alert] = []

        async def raise_alert(alert_type, title, message, severity):
            alert = await self.create_alert(channel, alert_type, title, message, severity, stats)
            if alert is not None:
                created.append(alert)

        if stats["negative_1h"] >= self.high_volume_count_1h:
            await raise_alert(
                AlertType.HIGH_VOLUME_NEGATIVE,
                f"High Volume Negative Feedback: {channel}",
                f"{stats['negative_1h']} negative feedback items in the last hour",
                AlertSeverity.HIGH
            )

        ratio = stats["negative_ratio_1h"]
        if ratio >= self.spike_ratio_1h and stats["total_1h"] >= self.spike_min_sample_1h:
            await raise_alert(
                AlertType.SENTIMENT_SPIKE,
                f"Sentiment Spike: {channel}",
                f"{round(ratio * 100)}% negative feedback in the last hour",
                AlertSeverity.CRITICAL
            )

        if stats["negative_1h"] >= self.spike_count_1h:
            await raise_alert(
                AlertType.SENTIMENT_SPIKE,
                f"Sentiment Spike: {channel}",
                f"{stats['negative_1h']} negative feedback items in the last hour",
                AlertSeverity.HIGH
            )

        if stats["negative_24h"] >= self.spike_count_24h:
            await raise_alert(
                AlertType.SENTIMENT_SPIKE,
                f"Sentiment Spike: {channel}",
                f"{stats['negative_24h']} negative feedback items in the last 24 hours",
                AlertSeverity.MEDIUM
            )

        return created

    async def create_alert(
        self,
        channel: str,
        alert_type: AlertType,
        title: str,
        message: str,
        severity: AlertSeverity,
        data: Optional[Dict[str, Any]] = None
    ) -> Optional[Alert]:
        """Create an alert unless an active one exists for (type, channel).

        Returns:
            The new alert, or None when deduplicated
        """
        async with self._lock:
            now = self._clock()
            existing = await self.store.find_active_alert(
                alert_type.value, channel, now - self.dedup_window
            )
            if existing is not None:
                logger.info(
                    f"Similar alert already exists, skipping creation "
                    f"(alert {existing.id}, {alert_type.value}, {channel})"
                )
                return None

            alert = await self.store.create_alert(
                type=alert_type.value,
                severity=severity.value,
                channel=channel,
                title=title,
                message=message,
                status=AlertStatus.OPEN.value,
                threshold=self.thresholds(),
                data=data,
                created_at=now,
                updated_at=now
            )

        logger.info(
            f"Created sentiment alert {alert.id}: {alert_type.value} / {severity.value} for {channel}"
        )

        payload = alert.to_dict()
        self.broadcaster.publish(TOPIC_ALERT_NEW, payload)
        if severity in (AlertSeverity.CRITICAL, AlertSeverity.HIGH):
            self.broadcaster.publish(TOPIC_ALERT_CRITICAL, payload)
        return alert

    async def update_status(
        self,
        alert_id: str,
        status: AlertStatus,
        assigned_to: Optional[str] = None
    ) -> Optional[Alert]:
        """Apply a human status change (assign, resolve, dismiss).

        Resolved and dismissed alerts are final; changing one raises
        `AlertClosedError`.
        """
        alert = await self.store.update_alert(alert_id, status, assigned_to)
        if alert is None:
            return None

        logger.info(f"Alert {alert_id} moved to {status.value}")
        self.broadcaster.publish(TOPIC_ALERT_UPDATED, alert.to_dict())
        return alert
