"""Publish-only event broadcasting for pipeline events."""
import asyncio
import inspect
import logging
from collections import deque, defaultdict
from datetime import datetime, UTC
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

import httpx

from config import config

logger = logging.getLogger(__name__)

TOPIC_FEEDBACK_NEW = "feedback:new"
TOPIC_SENTIMENT_ANALYZED = "sentiment:analyzed"
TOPIC_ALERT_NEW = "alert:new"
TOPIC_ALERT_UPDATED = "alert:updated"
TOPIC_ALERT_CRITICAL = "alert:critical"
TOPIC_METRICS_UPDATE = "metrics:update"


def build_event(topic: str, data: Any) -> Dict[str, Any]:
    return {
        "type": topic,
        "data": data,
        "timestamp": datetime.now(UTC).isoformat()
    }


class EventBroadcaster:
    """Fire-and-forget publisher. `publish` never raises and never blocks."""

    def publish(self, topic: str, data: Any) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        pass


class InMemoryBroadcaster(EventBroadcaster):
    """Delivers events to in-process subscribers and keeps a short history."""

    def __init__(self, history_size: int = 500):
        self._subscribers: Dict[str, List[Callable]] = defaultdict(list)
        self._history: deque = deque(maxlen=history_size)
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, topic: str, callback: Callable[[Dict[str, Any]], Any]) -> Callable[[], None]:
        """Register `callback` for `topic`; returns an unsubscribe function.

        Coroutine callbacks are scheduled as tasks on the running loop.
        """
        self._subscribers[topic].append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers[topic]:
                self._subscribers[topic].remove(callback)

        return unsubscribe

    def publish(self, topic: str, data: Any) -> None:
        event = build_event(topic, data)
        self._history.append(event)

        for callback in list(self._subscribers.get(topic, [])):
            try:
                outcome = callback(event)
                if inspect.isawaitable(outcome):
                    task = asyncio.ensure_future(outcome)
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
            except Exception as e:
                logger.error(f"Error delivering {topic} event to subscriber: {e}")

        logger.debug(f"Broadcasted {topic} event")

    def events(self, topic: Optional[str] = None) -> List[Dict[str, Any]]:
        return [event for event in self._history if topic is None or event["type"] == topic]

    async def close(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


class WebhookBroadcaster(EventBroadcaster):
    """Posts selected events to a webhook (Slack-compatible for alerts).

    Delivery runs as a background task; failures are logged only.
    """

    def __init__(
        self,
        webhook_url: str = None,
        enabled: bool = None,
        topics: Iterable[str] = (TOPIC_ALERT_NEW,),
        client: httpx.AsyncClient = None
    ):
        self.webhook_url = webhook_url if webhook_url is not None else config.ALERT_WEBHOOK_URL
        self.enabled = enabled if enabled is not None else config.ALERT_ENABLED
        self.topics = set(topics)
        self.client = client or httpx.AsyncClient(timeout=5.0)
        self._tasks: Set[asyncio.Task] = set()

    def publish(self, topic: str, data: Any) -> None:
        if topic not in self.topics:
            return

        if not self.enabled or not self.webhook_url:
            logger.info(f"Webhook delivery skipped for {topic} (alerting disabled in config)")
            return

        payload = self._build_payload(topic, data)
        try:
            task = asyncio.get_running_loop().create_task(self._send_webhook(payload))
        except RuntimeError:
            logger.warning(f"No running event loop, dropping {topic} webhook")
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _build_payload(self, topic: str, data: Any) -> dict:
        if topic in (TOPIC_ALERT_NEW, TOPIC_ALERT_CRITICAL, TOPIC_ALERT_UPDATED) and isinstance(data, dict):
            return self._build_alert_payload(data)
        return {"text": f"{topic}", "event": build_event(topic, data)}

    def _build_alert_payload(self, alert: Dict[str, Any]) -> dict:
        """Build Slack-compatible alert payload."""
        return {
            "text": f"🚨 {alert.get('title', 'Feedback Alert')}",
            "blocks": [
                {
                    "type": "header",
                    "text": {
                        "type": "plain_text",
                        "text": f"🚨 {alert.get('title', 'Feedback Alert')}"
                    }
                },
                {
                    "type": "section",
                    "fields": [
                        {
                            "type": "mrkdwn",
                            "text": f"*Type:*\n{alert.get('type')}"
                        },
                        {
                            "type": "mrkdwn",
                            "text": f"*Severity:*\n{alert.get('severity')}"
                        },
                        {
                            "type": "mrkdwn",
                            "text": f"*Channel:*\n{alert.get('channel')}"
                        },
                        {
                            "type": "mrkdwn",
                            "text": f"*Status:*\n{alert.get('status')}"
                        }
                    ]
                },
                {
                    "type": "section",
                    "text": {
                        "type": "mrkdwn",
                        "text": f"*Details:*\n{str(alert.get('message', ''))[:500]}"
                    }
                }
            ]
        }

    async def _send_webhook(self, payload: dict) -> None:
        try:
            response = await self.client.post(self.webhook_url, json=payload)
            response.raise_for_status()
            logger.info(f"Alert sent successfully to {self.webhook_url}")
        except httpx.HTTPError as e:
            logger.error(f"Failed to deliver webhook: {e}")

    async def close(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.client.aclose()


class FanOutBroadcaster(EventBroadcaster):
    """Publishes every event to several broadcasters."""

    def __init__(self, *broadcasters: EventBroadcaster):
        self.broadcasters = list(broadcasters)

    def publish(self, topic: str, data: Any) -> None:
        for broadcaster in self.broadcasters:
            try:
                broadcaster.publish(topic, data)
            except Exception as e:
                logger.error(f"Error broadcasting {topic} via {type(broadcaster).__name__}: {e}")

    async def close(self) -> None:
        for broadcaster in self.broadcasters:
            await broadcaster.close()
