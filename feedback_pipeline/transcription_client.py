"""Speech-to-text client for voice feedback (AssemblyAI REST API)."""
import asyncio
import logging
from typing import Optional

import httpx

from config import config
from schemas import TranscriptionResult

logger = logging.getLogger(__name__)


class TranscriptionError(Exception):
    """Base class for speech-to-text failures."""


class TranscriptionSubmitError(TranscriptionError):
    """Audio could not be submitted (transient, safe to retry)."""


class TranscriptionFailedError(TranscriptionError):
    """Provider reported a terminal error for the transcript."""


class TranscriptionTimeoutError(TranscriptionError):
    """Transcript did not reach a terminal state within the polling budget."""


class TranscriptionClient:
    """Submits audio URLs and polls transcripts until they finish."""

    def __init__(
        self,
        api_key: str = None,
        base_url: str = None,
        language_code: str = None,
        client: httpx.AsyncClient = None,
        sleep=asyncio.sleep
    ):
        self.api_key = api_key if api_key is not None else config.ASSEMBLYAI_API_KEY
        self.base_url = (base_url or config.ASSEMBLYAI_BASE_URL).rstrip("/")
        self.language_code = language_code or config.TRANSCRIPTION_LANGUAGE_CODE
        self.client = client or httpx.AsyncClient(timeout=30.0)
        self._sleep = sleep

    @property
    def _headers(self) -> dict:
        return {"authorization": self.api_key}

    async def submit_transcription(self, audio_url: str) -> str:
        """Submit audio for transcription.

        Args:
            audio_url: Public URL of the audio file

        Returns:
            Transcript ID for polling

        Raises:
            TranscriptionSubmitError: If the provider rejects or cannot be reached
        """
        logger.info(f"Submitting audio for transcription: {audio_url}")
        try:
            response = await self.client.post(
                f"{self.base_url}/v2/transcript",
                json={
                    "audio_url": audio_url,
                    "language_code": self.language_code,
                    "punctuate": True,
                    "format_text": True,
                    "speaker_labels": False
                },
                headers=self._headers
            )
            response.raise_for_status()
            transcript_id = response.json()["id"]
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error(f"Failed to submit audio for transcription: {e}")
            raise TranscriptionSubmitError(f"Failed to submit transcription: {e}") from e

        logger.info(f"Transcription submitted successfully: {transcript_id}")
        return transcript_id

    async def get_transcript(self, transcript_id: str) -> TranscriptionResult:
        """Fetch the current state of a transcript."""
        try:
            response = await self.client.get(
                f"{self.base_url}/v2/transcript/{transcript_id}",
                headers=self._headers
            )
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Failed to get transcript {transcript_id}: {e}")
            raise TranscriptionError(f"Failed to get transcript: {e}") from e

        status = body.get("status", "processing")
        fields = {"id": body.get("id") or transcript_id, "status": status}

        if status == "completed":
            fields["text"] = body.get("text") or ""
            fields["confidence"] = body.get("confidence")
            if body.get("words"):
                fields["words"] = [
                    {
                        "text": word["text"],
                        "start": word["start"],
                        "end": word["end"],
                        "confidence": word["confidence"]
                    }
                    for word in body["words"]
                ]
        elif status == "error":
            fields["error"] = body.get("error") or "Unknown transcription error"

        return TranscriptionResult(**fields)

    async def poll_transcription(
        self,
        transcript_id: str,
        max_attempts: int = None,
        interval: float = None
    ) -> TranscriptionResult:
        """Poll until the transcript completes.

        Args:
            transcript_id: Provider transcript ID
            max_attempts: Maximum polls (default from config, 60)
            interval: Seconds between polls (default from config, 5)

        Returns:
            Completed TranscriptionResult

        Raises:
            TranscriptionFailedError: Provider reported status `error`
            TranscriptionTimeoutError: Still not finished after `max_attempts`
        """
        max_attempts = max_attempts or config.TRANSCRIPTION_POLL_ATTEMPTS
        interval = interval if interval is not None else config.TRANSCRIPTION_POLL_INTERVAL_SECONDS

        for attempt in range(1, max_attempts + 1):
            result = await self.get_transcript(transcript_id)
            logger.debug(
                f"Transcription polling attempt {attempt}/{max_attempts} "
                f"for {transcript_id}: {result.status}"
            )

            if result.status == "completed":
                logger.info(
                    f"Transcription {transcript_id} completed "
                    f"({len(result.text or '')} chars, confidence {result.confidence})"
                )
                return result

            if result.status == "error":
                logger.error(f"Transcription {transcript_id} failed: {result.error}")
                raise TranscriptionFailedError(f"Transcription failed: {result.error}")

            if attempt < max_attempts:
                await self._sleep(interval)

        logger.error(f"Transcription polling timed out for {transcript_id} after {max_attempts} attempts")
        raise TranscriptionTimeoutError(
            f"Transcription polling timed out after {max_attempts} attempts"
        )

    async def delete_transcript(self, transcript_id: str) -> bool:
        """Delete a transcript at the provider. Failures are logged, not raised."""
        try:
            response = await self.client.delete(
                f"{self.base_url}/v2/transcript/{transcript_id}",
                headers=self._headers
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.warning(f"Failed to delete transcript {transcript_id}: {e}")
            return False

        logger.info(f"Transcript deleted successfully: {transcript_id}")
        return True

    async def close(self) -> None:
        await self.client.aclose()


def transcript_is_empty(result: Optional[TranscriptionResult]) -> bool:
    return result is None or not (result.text or "").strip()
