"""OpenAI Whisper client for voice-note transcription."""

from __future__ import annotations

import asyncio
import logging

import httpx

from spark_voice.errors import DeliveryError, ErrorCode

logger = logging.getLogger(__name__)


class WhisperSTT:
    """Transcribes a complete recorded clip with the Whisper API.

    Parameters
    ----------
    api_key : str
        OpenAI API key (from OPENAI_API_KEY env var).
    model : str
        Transcription model name.
    """

    URL = "https://api.openai.com/v1/audio/transcriptions"

    def __init__(self, api_key: str, *, model: str = "whisper-1", timeout: float = 60.0) -> None:
        self._api_key = api_key
        self._model = model
        self._timeout = timeout

    async def transcribe(
        self,
        audio_bytes: bytes,
        *,
        filename: str = "note.webm",
        max_retries: int = 2,
    ) -> str:
        """Upload *audio_bytes* and return the transcript text.

        Retries up to ``max_retries`` times on network errors and 5xx
        responses with linear backoff. Raises ``DeliveryError`` with
        ``E_STT_FAILED`` once every attempt is spent, or straight away on a
        4xx response.
        """
        if not self._api_key:
            logger.error("[STT] OPENAI_API_KEY not set — cannot transcribe.")
            raise DeliveryError("Transcription unavailable: no API key", ErrorCode.E_STT_FAILED)

        headers = {"Authorization": f"Bearer {self._api_key}"}
        files = {"file": (filename, audio_bytes, "audio/webm")}
        data = {"model": self._model}

        last_error: Exception | None = None
        for attempt in range(max_retries + 1):
            try:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self.URL, headers=headers, files=files, data=data)
                    response.raise_for_status()
                    body = response.json()

                text = body.get("text") if isinstance(body, dict) else None
                if not isinstance(text, str):
                    logger.warning("[STT] Malformed Whisper response: %s", body)
                    raise DeliveryError("Transcription failed: malformed response", ErrorCode.E_STT_FAILED)
                logger.info("[STT] Transcript: %.100s", text)
                return text.strip()

            except httpx.HTTPStatusError as exc:
                last_error = exc
                # Client errors will not get better on retry.
                if exc.response.status_code < 500:
                    logger.error("[STT] Whisper client error %d: %s", exc.response.status_code, exc)
                    raise DeliveryError("Transcription failed", ErrorCode.E_STT_FAILED) from exc
                logger.warning(
                    "[STT] Whisper server error %d (attempt %d/%d)",
                    exc.response.status_code,
                    attempt + 1,
                    max_retries + 1,
                )
            except (httpx.ConnectError, httpx.TimeoutException, httpx.ReadError) as exc:
                last_error = exc
                logger.warning("[STT] Whisper network error (attempt %d/%d): %s", attempt + 1, max_retries + 1, exc)

            if attempt < max_retries:
                await asyncio.sleep(1.0 * (attempt + 1))

        logger.error("[STT] All %d transcription attempts failed: %s", max_retries + 1, last_error)
        raise DeliveryError("Transcription failed", ErrorCode.E_STT_FAILED)
