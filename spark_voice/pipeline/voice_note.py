"""Voice note phase — transcribe a recorded clip, then summarize it."""

from __future__ import annotations

import base64
import binascii
import logging

from spark_voice.audio.stt import WhisperSTT
from spark_voice.errors import DeliveryError, ErrorCode, RelayError
from spark_voice.services.completion import CompletionRequest, CompletionService
from spark_voice.sync.engine import SessionSyncEngine
from spark_voice.telemetry import SPAN_VOICE_NOTE, get_tracer

logger = logging.getLogger(__name__)
tracer = get_tracer()

SUMMARY_PROMPT = (
    "Here's a voice note transcription. Please provide a clear, concise summary "
    "with key points:\n\n{transcription}"
)


class VoiceNotePipeline:
    def __init__(self, engine: SessionSyncEngine, stt: WhisperSTT, summarizer: CompletionService) -> None:
        self._engine = engine
        self._stt = stt
        self._summarizer = summarizer

    async def handle(self, session_id: str, audio_b64: str, duration: float = 0.0) -> bool:
        """Send ``transcription`` then the summary as ``text`` + ``done``.

        Every failure is reported as an error followed by ``done``.
        """
        engine = self._engine
        logger.info("[VoiceNote] %s: %.1fs clip", session_id, duration)
        with tracer.start_as_current_span(SPAN_VOICE_NOTE, attributes={"audio.duration": duration}):
            await engine.send_to_client(session_id, {"type": "thinking"})

            try:
                audio = base64.b64decode(audio_b64, validate=True)
            except (binascii.Error, ValueError):
                audio = b""
            if not audio:
                await engine.send_error(
                    session_id,
                    RelayError(code=ErrorCode.E_BAD_PAYLOAD.value, message="Voice note audio is empty or not base64", session_id=session_id),
                )
                return False

            try:
                transcription = await self._stt.transcribe(audio)
            except DeliveryError as exc:
                logger.error("[VoiceNote] Transcription error: %s", exc)
                await engine.send_error(
                    session_id,
                    RelayError(code=ErrorCode.E_STT_FAILED.value, message="Transcription failed", session_id=session_id),
                )
                return False
            except Exception as exc:
                logger.error("[VoiceNote] Transcription crashed: %s", exc, exc_info=True)
                await engine.send_error(
                    session_id,
                    RelayError(code=ErrorCode.E_STT_FAILED.value, message=f"Transcription failed: {exc}", session_id=session_id),
                )
                return False
            await engine.send_to_client(session_id, {"type": "transcription", "text": transcription})

            try:
                summary = await self._summarizer.complete(CompletionRequest(
                    text=SUMMARY_PROMPT.format(transcription=transcription),
                    mode="notes",
                    session_id=session_id,
                ))
            except DeliveryError as exc:
                logger.error("[VoiceNote] Summary error: %s", exc)
                await engine.send_error(session_id, RelayError.from_exception(exc, session_id))
                return False
            except Exception as exc:
                logger.error("[VoiceNote] Summary crashed: %s", exc, exc_info=True)
                await engine.send_error(
                    session_id,
                    RelayError(code=ErrorCode.E_COMPLETION_FAILED.value, message=f"Summary failed: {exc}", session_id=session_id),
                )
                return False

            await engine.send_to_client(session_id, {"type": "text", "content": summary})
            await engine.send_to_client(session_id, {"type": "done"})
            return True
