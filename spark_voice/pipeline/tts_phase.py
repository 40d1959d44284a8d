"""TTS phase — synthesize a voice-mode reply and send it as one audio message."""

from __future__ import annotations

import base64
import logging
from typing import Any, Awaitable, Callable

from spark_voice.audio.tts import ElevenLabsTTS
from spark_voice.telemetry import SPAN_TTS, get_tracer

logger = logging.getLogger(__name__)
tracer = get_tracer()


async def run_tts(
    text: str,
    tts_client: ElevenLabsTTS,
    send: Callable[[dict[str, Any]], Awaitable[bool]],
) -> bool:
    """Send ``{"type": "audio", "data": <base64>}`` for *text*.

    Returns False if synthesis produced nothing or the send failed. TTS
    problems never fail the request: the text reply has already gone out.
    """
    with tracer.start_as_current_span(SPAN_TTS, attributes={"text.len": len(text)}):
        audio = await tts_client.synthesize(text)
        if not audio:
            logger.warning("[TTS] Zero audio bytes — ElevenLabs may have rejected the request.")
            return False
        logger.info("[TTS] Sending %d bytes of audio.", len(audio))
        return await send({"type": "audio", "data": base64.b64encode(audio).decode("ascii")})
