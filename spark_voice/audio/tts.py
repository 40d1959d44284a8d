"""ElevenLabs streaming TTS client for voice-mode replies."""

from __future__ import annotations

import base64
import json
import logging
from typing import AsyncGenerator

import websockets

logger = logging.getLogger(__name__)

_DEFAULT_VOICE_ID = "21m00Tcm4TlvDq8ikWAM"  # ElevenLabs "Rachel"


class ElevenLabsTTS:
    """Streams text to ElevenLabs and yields MP3 audio chunks.

    Parameters
    ----------
    api_key : str
        ElevenLabs API key (from ELEVENLABS_API_KEY env var).
    voice_id : str
        ElevenLabs voice ID to use for synthesis.
    model_id : str
        Synthesis model.
    """

    WS_URL = "wss://api.elevenlabs.io/v1/text-to-speech/{voice_id}/stream-input"

    def __init__(
        self,
        api_key: str,
        *,
        voice_id: str = "",
        model_id: str = "eleven_turbo_v2_5",
    ) -> None:
        self._api_key = api_key
        self._voice_id = voice_id or _DEFAULT_VOICE_ID
        self._model_id = model_id

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    async def synthesize(self, text: str) -> bytes:
        """Synthesize *text* and return the complete audio as bytes (b"" on failure)."""
        chunks: list[bytes] = []
        async for chunk in self.synthesize_stream(text):
            chunks.append(chunk)
        return b"".join(chunks)

    async def synthesize_stream(self, text: str) -> AsyncGenerator[bytes, None]:
        """Yield audio chunks as they arrive. Errors are logged, not raised."""
        if not self._api_key:
            logger.error("[TTS] ELEVENLABS_API_KEY is empty — cannot synthesize audio.")
            return

        ws_url = self.WS_URL.format(voice_id=self._voice_id) + f"?model_id={self._model_id}"

        try:
            async with websockets.connect(ws_url) as ws:
                # Opening frame carries auth and voice settings; an empty text frame ends input.
                await ws.send(json.dumps({
                    "text": " ",
                    "voice_settings": {"stability": 0.5, "similarity_boost": 0.8},
                    "xi_api_key": self._api_key,
                }))
                await ws.send(json.dumps({"text": text + " ", "try_trigger_generation": True}))
                await ws.send(json.dumps({"text": ""}))
                logger.info("[TTS] Synthesizing: %.80s...", text)

                async for raw in ws:
                    try:
                        msg = json.loads(raw)
                    except (json.JSONDecodeError, TypeError):
                        continue

                    if msg.get("audio"):
                        yield base64.b64decode(msg["audio"])
                    if msg.get("error"):
                        logger.error("[TTS] ElevenLabs error: %s", msg)
                        break
                    if msg.get("isFinal"):
                        break

        except websockets.exceptions.InvalidStatus as exc:
            logger.error("[TTS] ElevenLabs rejected connection (%s) — check ELEVENLABS_API_KEY.", exc)
        except Exception as exc:
            logger.error("[TTS] WebSocket error: %s", exc)
