"""FastAPI app — health/status endpoints + the browser WebSocket relay.

Data flow:
  1. A browser connects to ``/ws?session=<id>`` and gets ``ready`` plus any
     replies that finished while it was away.
  2. ``transcript`` messages run through the request pipeline as detached
     tasks, so closing the tab never cancels a request.
  3. The shared transcript is tailed in the background; turns written by the
     WhatsApp side are pushed to every idle browser as ``sync`` messages.
  4. Requests that hit a reconnecting gateway are parked and retried once it
     reports ready.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from spark_voice import constants
from spark_voice.audio.stt import WhisperSTT
from spark_voice.audio.tts import ElevenLabsTTS
from spark_voice.config import Settings, configure_logging
from spark_voice.pipeline.messages import (
    PingMessage,
    PongMessage,
    TranscriptMessage,
    VoiceNoteMessage,
    parse_client_message,
)
from spark_voice.pipeline.request_path import RequestPipeline
from spark_voice.pipeline.voice_note import VoiceNotePipeline
from spark_voice.services import AgentExecutor, CompletionRouter, GatewayChatClient, GatewayClient
from spark_voice.sync.engine import SessionSyncEngine
from spark_voice.telemetry import init_telemetry
from spark_voice.transcript.reader import load_history

logger = logging.getLogger(__name__)


def build_relay(settings: Settings) -> tuple[SessionSyncEngine, RequestPipeline, VoiceNotePipeline]:
    """Construct the engine and wire the pipelines into it."""
    engine = SessionSyncEngine(settings, gateway=GatewayClient(settings.gateway_url, settings.gateway_token))
    chat = GatewayChatClient(settings.gateway_url, settings.gateway_token, timeout=settings.chat_timeout)
    agent = None
    if settings.unified_session:
        agent = AgentExecutor(
            lambda: engine.transcript_path.stem,
            cli_path=settings.agent_cli_path,
            timeout=settings.cli_timeout,
            source_tag=settings.source_tag,
        )
    tts = ElevenLabsTTS(settings.elevenlabs_api_key, voice_id=settings.tts_voice_id)
    requests = RequestPipeline(engine, CompletionRouter(chat, agent), tts=tts)
    voice_notes = VoiceNotePipeline(engine, WhisperSTT(settings.openai_api_key), chat)
    return engine, requests, voice_notes


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build the relay from the environment and start tailing the transcript."""
    configure_logging()
    init_telemetry()
    settings = Settings.from_env()

    engine, requests, voice_notes = build_relay(settings)
    app.state.engine = engine
    app.state.requests = requests
    app.state.voice_notes = voice_notes
    await engine.start()
    logger.info("Spark relay ready — unified session: %s", settings.unified_session)

    yield

    await engine.stop()


app = FastAPI(title="Spark Voice Relay", version="0.1.0", lifespan=lifespan)


@app.get("/health")
async def health() -> dict:
    return {"status": "ok"}


@app.get("/api/status")
async def status() -> dict:
    engine: SessionSyncEngine = app.state.engine
    return {**engine.status(), "events": engine.debug.get_recent_events(50)}


@app.get("/api/history")
async def history(limit: int = 20) -> dict:
    engine: SessionSyncEngine = app.state.engine
    limit = max(1, min(limit, 200))
    turns = await asyncio.to_thread(load_history, engine.transcript_path, limit)
    return {
        "messages": [
            {"role": t.role, "text": t.text, "timestamp": t.timestamp, "source": (t.origin_tag or "main").lower()}
            for t in turns
        ]
    }


@app.websocket("/ws")
async def relay_socket(websocket: WebSocket) -> None:
    await websocket.accept()
    engine: SessionSyncEngine = websocket.app.state.engine
    requests: RequestPipeline = websocket.app.state.requests
    voice_notes: VoiceNotePipeline = websocket.app.state.voice_notes

    session, connection = await engine.connect(websocket, websocket.query_params.get("session"))
    session_id = session.session_id
    logger.info("[WS] %s connected (%d session(s))", session_id, len(engine.registry))

    try:
        while True:
            message = await websocket.receive()
            if message.get("type") == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                logger.debug("[WS] Binary frame from %s ignored", session_id)
                continue

            engine.acknowledge(connection)
            try:
                msg = parse_client_message(raw)
            except ValidationError as exc:
                logger.warning("[WS] Unusable message from %s: %s", session_id, exc.errors()[:1])
                continue

            if isinstance(msg, PongMessage):
                continue
            if isinstance(msg, PingMessage):
                await connection.send({"type": "pong"})
            elif isinstance(msg, TranscriptMessage):
                text = msg.text.strip()
                if text:
                    engine.spawn(requests.handle_transcript(session_id, text, msg.mode, msg.image, msg.file))
            elif isinstance(msg, VoiceNoteMessage):
                engine.spawn(voice_notes.handle(session_id, msg.audio, msg.duration))
    except WebSocketDisconnect:
        pass
    except RuntimeError:
        # "Cannot call receive once a disconnect message has been received"
        logger.debug("[WS] %s receive after disconnect", session_id)
    finally:
        engine.disconnect(session_id, connection)
        logger.info("[WS] %s disconnected", session_id)


def run() -> None:
    """Console entry point: serve the relay with uvicorn."""
    import uvicorn

    settings = Settings.from_env()
    uvicorn.run(
        "spark_voice.main:app",
        host=settings.host,
        port=settings.port,
        ws_max_size=constants.WS_MAX_PAYLOAD,
    )
