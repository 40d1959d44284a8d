"""Request delivery path — a user turn from submission to its final message.

A request is recorded in the ledger before anything else happens, and is
resolved whether or not the browser is still connected when the answer
arrives. The session counts as "awaiting a reply" for the duration, which
keeps the tailer from broadcasting the same answer a second time.

Outcomes of one attempt:

* success   — reply delivered now (text, audio in voice mode, done) or left
  in the ledger for the next reconnect;
* transient — downstream is reconnecting: the request is parked in the
  outbound queue and the client told it is queued;
* permanent — error + done (or stored for reconnect).
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Optional

from spark_voice.attachments import AttachmentError, expand_with_attachment
from spark_voice.audio.tts import ElevenLabsTTS
from spark_voice.errors import DeliveryError, ErrorCode
from spark_voice.pipeline.messages import FileAttachment
from spark_voice.pipeline.tts_phase import run_tts
from spark_voice.services.completion import CompletionRequest, CompletionService
from spark_voice.sync.engine import SessionSyncEngine
from spark_voice.sync.ledger import Outcome
from spark_voice.sync.outbound_queue import QueuedMessage
from spark_voice.telemetry import SPAN_REQUEST, current_trace_id, get_tracer
from spark_voice.transcript.reader import Turn, load_history
from spark_voice.transcript.store import append_turn

logger = logging.getLogger(__name__)
tracer = get_tracer()

QUEUED_NOTICE = "Message queued; it will be sent once the connection is back."
QUEUE_FULL_MESSAGE = "Message queue is full, please try again shortly."


class RequestPipeline:
    def __init__(
        self,
        engine: SessionSyncEngine,
        completion: CompletionService,
        *,
        tts: Optional[ElevenLabsTTS] = None,
    ) -> None:
        self._engine = engine
        self._completion = completion
        self._tts = tts
        engine.bind_delivery(self.retry)

    async def handle_transcript(
        self,
        session_id: str,
        text: str,
        mode: str = "chat",
        image: Optional[str] = None,
        attachment: Optional[FileAttachment] = None,
    ) -> None:
        """Run one user request to completion."""
        engine = self._engine
        session = engine.registry.get(session_id)
        if session is None:
            logger.warning("[Pipeline] Unknown session %s — dropping request.", session_id)
            return

        request_id = engine.ledger.submit(session_id, text)
        session.begin_reply()
        try:
            with tracer.start_as_current_span(SPAN_REQUEST, attributes={"request.mode": mode}):
                logger.info("[Pipeline] %s/%s (%s): %.80s", session_id, request_id, mode, text)
                await engine.send_to_client(session_id, {"type": "thinking"})
                if attachment is not None:
                    try:
                        text = await expand_with_attachment(text, attachment.filename, attachment.data_url)
                    except AttachmentError as exc:
                        await self._fail(request_id, session_id, exc.code, str(exc))
                        return

                request = CompletionRequest(
                    text=text,
                    mode=mode,
                    session_id=session_id,
                    history=await self._history(),
                    image=image,
                )
                logs_turns = self._completion.logs_turns(request)
                await self._record_turn(session_id, "user", text, logs_turns)
                await self._attempt(request_id, request, logs_turns, is_retry=False)
        finally:
            session.end_reply()

    async def retry(self, item: QueuedMessage) -> bool:
        """Deliver a request parked by the outbound queue. Never re-queues."""
        engine = self._engine
        session = engine.registry.get(item.session_id)
        if session is None or engine.ledger.get(item.session_id, item.request_id) is None:
            logger.info("[Pipeline] Queued request %s has no session any more.", item.request_id)
            return False

        waited = max(0.0, engine.now() - item.queued_at)
        logger.info("[Pipeline] Retrying queued request %s (waited %.0fs)", item.request_id, waited)
        session.begin_reply()
        try:
            with tracer.start_as_current_span(SPAN_REQUEST, attributes={"request.mode": item.mode, "request.retry": True}):
                await engine.send_to_client(item.session_id, {"type": "thinking"})
                request = CompletionRequest(
                    text=item.text,
                    mode=item.mode,
                    session_id=item.session_id,
                    history=await self._history(),
                )
                logs_turns = self._completion.logs_turns(request)
                return await self._attempt(item.request_id, request, logs_turns, is_retry=True)
        finally:
            session.end_reply()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _history(self) -> list[Turn]:
        return await asyncio.to_thread(load_history, self._engine.transcript_path)

    async def _record_turn(self, session_id: str, role: str, text: str, logs_turns: bool) -> None:
        """Fingerprint a turn this relay produced and, if needed, log it."""
        engine = self._engine
        engine.dedup.add_text(text)
        if not logs_turns:
            await asyncio.to_thread(
                append_turn, engine.transcript_path, role, text, engine.settings.source_tag
            )
        session = engine.registry.get(session_id)
        if session is not None:
            session.remember(Turn(role=role, text=text, timestamp=engine.now() * 1000))

    async def _attempt(
        self,
        request_id: str,
        request: CompletionRequest,
        logs_turns: bool,
        *,
        is_retry: bool,
    ) -> bool:
        session_id = request.session_id
        try:
            reply = await self._completion.complete(request)
        except DeliveryError as exc:
            if exc.transient and not is_retry:
                await self._park(request_id, request)
                return False
            if is_retry:
                await self._fail(request_id, session_id, ErrorCode.E_RETRY_FAILED, f"Queued message failed: {exc}")
            else:
                await self._fail(request_id, session_id, exc.code, str(exc))
            return False
        except Exception as exc:
            logger.error("[Pipeline] Request %s crashed: %s", request_id, exc, exc_info=True)
            code = ErrorCode.E_RETRY_FAILED if is_retry else ErrorCode.E_COMPLETION_FAILED
            await self._fail(request_id, session_id, code, f"Request failed: {exc}")
            return False

        await self._succeed(request_id, request, reply, logs_turns)
        return True

    async def _succeed(self, request_id: str, request: CompletionRequest, reply: str, logs_turns: bool) -> None:
        engine = self._engine
        session_id = request.session_id
        if not engine.ledger.resolve(session_id, request_id, Outcome.success(reply)):
            logger.info("[Pipeline] Request %s finished after its session was reaped.", request_id)
            return
        await self._record_turn(session_id, "assistant", reply, logs_turns)

        if not await engine.deliver_result(session_id, request_id):
            logger.info("[Pipeline] %s/%s stored for reconnection", session_id, request_id)
            return
        # The reply has left the ledger; audio and done follow the session's socket.
        if request.mode == "voice" and self._tts is not None and self._tts.enabled:
            try:
                await run_tts(reply, self._tts, functools.partial(engine.send_to_client, session_id))
            except Exception as exc:
                logger.error("[TTS] Voice reply failed: %s", exc)
        await engine.send_to_client(session_id, {"type": "done"})
        logger.info("[Pipeline] %s/%s delivered (%d chars)", session_id, request_id, len(reply))

    async def _park(self, request_id: str, request: CompletionRequest) -> None:
        engine = self._engine
        session_id = request.session_id
        session = engine.registry.get(session_id)
        item = QueuedMessage(
            session_id=session_id,
            request_id=request_id,
            text=request.text,
            mode=request.mode,
            connection_at_enqueue=session.connection if session is not None else None,
            queued_at=engine.now(),
            on_complete=functools.partial(self._on_queued_complete, session_id, request_id),
        )
        if not engine.queue.enqueue(item):
            await self._fail(request_id, session_id, ErrorCode.E_QUEUE_FULL, QUEUE_FULL_MESSAGE)
            return
        await engine.send_to_client(session_id, {
            "type": "queued",
            "message": QUEUED_NOTICE,
            "position": len(engine.queue),
        })

    async def _fail(self, request_id: str, session_id: str, code: ErrorCode, message: str) -> None:
        engine = self._engine
        if not engine.ledger.resolve(session_id, request_id, Outcome.failure(message, code.value)):
            logger.info("[Pipeline] Request %s failed after its session was reaped.", request_id)
            return
        logger.warning("[Pipeline] %s/%s failed with %s (trace=%s)", session_id, request_id, code.value, current_trace_id() or "-")
        if await engine.deliver_result(session_id, request_id):
            await engine.send_to_client(session_id, {"type": "done"})
        else:
            logger.info("[Pipeline] %s/%s error stored for reconnection", session_id, request_id)

    def _on_queued_complete(self, session_id: str, request_id: str, ok: bool) -> None:
        logger.info("[Pipeline] Queued request %s/%s %s", session_id, request_id, "delivered" if ok else "failed")
