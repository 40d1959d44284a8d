"""Tests for the request delivery path: direct replies, reconnect replay,
queueing on a reconnecting downstream, and permanent failures.

Run:
    uv run pytest tests/test_request_path.py -v
"""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from spark_voice.errors import CompletionTimeout, DeliveryError, ErrorCode
from spark_voice.pipeline.request_path import RequestPipeline
from spark_voice.sync.dedup import fingerprint
from spark_voice.sync.ledger import RequestStatus

from conftest import FakeWebSocket

CONNECTING = "CLI exited with code 1: No active WhatsApp listener"


class FakeCompletion:
    """Pops scripted replies; an Exception entry is raised instead."""

    def __init__(self, *replies, gate: asyncio.Event | None = None, logs_turns: bool = False):
        self.replies = list(replies)
        self.requests = []
        self.gate = gate
        self._logs_turns = logs_turns

    def logs_turns(self, request):
        return self._logs_turns

    async def complete(self, request):
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class HoldingSocket(FakeWebSocket):
    """Stalls on the first frame of ``hold_type`` until ``release`` is set.

    With ``fail_held`` the stalled send raises instead of going through.
    """

    def __init__(self, hold_type: str, *, fail_held: bool = False) -> None:
        super().__init__()
        self.hold_type = hold_type
        self.fail_held = fail_held
        self.holding = asyncio.Event()
        self.release = asyncio.Event()

    async def send_json(self, data):
        if data["type"] == self.hold_type and not self.holding.is_set():
            self.holding.set()
            await self.release.wait()
            if self.fail_held:
                raise RuntimeError("socket is closed")
        await super().send_json(data)


async def _connect(engine, session_id=None):
    ws = FakeWebSocket()
    session, conn = await engine.connect(ws, session_id)
    return session, conn, ws


# ---------------------------------------------------------------------------
# 1. Direct delivery
# ---------------------------------------------------------------------------


class TestDirectDelivery:
    @pytest.mark.asyncio
    async def test_success_while_connected(self, engine, transcript):
        pipeline = RequestPipeline(engine, FakeCompletion("Hello back"))
        session, _, ws = await _connect(engine)

        await pipeline.handle_transcript(session.session_id, "Hello", "chat")

        assert ws.types() == ["ready", "thinking", "text", "done"]
        assert ws.of_type("text")[0]["content"] == "Hello back"
        assert engine.ledger.entries(session.session_id) == []
        assert not session.awaiting_reply
        assert fingerprint("Hello") in engine.dedup
        assert fingerprint("Hello back") in engine.dedup

        lines = [json.loads(l) for l in transcript.read_text().splitlines()]
        assert [l["message"]["role"] for l in lines] == ["user", "assistant"]
        assert lines[0]["message"]["content"][0]["text"] == "[Spark Web] Hello"

    @pytest.mark.asyncio
    async def test_backend_that_logs_turns_is_not_double_logged(self, engine, transcript):
        pipeline = RequestPipeline(engine, FakeCompletion("ok", logs_turns=True))
        session, _, _ = await _connect(engine)

        await pipeline.handle_transcript(session.session_id, "Hello")

        assert transcript.read_text() == ""
        assert fingerprint("ok") in engine.dedup

    @pytest.mark.asyncio
    async def test_history_passed_to_completion(self, engine, transcript):
        completion = FakeCompletion("first", "second")
        pipeline = RequestPipeline(engine, completion)
        session, _, _ = await _connect(engine)

        await pipeline.handle_transcript(session.session_id, "one")
        await pipeline.handle_transcript(session.session_id, "two")

        assert [t.text for t in completion.requests[1].history] == ["one", "first"]
        assert completion.requests[1].text == "two"

    @pytest.mark.asyncio
    async def test_awaiting_reply_set_during_call(self, engine):
        gate = asyncio.Event()
        pipeline = RequestPipeline(engine, FakeCompletion("ok", gate=gate))
        session, _, _ = await _connect(engine)

        task = asyncio.create_task(pipeline.handle_transcript(session.session_id, "Hi"))
        await asyncio.sleep(0.05)
        assert session.awaiting_reply
        gate.set()
        await task
        assert not session.awaiting_reply


# ---------------------------------------------------------------------------
# 2. Disconnect / reconnect
# ---------------------------------------------------------------------------


class TestReconnectReplay:
    @pytest.mark.asyncio
    async def test_reply_survives_disconnect_and_arrives_exactly_once(self, engine):
        gate = asyncio.Event()
        pipeline = RequestPipeline(engine, FakeCompletion("Stored answer", gate=gate))
        session, conn, _ = await _connect(engine)
        sid = session.session_id

        task = asyncio.create_task(pipeline.handle_transcript(sid, "Question"))
        await asyncio.sleep(0.05)
        engine.disconnect(sid, conn)
        gate.set()
        await task

        [entry] = engine.ledger.entries(sid)
        assert entry.status is RequestStatus.COMPLETE

        _, _, ws2 = await _connect(engine, sid)
        assert ws2.types() == ["ready", "text", "done"]
        assert ws2.sent[0]["reconnected"] is True
        assert ws2.sent[1]["content"] == "Stored answer"
        assert engine.ledger.entries(sid) == []

        _, _, ws3 = await _connect(engine, sid)
        assert ws3.types() == ["ready"]

    @pytest.mark.asyncio
    async def test_reconnect_during_reply_send_delivers_once(self, engine):
        pipeline = RequestPipeline(engine, FakeCompletion("Only once"))
        ws1 = HoldingSocket("text")
        session, conn1 = await engine.connect(ws1, None)
        sid = session.session_id

        task = asyncio.create_task(pipeline.handle_transcript(sid, "Question"))
        await ws1.holding.wait()
        engine.disconnect(sid, conn1)
        _, _, ws2 = await _connect(engine, sid)
        ws1.release.set()
        await task

        texts = ws1.of_type("text") + ws2.of_type("text")
        assert [m["content"] for m in texts] == ["Only once"]
        assert ws2.types() == ["ready", "done"]
        assert engine.ledger.entries(sid) == []

    @pytest.mark.asyncio
    async def test_reconnect_during_error_send_delivers_once(self, engine):
        pipeline = RequestPipeline(engine, FakeCompletion(CompletionTimeout("Request timed out after 120s")))
        ws1 = HoldingSocket("error")
        session, conn1 = await engine.connect(ws1, None)
        sid = session.session_id

        task = asyncio.create_task(pipeline.handle_transcript(sid, "Question"))
        await ws1.holding.wait()
        engine.disconnect(sid, conn1)
        _, _, ws2 = await _connect(engine, sid)
        ws1.release.set()
        await task

        assert len(ws1.of_type("error") + ws2.of_type("error")) == 1
        assert ws2.types() == ["ready", "done"]
        assert engine.ledger.entries(sid) == []

    @pytest.mark.asyncio
    async def test_failed_send_moves_to_new_socket(self, engine):
        pipeline = RequestPipeline(engine, FakeCompletion("Follow me"))
        ws1 = HoldingSocket("text", fail_held=True)
        session, conn1 = await engine.connect(ws1, None)
        sid = session.session_id

        task = asyncio.create_task(pipeline.handle_transcript(sid, "Question"))
        await ws1.holding.wait()
        engine.disconnect(sid, conn1)
        _, _, ws2 = await _connect(engine, sid)
        ws1.release.set()
        await task

        assert ws2.types() == ["ready", "text", "done"]
        assert ws2.of_type("text")[0]["content"] == "Follow me"
        assert engine.ledger.entries(sid) == []

    @pytest.mark.asyncio
    async def test_reconnect_during_voice_reply_audio(self, engine):
        synthesizing = asyncio.Event()
        release = asyncio.Event()

        async def synthesize(text):
            synthesizing.set()
            await release.wait()
            return b"mp3"

        tts = MagicMock(enabled=True)
        tts.synthesize = AsyncMock(side_effect=synthesize)
        pipeline = RequestPipeline(engine, FakeCompletion("Spoken answer"), tts=tts)
        session, conn1, ws1 = await _connect(engine)
        sid = session.session_id

        task = asyncio.create_task(pipeline.handle_transcript(sid, "Question", "voice"))
        await synthesizing.wait()
        engine.disconnect(sid, conn1)
        _, _, ws2 = await _connect(engine, sid)
        release.set()
        await task

        assert ws1.types() == ["ready", "thinking", "text"]
        assert ws2.types() == ["ready", "audio", "done"]
        assert engine.ledger.entries(sid) == []

    @pytest.mark.asyncio
    async def test_replay_keeps_submission_order(self, engine):
        gates = [asyncio.Event(), asyncio.Event()]

        class Ordered(FakeCompletion):
            async def complete(self, request):
                await gates[0 if request.text == "first" else 1].wait()
                return f"answer to {request.text}"

        pipeline = RequestPipeline(engine, Ordered())
        session, conn, _ = await _connect(engine)
        sid = session.session_id

        t1 = asyncio.create_task(pipeline.handle_transcript(sid, "first"))
        t2 = asyncio.create_task(pipeline.handle_transcript(sid, "second"))
        await asyncio.sleep(0.05)
        engine.disconnect(sid, conn)
        gates[1].set()  # second finishes first
        await t2
        gates[0].set()
        await t1

        _, _, ws2 = await _connect(engine, sid)
        assert [m["content"] for m in ws2.of_type("text")] == ["answer to first", "answer to second"]

    @pytest.mark.asyncio
    async def test_reconnect_while_processing_gets_pending_and_thinking(self, engine):
        gate = asyncio.Event()
        pipeline = RequestPipeline(engine, FakeCompletion("late", gate=gate))
        session, conn, _ = await _connect(engine)
        sid = session.session_id

        task = asyncio.create_task(pipeline.handle_transcript(sid, "slow one"))
        await asyncio.sleep(0.05)
        engine.disconnect(sid, conn)

        _, _, ws2 = await _connect(engine, sid)
        assert ws2.types() == ["ready", "thinking"]
        assert ws2.sent[0]["pending"] is True

        gate.set()
        await task
        assert ws2.types() == ["ready", "thinking", "text", "done"]
        assert engine.ledger.entries(sid) == []

    @pytest.mark.asyncio
    async def test_error_stored_for_reconnect(self, engine):
        gate = asyncio.Event()
        pipeline = RequestPipeline(engine, FakeCompletion(DeliveryError("API error: 500"), gate=gate))
        session, conn, _ = await _connect(engine)
        sid = session.session_id

        task = asyncio.create_task(pipeline.handle_transcript(sid, "q"))
        await asyncio.sleep(0.05)
        engine.disconnect(sid, conn)
        gate.set()
        await task

        _, _, ws2 = await _connect(engine, sid)
        assert ws2.types() == ["ready", "error", "done"]
        assert "API error" in ws2.sent[1]["message"]
        assert ws2.sent[1]["code"] == ErrorCode.E_COMPLETION_FAILED.value
        assert ws2.sent[1]["recoverable"] is True
        assert ws2.sent[1]["session_id"] == sid


# ---------------------------------------------------------------------------
# 3. Transient downstream → outbound queue
# ---------------------------------------------------------------------------


class TestQueueing:
    @pytest.mark.asyncio
    async def test_transient_failure_is_queued_then_delivered(self, engine):
        completion = FakeCompletion(DeliveryError(CONNECTING), "Delivered later")
        pipeline = RequestPipeline(engine, completion)
        session, _, ws = await _connect(engine)
        sid = session.session_id

        await pipeline.handle_transcript(sid, "Ping WhatsApp")

        assert ws.types() == ["ready", "thinking", "queued"]
        assert len(engine.queue) == 1
        [entry] = engine.ledger.entries(sid)
        assert entry.status is RequestStatus.PROCESSING
        assert not session.awaiting_reply

        assert await engine.queue.drain() == 1
        assert ws.types()[-3:] == ["thinking", "text", "done"]
        assert ws.of_type("text")[0]["content"] == "Delivered later"
        assert engine.ledger.entries(sid) == []
        engine.queue.cancel_all()

    @pytest.mark.asyncio
    async def test_retry_failure_reported_not_requeued(self, engine):
        completion = FakeCompletion(DeliveryError(CONNECTING), DeliveryError(CONNECTING))
        pipeline = RequestPipeline(engine, completion)
        session, _, ws = await _connect(engine)
        sid = session.session_id

        await pipeline.handle_transcript(sid, "Ping")
        await engine.queue.drain()

        [error] = ws.of_type("error")
        assert error["code"] == ErrorCode.E_RETRY_FAILED.value
        assert error["message"].startswith("Queued message failed:")
        assert ws.types()[-1] == "done"
        assert len(engine.queue) == 0
        assert engine.ledger.entries(sid) == []
        engine.queue.cancel_all()

    @pytest.mark.asyncio
    async def test_queue_full_is_permanent_failure(self, settings):
        from spark_voice.sync.engine import SessionSyncEngine

        settings.queue_capacity = 1
        engine = SessionSyncEngine(settings, use_watcher=False)
        completion = FakeCompletion(DeliveryError(CONNECTING), DeliveryError(CONNECTING))
        pipeline = RequestPipeline(engine, completion)
        session, _, ws = await _connect(engine)

        await pipeline.handle_transcript(session.session_id, "one")
        await pipeline.handle_transcript(session.session_id, "two")

        [error] = ws.of_type("error")
        assert error["code"] == ErrorCode.E_QUEUE_FULL.value
        assert ws.types()[-1] == "done"
        assert len(engine.queue) == 1
        engine.queue.cancel_all()

    @pytest.mark.asyncio
    async def test_queued_request_for_reaped_session_is_dropped(self, engine):
        pipeline = RequestPipeline(engine, FakeCompletion(DeliveryError(CONNECTING)))
        session, _, _ = await _connect(engine)

        await pipeline.handle_transcript(session.session_id, "Ping")
        engine.registry.remove(session.session_id)
        engine.ledger.discard(session.session_id)

        assert await engine.queue.drain() == 0
        engine.queue.cancel_all()


# ---------------------------------------------------------------------------
# 4. Permanent failures
# ---------------------------------------------------------------------------


class TestPermanentFailure:
    @pytest.mark.asyncio
    async def test_timeout_sends_error_then_done(self, engine):
        pipeline = RequestPipeline(engine, FakeCompletion(CompletionTimeout("Request timed out after 120s")))
        session, _, ws = await _connect(engine)

        await pipeline.handle_transcript(session.session_id, "Hi")

        assert ws.types() == ["ready", "thinking", "error", "done"]
        assert ws.sent[2]["code"] == ErrorCode.E_TIMEOUT.value
        assert engine.ledger.entries(session.session_id) == []
        assert len(engine.queue) == 0

    @pytest.mark.asyncio
    async def test_unexpected_exception_still_paired_with_done(self, engine):
        pipeline = RequestPipeline(engine, FakeCompletion(KeyError("choices")))
        session, _, ws = await _connect(engine)

        await pipeline.handle_transcript(session.session_id, "Hi")

        assert ws.types()[-2:] == ["error", "done"]
        assert not session.awaiting_reply

    @pytest.mark.asyncio
    async def test_session_reaped_mid_request(self, engine):
        gate = asyncio.Event()
        pipeline = RequestPipeline(engine, FakeCompletion("late", gate=gate))
        session, _, ws = await _connect(engine)
        sid = session.session_id

        task = asyncio.create_task(pipeline.handle_transcript(sid, "Hi"))
        await asyncio.sleep(0.05)
        engine.registry.remove(sid)
        engine.ledger.discard(sid)
        gate.set()
        await task

        assert "text" not in ws.types()
        assert sid not in engine.ledger
