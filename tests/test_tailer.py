"""Tests for the transcript tailer / broadcast router.

Run:
    uv run pytest tests/test_tailer.py -v
"""

import pytest

from spark_voice.sync.connection import ClientConnection
from spark_voice.sync.dedup import DedupCache, fingerprint
from spark_voice.sync.registry import SessionRegistry
from spark_voice.sync.tailer import TranscriptTailer

from conftest import FakeWebSocket, write_entry


def _setup(transcript, n_clients=2):
    registry = SessionRegistry()
    dedup = DedupCache(capacity=100)
    sockets = []
    for _ in range(n_clients):
        session, _ = registry.get_or_create()
        ws = FakeWebSocket()
        registry.attach(session, ClientConnection(ws, session.session_id))
        sockets.append((session, ws))
    tailer = TranscriptTailer(lambda: transcript, dedup, registry)
    return tailer, dedup, registry, sockets


async def _seeded(transcript, **kw):
    tailer, dedup, registry, sockets = _setup(transcript, **kw)
    assert await tailer.sync() == 0
    return tailer, dedup, registry, sockets


# ---------------------------------------------------------------------------
# Seeding and cursor
# ---------------------------------------------------------------------------


class TestSeeding:
    @pytest.mark.asyncio
    async def test_first_sync_broadcasts_nothing(self, transcript):
        write_entry(transcript, "user", "[WhatsApp +49] old message", 100, "a")
        tailer, _, _, sockets = _setup(transcript)

        assert await tailer.sync() == 0
        assert all(ws.sent == [] for _, ws in sockets)
        assert tailer.cursor.last_seen_timestamp == 100

    @pytest.mark.asyncio
    async def test_entries_at_or_before_cursor_not_replayed(self, transcript):
        write_entry(transcript, "user", "old", 100, "a")
        tailer, _, _, sockets = await _seeded(transcript)
        write_entry(transcript, "user", "older", 50, "z")

        assert await tailer.sync() == 0

    @pytest.mark.asyncio
    async def test_same_millisecond_entry_with_new_id_processed_once(self, transcript):
        write_entry(transcript, "user", "first", 100, "a")
        tailer, _, _, sockets = await _seeded(transcript)
        write_entry(transcript, "assistant", "second at same ms", 100, "b")

        assert await tailer.sync() == 1
        assert await tailer.sync() == 0
        _, ws = sockets[0]
        assert [m["text"] for m in ws.of_type("sync")] == ["second at same ms"]


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------


class TestFilters:
    @pytest.mark.asyncio
    async def test_new_turn_broadcast_to_every_connected_session(self, transcript):
        tailer, dedup, _, sockets = await _seeded(transcript)
        write_entry(transcript, "user", "[WhatsApp +49 2026-01-01] Hi there", 200, "b")

        assert await tailer.sync() == 1
        for session, ws in sockets:
            assert ws.sent == [{"type": "sync", "role": "user", "text": "Hi there", "source": "whatsapp", "timestamp": 200}]
            assert session.history[-1].text == "Hi there"
        assert fingerprint("Hi there") in dedup

    @pytest.mark.asyncio
    async def test_heartbeat_ok_never_broadcast(self, transcript):
        tailer, _, _, sockets = await _seeded(transcript)
        write_entry(transcript, "assistant", "HEARTBEAT_OK", 200, "b")
        write_entry(transcript, "user", "Read HEARTBEAT.md if it exists", 201, "c")

        assert await tailer.sync() == 0
        assert sockets[0][1].sent == []

    @pytest.mark.asyncio
    async def test_self_authored_turn_skipped_but_fingerprinted(self, transcript):
        tailer, dedup, _, sockets = await _seeded(transcript)
        write_entry(transcript, "user", "[Spark Web] from the browser", 200, "b")

        assert await tailer.sync() == 0
        assert sockets[0][1].sent == []
        assert fingerprint("from the browser") in dedup

    @pytest.mark.asyncio
    async def test_tool_and_thinking_turns_skipped(self, transcript):
        tailer, _, _, sockets = await _seeded(transcript)
        write_entry(transcript, "assistant", "", 200, "b",
                    content=[{"type": "text", "text": "calling tool"}, {"type": "toolCall", "name": "x"}])
        write_entry(transcript, "assistant", "", 201, "c", content=[{"type": "thinking", "thinking": "hmm"}])
        write_entry(transcript, "toolResult", "result", 202, "d")
        write_entry(transcript, "user", "session meta", 203, "e", entry_type="session")

        assert await tailer.sync() == 0
        assert tailer.cursor.last_seen_timestamp == 203

    @pytest.mark.asyncio
    async def test_duplicate_text_broadcast_once(self, transcript):
        tailer, _, _, sockets = await _seeded(transcript)
        write_entry(transcript, "assistant", "Same answer", 200, "b")
        write_entry(transcript, "assistant", "Same  answer", 201, "c")

        assert await tailer.sync() == 1
        write_entry(transcript, "assistant", "Same answer", 202, "d")
        assert await tailer.sync() == 0
        assert len(sockets[0][1].of_type("sync")) == 1

    @pytest.mark.asyncio
    async def test_content_already_delivered_directly_is_suppressed(self, transcript):
        tailer, dedup, _, sockets = await _seeded(transcript)
        dedup.add_text("the direct reply")
        write_entry(transcript, "assistant", "the direct reply", 200, "b")

        assert await tailer.sync() == 0


# ---------------------------------------------------------------------------
# Fan-out exclusions
# ---------------------------------------------------------------------------


class TestFanOut:
    @pytest.mark.asyncio
    async def test_session_awaiting_reply_is_skipped(self, transcript):
        tailer, _, _, sockets = await _seeded(transcript)
        (busy, busy_ws), (idle, idle_ws) = sockets
        busy.begin_reply()
        write_entry(transcript, "assistant", "[WhatsApp x] news", 200, "b")

        assert await tailer.sync() == 1
        assert busy_ws.sent == []
        assert len(idle_ws.of_type("sync")) == 1

    @pytest.mark.asyncio
    async def test_disconnected_session_not_sent(self, transcript):
        tailer, _, registry, sockets = await _seeded(transcript)
        (gone, _), (_, live_ws) = sockets
        registry.detach(gone.session_id, gone.connection)
        write_entry(transcript, "user", "hello", 200, "b")

        await tailer.sync()
        assert len(live_ws.of_type("sync")) == 1

    @pytest.mark.asyncio
    async def test_failed_send_marks_connection_closed(self, transcript):
        tailer, _, _, sockets = await _seeded(transcript)
        session, ws = sockets[0]
        ws.fail = True
        write_entry(transcript, "user", "hello", 200, "b")

        await tailer.sync()
        assert not session.connected
