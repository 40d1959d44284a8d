"""Transcript tailer — broadcast new shared-log turns to connected clients.

Each sync reads the last K lines of the shared transcript and walks the
entries newer than the tail cursor. A turn reaches the browsers only if it
is a user/assistant turn with literal text, was not written by this relay
itself, is not agent housekeeping, and its fingerprint is not already in the
dedup cache. Sessions waiting on a direct reply are skipped: their answer
arrives on the direct path.

The first sync after start only seeds the cursor. Anything appended between
process start and that first sync is therefore never broadcast; clients pick
it up through ``/api/history`` instead. When the main session moves to
another file the cursor carries over: it is time-based, so the new file is
read from where the old one left off.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional

from spark_voice import constants
from spark_voice.sync.dedup import DedupCache, fingerprint
from spark_voice.sync.registry import SessionRegistry
from spark_voice.telemetry import SPAN_TAIL_SYNC, get_tracer
from spark_voice.transcript.reader import TranscriptEntry, is_system_text, read_entries

logger = logging.getLogger(__name__)
tracer = get_tracer()


@dataclass
class TailCursor:
    """Newest transcript position already processed. Only ever moves forward."""

    last_seen_timestamp: float = 0.0
    last_seen_entry_id: str = ""
    # Ids already handled at ``last_seen_timestamp`` (same-millisecond writes).
    _ids_at_timestamp: set[str] = field(default_factory=set, repr=False)

    def is_new(self, entry: TranscriptEntry) -> bool:
        if entry.timestamp > self.last_seen_timestamp:
            return True
        if entry.timestamp == self.last_seen_timestamp:
            return bool(entry.entry_id) and entry.entry_id not in self._ids_at_timestamp
        return False

    def advance(self, entry: TranscriptEntry) -> None:
        if entry.timestamp > self.last_seen_timestamp:
            self.last_seen_timestamp = entry.timestamp
            self._ids_at_timestamp = set()
        elif entry.timestamp < self.last_seen_timestamp:
            return
        if entry.entry_id:
            self._ids_at_timestamp.add(entry.entry_id)
            self.last_seen_entry_id = entry.entry_id


class TranscriptTailer:
    def __init__(
        self,
        path_provider: Callable[[], Path],
        dedup: DedupCache,
        registry: SessionRegistry,
        *,
        self_tags: Iterable[str] = (constants.RELAY_SOURCE_TAG,),
        max_lines: int = constants.SYNC_TAIL_LINES,
    ) -> None:
        self._path_provider = path_provider
        self._dedup = dedup
        self._registry = registry
        self._self_tags = frozenset(self_tags)
        self._max_lines = max_lines
        self.cursor = TailCursor()
        self._path: Optional[Path] = None
        self.broadcast_count = 0

    @property
    def seeded(self) -> bool:
        return self._path is not None

    async def sync(self) -> int:
        """Process new transcript entries; returns how many turns went out."""
        with tracer.start_as_current_span(SPAN_TAIL_SYNC):
            path = await asyncio.to_thread(self._path_provider)
            entries = await asyncio.to_thread(read_entries, path, self._max_lines)

            if self._path is None:
                self._seed(path, entries)
                return 0
            if self._path != path:
                logger.info("[Tailer] Main transcript moved: %s -> %s", self._path.name, path.name)
                self._path = path

            sent = 0
            for entry in entries:
                if not self.cursor.is_new(entry):
                    continue
                self.cursor.advance(entry)
                if await self._process(entry):
                    sent += 1
            self.broadcast_count += sent
            return sent

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _seed(self, path: Path, entries: list[TranscriptEntry]) -> None:
        self.cursor = TailCursor()
        for entry in entries:
            self.cursor.advance(entry)
        self._path = path
        logger.info(
            "[Tailer] Seeded cursor from %s at ts=%s (%d entries skipped)",
            path.name,
            self.cursor.last_seen_timestamp,
            len(entries),
        )

    async def _process(self, entry: TranscriptEntry) -> bool:
        if not entry.is_conversational:
            return False
        if entry.role == "assistant" and (entry.has_tool_call or entry.thinking_only):
            return False
        if not entry.text:
            return False

        fp = fingerprint(entry.text)
        if entry.origin_tag in self._self_tags:
            self._dedup.add(fp)
            return False
        if is_system_text(entry.text):
            return False
        if fp in self._dedup:
            logger.debug("[Tailer] Duplicate %s turn suppressed", entry.role)
            return False

        self._dedup.add(fp)
        await self._broadcast(entry)
        return True

    async def _broadcast(self, entry: TranscriptEntry) -> None:
        payload = {
            "type": "sync",
            "role": entry.role,
            "text": entry.text,
            "source": (entry.origin_tag or "main").lower(),
            "timestamp": entry.timestamp,
        }
        turn = entry.to_turn()
        delivered = 0
        for session in self._registry.connected_sessions():
            if session.awaiting_reply:
                continue
            connection = session.connection
            if connection is not None and await connection.send(payload):
                session.remember(turn)
                delivered += 1
        logger.info("[Tailer] Broadcast %s turn to %d session(s): %.60s", entry.role, delivered, entry.text)
