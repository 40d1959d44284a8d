"""Transcript store reader — parse the shared append-only JSONL log.

The log is written by two parties: this relay and the WhatsApp-side agent.
Each line is one JSON object::

    {"type": "message", "id": "a1b2c3d4", "timestamp": "2026-01-01T10:00:00Z",
     "message": {"role": "user", "content": "Hi", "timestamp": 1767261600000}}

``content`` is either a literal string or a list of typed parts; only the
first ``text`` part is significant. Every function here is side-effect free.
Malformed lines are skipped one at a time.
"""

from __future__ import annotations

import json
import logging
import re
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from spark_voice import constants

logger = logging.getLogger(__name__)

# Heartbeat, cron and other agent housekeeping that is never user-visible.
SYSTEM_MARKERS: tuple[str, ...] = (
    "HEARTBEAT",
    "Read HEARTBEAT.md",
    "HEARTBEAT_OK",
    "[Cron",
    "Cron:",
    "systemEvent",
)

_ORIGIN_RE = re.compile(r"^\[((?:WhatsApp|Spark)[^\]]*)\]\s*")
_MESSAGE_ID_RE = re.compile(r"\n?\[message_id:[^\]]+\]")
_TOOL_PART_TYPES = {"toolCall", "tool_use"}


@dataclass(frozen=True)
class Turn:
    """One user-visible conversation turn."""

    role: str
    text: str
    timestamp: float
    origin_tag: Optional[str] = None

    def to_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.text}


@dataclass(frozen=True)
class TranscriptEntry:
    """A parsed log line, before any broadcast filtering."""

    entry_id: str
    entry_type: str
    timestamp: float
    role: str
    text: str
    origin_tag: Optional[str]
    has_tool_call: bool = False
    thinking_only: bool = False

    @property
    def is_conversational(self) -> bool:
        return self.entry_type == "message" and self.role in ("user", "assistant")

    def to_turn(self) -> Turn:
        return Turn(role=self.role, text=self.text, timestamp=self.timestamp, origin_tag=self.origin_tag)


def extract_text(content: Any) -> str:
    """Return the literal string, or the text of the first ``text`` part."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        for part in content:
            if isinstance(part, dict) and part.get("type") == "text":
                text = part.get("text")
                return text if isinstance(text, str) else ""
    return ""


def split_origin(text: str) -> tuple[Optional[str], str]:
    """Split a ``[WhatsApp ...]`` / ``[Spark Web]`` prefix off *text*.

    Returns ``(origin_tag, remainder)``. WhatsApp prefixes carry the sender and
    a date, so their tag collapses to ``"WhatsApp"``.
    """
    match = _ORIGIN_RE.match(text)
    if not match:
        return None, text
    inner = match.group(1).strip()
    tag = "WhatsApp" if inner.startswith("WhatsApp") else inner
    return tag, text[match.end():]


def clean_text(text: str) -> str:
    """Strip surface markers so the same words hash the same everywhere."""
    _, remainder = split_origin(text)
    return _MESSAGE_ID_RE.sub("", remainder).strip()


def is_system_text(text: str) -> bool:
    return any(marker in text for marker in SYSTEM_MARKERS)


def _parse_timestamp(message: dict, entry: dict) -> float:
    """Epoch milliseconds from ``message.timestamp`` or the entry's ISO stamp."""
    for raw in (message.get("timestamp"), entry.get("timestamp")):
        if isinstance(raw, bool):
            continue
        if isinstance(raw, (int, float)):
            return float(raw)
        if isinstance(raw, str) and raw:
            try:
                return datetime.fromisoformat(raw.replace("Z", "+00:00")).timestamp() * 1000
            except ValueError:
                continue
    return 0.0


def parse_line(line: str) -> Optional[TranscriptEntry]:
    """Parse one JSONL line; ``None`` when the line is not a usable object."""
    line = line.strip()
    if not line:
        return None
    try:
        entry = json.loads(line)
    except json.JSONDecodeError:
        return None
    if not isinstance(entry, dict):
        return None

    message = entry.get("message")
    if not isinstance(message, dict):
        message = {}
    content = message.get("content")
    raw_text = extract_text(content)
    origin_tag, _ = split_origin(raw_text)

    has_tool_call = False
    thinking_only = False
    if isinstance(content, list):
        part_types = {p.get("type") for p in content if isinstance(p, dict)}
        has_tool_call = bool(part_types & _TOOL_PART_TYPES)
        thinking_only = "thinking" in part_types and "text" not in part_types

    return TranscriptEntry(
        entry_id=str(entry.get("id", "")),
        entry_type=str(entry.get("type", "message" if message else "")),
        timestamp=_parse_timestamp(message, entry),
        role=str(message.get("role", "")),
        text=clean_text(raw_text),
        origin_tag=origin_tag,
        has_tool_call=has_tool_call,
        thinking_only=thinking_only,
    )


def _tail_lines(path: Path, max_lines: int) -> Iterable[str]:
    with path.open("r", encoding="utf-8", errors="replace") as fh:
        return deque(fh, maxlen=max_lines)


def read_entries(path: Path, max_lines: int = constants.SYNC_TAIL_LINES) -> list[TranscriptEntry]:
    """Parse the last *max_lines* lines of *path*, oldest first.

    A missing or unreadable file reads as empty.
    """
    try:
        lines = _tail_lines(path, max_lines)
    except FileNotFoundError:
        return []
    except OSError as exc:
        logger.warning("[Transcript] Failed to read %s: %s", path, exc)
        return []

    entries: list[TranscriptEntry] = []
    for line in lines:
        parsed = parse_line(line)
        if parsed is not None:
            entries.append(parsed)
    return entries


def read_recent_turns(path: Path, max_lines: int = constants.SYNC_TAIL_LINES) -> list[Turn]:
    """Conversational, user-visible turns among the last *max_lines* lines."""
    turns: list[Turn] = []
    for entry in read_entries(path, max_lines):
        if not entry.is_conversational or not entry.text:
            continue
        if entry.has_tool_call or entry.thinking_only:
            continue
        if is_system_text(entry.text):
            continue
        turns.append(entry.to_turn())
    return turns


def load_history(path: Path, limit: int = constants.HISTORY_TURNS) -> list[Turn]:
    """Return the last *limit* user-visible turns of the shared log."""
    turns = read_recent_turns(path, max_lines=limit * 3)
    return turns[-limit:]
