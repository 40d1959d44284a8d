"""Shared fixtures: a fake browser socket, transcript writers, a test engine."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

import pytest

from spark_voice.config import Settings
from spark_voice.sync.engine import SessionSyncEngine


class FakeWebSocket:
    """Records everything sent; ``fail=True`` makes every send raise."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail = fail
        self.closed_with: Optional[int] = None

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise RuntimeError("socket is closed")
        self.sent.append(data)

    async def close(self, code: int = 1000) -> None:
        self.closed_with = code

    def types(self) -> list[str]:
        return [m["type"] for m in self.sent]

    def of_type(self, msg_type: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m["type"] == msg_type]


def write_entry(
    path: Path,
    role: str,
    text: str,
    ts: float,
    entry_id: str,
    *,
    content: Any = None,
    entry_type: str = "message",
) -> None:
    """Append one transcript line in the agent's JSONL format."""
    line = {
        "type": entry_type,
        "id": entry_id,
        "timestamp": "2026-01-01T10:00:00Z",
        "message": {
            "role": role,
            "content": content if content is not None else [{"type": "text", "text": text}],
            "timestamp": ts,
        },
    }
    with path.open("a", encoding="utf-8") as fh:
        fh.write(json.dumps(line) + "\n")


@pytest.fixture
def transcript(tmp_path: Path) -> Path:
    path = tmp_path / "main.jsonl"
    path.touch()
    return path


@pytest.fixture
def settings(tmp_path: Path, transcript: Path) -> Settings:
    return Settings(
        sessions_dir=tmp_path,
        transcript_path=transcript,
        queue_check_interval=60.0,
        heartbeat_interval=60.0,
    )


@pytest.fixture
def engine(settings: Settings) -> SessionSyncEngine:
    return SessionSyncEngine(settings, use_watcher=False)
