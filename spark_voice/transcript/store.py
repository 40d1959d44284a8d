"""Shared transcript location and appends.

The WhatsApp-side agent keeps one JSONL transcript per session under
``SESSIONS_DIR``; ``sessions.json`` maps ``agent:main:main`` to the id of the
main conversation. The relay appends its own turns to that file, tagged with
its surface name, so both sides see one continuous conversation.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path

from spark_voice import constants
from spark_voice.utils import generate_entry_id

logger = logging.getLogger(__name__)


def resolve_main_session_id(sessions_dir: Path) -> str:
    """Return the main session id from ``sessions.json``.

    The agent CLI can overwrite ``agent:main:main`` with a mode session id
    when a mode routes through ``--session-id``; those ids are rejected in
    favour of the known default.
    """
    index_path = sessions_dir / "sessions.json"
    if not index_path.exists():
        return constants.DEFAULT_MAIN_SESSION_ID
    try:
        sessions = json.loads(index_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("[Transcript] Failed to read %s: %s", index_path, exc)
        return constants.DEFAULT_MAIN_SESSION_ID

    main = sessions.get(constants.UNIFIED_SESSION_KEY) if isinstance(sessions, dict) else None
    session_id = main.get("sessionId") if isinstance(main, dict) else None
    if not isinstance(session_id, str) or not session_id:
        return constants.DEFAULT_MAIN_SESSION_ID
    if session_id in constants.MODE_SESSION_IDS:
        logger.warning(
            "[Transcript] %s points to mode session %s — using default.",
            constants.UNIFIED_SESSION_KEY,
            session_id,
        )
        return constants.DEFAULT_MAIN_SESSION_ID
    return session_id


def resolve_transcript_path(sessions_dir: Path, override: Path | None = None) -> Path:
    if override is not None:
        return override
    return sessions_dir / f"{resolve_main_session_id(sessions_dir)}.jsonl"


def build_entry(role: str, text: str, source: str) -> dict:
    now = time.time()
    return {
        "type": "message",
        "id": generate_entry_id(),
        "timestamp": datetime.fromtimestamp(now, tz=timezone.utc).isoformat(),
        "message": {
            "role": role,
            "content": [{"type": "text", "text": f"[{source}] {text}"}],
            "timestamp": int(now * 1000),
        },
    }


def append_turn(path: Path, role: str, text: str, source: str = constants.RELAY_SOURCE_TAG) -> bool:
    """Append one tagged turn to the shared transcript.

    Returns False when the write failed; a failed append never interrupts the
    request that produced it.
    """
    entry = build_entry(role, text[: constants.SESSION_APPEND_MAX_CHARS], source)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(entry, ensure_ascii=False) + "\n")
    except OSError as exc:
        logger.warning("[Transcript] Failed to append to %s: %s", path, exc)
        return False
    logger.debug("[Transcript] Appended %s turn to %s", role, path)
    return True
