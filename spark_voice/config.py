"""Runtime configuration for the Spark Voice relay.

Values come from the process environment (``.env`` is loaded first via
python-dotenv) and fall back to the defaults in ``spark_voice.constants``.
The gateway token is additionally looked up in the clawdbot config file so a
bare checkout runs without any environment at all.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

from spark_voice import constants

load_dotenv()
logger = logging.getLogger(__name__)

_CLAWDBOT_HOME = Path.home() / ".clawdbot"
_TRUTHY = {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("[Config] %s=%r is not a number — using %s.", name, raw, default)
        return default
    if value <= 0:
        logger.warning("[Config] %s must be positive — using %s.", name, default)
        return default
    return value


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("[Config] %s=%r is not a whole number — using %s.", name, raw, default)
        return default
    if value < 1:
        logger.warning("[Config] %s must be at least 1 — using %s.", name, default)
        return default
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    return raw.strip().lower() in _TRUTHY


def _load_gateway_token(config_path: Path | None = None) -> str:
    """Read ``gateway.auth.token`` from the clawdbot config, if present."""
    path = config_path or (_CLAWDBOT_HOME / "clawdbot.json")
    if not path.exists():
        logger.debug("[Config] No clawdbot config at %s.", path)
        return ""
    try:
        data: dict = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("[Config] Failed to parse %s: %s", path, exc)
        return ""
    token = (data.get("gateway") or {}).get("auth", {}).get("token")
    return token if isinstance(token, str) else ""


@dataclass
class Settings:
    """All tunables of the relay. Every field has a safe default."""

    sessions_dir: Path = field(default_factory=lambda: _CLAWDBOT_HOME / "agents" / "main" / "sessions")
    transcript_path: Path | None = None

    poll_interval: float = constants.SYNC_POLL_INTERVAL
    debounce: float = constants.SYNC_DEBOUNCE
    tail_lines: int = constants.SYNC_TAIL_LINES
    watcher_retry_delay: float = constants.WATCHER_RETRY_DELAY
    dedup_capacity: int = constants.MAX_HASH_CACHE

    queue_capacity: int = constants.MAX_QUEUE_SIZE
    queue_check_interval: float = constants.QUEUE_CHECK_INTERVAL

    heartbeat_interval: float = constants.WS_HEARTBEAT_INTERVAL
    session_max_age: float = constants.STALE_SESSION_MAX_AGE
    reaper_interval: float = constants.REAPER_INTERVAL

    chat_timeout: float = constants.CHAT_TIMEOUT
    cli_timeout: float = constants.CLI_TIMEOUT

    host: str = constants.DEFAULT_HOST
    port: int = constants.DEFAULT_PORT

    gateway_url: str = constants.DEFAULT_GATEWAY_URL
    gateway_token: str = ""
    unified_session: bool = True
    agent_cli_path: str = constants.DEFAULT_AGENT_CLI
    source_tag: str = constants.RELAY_SOURCE_TAG

    openai_api_key: str = ""
    elevenlabs_api_key: str = ""
    tts_voice_id: str = ""

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = cls()
        sessions_dir = os.environ.get("SPARK_SESSIONS_DIR", "")
        transcript_path = os.environ.get("SPARK_TRANSCRIPT_PATH", "")
        return cls(
            sessions_dir=Path(sessions_dir).expanduser() if sessions_dir else defaults.sessions_dir,
            transcript_path=Path(transcript_path).expanduser() if transcript_path else None,
            poll_interval=_env_float("SYNC_POLL_INTERVAL", defaults.poll_interval),
            debounce=_env_float("SYNC_DEBOUNCE", defaults.debounce),
            tail_lines=_env_int("SYNC_TAIL_LINES", defaults.tail_lines),
            watcher_retry_delay=_env_float("WATCHER_RETRY_DELAY", defaults.watcher_retry_delay),
            dedup_capacity=_env_int("DEDUP_CACHE_SIZE", defaults.dedup_capacity),
            queue_capacity=_env_int("OUTBOUND_QUEUE_SIZE", defaults.queue_capacity),
            queue_check_interval=_env_float("QUEUE_CHECK_INTERVAL", defaults.queue_check_interval),
            heartbeat_interval=_env_float("HEARTBEAT_INTERVAL", defaults.heartbeat_interval),
            session_max_age=_env_float("SESSION_MAX_AGE", defaults.session_max_age),
            reaper_interval=_env_float("REAPER_INTERVAL", defaults.reaper_interval),
            chat_timeout=_env_float("CHAT_TIMEOUT", defaults.chat_timeout),
            cli_timeout=_env_float("CLI_TIMEOUT", defaults.cli_timeout),
            host=os.environ.get("HOST", defaults.host),
            port=_env_int("PORT", defaults.port),
            gateway_url=os.environ.get("GATEWAY_URL", defaults.gateway_url).rstrip("/"),
            gateway_token=os.environ.get("GATEWAY_TOKEN", "") or _load_gateway_token(),
            unified_session=_env_bool("UNIFIED_SESSION", defaults.unified_session),
            agent_cli_path=os.environ.get("AGENT_CLI_PATH", defaults.agent_cli_path),
            source_tag=os.environ.get("RELAY_SOURCE_TAG", defaults.source_tag),
            openai_api_key=os.environ.get("OPENAI_API_KEY", ""),
            elevenlabs_api_key=os.environ.get("ELEVENLABS_API_KEY", ""),
            tts_voice_id=os.environ.get("TTS_VOICE_ID", ""),
        )


def configure_logging() -> None:
    """Set the root log level from ``LOG_LEVEL`` (``DEBUG=1`` forces DEBUG)."""
    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    if _env_bool("DEBUG", False):
        level_name = "DEBUG"
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
