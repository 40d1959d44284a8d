"""Centralized constants for the Spark Voice relay.

Defaults for every tunable live here; ``spark_voice.config`` overrides them
from the environment.
"""

# Transcript sync (seconds unless noted)
SYNC_POLL_INTERVAL: float = 1.0  # Backup poll for the file watcher
SYNC_DEBOUNCE: float = 0.1  # Coalesce bursts of watcher events
SYNC_TAIL_LINES: int = 50  # Lines read from the end of the log per sync
WATCHER_RETRY_DELAY: float = 5.0  # Delay before re-attaching a failed watcher
MAX_HASH_CACHE: int = 100  # Dedup fingerprints kept

# Outbound delivery queue
MAX_QUEUE_SIZE: int = 50
QUEUE_CHECK_INTERVAL: float = 3.0

# WebSocket liveness
WS_HEARTBEAT_INTERVAL: float = 15.0
WS_MAX_PAYLOAD: int = 50 * 1024 * 1024

# Session lifecycle
STALE_SESSION_MAX_AGE: float = 24 * 60 * 60
REAPER_INTERVAL: float = 60 * 60

# Downstream timeouts
CHAT_TIMEOUT: float = 120.0  # Gateway chat completion
CLI_TIMEOUT: float = 5 * 60.0  # Agent CLI invocation
GATEWAY_STATUS_TIMEOUT: float = 5.0

# Content limits
TEXT_PREVIEW_CHARS: int = 100
SESSION_APPEND_MAX_CHARS: int = 2000
HISTORY_TURNS: int = 20
DEBUG_EVENT_LIMIT: int = 500

# Gateway
DEFAULT_GATEWAY_URL: str = "http://localhost:18789"
DEFAULT_HOST: str = "0.0.0.0"
DEFAULT_PORT: int = 3456
UNIFIED_SESSION_KEY: str = "agent:main:main"
DEFAULT_MAIN_SESSION_ID: str = "1e4cdd11-d94a-4ed8-b686-029d5fb50ac1"
DEFAULT_AGENT_CLI: str = "openclaw"

# The relay's own surface tag, written as "[Spark Web] ..." into the shared log.
RELAY_SOURCE_TAG: str = "Spark Web"

# Models per client mode
MODELS: dict[str, str] = {
    "voice": "gemini-3-flash",
    "chat": "claude-opus-4-5-20250514",
    "notes": "claude-opus-4-5-20250514",
}
IMAGE_MODEL: str = "claude-sonnet-4-20250514"

# Mode transcripts that must never be mistaken for the main session.
MODE_SESSION_IDS: frozenset[str] = frozenset({
    "spark-dev-00000-0000-0000-000000000001",
    "spark-res-00000-0000-0000-000000000002",
    "spark-pln-00000-0000-0000-000000000003",
    "spark-vid-00000-0000-0000-000000000004",
})
