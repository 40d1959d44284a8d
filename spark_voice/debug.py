import json
import logging
from collections import deque
from datetime import datetime, timezone

from spark_voice import constants


class SyncDebugLogger:
    """In-memory log of WebSocket lifecycle events, shown on /api/status."""

    def __init__(self, limit: int = constants.DEBUG_EVENT_LIMIT):
        self.logger = logging.getLogger("spark.debug")
        self.events: deque = deque(maxlen=limit)

    def log_ws_event(self, event_type: str, session_id: str, details: dict | None = None):
        """Log WebSocket events (connect, reconnect, disconnect, terminate)."""
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "type": event_type,
            "session_id": session_id,
            "details": details or {},
        }
        self.events.append(entry)
        self.logger.info("[WS] %s: %s", event_type, json.dumps(entry))

    def get_recent_events(self, limit: int = 100) -> list:
        """Return recent debug events, oldest first."""
        if limit <= 0:
            return []
        return list(self.events)[-limit:]
