"""Client connection wrapper shared by the registry, router and heartbeat."""

from __future__ import annotations

import logging
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class JsonSocket(Protocol):
    """What the relay needs from a WebSocket (Starlette's satisfies it)."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class ClientConnection:
    """One live browser socket bound to a relay session.

    ``send`` never raises: a failed send marks the connection closed and
    returns False, which callers treat as "not connected".
    """

    def __init__(self, websocket: JsonSocket, session_id: str) -> None:
        self.websocket = websocket
        self.session_id = session_id
        self.closed = False
        self.awaiting_ack = False

    @property
    def is_open(self) -> bool:
        return not self.closed

    async def send(self, data: dict[str, Any]) -> bool:
        if self.closed:
            return False
        try:
            await self.websocket.send_json(data)
            return True
        except Exception as exc:
            logger.info("[Connection] Send to %s failed: %s", self.session_id, exc)
            self.closed = True
            return False

    def acknowledge(self) -> None:
        self.awaiting_ack = False

    async def terminate(self, code: int = 1001) -> None:
        self.closed = True
        try:
            await self.websocket.close(code=code)
        except Exception as exc:
            logger.debug("[Connection] Close of %s failed: %s", self.session_id, exc)
