"""Application-level WebSocket liveness probe.

Every interval the monitor sends ``{"type": "ping"}`` to each live
connection. A connection that has not answered the previous probe (with a
``pong`` or any other message) is closed and handed to ``on_terminate`` so
the engine can null the session's connection ref. Sessions and their
pending requests are left alone: the client reconnects and gets them back.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from spark_voice import constants
from spark_voice.sync.connection import ClientConnection

logger = logging.getLogger(__name__)


class HeartbeatMonitor:
    def __init__(
        self,
        on_terminate: Callable[[ClientConnection], None],
        *,
        interval: float = constants.WS_HEARTBEAT_INTERVAL,
    ) -> None:
        self._on_terminate = on_terminate
        self._interval = interval
        self._connections: set[ClientConnection] = set()
        self._task: Optional[asyncio.Task] = None
        self.terminated_count = 0

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection: object) -> bool:
        return connection in self._connections

    def add(self, connection: ClientConnection) -> None:
        connection.awaiting_ack = False
        self._connections.add(connection)

    def discard(self, connection: ClientConnection) -> None:
        self._connections.discard(connection)

    async def tick(self) -> list[ClientConnection]:
        """Run one probe round; returns the connections terminated."""
        dead: list[ClientConnection] = []
        for connection in list(self._connections):
            if connection.closed or connection.awaiting_ack:
                dead.append(connection)
                continue
            connection.awaiting_ack = True
            if not await connection.send({"type": "ping"}):
                dead.append(connection)

        for connection in dead:
            logger.info("[Heartbeat] Terminating unresponsive connection for %s", connection.session_id)
            self._connections.discard(connection)
            await connection.terminate()
            self.terminated_count += 1
            self._on_terminate(connection)
        return dead

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                await self.tick()
            except Exception as exc:
                logger.error("[Heartbeat] Probe round failed: %s", exc, exc_info=True)
