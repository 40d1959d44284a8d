"""SessionSyncEngine — the one owner of every piece of shared relay state.

Built once in the FastAPI lifespan and stored on ``app.state``. Components
never reach for module globals; they get what they need from here. The
request pipeline is wired in after construction (``bind_delivery``) because
the outbound queue and the pipeline each need a handle on the other.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Coroutine, Optional

from spark_voice.config import Settings
from spark_voice.debug import SyncDebugLogger
from spark_voice.errors import ErrorCode, RelayError
from spark_voice.services.gateway import GatewayClient
from spark_voice.sync.connection import ClientConnection, JsonSocket
from spark_voice.sync.dedup import DedupCache
from spark_voice.sync.heartbeat import HeartbeatMonitor
from spark_voice.sync.ledger import PendingRequest, PendingRequestLedger, RequestStatus
from spark_voice.sync.outbound_queue import OutboundDeliveryQueue, QueuedMessage
from spark_voice.sync.registry import ClientSession, SessionRegistry
from spark_voice.sync.tailer import TranscriptTailer
from spark_voice.transcript.notifier import TranscriptChangeNotifier
from spark_voice.transcript.store import resolve_transcript_path

logger = logging.getLogger(__name__)

DeliverFn = Callable[[QueuedMessage], Awaitable[bool]]


class SessionSyncEngine:
    def __init__(
        self,
        settings: Settings,
        *,
        gateway: Optional[GatewayClient] = None,
        clock: Callable[[], float] = time.time,
        use_watcher: bool = True,
    ) -> None:
        self.settings = settings
        self.registry = SessionRegistry(clock)
        self.ledger = PendingRequestLedger(clock)
        self.dedup = DedupCache(settings.dedup_capacity)
        self.tailer = TranscriptTailer(
            lambda: self.transcript_path,
            self.dedup,
            self.registry,
            self_tags=(settings.source_tag,),
            max_lines=settings.tail_lines,
        )
        self.heartbeat = HeartbeatMonitor(self._on_heartbeat_terminate, interval=settings.heartbeat_interval)
        self.queue = OutboundDeliveryQueue(
            self._deliver_queued,
            self.is_downstream_ready,
            capacity=settings.queue_capacity,
            check_interval=settings.queue_check_interval,
        )
        self.notifier: Optional[TranscriptChangeNotifier] = None
        self.debug = SyncDebugLogger()

        self._gateway = gateway
        self._deliver: Optional[DeliverFn] = None
        self._use_watcher = use_watcher
        self._reaper_task: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()
        self._clock = clock
        self.started_at = clock()

    @property
    def transcript_path(self) -> Path:
        """The main session's transcript, looked up again on every access.

        The agent may point ``sessions.json`` at a new main session at any
        time; readers, appends and the tailer follow it.
        """
        return resolve_transcript_path(self.settings.sessions_dir, self.settings.transcript_path)

    # ------------------------------------------------------------------
    # Wiring and lifecycle
    # ------------------------------------------------------------------

    def bind_delivery(self, deliver: DeliverFn) -> None:
        """Register the callable the outbound queue uses to retry a request."""
        self._deliver = deliver

    async def start(self) -> None:
        self.notifier = TranscriptChangeNotifier(
            lambda: self.transcript_path,
            self.tailer.sync,
            poll_interval=self.settings.poll_interval,
            debounce=self.settings.debounce,
            retry_delay=self.settings.watcher_retry_delay,
            use_watcher=self._use_watcher,
        )
        await self.notifier.start()
        self.heartbeat.start()
        self._reaper_task = asyncio.create_task(self._reaper_loop())
        logger.info("[Engine] Started — tailing %s", self.transcript_path)

    async def stop(self) -> None:
        if self.notifier is not None:
            await self.notifier.stop()
        await self.heartbeat.stop()
        self.queue.cancel_all()
        pending = list(self._tasks)
        if self._reaper_task is not None:
            pending.append(self._reaper_task)
            self._reaper_task = None
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        logger.info("[Engine] Stopped.")

    def now(self) -> float:
        return self._clock()

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        """Run a request coroutine detached from the socket that started it."""
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def connect(
        self, websocket: JsonSocket, requested_id: Optional[str] = None
    ) -> tuple[ClientSession, ClientConnection]:
        """Bind a new socket to its session and replay anything it missed."""
        session, reconnected = self.registry.get_or_create(requested_id)
        connection = ClientConnection(websocket, session.session_id)
        self.registry.attach(session, connection)
        self.heartbeat.add(connection)
        self.debug.log_ws_event(
            "reconnect" if reconnected else "connect",
            session.session_id,
            {"requested": requested_id or ""},
        )

        processing = self.ledger.has_processing(session.session_id)
        await connection.send({
            "type": "ready",
            "session_id": session.session_id,
            "reconnected": reconnected,
            "pending": processing,
        })
        if processing:
            await connection.send({"type": "thinking"})
        if reconnected:
            await self.replay(session.session_id, connection)
        return session, connection

    async def replay(self, session_id: str, connection: ClientConnection) -> int:
        """Hand finished requests to *connection* in submission order.

        Each entry leaves the ledger only once its message went out, so a
        socket that dies mid-replay leaves the rest for the next reconnect.
        Entries whose result is being sent by the request path right now are
        skipped; that send follows the session to this socket.
        """
        sent = 0
        for entry in self.ledger.entries(session_id):
            if not entry.terminal or entry.delivering:
                continue
            if not await connection.send(self._result_message(session_id, entry)):
                break
            self.ledger.remove(session_id, entry.request_id)
            await connection.send({"type": "done"})
            sent += 1
        if sent:
            logger.info("[Engine] Replayed %d stored result(s) to %s", sent, session_id)
        return sent

    async def deliver_result(self, session_id: str, request_id: str) -> bool:
        """Send a resolved request's result to the session's current socket.

        The entry is held back from ``replay`` for the duration of the send and
        leaves the ledger as soon as one socket accepted it. If the socket dies
        and a new one has attached meanwhile, the send moves to the new one.
        False means no socket took it and the entry waits for a reconnect.
        """
        entry = self.ledger.get(session_id, request_id)
        if entry is None or not entry.terminal:
            return False
        message = self._result_message(session_id, entry)
        entry.delivering = True
        try:
            while True:
                session = self.registry.get(session_id)
                connection = session.connection if session is not None else None
                if connection is None:
                    return False
                if await connection.send(message):
                    self.ledger.remove(session_id, request_id)
                    return True
                if session.connection is connection:
                    return False
        finally:
            entry.delivering = False

    @staticmethod
    def _result_message(session_id: str, entry: PendingRequest) -> dict[str, Any]:
        if entry.status is RequestStatus.COMPLETE:
            return {"type": "text", "content": entry.response or ""}
        error = RelayError(
            code=entry.error_code or ErrorCode.E_COMPLETION_FAILED.value,
            message=entry.error or "Request failed",
            session_id=session_id,
        )
        return error.to_dict()

    def acknowledge(self, connection: ClientConnection) -> None:
        """Any inbound message proves the socket is alive."""
        connection.acknowledge()
        self.registry.touch(connection.session_id)

    def disconnect(self, session_id: str, connection: ClientConnection) -> None:
        self.heartbeat.discard(connection)
        connection.closed = True
        if self.registry.detach(session_id, connection):
            self.registry.touch(session_id)
        self.debug.log_ws_event("disconnect", session_id, {"pending": len(self.ledger.entries(session_id))})

    def _on_heartbeat_terminate(self, connection: ClientConnection) -> None:
        self.registry.detach(connection.session_id, connection)
        self.debug.log_ws_event("terminate", connection.session_id, {"reason": "missed heartbeat"})

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_to_client(self, session_id: str, data: dict[str, Any]) -> bool:
        """Send to the session's current socket; False if there is none."""
        session = self.registry.get(session_id)
        if session is None or session.connection is None:
            return False
        return await session.connection.send(data)

    async def send_error(self, session_id: str, error: RelayError) -> bool:
        """Send *error* followed by ``done``."""
        if not await self.send_to_client(session_id, error.to_dict()):
            return False
        logger.warning("[RelayError] Sent %s to %s: %s", error.code, session_id, error.message)
        await self.send_to_client(session_id, {"type": "done"})
        return True

    # ------------------------------------------------------------------
    # Downstream readiness and queue wiring
    # ------------------------------------------------------------------

    async def is_downstream_ready(self) -> bool:
        if self._gateway is None:
            return True
        return await self._gateway.is_ready()

    async def _deliver_queued(self, item: QueuedMessage) -> bool:
        if self._deliver is None:
            logger.error("[Engine] No delivery bound; dropping queued request %s", item.request_id)
            return False
        return await self._deliver(item)

    # ------------------------------------------------------------------
    # Idle reaper
    # ------------------------------------------------------------------

    def reap(self) -> list[str]:
        """Remove idle sessions and their ledgers."""
        stale = self.registry.reap(self.settings.session_max_age)
        for session_id in stale:
            dropped = self.ledger.discard(session_id)
            if dropped:
                logger.info("[Engine] Dropped %d unclaimed request(s) of %s", dropped, session_id)
        return stale

    async def _reaper_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.reaper_interval)
            try:
                self.reap()
            except Exception as exc:
                logger.error("[Engine] Reaper sweep failed: %s", exc, exc_info=True)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        notifier = self.notifier
        return {
            "uptime_s": round(self._clock() - self.started_at, 1),
            "transcript": str(self.transcript_path),
            "sessions": len(self.registry),
            "connected": len(self.registry.connected_sessions()),
            "pending_requests": self.ledger.pending_count(),
            "dedup_entries": len(self.dedup),
            "broadcasts": self.tailer.broadcast_count,
            "heartbeat_terminations": self.heartbeat.terminated_count,
            "queue": self.queue.stats(),
            "notifier": {
                "state": notifier.state.value if notifier else "unwatched",
                "watcher_attached": notifier.watcher_attached if notifier else False,
                "syncs": notifier.sync_count if notifier else 0,
            },
        }
