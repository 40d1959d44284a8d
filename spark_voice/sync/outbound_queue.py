"""Outbound delivery queue for requests that hit a "connecting" downstream.

When the agent channel reports that it is (re)connecting, the request path
parks the request here instead of failing it. A drain task wakes every
``check_interval`` seconds while the queue is non-empty; each tick asks the
gateway whether it is ready and, once it is, retries every parked request in
enqueue order. Retries run with ``is_retry=True`` so a second transient
failure is reported to the client as permanent rather than re-queued.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from spark_voice import constants
from spark_voice.sync.connection import ClientConnection
from spark_voice.telemetry import SPAN_QUEUE_DRAIN, get_tracer

logger = logging.getLogger(__name__)
tracer = get_tracer()


@dataclass
class QueuedMessage:
    session_id: str
    request_id: str
    text: str
    mode: str = "chat"
    connection_at_enqueue: Optional[ClientConnection] = None
    queued_at: float = field(default_factory=time.time)
    on_complete: Optional[Callable[[bool], None]] = None


class OutboundDeliveryQueue:
    """Bounded FIFO of parked requests with a self-stopping drain task.

    Parameters
    ----------
    deliver : callable
        ``await deliver(item)`` retries one request and returns True on
        success. It owns error reporting to the client.
    is_ready : callable
        ``await is_ready()`` returns True once downstream can take traffic.
    """

    def __init__(
        self,
        deliver: Callable[[QueuedMessage], Awaitable[bool]],
        is_ready: Callable[[], Awaitable[bool]],
        *,
        capacity: int = constants.MAX_QUEUE_SIZE,
        check_interval: float = constants.QUEUE_CHECK_INTERVAL,
    ) -> None:
        self._deliver = deliver
        self._is_ready = is_ready
        self._capacity = capacity
        self._check_interval = check_interval
        self._items: deque[QueuedMessage] = deque()
        self._task: Optional[asyncio.Task] = None
        self._draining = False
        self._retried = 0
        self._failed = 0

    def __len__(self) -> int:
        return len(self._items)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def running(self) -> bool:
        """True while the drain task is alive."""
        return self._task is not None and not self._task.done()

    def stats(self) -> dict[str, int]:
        return {"queued": len(self._items), "retried": self._retried, "failed": self._failed}

    def snapshot(self) -> list[QueuedMessage]:
        return list(self._items)

    def enqueue(self, item: QueuedMessage) -> bool:
        """Park *item*; returns False (and keeps nothing) when the queue is full."""
        if len(self._items) >= self._capacity:
            logger.warning(
                "[OutboundQueue] Full (%d) — rejecting request %s for %s",
                self._capacity,
                item.request_id,
                item.session_id,
            )
            return False
        self._items.append(item)
        logger.info(
            "[OutboundQueue] Queued request %s for %s. Depth: %d",
            item.request_id,
            item.session_id,
            len(self._items),
        )
        if not self.running:
            self._task = asyncio.create_task(self._drain_loop())
        return True

    async def drain(self) -> int:
        """Retry every parked request if downstream is ready.

        Returns the number of requests delivered. A tick that finds
        downstream not ready leaves the queue untouched.
        """
        if not self._items or self._draining:
            return 0
        try:
            ready = await self._is_ready()
        except Exception as exc:
            logger.warning("[OutboundQueue] Readiness check failed: %s", exc)
            ready = False
        if not ready:
            logger.debug("[OutboundQueue] Downstream not ready; %d request(s) waiting", len(self._items))
            return 0

        self._draining = True
        delivered = 0
        try:
            with tracer.start_as_current_span(SPAN_QUEUE_DRAIN) as span:
                span.set_attribute("queue.depth", len(self._items))
                while self._items:
                    item = self._items.popleft()
                    ok = await self._retry(item)
                    if ok:
                        delivered += 1
                    if item.on_complete is not None:
                        item.on_complete(ok)
        finally:
            self._draining = False
        logger.info("[OutboundQueue] Drain delivered %d request(s)", delivered)
        return delivered

    def cancel_all(self) -> None:
        """Stop the drain task and drop everything still parked."""
        if self._task is not None:
            self._task.cancel()
            self._task = None
        dropped = len(self._items)
        self._items.clear()
        if dropped:
            logger.info("[OutboundQueue] Dropped %d parked request(s) on shutdown.", dropped)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _retry(self, item: QueuedMessage) -> bool:
        self._retried += 1
        try:
            ok = await self._deliver(item)
        except Exception as exc:
            logger.error(
                "[OutboundQueue] Retry of %s raised: %s",
                item.request_id,
                exc,
                exc_info=True,
            )
            ok = False
        if not ok:
            self._failed += 1
        return ok

    async def _drain_loop(self) -> None:
        logger.debug("[OutboundQueue] Drain task started")
        try:
            while self._items:
                await asyncio.sleep(self._check_interval)
                await self.drain()
        finally:
            if self._task is asyncio.current_task():
                self._task = None
            logger.debug("[OutboundQueue] Drain task stopped")
