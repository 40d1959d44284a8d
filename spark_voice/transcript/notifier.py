"""Transcript change notifier — push watcher plus polling backup, debounced.

OS file watchers drop events now and then (editors that rename-on-save,
network filesystems, inotify queue overflows), so two backends run side by
side:

  - ``WatchfilesBackend`` — push events from ``watchfiles.awatch`` on the
    transcript's directory. On attach failure or watcher error it goes quiet
    and re-attaches after ``retry_delay``.
  - ``PollingBackend`` — stats the file every ``poll_interval`` and reports a
    change whenever ``(mtime, size)`` moved. Always running.

The transcript path comes from a provider that the backends consult as they
run, so a switch of the main session moves both of them along.

Both feed ``TranscriptChangeNotifier.notify_change()``. Every notification
restarts the debounce timer; the sync callback fires once the timer settles,
and never overlaps itself (a change arriving mid-sync schedules one rerun).
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
from pathlib import Path
from typing import Awaitable, Callable, Optional

from watchfiles import awatch

from spark_voice import constants

logger = logging.getLogger(__name__)

SyncCallback = Callable[[], Awaitable[None]]
NotifyFn = Callable[[], None]
PathProvider = Callable[[], Path]

# Rewritten when the agent switches its main session.
_SESSION_INDEX = "sessions.json"


class NotifierState(str, enum.Enum):
    UNWATCHED = "unwatched"
    WATCHING = "watching"
    DEBOUNCING = "debouncing"


def _signature(path: Path) -> Optional[tuple[int, int]]:
    try:
        st = os.stat(path)
    except OSError:
        return None
    return st.st_mtime_ns, st.st_size


class PollingBackend:
    """Report a change whenever the file's ``(mtime, size)`` moves, or the
    transcript itself is replaced by another file."""

    def __init__(self, path_provider: PathProvider, interval: float = constants.SYNC_POLL_INTERVAL) -> None:
        self._path_provider = path_provider
        self._interval = interval

    async def run(self, notify: NotifyFn) -> None:
        path = await asyncio.to_thread(self._path_provider)
        last = _signature(path)
        while True:
            await asyncio.sleep(self._interval)
            current_path = await asyncio.to_thread(self._path_provider)
            current = _signature(current_path)
            if current_path != path:
                logger.info("[Notifier] Transcript moved to %s", current_path.name)
                path, last = current_path, current
                notify()
            elif current != last:
                last = current
                logger.debug("[Notifier] Poll detected change in %s", path.name)
                notify()


class WatchfilesBackend:
    """Push events for the transcript's directory, re-attaching after failures.

    Events for the current transcript file or the session index count; the
    file name is looked up per event so a rotated transcript is followed.
    """

    def __init__(
        self,
        path_provider: PathProvider,
        retry_delay: float = constants.WATCHER_RETRY_DELAY,
        on_attach_change: Optional[Callable[[bool], None]] = None,
    ) -> None:
        self._path_provider = path_provider
        self._retry_delay = retry_delay
        self._on_attach_change = on_attach_change or (lambda attached: None)

    async def run(self, notify: NotifyFn) -> None:
        while True:
            try:
                directory = (await asyncio.to_thread(self._path_provider)).parent
                self._on_attach_change(True)
                logger.info("[Notifier] Watching %s", directory)
                async for changes in awatch(
                    directory,
                    watch_filter=None,
                    debounce=50,
                    recursive=False,
                ):
                    current = await asyncio.to_thread(self._path_provider)
                    names = {Path(changed).name for _, changed in changes}
                    if current.name in names or _SESSION_INDEX in names:
                        notify()
                    if current.parent != directory:
                        logger.info("[Notifier] Transcript left %s; re-attaching", directory)
                        break
                else:
                    logger.warning("[Notifier] Watcher ended for %s", directory)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning(
                    "[Notifier] Watcher unavailable (%s) — polling only, retry in %.1fs",
                    exc,
                    self._retry_delay,
                )
            self._on_attach_change(False)
            await asyncio.sleep(self._retry_delay)


class TranscriptChangeNotifier:
    """Debounces change events from its backends into single sync calls."""

    def __init__(
        self,
        path_provider: PathProvider,
        on_change: SyncCallback,
        *,
        poll_interval: float = constants.SYNC_POLL_INTERVAL,
        debounce: float = constants.SYNC_DEBOUNCE,
        retry_delay: float = constants.WATCHER_RETRY_DELAY,
        use_watcher: bool = True,
    ) -> None:
        self._path_provider = path_provider
        self._on_change = on_change
        self._debounce = debounce
        self._backends: list = [PollingBackend(path_provider, poll_interval)]
        if use_watcher:
            self._backends.append(WatchfilesBackend(path_provider, retry_delay, self._set_watcher_attached))

        self._tasks: list[asyncio.Task] = []
        self._debounce_task: Optional[asyncio.Task] = None
        self._inflight: set[asyncio.Task] = set()
        self._sync_running = False
        self._rerun = False
        self._watcher_attached = False
        self._running = False
        self.sync_count = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> NotifierState:
        if not self._running:
            return NotifierState.UNWATCHED
        if self._debounce_task is not None and not self._debounce_task.done():
            return NotifierState.DEBOUNCING
        return NotifierState.WATCHING

    @property
    def watcher_attached(self) -> bool:
        return self._watcher_attached

    async def start(self, sync_on_start: bool = True) -> None:
        """Start every backend; optionally run one sync right away."""
        if self._running:
            return
        self._running = True
        for backend in self._backends:
            self._tasks.append(asyncio.create_task(backend.run(self.notify_change)))
        logger.info(
            "[Notifier] Started for %s (%d backend(s))", self._path_provider(), len(self._backends)
        )
        if sync_on_start:
            await self._run_sync()

    async def stop(self) -> None:
        self._running = False
        pending = list(self._tasks) + list(self._inflight)
        if self._debounce_task is not None:
            pending.append(self._debounce_task)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._tasks.clear()
        self._debounce_task = None
        self._watcher_attached = False
        logger.info("[Notifier] Stopped.")

    def notify_change(self) -> None:
        """Record one change event and (re)start the debounce timer."""
        if not self._running:
            return
        if self._debounce_task is not None and not self._debounce_task.done():
            self._debounce_task.cancel()
        self._debounce_task = asyncio.create_task(self._fire_after_debounce())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _set_watcher_attached(self, attached: bool) -> None:
        self._watcher_attached = attached

    async def _fire_after_debounce(self) -> None:
        await asyncio.sleep(self._debounce)
        # Timer settled: later events start a fresh timer instead of cancelling this sync.
        task = asyncio.current_task()
        if self._debounce_task is task:
            self._debounce_task = None
        if task is not None:
            self._inflight.add(task)
            task.add_done_callback(self._inflight.discard)
        await self._run_sync()

    async def _run_sync(self) -> None:
        if self._sync_running:
            self._rerun = True
            return
        self._sync_running = True
        try:
            while True:
                self._rerun = False
                self.sync_count += 1
                try:
                    await self._on_change()
                except Exception as exc:
                    logger.error("[Notifier] Sync callback failed: %s", exc, exc_info=True)
                if not self._rerun:
                    break
        finally:
            self._sync_running = False
