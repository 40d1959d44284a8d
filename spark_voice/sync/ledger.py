"""Pending request ledger — request outcomes that outlive a WebSocket.

Each session owns a FIFO list of requests. A request is resolved by the
delivery path whether or not a socket is attached at that moment; whatever
could not be delivered directly is handed back, in submission order, when
the client reconnects.
"""

from __future__ import annotations

import enum
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from spark_voice import constants
from spark_voice.utils import generate_request_id

logger = logging.getLogger(__name__)


class RequestStatus(str, enum.Enum):
    PROCESSING = "processing"
    COMPLETE = "complete"
    ERROR = "error"


@dataclass
class PendingRequest:
    request_id: str
    session_id: str
    submitted_at: float
    text_preview: str
    status: RequestStatus = RequestStatus.PROCESSING
    response: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    completed_at: Optional[float] = None
    # Final message is being sent right now; replay leaves it alone.
    delivering: bool = False

    @property
    def terminal(self) -> bool:
        return self.status is not RequestStatus.PROCESSING


@dataclass(frozen=True)
class Outcome:
    """How a request ended: exactly one of ``response`` / ``error`` is set."""

    response: Optional[str] = None
    error: Optional[str] = None
    code: Optional[str] = None

    @classmethod
    def success(cls, response: str) -> "Outcome":
        return cls(response=response)

    @classmethod
    def failure(cls, error: str, code: Optional[str] = None) -> "Outcome":
        return cls(error=error, code=code)

    @property
    def ok(self) -> bool:
        return self.error is None


class PendingRequestLedger:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._ledgers: dict[str, list[PendingRequest]] = {}
        self._clock = clock

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._ledgers

    def entries(self, session_id: str) -> list[PendingRequest]:
        return list(self._ledgers.get(session_id, ()))

    def get(self, session_id: str, request_id: str) -> Optional[PendingRequest]:
        for entry in self._ledgers.get(session_id, ()):
            if entry.request_id == request_id:
                return entry
        return None

    def submit(self, session_id: str, text: str) -> str:
        """Append a ``processing`` entry and return its request id."""
        entry = PendingRequest(
            request_id=generate_request_id(),
            session_id=session_id,
            submitted_at=self._clock(),
            text_preview=text[: constants.TEXT_PREVIEW_CHARS],
        )
        self._ledgers.setdefault(session_id, []).append(entry)
        logger.debug("[Ledger] %s: submitted %s", session_id, entry.request_id)
        return entry.request_id

    def resolve(self, session_id: str, request_id: str, outcome: Outcome) -> bool:
        """Mark a request ``complete`` or ``error``.

        Returns False if the entry is gone (session reaped, or already
        flushed); callers resume after an await and must not assume it
        still exists.
        """
        entry = self.get(session_id, request_id)
        if entry is None:
            logger.debug("[Ledger] %s: %s vanished before resolve", session_id, request_id)
            return False
        if outcome.ok:
            entry.status = RequestStatus.COMPLETE
            entry.response = outcome.response
        else:
            entry.status = RequestStatus.ERROR
            entry.error = outcome.error
            entry.error_code = outcome.code
        entry.completed_at = self._clock()
        return True

    def remove(self, session_id: str, request_id: str) -> None:
        ledger = self._ledgers.get(session_id)
        if ledger is None:
            return
        ledger[:] = [e for e in ledger if e.request_id != request_id]
        self.prune(session_id)

    def drain_completed(self, session_id: str) -> list[PendingRequest]:
        """Remove and return every terminal entry, in submission order."""
        ledger = self._ledgers.get(session_id)
        if not ledger:
            return []
        done = [e for e in ledger if e.terminal and not e.delivering]
        ledger[:] = [e for e in ledger if e not in done]
        self.prune(session_id)
        return done

    def has_processing(self, session_id: str) -> bool:
        return any(not e.terminal for e in self._ledgers.get(session_id, ()))

    def prune(self, session_id: str) -> None:
        """Drop the session's ledger once it is empty."""
        if session_id in self._ledgers and not self._ledgers[session_id]:
            del self._ledgers[session_id]

    def discard(self, session_id: str) -> int:
        """Drop a session's ledger outright; returns how many entries went."""
        return len(self._ledgers.pop(session_id, ()))

    def pending_count(self) -> int:
        return sum(len(entries) for entries in self._ledgers.values())
