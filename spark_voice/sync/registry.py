"""Session registry — client-visible session ids and their current socket.

A session outlives its sockets: disconnecting only clears the connection
reference, and a browser that reconnects with ``?session=<id>`` picks up the
same session (and its pending replies). Sessions go away only through the
idle reaper.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional

from spark_voice.sync.connection import ClientConnection
from spark_voice.transcript.reader import Turn
from spark_voice.utils import generate_session_id

logger = logging.getLogger(__name__)

_HISTORY_CAP = 200


@dataclass
class ClientSession:
    session_id: str
    connection: Optional[ClientConnection] = None
    history: list[Turn] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    # Direct replies in flight; the tailer skips the session while non-zero.
    pending_replies: int = 0

    @property
    def connected(self) -> bool:
        return self.connection is not None and self.connection.is_open

    @property
    def awaiting_reply(self) -> bool:
        return self.pending_replies > 0

    def remember(self, turn: Turn) -> None:
        self.history.append(turn)
        if len(self.history) > _HISTORY_CAP:
            del self.history[: len(self.history) - _HISTORY_CAP]

    def begin_reply(self) -> None:
        self.pending_replies += 1

    def end_reply(self) -> None:
        self.pending_replies = max(0, self.pending_replies - 1)


class SessionRegistry:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._sessions: dict[str, ClientSession] = {}
        self._clock = clock

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator[ClientSession]:
        return iter(list(self._sessions.values()))

    def get(self, session_id: str) -> Optional[ClientSession]:
        return self._sessions.get(session_id)

    def get_or_create(self, session_id: Optional[str] = None) -> tuple[ClientSession, bool]:
        """Return ``(session, reconnected)``.

        An unknown or missing id yields a brand-new session with a fresh id,
        so a client cannot pick an arbitrary id for itself.
        """
        if session_id and session_id in self._sessions:
            session = self._sessions[session_id]
            session.last_activity = self._clock()
            return session, True
        now = self._clock()
        session = ClientSession(session_id=generate_session_id(), created_at=now, last_activity=now)
        self._sessions[session.session_id] = session
        return session, False

    def attach(self, session: ClientSession, connection: ClientConnection) -> None:
        session.connection = connection
        session.last_activity = self._clock()

    def detach(self, session_id: str, connection: ClientConnection) -> bool:
        """Clear the connection ref if it still points at *connection*.

        A late close from a superseded socket must not clear the newer one.
        """
        session = self._sessions.get(session_id)
        if session is None or session.connection is not connection:
            return False
        session.connection = None
        return True

    def touch(self, session_id: str) -> None:
        session = self._sessions.get(session_id)
        if session is not None:
            session.last_activity = self._clock()

    def connected_sessions(self) -> list[ClientSession]:
        return [s for s in self._sessions.values() if s.connected]

    def remove(self, session_id: str) -> Optional[ClientSession]:
        return self._sessions.pop(session_id, None)

    def reap(self, max_age: float) -> list[str]:
        """Remove sessions idle for longer than *max_age* seconds."""
        cutoff = self._clock() - max_age
        stale = [sid for sid, s in self._sessions.items() if s.last_activity < cutoff]
        for sid in stale:
            del self._sessions[sid]
        if stale:
            logger.info("[Session] Reaped %d idle session(s): %s", len(stale), ", ".join(stale))
        return stale
