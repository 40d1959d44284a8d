"""Error taxonomy and the client-facing error envelope.

Every error sent to a browser client follows one JSON shape so the UI can
leave its "thinking" state, and every one is followed by a ``done`` message.

Error codes
-----------
E_COMPLETION_FAILED  Gateway chat completion returned an error or bad body.
E_TIMEOUT            Downstream call exceeded its deadline.
E_QUEUE_FULL         Outbound delivery queue refused a transient request.
E_RETRY_FAILED       A queued request failed again when retried.
E_STT_FAILED         Voice note transcription failed.
E_BAD_PAYLOAD        Voice note audio or a file attachment could not be decoded.
E_AGENT_FAILED       Agent CLI could not be spawned or exited non-zero.
"""

from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from typing import Any


class ErrorCode(str, enum.Enum):
    E_COMPLETION_FAILED = "E_COMPLETION_FAILED"
    E_TIMEOUT = "E_TIMEOUT"
    E_QUEUE_FULL = "E_QUEUE_FULL"
    E_RETRY_FAILED = "E_RETRY_FAILED"
    E_STT_FAILED = "E_STT_FAILED"
    E_BAD_PAYLOAD = "E_BAD_PAYLOAD"
    E_AGENT_FAILED = "E_AGENT_FAILED"


class DeliveryError(Exception):
    """A downstream call failed; ``code`` says how to report it."""

    code: ErrorCode = ErrorCode.E_COMPLETION_FAILED

    def __init__(self, message: str, code: ErrorCode | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code

    @property
    def transient(self) -> bool:
        return is_connecting_error(str(self))


class TransientDeliveryError(DeliveryError):
    """Downstream is (re)connecting; the request may succeed if retried."""

    @property
    def transient(self) -> bool:
        return True


class CompletionTimeout(DeliveryError):
    code = ErrorCode.E_TIMEOUT


# Downstream says it is (re)connecting rather than broken.
_CONNECTING_PATTERNS = (
    re.compile(r"no active.*whatsapp.*listener", re.IGNORECASE),
    re.compile(r"no active.*web.*listener", re.IGNORECASE),
    re.compile(r"whatsapp.*not.*connected", re.IGNORECASE),
    re.compile(r"whatsapp.*connecting", re.IGNORECASE),
    re.compile(r"whatsapp.*reconnect", re.IGNORECASE),
    re.compile(r"web.*socket.*closed", re.IGNORECASE),
    re.compile(r"gateway.*connecting", re.IGNORECASE),
)


def is_connecting_error(error_text: str) -> bool:
    """Return True if *error_text* describes a transient "connecting" state."""
    return any(p.search(error_text or "") for p in _CONNECTING_PATTERNS)


def delivery_error(message: str, code: ErrorCode | None = None) -> DeliveryError:
    """Build the error for a failed downstream call, transient if it says so."""
    if is_connecting_error(message):
        return TransientDeliveryError(message, code)
    return DeliveryError(message, code)


@dataclass
class RelayError:
    code: str
    message: str
    recoverable: bool = True
    session_id: str = ""
    details: dict[str, Any] | None = field(default=None)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "type": "error",
            "code": self.code,
            "message": self.message,
            "recoverable": self.recoverable,
            "session_id": self.session_id,
        }
        if self.details:
            d["details"] = self.details
        return d

    @classmethod
    def from_exception(cls, exc: DeliveryError, session_id: str = "") -> "RelayError":
        return cls(code=exc.code.value, message=str(exc), session_id=session_id)

