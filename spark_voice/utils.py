"""Centralized ID generation utilities for the relay."""

import secrets
import string
import time

_BASE36 = string.digits + string.ascii_lowercase


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def _random_base36(length: int) -> str:
    return "".join(secrets.choice(_BASE36) for _ in range(length))


def generate_session_id() -> str:
    """Generate a client-visible session ID.

    Returns:
        ``spark_<base36 epoch ms>_<4 random chars>``.
    """
    return f"spark_{_to_base36(int(time.time() * 1000))}_{_random_base36(4)}"


def generate_request_id() -> str:
    """Generate a short pending-request ID (8 base36 characters)."""
    return _random_base36(8)


def generate_entry_id() -> str:
    """Generate the ``id`` of an entry appended to the shared transcript."""
    return _random_base36(8)
