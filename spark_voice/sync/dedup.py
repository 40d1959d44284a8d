"""Bounded fingerprint cache for duplicate suppression.

The tailer and the request delivery path both write into one cache: the
delivery path records the fingerprint of every reply it sends directly, so
when the same reply later shows up in the shared transcript the tailer knows
not to broadcast it again.

Fingerprints are BLAKE2b-128 digests of the whole normalized text, so two
long messages that only share a prefix never collide.
"""

from __future__ import annotations

import hashlib
from collections import OrderedDict

from spark_voice import constants


def normalize_text(text: str) -> str:
    return " ".join((text or "").split())


def fingerprint(text: str) -> str:
    """Return the dedup fingerprint of *text* ('' for blank text)."""
    normalized = normalize_text(text)
    if not normalized:
        return ""
    return hashlib.blake2b(normalized.encode("utf-8"), digest_size=16).hexdigest()


class DedupCache:
    """Insertion-ordered set of fingerprints; the oldest are evicted first."""

    def __init__(self, capacity: int = constants.MAX_HASH_CACHE) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self._capacity = capacity
        self._entries: OrderedDict[str, None] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, fp: object) -> bool:
        return fp in self._entries

    @property
    def capacity(self) -> int:
        return self._capacity

    def add(self, fp: str) -> None:
        """Insert *fp*. Re-adding a known fingerprint keeps its original age."""
        if not fp or fp in self._entries:
            return
        self._entries[fp] = None
        while len(self._entries) > self._capacity:
            self._entries.popitem(last=False)

    def add_text(self, text: str) -> str:
        fp = fingerprint(text)
        self.add(fp)
        return fp

    def seen_text(self, text: str) -> bool:
        fp = fingerprint(text)
        return bool(fp) and fp in self._entries

    def clear(self) -> None:
        self._entries.clear()
