"""Bounded in-memory cache for embedding vectors.

Owned by an embedding provider instance. Entries are keyed by a hash of the
input text, expire after a fixed TTL and are evicted oldest-first once the
capacity is reached.
"""

from __future__ import annotations

import hashlib
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass


def text_key(text: str) -> str:
    """Stable cache key for *text*."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass
class _Entry:
    vector: list[float]
    stored_at: float


class EmbeddingCache:
    """FIFO cache with per-entry expiry.

    Parameters
    ----------
    capacity:
        Maximum number of vectors kept. Inserting beyond it drops the oldest.
    ttl_seconds:
        Age after which an entry is treated as missing.
    clock:
        Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        capacity: int = 1000,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, text: str) -> list[float] | None:
        key = text_key(text)
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        if self._clock() - entry.stored_at >= self.ttl_seconds:
            del self._entries[key]
            self.misses += 1
            return None
        self.hits += 1
        return entry.vector

    def put(self, text: str, vector: list[float]) -> None:
        key = text_key(text)
        # Re-inserting refreshes both the timestamp and the FIFO position.
        self._entries.pop(key, None)
        self._entries[key] = _Entry(vector=vector, stored_at=self._clock())
        while len(self._entries) > self.capacity:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()
