"""Fixed-capacity key/value cache that evicts the oldest insertion."""

from __future__ import annotations

import itertools
import threading
import time
from dataclasses import dataclass
from typing import Generic, Hashable, Optional, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class InvalidCapacity(ValueError):
    """Raised when a cache is constructed with a capacity below one."""


@dataclass
class CacheEntry(Generic[V]):
    value: V
    inserted_ns: int
    sequence: int

    @property
    def age_key(self) -> tuple[int, int]:
        return (self.inserted_ns, self.sequence)


class BoundedCache(Generic[K, V]):
    """Keep up to ``capacity`` entries; drop the oldest insertion when full.

    Lookups do not refresh an entry, so this is not an LRU. Re-inserting a key
    replaces its value and resets its insertion time. Entries never expire on
    their own.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise InvalidCapacity(f"Cache capacity must be one or bigger, got {capacity}")
        self.capacity = capacity
        self._entries: dict[K, CacheEntry[V]] = {}
        self._sequence = itertools.count()
        self._lock = threading.Lock()

    def get(self, key: K, default: Optional[V] = None) -> Optional[V]:
        """Return the value stored under ``key``, or ``default`` on a miss.

        Pass a sentinel as ``default`` when ``None`` is a legitimate value.
        """
        with self._lock:
            entry = self._entries.get(key)
            return entry.value if entry is not None else default

    def insert(self, key: K, value: V) -> None:
        with self._lock:
            if key not in self._entries and len(self._entries) >= self.capacity:
                self._evict_oldest()
            self._entries[key] = CacheEntry(
                value=value,
                inserted_ns=time.monotonic_ns(),
                sequence=next(self._sequence),
            )

    def _evict_oldest(self) -> None:
        oldest = min(self._entries, key=lambda k: self._entries[k].age_key)
        del self._entries[oldest]

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
