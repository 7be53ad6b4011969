"""Bounded key/value cache with approximate LFU eviction."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Generic, List, TypeVar

DEFAULT_CACHE_MAX_SIZE = 10000
CACHE_PRUNE_FRACTION = 0.1

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    value: T
    hit_count: int = 0


class Cache(Generic[T]):
    """Cache that evicts the least frequently read entries when full.

    Every ``get`` bumps the entry hit count. When a new key is inserted into a
    full cache, the lowest ``prune_fraction`` of entries (by hit count, ties in
    insertion order) is dropped first. All work happens synchronously inside
    ``set``.
    """

    def __init__(self, max_size: int = DEFAULT_CACHE_MAX_SIZE, prune_fraction: float = CACHE_PRUNE_FRACTION) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._entries: Dict[str, CacheEntry[T]] = {}
        self.max_size = max_size
        self.prune_fraction = prune_fraction
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> T | None:
        entry = self._entries.get(key)
        if entry is None:
            self.misses += 1
            return None
        entry.hit_count += 1
        self.hits += 1
        return entry.value

    def set(self, key: str, value: T) -> None:
        if key not in self._entries and len(self._entries) >= self.max_size:
            self.prune()
        self._entries[key] = CacheEntry(value=value)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()
        self.hits = 0
        self.misses = 0

    def prune(self) -> None:
        # sorted() is stable, so equal hit counts keep insertion order
        ranked = sorted(self._entries.items(), key=lambda item: item[1].hit_count)
        remove_count = max(1, math.floor(self.max_size * self.prune_fraction))
        for key, _ in ranked[:remove_count]:
            del self._entries[key]

    @property
    def size(self) -> int:
        return len(self._entries)

    def keys(self) -> List[str]:
        return list(self._entries.keys())

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
        }
