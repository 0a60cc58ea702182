from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from app.platform.integrity.keys import CacheKey, KeyLike, KeyMatcher, as_key


DEFAULT_TTL_SECONDS = 300

_ABSENT = object()


@dataclass(slots=True)
class CacheEntry:
    data: Any
    written_at: float
    ttl_seconds: float | None
    dependency_tags: frozenset[str] = field(default_factory=frozenset)

    def is_expired(self, now: float) -> bool:
        return self.ttl_seconds is not None and now - self.written_at >= self.ttl_seconds


class CacheStore:
    """Process-local key/value cache with per-entry TTL and dependency tags.

    Expiry is lazy: an expired entry is dropped when it is next read (or by
    ``purge_expired``). Each mutation is a single dict operation and scans
    iterate over a snapshot of the keys, so no lock is held.
    """

    def __init__(
        self,
        default_ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._hits = 0
        self._misses = 0

    def set(
        self,
        key: KeyLike,
        data: Any,
        ttl_seconds: float | None = None,
        dependency_tags: Iterable[str] | None = None,
    ) -> None:
        self._entries[as_key(key)] = CacheEntry(
            data=data,
            written_at=self._clock(),
            ttl_seconds=ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds,
            dependency_tags=frozenset(dependency_tags or ()),
        )

    def get(self, key: KeyLike, default: Any = None) -> Any:
        data = self.peek(key, _ABSENT)
        self.record_lookup(hit=data is not _ABSENT)
        return default if data is _ABSENT else data

    def peek(self, key: KeyLike, default: Any = None) -> Any:
        """Like ``get`` but leaves the hit and miss counters untouched."""
        cache_key = as_key(key)
        entry = self._entries.get(cache_key)
        if entry is None:
            return default
        if entry.is_expired(self._clock()):
            self._entries.pop(cache_key, None)
            return default
        return entry.data

    def record_lookup(self, *, hit: bool) -> None:
        if hit:
            self._hits += 1
        else:
            self._misses += 1

    def invalidate(self, key: KeyLike) -> bool:
        return self._entries.pop(as_key(key), None) is not None

    def invalidate_by_pattern(self, matcher: KeyMatcher) -> int:
        removed = 0
        for cache_key in list(self._entries):
            if matcher(cache_key) and self._entries.pop(cache_key, None) is not None:
                removed += 1
        return removed

    def invalidate_by_dependency_tag(self, tag: str) -> int:
        removed = 0
        for cache_key, entry in list(self._entries.items()):
            if tag in entry.dependency_tags and self._entries.pop(cache_key, None) is not None:
                removed += 1
        return removed

    def purge_expired(self) -> int:
        now = self._clock()
        removed = 0
        for cache_key, entry in list(self._entries.items()):
            if entry.is_expired(now) and self._entries.pop(cache_key, None) is not None:
                removed += 1
        return removed

    def keys(self) -> list[CacheKey]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()

    def reset_stats(self) -> None:
        self._hits = 0
        self._misses = 0

    def size(self) -> int:
        return len(self._entries)

    def stats(self) -> dict[str, int]:
        return {"size": self.size(), "hits": self._hits, "misses": self._misses}
