from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Sequence
from contextlib import AbstractContextManager, nullcontext
from typing import Literal, TypeVar

from app.metrics import (
    observe_cache_hit,
    observe_cache_invalidation,
    observe_cache_miss,
    observe_cache_validation_failure,
)
from app.platform.integrity.cache import CacheStore
from app.platform.integrity.errors import DataIntegrityError
from app.platform.integrity.keys import (
    AGGREGATE_NAMESPACES,
    CacheKey,
    KeyLike,
    any_of,
    as_key,
    batch_containing,
    batch_key,
    entity_key,
    list_of,
    namespace_in,
    references,
    scoped_to_organization,
)
from app.platform.integrity.performance import PerformanceMonitor
from app.platform.integrity.schemas import CacheStats


logger = logging.getLogger("app.integrity.cache")

T = TypeVar("T")

_MISSING = object()

DEFAULT_BATCH_TTL_SECONDS = 60

# Key namespaces that can embed a reference to an entity of the given type.
ENTITY_CASCADES: dict[str, tuple[str, ...]] = {
    "contact": ("company", "deal", "activity"),
    "company": ("contact", "deal"),
    "deal": ("contact", "company", "activity"),
    "activity": ("contact", "deal"),
}

# List caches touched by a write to the given type; company changes show up in contact listings.
LIST_INVALIDATIONS: dict[str, tuple[str, ...]] = {
    "contact": ("contact",),
    "company": ("company", "contact"),
    "deal": ("deal",),
    "activity": ("activity",),
}


class CacheManager:
    """Read-through caching with validation, plus invalidation rules for the CRM entity graph."""

    def __init__(
        self,
        store: CacheStore,
        *,
        monitor: PerformanceMonitor | None = None,
        batch_ttl_seconds: float = DEFAULT_BATCH_TTL_SECONDS,
        pattern_invalidation: Literal["match", "clear"] = "match",
    ) -> None:
        self.store = store
        self.monitor = monitor
        self.batch_ttl_seconds = batch_ttl_seconds
        self.pattern_invalidation = pattern_invalidation

    def get_cached_data(
        self,
        key: KeyLike,
        fetch_fn: Callable[[], T],
        ttl_seconds: float | None = None,
        validate_fn: Callable[[T], bool] | None = None,
        dependency_tags: Iterable[str] | None = None,
    ) -> T:
        cache_key = as_key(key)
        with self._measure(f"cache.get:{cache_key.namespace}"):
            return self._read_through(cache_key, fetch_fn, ttl_seconds, validate_fn, dependency_tags)

    def _read_through(
        self,
        cache_key: CacheKey,
        fetch_fn: Callable[[], T],
        ttl_seconds: float | None,
        validate_fn: Callable[[T], bool] | None,
        dependency_tags: Iterable[str] | None,
    ) -> T:
        namespace = cache_key.namespace
        # Counted only once the entry is accepted; a rejected entry is a miss.
        cached = self.store.peek(cache_key, _MISSING)
        if cached is not _MISSING:
            if validate_fn is None or validate_fn(cached):
                self.store.record_lookup(hit=True)
                observe_cache_hit(namespace)
                return cached
            self.store.invalidate(cache_key)
            observe_cache_validation_failure(namespace, "cache")
            logger.warning("cache_entry_rejected", extra={"cache_key": str(cache_key)})

        self.store.record_lookup(hit=False)
        observe_cache_miss(namespace)
        fresh = fetch_fn()
        if validate_fn is not None and not validate_fn(fresh):
            observe_cache_validation_failure(namespace, "fetch")
            raise DataIntegrityError("Retrieved data failed validation", details={"cache_key": str(cache_key)})

        self.store.set(cache_key, fresh, ttl_seconds, dependency_tags)
        return fresh

    def get_with_accuracy_check(
        self,
        entity_type: str,
        entity_id: str,
        fetch_fn: Callable[[], T],
        validate_fn: Callable[[T], bool] | None = None,
    ) -> T:
        return self.get_cached_data(entity_key(entity_type, entity_id), fetch_fn, None, validate_fn)

    def get_batch_with_accuracy_check(
        self,
        entity_type: str,
        entity_ids: Sequence[str],
        fetch_fn: Callable[[list[str]], T],
        validate_fn: Callable[[T], bool] | None = None,
    ) -> T:
        ordered = sorted(entity_ids)
        return self.get_cached_data(
            batch_key(entity_type, ordered),
            lambda: fetch_fn(ordered),
            self.batch_ttl_seconds,
            validate_fn,
            dependency_tags=[f"{entity_type}:{entity_id}" for entity_id in ordered],
        )

    def invalidate_entity_cache(self, entity_type: str, entity_id: str) -> int:
        removed = int(self.store.invalidate(entity_key(entity_type, entity_id)))

        related = ENTITY_CASCADES.get(entity_type)
        if related:
            removed += self.store.invalidate_by_pattern(references(entity_type, entity_id, within=related))
        removed += self.store.invalidate_by_dependency_tag(f"{entity_type}:{entity_id}")
        removed += self.store.invalidate_by_pattern(batch_containing(entity_type, entity_id))
        removed += self.store.invalidate_by_pattern(namespace_in(*AGGREGATE_NAMESPACES))

        observe_cache_invalidation("entity", removed)
        logger.info(
            "cache_entity_invalidated",
            extra={"entity_type": entity_type, "entity_id": entity_id, "removed": removed},
        )
        return removed

    def invalidate_organization_cache(self, organization_id: str) -> int:
        removed = self.store.invalidate_by_pattern(scoped_to_organization(organization_id))
        observe_cache_invalidation("organization", removed)
        logger.info(
            "cache_organization_invalidated",
            extra={"organization_id": organization_id, "removed": removed},
        )
        return removed

    def invalidate_list_caches(self, entity_type: str, organization_id: str) -> int:
        if self.pattern_invalidation == "clear":
            removed = self.store.size()
            self.store.clear()
        else:
            list_types = LIST_INVALIDATIONS.get(entity_type, (entity_type,))
            in_organization = scoped_to_organization(organization_id)
            is_aggregate = namespace_in(*AGGREGATE_NAMESPACES)
            removed = self.store.invalidate_by_pattern(
                any_of(
                    *(list_of(list_type, organization_id) for list_type in list_types),
                    lambda key: is_aggregate(key) and in_organization(key),
                )
            )

        observe_cache_invalidation("list", removed)
        return removed

    def get_cache_stats(self) -> CacheStats:
        stats = self.store.stats()
        lookups = stats["hits"] + stats["misses"]
        return CacheStats(
            size=stats["size"],
            hits=stats["hits"],
            misses=stats["misses"],
            hit_rate=stats["hits"] / lookups if lookups else None,
            miss_rate=stats["misses"] / lookups if lookups else None,
        )

    def clear(self) -> None:
        self.store.clear()
        self.store.reset_stats()

    def _measure(self, operation: str) -> AbstractContextManager[None]:
        if self.monitor is None:
            return nullcontext()
        return self.monitor.measure(operation)
