from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.orm import Session

from app.core.config import Settings
from app.crm.store import EntityStore, SqlAlchemyEntityStore
from app.platform.integrity.cache import CacheStore
from app.platform.integrity.concurrency import ConcurrencyController
from app.platform.integrity.manager import CacheManager
from app.platform.integrity.performance import PerformanceMonitor
from app.platform.integrity.validator import DataIntegrityValidator


@dataclass(slots=True)
class IntegrityServices:
    store: EntityStore
    cache: CacheManager
    validator: DataIntegrityValidator
    concurrency: ConcurrencyController
    monitor: PerformanceMonitor


def build_integrity_services(session_factory: Callable[[], Session], settings: Settings) -> IntegrityServices:
    monitor = PerformanceMonitor(slow_threshold_ms=settings.slow_operation_threshold_ms)
    store = SqlAlchemyEntityStore(session_factory)
    cache = CacheManager(
        CacheStore(default_ttl_seconds=settings.cache_default_ttl_seconds),
        monitor=monitor,
        batch_ttl_seconds=settings.cache_batch_ttl_seconds,
        pattern_invalidation=settings.cache_pattern_invalidation,
    )
    return IntegrityServices(
        store=store,
        cache=cache,
        validator=DataIntegrityValidator(store, max_workers=settings.integrity_max_workers),
        concurrency=ConcurrencyController(
            store,
            cache_manager=cache,
            max_retries=settings.concurrency_max_retries,
            retry_delay_seconds=settings.concurrency_retry_delay_ms / 1000,
        ),
        monitor=monitor,
    )
