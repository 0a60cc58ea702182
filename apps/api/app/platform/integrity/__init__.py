"""Data-integrity validation, read-through caching and versioned updates for the CRM."""

from importlib import import_module
from typing import Any

# Resolved on first access: app.crm.store imports this package's errors module,
# and the controller and validator import app.crm.store.
_EXPORTS = {
    "CacheStore": "app.platform.integrity.cache",
    "CacheManager": "app.platform.integrity.manager",
    "DataIntegrityValidator": "app.platform.integrity.validator",
    "ConcurrencyController": "app.platform.integrity.concurrency",
    "ConflictResolutionStrategy": "app.platform.integrity.schemas",
    "PerformanceMonitor": "app.platform.integrity.performance",
    "IntegrityServices": "app.platform.integrity.services",
    "build_integrity_services": "app.platform.integrity.services",
}

__all__ = list(_EXPORTS)


def __getattr__(name: str) -> Any:
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
    return getattr(import_module(module_name), name)
