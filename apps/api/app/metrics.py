from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

cache_hits_total = Counter(
    "crm_cache_hits_total",
    "Read-through cache hits by key namespace",
    ["namespace"],
)

cache_misses_total = Counter(
    "crm_cache_misses_total",
    "Read-through cache misses by key namespace",
    ["namespace"],
)

cache_invalidated_entries_total = Counter(
    "crm_cache_invalidated_entries_total",
    "Cache entries removed by invalidation reason",
    ["reason"],
)

cache_validation_failures_total = Counter(
    "crm_cache_validation_failures_total",
    "Cached or fetched values rejected by a validation callback",
    ["namespace", "source"],
)

integrity_checks_total = Counter(
    "crm_integrity_checks_total",
    "Integrity checks by entity type and outcome",
    ["entity_type", "outcome"],
)

optimistic_lock_conflicts_total = Counter(
    "crm_optimistic_lock_conflicts_total",
    "Version conflicts seen by safe updates",
    ["entity_type", "strategy"],
)

operation_duration_seconds = Histogram(
    "crm_operation_duration_seconds",
    "Duration of monitored operations in seconds",
    ["operation"],
)

slow_operations_total = Counter(
    "crm_slow_operations_total",
    "Monitored operations exceeding the slow threshold",
    ["operation"],
)


_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")
_DYNAMIC_SEGMENT_RE = re.compile(r"^(\d+|[0-9a-fA-F]{8}(-[0-9a-fA-F]{4}){3}-[0-9a-fA-F]{12})$")


def resolve_http_path_label(request: Request) -> str:
    """Route template of the request with every path parameter shown as ``{id}``.

    Requests that matched no route are labelled by their raw path with numeric
    and UUID segments collapsed to ``{id}``.
    """
    route = request.scope.get("route")
    template = getattr(route, "path_format", None) or getattr(route, "path", None)
    if isinstance(template, str) and template:
        return _PATH_PARAM_RE.sub("{id}", template)
    segments = request.url.path.split("/")
    return "/".join("{id}" if _DYNAMIC_SEGMENT_RE.match(segment) else segment for segment in segments)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_cache_hit(namespace: str) -> None:
    cache_hits_total.labels(namespace=namespace).inc()


def observe_cache_miss(namespace: str) -> None:
    cache_misses_total.labels(namespace=namespace).inc()


def observe_cache_invalidation(reason: str, count: int) -> None:
    if count > 0:
        cache_invalidated_entries_total.labels(reason=reason).inc(count)


def observe_cache_validation_failure(namespace: str, source: str) -> None:
    cache_validation_failures_total.labels(namespace=namespace, source=source).inc()


def observe_integrity_check(entity_type: str, is_valid: bool) -> None:
    integrity_checks_total.labels(entity_type=entity_type, outcome="valid" if is_valid else "invalid").inc()


def observe_optimistic_lock_conflict(entity_type: str, strategy: str) -> None:
    optimistic_lock_conflicts_total.labels(entity_type=entity_type, strategy=strategy).inc()


def observe_operation(operation: str, duration: float, slow: bool) -> None:
    operation_duration_seconds.labels(operation=operation).observe(duration)
    if slow:
        slow_operations_total.labels(operation=operation).inc()


def render_metrics() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
