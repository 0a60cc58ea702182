from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass

from app.crm.schemas import EntityFilter


@dataclass(frozen=True, slots=True)
class CacheKey:
    """Cache key as a tuple of segments, e.g. ``("deal", "list", "org1", "contact", "c1", "q", "<hash>")``.

    ``str(key)`` renders the familiar colon-joined form and ``CacheKey.parse`` reads it back.
    """

    segments: tuple[str, ...]

    @classmethod
    def of(cls, *segments: object) -> CacheKey:
        return cls(tuple(str(segment) for segment in segments))

    @classmethod
    def parse(cls, raw: str) -> CacheKey:
        return cls(tuple(raw.split(":")))

    @property
    def namespace(self) -> str:
        return self.segments[0] if self.segments else ""

    def contains_pair(self, first: str, second: str) -> bool:
        tail = self.segments[1:]
        return any(tail[index] == first and tail[index + 1] == second for index in range(len(tail) - 1))

    def __str__(self) -> str:
        return ":".join(self.segments)


KeyLike = CacheKey | str
KeyMatcher = Callable[[CacheKey], bool]

# Aggregate views derive from every entity type.
AGGREGATE_NAMESPACES = frozenset({"dashboard", "analytics", "metrics", "pipeline"})


def as_key(key: KeyLike) -> CacheKey:
    return key if isinstance(key, CacheKey) else CacheKey.parse(key)


def entity_key(entity_type: str, entity_id: str) -> CacheKey:
    return CacheKey.of(entity_type, entity_id)


def batch_key(entity_type: str, entity_ids: Iterable[str]) -> CacheKey:
    return CacheKey.of(entity_type, "batch", ",".join(sorted(entity_ids)))


def list_key(filter: EntityFilter, organization_id: str) -> CacheKey:
    return CacheKey.of(filter.entity_type, "list", organization_id, *filter.reference_segments(), "q", filter.fingerprint())


def dashboard_kpis_key(organization_id: str, start_date: str | None = None, end_date: str | None = None) -> CacheKey:
    return CacheKey.of("dashboard", "kpis", organization_id, start_date or "all", end_date or "all")


def pipeline_analytics_key(organization_id: str) -> CacheKey:
    return CacheKey.of("pipeline", "analytics", organization_id)


def namespace_in(*namespaces: str) -> KeyMatcher:
    allowed = frozenset(namespaces)

    def matcher(key: CacheKey) -> bool:
        return key.namespace in allowed

    return matcher


def references(entity_type: str, entity_id: str, *, within: Iterable[str]) -> KeyMatcher:
    namespaces = frozenset(within)

    def matcher(key: CacheKey) -> bool:
        return key.namespace in namespaces and key.contains_pair(entity_type, entity_id)

    return matcher


def batch_containing(entity_type: str, entity_id: str) -> KeyMatcher:
    def matcher(key: CacheKey) -> bool:
        segments = key.segments
        return (
            len(segments) == 3
            and segments[0] == entity_type
            and segments[1] == "batch"
            and entity_id in segments[2].split(",")
        )

    return matcher


def scoped_to_organization(organization_id: str) -> KeyMatcher:
    def matcher(key: CacheKey) -> bool:
        return organization_id in key.segments[1:]

    return matcher


def list_of(entity_type: str, organization_id: str) -> KeyMatcher:
    def matcher(key: CacheKey) -> bool:
        return key.segments[:3] == (entity_type, "list", organization_id)

    return matcher


def any_of(*matchers: KeyMatcher) -> KeyMatcher:
    def matcher(key: CacheKey) -> bool:
        return any(candidate(key) for candidate in matchers)

    return matcher
