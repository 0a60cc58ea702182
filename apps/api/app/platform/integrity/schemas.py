from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


class ConflictResolutionStrategy(str, Enum):
    FAIL = "FAIL"
    OVERWRITE = "OVERWRITE"
    MERGE = "MERGE"
    RETRY = "RETRY"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class IntegrityCheckResult(BaseModel):
    """Outcome of one integrity check. Errors flip ``is_valid``; warnings never do."""

    is_valid: bool = True
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    checked_at: datetime = Field(default_factory=utcnow)
    entity_type: str
    entity_id: str | None = None

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        self.is_valid = False

    def add_warning(self, message: str) -> None:
        self.warnings.append(message)

    @classmethod
    def failed(cls, entity_type: str, entity_id: str | None, message: str) -> IntegrityCheckResult:
        return cls(is_valid=False, errors=[message], entity_type=entity_type, entity_id=entity_id)


class CacheStats(BaseModel):
    size: int
    hits: int
    misses: int
    hit_rate: float | None = None
    miss_rate: float | None = None


class OperationMetrics(BaseModel):
    count: int
    total_time: float
    avg_time: float


class SlowOperation(BaseModel):
    name: str
    avg_time: float
    count: int


class PerformanceSummary(BaseModel):
    total_operations: int
    average_response_time: float
    slow_operations: list[SlowOperation]


class PerformanceReport(BaseModel):
    metrics: dict[str, OperationMetrics]
    timestamp: datetime
    summary: PerformanceSummary


IntegrityAction = Literal["validate", "invalidate_cache", "cache_stats"]


class IntegrityActionRequest(BaseModel):
    action: IntegrityAction
    entity_type: str | None = None
    entity_id: str | None = None


class IntegrityActionResponse(BaseModel):
    message: str
    data: Any = None


class SafeUpdateRequest(BaseModel):
    expected_version: int = Field(ge=1)
    patch: dict[str, Any] = Field(min_length=1)
    strategy: ConflictResolutionStrategy


class BatchReadRequest(BaseModel):
    ids: list[str] = Field(min_length=1, max_length=100)
