from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True)
class ConflictInfo:
    entity_type: str
    entity_id: str
    expected_version: int
    actual_version: int | None
    conflicting_fields: list[str] = field(default_factory=list)


class IntegrityServiceError(Exception):
    """Base error for the data-integrity and caching layer."""

    code = "integrity_error"


class NotFoundError(IntegrityServiceError):
    code = "not_found"

    def __init__(self, entity_type: str, entity_id: str) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} {entity_id} not found")


class ValidationFailedError(IntegrityServiceError):
    """Raised when content fails structural or referential validation before a write."""

    code = "validation_failed"

    def __init__(self, message: str, details: Any = None) -> None:
        self.details = details
        super().__init__(message)


class DataIntegrityError(ValidationFailedError):
    """Raised when freshly fetched data fails the caller-supplied validation."""

    code = "data_integrity_failed"


class ConflictError(IntegrityServiceError):
    code = "conflict"

    def __init__(self, message: str, conflict: ConflictInfo | None = None) -> None:
        self.conflict = conflict
        super().__init__(message)


class DatabaseError(IntegrityServiceError):
    code = "database_error"


class UnsupportedEntityTypeError(IntegrityServiceError):
    code = "unsupported_entity_type"

    def __init__(self, entity_type: str) -> None:
        self.entity_type = entity_type
        super().__init__(f"Unsupported entity type: {entity_type}")
