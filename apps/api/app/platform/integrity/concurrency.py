from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace
from pydantic import ValidationError

from app import events
from app.crm.models import utcnow
from app.crm.schemas import DEAL_STAGES, PATCH_SCHEMAS, REFERENCE_FIELDS
from app.crm.store import IMMUTABLE_FIELDS, EntityStore, UpdateOperation
from app.metrics import observe_optimistic_lock_conflict
from app.platform.integrity.errors import (
    ConflictError,
    ConflictInfo,
    IntegrityServiceError,
    NotFoundError,
    UnsupportedEntityTypeError,
    ValidationFailedError,
)
from app.platform.integrity.manager import CacheManager
from app.platform.integrity.schemas import ConflictResolutionStrategy


logger = logging.getLogger("app.integrity.concurrency")
tracer = trace.get_tracer("app.integrity.concurrency")

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 0.1


@dataclass(slots=True)
class UpdateResult:
    success: bool
    data: dict[str, Any] | None = None
    conflict: ConflictInfo | None = None
    retry_count: int = 0
    error: str | None = None


@dataclass(slots=True)
class _PreparedPatch:
    changes: dict[str, Any]
    options: dict[str, Any]


class ConcurrencyController:
    """Version-checked updates against an ``EntityStore``.

    Every write is a conditional update on ``row_version``; a version mismatch,
    whether seen up front or lost to a concurrent writer, is resolved by the
    caller's ``ConflictResolutionStrategy``.
    """

    def __init__(
        self,
        store: EntityStore,
        *,
        cache_manager: CacheManager | None = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.cache_manager = cache_manager
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self._sleep = sleep

    def get_with_version(self, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        return self.store.find_by_id(entity_type, entity_id)

    def update_with_version(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: int,
        patch: Mapping[str, Any],
        strategy: ConflictResolutionStrategy,
        *,
        actor_user_id: str | None = None,
    ) -> UpdateResult:
        with tracer.start_as_current_span("integrity.safe_update") as span:
            span.set_attribute("entity_type", entity_type)
            span.set_attribute("entity_id", entity_id)
            span.set_attribute("strategy", strategy.value)

            prepared = self._prepare(entity_type, patch)
            current = self._load(entity_type, entity_id)
            self._check_references(entity_type, current, prepared.changes)
            result = self._write_resolving_conflicts(
                entity_type, entity_id, expected_version, prepared, strategy, current
            )

            span.set_attribute("success", result.success)
            span.set_attribute("retry_count", result.retry_count)

        if result.success and result.data is not None:
            self._after_write(entity_type, result.data, prepared.changes, actor_user_id)
        return result

    def safe_update(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: int,
        patch: Mapping[str, Any],
        strategy: ConflictResolutionStrategy,
        *,
        actor_user_id: str | None = None,
    ) -> dict[str, Any]:
        result = self.update_with_version(
            entity_type, entity_id, expected_version, patch, strategy, actor_user_id=actor_user_id
        )
        if not result.success or result.data is None:
            raise ConflictError(_conflict_message(entity_type, entity_id, result.conflict), result.conflict)
        return result.data

    def safe_batch_update(
        self,
        updates: Sequence[UpdateOperation],
        strategy: ConflictResolutionStrategy,
        *,
        actor_user_id: str | None = None,
    ) -> list[UpdateResult]:
        """Apply several versioned updates.

        With ``FAIL`` the whole batch is one store transaction: any conflict or
        validation error leaves every row untouched. Other strategies resolve
        each update on its own and report one ``UpdateResult`` per item; an item
        that is missing or invalid fails alone, with the reason in ``error``.
        """
        if strategy is not ConflictResolutionStrategy.FAIL:
            return [self._update_item(update, strategy, actor_user_id) for update in updates]

        operations: list[UpdateOperation] = []
        prepared_by_operation: list[_PreparedPatch] = []
        for update in updates:
            if update.expected_version is None:
                raise ValidationFailedError(f"expected_version is required for {update.entity_type} {update.entity_id}")
            prepared = self._prepare(update.entity_type, update.patch)
            current = self._load(update.entity_type, update.entity_id)
            self._check_references(update.entity_type, current, prepared.changes)
            if current["row_version"] != update.expected_version:
                conflict = _conflict_info(
                    update.entity_type, update.entity_id, update.expected_version, current, prepared.changes
                )
                self._record_conflict(update.entity_type, update.entity_id, strategy, 0)
                raise ConflictError("Batch update conflict", conflict)
            operations.append(
                UpdateOperation(update.entity_type, update.entity_id, prepared.changes, update.expected_version)
            )
            prepared_by_operation.append(prepared)

        try:
            rows = self.store.transaction(operations)
        except ConflictError as exc:
            if exc.conflict is not None:
                self._record_conflict(exc.conflict.entity_type, exc.conflict.entity_id, strategy, 0)
            raise ConflictError("Batch update conflict", exc.conflict) from exc

        for operation, prepared, row in zip(operations, prepared_by_operation, rows):
            self._after_write(operation.entity_type, row, prepared.changes, actor_user_id)
        return [UpdateResult(success=True, data=row) for row in rows]

    def _write_resolving_conflicts(
        self,
        entity_type: str,
        entity_id: str,
        expected_version: int,
        prepared: _PreparedPatch,
        strategy: ConflictResolutionStrategy,
        current: dict[str, Any],
    ) -> UpdateResult:
        retry_count = 0
        while True:
            values = prepared.changes
            write_version = expected_version
            if current["row_version"] != expected_version:
                conflict = _conflict_info(entity_type, entity_id, expected_version, current, prepared.changes)
                self._record_conflict(entity_type, entity_id, strategy, retry_count)

                if strategy is ConflictResolutionStrategy.FAIL:
                    return UpdateResult(success=False, conflict=conflict, retry_count=retry_count)
                if strategy is ConflictResolutionStrategy.RETRY:
                    if retry_count >= self.max_retries:
                        return UpdateResult(success=False, conflict=conflict, retry_count=retry_count)
                    retry_count += 1
                    self._sleep(self.retry_delay_seconds * retry_count)
                    expected_version = current["row_version"]
                    current = self._load(entity_type, entity_id)
                    continue

                write_version = current["row_version"]
                if strategy is ConflictResolutionStrategy.MERGE:
                    values = _merge_changes(entity_type, current, prepared.changes, prepared.options)

            try:
                data = self.store.update(entity_type, entity_id, values, expected_version=write_version)
            except ConflictError as exc:
                # Lost the conditional update to a concurrent writer.
                self._record_conflict(entity_type, entity_id, strategy, retry_count)
                if strategy is not ConflictResolutionStrategy.RETRY or retry_count >= self.max_retries:
                    return UpdateResult(success=False, conflict=exc.conflict, retry_count=retry_count)
                retry_count += 1
                self._sleep(self.retry_delay_seconds * retry_count)
                current = self._load(entity_type, entity_id)
                expected_version = current["row_version"]
                continue

            return UpdateResult(success=True, data=data, retry_count=retry_count)

    def _prepare(self, entity_type: str, patch: Mapping[str, Any]) -> _PreparedPatch:
        schema = PATCH_SCHEMAS.get(entity_type)
        if schema is None:
            raise UnsupportedEntityTypeError(entity_type)

        immutable = sorted(set(patch) & IMMUTABLE_FIELDS)
        if immutable:
            raise ValidationFailedError(f"immutable {entity_type} fields: {', '.join(immutable)}")

        try:
            parsed = schema.model_validate(dict(patch))
        except ValidationError as exc:
            raise ValidationFailedError(
                f"invalid {entity_type} patch",
                details=exc.errors(include_url=False, include_context=False),
            ) from exc

        changes = parsed.changes()
        options = {name: changes.pop(name) for name in schema.control_fields if name in changes}
        if not changes:
            raise ValidationFailedError(f"{entity_type} patch has no changes")
        return _PreparedPatch(changes=changes, options=options)

    def _load(self, entity_type: str, entity_id: str) -> dict[str, Any]:
        current = self.store.find_by_id(entity_type, entity_id)
        if current is None:
            raise NotFoundError(entity_type, entity_id)
        return current

    def _check_references(self, entity_type: str, current: Mapping[str, Any], changes: Mapping[str, Any]) -> None:
        for field, target_type in REFERENCE_FIELDS.items():
            target_id = changes.get(field)
            if target_id is None:
                continue
            target = self.store.find_by_id(target_type, target_id)
            if target is None:
                raise ValidationFailedError(
                    f"{target_type} {target_id} referenced by {entity_type}.{field} does not exist",
                    details={"field": field},
                )
            if target["organization_id"] != current["organization_id"]:
                raise ValidationFailedError(
                    f"{target_type} {target_id} belongs to a different organization",
                    details={"field": field},
                )

    def _update_item(
        self,
        update: UpdateOperation,
        strategy: ConflictResolutionStrategy,
        actor_user_id: str | None,
    ) -> UpdateResult:
        try:
            return self.update_with_version(
                update.entity_type,
                update.entity_id,
                update.expected_version or 0,
                update.patch,
                strategy,
                actor_user_id=actor_user_id,
            )
        except IntegrityServiceError as exc:
            logger.warning(
                "batch_item_failed",
                extra={"entity_type": update.entity_type, "entity_id": update.entity_id, "error": str(exc)},
            )
            return UpdateResult(success=False, error=str(exc))

    def _record_conflict(
        self,
        entity_type: str,
        entity_id: str,
        strategy: ConflictResolutionStrategy,
        retry_count: int,
    ) -> None:
        observe_optimistic_lock_conflict(entity_type, strategy.value)
        logger.warning(
            "optimistic_lock_conflict",
            extra={
                "entity_type": entity_type,
                "entity_id": entity_id,
                "strategy": strategy.value,
                "retry_count": retry_count,
            },
        )

    def _after_write(
        self,
        entity_type: str,
        row: Mapping[str, Any],
        changes: Mapping[str, Any],
        actor_user_id: str | None,
    ) -> None:
        if self.cache_manager is not None:
            self.cache_manager.invalidate_entity_cache(entity_type, row["id"])
            self.cache_manager.invalidate_list_caches(entity_type, row["organization_id"])

        events.publish(
            {
                "event_id": str(uuid.uuid4()),
                "event_type": f"crm.{entity_type}.updated",
                "occurred_at": utcnow().isoformat(),
                "actor_user_id": actor_user_id,
                "organization_id": row["organization_id"],
                "payload": {
                    f"{entity_type}_id": row["id"],
                    "row_version": row["row_version"],
                    "changed_fields": sorted(changes),
                },
            }
        )


def _conflict_info(
    entity_type: str,
    entity_id: str,
    expected_version: int,
    current: Mapping[str, Any],
    changes: Mapping[str, Any],
) -> ConflictInfo:
    return ConflictInfo(
        entity_type=entity_type,
        entity_id=entity_id,
        expected_version=expected_version,
        actual_version=current["row_version"],
        conflicting_fields=sorted(name for name, value in changes.items() if current.get(name) != value),
    )


def _conflict_message(entity_type: str, entity_id: str, conflict: ConflictInfo | None) -> str:
    if conflict is None:
        return f"Concurrent modification detected for {entity_type} {entity_id}"
    return (
        f"Concurrent modification detected: expected version {conflict.expected_version}, "
        f"got {conflict.actual_version}"
    )


def _merge_changes(
    entity_type: str,
    current: Mapping[str, Any],
    changes: Mapping[str, Any],
    options: Mapping[str, Any],
) -> dict[str, Any]:
    merged = dict(changes)
    if entity_type != "deal" or "stage" not in merged or options.get("force_stage_change"):
        return merged
    # Stages only move forward on merge.
    if current["stage"] in DEAL_STAGES and DEAL_STAGES.index(merged["stage"]) < DEAL_STAGES.index(current["stage"]):
        merged["stage"] = current["stage"]
    return merged
