from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from sqlalchemy import Select, and_, inspect, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.database import Base
from app.crm.models import ENTITY_MODELS, utcnow
from app.crm.schemas import ActivityFilter, CompanyFilter, ContactFilter, DealFilter, ListFilter
from app.platform.integrity.errors import (
    ConflictError,
    ConflictInfo,
    DatabaseError,
    NotFoundError,
    UnsupportedEntityTypeError,
    ValidationFailedError,
)


IMMUTABLE_FIELDS = frozenset({"id", "organization_id", "row_version", "created_at", "updated_at"})


@dataclass(frozen=True, slots=True)
class UpdateOperation:
    entity_type: str
    entity_id: str
    patch: Mapping[str, Any]
    expected_version: int | None = None


class EntityStore(Protocol):
    def find_by_id(self, entity_type: str, entity_id: str) -> dict[str, Any] | None: ...

    def find_many(self, entity_type: str, filter: ListFilter | None = None) -> list[dict[str, Any]]: ...

    def update(
        self,
        entity_type: str,
        entity_id: str,
        patch: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> dict[str, Any]: ...

    def transaction(self, operations: Sequence[UpdateOperation]) -> list[dict[str, Any]]: ...


def _model_for(entity_type: str) -> type[Base]:
    model = ENTITY_MODELS.get(entity_type)
    if model is None:
        raise UnsupportedEntityTypeError(entity_type)
    return model


def _to_dict(row: Base) -> dict[str, Any]:
    return {attr.key: getattr(row, attr.key) for attr in inspect(row).mapper.column_attrs}


class SqlAlchemyEntityStore:
    """Entity store backed by the CRM tables.

    Every call opens its own short-lived session from ``session_factory`` so a single
    store instance can be shared by concurrent request threads.
    """

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def find_by_id(self, entity_type: str, entity_id: str) -> dict[str, Any] | None:
        model = _model_for(entity_type)
        try:
            with self._session_factory() as session:
                row = session.get(model, entity_id)
                return _to_dict(row) if row is not None else None
        except SQLAlchemyError as exc:
            raise DatabaseError(f"failed to load {entity_type} {entity_id}: {exc}") from exc

    def find_many(self, entity_type: str, filter: ListFilter | None = None) -> list[dict[str, Any]]:
        model = _model_for(entity_type)
        if filter is not None and getattr(filter, "entity_type", entity_type) != entity_type:
            raise ValueError(f"{type(filter).__name__} cannot filter {entity_type} rows")

        query: Select[Any] = select(model)
        if filter is not None:
            query = self._apply_filter(query, model, filter)
            query = query.order_by(model.created_at, model.id)
            if filter.limit is not None:
                query = query.offset(filter.offset).limit(filter.limit)

        try:
            with self._session_factory() as session:
                return [_to_dict(row) for row in session.scalars(query).all()]
        except SQLAlchemyError as exc:
            raise DatabaseError(f"failed to list {entity_type}: {exc}") from exc

    def update(
        self,
        entity_type: str,
        entity_id: str,
        patch: Mapping[str, Any],
        *,
        expected_version: int | None = None,
    ) -> dict[str, Any]:
        operation = UpdateOperation(entity_type, entity_id, patch, expected_version)
        return self.transaction([operation])[0]

    def transaction(self, operations: Sequence[UpdateOperation]) -> list[dict[str, Any]]:
        with self._session_factory() as session:
            try:
                results = [self._apply_update(session, operation) for operation in operations]
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise ValidationFailedError("update violates a uniqueness constraint", details=str(exc.orig)) from exc
            except SQLAlchemyError as exc:
                session.rollback()
                raise DatabaseError(f"update failed: {exc}") from exc
            return results

    def _apply_update(self, session: Session, operation: UpdateOperation) -> dict[str, Any]:
        model = _model_for(operation.entity_type)
        columns = {attr.key for attr in inspect(model).column_attrs}

        unknown = sorted(set(operation.patch) - columns)
        if unknown:
            raise ValidationFailedError(f"unknown {operation.entity_type} fields: {', '.join(unknown)}")
        immutable = sorted(set(operation.patch) & IMMUTABLE_FIELDS)
        if immutable:
            raise ValidationFailedError(f"immutable {operation.entity_type} fields: {', '.join(immutable)}")

        values: dict[str, Any] = dict(operation.patch)
        values["row_version"] = model.row_version + 1
        values["updated_at"] = utcnow()

        conditions = [model.id == operation.entity_id]
        if operation.expected_version is not None:
            conditions.append(model.row_version == operation.expected_version)

        result = session.execute(
            update(model).where(and_(*conditions)).values(**values).execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            current = session.get(model, operation.entity_id, populate_existing=True)
            if current is None:
                raise NotFoundError(operation.entity_type, operation.entity_id)
            raise ConflictError(
                f"row_version conflict for {operation.entity_type} {operation.entity_id}",
                ConflictInfo(
                    entity_type=operation.entity_type,
                    entity_id=operation.entity_id,
                    expected_version=operation.expected_version or 0,
                    actual_version=current.row_version,
                ),
            )

        row = session.get(model, operation.entity_id, populate_existing=True)
        return _to_dict(row)

    @staticmethod
    def _apply_filter(query: Select[Any], model: type[Base], filter: ListFilter) -> Select[Any]:
        if filter.organization_id is not None:
            query = query.where(model.organization_id == filter.organization_id)

        if isinstance(filter, ContactFilter):
            if filter.company_id is not None:
                query = query.where(model.company_id == filter.company_id)
            if filter.search:
                pattern = f"%{filter.search}%"
                query = query.where(
                    or_(
                        model.first_name.ilike(pattern),
                        model.last_name.ilike(pattern),
                        model.email.ilike(pattern),
                    )
                )
        elif isinstance(filter, CompanyFilter):
            if filter.search:
                query = query.where(model.name.ilike(f"%{filter.search}%"))
            if filter.industry is not None:
                query = query.where(model.industry == filter.industry)
            if filter.size is not None:
                query = query.where(model.size == filter.size)
        elif isinstance(filter, DealFilter):
            if filter.stage is not None:
                query = query.where(model.stage == filter.stage)
            if filter.owner_id is not None:
                query = query.where(model.owner_id == filter.owner_id)
            if filter.contact_id is not None:
                query = query.where(model.contact_id == filter.contact_id)
            if filter.company_id is not None:
                query = query.where(model.company_id == filter.company_id)
            if filter.min_amount is not None:
                query = query.where(model.amount >= filter.min_amount)
            if filter.max_amount is not None:
                query = query.where(model.amount <= filter.max_amount)
            if filter.search:
                query = query.where(model.title.ilike(f"%{filter.search}%"))
        elif isinstance(filter, ActivityFilter):
            if filter.type is not None:
                query = query.where(model.type == filter.type)
            if filter.completed is not None:
                query = query.where(model.completed == filter.completed)
            if filter.contact_id is not None:
                query = query.where(model.contact_id == filter.contact_id)
            if filter.deal_id is not None:
                query = query.where(model.deal_id == filter.deal_id)
        return query
