from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.context import get_correlation_id
from app.platform.integrity.errors import (
    ConflictError,
    DatabaseError,
    IntegrityServiceError,
    NotFoundError,
    UnsupportedEntityTypeError,
    ValidationFailedError,
)
from app.platform.integrity.schemas import BatchReadRequest, SafeUpdateRequest
from app.platform.integrity.services import IntegrityServices


router = APIRouter(prefix="/api/crm", tags=["crm"])


@dataclass
class ActorUser:
    user_id: str
    organization_id: str
    roles: set[str]
    correlation_id: str | None = None


@dataclass
class ErrorEnvelope:
    code: str
    message: str
    details: Any
    correlation_id: str | None


def error_response(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
) -> JSONResponse:
    correlation_id = getattr(request.state, "correlation_id", None) or get_correlation_id()
    envelope = ErrorEnvelope(code=code, message=message, details=details, correlation_id=correlation_id)
    return JSONResponse(status_code=status_code, content=asdict(envelope))


_ERROR_STATUS: tuple[tuple[type[IntegrityServiceError], int], ...] = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ValidationFailedError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ConflictError, status.HTTP_409_CONFLICT),
    (UnsupportedEntityTypeError, status.HTTP_400_BAD_REQUEST),
    (DatabaseError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def integrity_error_response(request: Request, exc: IntegrityServiceError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in _ERROR_STATUS if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    details: Any = None
    if isinstance(exc, ValidationFailedError):
        details = exc.details
    elif isinstance(exc, ConflictError) and exc.conflict is not None:
        details = asdict(exc.conflict)
    return error_response(request, status_code=status_code, code=exc.code, message=str(exc), details=details)


def get_current_user(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> ActorUser:
    if not auth_user.organization_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Organization-scoped token required")
    correlation_id = getattr(request.state, "correlation_id", None) or get_correlation_id()
    return ActorUser(
        user_id=auth_user.sub,
        organization_id=auth_user.organization_id,
        roles={str(role).lower() for role in auth_user.roles},
        correlation_id=correlation_id,
    )


def require_role(user: ActorUser, role: str) -> None:
    if role not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing role: {role}")


def get_integrity_services(request: Request) -> IntegrityServices:
    return request.app.state.integrity_services


def _load_in_organization(
    services: IntegrityServices,
    user: ActorUser,
    entity_type: str,
    entity_id: str,
) -> dict[str, Any]:
    """Cached read that reports rows of other organizations as missing."""

    def fetch() -> dict[str, Any]:
        row = services.store.find_by_id(entity_type, entity_id)
        if row is None:
            raise NotFoundError(entity_type, entity_id)
        return row

    row = services.cache.get_with_accuracy_check(
        entity_type,
        entity_id,
        fetch,
        validate_fn=lambda data: data is not None and data.get("id") == entity_id,
    )
    if row["organization_id"] != user.organization_id:
        raise NotFoundError(entity_type, entity_id)
    return row


@router.get("/{entity_type}/{entity_id}", response_model=None)
def get_entity(
    request: Request,
    entity_type: str,
    entity_id: str,
    user: ActorUser = Depends(get_current_user),
    services: IntegrityServices = Depends(get_integrity_services),
) -> dict[str, Any] | JSONResponse:
    try:
        return _load_in_organization(services, user, entity_type, entity_id)
    except IntegrityServiceError as exc:
        return integrity_error_response(request, exc)


@router.post("/{entity_type}/batch", response_model=None)
def get_entity_batch(
    request: Request,
    entity_type: str,
    payload: BatchReadRequest,
    user: ActorUser = Depends(get_current_user),
    services: IntegrityServices = Depends(get_integrity_services),
) -> list[dict[str, Any]] | JSONResponse:
    entity_ids = list(dict.fromkeys(payload.ids))

    def fetch(ordered_ids: list[str]) -> list[dict[str, Any]]:
        rows = [services.store.find_by_id(entity_type, entity_id) for entity_id in ordered_ids]
        return [row for row in rows if row is not None]

    try:
        rows = services.cache.get_batch_with_accuracy_check(
            entity_type,
            entity_ids,
            fetch,
            validate_fn=lambda data: len(data) == len(entity_ids),
        )
        foreign = next((row for row in rows if row["organization_id"] != user.organization_id), None)
        if foreign is not None:
            raise NotFoundError(entity_type, foreign["id"])
    except IntegrityServiceError as exc:
        return integrity_error_response(request, exc)
    return rows


@router.patch("/{entity_type}/{entity_id}", response_model=None)
def update_entity(
    request: Request,
    entity_type: str,
    entity_id: str,
    payload: SafeUpdateRequest,
    user: ActorUser = Depends(get_current_user),
    services: IntegrityServices = Depends(get_integrity_services),
) -> dict[str, Any] | JSONResponse:
    try:
        current = services.concurrency.get_with_version(entity_type, entity_id)
        if current is None or current["organization_id"] != user.organization_id:
            raise NotFoundError(entity_type, entity_id)
        with services.monitor.measure(f"crm.update:{entity_type}"):
            return services.concurrency.safe_update(
                entity_type,
                entity_id,
                payload.expected_version,
                payload.patch,
                payload.strategy,
                actor_user_id=user.user_id,
            )
    except IntegrityServiceError as exc:
        return integrity_error_response(request, exc)
