from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from app.crm.api import (
    ActorUser,
    get_current_user,
    get_integrity_services,
    integrity_error_response,
    require_role,
)
from app.platform.integrity.errors import IntegrityServiceError, NotFoundError, ValidationFailedError
from app.platform.integrity.schemas import (
    IntegrityActionRequest,
    IntegrityActionResponse,
    IntegrityCheckResult,
    PerformanceReport,
    utcnow,
)
from app.platform.integrity.services import IntegrityServices


router = APIRouter(prefix="/api/admin", tags=["admin"])


def _validate_in_organization(
    services: IntegrityServices,
    user: ActorUser,
    entity_type: str,
    entity_id: str,
) -> IntegrityCheckResult:
    row = services.store.find_by_id(entity_type, entity_id)
    if row is not None and row["organization_id"] != user.organization_id:
        raise NotFoundError(entity_type, entity_id)
    return services.validator.validate_entity(entity_type, entity_id)


@router.get("/integrity", response_model=None)
def get_integrity(
    request: Request,
    organization: bool = Query(default=False),
    entity_type: str | None = Query(default=None),
    entity_id: str | None = Query(default=None),
    user: ActorUser = Depends(get_current_user),
    services: IntegrityServices = Depends(get_integrity_services),
) -> IntegrityActionResponse | JSONResponse:
    require_role(user, "admin")
    try:
        if organization:
            results = services.validator.validate_organization(user.organization_id)
            return IntegrityActionResponse(message="Organization integrity check completed", data=results)
        if entity_type and entity_id:
            result = _validate_in_organization(services, user, entity_type, entity_id)
            return IntegrityActionResponse(message="Integrity check completed", data=[result])
    except IntegrityServiceError as exc:
        return integrity_error_response(request, exc)

    return IntegrityActionResponse(
        message="Specify entity_type and entity_id for specific checks, or organization=true for full check",
        data={"cache_stats": services.cache.get_cache_stats()},
    )


@router.post("/integrity", response_model=None)
def run_integrity_action(
    request: Request,
    payload: IntegrityActionRequest,
    user: ActorUser = Depends(get_current_user),
    services: IntegrityServices = Depends(get_integrity_services),
) -> IntegrityActionResponse | JSONResponse:
    require_role(user, "admin")
    data: Any
    try:
        if payload.action == "validate":
            if payload.entity_type and payload.entity_id:
                data = _validate_in_organization(services, user, payload.entity_type, payload.entity_id)
            elif payload.entity_type or payload.entity_id:
                raise ValidationFailedError("entity_type and entity_id must be given together")
            else:
                data = services.validator.validate_organization(user.organization_id)
        elif payload.action == "invalidate_cache":
            if payload.entity_type and payload.entity_id:
                removed = services.cache.invalidate_entity_cache(payload.entity_type, payload.entity_id)
                data = {
                    "message": f"Cache invalidated for {payload.entity_type}:{payload.entity_id}",
                    "removed": removed,
                }
            else:
                removed = services.cache.invalidate_organization_cache(user.organization_id)
                data = {
                    "message": f"Organization cache invalidated for {user.organization_id}",
                    "removed": removed,
                }
        else:
            data = services.cache.get_cache_stats()
    except IntegrityServiceError as exc:
        return integrity_error_response(request, exc)

    return IntegrityActionResponse(message=f"Integrity {payload.action} completed successfully", data=data)


@router.get("/performance", response_model=PerformanceReport)
def get_performance(
    user: ActorUser = Depends(get_current_user),
    services: IntegrityServices = Depends(get_integrity_services),
) -> PerformanceReport:
    require_role(user, "admin")
    return PerformanceReport(
        metrics=services.monitor.get_metrics(),
        timestamp=utcnow(),
        summary=services.monitor.get_summary(),
    )


@router.delete("/performance")
def reset_performance(
    user: ActorUser = Depends(get_current_user),
    services: IntegrityServices = Depends(get_integrity_services),
) -> dict[str, str]:
    require_role(user, "admin")
    services.monitor.reset_metrics()
    return {"message": "Performance metrics reset successfully"}
