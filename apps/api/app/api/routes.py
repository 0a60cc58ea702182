from typing import Any

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.crm.api import get_integrity_services, router as crm_router
from app.metrics import render_metrics
from app.platform.integrity.api import router as integrity_admin_router
from app.platform.integrity.services import IntegrityServices

router = APIRouter()
router.include_router(crm_router)
router.include_router(integrity_admin_router)


@router.get("/health", tags=["system"])
def health(services: IntegrityServices = Depends(get_integrity_services)) -> dict[str, Any]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "version": settings.app_version,
        "environment": settings.app_env,
        "cache_entries": services.cache.store.size(),
    }


@router.get("/me", tags=["auth"])
def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str] | None]:
    return {"sub": user.sub, "organization_id": user.organization_id, "roles": user.roles}


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if not {"system.metrics.read", "admin"} & set(user.roles):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    payload, content_type = render_metrics()
    return Response(content=payload, media_type=content_type)
