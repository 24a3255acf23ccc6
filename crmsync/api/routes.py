from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from crmsync.core.auth import AuthUser, get_current_user
from crmsync.core.config import get_settings
from crmsync.ghl.api import cron_router, router as crm_admin_router
from crmsync.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(crm_admin_router)
router.include_router(cron_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str | bool]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "ghl_configured": bool(settings.ghl_api_key and settings.ghl_location_id),
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if "system.metrics.read" not in user.roles and not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Missing permission: system.metrics.read")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
