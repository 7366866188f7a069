from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from app.core.auth import AuthUser, get_current_user
from app.core.config import get_settings
from app.core.rbac import require_permissions
from app.crm.api import automations_router, deals_router, directory_router, pipelines_router
from app.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(pipelines_router)
router.include_router(directory_router)
router.include_router(deals_router)
router.include_router(automations_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "automation_queue": settings.automation_queue_backend,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str]]:
    return {"sub": user.sub, "roles": user.roles}


@router.get("/metrics", tags=["system"])
def metrics(_: AuthUser = Depends(require_permissions("system.metrics.read"))) -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
