from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from quotedesk.core.auth import AuthUser, get_current_user
from quotedesk.core.config import get_settings
from quotedesk.metrics import generate_metrics_payload, metrics_content_type
from quotedesk.quotations.api import router as quotations_router

METRICS_ROLE = "system.metrics.read"

router = APIRouter()
router.include_router(quotations_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {"status": "ok", "service": settings.app_name, "environment": settings.app_env}


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | bool | list[str] | None]:
    return {
        "sub": user.sub,
        "name": user.name,
        "roles": user.roles,
        "is_admin": user.is_admin,
        "quotation_role": "admin" if user.is_admin else "user",
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if METRICS_ROLE not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {METRICS_ROLE}")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
