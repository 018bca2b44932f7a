from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response
from sqlalchemy.orm import Session

from pipeline_crm.core.config import get_settings
from pipeline_crm.core.database import get_db
from pipeline_crm.crm.api import (
    deals_router,
    draft_router,
    get_current_user,
    pipeline_router,
    require_admin,
    user_service,
    users_router,
)
from pipeline_crm.crm.schemas import MeRead
from pipeline_crm.crm.service import ActorUser
from pipeline_crm.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(pipeline_router)
router.include_router(draft_router)
router.include_router(deals_router)
router.include_router(users_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"], response_model=MeRead)
def me(db: Session = Depends(get_db), user: ActorUser = Depends(get_current_user)) -> MeRead:
    return user_service.whoami(db, user)


@router.get("/metrics", tags=["system"])
def metrics(user: ActorUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    require_admin(user)
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
