from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pipeline_crm.context import get_correlation_id
from pipeline_crm.core.auth import AuthUser, get_current_user as get_auth_user
from pipeline_crm.core.database import get_db
from pipeline_crm.crm.repositories import user_role_repository
from pipeline_crm.crm.roles import resolve_role
from pipeline_crm.crm.schemas import (
    DealCreate,
    DealMoveRead,
    DealMoveRequest,
    DealRead,
    DraftFieldUpdate,
    DraftOpenRequest,
    DraftStageUpdate,
    DraftUpdate,
    FieldValueRead,
    FieldValueSet,
    GateCheckRead,
    PipelineDraftPayload,
    PipelineDraftRead,
    PipelineSnapshotRead,
    RoleChangeRequest,
    UserRead,
)
from pipeline_crm.crm.service import (
    ActorUser,
    CRMServiceError,
    DealService,
    DraftService,
    PipelineService,
    UserService,
    to_draft_read,
    to_move_read,
)
from pipeline_crm.metrics import observe_store_error

logger = logging.getLogger("crm.service")

pipeline_router = APIRouter(prefix="/api/crm", tags=["crm.pipeline"])
draft_router = APIRouter(prefix="/api/crm/pipeline/draft", tags=["crm.pipeline.draft"])
deals_router = APIRouter(prefix="/api/crm/deals", tags=["crm.deals"])
users_router = APIRouter(prefix="/api/crm/users", tags=["crm.users"])
pipeline_service = PipelineService()
draft_service = DraftService(pipeline_service)
deal_service = DealService(pipeline_service)
user_service = UserService()


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
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    payload = ErrorEnvelope(
        code=code,
        message=message,
        details=details,
        correlation_id=correlation_id,
    )
    return JSONResponse(status_code=status_code, content=payload.__dict__)


def http_error_response(request: Request, exc: HTTPException, code: str) -> JSONResponse:
    return error_response(
        request,
        status_code=exc.status_code,
        code=getattr(exc, "code", None) or code,
        message=str(exc.detail),
        details=exc.detail,
    )


STORE_ERROR_MESSAGE = "the data store could not complete the request"


class StoreUnavailableError(CRMServiceError):
    """Raised from dependencies, where no route handler can turn the failure into a response."""

    def __init__(self, operation: str) -> None:
        super().__init__(status.HTTP_503_SERVICE_UNAVAILABLE, "crm_store_error", STORE_ERROR_MESSAGE)
        self.operation = operation


def _record_store_error(db: Session, exc: SQLAlchemyError, operation: str) -> None:
    db.rollback()
    observe_store_error(operation)
    logger.exception("store.error", extra={"operation": operation, "error": type(exc).__name__})


def store_error_response(request: Request, db: Session, exc: SQLAlchemyError, operation: str) -> JSONResponse:
    _record_store_error(db, exc, operation)
    return error_response(
        request,
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        code="crm_store_error",
        message=STORE_ERROR_MESSAGE,
        details={"operation": operation},
    )


async def crm_service_error_handler(request: Request, exc: CRMServiceError) -> JSONResponse:
    if isinstance(exc, StoreUnavailableError):
        return error_response(
            request,
            status_code=exc.status_code,
            code=exc.code,
            message=STORE_ERROR_MESSAGE,
            details={"operation": exc.operation},
        )
    return http_error_response(request, exc, exc.code)


def get_current_user(
    request: Request,
    auth_user: AuthUser = Depends(get_auth_user),
    db: Session = Depends(get_db),
) -> ActorUser:
    correlation_id = get_correlation_id() or getattr(getattr(request.state, "context", None), "request_id", None)
    try:
        role_row = user_role_repository.find_for_user(db, auth_user.sub)
    except SQLAlchemyError as exc:
        _record_store_error(db, exc, "resolve_role")
        raise StoreUnavailableError("resolve_role") from exc
    return ActorUser(
        user_id=auth_user.sub,
        role=resolve_role(role_row),
        email=auth_user.email,
        correlation_id=correlation_id,
    )


def require_admin(user: ActorUser) -> None:
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="admin role required")


@pipeline_router.get("/pipeline", response_model=PipelineSnapshotRead)
def get_pipeline(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineSnapshotRead | JSONResponse:
    try:
        return pipeline_service.get_snapshot(db)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_pipeline_read_failed")
    except SQLAlchemyError as exc:
        return store_error_response(request, db, exc, "load_snapshot")


@pipeline_router.put("/pipeline", response_model=PipelineSnapshotRead)
def save_pipeline(
    request: Request,
    dto: PipelineDraftPayload,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineSnapshotRead | JSONResponse:
    try:
        require_admin(user)
        return pipeline_service.save_from_payload(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_pipeline_save_failed")
    except SQLAlchemyError as exc:
        return store_error_response(request, db, exc, "save_pipeline")


@draft_router.post("", response_model=PipelineDraftRead, status_code=status.HTTP_201_CREATED)
def open_draft(
    request: Request,
    dto: DraftOpenRequest | None = None,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineDraftRead | JSONResponse:
    from_persisted = dto.from_persisted if dto is not None else True
    try:
        require_admin(user)
        return to_draft_read(draft_service.open_draft(db, user, from_persisted=from_persisted))
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_draft_open_failed")
    except SQLAlchemyError as exc:
        return store_error_response(request, db, exc, "load_snapshot")


@draft_router.get("", response_model=PipelineDraftRead)
def get_draft(
    request: Request,
    user: ActorUser = Depends(get_current_user),
) -> PipelineDraftRead | JSONResponse:
    try:
        require_admin(user)
        return to_draft_read(draft_service.get_draft(user))
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_draft_read_failed")


@draft_router.patch("", response_model=PipelineDraftRead)
def update_draft(
    request: Request,
    dto: DraftUpdate,
    user: ActorUser = Depends(get_current_user),
) -> PipelineDraftRead | JSONResponse:
    try:
        require_admin(user)
        return to_draft_read(draft_service.update_draft(user, dto))
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_draft_update_failed")


@draft_router.delete("", status_code=status.HTTP_204_NO_CONTENT)
def discard_draft(
    request: Request,
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        require_admin(user)
        draft_service.discard_draft(user)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_draft_discard_failed")


@draft_router.post("/stages", response_model=PipelineDraftRead, status_code=status.HTTP_201_CREATED)
def append_draft_stage(
    request: Request,
    user: ActorUser = Depends(get_current_user),
) -> PipelineDraftRead | JSONResponse:
    try:
        require_admin(user)
        return to_draft_read(draft_service.append_stage(user))
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_draft_update_failed")


@draft_router.patch("/stages/{stage_index}", response_model=PipelineDraftRead)
def update_draft_stage(
    request: Request,
    stage_index: int,
    dto: DraftStageUpdate,
    user: ActorUser = Depends(get_current_user),
) -> PipelineDraftRead | JSONResponse:
    try:
        require_admin(user)
        return to_draft_read(draft_service.update_stage(user, stage_index, dto))
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_draft_update_failed")


@draft_router.delete("/stages/{stage_index}", response_model=PipelineDraftRead)
def remove_draft_stage(
    request: Request,
    stage_index: int,
    user: ActorUser = Depends(get_current_user),
) -> PipelineDraftRead | JSONResponse:
    try:
        require_admin(user)
        return to_draft_read(draft_service.remove_stage(user, stage_index))
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_draft_update_failed")


@draft_router.post(
    "/stages/{stage_index}/fields",
    response_model=PipelineDraftRead,
    status_code=status.HTTP_201_CREATED,
)
def append_draft_field(
    request: Request,
    stage_index: int,
    user: ActorUser = Depends(get_current_user),
) -> PipelineDraftRead | JSONResponse:
    try:
        require_admin(user)
        return to_draft_read(draft_service.append_field(user, stage_index))
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_draft_update_failed")


@draft_router.patch("/stages/{stage_index}/fields/{field_index}", response_model=PipelineDraftRead)
def update_draft_field(
    request: Request,
    stage_index: int,
    field_index: int,
    dto: DraftFieldUpdate,
    user: ActorUser = Depends(get_current_user),
) -> PipelineDraftRead | JSONResponse:
    try:
        require_admin(user)
        return to_draft_read(draft_service.update_field(user, stage_index, field_index, dto))
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_draft_update_failed")


@draft_router.delete("/stages/{stage_index}/fields/{field_index}", response_model=PipelineDraftRead)
def remove_draft_field(
    request: Request,
    stage_index: int,
    field_index: int,
    user: ActorUser = Depends(get_current_user),
) -> PipelineDraftRead | JSONResponse:
    try:
        require_admin(user)
        return to_draft_read(draft_service.remove_field(user, stage_index, field_index))
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_draft_update_failed")


@draft_router.post("/save", response_model=PipelineSnapshotRead)
def save_draft(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> PipelineSnapshotRead | JSONResponse:
    try:
        require_admin(user)
        return draft_service.save_draft(db, user)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_pipeline_save_failed")
    except SQLAlchemyError as exc:
        return store_error_response(request, db, exc, "save_pipeline")


@deals_router.post("", response_model=DealRead, status_code=status.HTTP_201_CREATED)
def create_deal(
    request: Request,
    dto: DealCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealRead | JSONResponse:
    try:
        return deal_service.create_deal(db, user, dto)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_deal_create_failed")
    except SQLAlchemyError as exc:
        return store_error_response(request, db, exc, "create_deal")


@deals_router.get("/{deal_id}/can-advance", response_model=GateCheckRead)
def check_deal_move(
    request: Request,
    deal_id: str,
    stage_id: str = Query(min_length=1),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> GateCheckRead | JSONResponse:
    try:
        return deal_service.check_move(db, user, deal_id, stage_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_deal_gate_check_failed")
    except SQLAlchemyError as exc:
        return store_error_response(request, db, exc, "load_snapshot")


@deals_router.post("/{deal_id}/move", response_model=DealMoveRead)
def move_deal(
    request: Request,
    deal_id: str,
    dto: DealMoveRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DealMoveRead | JSONResponse:
    try:
        result = deal_service.move_deal(db, user, deal_id, dto.stage_id)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_deal_move_failed")
    except SQLAlchemyError as exc:
        return store_error_response(request, db, exc, "move_deal")

    if not result.moved:
        names = ", ".join(item.name for item in result.missing_fields)
        return error_response(
            request,
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            code="crm_deal_required_fields_missing",
            message=f"fill in the required fields before moving this deal: {names}",
            details={
                "deal_id": result.deal_id,
                "stage_id": result.stage_id,
                "missing_fields": [{"id": item.id, "name": item.name} for item in result.missing_fields],
            },
        )
    return to_move_read(result)


@deals_router.put("/{deal_id}/fields/{field_id}", response_model=FieldValueRead)
def set_deal_field_value(
    request: Request,
    deal_id: str,
    field_id: str,
    dto: FieldValueSet,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> FieldValueRead | JSONResponse:
    try:
        return deal_service.set_field_value(db, user, deal_id, field_id, dto.value)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_field_value_set_failed")
    except SQLAlchemyError as exc:
        return store_error_response(request, db, exc, "set_field_value")


@deals_router.delete("/{deal_id}/fields/{field_id}", status_code=status.HTTP_204_NO_CONTENT)
def clear_deal_field_value(
    request: Request,
    deal_id: str,
    field_id: str,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> Response:
    try:
        deal_service.clear_field_value(db, user, deal_id, field_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_field_value_clear_failed")
    except SQLAlchemyError as exc:
        return store_error_response(request, db, exc, "clear_field_value")


@users_router.get("", response_model=list[UserRead])
def list_users(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[UserRead] | JSONResponse:
    try:
        require_admin(user)
        return user_service.list_users(db)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_user_list_failed")
    except SQLAlchemyError as exc:
        return store_error_response(request, db, exc, "list_users")


@users_router.put("/{user_id}/role", response_model=UserRead)
def change_user_role(
    request: Request,
    user_id: str,
    dto: RoleChangeRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> UserRead | JSONResponse:
    try:
        require_admin(user)
        return user_service.change_role(db, user, user_id, dto.role)
    except HTTPException as exc:
        return http_error_response(request, exc, "crm_user_role_change_failed")
    except SQLAlchemyError as exc:
        return store_error_response(request, db, exc, "change_role")
