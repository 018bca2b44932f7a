from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

from fastapi import HTTPException, status
from opentelemetry.trace import Status, StatusCode
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from pipeline_crm import audit, events
from pipeline_crm.crm.editor import DraftError, DraftIndexError, PipelineDraft, draft_store
from pipeline_crm.crm.gate import missing_required_fields
from pipeline_crm.crm.models import CRMCustomField, CRMDeal, utcnow
from pipeline_crm.crm.repositories import (
    custom_field_repository,
    deal_field_value_repository,
    deal_repository,
    pipeline_repository,
    profile_repository,
    stage_repository,
    user_role_repository,
)
from pipeline_crm.crm.roles import DEFAULT_ROLE, ROLE_ADMIN, Role, resolve_role
from pipeline_crm.crm.schemas import (
    DealCreate,
    DealMoveRead,
    DealRead,
    DraftFieldUpdate,
    DraftStageUpdate,
    DraftUpdate,
    FieldRead,
    FieldValueRead,
    GateCheckRead,
    MeRead,
    PipelineDraftPayload,
    PipelineDraftRead,
    PipelineRead,
    PipelineSnapshotRead,
    StageRead,
    UserRead,
)
from pipeline_crm.crm.snapshot import DealView, FieldView, PipelineSnapshot, load_snapshot
from pipeline_crm.metrics import observe_deal_move, observe_pipeline_save
from pipeline_crm.otel import get_tracer

logger = logging.getLogger("crm.service")
tracer = get_tracer("crm.service")

UNNAMED_USER = "Unnamed"
ISO_DATE_RE = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")


class CRMServiceError(HTTPException):
    """An HTTP error carrying the envelope code the route should report."""

    def __init__(self, status_code: int, code: str, detail: Any) -> None:
        super().__init__(status_code=status_code, detail=detail)
        self.code = code


@dataclass
class ActorUser:
    user_id: str
    role: Role = DEFAULT_ROLE
    email: str | None = None
    correlation_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass
class DealMoveResult:
    moved: bool
    deal_id: str
    stage_id: str
    missing_fields: list[FieldView] = field(default_factory=list)
    snapshot: PipelineSnapshot | None = None


def _pipeline_not_configured(status_code: int = status.HTTP_404_NOT_FOUND) -> CRMServiceError:
    return CRMServiceError(status_code, "crm_pipeline_not_configured", "no pipeline has been configured")


def _field_read(item: FieldView) -> FieldRead:
    return FieldRead.model_validate(item)


def _deal_read(deal: DealView) -> DealRead:
    return DealRead.model_validate(deal)


def to_snapshot_read(snapshot: PipelineSnapshot) -> PipelineSnapshotRead:
    return PipelineSnapshotRead(
        pipeline=PipelineRead.model_validate(snapshot.pipeline),
        stages=[
            StageRead(
                id=stage.id,
                name=stage.name,
                color=stage.color,
                position=stage.position,
                fields=[_field_read(item) for item in stage.fields],
                deal_ids=[deal.id for deal in snapshot.deals_in_stage(stage.id)],
            )
            for stage in snapshot.stages
        ],
        deals=[_deal_read(deal) for deal in snapshot.deals],
        orphaned_deal_ids=[deal.id for deal in snapshot.orphaned_deals()],
        loaded_at=snapshot.loaded_at,
    )


def to_draft_read(draft: PipelineDraft) -> PipelineDraftRead:
    return PipelineDraftRead.model_validate(draft)


def to_move_read(result: DealMoveResult) -> DealMoveRead:
    return DealMoveRead(
        moved=result.moved,
        deal_id=result.deal_id,
        stage_id=result.stage_id,
        missing_fields=[_field_read(item) for item in result.missing_fields],
        snapshot=to_snapshot_read(result.snapshot) if result.snapshot is not None else None,
    )


class PipelineService:
    entity_type = "pipeline"

    def get_snapshot(self, session: Session) -> PipelineSnapshotRead:
        return to_snapshot_read(self.require_snapshot(session))

    def require_snapshot(self, session: Session) -> PipelineSnapshot:
        snapshot = load_snapshot(session)
        if snapshot is None:
            raise _pipeline_not_configured()
        return snapshot

    def save_from_payload(
        self, session: Session, actor_user: ActorUser, dto: PipelineDraftPayload
    ) -> PipelineSnapshotRead:
        try:
            draft = PipelineDraft.from_payload(dto)
        except DraftError as exc:
            raise CRMServiceError(status.HTTP_422_UNPROCESSABLE_ENTITY, "crm_pipeline_validation_failed", str(exc)) from exc
        return self.save_pipeline(session, actor_user, draft)

    def save_pipeline(self, session: Session, actor_user: ActorUser, draft: PipelineDraft) -> PipelineSnapshotRead:
        """Persist a draft as the full stage and field configuration of the pipeline.

        The pipeline row is updated (or created), every existing stage is deleted
        together with its fields, then the draft's stages and fields are inserted.
        Deals keep whatever ``stage_id`` they had, so deals in a stage that is not
        re-created are left orphaned. Each step is committed separately: a failure
        part way through leaves the steps already taken in place.
        """
        name = draft.name.strip()
        if not name:
            raise CRMServiceError(
                status.HTTP_422_UNPROCESSABLE_ENTITY, "crm_pipeline_validation_failed", "pipeline name is required"
            )
        if not draft.stages:
            raise CRMServiceError(
                status.HTTP_422_UNPROCESSABLE_ENTITY, "crm_pipeline_validation_failed", "at least one stage is required"
            )

        with tracer.start_as_current_span("crm.pipeline.save") as span:
            span.set_attribute("stage_count", len(draft.stages))
            try:
                existing = pipeline_repository.first(session)
                before: dict[str, Any] | None = None
                deleted_stage_count = 0
                if existing is not None:
                    pipeline_id = existing.id
                    before = {
                        "name": existing.name,
                        "description": existing.description,
                        "stage_ids": [row.id for row in stage_repository.list_for_pipeline(session, pipeline_id)],
                    }
                    pipeline_repository.update(
                        session,
                        pipeline_id,
                        name=name,
                        description=draft.description or None,
                        updated_at=utcnow(),
                    )
                    deleted_stage_count = stage_repository.delete_for_pipeline(session, pipeline_id)
                else:
                    pipeline = pipeline_repository.insert(
                        session,
                        name=name,
                        description=draft.description or None,
                        created_by=actor_user.user_id,
                    )
                    pipeline_id = pipeline.id
                span.set_attribute("pipeline_id", pipeline_id)

                for draft_stage in draft.stages:
                    stage = stage_repository.insert(
                        session,
                        pipeline_id=pipeline_id,
                        name=draft_stage.name,
                        color=draft_stage.color,
                        position=draft_stage.position,
                    )
                    if draft_stage.fields:
                        custom_field_repository.insert_many(
                            session,
                            [
                                {
                                    "stage_id": stage.id,
                                    "name": item.name,
                                    "field_type": item.field_type,
                                    "options": list(item.options) if item.options else None,
                                    "is_required": item.is_required,
                                    "position": item.position,
                                }
                                for item in draft_stage.fields
                            ],
                        )
            except SQLAlchemyError as exc:
                span.record_exception(exc)
                span.set_status(Status(StatusCode.ERROR))
                observe_pipeline_save("failed")
                raise

        observe_pipeline_save("saved")
        snapshot = self.require_snapshot(session)
        orphaned = [deal.id for deal in snapshot.orphaned_deals()]
        after = {
            "name": snapshot.pipeline.name,
            "description": snapshot.pipeline.description,
            "stage_ids": [stage.id for stage in snapshot.stages],
        }
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=pipeline_id,
            action="save" if before is not None else "create",
            before=before,
            after=after,
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.pipeline.saved",
                actor_user.user_id,
                {
                    "pipeline_id": pipeline_id,
                    "stage_ids": after["stage_ids"],
                    "deleted_stage_count": deleted_stage_count,
                    "orphaned_deal_ids": orphaned,
                },
            )
        )
        logger.info(
            "pipeline.saved",
            extra={"pipeline_id": pipeline_id, "stage_count": len(snapshot.stages), "user_id": actor_user.user_id},
        )
        if orphaned:
            logger.warning("pipeline.deals_orphaned", extra={"pipeline_id": pipeline_id, "operation": "save_pipeline"})
        return to_snapshot_read(snapshot)


class DraftService:
    """Admin editing of an in-memory pipeline draft, one open draft per user."""

    def __init__(self, pipeline_service: PipelineService) -> None:
        self.pipeline_service = pipeline_service

    def open_draft(self, session: Session, actor_user: ActorUser, *, from_persisted: bool = True) -> PipelineDraft:
        draft = PipelineDraft()
        if from_persisted:
            snapshot = load_snapshot(session)
            if snapshot is not None:
                draft = PipelineDraft.from_snapshot(snapshot)
        return draft_store.put(actor_user.user_id, draft)

    def get_draft(self, actor_user: ActorUser) -> PipelineDraft:
        draft = draft_store.get(actor_user.user_id)
        if draft is None:
            raise _draft_not_found()
        return draft

    def update_draft(self, actor_user: ActorUser, dto: DraftUpdate) -> PipelineDraft:
        def rename(draft: PipelineDraft) -> None:
            if dto.name is not None:
                draft.name = dto.name
            if dto.description is not None:
                draft.description = dto.description

        return self._edit(actor_user, rename)

    def discard_draft(self, actor_user: ActorUser) -> None:
        if not draft_store.discard(actor_user.user_id):
            raise _draft_not_found()

    def append_stage(self, actor_user: ActorUser) -> PipelineDraft:
        return self._edit(actor_user, lambda draft: draft.append_stage())

    def update_stage(self, actor_user: ActorUser, index: int, dto: DraftStageUpdate) -> PipelineDraft:
        return self._edit(actor_user, lambda draft: draft.update_stage(index, name=dto.name, color=dto.color))

    def remove_stage(self, actor_user: ActorUser, index: int) -> PipelineDraft:
        return self._edit(actor_user, lambda draft: draft.remove_stage(index))

    def append_field(self, actor_user: ActorUser, stage_index: int) -> PipelineDraft:
        return self._edit(actor_user, lambda draft: draft.append_field(stage_index))

    def update_field(
        self, actor_user: ActorUser, stage_index: int, field_index: int, dto: DraftFieldUpdate
    ) -> PipelineDraft:
        updates = dto.model_dump(exclude_unset=True)
        return self._edit(actor_user, lambda draft: draft.update_field(stage_index, field_index, **updates))

    def remove_field(self, actor_user: ActorUser, stage_index: int, field_index: int) -> PipelineDraft:
        return self._edit(actor_user, lambda draft: draft.remove_field(stage_index, field_index))

    def save_draft(self, session: Session, actor_user: ActorUser) -> PipelineSnapshotRead:
        draft = self.get_draft(actor_user)
        saved = self.pipeline_service.save_pipeline(session, actor_user, draft)
        draft_store.discard(actor_user.user_id)
        return saved

    @staticmethod
    def _edit(actor_user: ActorUser, change: Callable[[PipelineDraft], Any]) -> PipelineDraft:
        try:
            draft = draft_store.edit(actor_user.user_id, change)
        except DraftIndexError as exc:
            raise CRMServiceError(status.HTTP_404_NOT_FOUND, "crm_draft_item_not_found", str(exc)) from exc
        except DraftError as exc:
            raise CRMServiceError(status.HTTP_422_UNPROCESSABLE_ENTITY, "crm_draft_invalid", str(exc)) from exc
        if draft is None:
            raise _draft_not_found()
        return draft


def _draft_not_found() -> CRMServiceError:
    return CRMServiceError(status.HTTP_404_NOT_FOUND, "crm_draft_not_found", "no open pipeline draft")


class DealService:
    entity_type = "deal"

    def __init__(self, pipeline_service: PipelineService) -> None:
        self.pipeline_service = pipeline_service

    def create_deal(self, session: Session, actor_user: ActorUser, dto: DealCreate) -> DealRead:
        title = dto.title.strip()
        if not title:
            raise CRMServiceError(status.HTTP_422_UNPROCESSABLE_ENTITY, "crm_deal_validation_failed", "title is required")
        if not dto.stage_id:
            raise CRMServiceError(
                status.HTTP_422_UNPROCESSABLE_ENTITY, "crm_deal_validation_failed", "stage_id is required"
            )

        pipeline = pipeline_repository.first(session)
        if pipeline is None:
            raise _pipeline_not_configured(status.HTTP_422_UNPROCESSABLE_ENTITY)
        stage = stage_repository.get(session, dto.stage_id)
        if stage is None or stage.pipeline_id != pipeline.id:
            raise CRMServiceError(status.HTTP_404_NOT_FOUND, "crm_stage_not_found", "stage not found")

        deal = deal_repository.insert(
            session,
            pipeline_id=pipeline.id,
            stage_id=stage.id,
            title=title,
            value=dto.value,
            owner_id=actor_user.user_id,
        )
        created = self._to_read(session, deal)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=deal.id,
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.deal.created",
                actor_user.user_id,
                {"deal_id": deal.id, "pipeline_id": pipeline.id, "stage_id": stage.id},
            )
        )
        logger.info("deal.created", extra={"deal_id": deal.id, "stage_id": stage.id, "user_id": actor_user.user_id})
        return created

    def check_move(self, session: Session, actor_user: ActorUser, deal_id: str, stage_id: str) -> GateCheckRead:
        snapshot = self.pipeline_service.require_snapshot(session)
        self._require_deal_and_stage(snapshot, deal_id, stage_id)
        missing = missing_required_fields(snapshot, deal_id, stage_id)
        return GateCheckRead(
            deal_id=deal_id,
            stage_id=stage_id,
            allowed=not missing,
            missing_fields=[_field_read(item) for item in missing],
        )

    def move_deal(self, session: Session, actor_user: ActorUser, deal_id: str, stage_id: str) -> DealMoveResult:
        """Move a deal into a stage if every required field of that stage has a recorded value.

        A blocked move is reported through the result and changes nothing.
        """
        with tracer.start_as_current_span("crm.deal.move") as span:
            span.set_attribute("deal_id", deal_id)
            span.set_attribute("stage_id", stage_id)
            snapshot = self.pipeline_service.require_snapshot(session)
            deal = self._require_deal_and_stage(snapshot, deal_id, stage_id)

            missing = missing_required_fields(snapshot, deal_id, stage_id)
            if missing:
                span.set_attribute("moved", False)
                observe_deal_move("blocked")
                logger.info(
                    "deal.move_blocked",
                    extra={
                        "deal_id": deal_id,
                        "stage_id": stage_id,
                        "missing_fields": [item.name for item in missing],
                    },
                )
                return DealMoveResult(moved=False, deal_id=deal_id, stage_id=stage_id, missing_fields=missing)

            try:
                deal_repository.update_stage(session, deal_id, stage_id)
            except SQLAlchemyError:
                observe_deal_move("failed")
                raise
            span.set_attribute("moved", True)

        observe_deal_move("moved")
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=deal_id,
            action="move",
            before={"stage_id": deal.stage_id},
            after={"stage_id": stage_id},
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.deal.stage_changed",
                actor_user.user_id,
                {"deal_id": deal_id, "from_stage_id": deal.stage_id, "to_stage_id": stage_id},
            )
        )
        logger.info("deal.moved", extra={"deal_id": deal_id, "stage_id": stage_id, "user_id": actor_user.user_id})
        return DealMoveResult(
            moved=True,
            deal_id=deal_id,
            stage_id=stage_id,
            snapshot=self.pipeline_service.require_snapshot(session),
        )

    def set_field_value(
        self, session: Session, actor_user: ActorUser, deal_id: str, field_id: str, value: str
    ) -> FieldValueRead:
        deal, custom_field = self._require_deal_field(session, deal_id, field_id)
        self._validate_value(custom_field, value)
        existing = deal_field_value_repository.find(session, deal.id, custom_field.id)
        before = {"value": existing.value} if existing is not None else None

        row = deal_field_value_repository.upsert(session, deal_id=deal.id, field_id=custom_field.id, value=value)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=deal.id,
            action="set_field_value",
            before=before,
            after={"field_id": custom_field.id, "value": value},
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.deal.field_value_set",
                actor_user.user_id,
                {"deal_id": deal.id, "field_id": custom_field.id},
            )
        )
        return FieldValueRead.model_validate(row)

    def clear_field_value(self, session: Session, actor_user: ActorUser, deal_id: str, field_id: str) -> None:
        deal, custom_field = self._require_deal_field(session, deal_id, field_id)
        if deal_field_value_repository.delete(session, deal.id, custom_field.id) == 0:
            return
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=deal.id,
            action="clear_field_value",
            before={"field_id": custom_field.id},
            after=None,
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.deal.field_value_cleared",
                actor_user.user_id,
                {"deal_id": deal.id, "field_id": custom_field.id},
            )
        )

    def _require_deal_and_stage(self, snapshot: PipelineSnapshot, deal_id: str, stage_id: str) -> DealView:
        deal = snapshot.deal(deal_id)
        if deal is None:
            raise CRMServiceError(status.HTTP_404_NOT_FOUND, "crm_deal_not_found", "deal not found")
        if snapshot.stage(stage_id) is None:
            raise CRMServiceError(status.HTTP_404_NOT_FOUND, "crm_stage_not_found", "stage not found")
        return deal

    def _require_deal_field(self, session: Session, deal_id: str, field_id: str) -> tuple[CRMDeal, CRMCustomField]:
        deal = deal_repository.get(session, deal_id)
        if deal is None:
            raise CRMServiceError(status.HTTP_404_NOT_FOUND, "crm_deal_not_found", "deal not found")
        custom_field = custom_field_repository.get(session, field_id)
        stage = stage_repository.get(session, custom_field.stage_id) if custom_field is not None else None
        if custom_field is None or stage is None or stage.pipeline_id != deal.pipeline_id:
            raise CRMServiceError(status.HTTP_404_NOT_FOUND, "crm_field_not_found", "custom field not found")
        return deal, custom_field

    def _validate_value(self, custom_field: CRMCustomField, value: str) -> None:
        if value == "":
            return
        if custom_field.field_type == "number":
            try:
                valid = Decimal(value.strip()).is_finite()
            except InvalidOperation:
                valid = False
            if not valid:
                self._invalid_value(custom_field, "must be a number")
        elif custom_field.field_type == "date":
            try:
                if ISO_DATE_RE.fullmatch(value) is None:
                    raise ValueError(value)
                date.fromisoformat(value)
            except ValueError:
                self._invalid_value(custom_field, "must be a date (YYYY-MM-DD)")
        elif custom_field.field_type == "select":
            if custom_field.options and value not in custom_field.options:
                self._invalid_value(custom_field, f"must be one of: {', '.join(custom_field.options)}")

    @staticmethod
    def _invalid_value(custom_field: CRMCustomField, reason: str) -> None:
        raise CRMServiceError(
            status.HTTP_422_UNPROCESSABLE_ENTITY,
            "crm_field_value_invalid",
            {"field_id": custom_field.id, "field": custom_field.name, "reason": reason},
        )

    def _to_read(self, session: Session, deal: CRMDeal) -> DealRead:
        owner = profile_repository.get(session, deal.owner_id)
        return DealRead(
            id=deal.id,
            title=deal.title,
            value=deal.value,
            stage_id=deal.stage_id,
            owner_id=deal.owner_id,
            owner_name=owner.full_name if owner is not None else None,
            field_values={},
        )


class UserService:
    entity_type = "user_role"

    def whoami(self, session: Session, actor_user: ActorUser) -> MeRead:
        profile = profile_repository.get(session, actor_user.user_id)
        return MeRead(
            id=actor_user.user_id,
            email=actor_user.email,
            full_name=profile.full_name if profile is not None else None,
            role=actor_user.role,
        )

    def list_users(self, session: Session) -> list[UserRead]:
        roles: dict[str, Any] = {}
        for row in user_role_repository.list_all(session):
            roles.setdefault(row.user_id, row)
        return [
            UserRead(
                id=profile.id,
                full_name=profile.full_name or UNNAMED_USER,
                role=resolve_role(roles.get(profile.id)),
            )
            for profile in profile_repository.list_all(session)
        ]

    def change_role(self, session: Session, actor_user: ActorUser, user_id: str, role: Role) -> UserRead:
        profile = profile_repository.get(session, user_id)
        if profile is None:
            raise CRMServiceError(status.HTTP_404_NOT_FOUND, "crm_user_not_found", "user not found")

        previous = resolve_role(user_role_repository.find_for_user(session, user_id))
        user_role_repository.replace(session, user_id, role)
        audit.record(
            actor_user_id=actor_user.user_id,
            entity_type=self.entity_type,
            entity_id=user_id,
            action="change_role",
            before={"role": previous},
            after={"role": role},
            correlation_id=actor_user.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "crm.user.role_changed",
                actor_user.user_id,
                {"user_id": user_id, "previous_role": previous, "role": role},
            )
        )
        logger.info("user.role_changed", extra={"user_id": user_id, "operation": "change_role"})
        return UserRead(id=profile.id, full_name=profile.full_name or UNNAMED_USER, role=role)
