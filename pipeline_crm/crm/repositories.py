"""Pass-through access to the relational store.

Each repository maps one table. Every write is committed on its own, the way a
single request against the hosted store is: a multi-step operation built on top
of these calls is not atomic.
"""

from __future__ import annotations

from collections.abc import Iterable
from decimal import Decimal
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from pipeline_crm.crm.models import (
    CRMCustomField,
    CRMDeal,
    CRMDealFieldValue,
    CRMPipeline,
    CRMProfile,
    CRMStage,
    CRMUserRole,
    utcnow,
)


def _commit(session: Session, *rows: Any) -> None:
    session.commit()
    for row in rows:
        session.refresh(row)


class PipelineRepository:
    def first(self, session: Session) -> CRMPipeline | None:
        return session.scalar(select(CRMPipeline).order_by(CRMPipeline.created_at.asc()).limit(1))

    def get(self, session: Session, pipeline_id: str) -> CRMPipeline | None:
        return session.get(CRMPipeline, pipeline_id)

    def insert(self, session: Session, *, name: str, description: str | None, created_by: str) -> CRMPipeline:
        pipeline = CRMPipeline(name=name, description=description, created_by=created_by)
        session.add(pipeline)
        _commit(session, pipeline)
        return pipeline

    def update(self, session: Session, pipeline_id: str, **values: Any) -> None:
        session.execute(update(CRMPipeline).where(CRMPipeline.id == pipeline_id).values(**values))
        session.commit()


class StageRepository:
    def list_for_pipeline(self, session: Session, pipeline_id: str) -> list[CRMStage]:
        stmt = (
            select(CRMStage)
            .where(CRMStage.pipeline_id == pipeline_id)
            .order_by(CRMStage.position.asc(), CRMStage.insert_seq.asc())
        )
        return list(session.scalars(stmt).all())

    def get(self, session: Session, stage_id: str) -> CRMStage | None:
        return session.get(CRMStage, stage_id)

    def insert(self, session: Session, *, pipeline_id: str, name: str, color: str | None, position: int) -> CRMStage:
        last_seq = session.scalar(
            select(func.max(CRMStage.insert_seq)).where(CRMStage.pipeline_id == pipeline_id)
        )
        stage = CRMStage(
            pipeline_id=pipeline_id,
            name=name,
            color=color,
            position=position,
            insert_seq=(last_seq or 0) + 1,
        )
        session.add(stage)
        _commit(session, stage)
        return stage

    def delete_for_pipeline(self, session: Session, pipeline_id: str) -> int:
        """Delete every stage of a pipeline together with its fields and their recorded values."""
        stage_ids = select(CRMStage.id).where(CRMStage.pipeline_id == pipeline_id)
        field_ids = select(CRMCustomField.id).where(CRMCustomField.stage_id.in_(stage_ids))
        session.execute(delete(CRMDealFieldValue).where(CRMDealFieldValue.field_id.in_(field_ids)))
        session.execute(delete(CRMCustomField).where(CRMCustomField.stage_id.in_(stage_ids)))
        result = session.execute(delete(CRMStage).where(CRMStage.pipeline_id == pipeline_id))
        session.commit()
        session.expire_all()
        return result.rowcount or 0


class CustomFieldRepository:
    def list_for_stages(self, session: Session, stage_ids: Iterable[str]) -> list[CRMCustomField]:
        ids = list(stage_ids)
        if not ids:
            return []
        stmt = (
            select(CRMCustomField)
            .where(CRMCustomField.stage_id.in_(ids))
            .order_by(CRMCustomField.position.asc(), CRMCustomField.created_at.asc())
        )
        return list(session.scalars(stmt).all())

    def get(self, session: Session, field_id: str) -> CRMCustomField | None:
        return session.get(CRMCustomField, field_id)

    def insert_many(self, session: Session, rows: list[dict[str, Any]]) -> list[CRMCustomField]:
        fields = [CRMCustomField(**row) for row in rows]
        session.add_all(fields)
        _commit(session, *fields)
        return fields


class DealRepository:
    def list_for_pipeline(self, session: Session, pipeline_id: str) -> list[CRMDeal]:
        stmt = select(CRMDeal).where(CRMDeal.pipeline_id == pipeline_id).order_by(CRMDeal.created_at.asc())
        return list(session.scalars(stmt).all())

    def get(self, session: Session, deal_id: str) -> CRMDeal | None:
        return session.get(CRMDeal, deal_id)

    def insert(
        self,
        session: Session,
        *,
        pipeline_id: str,
        stage_id: str,
        title: str,
        value: Decimal | None,
        owner_id: str,
    ) -> CRMDeal:
        deal = CRMDeal(pipeline_id=pipeline_id, stage_id=stage_id, title=title, value=value, owner_id=owner_id)
        session.add(deal)
        _commit(session, deal)
        return deal

    def update_stage(self, session: Session, deal_id: str, stage_id: str) -> None:
        session.execute(
            update(CRMDeal).where(CRMDeal.id == deal_id).values(stage_id=stage_id, updated_at=utcnow())
        )
        session.commit()
        session.expire_all()


class DealFieldValueRepository:
    def list_for_deals(self, session: Session, deal_ids: Iterable[str]) -> list[CRMDealFieldValue]:
        ids = list(deal_ids)
        if not ids:
            return []
        stmt = select(CRMDealFieldValue).where(CRMDealFieldValue.deal_id.in_(ids))
        return list(session.scalars(stmt).all())

    def find(self, session: Session, deal_id: str, field_id: str) -> CRMDealFieldValue | None:
        return session.scalar(
            select(CRMDealFieldValue).where(
                CRMDealFieldValue.deal_id == deal_id,
                CRMDealFieldValue.field_id == field_id,
            )
        )

    def upsert(self, session: Session, *, deal_id: str, field_id: str, value: str) -> CRMDealFieldValue:
        row = self.find(session, deal_id, field_id)
        if row is None:
            row = CRMDealFieldValue(deal_id=deal_id, field_id=field_id)
        row.value = value
        row.updated_at = utcnow()
        session.add(row)
        _commit(session, row)
        return row

    def delete(self, session: Session, deal_id: str, field_id: str) -> int:
        result = session.execute(
            delete(CRMDealFieldValue).where(
                CRMDealFieldValue.deal_id == deal_id,
                CRMDealFieldValue.field_id == field_id,
            )
        )
        session.commit()
        return result.rowcount or 0


class ProfileRepository:
    def get(self, session: Session, user_id: str) -> CRMProfile | None:
        return session.get(CRMProfile, user_id)

    def list_all(self, session: Session) -> list[CRMProfile]:
        return list(session.scalars(select(CRMProfile).order_by(CRMProfile.created_at.asc())).all())

    def names_for(self, session: Session, user_ids: Iterable[str]) -> dict[str, str | None]:
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        rows = session.execute(select(CRMProfile.id, CRMProfile.full_name).where(CRMProfile.id.in_(ids))).all()
        return {row.id: row.full_name for row in rows}


class UserRoleRepository:
    def find_for_user(self, session: Session, user_id: str) -> CRMUserRole | None:
        return session.scalar(
            select(CRMUserRole).where(CRMUserRole.user_id == user_id).order_by(CRMUserRole.created_at.asc()).limit(1)
        )

    def list_all(self, session: Session) -> list[CRMUserRole]:
        return list(session.scalars(select(CRMUserRole).order_by(CRMUserRole.created_at.asc())).all())

    def replace(self, session: Session, user_id: str, role: str) -> CRMUserRole:
        session.execute(delete(CRMUserRole).where(CRMUserRole.user_id == user_id))
        session.commit()
        row = CRMUserRole(user_id=user_id, role=role)
        session.add(row)
        _commit(session, row)
        return row


pipeline_repository = PipelineRepository()
stage_repository = StageRepository()
custom_field_repository = CustomFieldRepository()
deal_repository = DealRepository()
deal_field_value_repository = DealFieldValueRepository()
profile_repository = ProfileRepository()
user_role_repository = UserRoleRepository()
