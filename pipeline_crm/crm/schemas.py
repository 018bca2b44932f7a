from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from pipeline_crm.crm.roles import Role


FieldType = Literal["text", "number", "date", "select"]


class FieldRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    stage_id: str
    name: str
    field_type: FieldType
    is_required: bool
    position: int
    options: list[str] | None = None


class StageRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    color: str | None
    position: int
    fields: list[FieldRead] = Field(default_factory=list)
    deal_ids: list[str] = Field(default_factory=list)


class DealRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    value: Decimal | None
    stage_id: str
    owner_id: str
    owner_name: str | None
    field_values: dict[str, str | None] = Field(default_factory=dict)


class PipelineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    description: str | None
    created_by: str


class PipelineSnapshotRead(BaseModel):
    pipeline: PipelineRead
    stages: list[StageRead]
    deals: list[DealRead]
    orphaned_deal_ids: list[str] = Field(default_factory=list)
    loaded_at: datetime


class DraftFieldPayload(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str | None = None
    name: str
    field_type: FieldType = "text"
    is_required: bool = False
    position: int = 0
    options: list[str] | None = None


class DraftStagePayload(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str | None = None
    name: str
    color: str
    position: int
    fields: list[DraftFieldPayload] = Field(default_factory=list)


class PipelineDraftPayload(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str = ""
    description: str | None = ""
    stages: list[DraftStagePayload] = Field(default_factory=list)


class PipelineDraftRead(PipelineDraftPayload):
    pipeline_id: str | None = None


class DraftOpenRequest(BaseModel):
    from_persisted: bool = True


class DraftUpdate(BaseModel):
    name: str | None = None
    description: str | None = None


class DraftStageUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    color: str | None = Field(default=None, min_length=1)


class DraftFieldUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    field_type: FieldType | None = None
    is_required: bool | None = None
    options: list[str] | None = None


class DealCreate(BaseModel):
    title: str = ""
    value: Decimal | None = None
    stage_id: str | None = None


class DealMoveRequest(BaseModel):
    stage_id: str = Field(min_length=1)


class GateCheckRead(BaseModel):
    deal_id: str
    stage_id: str
    allowed: bool
    missing_fields: list[FieldRead] = Field(default_factory=list)


class DealMoveRead(BaseModel):
    moved: bool
    deal_id: str
    stage_id: str
    missing_fields: list[FieldRead] = Field(default_factory=list)
    snapshot: PipelineSnapshotRead | None = None


class FieldValueSet(BaseModel):
    value: str


class FieldValueRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    deal_id: str
    field_id: str
    value: str | None
    updated_at: datetime


class UserRead(BaseModel):
    id: str
    full_name: str
    role: Role


class RoleChangeRequest(BaseModel):
    role: Role


class MeRead(BaseModel):
    id: str
    email: str | None
    full_name: str | None
    role: Role
