"""Read-side view of the active pipeline.

A snapshot is assembled from a batch of independent reads with no transaction
spanning them. It reflects the store as of ``loaded_at`` at the earliest; writes
that land while the batch runs may or may not be visible. Callers reload after
every mutation instead of patching a snapshot in place.
"""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal

from sqlalchemy.orm import Session

from pipeline_crm.crm.models import utcnow
from pipeline_crm.crm.repositories import (
    custom_field_repository,
    deal_field_value_repository,
    deal_repository,
    pipeline_repository,
    profile_repository,
    stage_repository,
)
from pipeline_crm.metrics import observe_snapshot_load
from pipeline_crm.otel import get_tracer

logger = logging.getLogger("crm.service")
tracer = get_tracer("crm.snapshot")


@dataclass(frozen=True)
class FieldView:
    id: str
    stage_id: str
    name: str
    field_type: str
    is_required: bool
    position: int
    options: list[str] | None = None


@dataclass(frozen=True)
class StageView:
    id: str
    name: str
    color: str | None
    position: int
    fields: list[FieldView] = field(default_factory=list)


@dataclass(frozen=True)
class DealView:
    id: str
    title: str
    value: Decimal | None
    stage_id: str
    owner_id: str
    owner_name: str | None
    field_values: dict[str, str | None] = field(default_factory=dict)


@dataclass(frozen=True)
class PipelineView:
    id: str
    name: str
    description: str | None
    created_by: str


@dataclass(frozen=True)
class PipelineSnapshot:
    pipeline: PipelineView
    stages: list[StageView]
    deals: list[DealView]
    loaded_at: datetime

    def stage(self, stage_id: str) -> StageView | None:
        for stage in self.stages:
            if stage.id == stage_id:
                return stage
        return None

    def deal(self, deal_id: str) -> DealView | None:
        for deal in self.deals:
            if deal.id == deal_id:
                return deal
        return None

    def required_fields(self, stage_id: str) -> list[FieldView]:
        stage = self.stage(stage_id)
        if stage is None:
            return []
        return [item for item in stage.fields if item.is_required]

    def filled_field_ids(self, deal_id: str) -> set[str]:
        deal = self.deal(deal_id)
        if deal is None:
            return set()
        return set(deal.field_values.keys())

    def deals_in_stage(self, stage_id: str) -> list[DealView]:
        return [deal for deal in self.deals if deal.stage_id == stage_id]

    def orphaned_deals(self) -> list[DealView]:
        stage_ids = {stage.id for stage in self.stages}
        return [deal for deal in self.deals if deal.stage_id not in stage_ids]


def load_snapshot(session: Session) -> PipelineSnapshot | None:
    """Load the first pipeline with its stages, fields, deals, owner names and field values.

    Returns ``None`` when no pipeline has been configured yet.
    """
    started = time.perf_counter()
    with tracer.start_as_current_span("crm.snapshot.load") as span:
        loaded_at = utcnow()
        pipeline = pipeline_repository.first(session)
        if pipeline is None:
            return None
        span.set_attribute("pipeline_id", pipeline.id)

        stage_rows = stage_repository.list_for_pipeline(session, pipeline.id)
        field_rows = custom_field_repository.list_for_stages(session, [row.id for row in stage_rows])
        deal_rows = deal_repository.list_for_pipeline(session, pipeline.id)
        owner_names = profile_repository.names_for(session, [row.owner_id for row in deal_rows])
        value_rows = deal_field_value_repository.list_for_deals(session, [row.id for row in deal_rows])

        fields_by_stage: dict[str, list[FieldView]] = defaultdict(list)
        for row in field_rows:
            fields_by_stage[row.stage_id].append(
                FieldView(
                    id=row.id,
                    stage_id=row.stage_id,
                    name=row.name,
                    field_type=row.field_type,
                    is_required=bool(row.is_required),
                    position=row.position,
                    options=list(row.options) if row.options else None,
                )
            )

        values_by_deal: dict[str, dict[str, str | None]] = defaultdict(dict)
        for row in value_rows:
            values_by_deal[row.deal_id][row.field_id] = row.value

        stages = [
            StageView(
                id=row.id,
                name=row.name,
                color=row.color,
                position=row.position,
                fields=fields_by_stage.get(row.id, []),
            )
            for row in stage_rows
        ]
        deals = [
            DealView(
                id=row.id,
                title=row.title,
                value=row.value,
                stage_id=row.stage_id,
                owner_id=row.owner_id,
                owner_name=owner_names.get(row.owner_id),
                field_values=dict(values_by_deal.get(row.id, {})),
            )
            for row in deal_rows
        ]
        span.set_attribute("stage_count", len(stages))
        span.set_attribute("deal_count", len(deals))

    elapsed = time.perf_counter() - started
    observe_snapshot_load(elapsed)
    logger.debug(
        "snapshot.loaded",
        extra={"pipeline_id": pipeline.id, "stage_count": len(stages), "duration_ms": round(elapsed * 1000, 2)},
    )
    return PipelineSnapshot(
        pipeline=PipelineView(
            id=pipeline.id,
            name=pipeline.name,
            description=pipeline.description,
            created_by=pipeline.created_by,
        ),
        stages=stages,
        deals=deals,
        loaded_at=loaded_at,
    )
