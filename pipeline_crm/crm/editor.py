"""In-memory pipeline configuration draft.

Stages and fields keep the ``position`` they were given when appended. Removing
an entry never renumbers the others, so positions may have gaps (or repeat, if
entries are appended after a removal); they are used for ordering only.
"""

from __future__ import annotations

import copy
import threading
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from pipeline_crm.crm.snapshot import PipelineSnapshot

STAGE_COLORS = ("#3B82F6", "#06B6D4", "#14B8A6", "#10B981", "#84CC16")
FIELD_TYPES = ("text", "number", "date", "select")


class DraftError(ValueError):
    pass


class DraftIndexError(DraftError, IndexError):
    pass


@dataclass
class DraftField:
    name: str
    field_type: str = "text"
    is_required: bool = False
    position: int = 0
    options: list[str] | None = None
    id: str | None = None


@dataclass
class DraftStage:
    name: str
    color: str
    position: int
    fields: list[DraftField] = field(default_factory=list)
    id: str | None = None


@dataclass
class PipelineDraft:
    name: str = ""
    description: str = ""
    stages: list[DraftStage] = field(default_factory=list)
    pipeline_id: str | None = None

    @classmethod
    def from_snapshot(cls, snapshot: PipelineSnapshot) -> PipelineDraft:
        return cls(
            name=snapshot.pipeline.name,
            description=snapshot.pipeline.description or "",
            pipeline_id=snapshot.pipeline.id,
            stages=[
                DraftStage(
                    id=stage.id,
                    name=stage.name,
                    color=stage.color or STAGE_COLORS[0],
                    position=stage.position,
                    fields=[
                        DraftField(
                            id=item.id,
                            name=item.name,
                            field_type=item.field_type,
                            is_required=item.is_required,
                            position=item.position,
                            options=list(item.options) if item.options else None,
                        )
                        for item in stage.fields
                    ],
                )
                for stage in snapshot.stages
            ],
        )

    @classmethod
    def from_payload(cls, payload: Any, pipeline_id: str | None = None) -> PipelineDraft:
        """Build a draft from a complete client-side draft (any object with draft-shaped attributes)."""
        stages: list[DraftStage] = []
        for stage in payload.stages:
            for item in stage.fields:
                if item.field_type not in FIELD_TYPES:
                    raise DraftError(f"field_type must be one of: {', '.join(FIELD_TYPES)}")
            stages.append(
                DraftStage(
                    id=stage.id,
                    name=stage.name,
                    color=stage.color,
                    position=stage.position,
                    fields=[
                        DraftField(
                            id=item.id,
                            name=item.name,
                            field_type=item.field_type,
                            is_required=item.is_required,
                            position=item.position,
                            options=list(item.options) if item.options else None,
                        )
                        for item in stage.fields
                    ],
                )
            )
        return cls(
            name=payload.name,
            description=payload.description or "",
            stages=stages,
            pipeline_id=pipeline_id,
        )

    def append_stage(self) -> DraftStage:
        count = len(self.stages)
        stage = DraftStage(
            name=f"Stage {count + 1}",
            color=STAGE_COLORS[count % len(STAGE_COLORS)],
            position=count,
        )
        self.stages.append(stage)
        return stage

    def remove_stage(self, index: int) -> DraftStage:
        self._stage_at(index)
        return self.stages.pop(index)

    def update_stage(self, index: int, *, name: str | None = None, color: str | None = None) -> DraftStage:
        stage = self._stage_at(index)
        if name is not None:
            stage.name = name
        if color is not None:
            stage.color = color
        return stage

    def append_field(self, stage_index: int) -> DraftField:
        stage = self._stage_at(stage_index)
        count = len(stage.fields)
        draft_field = DraftField(name=f"Field {count + 1}", position=count)
        stage.fields.append(draft_field)
        return draft_field

    def remove_field(self, stage_index: int, field_index: int) -> DraftField:
        stage = self._stage_at(stage_index)
        self._field_at(stage, field_index)
        return stage.fields.pop(field_index)

    def update_field(self, stage_index: int, field_index: int, **updates: Any) -> DraftField:
        stage = self._stage_at(stage_index)
        draft_field = self._field_at(stage, field_index)
        unknown = set(updates) - {"name", "field_type", "is_required", "options"}
        if unknown:
            raise DraftError(f"unsupported field attributes: {', '.join(sorted(unknown))}")
        field_type = updates.get("field_type")
        if field_type is not None and field_type not in FIELD_TYPES:
            raise DraftError(f"field_type must be one of: {', '.join(FIELD_TYPES)}")
        for key, value in updates.items():
            if value is not None or key == "options":
                setattr(draft_field, key, value)
        return draft_field

    def _stage_at(self, index: int) -> DraftStage:
        if index < 0 or index >= len(self.stages):
            raise DraftIndexError(f"no stage at index {index}")
        return self.stages[index]

    @staticmethod
    def _field_at(stage: DraftStage, index: int) -> DraftField:
        if index < 0 or index >= len(stage.fields):
            raise DraftIndexError(f"no field at index {index}")
        return stage.fields[index]


class DraftStore:
    """Open drafts, one per admin user, held in process memory.

    Drafts are only changed through ``edit``, under the store lock, and callers
    always receive a copy, so concurrent requests from one admin apply one after
    the other.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._drafts: dict[str, PipelineDraft] = {}

    def get(self, user_id: str) -> PipelineDraft | None:
        with self._lock:
            draft = self._drafts.get(user_id)
            return copy.deepcopy(draft) if draft is not None else None

    def put(self, user_id: str, draft: PipelineDraft) -> PipelineDraft:
        with self._lock:
            self._drafts[user_id] = draft
            return copy.deepcopy(draft)

    def edit(self, user_id: str, change: Callable[[PipelineDraft], Any]) -> PipelineDraft | None:
        """Apply ``change`` to the user's draft; ``None`` when no draft is open.

        Errors raised by ``change`` propagate; edits are made on a working copy
        so a failed change leaves the stored draft untouched.
        """
        with self._lock:
            current = self._drafts.get(user_id)
            if current is None:
                return None
            draft = copy.deepcopy(current)
            change(draft)
            self._drafts[user_id] = draft
            return copy.deepcopy(draft)

    def discard(self, user_id: str) -> bool:
        with self._lock:
            return self._drafts.pop(user_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._drafts.clear()


draft_store = DraftStore()
