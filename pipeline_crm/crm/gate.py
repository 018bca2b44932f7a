from __future__ import annotations

from pipeline_crm.crm.snapshot import FieldView, PipelineSnapshot


def missing_required_fields(snapshot: PipelineSnapshot, deal_id: str, target_stage_id: str) -> list[FieldView]:
    """Required fields of the target stage the deal has no recorded value for, in display order.

    A recorded value counts as filled whatever its content, the empty string included.
    """
    required = snapshot.required_fields(target_stage_id)
    if not required:
        return []
    filled = snapshot.filled_field_ids(deal_id)
    return [item for item in required if item.id not in filled]


def can_advance(snapshot: PipelineSnapshot, deal_id: str, target_stage_id: str) -> bool:
    """Whether the deal may be placed into the target stage.

    Applies to any move, forward or backward.
    """
    return not missing_required_fields(snapshot, deal_id, target_stage_id)
