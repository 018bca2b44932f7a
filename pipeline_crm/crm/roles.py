from __future__ import annotations

from typing import Literal, get_args

from pipeline_crm.crm.models import CRMUserRole

Role = Literal["admin", "vendedor"]

ROLE_ADMIN: Role = "admin"
ROLE_SALESPERSON: Role = "vendedor"
DEFAULT_ROLE: Role = ROLE_SALESPERSON
VALID_ROLES: frozenset[str] = frozenset(get_args(Role))


def resolve_role(row: CRMUserRole | None) -> Role:
    """Map an optional role row to a role; users without a row are salespeople."""
    if row is None or row.role not in VALID_ROLES:
        return DEFAULT_ROLE
    return row.role  # type: ignore[return-value]
