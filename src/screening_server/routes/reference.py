"""Reference data endpoints — care types, focus types, support roles.

Read-only endpoints exposing the closed enumerations the triage and
recommendation models use.  They don't require the account header since
the data is public reference information.
"""

from fastapi import APIRouter

from screening_db.models.enums import CareType, FocusType, SupportRoleId
from screening_rules.constants import (
    CARE_TYPE_LABELS,
    FOCUS_TYPE_LABELS,
    SUPPORT_ROLE_LABELS,
)

router = APIRouter(prefix="/reference", tags=["reference"])


# ------------------------------------------------------------------
# Endpoints
# ------------------------------------------------------------------

@router.get("/care-types")
def list_care_types() -> list[dict]:
    """Care types in increasing order of intensity."""
    return [
        {"id": c.value, "name": CARE_TYPE_LABELS.get(c.value, c.value), "priority": c.priority}
        for c in CareType
    ]


@router.get("/focus-types")
def list_focus_types() -> list[dict]:
    return [{"id": f.value, "name": FOCUS_TYPE_LABELS.get(f.value, f.value)} for f in FocusType]


@router.get("/support-roles")
def list_support_roles() -> list[dict]:
    return [
        {"id": r.value, "name": SUPPORT_ROLE_LABELS.get(r.value, r.value)} for r in SupportRoleId
    ]
