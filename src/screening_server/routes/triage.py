"""Patient-order triage endpoints — active group, history, manual override, reset.

A patient order has exactly one active triage group once screened.
Overrides replace it atomically and require a reason; the previous group
is kept (inactive) for audit.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from screening_rules.models.session import TriageGroupView
from screening_rules.models.strategy import TriageRow
from screening_rules.projector import TriageProjector

from screening_server.dependencies import get_account_id, get_db, get_projector

router = APIRouter(prefix="/patient-orders", tags=["triage"])


# ------------------------------------------------------------------
# Request models
# ------------------------------------------------------------------

class TriageOverrideRequest(BaseModel):
    """Body for POST /patient-orders/{patient_order_id}/triage-overrides."""
    reason: str | None = None
    triages: list[TriageRow] = []


# ------------------------------------------------------------------
# Endpoints
# ------------------------------------------------------------------

@router.get("/{patient_order_id}/triage-groups")
async def list_triage_groups(
    patient_order_id: str,
    active_only: bool = False,
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
    projector: TriageProjector = Depends(get_projector),
) -> list[TriageGroupView]:
    """Every triage group of the patient order, newest first (or only the active one)."""
    if active_only:
        return [await projector.get_active_group(db, patient_order_id)]
    return await projector.list_groups(db, patient_order_id)


@router.post("/{patient_order_id}/triage-overrides", status_code=201)
async def create_triage_override(
    patient_order_id: str,
    body: TriageOverrideRequest,
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
    projector: TriageProjector = Depends(get_projector),
) -> TriageGroupView:
    """Replace the active triage with a manual one.

    422 without a reason or triage rows (the active group is unchanged);
    409 if another request is changing the same patient order.
    """
    return await projector.create_override(
        db,
        patient_order_id,
        triages=body.triages,
        reason=body.reason,
        account_id=account_id,
    )


@router.post("/{patient_order_id}/triage-reset")
async def reset_triage(
    patient_order_id: str,
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
    projector: TriageProjector = Depends(get_projector),
) -> TriageGroupView:
    """Reactivate the most recent computed triage group."""
    return await projector.reset_to_computed(db, patient_order_id, account_id=account_id)
