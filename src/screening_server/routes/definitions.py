"""Definition admin endpoints — flows and screenings, their versions and publishing.

Creating a version never changes what sessions run; only publishing swaps
the active version, and sessions already started stay on the version they
were pinned to.
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from screening_rules.definitions import DefinitionStore
from screening_rules.models.definition import FlowVersionPayload, ScreeningVersionPayload
from screening_rules.models.session import (
    FlowInfo,
    FlowVersionInfo,
    ScreeningInfo,
    ScreeningVersionInfo,
)

from screening_server.dependencies import get_account_id, get_db, get_definition_store

router = APIRouter(tags=["definitions"])


# ------------------------------------------------------------------
# Request models
# ------------------------------------------------------------------

class CreateFlowRequest(BaseModel):
    name: str
    flow_type: str = "standard"
    institution_id: str | None = None


class CreateScreeningRequest(BaseModel):
    name: str
    screening_type: str


# ------------------------------------------------------------------
# Flows
# ------------------------------------------------------------------

@router.post("/flows", status_code=201)
async def create_flow(
    body: CreateFlowRequest,
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
    store: DefinitionStore = Depends(get_definition_store),
) -> FlowInfo:
    """Create a flow head without any version.  409 if the name is taken."""
    return await store.create_flow(
        db, name=body.name, flow_type=body.flow_type, institution_id=body.institution_id,
    )


@router.post("/flows/{flow_id}/versions", status_code=201)
async def create_flow_version(
    flow_id: str,
    body: FlowVersionPayload,
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
    store: DefinitionStore = Depends(get_definition_store),
) -> FlowVersionInfo:
    """Append a new (unpublished) flow version."""
    return await store.create_flow_version(
        db, flow_id, body, created_by_account_id=account_id,
    )


@router.get("/flows/{flow_id}/versions")
async def list_flow_versions(
    flow_id: str,
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
    store: DefinitionStore = Depends(get_definition_store),
) -> list[FlowVersionInfo]:
    """Version history, newest first."""
    return await store.list_flow_versions(db, flow_id)


@router.post("/flows/{flow_id}/versions/{version_id}/publish")
async def publish_flow_version(
    flow_id: str,
    version_id: str,
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
    store: DefinitionStore = Depends(get_definition_store),
) -> FlowVersionInfo:
    """Make the version active.  404 if it does not belong to the flow."""
    return await store.publish_flow_version(db, flow_id, version_id)


@router.get("/flows/{flow_id}/active-version")
async def get_active_flow_version(
    flow_id: str,
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
    store: DefinitionStore = Depends(get_definition_store),
) -> FlowVersionInfo:
    return await store.get_active_flow_version(db, flow_id)


# ------------------------------------------------------------------
# Screenings
# ------------------------------------------------------------------

@router.get("/screenings")
async def list_screenings(
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
    store: DefinitionStore = Depends(get_definition_store),
) -> list[ScreeningInfo]:
    return await store.list_screenings(db)


@router.post("/screenings", status_code=201)
async def create_screening(
    body: CreateScreeningRequest,
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
    store: DefinitionStore = Depends(get_definition_store),
) -> ScreeningInfo:
    """Create a screening head without any version.  409 if the name is taken."""
    return await store.create_screening(
        db, name=body.name, screening_type=body.screening_type,
    )


@router.post("/screenings/{screening_id}/versions", status_code=201)
async def create_screening_version(
    screening_id: str,
    body: ScreeningVersionPayload,
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
    store: DefinitionStore = Depends(get_definition_store),
) -> ScreeningVersionInfo:
    """Append a new (unpublished) screening version with its full question set."""
    return await store.create_screening_version(
        db, screening_id, body, created_by_account_id=account_id,
    )


@router.get("/screenings/{screening_id}/versions")
async def list_screening_versions(
    screening_id: str,
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
    store: DefinitionStore = Depends(get_definition_store),
) -> list[ScreeningVersionInfo]:
    return await store.list_screening_versions(db, screening_id)


@router.post("/screenings/{screening_id}/versions/{version_id}/publish")
async def publish_screening_version(
    screening_id: str,
    version_id: str,
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
    store: DefinitionStore = Depends(get_definition_store),
) -> ScreeningVersionInfo:
    return await store.publish_screening_version(db, screening_id, version_id)


@router.get("/screenings/{screening_id}/active-version")
async def get_active_screening_version(
    screening_id: str,
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
    store: DefinitionStore = Depends(get_definition_store),
) -> ScreeningVersionInfo:
    return await store.get_active_screening_version(db, screening_id)
