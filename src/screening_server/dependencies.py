"""FastAPI dependency injection — provides DB sessions, SDK components, and the acting account.

Each request that touches the database gets a fresh ``AsyncSession`` via
``get_db()``.  The session is committed on success and rolled back on error,
matching the SDK convention where components and repositories call
``flush()`` but never ``commit()``.
"""

from typing import AsyncGenerator

from fastapi import Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from screening_db.engine import get_session_factory
from screening_rules.definitions import DefinitionStore
from screening_rules.orchestrator import ScreeningOrchestrator
from screening_rules.projector import TriageProjector


# ------------------------------------------------------------------
# Database session — transaction boundary lives here
# ------------------------------------------------------------------

async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async DB session; commit on success, rollback on error.

    The SDK's repository methods call ``flush()`` but never ``commit()``,
    so this dependency is the single place where transactions are finalised.
    """
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


# ------------------------------------------------------------------
# SDK components — stashed on app.state during lifespan
# ------------------------------------------------------------------

def get_orchestrator(request: Request) -> ScreeningOrchestrator:
    return request.app.state.orchestrator


def get_projector(request: Request) -> TriageProjector:
    return request.app.state.projector


def get_definition_store(request: Request) -> DefinitionStore:
    return request.app.state.definitions


# ------------------------------------------------------------------
# Acting account — extracted from the X-Account-ID header
# ------------------------------------------------------------------

async def get_account_id(
    x_account_id: str | None = Header(None, alias="X-Account-ID"),
) -> str:
    """Extract the acting account from the ``X-Account-ID`` header.

    Returns 401 if the header is missing.  Authentication itself happens
    upstream (API gateway); this service trusts the header.
    """
    if not x_account_id or not x_account_id.strip():
        raise HTTPException(status_code=401, detail="X-Account-ID header is required")
    return x_account_id.strip()
