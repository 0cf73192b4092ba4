"""Session endpoints — start, answer, complete, advance, skip and read sessions.

All endpoints require the ``X-Account-ID`` header.  The acting account is
recorded as the session creator and as the author of submitted answers.
"""

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from screening_rules.models.session import (
    AdvanceResult,
    RecommendationView,
    ScreeningCompletion,
    SessionInfo,
    SessionState,
    StepResult,
    SubmitAnswersResult,
)
from screening_rules.orchestrator import ScreeningOrchestrator

from screening_server.config import DEFAULT_PAGE_LIMIT, MAX_PAGE_LIMIT
from screening_server.dependencies import get_account_id, get_db, get_orchestrator

router = APIRouter(tags=["sessions"])


# ------------------------------------------------------------------
# Request models
# ------------------------------------------------------------------

class StartSessionRequest(BaseModel):
    """Body for POST /sessions.

    Either ``flow_id`` or ``flow_type`` selects the flow.  ``target_account_id``
    defaults to the acting account (self-screening).
    """
    flow_id: str | None = None
    flow_type: str | None = None
    target_account_id: str | None = None
    patient_order_id: str | None = None
    institution_id: str | None = None


class SubmitAnswersRequest(BaseModel):
    """Body for POST /sessions/{session_id}/answers."""
    question_id: str
    answer_option_ids: list[str] = []
    freeform_text: str | None = None


class SkipRequest(BaseModel):
    force: bool = False


# ------------------------------------------------------------------
# Endpoints
# ------------------------------------------------------------------

@router.post("/sessions", status_code=201)
async def start_session(
    body: StartSessionRequest,
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
    orchestrator: ScreeningOrchestrator = Depends(get_orchestrator),
) -> SessionInfo:
    """Start a session on the flow's active version.

    Returns 201 on success, 404 if no published flow matches, 422 if the
    accounts or patient order are invalid.
    """
    return await orchestrator.start_session(
        db,
        target_account_id=body.target_account_id or account_id,
        created_by_account_id=account_id,
        flow_id=body.flow_id,
        flow_type=body.flow_type,
        patient_order_id=body.patient_order_id,
        institution_id=body.institution_id,
    )


@router.get("/sessions")
async def list_sessions(
    target_account_id: str | None = None,
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
    orchestrator: ScreeningOrchestrator = Depends(get_orchestrator),
    limit: int = Query(DEFAULT_PAGE_LIMIT, ge=1, le=MAX_PAGE_LIMIT),
    offset: int = Query(0, ge=0),
) -> list[SessionInfo]:
    """List sessions of an account (default: the acting account), most recent first."""
    return await orchestrator.list_sessions(
        db, target_account_id or account_id, limit=limit, offset=offset,
    )


@router.get("/sessions/{session_id}")
async def get_session_state(
    session_id: str,
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
    orchestrator: ScreeningOrchestrator = Depends(get_orchestrator),
) -> SessionState:
    """Full session state: screenings, valid answers, scores, flags, destination."""
    return await orchestrator.get_session_state(db, session_id)


@router.get("/sessions/{session_id}/step")
async def get_current_step(
    session_id: str,
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
    orchestrator: ScreeningOrchestrator = Depends(get_orchestrator),
) -> StepResult:
    """Return the current step.

    The response shape depends on the session:
      - ``questions``: questions of the current screening with stored answers
      - ``completed`` / ``skipped``: the session's outcome
    """
    return await orchestrator.get_current_step(db, session_id)


@router.post("/sessions/{session_id}/answers")
async def submit_answers(
    session_id: str,
    body: SubmitAnswersRequest,
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
    orchestrator: ScreeningOrchestrator = Depends(get_orchestrator),
) -> SubmitAnswersResult:
    """Submit the answer set for one question of the current screening.

    Invalid answers come back with ``valid: false`` and field errors
    (HTTP 200); nothing is stored in that case.
    """
    return await orchestrator.submit_answers(
        db,
        session_id,
        question_id=body.question_id,
        answer_option_ids=body.answer_option_ids,
        freeform_text=body.freeform_text,
        account_id=account_id,
    )


@router.post("/sessions/{session_id}/screenings/{session_screening_id}/complete")
async def complete_screening(
    session_id: str,
    session_screening_id: str,
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
    orchestrator: ScreeningOrchestrator = Depends(get_orchestrator),
) -> ScreeningCompletion:
    """Score and complete a session screening.  422 if required answers are missing."""
    return await orchestrator.complete_screening(db, session_id, session_screening_id)


@router.post("/sessions/{session_id}/advance")
async def advance(
    session_id: str,
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
    orchestrator: ScreeningOrchestrator = Depends(get_orchestrator),
) -> AdvanceResult:
    """Move to the next screening or complete the session.

    503 with ``kind`` and ``retryable`` when a strategy fails; the session
    is unchanged and the call can be repeated.
    """
    return await orchestrator.advance(db, session_id, account_id=account_id)


@router.post("/sessions/{session_id}/skip")
async def skip_session(
    session_id: str,
    body: SkipRequest | None = None,
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
    orchestrator: ScreeningOrchestrator = Depends(get_orchestrator),
) -> SessionInfo:
    """Skip the rest of the session (one-way)."""
    force = body.force if body is not None else False
    return await orchestrator.skip_session(db, session_id, force=force)


@router.get("/sessions/{session_id}/recommendations")
async def get_recommendations(
    session_id: str,
    account_id: str = Depends(get_account_id),
    db: AsyncSession = Depends(get_db),
    orchestrator: ScreeningOrchestrator = Depends(get_orchestrator),
) -> list[RecommendationView]:
    """Support-role recommendations of a completed session, heaviest first."""
    return await orchestrator.get_recommendations(db, session_id)
