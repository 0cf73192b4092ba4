"""Session, step and triage views — the contract between the SDK and API callers.

These models are decoupled from the ORM models in ``screening_db`` so API
consumers never see database internals.

Step types:
  - QuestionsStep: questions of the current session screening
  - CompletedStep: the session reached a terminal state

``StepResult`` covers both so callers can dispatch on ``type``.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel

from screening_rules.errors import FieldError
from screening_rules.models.evaluation import RoutingToken
from screening_rules.models.question import QuestionPayload


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------

class SessionInfo(BaseModel):
    """Public summary of a session."""

    session_id: str
    flow_id: str
    flow_version_id: str
    flow_version_number: int
    target_account_id: str
    created_by_account_id: str
    patient_order_id: Optional[str] = None
    status: str
    completed: bool
    skipped: bool
    crisis_indicated: bool
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


class AnswerView(BaseModel):
    answer_option_id: str
    code: str
    text: Optional[str] = None


class AnsweredQuestionView(BaseModel):
    answered_question_id: str
    question_id: str
    question_code: str
    answers: list[AnswerView]
    answered_at: datetime


class SessionScreeningView(BaseModel):
    session_screening_id: str
    screening_id: str
    screening_name: str
    screening_version_id: str
    screening_version_number: int
    screening_order: int
    completed: bool
    completed_at: Optional[datetime] = None
    score: Optional[int] = None
    answered_questions: list[AnsweredQuestionView]


class SessionState(BaseModel):
    """Full projection of a session: every screening, valid answer, score and flag."""

    session: SessionInfo
    skipped_at: Optional[datetime] = None
    crisis_indicated_at: Optional[datetime] = None
    destination: Optional[RoutingToken] = None
    current_session_screening_id: Optional[str] = None
    screenings: list[SessionScreeningView]


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------

class SubmitAnswersResult(BaseModel):
    valid: bool
    errors: list[FieldError] = []
    crisis_indicated: bool = False
    # False when an identical answer set was already stored
    changed: bool = False


class ScreeningCompletion(BaseModel):
    session_screening_id: str
    score: int


class AdvanceResult(BaseModel):
    """Either the next screening was appended or the session completed."""

    completed: bool
    skipped: bool = False
    next_session_screening_id: Optional[str] = None
    next_screening_name: Optional[str] = None
    screening_order: Optional[int] = None
    destination: Optional[RoutingToken] = None
    crisis_indicated: bool


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

class QuestionsStep(BaseModel):
    type: Literal["questions"] = "questions"
    session_screening_id: str
    screening_name: str
    screening_order: int
    # True once every required question has a valid answer set
    ready_to_complete: bool
    questions: list[QuestionPayload]


class CompletedStep(BaseModel):
    type: Literal["completed", "skipped"]
    destination: Optional[RoutingToken] = None
    crisis_indicated: bool


StepResult = QuestionsStep | CompletedStep


# ---------------------------------------------------------------------------
# Recommendations & triage
# ---------------------------------------------------------------------------

class RecommendationView(BaseModel):
    support_role_id: str
    weight: float


class TriageView(BaseModel):
    focus_type: str
    care_type: str
    reason: Optional[str] = None


class TriageGroupView(BaseModel):
    triage_group_id: str
    patient_order_id: str
    care_type: str
    source: str
    override_reason: Optional[str] = None
    account_id: str
    screening_session_id: Optional[str] = None
    active: bool
    created_at: datetime
    triages: list[TriageView]


# ---------------------------------------------------------------------------
# Definitions
# ---------------------------------------------------------------------------

class FlowInfo(BaseModel):
    flow_id: str
    name: str
    flow_type: str
    institution_id: Optional[str] = None
    active_flow_version_id: Optional[str] = None


class FlowVersionInfo(BaseModel):
    flow_version_id: str
    flow_id: str
    version_number: int
    initial_screening_id: str
    skippable: bool
    orchestration_function: dict
    results_function: Optional[dict] = None
    destination_function: dict
    crisis_destination: Optional[str] = None
    content_hash: Optional[str] = None
    active: bool
    created_at: datetime


class ScreeningInfo(BaseModel):
    screening_id: str
    name: str
    screening_type: str
    active_screening_version_id: Optional[str] = None


class ScreeningVersionInfo(BaseModel):
    screening_version_id: str
    screening_id: str
    version_number: int
    scoring_function: dict
    question_count: int
    content_hash: Optional[str] = None
    active: bool
    created_at: datetime
