"""Evaluation inputs and outputs — the snapshot strategies read and what they return.

``SessionSnapshot`` is an immutable, self-contained copy of everything a
strategy may look at.  It carries no ORM objects, so evaluations can run in
a worker thread and are replayable from the snapshot alone.
"""

from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict

from screening_db.models.enums import CareType, FocusType

from screening_rules.models.strategy import SupportRoleWeight, TriageRow


class AnswerSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    question_id: str
    option_codes: list[str]
    # Per-option scores, parallel to option_codes
    option_scores: list[int] = []
    text: Optional[str] = None

    @property
    def score(self) -> int:
        return sum(self.option_scores)


class ScreeningSnapshot(BaseModel):
    """One session screening with its valid answers keyed by question code."""

    model_config = ConfigDict(frozen=True)

    session_screening_id: str
    screening_name: str
    screening_order: int
    completed: bool
    score: Optional[int] = None
    answers: dict[str, AnswerSnapshot] = {}


class ResultsOutput(BaseModel):
    """Output of a results strategy: support-role weights and triage rows."""

    model_config = ConfigDict(frozen=True)

    support_roles: list[SupportRoleWeight] = []
    triages: list[TriageRow] = []

    @property
    def care_type(self) -> CareType | None:
        """Highest-priority care type among the triage rows."""
        if not self.triages:
            return None
        return max((t.care_type for t in self.triages), key=lambda c: c.priority)


class SessionSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    session_id: str
    flow_version_id: str
    crisis_indicated: bool
    screenings: list[ScreeningSnapshot]
    account: dict[str, Any] = {}
    # Filled in before destination evaluation on a terminal advance
    results: Optional[ResultsOutput] = None

    @property
    def current(self) -> ScreeningSnapshot:
        """The most recently appended screening."""
        return self.screenings[-1]

    def score_of(self, screening_name: str) -> int | None:
        """Score of the latest scored screening with this name."""
        for screening in reversed(self.screenings):
            if screening.screening_name == screening_name and screening.score is not None:
                return screening.score
        return None

    @property
    def total_score(self) -> int:
        return sum(s.score for s in self.screenings if s.score is not None)

    def answer_of(self, screening_name: str, question_code: str) -> AnswerSnapshot | None:
        for screening in reversed(self.screenings):
            if screening.screening_name == screening_name:
                answer = screening.answers.get(question_code)
                if answer is not None:
                    return answer
        return None


class RoutingToken(BaseModel):
    """Where a completed session is routed.

    Clinical-triage flows also fill in the (care type, focus type, reason)
    tuple; other flows leave them unset.
    """

    destination: str
    care_type: Optional[CareType] = None
    focus_type: Optional[FocusType] = None
    reason: Optional[str] = None
    context: dict[str, Any] = {}
