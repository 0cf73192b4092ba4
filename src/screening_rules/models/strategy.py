"""Strategy specs — the closed grammar for scoring, orchestration, results and destination.

Flow and screening versions never store executable code.  Each function slot
holds a JSON object whose ``strategy`` field selects one built-in strategy
and whose remaining fields parameterise it.  Pydantic discriminated unions
deserialise the stored JSON (or YAML) straight into the right model:

  Scoring (``ScoringFunction``) -> int
    - weighted_sum:   sum of selected option scores, per-question multipliers
    - max_option:     highest selected option score

  Orchestration (``OrchestrationFunction``) -> Decision
    - sequential:         fixed screening order, then finish
    - threshold_routing:  per-screening rules over scores/answers/flags

  Results (``ResultsFunction``) -> ResultsOutput
    - support_role_rules: weighted support-role recommendations
    - clinical_triage:    focus-type x care-type triage rows (+ roles)

  Destination (``DestinationFunction``) -> RoutingToken
    - fixed:                  always the same destination
    - threshold_destination:  first matching rule wins
    - triage_destination:     destination keyed by the highest care type

Rule-based strategies share ``Condition``, a discriminated union on ``kind``.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from screening_db.models.enums import CareType, FocusType, SupportRoleId

# Comparison operators shared by every condition kind
Operator = Literal[
    "eq", "ne", "contains", "not_contains", "matches",
    "contains_any", "contains_all",
    "lt", "le", "gt", "ge", "between",
]


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------

class ScoreCondition(BaseModel):
    """Compare a screening's score, or the session total when ``screening`` is unset.

    A screening that has not been scored yet never matches.
    """

    kind: Literal["score"] = "score"
    screening: Optional[str] = None
    op: Operator
    value: Any


class AnswerCondition(BaseModel):
    """Compare the current answer set of one question.

    ``target`` selects what is compared:
      - options: list of selected option codes
      - score:   sum of selected option scores
      - text:    freeform text (or None)
    """

    kind: Literal["answer"] = "answer"
    screening: str
    question: str
    target: Literal["options", "score", "text"] = "options"
    op: Operator
    value: Any


class CrisisCondition(BaseModel):
    """Match on the session's crisis flag."""

    kind: Literal["crisis"] = "crisis"
    value: bool = True


class AccountCondition(BaseModel):
    """Compare an attribute of the target account (from the account directory)."""

    kind: Literal["account"] = "account"
    attribute: str
    op: Operator
    value: Any


Condition = Annotated[
    Union[ScoreCondition, AnswerCondition, CrisisCondition, AccountCondition],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------

class WeightedSumScoring(BaseModel):
    """Sum of selected option scores, each question multiplied by its weight (default 1)."""

    strategy: Literal["weighted_sum"] = "weighted_sum"
    weights: dict[str, int] = {}
    # Restrict to these question codes; None scores every question
    questions: Optional[list[str]] = None


class MaxOptionScoring(BaseModel):
    """Highest single selected option score (0 when nothing is answered)."""

    strategy: Literal["max_option"] = "max_option"
    questions: Optional[list[str]] = None


ScoringFunction = Annotated[
    Union[WeightedSumScoring, MaxOptionScoring],
    Field(discriminator="strategy"),
]


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------

class Decision(BaseModel):
    """What happens after the current screening.

    Exactly one of ``next`` (a screening name), ``finish`` or ``skip``.
    ``crisis`` additionally raises the session's crisis flag.
    """

    next: Optional[str] = None
    finish: bool = False
    skip: bool = False
    crisis: bool = False

    @model_validator(mode="after")
    def _exactly_one_outcome(self) -> "Decision":
        outcomes = sum([self.next is not None, self.finish, self.skip])
        if outcomes != 1:
            raise ValueError("decision needs exactly one of next, finish, skip")
        return self


class SequentialOrchestration(BaseModel):
    """Walk ``screenings`` in order, then finish.

    The screening after the current one is chosen by position; a current
    screening that is not in the list finishes the flow.
    """

    strategy: Literal["sequential"] = "sequential"
    screenings: list[str] = Field(min_length=1)
    # Stop as soon as the session is crisis-flagged
    finish_on_crisis: bool = False

    @model_validator(mode="after")
    def _unique_screenings(self) -> "SequentialOrchestration":
        seen: set[str] = set()
        for name in self.screenings:
            if name in seen:
                raise ValueError(f"screening {name!r} appears more than once")
            seen.add(name)
        return self


class RoutingRule(BaseModel):
    """If ALL conditions in ``when`` hold, ``then`` is the decision."""

    when: list[Condition] = []
    then: Decision


class ThresholdRoutingOrchestration(BaseModel):
    """Per-screening transition rules; first matching rule wins.

    ``transitions`` is keyed by the name of the screening just completed.
    A screening without an entry, or with no matching rule, uses ``default``.
    """

    strategy: Literal["threshold_routing"] = "threshold_routing"
    transitions: dict[str, list[RoutingRule]] = {}
    default: Decision = Decision(finish=True)


OrchestrationFunction = Annotated[
    Union[SequentialOrchestration, ThresholdRoutingOrchestration],
    Field(discriminator="strategy"),
]


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class SupportRoleWeight(BaseModel):
    support_role: SupportRoleId
    weight: float


class SupportRoleRule(BaseModel):
    when: list[Condition] = []
    then: list[SupportRoleWeight]


class TriageRow(BaseModel):
    """One (focus type, care type) categorisation with an optional reason."""

    focus_type: FocusType
    care_type: CareType
    reason: Optional[str] = None


class TriageRule(BaseModel):
    when: list[Condition] = []
    then: list[TriageRow]


class SupportRoleRulesResults(BaseModel):
    """Every matching rule contributes its weights; ``always`` is added unconditionally."""

    strategy: Literal["support_role_rules"] = "support_role_rules"
    rules: list[SupportRoleRule] = []
    always: list[SupportRoleWeight] = []


class ClinicalTriageResults(BaseModel):
    """Triage rows from every matching rule; ``default`` when none matched."""

    strategy: Literal["clinical_triage"] = "clinical_triage"
    rules: list[TriageRule] = []
    default: list[TriageRow] = [
        TriageRow(focus_type=FocusType.GENERAL, care_type=CareType.SUBCLINICAL)
    ]
    support_roles: list[SupportRoleRule] = []


ResultsFunction = Annotated[
    Union[SupportRoleRulesResults, ClinicalTriageResults],
    Field(discriminator="strategy"),
]


# ---------------------------------------------------------------------------
# Destination
# ---------------------------------------------------------------------------

class FixedDestination(BaseModel):
    strategy: Literal["fixed"] = "fixed"
    destination: str
    context: dict[str, Any] = {}


class DestinationRule(BaseModel):
    when: list[Condition] = []
    destination: str
    reason: Optional[str] = None
    context: dict[str, Any] = {}


class ThresholdDestination(BaseModel):
    strategy: Literal["threshold_destination"] = "threshold_destination"
    rules: list[DestinationRule] = []
    default: str


class TriageDestination(BaseModel):
    """Route on the highest-priority care type produced by the results strategy."""

    strategy: Literal["triage_destination"] = "triage_destination"
    destinations: dict[CareType, str] = {}
    default: str


DestinationFunction = Annotated[
    Union[FixedDestination, ThresholdDestination, TriageDestination],
    Field(discriminator="strategy"),
]
