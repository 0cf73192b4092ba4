"""RuleEvaluator — runs scoring, orchestration, results and destination strategies.

Every evaluation is a pure function of ``(strategy spec, SessionSnapshot)``:
no database access, no randomness.  The same snapshot always yields the
same result, so a stored snapshot is enough to replay a decision.  The
clock is only read to enforce the time limit.

Strategies are looked up in a registry keyed by their ``strategy`` tag.
The registry only holds the built-in handlers below; there is no way to
store or run arbitrary code.

Resource bounds:
  - a step budget counts condition checks, rules and answers visited;
    running out raises ``EvaluationError(RUNTIME_ERROR)``
  - the same budget carries a deadline checked on every step; passing it
    raises ``EvaluationError(TIMEOUT)``, so a timed-out worker thread stops
    on its own instead of occupying the executor
  - ``matches`` runs on the ``regex`` package with the remaining time as its
    timeout and the GIL released, over at most ``EVALUATION_MATCH_TEXT_LIMIT``
    characters; a catastrophic pattern cannot stall the event loop
  - :meth:`evaluate_async` runs the evaluation in a worker thread under
    ``asyncio.wait_for`` as an outer bound

Every result is shape-checked before it is returned; a handler that
returns the wrong type raises ``EvaluationError(INVALID_RESULT_SHAPE)``.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

import regex
from pydantic import TypeAdapter, ValidationError

from screening_rules.constants import (
    EVALUATION_MATCH_TEXT_LIMIT,
    EVALUATION_STEP_BUDGET,
    EVALUATION_TIMEOUT_SECONDS,
)
from screening_rules.errors import EvaluationError, EvaluationErrorKind
from screening_rules.models.evaluation import ResultsOutput, RoutingToken, SessionSnapshot
from screening_rules.models.strategy import (
    AccountCondition,
    AnswerCondition,
    ClinicalTriageResults,
    CrisisCondition,
    Decision,
    DestinationFunction,
    FixedDestination,
    MaxOptionScoring,
    OrchestrationFunction,
    ResultsFunction,
    ScoreCondition,
    ScoringFunction,
    SequentialOrchestration,
    SupportRoleRule,
    SupportRoleRulesResults,
    SupportRoleWeight,
    ThresholdDestination,
    ThresholdRoutingOrchestration,
    TriageDestination,
    TriageRow,
    WeightedSumScoring,
)

logger = logging.getLogger(__name__)

# One adapter per strategy kind; parses a stored JSON spec into its model
_ADAPTERS: dict[str, TypeAdapter] = {
    "scoring": TypeAdapter(ScoringFunction),
    "orchestration": TypeAdapter(OrchestrationFunction),
    "results": TypeAdapter(ResultsFunction),
    "destination": TypeAdapter(DestinationFunction),
}

# Expected result type per kind
_RESULT_TYPES: dict[str, type] = {
    "scoring": int,
    "orchestration": Decision,
    "results": ResultsOutput,
    "destination": RoutingToken,
}


class _BudgetExceeded(Exception):
    pass


class _DeadlineExceeded(Exception):
    pass


class StepBudget:
    """Counts evaluation work and watches the clock; raises once either is spent."""

    def __init__(self, limit: int, timeout: float | None = None) -> None:
        self.remaining = limit
        self.deadline = None if timeout is None else time.monotonic() + timeout

    def spend(self, steps: int = 1) -> None:
        self.remaining -= steps
        if self.remaining < 0:
            raise _BudgetExceeded()
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise _DeadlineExceeded()

    def time_left(self) -> float | None:
        """Seconds until the deadline, or None when unbounded."""
        if self.deadline is None:
            return None
        left = self.deadline - time.monotonic()
        if left <= 0:
            raise _DeadlineExceeded()
        return left


Handler = Callable[[Any, SessionSnapshot, StepBudget], Any]


class RuleEvaluator:
    """Evaluates strategy specs against session snapshots.

    Args:
        timeout_seconds: wall-clock limit for one evaluation
        step_budget: work limit for one evaluation
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = EVALUATION_TIMEOUT_SECONDS,
        step_budget: int = EVALUATION_STEP_BUDGET,
    ) -> None:
        self._timeout = timeout_seconds
        self._step_budget = step_budget
        self._registry: dict[str, Handler] = {
            # scoring
            "weighted_sum": self._score_weighted_sum,
            "max_option": self._score_max_option,
            # orchestration
            "sequential": self._orchestrate_sequential,
            "threshold_routing": self._orchestrate_threshold_routing,
            # results
            "support_role_rules": self._results_support_roles,
            "clinical_triage": self._results_clinical_triage,
            # destination
            "fixed": self._destination_fixed,
            "threshold_destination": self._destination_threshold,
            "triage_destination": self._destination_triage,
        }

    # ==================================================================
    # Public API
    # ==================================================================

    @staticmethod
    def parse(kind: str, spec: dict[str, Any]) -> Any:
        """Validate a stored spec against the closed union for ``kind``.

        Raises:
            ValueError: unknown kind.
            pydantic.ValidationError: malformed spec.
        """
        adapter = _ADAPTERS.get(kind)
        if adapter is None:
            raise ValueError(f"Unknown strategy kind: {kind}")
        return adapter.validate_python(spec)

    def evaluate(self, kind: str, spec: dict[str, Any], snapshot: SessionSnapshot) -> Any:
        """Run one strategy synchronously and return its shape-checked result."""
        strategy = spec.get("strategy") if isinstance(spec, dict) else None
        try:
            model = self.parse(kind, spec)
        except (ValueError, ValidationError) as exc:
            raise EvaluationError(
                EvaluationErrorKind.RUNTIME_ERROR,
                f"invalid {kind} strategy spec: {exc}",
                strategy=strategy,
            ) from exc

        handler = self._registry.get(model.strategy)
        if handler is None:
            raise EvaluationError(
                EvaluationErrorKind.RUNTIME_ERROR,
                f"no handler registered for strategy {model.strategy!r}",
                strategy=model.strategy,
            )

        try:
            result = handler(model, snapshot, StepBudget(self._step_budget, self._timeout))
        except EvaluationError:
            raise
        except _DeadlineExceeded:
            logger.warning(
                "%s strategy %r ran out of time after %.2fs (session=%s)",
                kind, model.strategy, self._timeout, snapshot.session_id,
            )
            raise EvaluationError(
                EvaluationErrorKind.TIMEOUT,
                f"{kind} evaluation exceeded {self._timeout}s",
                strategy=model.strategy,
            ) from None
        except _BudgetExceeded:
            raise EvaluationError(
                EvaluationErrorKind.RUNTIME_ERROR,
                f"step budget of {self._step_budget} exceeded",
                strategy=model.strategy,
            ) from None
        except Exception as exc:
            raise EvaluationError(
                EvaluationErrorKind.RUNTIME_ERROR,
                f"{type(exc).__name__}: {exc}",
                strategy=model.strategy,
            ) from exc

        return self._check_shape(kind, model.strategy, result)

    async def evaluate_async(
        self, kind: str, spec: dict[str, Any], snapshot: SessionSnapshot
    ) -> Any:
        """Run :meth:`evaluate` in a worker thread under the configured timeout.

        Only the awaiting session waits; other sessions keep running on the
        event loop.  The worker stops itself at the same deadline, so a
        timed-out evaluation does not keep holding an executor thread.
        """
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.evaluate, kind, spec, snapshot),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            strategy = spec.get("strategy") if isinstance(spec, dict) else None
            logger.warning(
                "%s strategy %r timed out after %.2fs (session=%s)",
                kind, strategy, self._timeout, snapshot.session_id,
            )
            raise EvaluationError(
                EvaluationErrorKind.TIMEOUT,
                f"{kind} evaluation exceeded {self._timeout}s",
                strategy=strategy,
            ) from None

    # ------------------------------------------------------------------
    # Shape checks
    # ------------------------------------------------------------------

    @staticmethod
    def _check_shape(kind: str, strategy: str, result: Any) -> Any:
        expected = _RESULT_TYPES[kind]
        # bool is an int subclass but never a valid score
        if not isinstance(result, expected) or isinstance(result, bool):
            raise EvaluationError(
                EvaluationErrorKind.INVALID_RESULT_SHAPE,
                f"{kind} strategy returned {type(result).__name__}, "
                f"expected {expected.__name__}",
                strategy=strategy,
            )
        if isinstance(result, RoutingToken) and not result.destination.strip():
            raise EvaluationError(
                EvaluationErrorKind.INVALID_RESULT_SHAPE,
                "destination strategy returned an empty destination",
                strategy=strategy,
            )
        return result

    # ==================================================================
    # Scoring
    # ==================================================================

    def _score_weighted_sum(
        self, spec: WeightedSumScoring, snapshot: SessionSnapshot, budget: StepBudget
    ) -> int:
        total = 0
        for code, answer in snapshot.current.answers.items():
            budget.spend()
            if spec.questions is not None and code not in spec.questions:
                continue
            total += answer.score * spec.weights.get(code, 1)
        return total

    def _score_max_option(
        self, spec: MaxOptionScoring, snapshot: SessionSnapshot, budget: StepBudget
    ) -> int:
        best = 0
        for code, answer in snapshot.current.answers.items():
            budget.spend()
            if spec.questions is not None and code not in spec.questions:
                continue
            if answer.option_scores:
                best = max(best, max(answer.option_scores))
        return best

    # ==================================================================
    # Orchestration
    # ==================================================================

    def _orchestrate_sequential(
        self, spec: SequentialOrchestration, snapshot: SessionSnapshot, budget: StepBudget
    ) -> Decision:
        if spec.finish_on_crisis and snapshot.crisis_indicated:
            return Decision(finish=True)
        current = snapshot.current.screening_name
        budget.spend(len(spec.screenings))
        if current in spec.screenings:
            position = spec.screenings.index(current)
            if position + 1 < len(spec.screenings):
                return Decision(next=spec.screenings[position + 1])
        return Decision(finish=True)

    def _orchestrate_threshold_routing(
        self,
        spec: ThresholdRoutingOrchestration,
        snapshot: SessionSnapshot,
        budget: StepBudget,
    ) -> Decision:
        """First rule whose conditions all hold wins; otherwise ``default``."""
        for rule in spec.transitions.get(snapshot.current.screening_name, []):
            budget.spend()
            if self._all(rule.when, snapshot, budget):
                return rule.then
        return spec.default

    # ==================================================================
    # Results
    # ==================================================================

    def _collect_roles(
        self, rules: list[SupportRoleRule], snapshot: SessionSnapshot, budget: StepBudget
    ) -> list[SupportRoleWeight]:
        roles: list[SupportRoleWeight] = []
        for rule in rules:
            budget.spend()
            if self._all(rule.when, snapshot, budget):
                roles.extend(rule.then)
        return roles

    def _results_support_roles(
        self, spec: SupportRoleRulesResults, snapshot: SessionSnapshot, budget: StepBudget
    ) -> ResultsOutput:
        roles = list(spec.always) + self._collect_roles(spec.rules, snapshot, budget)
        return ResultsOutput(support_roles=roles)

    def _results_clinical_triage(
        self, spec: ClinicalTriageResults, snapshot: SessionSnapshot, budget: StepBudget
    ) -> ResultsOutput:
        """Triage rows from every matching rule, one row per focus type.

        When two rules produce the same focus type the higher care type
        wins; the first row's reason is kept on ties.
        """
        by_focus: dict[str, TriageRow] = {}
        for rule in spec.rules:
            budget.spend()
            if not self._all(rule.when, snapshot, budget):
                continue
            for row in rule.then:
                existing = by_focus.get(row.focus_type)
                if existing is None or row.care_type.priority > existing.care_type.priority:
                    by_focus[row.focus_type] = row
        triages = list(by_focus.values()) or list(spec.default)
        roles = self._collect_roles(spec.support_roles, snapshot, budget)
        return ResultsOutput(support_roles=roles, triages=triages)

    # ==================================================================
    # Destination
    # ==================================================================

    def _destination_fixed(
        self, spec: FixedDestination, snapshot: SessionSnapshot, budget: StepBudget
    ) -> RoutingToken:
        return RoutingToken(destination=spec.destination, context=dict(spec.context))

    def _destination_threshold(
        self, spec: ThresholdDestination, snapshot: SessionSnapshot, budget: StepBudget
    ) -> RoutingToken:
        for rule in spec.rules:
            budget.spend()
            if self._all(rule.when, snapshot, budget):
                return RoutingToken(
                    destination=rule.destination,
                    reason=rule.reason,
                    context=dict(rule.context),
                )
        return RoutingToken(destination=spec.default)

    def _destination_triage(
        self, spec: TriageDestination, snapshot: SessionSnapshot, budget: StepBudget
    ) -> RoutingToken:
        results = snapshot.results
        care_type = results.care_type if results is not None else None
        if care_type is None:
            return RoutingToken(destination=spec.default)
        # The first row carrying the winning care type names the focus
        top = next(t for t in results.triages if t.care_type == care_type)
        return RoutingToken(
            destination=spec.destinations.get(care_type, spec.default),
            care_type=care_type,
            focus_type=top.focus_type,
            reason=top.reason,
        )

    # ==================================================================
    # Conditions
    # ==================================================================

    def _all(self, conditions: list, snapshot: SessionSnapshot, budget: StepBudget) -> bool:
        """AND of every condition; an empty list always holds."""
        return all(self._check(c, snapshot, budget) for c in conditions)

    def _check(self, condition: Any, snapshot: SessionSnapshot, budget: StepBudget) -> bool:
        """Evaluate a single condition.

        A reference to something that does not exist yet (an unscored
        screening, an unanswered question, a missing account attribute)
        evaluates to False.
        """
        budget.spend()
        if isinstance(condition, CrisisCondition):
            return snapshot.crisis_indicated == condition.value

        if isinstance(condition, ScoreCondition):
            if condition.screening is None:
                if not any(s.score is not None for s in snapshot.screenings):
                    return False
                actual: Any = snapshot.total_score
            else:
                actual = snapshot.score_of(condition.screening)
            if actual is None:
                return False
            return self._compare(condition.op, actual, condition.value, budget)

        if isinstance(condition, AnswerCondition):
            answer = snapshot.answer_of(condition.screening, condition.question)
            if answer is None:
                return False
            if condition.target == "options":
                actual = answer.option_codes
            elif condition.target == "score":
                actual = answer.score
            else:
                actual = answer.text
            if actual is None:
                return False
            return self._compare(condition.op, actual, condition.value, budget)

        if isinstance(condition, AccountCondition):
            actual = snapshot.account.get(condition.attribute)
            if actual is None:
                return False
            return self._compare(condition.op, actual, condition.value, budget)

        raise TypeError(f"Unsupported condition: {type(condition).__name__}")

    @staticmethod
    def _compare(op: str, actual: Any, value: Any, budget: StepBudget | None = None) -> bool:
        """Apply an operator to an actual value and an expected value.

        Numeric operators coerce both sides to float; values that do not
        coerce make the comparison False.  ``matches`` is bounded by the
        budget's deadline, or by the default timeout without a budget.
        """
        if op == "eq":
            return actual == value
        if op == "ne":
            return actual != value

        if op in ("lt", "le", "gt", "ge", "between"):
            try:
                number = float(actual)
            except (TypeError, ValueError):
                return False
            if op == "lt":
                return number < float(value)
            if op == "le":
                return number <= float(value)
            if op == "gt":
                return number > float(value)
            if op == "ge":
                return number >= float(value)
            lo, hi = float(value[0]), float(value[1])
            return lo <= number <= hi

        # Membership works on option-code lists and on strings
        if op == "contains":
            if isinstance(actual, list):
                return value in actual
            return str(value) in str(actual)
        if op == "not_contains":
            if isinstance(actual, list):
                return value not in actual
            return str(value) not in str(actual)
        if op == "contains_any":
            if isinstance(actual, list):
                return any(v in actual for v in value)
            return any(str(v) in str(actual) for v in value)
        if op == "contains_all":
            if isinstance(actual, list):
                return all(v in actual for v in value)
            return all(str(v) in str(actual) for v in value)

        if op == "matches":
            return RuleEvaluator._search(str(value), str(actual), budget)

        raise ValueError(f"Unknown operator: {op}")

    @staticmethod
    def _search(pattern: str, text: str, budget: StepBudget | None) -> bool:
        timeout = budget.time_left() if budget is not None else EVALUATION_TIMEOUT_SECONDS
        try:
            match = regex.search(
                pattern,
                text[:EVALUATION_MATCH_TEXT_LIMIT],
                concurrent=True,
                timeout=timeout,
            )
        except TimeoutError:
            raise _DeadlineExceeded() from None
        return match is not None
