"""RuleEvaluator unit tests — strategies, conditions, operators and failure kinds.

Snapshots are built by hand so each test states exactly what the strategy
sees.  No database or orchestrator is involved.

Operator reference (from evaluator._compare):
    eq, ne              — equality / inequality
    lt, le, gt, ge      — numeric comparisons (auto-coerces strings to float)
    between             — inclusive range check, value = [lo, hi]
    contains            — substring (str) or element (list) membership
    not_contains        — inverse of contains
    contains_any        — any of value items in answer (list or str)
    contains_all        — all of value items in answer (list or str)
    matches             — regex search (regex package, time-limited)
"""

import asyncio
import time

import pytest

from screening_db.models.enums import CareType, FocusType
from screening_rules import evaluator as evaluator_module
from screening_rules.constants import EVALUATION_MATCH_TEXT_LIMIT
from screening_rules.errors import EvaluationError, EvaluationErrorKind
from screening_rules.evaluator import RuleEvaluator
from screening_rules.models.evaluation import (
    AnswerSnapshot,
    ResultsOutput,
    RoutingToken,
    ScreeningSnapshot,
    SessionSnapshot,
)
from screening_rules.models.strategy import Decision, TriageRow


# --- Helpers to reduce boilerplate ---


def _answer(*scores, codes=None, text=None):
    """AnswerSnapshot with one option per score."""
    codes = codes or [f"opt{s}" for s in scores]
    return AnswerSnapshot(
        question_id="q", option_codes=list(codes), option_scores=list(scores), text=text
    )


def _screening(name, order=1, score=None, answers=None, completed=None):
    return ScreeningSnapshot(
        session_screening_id=f"ss-{order}",
        screening_name=name,
        screening_order=order,
        completed=score is not None if completed is None else completed,
        score=score,
        answers=answers or {},
    )


def _snapshot(*screenings, crisis=False, account=None, results=None):
    return SessionSnapshot(
        session_id="sess-1",
        flow_version_id="fv-1",
        crisis_indicated=crisis,
        screenings=list(screenings),
        account=account or {},
        results=results,
    )


@pytest.fixture
def evaluator():
    return RuleEvaluator()


# =====================================================================
# Scoring
# =====================================================================


class TestScoring:
    def test_weighted_sum_adds_option_scores(self, evaluator):
        snap = _snapshot(_screening("phq2", answers={"q1": _answer(2), "q2": _answer(3)}))
        assert evaluator.evaluate("scoring", {"strategy": "weighted_sum"}, snap) == 5

    def test_weighted_sum_applies_weights_and_question_filter(self, evaluator):
        snap = _snapshot(
            _screening("s", answers={"q1": _answer(2), "q2": _answer(3), "q3": _answer(1)})
        )
        spec = {"strategy": "weighted_sum", "weights": {"q1": 3}, "questions": ["q1", "q2"]}
        assert evaluator.evaluate("scoring", spec, snap) == 9, "q1*3 + q2, q3 excluded"

    def test_weighted_sum_multi_select_sums_every_option(self, evaluator):
        snap = _snapshot(_screening("s", answers={"q1": _answer(1, 2, 4)}))
        assert evaluator.evaluate("scoring", {"strategy": "weighted_sum"}, snap) == 7

    def test_weighted_sum_only_scores_current_screening(self, evaluator):
        snap = _snapshot(
            _screening("phq2", order=1, score=6, answers={"q1": _answer(3)}),
            _screening("phq9", order=2, answers={"q1": _answer(1)}),
        )
        assert evaluator.evaluate("scoring", {"strategy": "weighted_sum"}, snap) == 1

    def test_max_option(self, evaluator):
        snap = _snapshot(_screening("s", answers={"q1": _answer(1, 2), "q2": _answer(3)}))
        assert evaluator.evaluate("scoring", {"strategy": "max_option"}, snap) == 3

    def test_max_option_with_no_answers_is_zero(self, evaluator):
        snap = _snapshot(_screening("s"))
        assert evaluator.evaluate("scoring", {"strategy": "max_option"}, snap) == 0

    def test_same_snapshot_same_result(self, evaluator):
        """Evaluation is a pure function of (spec, snapshot)."""
        snap = _snapshot(_screening("s", answers={"q1": _answer(2), "q2": _answer(1)}))
        spec = {"strategy": "weighted_sum", "weights": {"q2": 4}}
        results = {evaluator.evaluate("scoring", spec, snap) for _ in range(5)}
        assert results == {6}


# =====================================================================
# Orchestration
# =====================================================================


class TestOrchestration:
    SEQUENTIAL = {"strategy": "sequential", "screenings": ["a", "b", "c"]}

    def test_sequential_moves_to_next_position(self, evaluator):
        decision = evaluator.evaluate("orchestration", self.SEQUENTIAL, _snapshot(_screening("a")))
        assert decision == Decision(next="b")

    def test_sequential_finishes_after_last(self, evaluator):
        snap = _snapshot(_screening("a", 1, 0), _screening("b", 2, 0), _screening("c", 3))
        decision = evaluator.evaluate("orchestration", self.SEQUENTIAL, snap)
        assert decision == Decision(finish=True)

    def test_sequential_repeated_screening_is_runtime_error(self, evaluator):
        spec = {"strategy": "sequential", "screenings": ["a", "b", "a"]}
        with pytest.raises(EvaluationError) as exc_info:
            evaluator.evaluate("orchestration", spec, _snapshot(_screening("b")))
        assert exc_info.value.kind == EvaluationErrorKind.RUNTIME_ERROR
        assert "appears more than once" in str(exc_info.value)

    def test_sequential_finish_on_crisis(self, evaluator):
        spec = {**self.SEQUENTIAL, "finish_on_crisis": True}
        decision = evaluator.evaluate("orchestration", spec, _snapshot(_screening("a"), crisis=True))
        assert decision.finish, "Crisis-flagged session should stop early"

    def test_threshold_routing_first_matching_rule_wins(self, evaluator):
        spec = {
            "strategy": "threshold_routing",
            "transitions": {
                "phq2": [
                    {"when": [{"kind": "score", "screening": "phq2", "op": "ge", "value": 3}],
                     "then": {"next": "phq9"}},
                    {"then": {"next": "gad2"}},
                ]
            },
        }
        high = evaluator.evaluate("orchestration", spec, _snapshot(_screening("phq2", score=4)))
        low = evaluator.evaluate("orchestration", spec, _snapshot(_screening("phq2", score=1)))
        assert high.next == "phq9"
        assert low.next == "gad2"

    def test_threshold_routing_default_when_no_transition(self, evaluator):
        spec = {"strategy": "threshold_routing", "default": {"skip": True}}
        decision = evaluator.evaluate("orchestration", spec, _snapshot(_screening("x")))
        assert decision.skip

    def test_rule_can_raise_crisis(self, evaluator):
        spec = {
            "strategy": "threshold_routing",
            "transitions": {
                "s": [{"when": [{"kind": "answer", "screening": "s", "question": "q9",
                                 "op": "ne", "value": ["never"]}],
                       "then": {"finish": True, "crisis": True}}]
            },
        }
        snap = _snapshot(_screening("s", answers={"q9": _answer(2, codes=["often"])}))
        decision = evaluator.evaluate("orchestration", spec, snap)
        assert decision.finish and decision.crisis


# =====================================================================
# Results
# =====================================================================


class TestResults:
    def test_support_role_rules_always_plus_matching(self, evaluator):
        spec = {
            "strategy": "support_role_rules",
            "always": [{"support_role": "COACH", "weight": 0.2}],
            "rules": [
                {"when": [{"kind": "score", "screening": "phq9", "op": "ge", "value": 10}],
                 "then": [{"support_role": "CLINICIAN", "weight": 0.8}]},
                {"when": [{"kind": "score", "screening": "gad7", "op": "ge", "value": 10}],
                 "then": [{"support_role": "PSYCHOTHERAPIST", "weight": 0.7}]},
            ],
        }
        out = evaluator.evaluate("results", spec, _snapshot(_screening("phq9", score=12)))
        roles = [(r.support_role.value, r.weight) for r in out.support_roles]
        assert roles == [("COACH", 0.2), ("CLINICIAN", 0.8)], "gad7 never ran, so its rule is False"

    def test_clinical_triage_keeps_highest_care_type_per_focus(self, evaluator):
        spec = {
            "strategy": "clinical_triage",
            "rules": [
                {"when": [{"kind": "score", "screening": "phq9", "op": "ge", "value": 5}],
                 "then": [{"focus_type": "DEPRESSION", "care_type": "SUBCLINICAL"}]},
                {"when": [{"kind": "score", "screening": "phq9", "op": "ge", "value": 10}],
                 "then": [{"focus_type": "DEPRESSION", "care_type": "COLLABORATIVE"}]},
                {"when": [{"kind": "score", "screening": "gad7", "op": "ge", "value": 15}],
                 "then": [{"focus_type": "ANXIETY", "care_type": "SPECIALTY"}]},
            ],
        }
        snap = _snapshot(_screening("phq9", 1, 12), _screening("gad7", 2, 16))
        out = evaluator.evaluate("results", spec, snap)
        rows = {(t.focus_type, t.care_type) for t in out.triages}
        assert rows == {
            (FocusType.DEPRESSION, CareType.COLLABORATIVE),
            (FocusType.ANXIETY, CareType.SPECIALTY),
        }
        assert out.care_type == CareType.SPECIALTY

    def test_clinical_triage_default_when_nothing_matches(self, evaluator):
        spec = {"strategy": "clinical_triage", "rules": []}
        out = evaluator.evaluate("results", spec, _snapshot(_screening("phq9", score=0)))
        assert out.triages == [TriageRow(focus_type="GENERAL", care_type="SUBCLINICAL")]


# =====================================================================
# Destination
# =====================================================================


class TestDestination:
    def test_fixed(self, evaluator):
        token = evaluator.evaluate(
            "destination", {"strategy": "fixed", "destination": "HOME"}, _snapshot(_screening("s"))
        )
        assert token == RoutingToken(destination="HOME")

    def test_threshold_destination_uses_total_score(self, evaluator):
        spec = {
            "strategy": "threshold_destination",
            "rules": [{"when": [{"kind": "score", "op": "ge", "value": 6}],
                       "destination": "OUTREACH", "reason": "elevated"}],
            "default": "SELF_GUIDED",
        }
        high = _snapshot(_screening("a", 1, 4), _screening("b", 2, 3))
        low = _snapshot(_screening("a", 1, 2), _screening("b", 2, 1))
        assert evaluator.evaluate("destination", spec, high).destination == "OUTREACH"
        assert evaluator.evaluate("destination", spec, high).reason == "elevated"
        assert evaluator.evaluate("destination", spec, low).destination == "SELF_GUIDED"

    def test_triage_destination_routes_on_highest_care_type(self, evaluator):
        spec = {
            "strategy": "triage_destination",
            "destinations": {"SPECIALTY": "SPECIALTY_CARE", "COLLABORATIVE": "COLLAB"},
            "default": "SELF",
        }
        results = ResultsOutput(
            triages=[
                TriageRow(focus_type="DEPRESSION", care_type="COLLABORATIVE", reason="moderate"),
                TriageRow(focus_type="ANXIETY", care_type="SPECIALTY", reason="severe"),
            ]
        )
        token = evaluator.evaluate(
            "destination", spec, _snapshot(_screening("s", score=1), results=results)
        )
        assert token.destination == "SPECIALTY_CARE"
        assert token.care_type == CareType.SPECIALTY
        assert token.focus_type == FocusType.ANXIETY
        assert token.reason == "severe"

    def test_triage_destination_without_results_uses_default(self, evaluator):
        spec = {"strategy": "triage_destination", "default": "SELF"}
        token = evaluator.evaluate("destination", spec, _snapshot(_screening("s")))
        assert token.destination == "SELF" and token.care_type is None


# =====================================================================
# Conditions and operators
# =====================================================================


class TestConditions:
    @pytest.mark.parametrize(
        "op, actual, value, expected",
        [
            ("eq", 3, 3, True),
            ("ne", 3, 3, False),
            ("lt", 2, 3, True),
            ("le", 3, 3, True),
            ("gt", "4", 3, True),
            ("ge", 2, 3, False),
            ("between", 10, [10, 19], True),
            ("between", 20, [10, 19], False),
            ("gt", "not a number", 3, False),
            ("contains", ["a", "b"], "a", True),
            ("contains", "hello world", "world", True),
            ("not_contains", ["a", "b"], "c", True),
            ("contains_any", ["a", "b"], ["x", "b"], True),
            ("contains_any", ["a", "b"], ["x", "y"], False),
            ("contains_all", ["a", "b", "c"], ["a", "c"], True),
            ("contains_all", ["a"], ["a", "c"], False),
            ("matches", "555-1234", r"^\d{3}-\d{4}$", True),
            ("matches", "abc", r"^\d+$", False),
        ],
    )
    def test_compare(self, op, actual, value, expected):
        assert RuleEvaluator._compare(op, actual, value) is expected, f"{op}({actual!r}, {value!r})"

    def test_unscored_screening_never_matches(self, evaluator):
        spec = {
            "strategy": "threshold_destination",
            "rules": [{"when": [{"kind": "score", "screening": "phq9", "op": "lt", "value": 100}],
                       "destination": "X"}],
            "default": "D",
        }
        snap = _snapshot(_screening("phq2", score=1))
        assert evaluator.evaluate("destination", spec, snap).destination == "D"

    def test_answer_condition_targets(self, evaluator):
        snap = _snapshot(
            _screening("s", answers={
                "q1": _answer(1, 2, codes=["sleep", "appetite"]),
                "q2": _answer(0, codes=["other"], text="panic at night"),
            })
        )

        def route(condition):
            spec = {"strategy": "threshold_destination",
                    "rules": [{"when": [condition], "destination": "HIT"}], "default": "MISS"}
            return evaluator.evaluate("destination", spec, snap).destination

        base = {"kind": "answer", "screening": "s"}
        assert route({**base, "question": "q1", "op": "contains", "value": "sleep"}) == "HIT"
        assert route({**base, "question": "q1", "target": "score", "op": "eq", "value": 3}) == "HIT"
        assert route({**base, "question": "q2", "target": "text", "op": "matches",
                      "value": "panic"}) == "HIT"
        assert route({**base, "question": "q3", "op": "contains", "value": "x"}) == "MISS", (
            "Unanswered question should evaluate to False"
        )

    def test_account_condition(self, evaluator):
        spec = {
            "strategy": "threshold_destination",
            "rules": [{"when": [{"kind": "account", "attribute": "age", "op": "lt", "value": 18}],
                       "destination": "YOUTH"}],
            "default": "ADULT",
        }
        assert evaluator.evaluate(
            "destination", spec, _snapshot(_screening("s"), account={"age": 15})
        ).destination == "YOUTH"
        assert evaluator.evaluate(
            "destination", spec, _snapshot(_screening("s"))
        ).destination == "ADULT", "Missing attribute should evaluate to False"

    def test_crisis_condition(self, evaluator):
        spec = {"strategy": "threshold_destination",
                "rules": [{"when": [{"kind": "crisis"}], "destination": "CRISIS"}], "default": "D"}
        assert evaluator.evaluate(
            "destination", spec, _snapshot(_screening("s"), crisis=True)
        ).destination == "CRISIS"
        assert evaluator.evaluate("destination", spec, _snapshot(_screening("s"))).destination == "D"


# =====================================================================
# Failure kinds
# =====================================================================


class TestFailures:
    def test_unknown_strategy_is_runtime_error(self, evaluator):
        with pytest.raises(EvaluationError) as exc_info:
            evaluator.evaluate("scoring", {"strategy": "exec_python"}, _snapshot(_screening("s")))
        assert exc_info.value.kind == EvaluationErrorKind.RUNTIME_ERROR
        assert exc_info.value.retryable

    def test_strategy_of_wrong_kind_is_runtime_error(self, evaluator):
        with pytest.raises(EvaluationError) as exc_info:
            evaluator.evaluate("scoring", {"strategy": "fixed", "destination": "X"},
                               _snapshot(_screening("s")))
        assert exc_info.value.kind == EvaluationErrorKind.RUNTIME_ERROR

    def test_step_budget_exhaustion_is_runtime_error(self):
        evaluator = RuleEvaluator(step_budget=3)
        answers = {f"q{i}": _answer(1) for i in range(10)}
        with pytest.raises(EvaluationError) as exc_info:
            evaluator.evaluate("scoring", {"strategy": "weighted_sum"},
                               _snapshot(_screening("s", answers=answers)))
        assert exc_info.value.kind == EvaluationErrorKind.RUNTIME_ERROR
        assert "step budget" in str(exc_info.value)

    def test_handler_exception_is_runtime_error(self, evaluator):
        def broken(spec, snapshot, budget):
            raise KeyError("boom")

        evaluator._registry["weighted_sum"] = broken
        with pytest.raises(EvaluationError) as exc_info:
            evaluator.evaluate("scoring", {"strategy": "weighted_sum"}, _snapshot(_screening("s")))
        assert exc_info.value.kind == EvaluationErrorKind.RUNTIME_ERROR

    @pytest.mark.parametrize("bad", ["7", 7.5, True, None])
    def test_wrong_result_type_is_invalid_shape(self, evaluator, bad):
        evaluator._registry["weighted_sum"] = lambda spec, snapshot, budget: bad
        with pytest.raises(EvaluationError) as exc_info:
            evaluator.evaluate("scoring", {"strategy": "weighted_sum"}, _snapshot(_screening("s")))
        assert exc_info.value.kind == EvaluationErrorKind.INVALID_RESULT_SHAPE

    def test_blank_destination_is_invalid_shape(self, evaluator):
        with pytest.raises(EvaluationError) as exc_info:
            evaluator.evaluate("destination", {"strategy": "fixed", "destination": "  "},
                               _snapshot(_screening("s")))
        assert exc_info.value.kind == EvaluationErrorKind.INVALID_RESULT_SHAPE

    @pytest.mark.asyncio
    async def test_slow_strategy_times_out(self):
        evaluator = RuleEvaluator(timeout_seconds=0.05)

        def slow(spec, snapshot, budget):
            time.sleep(0.3)
            return 1

        evaluator._registry["weighted_sum"] = slow
        with pytest.raises(EvaluationError) as exc_info:
            await evaluator.evaluate_async(
                "scoring", {"strategy": "weighted_sum"}, _snapshot(_screening("s"))
            )
        assert exc_info.value.kind == EvaluationErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_async_matches_sync(self, evaluator):
        snap = _snapshot(_screening("s", answers={"q1": _answer(2)}))
        assert await evaluator.evaluate_async("scoring", {"strategy": "weighted_sum"}, snap) == 2


# =====================================================================
# Time limits on pattern matching
# =====================================================================


def _text_route(pattern):
    """threshold_destination that matches free text of s/q against ``pattern``."""
    return {
        "strategy": "threshold_destination",
        "rules": [{"when": [{"kind": "answer", "screening": "s", "question": "q",
                             "target": "text", "op": "matches", "value": pattern}],
                   "destination": "HIT"}],
        "default": "MISS",
    }


def _text_snapshot(text):
    return _snapshot(_screening("s", answers={"q": _answer(0, codes=["text"], text=text)}))


class TestMatchTimeLimits:
    @pytest.mark.asyncio
    async def test_backtracking_pattern_does_not_stall_event_loop(self):
        evaluator = RuleEvaluator(timeout_seconds=0.1)
        ticks = 0
        stop = asyncio.Event()

        async def ticker():
            nonlocal ticks
            while not stop.is_set():
                ticks += 1
                await asyncio.sleep(0.01)

        task = asyncio.create_task(ticker())
        started = time.monotonic()
        try:
            await evaluator.evaluate_async(
                "destination", _text_route(r"(a+)+$"), _text_snapshot("a" * 4000 + "!")
            )
            timed_out = False
        except EvaluationError as exc:
            assert exc.kind == EvaluationErrorKind.TIMEOUT
            timed_out = True
        finally:
            elapsed = time.monotonic() - started
            stop.set()
            await task

        assert elapsed < 1.0, f"Evaluation took {elapsed:.2f}s against a 0.1s limit"
        if timed_out:
            assert ticks >= 3, f"Event loop only ticked {ticks} times while matching"

    def test_regex_timeout_maps_to_timeout(self, monkeypatch):
        calls = []

        def slow_search(pattern, text, **kwargs):
            calls.append((text, kwargs))
            raise TimeoutError("regex timed out")

        monkeypatch.setattr(evaluator_module.regex, "search", slow_search)
        with pytest.raises(EvaluationError) as exc_info:
            RuleEvaluator(timeout_seconds=0.5).evaluate(
                "destination", _text_route("x"), _text_snapshot("y" * 10)
            )

        assert exc_info.value.kind == EvaluationErrorKind.TIMEOUT
        text, kwargs = calls[0]
        assert kwargs["concurrent"] is True, "Matching must release the GIL"
        assert 0 < kwargs["timeout"] <= 0.5

    def test_match_text_is_capped(self, monkeypatch):
        seen = []

        def record(pattern, text, **kwargs):
            seen.append(len(text))
            return None

        monkeypatch.setattr(evaluator_module.regex, "search", record)
        destination = RuleEvaluator().evaluate(
            "destination", _text_route("x"),
            _text_snapshot("y" * (EVALUATION_MATCH_TEXT_LIMIT + 500)),
        ).destination

        assert destination == "MISS"
        assert seen == [EVALUATION_MATCH_TEXT_LIMIT]

    def test_deadline_checked_between_steps(self):
        evaluator = RuleEvaluator(timeout_seconds=0)
        answers = {f"q{i}": _answer(1) for i in range(3)}
        with pytest.raises(EvaluationError) as exc_info:
            evaluator.evaluate("scoring", {"strategy": "weighted_sum"},
                               _snapshot(_screening("s", answers=answers)))
        assert exc_info.value.kind == EvaluationErrorKind.TIMEOUT

    def test_invalid_pattern_is_runtime_error(self, evaluator):
        with pytest.raises(EvaluationError) as exc_info:
            evaluator.evaluate("destination", _text_route("(unclosed"), _text_snapshot("text"))
        assert exc_info.value.kind == EvaluationErrorKind.RUNTIME_ERROR
