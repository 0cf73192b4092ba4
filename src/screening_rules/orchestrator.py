"""ScreeningOrchestrator — the session state machine.

Stateless engine pattern: each call loads the session from the database,
evaluates what it needs, persists the outcome and returns a pydantic model.
No in-memory session state survives between calls.

The orchestrator accepts an ``AsyncSession`` from the caller so that the
caller (typically a FastAPI endpoint) controls transaction boundaries.

Lifecycle::

    not_started ──(first valid answer)──▶ awaiting_answers
         │                                      │
         └──────────────(advance: terminal)─────┴──▶ completed
         └──────────────(skip)──────────────────┴──▶ skipped

``crisis_indicated`` is orthogonal: it can be raised in any non-terminal
state, never reverts, and overrides the routing destination at completion.

Every mutating operation evaluates all strategies *before* its first write.
An ``EvaluationError`` therefore leaves the session exactly as it was.
Writers for the same session are serialized by an in-process keyed lock and
a ``FOR UPDATE NOWAIT`` row lock; the loser gets ``ConflictError``.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession

from screening_db.models.definitions import Screening, ScreeningFlowVersion, ScreeningVersion
from screening_db.models.enums import FlowType, SessionStatus
from screening_db.models.session import (
    ScreeningAnswer,
    ScreeningAnsweredQuestion,
    ScreeningSession,
    ScreeningSessionScreening,
)
from screening_db.repository import DefinitionRepository, RowLockedError, SessionRepository

from screening_rules.catalog import QuestionCatalog
from screening_rules.constants import DEFAULT_CRISIS_DESTINATION
from screening_rules.definitions import DefinitionStore, coerce_uuid
from screening_rules.errors import (
    ConflictError,
    EvaluationError,
    EvaluationErrorKind,
    FieldError,
    NotFoundError,
    ValidationFailed,
)
from screening_rules.evaluator import RuleEvaluator
from screening_rules.interfaces import (
    AccountDirectory,
    CrisisNotifier,
    InstitutionDirectory,
    LoggingCrisisNotifier,
    PermissiveAccountDirectory,
    StaticInstitutionDirectory,
)
from screening_rules.locks import KeyedLocks
from screening_rules.models.evaluation import (
    AnswerSnapshot,
    ResultsOutput,
    RoutingToken,
    ScreeningSnapshot,
    SessionSnapshot,
)
from screening_rules.models.question import CatalogQuestion
from screening_rules.models.session import (
    AdvanceResult,
    AnsweredQuestionView,
    AnswerView,
    CompletedStep,
    QuestionsStep,
    RecommendationView,
    ScreeningCompletion,
    SessionInfo,
    SessionScreeningView,
    SessionState,
    StepResult,
    SubmitAnswersResult,
)
from screening_rules.models.strategy import Decision
from screening_rules.projector import TriageProjector

logger = logging.getLogger(__name__)

_SESSION_ENDED = "This session has already ended."


class ScreeningOrchestrator:
    """Drives sessions through their pinned flow version.

    All collaborators are optional; defaults are wired for local use.

    Args:
        store: definition store used to resolve flows and screenings
        catalog: question catalog (caches immutable question sets)
        evaluator: rule evaluator for every strategy call
        projector: writes recommendations and computed triage groups
        accounts: validates accounts and supplies ``account`` attributes
        institutions: maps institutions to provider-triage flows
        notifier: told once per session when crisis is first indicated
    """

    def __init__(
        self,
        *,
        store: DefinitionStore | None = None,
        catalog: QuestionCatalog | None = None,
        evaluator: RuleEvaluator | None = None,
        projector: TriageProjector | None = None,
        accounts: AccountDirectory | None = None,
        institutions: InstitutionDirectory | None = None,
        notifier: CrisisNotifier | None = None,
        locks: KeyedLocks | None = None,
    ) -> None:
        self._definitions = store or DefinitionStore(institutions or StaticInstitutionDirectory())
        self._catalog = catalog or QuestionCatalog()
        self._evaluator = evaluator or RuleEvaluator()
        self._projector = projector or TriageProjector()
        self._accounts = accounts or PermissiveAccountDirectory()
        self._notifier = notifier or LoggingCrisisNotifier()
        self._locks = locks or KeyedLocks("session")
        self._repo = SessionRepository()
        self._defs = DefinitionRepository()

    # ==================================================================
    # Session lifecycle
    # ==================================================================

    async def start_session(
        self,
        db: AsyncSession,
        *,
        target_account_id: str,
        created_by_account_id: str,
        flow_id: uuid.UUID | str | None = None,
        flow_type: FlowType | str | None = None,
        patient_order_id: str | None = None,
        institution_id: str | None = None,
    ) -> SessionInfo:
        """Create a session pinned to the flow's active version.

        Session Screening 1 is created immediately with the initial
        screening's active version.  The caller must ``await db.commit()``.

        Raises:
            ValidationFailed: unknown account, or a provider-triage flow
                without a patient order.
            NotFoundError: no such flow, or nothing published to run.
        """
        errors: list[FieldError] = []
        if not await self._accounts.account_exists(target_account_id):
            errors.append(FieldError(field="target_account_id", message="Unknown account."))
        if not await self._accounts.account_exists(created_by_account_id):
            errors.append(FieldError(field="created_by_account_id", message="Unknown account."))
        if errors:
            raise ValidationFailed(errors)

        flow, flow_version = await self._definitions.resolve_flow(
            db, flow_id=flow_id, flow_type=flow_type, institution_id=institution_id
        )
        if flow.flow_type == FlowType.PROVIDER_TRIAGE and not patient_order_id:
            raise ValidationFailed(
                [
                    FieldError(
                        field="patient_order_id",
                        message="Provider triage requires a patient order.",
                    )
                ]
            )

        initial = await self._defs.get_screening(db, flow_version.initial_screening_id)
        if initial is None or initial.active_screening_version_id is None:
            raise NotFoundError(f"Initial screening of flow {flow.name} has no active version")

        row = await self._repo.create_session(
            db,
            flow_version_id=flow_version.id,
            target_account_id=target_account_id,
            created_by_account_id=created_by_account_id,
            patient_order_id=patient_order_id,
            institution_id=institution_id,
        )
        await self._repo.append_session_screening(
            db, session_id=row.id, screening_version_id=initial.active_screening_version_id
        )
        logger.info(
            "Started session %s: flow=%s v%d target=%s by=%s",
            row.id, flow.name, flow_version.version_number,
            target_account_id, created_by_account_id,
        )
        return self._to_session_info(row, flow_version)

    async def submit_answers(
        self,
        db: AsyncSession,
        session_id: uuid.UUID | str,
        *,
        question_id: uuid.UUID | str,
        answer_option_ids: list[uuid.UUID | str],
        freeform_text: str | None = None,
        account_id: str | None = None,
    ) -> SubmitAnswersResult:
        """Store the answer set for one question of the current screening.

        A new set replaces the previous one (the old row is kept, marked
        invalid).  Submitting the set already stored is a no-op.  Selecting
        a crisis option raises the crisis flag immediately.

        Invalid input returns ``valid=False`` with the errors and writes
        nothing.
        """
        sid = coerce_uuid(session_id, "Session")
        async with self._session_guard(sid):
            session = await self._load_session(db, sid, for_update=True)
            if SessionStatus(session.status).is_terminal:
                return self._rejected(session, "session", _SESSION_ENDED)

            screenings = await self._repo.list_session_screenings(db, session.id)
            current = screenings[-1]
            if current.completed:
                return self._rejected(
                    session, "session_screening", "This screening has already been completed."
                )

            question = None
            try:
                qid = uuid.UUID(str(question_id))
            except ValueError:
                qid = None
            if qid is not None:
                question = await self._catalog.get_question(db, current.screening_version_id, qid)
            if question is None:
                return self._rejected(
                    session, "question_id", "You can only supply answers for the current question."
                )

            try:
                option_ids = [uuid.UUID(str(o)) for o in answer_option_ids]
            except ValueError:
                return self._rejected(
                    session,
                    "answer_option_ids",
                    "You can only supply answers for the current question.",
                )

            selection, errors = self._catalog.validate_selection(
                question, option_ids, freeform_text
            )
            if errors:
                logger.warning(
                    "Rejected answers for session %s question %s: %s",
                    session.id, question.code, "; ".join(e.message for e in errors),
                )
                return SubmitAnswersResult(
                    valid=False, errors=errors, crisis_indicated=session.crisis_indicated
                )

            new_set = [(opt.id, text) for opt, text in selection]
            if sorted(new_set, key=_answer_key) == sorted(
                await self._current_answer_set(db, current.id, question.id), key=_answer_key
            ):
                return SubmitAnswersResult(
                    valid=True, crisis_indicated=session.crisis_indicated, changed=False
                )

            await self._repo.replace_answer_set(
                db,
                session_screening_id=current.id,
                question_id=question.id,
                answers=new_set,
                created_by_account_id=account_id or session.target_account_id,
            )
            await self._repo.mark_awaiting_answers(db, session)

            if any(opt.indicates_crisis for opt, _ in selection):
                await self._flag_crisis(db, session, f"answer to {question.code}")

            return SubmitAnswersResult(
                valid=True, crisis_indicated=session.crisis_indicated, changed=True
            )

    async def complete_screening(
        self,
        db: AsyncSession,
        session_id: uuid.UUID | str,
        session_screening_id: uuid.UUID | str,
    ) -> ScreeningCompletion:
        """Score the session screening and mark it completed.

        Completing an already completed screening returns its stored score.

        Raises:
            ValidationFailed: required questions are unanswered, or the
                session has ended.
            EvaluationError: the scoring strategy failed (nothing written).
        """
        sid = coerce_uuid(session_id, "Session")
        ssid = coerce_uuid(session_screening_id, "Session screening")
        async with self._session_guard(sid):
            session = await self._load_session(db, sid, for_update=True)
            target = await self._repo.get_session_screening(db, ssid)
            if target is None or target.session_id != session.id:
                raise NotFoundError(f"Session screening not found: {session_screening_id}")
            if target.completed:
                return ScreeningCompletion(session_screening_id=str(target.id), score=target.score)
            if SessionStatus(session.status).is_terminal:
                raise ValidationFailed(_SESSION_ENDED)

            screenings = await self._repo.list_session_screenings(db, session.id)
            # Only the latest step is ever open
            upto = [s for s in screenings if s.screening_order <= target.screening_order]
            score = await self._score(db, session, upto)
            await self._repo.complete_session_screening(db, target, score=score)
            logger.info(
                "Completed screening %s (order %d) of session %s: score=%d",
                target.id, target.screening_order, session.id, score,
            )
            return ScreeningCompletion(session_screening_id=str(target.id), score=score)

    async def advance(
        self,
        db: AsyncSession,
        session_id: uuid.UUID | str,
        *,
        account_id: str | None = None,
    ) -> AdvanceResult:
        """Move the session past its current screening.

        Completes the current screening if needed, then asks the
        orchestration strategy what comes next: another screening (appended
        at the next ``screening_order``), finish, or skip.  Finishing runs
        the results and destination strategies, records the destination
        (crisis route if the session is crisis-flagged) and projects
        recommendations and triage.

        Raises:
            ValidationFailed: the session has ended, or required questions
                are unanswered.
            EvaluationError: any strategy failed (nothing written).
        """
        sid = coerce_uuid(session_id, "Session")
        async with self._session_guard(sid):
            session = await self._load_session(db, sid, for_update=True)
            if SessionStatus(session.status).is_terminal:
                raise ValidationFailed(_SESSION_ENDED)

            flow_version = await self._load_flow_version(db, session)
            screenings = await self._repo.list_session_screenings(db, session.id)
            current = screenings[-1]

            # --- Evaluate (no writes) ---
            pending_score: int | None = None
            if not current.completed:
                pending_score = await self._score(db, session, screenings)
            overrides = {current.id: pending_score} if pending_score is not None else {}
            snapshot = await self._snapshot(db, session, screenings, scores=overrides)

            decision: Decision = await self._evaluate(
                "orchestration", flow_version.orchestration_function, snapshot
            )
            crisis = session.crisis_indicated or decision.crisis
            snapshot = snapshot.model_copy(update={"crisis_indicated": crisis})

            next_version: ScreeningVersion | None = None
            results: ResultsOutput | None = None
            token: RoutingToken | None = None
            if decision.next is not None:
                next_version = await self._definitions.active_screening_version_by_name(
                    db, decision.next
                )
                if next_version is None:
                    raise EvaluationError(
                        EvaluationErrorKind.INVALID_RESULT_SHAPE,
                        f"orchestration chose screening {decision.next!r} which has no active version",
                        strategy=flow_version.orchestration_function.get("strategy"),
                    )
            elif decision.finish:
                if flow_version.results_function is not None:
                    results = await self._evaluate(
                        "results", flow_version.results_function, snapshot
                    )
                    snapshot = snapshot.model_copy(update={"results": results})
                token = await self._destination(flow_version, snapshot, crisis)

            # --- Persist ---
            if pending_score is not None:
                await self._repo.complete_session_screening(db, current, score=pending_score)
            if decision.crisis:
                await self._flag_crisis(db, session, "orchestration decision")

            if next_version is not None:
                appended = await self._repo.append_session_screening(
                    db, session_id=session.id, screening_version_id=next_version.id
                )
                logger.info(
                    "Session %s advanced to %s (order %d)",
                    session.id, decision.next, appended.screening_order,
                )
                return AdvanceResult(
                    completed=False,
                    next_session_screening_id=str(appended.id),
                    next_screening_name=decision.next,
                    screening_order=appended.screening_order,
                    crisis_indicated=session.crisis_indicated,
                )

            if decision.skip:
                await self._repo.skip_session(db, session)
                logger.info("Session %s skipped by orchestration", session.id)
                return AdvanceResult(
                    completed=True, skipped=True, crisis_indicated=session.crisis_indicated
                )

            await self._repo.complete_session(
                db, session, destination=token.model_dump(mode="json")
            )
            if results is not None:
                await self._projector.project_recommendations(db, session, results)
                await self._projector.activate_computed_group(
                    db,
                    session=session,
                    results=results,
                    account_id=account_id or session.created_by_account_id,
                )
            logger.info(
                "Session %s completed: destination=%s crisis=%s",
                session.id, token.destination, session.crisis_indicated,
            )
            return AdvanceResult(
                completed=True, destination=token, crisis_indicated=session.crisis_indicated
            )

    async def skip_session(
        self,
        db: AsyncSession,
        session_id: uuid.UUID | str,
        *,
        force: bool = False,
    ) -> SessionInfo:
        """Skip the rest of the flow.  One-way: a skipped session is also completed.

        Raises:
            ValidationFailed: the session has ended, or the flow version is
                not skippable and ``force`` is False.
        """
        sid = coerce_uuid(session_id, "Session")
        async with self._session_guard(sid):
            session = await self._load_session(db, sid, for_update=True)
            if SessionStatus(session.status).is_terminal:
                raise ValidationFailed(_SESSION_ENDED)
            flow_version = await self._load_flow_version(db, session)
            if not flow_version.skippable and not force:
                raise ValidationFailed("This screening flow cannot be skipped.")
            await self._repo.skip_session(db, session)
            logger.info("Session %s skipped (force=%s)", session.id, force)
            return self._to_session_info(session, flow_version)

    # ==================================================================
    # Reads
    # ==================================================================

    async def get_session(self, db: AsyncSession, session_id: uuid.UUID | str) -> SessionInfo:
        session = await self._load_session(db, coerce_uuid(session_id, "Session"))
        return self._to_session_info(session, await self._load_flow_version(db, session))

    async def list_sessions(
        self,
        db: AsyncSession,
        target_account_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
    ) -> list[SessionInfo]:
        """Sessions of an account, most recent first."""
        rows = await self._repo.list_by_target_account(
            db, target_account_id, limit=limit, offset=offset
        )
        versions: dict[uuid.UUID, ScreeningFlowVersion] = {}
        infos: list[SessionInfo] = []
        for row in rows:
            if row.flow_version_id not in versions:
                versions[row.flow_version_id] = await self._load_flow_version(db, row)
            infos.append(self._to_session_info(row, versions[row.flow_version_id]))
        return infos

    async def get_session_state(
        self, db: AsyncSession, session_id: uuid.UUID | str
    ) -> SessionState:
        """Every screening, currently valid answer set, score and flag of a session."""
        session = await self._load_session(db, coerce_uuid(session_id, "Session"))
        flow_version = await self._load_flow_version(db, session)
        screenings = await self._repo.list_session_screenings(db, session.id)
        answered, answers = await self._valid_answers(db, screenings)

        views: list[SessionScreeningView] = []
        for ss in screenings:
            head, version = await self._screening_of(db, ss.screening_version_id)
            questions = {
                q.id: q for q in await self._catalog.get_questions(db, ss.screening_version_id)
            }
            aq_views = []
            for aq in answered.get(ss.id, []):
                question = questions.get(aq.question_id)
                aq_views.append(
                    AnsweredQuestionView(
                        answered_question_id=str(aq.id),
                        question_id=str(aq.question_id),
                        question_code=question.code if question else "",
                        answers=[
                            AnswerView(
                                answer_option_id=str(a.answer_option_id),
                                code=_option_code(question, a.answer_option_id),
                                text=a.text,
                            )
                            for a in answers.get(aq.id, [])
                        ],
                        answered_at=aq.created_at,
                    )
                )
            views.append(
                SessionScreeningView(
                    session_screening_id=str(ss.id),
                    screening_id=str(head.id),
                    screening_name=head.name,
                    screening_version_id=str(version.id),
                    screening_version_number=version.version_number,
                    screening_order=ss.screening_order,
                    completed=ss.completed,
                    completed_at=ss.completed_at,
                    score=ss.score,
                    answered_questions=aq_views,
                )
            )

        terminal = SessionStatus(session.status).is_terminal
        return SessionState(
            session=self._to_session_info(session, flow_version),
            skipped_at=session.skipped_at,
            crisis_indicated_at=session.crisis_indicated_at,
            destination=(
                RoutingToken.model_validate(session.destination) if session.destination else None
            ),
            current_session_screening_id=(
                str(screenings[-1].id) if screenings and not terminal else None
            ),
            screenings=views,
        )

    async def get_current_step(
        self, db: AsyncSession, session_id: uuid.UUID | str
    ) -> StepResult:
        """Questions of the current screening with their stored answers, or the outcome.

        Read-only.
        """
        session = await self._load_session(db, coerce_uuid(session_id, "Session"))
        if SessionStatus(session.status).is_terminal:
            return CompletedStep(
                type="skipped" if session.skipped else "completed",
                destination=(
                    RoutingToken.model_validate(session.destination)
                    if session.destination
                    else None
                ),
                crisis_indicated=session.crisis_indicated,
            )

        screenings = await self._repo.list_session_screenings(db, session.id)
        current = screenings[-1]
        head, _ = await self._screening_of(db, current.screening_version_id)
        questions = await self._catalog.get_questions(db, current.screening_version_id)
        answered, answers = await self._valid_answers(db, [current])
        by_question = {aq.question_id: answers.get(aq.id, []) for aq in answered.get(current.id, [])}

        payloads = []
        for q in questions:
            stored = by_question.get(q.id, [])
            payloads.append(
                self._catalog.to_payload(
                    q,
                    selected_option_ids=[a.answer_option_id for a in stored],
                    freeform_text=next((a.text for a in stored if a.text), None),
                )
            )
        return QuestionsStep(
            session_screening_id=str(current.id),
            screening_name=head.name,
            screening_order=current.screening_order,
            ready_to_complete=all(q.id in by_question for q in questions if q.required),
            questions=payloads,
        )

    async def get_recommendations(
        self, db: AsyncSession, session_id: uuid.UUID | str
    ) -> list[RecommendationView]:
        session = await self._load_session(db, coerce_uuid(session_id, "Session"))
        return await self._projector.get_recommendations(db, session.id)

    # ==================================================================
    # Evaluation helpers
    # ==================================================================

    async def _evaluate(self, kind: str, spec: dict[str, Any], snapshot: SessionSnapshot) -> Any:
        try:
            return await self._evaluator.evaluate_async(kind, spec, snapshot)
        except EvaluationError as exc:
            logger.warning(
                "%s evaluation failed for session %s: %s (%s)",
                kind, snapshot.session_id, exc, exc.kind.value,
            )
            raise

    async def _score(
        self,
        db: AsyncSession,
        session: ScreeningSession,
        screenings: list[ScreeningSessionScreening],
    ) -> int:
        """Check required answers of the last screening and evaluate its score."""
        current = screenings[-1]
        required = await self._catalog.get_required_question_ids(db, current.screening_version_id)
        answered = await self._repo.list_answered_questions(db, [current.id])
        answered_ids = {aq.question_id for aq in answered}
        missing = [qid for qid in required if qid not in answered_ids]
        if missing:
            questions = {
                q.id: q for q in await self._catalog.get_questions(db, current.screening_version_id)
            }
            raise ValidationFailed(
                [
                    FieldError(
                        field=f"questions.{questions[qid].code}",
                        message="This question requires an answer.",
                    )
                    for qid in missing
                ]
            )
        _, version = await self._screening_of(db, current.screening_version_id)
        snapshot = await self._snapshot(db, session, screenings)
        return await self._evaluate("scoring", version.scoring_function, snapshot)

    async def _destination(
        self,
        flow_version: ScreeningFlowVersion,
        snapshot: SessionSnapshot,
        crisis: bool,
    ) -> RoutingToken:
        """Evaluate the destination; crisis-flagged sessions always take the crisis route."""
        try:
            token = await self._evaluate(
                "destination", flow_version.destination_function, snapshot
            )
        except EvaluationError:
            if not crisis:
                raise
            logger.warning(
                "Destination failed for crisis-flagged session %s; using crisis route",
                snapshot.session_id,
            )
            token = None
        if not crisis:
            return token

        context: dict[str, Any] = {"crisis_indicated": True}
        if token is not None:
            context["computed_destination"] = token.destination
        return RoutingToken(
            destination=flow_version.crisis_destination or DEFAULT_CRISIS_DESTINATION,
            care_type=token.care_type if token else None,
            focus_type=token.focus_type if token else None,
            reason="Crisis indicated",
            context=context,
        )

    async def _snapshot(
        self,
        db: AsyncSession,
        session: ScreeningSession,
        screenings: list[ScreeningSessionScreening],
        *,
        scores: dict[uuid.UUID, int] | None = None,
    ) -> SessionSnapshot:
        """Freeze everything strategies may read into a ``SessionSnapshot``.

        ``scores`` supplies scores computed in this call but not yet stored;
        those screenings appear completed.
        """
        scores = scores or {}
        answered, answers = await self._valid_answers(db, screenings)
        frozen: list[ScreeningSnapshot] = []
        for ss in screenings:
            head, _ = await self._screening_of(db, ss.screening_version_id)
            questions = {
                q.id: q for q in await self._catalog.get_questions(db, ss.screening_version_id)
            }
            by_code: dict[str, AnswerSnapshot] = {}
            for aq in answered.get(ss.id, []):
                question = questions.get(aq.question_id)
                if question is None:
                    continue
                options = [(question.option(a.answer_option_id), a) for a in answers.get(aq.id, [])]
                by_code[question.code] = AnswerSnapshot(
                    question_id=str(question.id),
                    option_codes=[o.code for o, _ in options if o is not None],
                    option_scores=[o.score for o, _ in options if o is not None],
                    text=next((a.text for _, a in options if a.text), None),
                )
            pending = scores.get(ss.id)
            frozen.append(
                ScreeningSnapshot(
                    session_screening_id=str(ss.id),
                    screening_name=head.name,
                    screening_order=ss.screening_order,
                    completed=ss.completed or pending is not None,
                    score=pending if pending is not None else ss.score,
                    answers=by_code,
                )
            )
        return SessionSnapshot(
            session_id=str(session.id),
            flow_version_id=str(session.flow_version_id),
            crisis_indicated=session.crisis_indicated,
            screenings=frozen,
            account=await self._accounts.get_attributes(session.target_account_id),
        )

    # ==================================================================
    # Loading helpers
    # ==================================================================

    @asynccontextmanager
    async def _session_guard(self, session_id: uuid.UUID) -> AsyncIterator[None]:
        async with self._locks.hold(str(session_id)):
            try:
                yield
            except RowLockedError as exc:
                raise ConflictError(
                    f"Session {session_id} is being modified by another request"
                ) from exc

    async def _load_session(
        self, db: AsyncSession, session_id: uuid.UUID, *, for_update: bool = False
    ) -> ScreeningSession:
        row = await self._repo.get_session(db, session_id, for_update=for_update)
        if row is None:
            raise NotFoundError(f"Session not found: {session_id}")
        return row

    async def _load_flow_version(
        self, db: AsyncSession, session: ScreeningSession
    ) -> ScreeningFlowVersion:
        version = await self._defs.get_flow_version(db, session.flow_version_id)
        if version is None:
            raise NotFoundError(f"Flow version not found: {session.flow_version_id}")
        return version

    async def _screening_of(
        self, db: AsyncSession, screening_version_id: uuid.UUID
    ) -> tuple[Screening, ScreeningVersion]:
        version = await self._defs.get_screening_version(db, screening_version_id)
        if version is None:
            raise NotFoundError(f"Screening version not found: {screening_version_id}")
        head = await self._defs.get_screening(db, version.screening_id)
        return head, version

    async def _valid_answers(
        self, db: AsyncSession, screenings: list[ScreeningSessionScreening]
    ) -> tuple[
        dict[uuid.UUID, list[ScreeningAnsweredQuestion]],
        dict[uuid.UUID, list[ScreeningAnswer]],
    ]:
        """Valid answered questions per session screening, and answers per answered question."""
        answered = await self._repo.list_answered_questions(db, [s.id for s in screenings])
        answers = await self._repo.list_answers(db, [aq.id for aq in answered])
        by_screening: dict[uuid.UUID, list[ScreeningAnsweredQuestion]] = {}
        for aq in answered:
            by_screening.setdefault(aq.session_screening_id, []).append(aq)
        by_answered: dict[uuid.UUID, list[ScreeningAnswer]] = {}
        for a in sorted(answers, key=lambda a: a.answer_order):
            by_answered.setdefault(a.answered_question_id, []).append(a)
        return by_screening, by_answered

    async def _current_answer_set(
        self, db: AsyncSession, session_screening_id: uuid.UUID, question_id: uuid.UUID
    ) -> list[tuple[uuid.UUID, str | None]]:
        answered = [
            aq
            for aq in await self._repo.list_answered_questions(db, [session_screening_id])
            if aq.question_id == question_id
        ]
        if not answered:
            return []
        answers = await self._repo.list_answers(db, [answered[-1].id])
        return [(a.answer_option_id, a.text) for a in answers]

    async def _flag_crisis(self, db: AsyncSession, session: ScreeningSession, trigger: str) -> None:
        if not await self._repo.flag_crisis(db, session):
            return
        logger.warning("Crisis indicated for session %s (%s)", session.id, trigger)
        flow_version = await self._load_flow_version(db, session)
        try:
            await self._notifier.notify(self._to_session_info(session, flow_version))
        except Exception:
            # Notification failures never undo the flag
            logger.exception("Crisis notification failed for session %s", session.id)

    @staticmethod
    def _rejected(session: ScreeningSession, field: str, message: str) -> SubmitAnswersResult:
        logger.warning("Rejected answers for session %s: %s", session.id, message)
        return SubmitAnswersResult(
            valid=False,
            errors=[FieldError(field=field, message=message)],
            crisis_indicated=session.crisis_indicated,
        )

    @staticmethod
    def _to_session_info(row: ScreeningSession, flow_version: ScreeningFlowVersion) -> SessionInfo:
        return SessionInfo(
            session_id=str(row.id),
            flow_id=str(flow_version.flow_id),
            flow_version_id=str(row.flow_version_id),
            flow_version_number=flow_version.version_number,
            target_account_id=row.target_account_id,
            created_by_account_id=row.created_by_account_id,
            patient_order_id=row.patient_order_id,
            status=SessionStatus(row.status).value,
            completed=row.completed,
            skipped=row.skipped,
            crisis_indicated=row.crisis_indicated,
            created_at=row.created_at,
            updated_at=row.updated_at,
            completed_at=row.completed_at,
        )


def _answer_key(pair: tuple[uuid.UUID, str | None]) -> tuple[str, str]:
    return str(pair[0]), pair[1] or ""


def _option_code(question: CatalogQuestion | None, option_id: uuid.UUID) -> str:
    if question is None:
        return ""
    option = question.option(option_id)
    return option.code if option is not None else ""
