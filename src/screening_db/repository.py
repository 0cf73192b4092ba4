"""Async repositories for definitions, sessions and triage groups.

All public methods accept an ``AsyncSession`` so the caller controls
transaction boundaries.  Methods ``flush()`` to surface constraint
violations and populate defaults, but never ``commit()``.

The repositories deliberately avoid business-logic validation; that belongs
in ``screening_rules``.  They *do* own the row-level mechanics the SDK relies
on for its invariants:

  - version numbers are ``max + 1`` under a lock on the definition head
  - the active-version swap is a single UPDATE of the pointer column
  - ``screening_order`` is appended at ``max + 1``
  - triage group activation deactivates the old group and inserts the new
    one in the same transaction
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from screening_db.models.catalog import ScreeningAnswerOption, ScreeningQuestion
from screening_db.models.definitions import (
    Screening,
    ScreeningFlow,
    ScreeningFlowVersion,
    ScreeningVersion,
)
from screening_db.models.enums import SessionStatus
from screening_db.models.session import (
    ScreeningAnswer,
    ScreeningAnsweredQuestion,
    ScreeningSession,
    ScreeningSessionScreening,
    SupportRoleRecommendation,
)
from screening_db.models.triage import PatientOrderTriage, PatientOrderTriageGroup

# SQLSTATE raised by ``FOR UPDATE NOWAIT`` when another transaction holds the row
_LOCK_NOT_AVAILABLE = "55P03"


class RowLockedError(Exception):
    """Another transaction holds the lock this writer needs."""


def _is_lock_not_available(exc: DBAPIError) -> bool:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code == _LOCK_NOT_AVAILABLE or "could not obtain lock" in str(orig)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ======================================================================
# Definitions
# ======================================================================


class DefinitionRepository:
    """Flows, screenings, their version logs and question sets."""

    # ------------------------------------------------------------------
    # Screenings
    # ------------------------------------------------------------------

    async def create_screening(
        self, db: AsyncSession, *, name: str, screening_type: str
    ) -> Screening:
        row = Screening(name=name, screening_type=screening_type)
        db.add(row)
        await db.flush()
        return row

    async def get_screening(
        self, db: AsyncSession, screening_id: uuid.UUID, *, for_update: bool = False
    ) -> Screening | None:
        stmt = select(Screening).where(Screening.id == screening_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_screening_by_name(
        self, db: AsyncSession, name: str
    ) -> Screening | None:
        result = await db.execute(select(Screening).where(Screening.name == name))
        return result.scalar_one_or_none()

    async def list_screenings(self, db: AsyncSession) -> list[Screening]:
        result = await db.execute(select(Screening).order_by(Screening.name))
        return list(result.scalars().all())

    async def next_screening_version_number(
        self, db: AsyncSession, screening_id: uuid.UUID
    ) -> int:
        """``max(version_number) + 1``; call with the head row locked."""
        stmt = select(func.coalesce(func.max(ScreeningVersion.version_number), 0)).where(
            ScreeningVersion.screening_id == screening_id
        )
        return int((await db.execute(stmt)).scalar_one()) + 1

    async def add_screening_version(
        self,
        db: AsyncSession,
        *,
        screening_id: uuid.UUID,
        version_number: int,
        scoring_function: dict[str, Any],
        content_hash: str | None = None,
        created_by_account_id: str | None = None,
    ) -> ScreeningVersion:
        row = ScreeningVersion(
            screening_id=screening_id,
            version_number=version_number,
            scoring_function=scoring_function,
            content_hash=content_hash,
            created_by_account_id=created_by_account_id,
        )
        db.add(row)
        await db.flush()
        return row

    async def add_question_set(
        self,
        db: AsyncSession,
        *,
        screening_version_id: uuid.UUID,
        questions: list[dict[str, Any]],
    ) -> list[ScreeningQuestion]:
        """Insert questions and their options for a freshly created version.

        Each dict holds ``ScreeningQuestion`` column values plus an
        ``options`` list of ``ScreeningAnswerOption`` column values.
        """
        created: list[ScreeningQuestion] = []
        for raw in questions:
            fields = {k: v for k, v in raw.items() if k != "options"}
            question = ScreeningQuestion(screening_version_id=screening_version_id, **fields)
            db.add(question)
            created.append(question)
        # Flush once so question ids exist before options reference them
        await db.flush()
        for question, raw in zip(created, questions):
            for option_fields in raw.get("options", []):
                db.add(ScreeningAnswerOption(question_id=question.id, **option_fields))
        await db.flush()
        return created

    async def get_screening_version(
        self, db: AsyncSession, version_id: uuid.UUID
    ) -> ScreeningVersion | None:
        return await db.get(ScreeningVersion, version_id)

    async def list_screening_versions(
        self, db: AsyncSession, screening_id: uuid.UUID
    ) -> list[ScreeningVersion]:
        stmt = (
            select(ScreeningVersion)
            .where(ScreeningVersion.screening_id == screening_id)
            .order_by(ScreeningVersion.version_number.desc())
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def set_active_screening_version(
        self, db: AsyncSession, screening_id: uuid.UUID, version_id: uuid.UUID
    ) -> None:
        """Swap the active pointer with one UPDATE statement."""
        await db.execute(
            update(Screening)
            .where(Screening.id == screening_id)
            .values(active_screening_version_id=version_id, updated_at=_now())
        )
        await db.flush()

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------

    async def create_flow(
        self,
        db: AsyncSession,
        *,
        name: str,
        flow_type: str,
        institution_id: str | None = None,
    ) -> ScreeningFlow:
        row = ScreeningFlow(name=name, flow_type=flow_type, institution_id=institution_id)
        db.add(row)
        await db.flush()
        return row

    async def get_flow(
        self, db: AsyncSession, flow_id: uuid.UUID, *, for_update: bool = False
    ) -> ScreeningFlow | None:
        stmt = select(ScreeningFlow).where(ScreeningFlow.id == flow_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_flow_by_name(self, db: AsyncSession, name: str) -> ScreeningFlow | None:
        result = await db.execute(select(ScreeningFlow).where(ScreeningFlow.name == name))
        return result.scalar_one_or_none()

    async def find_flows_by_type(
        self,
        db: AsyncSession,
        flow_type: str,
        *,
        institution_id: str | None = None,
    ) -> list[ScreeningFlow]:
        """Flows of a type, institution-specific ones first, then shared ones."""
        stmt = select(ScreeningFlow).where(ScreeningFlow.flow_type == flow_type)
        if institution_id is not None:
            stmt = stmt.where(
                (ScreeningFlow.institution_id == institution_id)
                | ScreeningFlow.institution_id.is_(None)
            )
        else:
            stmt = stmt.where(ScreeningFlow.institution_id.is_(None))
        stmt = stmt.order_by(
            ScreeningFlow.institution_id.is_(None), ScreeningFlow.created_at
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def next_flow_version_number(self, db: AsyncSession, flow_id: uuid.UUID) -> int:
        """``max(version_number) + 1``; call with the head row locked."""
        stmt = select(
            func.coalesce(func.max(ScreeningFlowVersion.version_number), 0)
        ).where(ScreeningFlowVersion.flow_id == flow_id)
        return int((await db.execute(stmt)).scalar_one()) + 1

    async def add_flow_version(
        self,
        db: AsyncSession,
        *,
        flow_id: uuid.UUID,
        version_number: int,
        initial_screening_id: uuid.UUID,
        skippable: bool,
        orchestration_function: dict[str, Any],
        results_function: dict[str, Any] | None,
        destination_function: dict[str, Any],
        crisis_destination: str | None = None,
        content_hash: str | None = None,
        created_by_account_id: str | None = None,
    ) -> ScreeningFlowVersion:
        row = ScreeningFlowVersion(
            flow_id=flow_id,
            version_number=version_number,
            initial_screening_id=initial_screening_id,
            skippable=skippable,
            orchestration_function=orchestration_function,
            results_function=results_function,
            destination_function=destination_function,
            crisis_destination=crisis_destination,
            content_hash=content_hash,
            created_by_account_id=created_by_account_id,
        )
        db.add(row)
        await db.flush()
        return row

    async def get_flow_version(
        self, db: AsyncSession, version_id: uuid.UUID
    ) -> ScreeningFlowVersion | None:
        return await db.get(ScreeningFlowVersion, version_id)

    async def list_flow_versions(
        self, db: AsyncSession, flow_id: uuid.UUID
    ) -> list[ScreeningFlowVersion]:
        stmt = (
            select(ScreeningFlowVersion)
            .where(ScreeningFlowVersion.flow_id == flow_id)
            .order_by(ScreeningFlowVersion.version_number.desc())
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def set_active_flow_version(
        self, db: AsyncSession, flow_id: uuid.UUID, version_id: uuid.UUID
    ) -> None:
        """Swap the active pointer with one UPDATE statement."""
        await db.execute(
            update(ScreeningFlow)
            .where(ScreeningFlow.id == flow_id)
            .values(active_flow_version_id=version_id, updated_at=_now())
        )
        await db.flush()

    # ------------------------------------------------------------------
    # Catalog reads
    # ------------------------------------------------------------------

    async def list_questions(
        self, db: AsyncSession, screening_version_id: uuid.UUID
    ) -> list[ScreeningQuestion]:
        stmt = (
            select(ScreeningQuestion)
            .where(ScreeningQuestion.screening_version_id == screening_version_id)
            .order_by(ScreeningQuestion.display_order)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def list_answer_options(
        self, db: AsyncSession, question_ids: Iterable[uuid.UUID]
    ) -> list[ScreeningAnswerOption]:
        ids = list(question_ids)
        if not ids:
            return []
        stmt = (
            select(ScreeningAnswerOption)
            .where(ScreeningAnswerOption.question_id.in_(ids))
            .order_by(ScreeningAnswerOption.question_id, ScreeningAnswerOption.display_order)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())


# ======================================================================
# Sessions
# ======================================================================


class SessionRepository:
    """Session rows, their screenings, answer sets and recommendations."""

    # ------------------------------------------------------------------
    # Create / read
    # ------------------------------------------------------------------

    async def create_session(
        self,
        db: AsyncSession,
        *,
        flow_version_id: uuid.UUID,
        target_account_id: str,
        created_by_account_id: str,
        patient_order_id: str | None = None,
        institution_id: str | None = None,
    ) -> ScreeningSession:
        row = ScreeningSession(
            flow_version_id=flow_version_id,
            target_account_id=target_account_id,
            created_by_account_id=created_by_account_id,
            patient_order_id=patient_order_id,
            institution_id=institution_id,
            status=SessionStatus.NOT_STARTED,
        )
        db.add(row)
        await db.flush()
        return row

    async def get_session(
        self, db: AsyncSession, session_id: uuid.UUID, *, for_update: bool = False
    ) -> ScreeningSession | None:
        """Fetch a session; ``for_update`` takes a ``NOWAIT`` row lock.

        Raises:
            RowLockedError: another transaction is mutating the session.
        """
        stmt = select(ScreeningSession).where(ScreeningSession.id == session_id)
        if for_update:
            stmt = stmt.with_for_update(nowait=True)
        try:
            result = await db.execute(stmt)
        except DBAPIError as exc:
            if _is_lock_not_available(exc):
                raise RowLockedError(f"screening_session {session_id}") from exc
            raise
        return result.scalar_one_or_none()

    async def list_by_target_account(
        self,
        db: AsyncSession,
        target_account_id: str,
        *,
        limit: int = 20,
        offset: int = 0,
    ) -> list[ScreeningSession]:
        stmt = (
            select(ScreeningSession)
            .where(ScreeningSession.target_account_id == target_account_id)
            .order_by(ScreeningSession.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Session screenings
    # ------------------------------------------------------------------

    async def list_session_screenings(
        self, db: AsyncSession, session_id: uuid.UUID
    ) -> list[ScreeningSessionScreening]:
        stmt = (
            select(ScreeningSessionScreening)
            .where(ScreeningSessionScreening.session_id == session_id)
            .order_by(ScreeningSessionScreening.screening_order)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def get_session_screening(
        self, db: AsyncSession, session_screening_id: uuid.UUID
    ) -> ScreeningSessionScreening | None:
        return await db.get(ScreeningSessionScreening, session_screening_id)

    async def append_session_screening(
        self,
        db: AsyncSession,
        *,
        session_id: uuid.UUID,
        screening_version_id: uuid.UUID,
    ) -> ScreeningSessionScreening:
        """Append a step at ``max(screening_order) + 1`` (1 for a new session)."""
        stmt = select(
            func.coalesce(func.max(ScreeningSessionScreening.screening_order), 0)
        ).where(ScreeningSessionScreening.session_id == session_id)
        next_order = int((await db.execute(stmt)).scalar_one()) + 1
        row = ScreeningSessionScreening(
            session_id=session_id,
            screening_version_id=screening_version_id,
            screening_order=next_order,
        )
        db.add(row)
        await db.flush()
        return row

    async def complete_session_screening(
        self, db: AsyncSession, session_screening: ScreeningSessionScreening, *, score: int
    ) -> ScreeningSessionScreening:
        now = _now()
        session_screening.score = score
        session_screening.completed = True
        session_screening.completed_at = now
        session_screening.updated_at = now
        await db.flush()
        return session_screening

    # ------------------------------------------------------------------
    # Answers
    # ------------------------------------------------------------------

    async def list_answered_questions(
        self,
        db: AsyncSession,
        session_screening_ids: Iterable[uuid.UUID],
        *,
        valid_only: bool = True,
    ) -> list[ScreeningAnsweredQuestion]:
        ids = list(session_screening_ids)
        if not ids:
            return []
        stmt = select(ScreeningAnsweredQuestion).where(
            ScreeningAnsweredQuestion.session_screening_id.in_(ids)
        )
        if valid_only:
            stmt = stmt.where(ScreeningAnsweredQuestion.valid.is_(True))
        stmt = stmt.order_by(ScreeningAnsweredQuestion.created_at)
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def list_answers(
        self, db: AsyncSession, answered_question_ids: Iterable[uuid.UUID]
    ) -> list[ScreeningAnswer]:
        ids = list(answered_question_ids)
        if not ids:
            return []
        stmt = (
            select(ScreeningAnswer)
            .where(ScreeningAnswer.answered_question_id.in_(ids))
            .order_by(ScreeningAnswer.answered_question_id, ScreeningAnswer.answer_order)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def replace_answer_set(
        self,
        db: AsyncSession,
        *,
        session_screening_id: uuid.UUID,
        question_id: uuid.UUID,
        answers: list[tuple[uuid.UUID, str | None]],
        created_by_account_id: str,
    ) -> ScreeningAnsweredQuestion:
        """Invalidate the current answer set for the question and insert a new one.

        ``answers`` is an ordered list of ``(answer_option_id, text)`` pairs.
        The invalidating UPDATE runs before the insert so the partial unique
        index on valid rows is never violated.
        """
        await db.execute(
            update(ScreeningAnsweredQuestion)
            .where(
                ScreeningAnsweredQuestion.session_screening_id == session_screening_id,
                ScreeningAnsweredQuestion.question_id == question_id,
                ScreeningAnsweredQuestion.valid.is_(True),
            )
            .values(valid=False, updated_at=_now())
        )
        answered = ScreeningAnsweredQuestion(
            session_screening_id=session_screening_id,
            question_id=question_id,
            valid=True,
        )
        db.add(answered)
        await db.flush()
        for order, (option_id, answer_text) in enumerate(answers, start=1):
            db.add(
                ScreeningAnswer(
                    answered_question_id=answered.id,
                    answer_option_id=option_id,
                    text=answer_text,
                    answer_order=order,
                    created_by_account_id=created_by_account_id,
                )
            )
        await db.flush()
        return answered

    # ------------------------------------------------------------------
    # Session state transitions
    # ------------------------------------------------------------------

    async def mark_awaiting_answers(
        self, db: AsyncSession, session: ScreeningSession
    ) -> ScreeningSession:
        if session.status == SessionStatus.NOT_STARTED:
            session.status = SessionStatus.AWAITING_ANSWERS
            session.updated_at = _now()
            await db.flush()
        return session

    async def flag_crisis(self, db: AsyncSession, session: ScreeningSession) -> bool:
        """Set the crisis flag once.  Returns ``True`` only on the first call."""
        if session.crisis_indicated:
            return False
        now = _now()
        session.crisis_indicated = True
        session.crisis_indicated_at = now
        session.updated_at = now
        await db.flush()
        return True

    async def complete_session(
        self,
        db: AsyncSession,
        session: ScreeningSession,
        *,
        destination: dict[str, Any] | None,
    ) -> ScreeningSession:
        now = _now()
        session.status = SessionStatus.COMPLETED
        session.completed = True
        session.completed_at = now
        session.destination = destination
        session.updated_at = now
        await db.flush()
        return session

    async def skip_session(
        self, db: AsyncSession, session: ScreeningSession
    ) -> ScreeningSession:
        """Skipped sessions are also completed (see ``ck_session_skipped_is_completed``)."""
        now = _now()
        session.status = SessionStatus.SKIPPED
        session.skipped = True
        session.skipped_at = now
        session.completed = True
        session.completed_at = now
        session.updated_at = now
        await db.flush()
        return session

    # ------------------------------------------------------------------
    # Recommendations
    # ------------------------------------------------------------------

    async def save_recommendations(
        self,
        db: AsyncSession,
        session_id: uuid.UUID,
        rows: list[tuple[str, float]],
    ) -> list[SupportRoleRecommendation]:
        """Insert ``(support_role_id, weight)`` rows in the given order."""
        created = [
            SupportRoleRecommendation(
                session_id=session_id,
                support_role_id=role,
                weight=weight,
                display_order=order,
            )
            for order, (role, weight) in enumerate(rows, start=1)
        ]
        db.add_all(created)
        await db.flush()
        return created

    async def list_recommendations(
        self, db: AsyncSession, session_id: uuid.UUID
    ) -> list[SupportRoleRecommendation]:
        stmt = (
            select(SupportRoleRecommendation)
            .where(SupportRoleRecommendation.session_id == session_id)
            .order_by(SupportRoleRecommendation.display_order)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())


# ======================================================================
# Triage
# ======================================================================


class TriageRepository:
    """Patient-order triage groups; one active group per patient order."""

    async def try_lock_patient_order(self, db: AsyncSession, patient_order_id: str) -> bool:
        """Take a transaction-scoped advisory lock keyed by the patient order.

        Returns ``False`` immediately if another transaction holds it.
        """
        result = await db.execute(
            text("SELECT pg_try_advisory_xact_lock(hashtext(:key))"),
            {"key": f"patient_order_triage:{patient_order_id}"},
        )
        return bool(result.scalar_one())

    async def get_active_group(
        self, db: AsyncSession, patient_order_id: str
    ) -> PatientOrderTriageGroup | None:
        stmt = select(PatientOrderTriageGroup).where(
            PatientOrderTriageGroup.patient_order_id == patient_order_id,
            PatientOrderTriageGroup.active.is_(True),
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_groups(
        self, db: AsyncSession, patient_order_id: str
    ) -> list[PatientOrderTriageGroup]:
        """All groups for a patient order, newest first (audit trail)."""
        stmt = (
            select(PatientOrderTriageGroup)
            .where(PatientOrderTriageGroup.patient_order_id == patient_order_id)
            .order_by(PatientOrderTriageGroup.created_at.desc())
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def latest_computed_group(
        self, db: AsyncSession, patient_order_id: str
    ) -> PatientOrderTriageGroup | None:
        stmt = (
            select(PatientOrderTriageGroup)
            .where(
                PatientOrderTriageGroup.patient_order_id == patient_order_id,
                PatientOrderTriageGroup.source == "computed",
            )
            .order_by(PatientOrderTriageGroup.created_at.desc())
            .limit(1)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def list_triages(
        self, db: AsyncSession, group_ids: Iterable[uuid.UUID]
    ) -> list[PatientOrderTriage]:
        ids = list(group_ids)
        if not ids:
            return []
        stmt = (
            select(PatientOrderTriage)
            .where(PatientOrderTriage.triage_group_id.in_(ids))
            .order_by(PatientOrderTriage.triage_group_id, PatientOrderTriage.display_order)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _deactivate_all(self, db: AsyncSession, patient_order_id: str) -> None:
        await db.execute(
            update(PatientOrderTriageGroup)
            .where(
                PatientOrderTriageGroup.patient_order_id == patient_order_id,
                PatientOrderTriageGroup.active.is_(True),
            )
            .values(active=False, updated_at=_now())
        )

    async def activate_new_group(
        self,
        db: AsyncSession,
        *,
        patient_order_id: str,
        care_type: str,
        source: str,
        account_id: str,
        triages: list[dict[str, Any]],
        override_reason: str | None = None,
        screening_session_id: uuid.UUID | None = None,
    ) -> PatientOrderTriageGroup:
        """Deactivate the current group and insert ``triages`` as the new active group.

        Both statements run in the caller's transaction; nothing is visible
        to other transactions until it commits.
        """
        await self._deactivate_all(db, patient_order_id)
        group = PatientOrderTriageGroup(
            patient_order_id=patient_order_id,
            care_type=care_type,
            source=source,
            override_reason=override_reason,
            account_id=account_id,
            screening_session_id=screening_session_id,
            active=True,
        )
        db.add(group)
        await db.flush()
        for order, triage in enumerate(triages, start=1):
            db.add(PatientOrderTriage(triage_group_id=group.id, display_order=order, **triage))
        await db.flush()
        return group

    async def reactivate_group(
        self, db: AsyncSession, group: PatientOrderTriageGroup
    ) -> PatientOrderTriageGroup:
        await self._deactivate_all(db, group.patient_order_id)
        # The bulk UPDATE bypasses the identity map; flush so the next
        # assignment is written after it.
        await db.flush()
        group.active = True
        group.updated_at = _now()
        await db.flush()
        return group
