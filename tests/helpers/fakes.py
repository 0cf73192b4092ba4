"""In-memory stand-ins for the screening_db repositories.

Each fake mirrors the async interface of its real repository so the SDK
components behave identically without a database.  All three share one
``FakeState`` so a row written through one repository is visible through
the others, just like tables in one transaction.

Rows are plain (transient) ORM instances.  Column defaults normally applied
at flush time (ids, timestamps, boolean flags) are set explicitly here.

The clock is a counter, so ``created_at`` is strictly increasing and
ordering by it is deterministic.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

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
from screening_db.repository import RowLockedError

_EPOCH = datetime(2026, 1, 1, tzinfo=timezone.utc)


# =====================================================================
# Shared state
# =====================================================================


@dataclass
class FakeState:
    """Every "table" the fakes read and write."""

    screenings: dict[uuid.UUID, Screening] = field(default_factory=dict)
    screening_versions: dict[uuid.UUID, ScreeningVersion] = field(default_factory=dict)
    questions: dict[uuid.UUID, ScreeningQuestion] = field(default_factory=dict)
    options: dict[uuid.UUID, ScreeningAnswerOption] = field(default_factory=dict)
    flows: dict[uuid.UUID, ScreeningFlow] = field(default_factory=dict)
    flow_versions: dict[uuid.UUID, ScreeningFlowVersion] = field(default_factory=dict)
    sessions: dict[uuid.UUID, ScreeningSession] = field(default_factory=dict)
    session_screenings: dict[uuid.UUID, ScreeningSessionScreening] = field(default_factory=dict)
    answered: dict[uuid.UUID, ScreeningAnsweredQuestion] = field(default_factory=dict)
    answers: dict[uuid.UUID, ScreeningAnswer] = field(default_factory=dict)
    recommendations: list[SupportRoleRecommendation] = field(default_factory=list)
    groups: dict[uuid.UUID, PatientOrderTriageGroup] = field(default_factory=dict)
    triages: list[PatientOrderTriage] = field(default_factory=list)

    # Sessions whose row lock is held by "another transaction"
    locked_sessions: set[uuid.UUID] = field(default_factory=set)
    # Patient orders whose advisory lock is held by "another transaction"
    locked_patient_orders: set[str] = field(default_factory=set)

    ticks: int = 0

    def now(self) -> datetime:
        self.ticks += 1
        return _EPOCH + timedelta(milliseconds=self.ticks)

    def stamp(self, row: Any) -> Any:
        """Apply the surrogate-key defaults the database would fill in."""
        now = self.now()
        row.id = uuid.uuid4()
        row.created_at = now
        row.updated_at = now
        return row


# =====================================================================
# Definitions
# =====================================================================


class FakeDefinitionRepository:
    """In-memory DefinitionRepository."""

    def __init__(self, state: FakeState):
        self.state = state

    # --- Screenings ---

    async def create_screening(self, db, *, name, screening_type):
        row = self.state.stamp(
            Screening(name=name, screening_type=screening_type, active_screening_version_id=None)
        )
        self.state.screenings[row.id] = row
        return row

    async def get_screening(self, db, screening_id, *, for_update=False):
        return self.state.screenings.get(screening_id)

    async def get_screening_by_name(self, db, name):
        return next((s for s in self.state.screenings.values() if s.name == name), None)

    async def list_screenings(self, db):
        return sorted(self.state.screenings.values(), key=lambda s: s.name)

    async def next_screening_version_number(self, db, screening_id):
        numbers = [
            v.version_number
            for v in self.state.screening_versions.values()
            if v.screening_id == screening_id
        ]
        return max(numbers, default=0) + 1

    async def add_screening_version(
        self,
        db,
        *,
        screening_id,
        version_number,
        scoring_function,
        content_hash=None,
        created_by_account_id=None,
    ):
        row = self.state.stamp(
            ScreeningVersion(
                screening_id=screening_id,
                version_number=version_number,
                scoring_function=scoring_function,
                content_hash=content_hash,
                created_by_account_id=created_by_account_id,
            )
        )
        self.state.screening_versions[row.id] = row
        return row

    async def add_question_set(self, db, *, screening_version_id, questions):
        created = []
        for raw in questions:
            fields = {k: v for k, v in raw.items() if k != "options"}
            question = self.state.stamp(
                ScreeningQuestion(screening_version_id=screening_version_id, **fields)
            )
            self.state.questions[question.id] = question
            created.append(question)
            for option_fields in raw.get("options", []):
                option = self.state.stamp(
                    ScreeningAnswerOption(question_id=question.id, **option_fields)
                )
                self.state.options[option.id] = option
        return created

    async def get_screening_version(self, db, version_id):
        return self.state.screening_versions.get(version_id)

    async def list_screening_versions(self, db, screening_id):
        versions = [
            v for v in self.state.screening_versions.values() if v.screening_id == screening_id
        ]
        return sorted(versions, key=lambda v: v.version_number, reverse=True)

    async def set_active_screening_version(self, db, screening_id, version_id):
        head = self.state.screenings[screening_id]
        head.active_screening_version_id = version_id
        head.updated_at = self.state.now()

    # --- Flows ---

    async def create_flow(self, db, *, name, flow_type, institution_id=None):
        row = self.state.stamp(
            ScreeningFlow(
                name=name,
                flow_type=flow_type,
                institution_id=institution_id,
                active_flow_version_id=None,
            )
        )
        self.state.flows[row.id] = row
        return row

    async def get_flow(self, db, flow_id, *, for_update=False):
        return self.state.flows.get(flow_id)

    async def get_flow_by_name(self, db, name):
        return next((f for f in self.state.flows.values() if f.name == name), None)

    async def find_flows_by_type(self, db, flow_type, *, institution_id=None):
        flows = [
            f
            for f in self.state.flows.values()
            if f.flow_type == flow_type
            and (f.institution_id is None or f.institution_id == institution_id)
        ]
        return sorted(flows, key=lambda f: (f.institution_id is None, f.created_at))

    async def next_flow_version_number(self, db, flow_id):
        numbers = [
            v.version_number for v in self.state.flow_versions.values() if v.flow_id == flow_id
        ]
        return max(numbers, default=0) + 1

    async def add_flow_version(
        self,
        db,
        *,
        flow_id,
        version_number,
        initial_screening_id,
        skippable,
        orchestration_function,
        results_function,
        destination_function,
        crisis_destination=None,
        content_hash=None,
        created_by_account_id=None,
    ):
        row = self.state.stamp(
            ScreeningFlowVersion(
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
        )
        self.state.flow_versions[row.id] = row
        return row

    async def get_flow_version(self, db, version_id):
        return self.state.flow_versions.get(version_id)

    async def list_flow_versions(self, db, flow_id):
        versions = [v for v in self.state.flow_versions.values() if v.flow_id == flow_id]
        return sorted(versions, key=lambda v: v.version_number, reverse=True)

    async def set_active_flow_version(self, db, flow_id, version_id):
        head = self.state.flows[flow_id]
        head.active_flow_version_id = version_id
        head.updated_at = self.state.now()

    # --- Catalog reads ---

    async def list_questions(self, db, screening_version_id):
        rows = [
            q for q in self.state.questions.values()
            if q.screening_version_id == screening_version_id
        ]
        return sorted(rows, key=lambda q: q.display_order)

    async def list_answer_options(self, db, question_ids: Iterable[uuid.UUID]):
        ids = set(question_ids)
        rows = [o for o in self.state.options.values() if o.question_id in ids]
        return sorted(rows, key=lambda o: (str(o.question_id), o.display_order))


# =====================================================================
# Sessions
# =====================================================================


class FakeSessionRepository:
    """In-memory SessionRepository."""

    def __init__(self, state: FakeState):
        self.state = state

    async def create_session(
        self,
        db,
        *,
        flow_version_id,
        target_account_id,
        created_by_account_id,
        patient_order_id=None,
        institution_id=None,
    ):
        row = self.state.stamp(
            ScreeningSession(
                flow_version_id=flow_version_id,
                target_account_id=target_account_id,
                created_by_account_id=created_by_account_id,
                patient_order_id=patient_order_id,
                institution_id=institution_id,
                status=SessionStatus.NOT_STARTED,
                completed=False,
                completed_at=None,
                skipped=False,
                skipped_at=None,
                crisis_indicated=False,
                crisis_indicated_at=None,
                destination=None,
            )
        )
        self.state.sessions[row.id] = row
        return row

    async def get_session(self, db, session_id, *, for_update=False):
        if for_update and session_id in self.state.locked_sessions:
            raise RowLockedError(f"screening_session {session_id}")
        return self.state.sessions.get(session_id)

    async def list_by_target_account(self, db, target_account_id, *, limit=20, offset=0):
        rows = [
            s for s in self.state.sessions.values() if s.target_account_id == target_account_id
        ]
        rows.sort(key=lambda s: s.created_at, reverse=True)
        return rows[offset:offset + limit]

    async def list_session_screenings(self, db, session_id):
        rows = [
            ss for ss in self.state.session_screenings.values() if ss.session_id == session_id
        ]
        return sorted(rows, key=lambda ss: ss.screening_order)

    async def get_session_screening(self, db, session_screening_id):
        return self.state.session_screenings.get(session_screening_id)

    async def append_session_screening(self, db, *, session_id, screening_version_id):
        existing = await self.list_session_screenings(db, session_id)
        next_order = max((ss.screening_order for ss in existing), default=0) + 1
        row = self.state.stamp(
            ScreeningSessionScreening(
                session_id=session_id,
                screening_version_id=screening_version_id,
                screening_order=next_order,
                completed=False,
                completed_at=None,
                score=None,
            )
        )
        self.state.session_screenings[row.id] = row
        return row

    async def complete_session_screening(self, db, session_screening, *, score):
        now = self.state.now()
        session_screening.score = score
        session_screening.completed = True
        session_screening.completed_at = now
        session_screening.updated_at = now
        return session_screening

    async def list_answered_questions(self, db, session_screening_ids, *, valid_only=True):
        ids = set(session_screening_ids)
        rows = [
            aq for aq in self.state.answered.values()
            if aq.session_screening_id in ids and (aq.valid or not valid_only)
        ]
        return sorted(rows, key=lambda aq: aq.created_at)

    async def list_answers(self, db, answered_question_ids):
        ids = set(answered_question_ids)
        rows = [a for a in self.state.answers.values() if a.answered_question_id in ids]
        return sorted(rows, key=lambda a: (str(a.answered_question_id), a.answer_order))

    async def replace_answer_set(
        self, db, *, session_screening_id, question_id, answers, created_by_account_id
    ):
        for aq in self.state.answered.values():
            if (
                aq.session_screening_id == session_screening_id
                and aq.question_id == question_id
                and aq.valid
            ):
                aq.valid = False
                aq.updated_at = self.state.now()
        answered = self.state.stamp(
            ScreeningAnsweredQuestion(
                session_screening_id=session_screening_id,
                question_id=question_id,
                valid=True,
            )
        )
        self.state.answered[answered.id] = answered
        for order, (option_id, answer_text) in enumerate(answers, start=1):
            row = self.state.stamp(
                ScreeningAnswer(
                    answered_question_id=answered.id,
                    answer_option_id=option_id,
                    text=answer_text,
                    answer_order=order,
                    created_by_account_id=created_by_account_id,
                )
            )
            self.state.answers[row.id] = row
        return answered

    async def mark_awaiting_answers(self, db, session):
        if session.status == SessionStatus.NOT_STARTED:
            session.status = SessionStatus.AWAITING_ANSWERS
            session.updated_at = self.state.now()
        return session

    async def flag_crisis(self, db, session):
        if session.crisis_indicated:
            return False
        now = self.state.now()
        session.crisis_indicated = True
        session.crisis_indicated_at = now
        session.updated_at = now
        return True

    async def complete_session(self, db, session, *, destination):
        now = self.state.now()
        session.status = SessionStatus.COMPLETED
        session.completed = True
        session.completed_at = now
        session.destination = destination
        session.updated_at = now
        return session

    async def skip_session(self, db, session):
        now = self.state.now()
        session.status = SessionStatus.SKIPPED
        session.skipped = True
        session.skipped_at = now
        session.completed = True
        session.completed_at = now
        session.updated_at = now
        return session

    async def save_recommendations(self, db, session_id, rows):
        created = []
        for order, (role, weight) in enumerate(rows, start=1):
            row = self.state.stamp(
                SupportRoleRecommendation(
                    session_id=session_id,
                    support_role_id=role,
                    weight=weight,
                    display_order=order,
                )
            )
            created.append(row)
        self.state.recommendations.extend(created)
        return created

    async def list_recommendations(self, db, session_id):
        rows = [r for r in self.state.recommendations if r.session_id == session_id]
        return sorted(rows, key=lambda r: r.display_order)


# =====================================================================
# Triage
# =====================================================================


class FakeTriageRepository:
    """In-memory TriageRepository; the advisory lock is ``state.locked_patient_orders``."""

    def __init__(self, state: FakeState):
        self.state = state

    async def try_lock_patient_order(self, db, patient_order_id):
        return patient_order_id not in self.state.locked_patient_orders

    async def get_active_group(self, db, patient_order_id):
        return next(
            (
                g for g in self.state.groups.values()
                if g.patient_order_id == patient_order_id and g.active
            ),
            None,
        )

    async def list_groups(self, db, patient_order_id):
        rows = [g for g in self.state.groups.values() if g.patient_order_id == patient_order_id]
        return sorted(rows, key=lambda g: g.created_at, reverse=True)

    async def latest_computed_group(self, db, patient_order_id):
        computed = [g for g in await self.list_groups(db, patient_order_id) if g.source == "computed"]
        return computed[0] if computed else None

    async def list_triages(self, db, group_ids):
        ids = set(group_ids)
        rows = [t for t in self.state.triages if t.triage_group_id in ids]
        return sorted(rows, key=lambda t: (str(t.triage_group_id), t.display_order))

    def _deactivate_all(self, patient_order_id):
        for g in self.state.groups.values():
            if g.patient_order_id == patient_order_id and g.active:
                g.active = False
                g.updated_at = self.state.now()

    async def activate_new_group(
        self,
        db,
        *,
        patient_order_id,
        care_type,
        source,
        account_id,
        triages,
        override_reason=None,
        screening_session_id=None,
    ):
        self._deactivate_all(patient_order_id)
        group = self.state.stamp(
            PatientOrderTriageGroup(
                patient_order_id=patient_order_id,
                care_type=care_type,
                source=source,
                override_reason=override_reason,
                account_id=account_id,
                screening_session_id=screening_session_id,
                active=True,
            )
        )
        self.state.groups[group.id] = group
        for order, triage in enumerate(triages, start=1):
            self.state.triages.append(
                self.state.stamp(
                    PatientOrderTriage(triage_group_id=group.id, display_order=order, **triage)
                )
            )
        return group

    async def reactivate_group(self, db, group):
        self._deactivate_all(group.patient_order_id)
        group.active = True
        group.updated_at = self.state.now()
        return group
