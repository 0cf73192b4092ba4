"""TriageProjector — support-role recommendations and patient-order triage groups.

Turns the results of a completed session into stored recommendations and,
for patient orders, into a triage group.  Clinicians can replace the active
group with a manual override (reason required) and later revert to the most
recent computed group.

Exactly one group per patient order is active once the first one exists.
Every activation deactivates the old group and inserts or reactivates the
new one inside the caller's transaction, and activations for one patient
order are serialized twice over:

  - in-process by :class:`KeyedLocks` (a concurrent writer gets ConflictError)
  - across processes by ``pg_try_advisory_xact_lock``

The partial unique index on ``patient_order_id WHERE active`` backs this up
in the database.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from screening_db.models.enums import CareType, TriageSource
from screening_db.models.session import ScreeningSession
from screening_db.models.triage import PatientOrderTriageGroup
from screening_db.repository import SessionRepository, TriageRepository

from screening_rules.errors import ConflictError, FieldError, NotFoundError, ValidationFailed
from screening_rules.locks import KeyedLocks
from screening_rules.models.evaluation import ResultsOutput
from screening_rules.models.session import RecommendationView, TriageGroupView, TriageView
from screening_rules.models.strategy import SupportRoleWeight, TriageRow

logger = logging.getLogger(__name__)


def merge_support_roles(roles: Iterable[SupportRoleWeight]) -> list[tuple[str, float]]:
    """One row per role keeping its highest weight, heaviest first then by role."""
    best: dict[str, float] = {}
    for role in roles:
        key = role.support_role.value
        if key not in best or role.weight > best[key]:
            best[key] = role.weight
    return sorted(best.items(), key=lambda item: (-item[1], item[0]))


def group_care_type(triages: Iterable[TriageRow]) -> CareType:
    """Highest-priority care type among the rows (UNSPECIFIED when empty)."""
    return max((t.care_type for t in triages), key=lambda c: c.priority, default=CareType.UNSPECIFIED)


class TriageProjector:
    """Stateless projector; all state lives in the database."""

    def __init__(self, locks: KeyedLocks | None = None) -> None:
        self._sessions = SessionRepository()
        self._repo = TriageRepository()
        self._locks = locks or KeyedLocks("patient order")

    # ==================================================================
    # Recommendations
    # ==================================================================

    async def project_recommendations(
        self, db: AsyncSession, session: ScreeningSession, results: ResultsOutput
    ) -> list[RecommendationView]:
        rows = merge_support_roles(results.support_roles)
        if rows:
            await self._sessions.save_recommendations(db, session.id, rows)
        return [RecommendationView(support_role_id=role, weight=weight) for role, weight in rows]

    async def get_recommendations(
        self, db: AsyncSession, session_id: uuid.UUID
    ) -> list[RecommendationView]:
        rows = await self._sessions.list_recommendations(db, session_id)
        return [
            RecommendationView(support_role_id=r.support_role_id, weight=r.weight) for r in rows
        ]

    # ==================================================================
    # Triage groups
    # ==================================================================

    async def activate_computed_group(
        self,
        db: AsyncSession,
        *,
        session: ScreeningSession,
        results: ResultsOutput,
        account_id: str,
    ) -> TriageGroupView | None:
        """Activate the session's triage rows as the patient order's computed group.

        Returns None when the session has no patient order or produced no
        triage rows.
        """
        if session.patient_order_id is None or not results.triages:
            return None
        async with self._serialized(db, session.patient_order_id):
            group = await self._repo.activate_new_group(
                db,
                patient_order_id=session.patient_order_id,
                care_type=group_care_type(results.triages).value,
                source=TriageSource.COMPUTED.value,
                account_id=account_id,
                screening_session_id=session.id,
                triages=self._triage_rows(results.triages),
            )
            logger.info(
                "Activated computed triage group %s for patient order %s (care_type=%s)",
                group.id, session.patient_order_id, group.care_type,
            )
            return await self._to_view(db, group)

    async def create_override(
        self,
        db: AsyncSession,
        patient_order_id: str,
        *,
        triages: list[TriageRow],
        reason: str | None,
        account_id: str,
    ) -> TriageGroupView:
        """Replace the active group with a manual one.

        Raises:
            ValidationFailed: blank reason, no rows, or a focus type listed
                twice.  The active group is left unchanged.
        """
        errors: list[FieldError] = []
        if reason is None or not reason.strip():
            errors.append(
                FieldError(field="reason", message="A reason is required to override triage.")
            )
        if not triages:
            errors.append(FieldError(field="triages", message="At least one triage is required."))
        focus_types = [t.focus_type for t in triages]
        if len(set(focus_types)) != len(focus_types):
            errors.append(FieldError(field="triages", message="Each focus type may appear once."))
        if errors:
            logger.warning(
                "Rejected triage override for patient order %s: %s",
                patient_order_id, "; ".join(e.message for e in errors),
            )
            raise ValidationFailed(errors)

        async with self._serialized(db, patient_order_id):
            group = await self._repo.activate_new_group(
                db,
                patient_order_id=patient_order_id,
                care_type=group_care_type(triages).value,
                source=TriageSource.MANUAL.value,
                account_id=account_id,
                override_reason=reason.strip(),
                triages=self._triage_rows(triages),
            )
            logger.info(
                "Manual triage override %s for patient order %s by %s",
                group.id, patient_order_id, account_id,
            )
            return await self._to_view(db, group)

    async def reset_to_computed(
        self, db: AsyncSession, patient_order_id: str, *, account_id: str
    ) -> TriageGroupView:
        """Reactivate the most recent computed group.

        Raises:
            NotFoundError: the patient order has never had a computed group.
        """
        async with self._serialized(db, patient_order_id):
            group = await self._repo.latest_computed_group(db, patient_order_id)
            if group is None:
                raise NotFoundError(f"No computed triage for patient order {patient_order_id}")
            if not group.active:
                group = await self._repo.reactivate_group(db, group)
            logger.info(
                "Reset triage for patient order %s to computed group %s (by %s)",
                patient_order_id, group.id, account_id,
            )
            return await self._to_view(db, group)

    async def get_active_group(
        self, db: AsyncSession, patient_order_id: str
    ) -> TriageGroupView:
        group = await self._repo.get_active_group(db, patient_order_id)
        if group is None:
            raise NotFoundError(f"No active triage for patient order {patient_order_id}")
        return await self._to_view(db, group)

    async def list_groups(
        self, db: AsyncSession, patient_order_id: str
    ) -> list[TriageGroupView]:
        """Every group, active and inactive, newest first."""
        groups = await self._repo.list_groups(db, patient_order_id)
        triages = await self._repo.list_triages(db, [g.id for g in groups])
        by_group: dict[uuid.UUID, list[TriageView]] = {}
        for t in triages:
            by_group.setdefault(t.triage_group_id, []).append(
                TriageView(focus_type=t.focus_type, care_type=t.care_type, reason=t.reason)
            )
        return [self._group_view(g, by_group.get(g.id, [])) for g in groups]

    # ==================================================================
    # Internal helpers
    # ==================================================================

    @asynccontextmanager
    async def _serialized(self, db: AsyncSession, patient_order_id: str) -> AsyncIterator[None]:
        async with self._locks.hold(patient_order_id):
            if not await self._repo.try_lock_patient_order(db, patient_order_id):
                raise ConflictError(
                    f"Triage for patient order {patient_order_id} is being modified by another request"
                )
            yield

    @staticmethod
    def _triage_rows(triages: Iterable[TriageRow]) -> list[dict]:
        return [
            {"focus_type": t.focus_type.value, "care_type": t.care_type.value, "reason": t.reason}
            for t in triages
        ]

    async def _to_view(self, db: AsyncSession, group: PatientOrderTriageGroup) -> TriageGroupView:
        rows = await self._repo.list_triages(db, [group.id])
        return self._group_view(
            group,
            [TriageView(focus_type=t.focus_type, care_type=t.care_type, reason=t.reason) for t in rows],
        )

    @staticmethod
    def _group_view(group: PatientOrderTriageGroup, triages: list[TriageView]) -> TriageGroupView:
        return TriageGroupView(
            triage_group_id=str(group.id),
            patient_order_id=group.patient_order_id,
            care_type=group.care_type,
            source=group.source,
            override_reason=group.override_reason,
            account_id=group.account_id,
            screening_session_id=(
                str(group.screening_session_id) if group.screening_session_id else None
            ),
            active=group.active,
            created_at=group.created_at,
            triages=triages,
        )
