"""DefinitionStore — versioned screenings and flows with an active-version pointer.

Versions are append-only.  ``version_number`` is ``max + 1`` taken while the
definition head row is locked ``FOR UPDATE``, so two concurrent creators get
distinct numbers.  Publishing swaps the head's pointer with a single UPDATE;
older versions and sessions pinned to them are never touched.

Like the orchestrator, the store is stateless: every call takes the caller's
``AsyncSession``, flushes, and leaves the commit to the caller.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from screening_db.models.definitions import (
    Screening,
    ScreeningFlow,
    ScreeningFlowVersion,
    ScreeningVersion,
)
from screening_db.models.enums import FlowType
from screening_db.repository import DefinitionRepository

from screening_rules.errors import ConflictError, FieldError, NotFoundError, ValidationFailed
from screening_rules.interfaces import InstitutionDirectory, StaticInstitutionDirectory
from screening_rules.models.definition import (
    FlowVersionPayload,
    ScreeningVersionPayload,
    content_hash,
)
from screening_rules.models.session import (
    FlowInfo,
    FlowVersionInfo,
    ScreeningInfo,
    ScreeningVersionInfo,
)

logger = logging.getLogger(__name__)


def coerce_uuid(value: uuid.UUID | str, what: str) -> uuid.UUID:
    """Parse an id from a path or payload; malformed ids are simply not found."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise NotFoundError(f"{what} not found: {value}") from None


def validation_errors(exc: ValidationError) -> list[FieldError]:
    """Turn a pydantic ``ValidationError`` into structured field errors."""
    return [
        FieldError(
            field=".".join(str(p) for p in err["loc"]) or "__root__",
            message=err["msg"],
        )
        for err in exc.errors()
    ]


class DefinitionStore:
    """Creates, versions, publishes and resolves screenings and flows.

    Args:
        institutions: used by :meth:`resolve_flow` to find an institution's
            provider-triage flow
    """

    def __init__(self, institutions: InstitutionDirectory | None = None) -> None:
        self._repo = DefinitionRepository()
        self._institutions = institutions or StaticInstitutionDirectory()

    # ==================================================================
    # Screenings
    # ==================================================================

    async def create_screening(
        self, db: AsyncSession, *, name: str, screening_type: str
    ) -> ScreeningInfo:
        if not name.strip():
            raise ValidationFailed([FieldError(field="name", message="Name is required.")])
        if await self._repo.get_screening_by_name(db, name) is not None:
            raise ConflictError(f"Screening already exists: {name}")
        try:
            row = await self._repo.create_screening(db, name=name, screening_type=screening_type)
        except IntegrityError as exc:
            raise ConflictError(f"Screening already exists: {name}") from exc
        logger.info("Created screening %s (%s)", name, row.id)
        return self._screening_info(row)

    async def get_screening(
        self, db: AsyncSession, screening_id: uuid.UUID | str
    ) -> ScreeningInfo:
        return self._screening_info(await self._load_screening(db, screening_id))

    async def find_screening(self, db: AsyncSession, name: str) -> ScreeningInfo | None:
        row = await self._repo.get_screening_by_name(db, name)
        return self._screening_info(row) if row is not None else None

    async def list_screenings(self, db: AsyncSession) -> list[ScreeningInfo]:
        return [self._screening_info(r) for r in await self._repo.list_screenings(db)]

    async def create_screening_version(
        self,
        db: AsyncSession,
        screening_id: uuid.UUID | str,
        payload: ScreeningVersionPayload | dict[str, Any],
        *,
        created_by_account_id: str | None = None,
    ) -> ScreeningVersionInfo:
        """Append a new immutable version with its full question set.

        The new version is not active until :meth:`publish_screening_version`.
        """
        payload = self._parse(ScreeningVersionPayload, payload)
        head = await self._load_screening(db, screening_id, for_update=True)
        number = await self._repo.next_screening_version_number(db, head.id)

        version = await self._repo.add_screening_version(
            db,
            screening_id=head.id,
            version_number=number,
            scoring_function=payload.scoring_function.model_dump(mode="json"),
            content_hash=content_hash(payload),
            created_by_account_id=created_by_account_id,
        )
        questions = await self._repo.add_question_set(
            db,
            screening_version_id=version.id,
            questions=[
                {
                    "code": q.code,
                    "question_text": q.text,
                    "intro_text": q.intro_text,
                    "answer_format": q.answer_format.value,
                    "content_hint": q.content_hint.value,
                    "minimum_answer_count": q.minimum_answer_count,
                    "maximum_answer_count": q.maximum_answer_count,
                    "display_order": q_order,
                    "extension_metadata": q.config.to_metadata(),
                    "options": [
                        {
                            "code": o.code,
                            "answer_option_text": o.text,
                            "score": o.score,
                            "indicates_crisis": o.indicates_crisis,
                            "freeform_supplement": o.freeform_supplement,
                            "freeform_supplement_text": o.freeform_supplement_text,
                            "display_order": o_order,
                            "extension_metadata": o.config.to_metadata(),
                        }
                        for o_order, o in enumerate(q.options, start=1)
                    ],
                }
                for q_order, q in enumerate(payload.questions, start=1)
            ],
        )
        logger.info(
            "Created screening %s version %d (%d questions)", head.name, number, len(questions)
        )
        return self._screening_version_info(version, head, question_count=len(questions))

    async def publish_screening_version(
        self,
        db: AsyncSession,
        screening_id: uuid.UUID | str,
        version_id: uuid.UUID | str,
    ) -> ScreeningVersionInfo:
        head = await self._load_screening(db, screening_id, for_update=True)
        version = await self._load_screening_version(db, head, version_id)
        await self._repo.set_active_screening_version(db, head.id, version.id)
        head.active_screening_version_id = version.id
        logger.info("Published screening %s version %d", head.name, version.version_number)
        return await self._describe_screening_version(db, version, head)

    async def get_active_screening_version(
        self, db: AsyncSession, screening_id: uuid.UUID | str
    ) -> ScreeningVersionInfo:
        head = await self._load_screening(db, screening_id)
        if head.active_screening_version_id is None:
            raise NotFoundError(f"Screening {head.name} has no active version")
        version = await self._load_screening_version(db, head, head.active_screening_version_id)
        return await self._describe_screening_version(db, version, head)

    async def list_screening_versions(
        self, db: AsyncSession, screening_id: uuid.UUID | str
    ) -> list[ScreeningVersionInfo]:
        head = await self._load_screening(db, screening_id)
        versions = await self._repo.list_screening_versions(db, head.id)
        return [await self._describe_screening_version(db, v, head) for v in versions]

    async def active_screening_version_by_name(
        self, db: AsyncSession, name: str
    ) -> ScreeningVersion | None:
        """The active version row of a screening looked up by name."""
        head = await self._repo.get_screening_by_name(db, name)
        if head is None or head.active_screening_version_id is None:
            return None
        return await self._repo.get_screening_version(db, head.active_screening_version_id)

    # ==================================================================
    # Flows
    # ==================================================================

    async def create_flow(
        self,
        db: AsyncSession,
        *,
        name: str,
        flow_type: FlowType | str = FlowType.STANDARD,
        institution_id: str | None = None,
    ) -> FlowInfo:
        if not name.strip():
            raise ValidationFailed([FieldError(field="name", message="Name is required.")])
        try:
            flow_type = FlowType(flow_type)
        except ValueError:
            raise ValidationFailed(
                [FieldError(field="flow_type", message=f"Unknown flow type: {flow_type}")]
            ) from None
        if await self._repo.get_flow_by_name(db, name) is not None:
            raise ConflictError(f"Flow already exists: {name}")
        try:
            row = await self._repo.create_flow(
                db, name=name, flow_type=flow_type.value, institution_id=institution_id
            )
        except IntegrityError as exc:
            raise ConflictError(f"Flow already exists: {name}") from exc
        logger.info("Created flow %s (%s, type=%s)", name, row.id, flow_type.value)
        return self._flow_info(row)

    async def get_flow(self, db: AsyncSession, flow_id: uuid.UUID | str) -> FlowInfo:
        return self._flow_info(await self._load_flow(db, flow_id))

    async def find_flow(self, db: AsyncSession, name: str) -> FlowInfo | None:
        row = await self._repo.get_flow_by_name(db, name)
        return self._flow_info(row) if row is not None else None

    async def create_flow_version(
        self,
        db: AsyncSession,
        flow_id: uuid.UUID | str,
        payload: FlowVersionPayload | dict[str, Any],
        *,
        created_by_account_id: str | None = None,
    ) -> FlowVersionInfo:
        """Append a new immutable flow version.

        Screenings are referenced by name; every name the orchestration
        strategy can route to must already exist.

        Raises:
            ValidationFailed: malformed payload or unknown screening name.
        """
        payload = self._parse(FlowVersionPayload, payload)

        missing: list[FieldError] = []
        for name in sorted(payload.referenced_screenings()):
            if await self._repo.get_screening_by_name(db, name) is None:
                missing.append(
                    FieldError(field="orchestration_function", message=f"Unknown screening: {name}")
                )
        if missing:
            raise ValidationFailed(missing)
        initial = await self._repo.get_screening_by_name(db, payload.initial_screening)

        head = await self._load_flow(db, flow_id, for_update=True)
        number = await self._repo.next_flow_version_number(db, head.id)
        version = await self._repo.add_flow_version(
            db,
            flow_id=head.id,
            version_number=number,
            initial_screening_id=initial.id,
            skippable=payload.skippable,
            orchestration_function=payload.orchestration_function.model_dump(mode="json"),
            results_function=(
                payload.results_function.model_dump(mode="json")
                if payload.results_function is not None
                else None
            ),
            destination_function=payload.destination_function.model_dump(mode="json"),
            crisis_destination=payload.crisis_destination,
            content_hash=content_hash(payload),
            created_by_account_id=created_by_account_id,
        )
        logger.info("Created flow %s version %d", head.name, number)
        return self._flow_version_info(version, head)

    async def publish_flow_version(
        self,
        db: AsyncSession,
        flow_id: uuid.UUID | str,
        version_id: uuid.UUID | str,
    ) -> FlowVersionInfo:
        """Make ``version_id`` the flow's active version.

        Raises:
            NotFoundError: the flow does not exist or the version is not one
                of its versions.
        """
        head = await self._load_flow(db, flow_id, for_update=True)
        version = await self._load_flow_version(db, head, version_id)
        await self._repo.set_active_flow_version(db, head.id, version.id)
        head.active_flow_version_id = version.id
        logger.info("Published flow %s version %d", head.name, version.version_number)
        return self._flow_version_info(version, head)

    async def get_active_flow_version(
        self, db: AsyncSession, flow_id: uuid.UUID | str
    ) -> FlowVersionInfo:
        head = await self._load_flow(db, flow_id)
        version = await self._active_flow_version(db, head)
        return self._flow_version_info(version, head)

    async def list_flow_versions(
        self, db: AsyncSession, flow_id: uuid.UUID | str
    ) -> list[FlowVersionInfo]:
        """Version history, newest first."""
        head = await self._load_flow(db, flow_id)
        versions = await self._repo.list_flow_versions(db, head.id)
        return [self._flow_version_info(v, head) for v in versions]

    async def resolve_flow(
        self,
        db: AsyncSession,
        *,
        flow_id: uuid.UUID | str | None = None,
        flow_type: FlowType | str | None = None,
        institution_id: str | None = None,
    ) -> tuple[ScreeningFlow, ScreeningFlowVersion]:
        """Find a flow and its active version, by id or by type.

        Provider-triage flows are looked up through the institution
        directory first; otherwise institution-specific flows of the type
        win over shared ones.

        Raises:
            NotFoundError: no matching flow, or the flow has no active version.
        """
        if flow_id is not None:
            head = await self._load_flow(db, flow_id)
            return head, await self._active_flow_version(db, head)

        if flow_type is None:
            raise ValidationFailed(
                [FieldError(field="flow_id", message="Either flow_id or flow_type is required.")]
            )
        try:
            flow_type = FlowType(flow_type)
        except ValueError:
            raise ValidationFailed(
                [FieldError(field="flow_type", message=f"Unknown flow type: {flow_type}")]
            ) from None

        if flow_type == FlowType.PROVIDER_TRIAGE and institution_id is not None:
            configured = await self._institutions.provider_triage_flow_id(institution_id)
            if configured is not None:
                head = await self._load_flow(db, configured)
                return head, await self._active_flow_version(db, head)

        candidates = await self._repo.find_flows_by_type(
            db, flow_type.value, institution_id=institution_id
        )
        for head in candidates:
            if head.active_flow_version_id is not None:
                return head, await self._active_flow_version(db, head)
        raise NotFoundError(f"No active {flow_type.value} flow found")

    # ==================================================================
    # Internal helpers
    # ==================================================================

    @staticmethod
    def _parse(model, payload):
        if isinstance(payload, model):
            return payload
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            raise ValidationFailed(validation_errors(exc)) from exc

    async def _load_screening(
        self, db: AsyncSession, screening_id: uuid.UUID | str, *, for_update: bool = False
    ) -> Screening:
        sid = coerce_uuid(screening_id, "Screening")
        row = await self._repo.get_screening(db, sid, for_update=for_update)
        if row is None:
            raise NotFoundError(f"Screening not found: {screening_id}")
        return row

    async def _load_screening_version(
        self, db: AsyncSession, head: Screening, version_id: uuid.UUID | str
    ) -> ScreeningVersion:
        vid = coerce_uuid(version_id, "Screening version")
        version = await self._repo.get_screening_version(db, vid)
        if version is None or version.screening_id != head.id:
            raise NotFoundError(f"Screening version {version_id} not found for {head.name}")
        return version

    async def _load_flow(
        self, db: AsyncSession, flow_id: uuid.UUID | str, *, for_update: bool = False
    ) -> ScreeningFlow:
        fid = coerce_uuid(flow_id, "Flow")
        row = await self._repo.get_flow(db, fid, for_update=for_update)
        if row is None:
            raise NotFoundError(f"Flow not found: {flow_id}")
        return row

    async def _load_flow_version(
        self, db: AsyncSession, head: ScreeningFlow, version_id: uuid.UUID | str
    ) -> ScreeningFlowVersion:
        vid = coerce_uuid(version_id, "Flow version")
        version = await self._repo.get_flow_version(db, vid)
        if version is None or version.flow_id != head.id:
            raise NotFoundError(f"Flow version {version_id} not found for {head.name}")
        return version

    async def _active_flow_version(
        self, db: AsyncSession, head: ScreeningFlow
    ) -> ScreeningFlowVersion:
        if head.active_flow_version_id is None:
            raise NotFoundError(f"Flow {head.name} has no active version")
        return await self._load_flow_version(db, head, head.active_flow_version_id)

    async def _describe_screening_version(
        self, db: AsyncSession, version: ScreeningVersion, head: Screening
    ) -> ScreeningVersionInfo:
        questions = await self._repo.list_questions(db, version.id)
        return self._screening_version_info(version, head, question_count=len(questions))

    # ------------------------------------------------------------------
    # Row → model mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _screening_info(row: Screening) -> ScreeningInfo:
        return ScreeningInfo(
            screening_id=str(row.id),
            name=row.name,
            screening_type=row.screening_type,
            active_screening_version_id=(
                str(row.active_screening_version_id) if row.active_screening_version_id else None
            ),
        )

    @staticmethod
    def _screening_version_info(
        row: ScreeningVersion, head: Screening, *, question_count: int
    ) -> ScreeningVersionInfo:
        return ScreeningVersionInfo(
            screening_version_id=str(row.id),
            screening_id=str(row.screening_id),
            version_number=row.version_number,
            scoring_function=row.scoring_function,
            question_count=question_count,
            content_hash=row.content_hash,
            active=head.active_screening_version_id == row.id,
            created_at=row.created_at,
        )

    @staticmethod
    def _flow_info(row: ScreeningFlow) -> FlowInfo:
        return FlowInfo(
            flow_id=str(row.id),
            name=row.name,
            flow_type=row.flow_type,
            institution_id=row.institution_id,
            active_flow_version_id=(
                str(row.active_flow_version_id) if row.active_flow_version_id else None
            ),
        )

    @staticmethod
    def _flow_version_info(row: ScreeningFlowVersion, head: ScreeningFlow) -> FlowVersionInfo:
        return FlowVersionInfo(
            flow_version_id=str(row.id),
            flow_id=str(row.flow_id),
            version_number=row.version_number,
            initial_screening_id=str(row.initial_screening_id),
            skippable=row.skippable,
            orchestration_function=row.orchestration_function,
            results_function=row.results_function,
            destination_function=row.destination_function,
            crisis_destination=row.crisis_destination,
            content_hash=row.content_hash,
            active=head.active_flow_version_id == row.id,
            created_at=row.created_at,
        )
