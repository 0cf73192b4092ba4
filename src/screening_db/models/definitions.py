"""Versioned definition tables — flows, screenings and their versions.

Each definition is a *head* row (``screening_flow``, ``screening``) plus an
append-only version log (``screening_flow_version``, ``screening_version``).
The head carries a single nullable foreign key to the active version; the
swap is one UPDATE of that column.  Version rows are never updated after
insert.

Strategy specs (scoring, orchestration, results, destination) are stored as
JSONB objects tagged with ``strategy`` and validated by the SDK before
insert.
"""

import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from screening_db.models.base import Base, SurrogateKeyMixin
from screening_db.models.enums import FlowType


class Screening(SurrogateKeyMixin, Base):
    """A named questionnaire; versions live in ``screening_version``."""

    __tablename__ = "screening"

    # Referenced by name from flow strategy specs and YAML definitions
    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    screening_type: Mapped[str] = mapped_column(Text, nullable=False)
    active_screening_version_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey(
            "screening_version.id",
            use_alter=True,
            name="fk_screening_active_version",
        ),
        nullable=True,
    )

    def __repr__(self) -> str:
        return f"<Screening(id={self.id!s}, name={self.name!r})>"


class ScreeningVersion(SurrogateKeyMixin, Base):
    """Immutable snapshot of a screening's scoring strategy and question set."""

    __tablename__ = "screening_version"

    screening_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("screening.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)
    scoring_function: Mapped[dict] = mapped_column(JSONB, nullable=False)
    # sha256 of the canonical payload; lets the seeder skip unchanged files
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_by_account_id: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "screening_id", "version_number", name="uq_screening_version_number"
        ),
        CheckConstraint("version_number >= 1", name="ck_screening_version_positive"),
    )

    def __repr__(self) -> str:
        return (
            f"<ScreeningVersion(id={self.id!s}, screening={self.screening_id!s}, "
            f"v={self.version_number})>"
        )


class ScreeningFlow(SurrogateKeyMixin, Base):
    """A named composition of screenings; versions live in ``screening_flow_version``."""

    __tablename__ = "screening_flow"

    name: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    flow_type: Mapped[str] = mapped_column(
        String(32), nullable=False, default=FlowType.STANDARD, index=True
    )
    institution_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    active_flow_version_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey(
            "screening_flow_version.id",
            use_alter=True,
            name="fk_screening_flow_active_version",
        ),
        nullable=True,
    )

    def __repr__(self) -> str:
        return (
            f"<ScreeningFlow(id={self.id!s}, name={self.name!r}, "
            f"type={self.flow_type!r})>"
        )


class ScreeningFlowVersion(SurrogateKeyMixin, Base):
    """Immutable snapshot of a flow's routing strategies."""

    __tablename__ = "screening_flow_version"

    flow_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("screening_flow.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    version_number: Mapped[int] = mapped_column(Integer, nullable=False)
    initial_screening_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("screening.id", ondelete="RESTRICT"),
        nullable=False,
    )
    skippable: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    orchestration_function: Mapped[dict] = mapped_column(JSONB, nullable=False)
    # Null means the flow produces no recommendations or triage
    results_function: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    destination_function: Mapped[dict] = mapped_column(JSONB, nullable=False)
    # Null falls back to the server-wide default crisis destination
    crisis_destination: Mapped[str | None] = mapped_column(Text, nullable=True)
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_by_account_id: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("flow_id", "version_number", name="uq_flow_version_number"),
        CheckConstraint("version_number >= 1", name="ck_flow_version_positive"),
    )

    def __repr__(self) -> str:
        return (
            f"<ScreeningFlowVersion(id={self.id!s}, flow={self.flow_id!s}, "
            f"v={self.version_number})>"
        )
