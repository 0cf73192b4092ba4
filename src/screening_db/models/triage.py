"""Patient-order triage groups and their (focus type, care type) rows.

Groups are never deleted or edited after insert except for the ``active``
flag.  A partial unique index guarantees that at most one group per patient
order is active; the repository swaps groups inside one transaction so there
is also never a moment with zero active groups once the first one exists.
"""

import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    SmallInteger,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from screening_db.models.base import Base, SurrogateKeyMixin


class PatientOrderTriageGroup(SurrogateKeyMixin, Base):
    __tablename__ = "patient_order_triage_group"

    patient_order_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    # Highest-priority care type among the group's rows
    care_type: Mapped[str] = mapped_column(String(32), nullable=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False)
    override_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    account_id: Mapped[str] = mapped_column(Text, nullable=False)
    screening_session_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("screening_session.id", ondelete="SET NULL"),
        nullable=True,
    )
    active: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )

    __table_args__ = (
        CheckConstraint(
            "source != 'manual' OR length(trim(coalesce(override_reason, ''))) > 0",
            name="ck_manual_group_has_reason",
        ),
        CheckConstraint(
            "source != 'computed' OR screening_session_id IS NOT NULL",
            name="ck_computed_group_has_session",
        ),
        Index(
            "ix_triage_group_one_active",
            "patient_order_id",
            unique=True,
            postgresql_where=text("active"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<PatientOrderTriageGroup(id={self.id!s}, order={self.patient_order_id!r}, "
            f"source={self.source!r}, active={self.active})>"
        )


class PatientOrderTriage(SurrogateKeyMixin, Base):
    __tablename__ = "patient_order_triage"

    triage_group_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("patient_order_triage_group.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    care_type: Mapped[str] = mapped_column(String(32), nullable=False)
    focus_type: Mapped[str] = mapped_column(String(32), nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    display_order: Mapped[int] = mapped_column(SmallInteger, nullable=False)
