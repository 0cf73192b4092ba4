"""Session runtime tables — one row per traversal, step, answered question and answer.

History is append-only: a resubmitted answer set marks the previous
``screening_answered_question`` row invalid and inserts a new one, so the
full answer trail of a session can be replayed.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Float,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.orm import Mapped, mapped_column

from screening_db.models.base import Base, SurrogateKeyMixin
from screening_db.models.enums import SessionStatus


class ScreeningSession(SurrogateKeyMixin, Base):
    """One instantiation of a pinned flow version for a target account."""

    __tablename__ = "screening_session"

    # --- Pinned definition ---
    # The version id, never "whatever is active": publishing a new flow
    # version does not affect sessions that already started.
    flow_version_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("screening_flow_version.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    # --- Identity (external references) ---
    target_account_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    created_by_account_id: Mapped[str] = mapped_column(Text, nullable=False)
    patient_order_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    institution_id: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- Lifecycle ---
    status: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=SessionStatus.NOT_STARTED,
        server_default=text("'not_started'"),
        index=True,
    )
    completed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    skipped: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    skipped_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    # --- Crisis (one-way) ---
    crisis_indicated: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    crisis_indicated_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )

    # --- Routing result ---
    # Written once on completion: {"destination": ..., "care_type": ..., ...}
    destination: Mapped[dict | None] = mapped_column(JSONB, nullable=True)

    __table_args__ = (
        CheckConstraint(
            "completed = (completed_at IS NOT NULL)",
            name="ck_session_completed_at",
        ),
        CheckConstraint(
            "NOT skipped OR (completed AND skipped_at IS NOT NULL)",
            name="ck_session_skipped_is_completed",
        ),
        CheckConstraint(
            "crisis_indicated = (crisis_indicated_at IS NOT NULL)",
            name="ck_session_crisis_at",
        ),
        CheckConstraint(
            "completed_at IS NULL OR completed_at >= created_at",
            name="ck_session_completed_after_created",
        ),
        Index(
            "ix_session_patient_order",
            "patient_order_id",
            postgresql_where=text("patient_order_id IS NOT NULL"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<ScreeningSession(id={self.id!s}, target={self.target_account_id!r}, "
            f"status={self.status!r}, crisis={self.crisis_indicated})>"
        )


class ScreeningSessionScreening(SurrogateKeyMixin, Base):
    """One step of a session's traversal, bound to a screening version."""

    __tablename__ = "screening_session_screening"

    session_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("screening_session.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    screening_version_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("screening_version.id", ondelete="RESTRICT"),
        nullable=False,
    )
    screening_order: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    completed: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    score: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("session_id", "screening_order", name="uq_session_screening_order"),
        CheckConstraint("screening_order >= 1", name="ck_screening_order_positive"),
        CheckConstraint(
            "NOT completed OR score IS NOT NULL",
            name="ck_completed_screening_has_score",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<ScreeningSessionScreening(id={self.id!s}, order={self.screening_order}, "
            f"completed={self.completed}, score={self.score})>"
        )


class ScreeningAnsweredQuestion(SurrogateKeyMixin, Base):
    """An answer set for one question; superseded sets have ``valid = false``."""

    __tablename__ = "screening_answered_question"

    session_screening_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("screening_session_screening.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    question_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("screening_question.id", ondelete="RESTRICT"),
        nullable=False,
    )
    valid: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True, server_default=text("true")
    )

    __table_args__ = (
        Index(
            "ix_answered_question_one_valid",
            "session_screening_id",
            "question_id",
            unique=True,
            postgresql_where=text("valid"),
        ),
    )


class ScreeningAnswer(SurrogateKeyMixin, Base):
    """One selected option (plus optional text) inside an answer set."""

    __tablename__ = "screening_answer"

    answered_question_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("screening_answered_question.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    answer_option_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("screening_answer_option.id", ondelete="RESTRICT"),
        nullable=False,
    )
    text: Mapped[str | None] = mapped_column(Text, nullable=True)
    answer_order: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    created_by_account_id: Mapped[str] = mapped_column(Text, nullable=False)


class SupportRoleRecommendation(SurrogateKeyMixin, Base):
    """A (support role, weight) row produced when a session completes."""

    __tablename__ = "support_role_recommendation"

    session_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("screening_session.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    support_role_id: Mapped[str] = mapped_column(String(32), nullable=False)
    weight: Mapped[float] = mapped_column(Float, nullable=False)
    display_order: Mapped[int] = mapped_column(SmallInteger, nullable=False)

    __table_args__ = (
        UniqueConstraint("session_id", "support_role_id", name="uq_recommendation_role"),
    )
