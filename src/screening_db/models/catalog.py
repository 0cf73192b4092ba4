"""Question and answer-option rows owned by a screening version."""

import uuid

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    ForeignKey,
    Integer,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column

from screening_db.models.base import Base, SurrogateKeyMixin
from screening_db.models.enums import AnswerFormat, ContentHint


class ScreeningQuestion(SurrogateKeyMixin, Base):
    """One question of one screening version."""

    __tablename__ = "screening_question"

    screening_version_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("screening_version.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # Stable identifier used by strategy conditions (e.g. "phq9_q9")
    code: Mapped[str] = mapped_column(Text, nullable=False)
    question_text: Mapped[str] = mapped_column(Text, nullable=False)
    intro_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    answer_format: Mapped[str] = mapped_column(
        String(32), nullable=False, default=AnswerFormat.SINGLE_SELECT
    )
    content_hint: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        default=ContentHint.NONE,
        server_default=text("'none'"),
    )
    minimum_answer_count: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    maximum_answer_count: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False)
    # Open-ended extension map; ``metadata`` is reserved on declarative classes
    extension_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
    )

    __table_args__ = (
        UniqueConstraint("screening_version_id", "code", name="uq_question_code"),
        UniqueConstraint(
            "screening_version_id", "display_order", name="uq_question_display_order"
        ),
        CheckConstraint(
            "minimum_answer_count >= 0 AND maximum_answer_count >= minimum_answer_count",
            name="ck_question_answer_counts",
        ),
    )

    def __repr__(self) -> str:
        return f"<ScreeningQuestion(id={self.id!s}, code={self.code!r})>"


class ScreeningAnswerOption(SurrogateKeyMixin, Base):
    """One selectable option of a question."""

    __tablename__ = "screening_answer_option"

    question_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("screening_question.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    code: Mapped[str] = mapped_column(Text, nullable=False)
    answer_option_text: Mapped[str] = mapped_column(Text, nullable=False)
    score: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default=text("0")
    )
    indicates_crisis: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    # When true the answer keeps the caller's freeform text alongside the option
    freeform_supplement: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=text("false")
    )
    freeform_supplement_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False)
    extension_metadata: Mapped[dict] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default=text("'{}'::jsonb"),
    )

    __table_args__ = (
        UniqueConstraint("question_id", "code", name="uq_answer_option_code"),
        UniqueConstraint(
            "question_id", "display_order", name="uq_answer_option_display_order"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<ScreeningAnswerOption(id={self.id!s}, code={self.code!r}, "
            f"score={self.score})>"
        )
