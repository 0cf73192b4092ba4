"""Create definition, session and triage tables.

Definition heads (``screening``, ``screening_flow``) point at their active
version through a foreign key added after the version tables exist, since
the version tables reference the heads in turn.

Revision ID: 20261019_initial
Revises:
Create Date: 2026-10-19
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID

# revision identifiers, used by Alembic.
revision = "20261019_initial"
down_revision = None
branch_labels = None
depends_on = None


def _surrogate_columns() -> list[sa.Column]:
    return [
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "created_at",
            TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def upgrade() -> None:
    # --- Screening definitions ---
    op.create_table(
        "screening",
        *_surrogate_columns(),
        sa.Column("name", sa.Text, nullable=False, unique=True),
        sa.Column("screening_type", sa.Text, nullable=False),
        sa.Column("active_screening_version_id", UUID(as_uuid=True), nullable=True),
    )
    op.create_table(
        "screening_version",
        *_surrogate_columns(),
        sa.Column(
            "screening_id",
            UUID(as_uuid=True),
            sa.ForeignKey("screening.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("version_number", sa.Integer, nullable=False),
        sa.Column("scoring_function", JSONB, nullable=False),
        sa.Column("content_hash", sa.String(64), nullable=True),
        sa.Column("created_by_account_id", sa.Text, nullable=True),
        sa.UniqueConstraint(
            "screening_id", "version_number", name="uq_screening_version_number"
        ),
        sa.CheckConstraint("version_number >= 1", name="ck_screening_version_positive"),
    )
    op.create_index(
        "ix_screening_version_screening_id", "screening_version", ["screening_id"]
    )
    op.create_foreign_key(
        "fk_screening_active_version",
        "screening",
        "screening_version",
        ["active_screening_version_id"],
        ["id"],
    )

    # --- Catalog ---
    op.create_table(
        "screening_question",
        *_surrogate_columns(),
        sa.Column(
            "screening_version_id",
            UUID(as_uuid=True),
            sa.ForeignKey("screening_version.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("code", sa.Text, nullable=False),
        sa.Column("question_text", sa.Text, nullable=False),
        sa.Column("intro_text", sa.Text, nullable=True),
        sa.Column("answer_format", sa.String(32), nullable=False),
        sa.Column(
            "content_hint", sa.String(32), nullable=False, server_default=sa.text("'none'")
        ),
        sa.Column("minimum_answer_count", sa.SmallInteger, nullable=False),
        sa.Column("maximum_answer_count", sa.SmallInteger, nullable=False),
        sa.Column("display_order", sa.Integer, nullable=False),
        sa.Column(
            "metadata", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")
        ),
        sa.UniqueConstraint("screening_version_id", "code", name="uq_question_code"),
        sa.UniqueConstraint(
            "screening_version_id", "display_order", name="uq_question_display_order"
        ),
        sa.CheckConstraint(
            "minimum_answer_count >= 0 AND maximum_answer_count >= minimum_answer_count",
            name="ck_question_answer_counts",
        ),
    )
    op.create_index(
        "ix_screening_question_screening_version_id",
        "screening_question",
        ["screening_version_id"],
    )
    op.create_table(
        "screening_answer_option",
        *_surrogate_columns(),
        sa.Column(
            "question_id",
            UUID(as_uuid=True),
            sa.ForeignKey("screening_question.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("code", sa.Text, nullable=False),
        sa.Column("answer_option_text", sa.Text, nullable=False),
        sa.Column("score", sa.Integer, nullable=False, server_default=sa.text("0")),
        sa.Column(
            "indicates_crisis", sa.Boolean, nullable=False, server_default=sa.text("false")
        ),
        sa.Column(
            "freeform_supplement",
            sa.Boolean,
            nullable=False,
            server_default=sa.text("false"),
        ),
        sa.Column("freeform_supplement_text", sa.Text, nullable=True),
        sa.Column("display_order", sa.Integer, nullable=False),
        sa.Column(
            "metadata", JSONB, nullable=False, server_default=sa.text("'{}'::jsonb")
        ),
        sa.UniqueConstraint("question_id", "code", name="uq_answer_option_code"),
        sa.UniqueConstraint(
            "question_id", "display_order", name="uq_answer_option_display_order"
        ),
    )
    op.create_index(
        "ix_screening_answer_option_question_id", "screening_answer_option", ["question_id"]
    )

    # --- Flow definitions ---
    op.create_table(
        "screening_flow",
        *_surrogate_columns(),
        sa.Column("name", sa.Text, nullable=False, unique=True),
        sa.Column("flow_type", sa.String(32), nullable=False),
        sa.Column("institution_id", sa.Text, nullable=True),
        sa.Column("active_flow_version_id", UUID(as_uuid=True), nullable=True),
    )
    op.create_index("ix_screening_flow_flow_type", "screening_flow", ["flow_type"])
    op.create_table(
        "screening_flow_version",
        *_surrogate_columns(),
        sa.Column(
            "flow_id",
            UUID(as_uuid=True),
            sa.ForeignKey("screening_flow.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("version_number", sa.Integer, nullable=False),
        sa.Column(
            "initial_screening_id",
            UUID(as_uuid=True),
            sa.ForeignKey("screening.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("skippable", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("orchestration_function", JSONB, nullable=False),
        sa.Column("results_function", JSONB, nullable=True),
        sa.Column("destination_function", JSONB, nullable=False),
        sa.Column("crisis_destination", sa.Text, nullable=True),
        sa.Column("content_hash", sa.String(64), nullable=True),
        sa.Column("created_by_account_id", sa.Text, nullable=True),
        sa.UniqueConstraint("flow_id", "version_number", name="uq_flow_version_number"),
        sa.CheckConstraint("version_number >= 1", name="ck_flow_version_positive"),
    )
    op.create_index(
        "ix_screening_flow_version_flow_id", "screening_flow_version", ["flow_id"]
    )
    op.create_foreign_key(
        "fk_screening_flow_active_version",
        "screening_flow",
        "screening_flow_version",
        ["active_flow_version_id"],
        ["id"],
    )

    # --- Sessions ---
    op.create_table(
        "screening_session",
        *_surrogate_columns(),
        sa.Column(
            "flow_version_id",
            UUID(as_uuid=True),
            sa.ForeignKey("screening_flow_version.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("target_account_id", sa.Text, nullable=False),
        sa.Column("created_by_account_id", sa.Text, nullable=False),
        sa.Column("patient_order_id", sa.Text, nullable=True),
        sa.Column("institution_id", sa.Text, nullable=True),
        sa.Column(
            "status", sa.String(20), nullable=False, server_default=sa.text("'not_started'")
        ),
        sa.Column("completed", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("completed_at", TIMESTAMP(timezone=True), nullable=True),
        sa.Column("skipped", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("skipped_at", TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "crisis_indicated", sa.Boolean, nullable=False, server_default=sa.text("false")
        ),
        sa.Column("crisis_indicated_at", TIMESTAMP(timezone=True), nullable=True),
        sa.Column("destination", JSONB, nullable=True),
        sa.CheckConstraint(
            "completed = (completed_at IS NOT NULL)", name="ck_session_completed_at"
        ),
        sa.CheckConstraint(
            "NOT skipped OR (completed AND skipped_at IS NOT NULL)",
            name="ck_session_skipped_is_completed",
        ),
        sa.CheckConstraint(
            "crisis_indicated = (crisis_indicated_at IS NOT NULL)",
            name="ck_session_crisis_at",
        ),
        sa.CheckConstraint(
            "completed_at IS NULL OR completed_at >= created_at",
            name="ck_session_completed_after_created",
        ),
    )
    op.create_index(
        "ix_screening_session_flow_version_id", "screening_session", ["flow_version_id"]
    )
    op.create_index(
        "ix_screening_session_target_account_id", "screening_session", ["target_account_id"]
    )
    op.create_index("ix_screening_session_status", "screening_session", ["status"])
    op.create_index(
        "ix_session_patient_order",
        "screening_session",
        ["patient_order_id"],
        postgresql_where=sa.text("patient_order_id IS NOT NULL"),
    )

    op.create_table(
        "screening_session_screening",
        *_surrogate_columns(),
        sa.Column(
            "session_id",
            UUID(as_uuid=True),
            sa.ForeignKey("screening_session.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "screening_version_id",
            UUID(as_uuid=True),
            sa.ForeignKey("screening_version.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("screening_order", sa.SmallInteger, nullable=False),
        sa.Column("completed", sa.Boolean, nullable=False, server_default=sa.text("false")),
        sa.Column("completed_at", TIMESTAMP(timezone=True), nullable=True),
        sa.Column("score", sa.Integer, nullable=True),
        sa.UniqueConstraint(
            "session_id", "screening_order", name="uq_session_screening_order"
        ),
        sa.CheckConstraint("screening_order >= 1", name="ck_screening_order_positive"),
        sa.CheckConstraint(
            "NOT completed OR score IS NOT NULL",
            name="ck_completed_screening_has_score",
        ),
    )
    op.create_index(
        "ix_screening_session_screening_session_id",
        "screening_session_screening",
        ["session_id"],
    )

    op.create_table(
        "screening_answered_question",
        *_surrogate_columns(),
        sa.Column(
            "session_screening_id",
            UUID(as_uuid=True),
            sa.ForeignKey("screening_session_screening.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "question_id",
            UUID(as_uuid=True),
            sa.ForeignKey("screening_question.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("valid", sa.Boolean, nullable=False, server_default=sa.text("true")),
    )
    op.create_index(
        "ix_screening_answered_question_session_screening_id",
        "screening_answered_question",
        ["session_screening_id"],
    )
    op.create_index(
        "ix_answered_question_one_valid",
        "screening_answered_question",
        ["session_screening_id", "question_id"],
        unique=True,
        postgresql_where=sa.text("valid"),
    )

    op.create_table(
        "screening_answer",
        *_surrogate_columns(),
        sa.Column(
            "answered_question_id",
            UUID(as_uuid=True),
            sa.ForeignKey("screening_answered_question.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "answer_option_id",
            UUID(as_uuid=True),
            sa.ForeignKey("screening_answer_option.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("text", sa.Text, nullable=True),
        sa.Column("answer_order", sa.SmallInteger, nullable=False),
        sa.Column("created_by_account_id", sa.Text, nullable=False),
    )
    op.create_index(
        "ix_screening_answer_answered_question_id",
        "screening_answer",
        ["answered_question_id"],
    )

    op.create_table(
        "support_role_recommendation",
        *_surrogate_columns(),
        sa.Column(
            "session_id",
            UUID(as_uuid=True),
            sa.ForeignKey("screening_session.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("support_role_id", sa.String(32), nullable=False),
        sa.Column("weight", sa.Float, nullable=False),
        sa.Column("display_order", sa.SmallInteger, nullable=False),
        sa.UniqueConstraint("session_id", "support_role_id", name="uq_recommendation_role"),
    )
    op.create_index(
        "ix_support_role_recommendation_session_id",
        "support_role_recommendation",
        ["session_id"],
    )

    # --- Triage ---
    op.create_table(
        "patient_order_triage_group",
        *_surrogate_columns(),
        sa.Column("patient_order_id", sa.Text, nullable=False),
        sa.Column("care_type", sa.String(32), nullable=False),
        sa.Column("source", sa.String(16), nullable=False),
        sa.Column("override_reason", sa.Text, nullable=True),
        sa.Column("account_id", sa.Text, nullable=False),
        sa.Column(
            "screening_session_id",
            UUID(as_uuid=True),
            sa.ForeignKey("screening_session.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("active", sa.Boolean, nullable=False, server_default=sa.text("true")),
        sa.CheckConstraint(
            "source != 'manual' OR length(trim(coalesce(override_reason, ''))) > 0",
            name="ck_manual_group_has_reason",
        ),
        sa.CheckConstraint(
            "source != 'computed' OR screening_session_id IS NOT NULL",
            name="ck_computed_group_has_session",
        ),
    )
    op.create_index(
        "ix_patient_order_triage_group_patient_order_id",
        "patient_order_triage_group",
        ["patient_order_id"],
    )
    op.create_index(
        "ix_triage_group_one_active",
        "patient_order_triage_group",
        ["patient_order_id"],
        unique=True,
        postgresql_where=sa.text("active"),
    )

    op.create_table(
        "patient_order_triage",
        *_surrogate_columns(),
        sa.Column(
            "triage_group_id",
            UUID(as_uuid=True),
            sa.ForeignKey("patient_order_triage_group.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("care_type", sa.String(32), nullable=False),
        sa.Column("focus_type", sa.String(32), nullable=False),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("display_order", sa.SmallInteger, nullable=False),
    )
    op.create_index(
        "ix_patient_order_triage_triage_group_id",
        "patient_order_triage",
        ["triage_group_id"],
    )


def downgrade() -> None:
    op.drop_table("patient_order_triage")
    op.drop_table("patient_order_triage_group")
    op.drop_table("support_role_recommendation")
    op.drop_table("screening_answer")
    op.drop_table("screening_answered_question")
    op.drop_table("screening_session_screening")
    op.drop_table("screening_session")
    op.drop_constraint(
        "fk_screening_flow_active_version", "screening_flow", type_="foreignkey"
    )
    op.drop_table("screening_flow_version")
    op.drop_table("screening_flow")
    op.drop_table("screening_answer_option")
    op.drop_table("screening_question")
    op.drop_constraint("fk_screening_active_version", "screening", type_="foreignkey")
    op.drop_table("screening_version")
    op.drop_table("screening")
