"""ORM models for screening_db."""

from screening_db.models.base import Base
from screening_db.models.catalog import ScreeningAnswerOption, ScreeningQuestion
from screening_db.models.definitions import (
    Screening,
    ScreeningFlow,
    ScreeningFlowVersion,
    ScreeningVersion,
)
from screening_db.models.enums import (
    AnswerFormat,
    CareType,
    ContentHint,
    FlowType,
    FocusType,
    SessionStatus,
    SupportRoleId,
    TriageSource,
)
from screening_db.models.session import (
    ScreeningAnswer,
    ScreeningAnsweredQuestion,
    ScreeningSession,
    ScreeningSessionScreening,
    SupportRoleRecommendation,
)
from screening_db.models.triage import PatientOrderTriage, PatientOrderTriageGroup

__all__ = [
    "Base",
    # Definitions
    "Screening",
    "ScreeningVersion",
    "ScreeningFlow",
    "ScreeningFlowVersion",
    "ScreeningQuestion",
    "ScreeningAnswerOption",
    # Runtime
    "ScreeningSession",
    "ScreeningSessionScreening",
    "ScreeningAnsweredQuestion",
    "ScreeningAnswer",
    "SupportRoleRecommendation",
    "PatientOrderTriageGroup",
    "PatientOrderTriage",
    # Enums
    "AnswerFormat",
    "CareType",
    "ContentHint",
    "FlowType",
    "FocusType",
    "SessionStatus",
    "SupportRoleId",
    "TriageSource",
]
