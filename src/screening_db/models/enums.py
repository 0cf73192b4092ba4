"""Database-level enumerations for screening definitions, sessions and triage.

All enums are ``str`` subclasses and are stored as their string value in
``String`` columns, so adding a member never needs a migration.
"""

import enum


class SessionStatus(str, enum.Enum):
    """Lifecycle states for a screening session.

    Transitions:
        not_started -> awaiting_answers  (first valid answer submitted)
        not_started | awaiting_answers -> completed  (orchestration terminal)
        not_started | awaiting_answers -> skipped    (skip, terminal)

    ``completed`` and ``skipped`` are terminal; the crisis flag is tracked
    separately and can be raised in any non-terminal state.
    """

    NOT_STARTED = "not_started"
    AWAITING_ANSWERS = "awaiting_answers"
    COMPLETED = "completed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.SKIPPED)


class FlowType(str, enum.Enum):
    """What a screening flow is used for."""

    STANDARD = "standard"
    # Clinician-administered flow whose results drive patient-order triage
    PROVIDER_TRIAGE = "provider_triage"
    INTAKE = "intake"


class AnswerFormat(str, enum.Enum):
    SINGLE_SELECT = "single_select"
    MULTI_SELECT = "multi_select"
    FREEFORM_TEXT = "freeform_text"


class ContentHint(str, enum.Enum):
    """Shape constraint on freeform answer text."""

    NONE = "none"
    EMAIL_ADDRESS = "email_address"
    PHONE_NUMBER = "phone_number"
    INTEGER = "integer"


class TriageSource(str, enum.Enum):
    """Who produced a triage group."""

    COMPUTED = "computed"
    MANUAL = "manual"


class CareType(str, enum.Enum):
    """Level of care for a patient order, ordered by increasing intensity."""

    UNSPECIFIED = "UNSPECIFIED"
    SUBCLINICAL = "SUBCLINICAL"
    COLLABORATIVE = "COLLABORATIVE"
    SPECIALTY = "SPECIALTY"

    @property
    def priority(self) -> int:
        return list(CareType).index(self)


class FocusType(str, enum.Enum):
    """Clinical focus area of a triage row."""

    GENERAL = "GENERAL"
    DEPRESSION = "DEPRESSION"
    ANXIETY = "ANXIETY"
    SUBSTANCE_USE = "SUBSTANCE_USE"
    TRAUMA = "TRAUMA"
    SAFETY_PLANNING = "SAFETY_PLANNING"
    EATING_DISORDER = "EATING_DISORDER"
    OTHER = "OTHER"


class SupportRoleId(str, enum.Enum):
    """Care-team roles a session can recommend."""

    CLINICIAN = "CLINICIAN"
    COACH = "COACH"
    CARE_MANAGER = "CARE_MANAGER"
    PSYCHIATRIST = "PSYCHIATRIST"
    PSYCHOTHERAPIST = "PSYCHOTHERAPIST"
    OTHER = "OTHER"
