"""screening_rules — Versioned screening-flow SDK.

Public API:
    ScreeningOrchestrator — session state machine (start, answer, advance, skip)
    DefinitionStore       — versioned screenings and flows with active pointers
    QuestionCatalog       — question sets per screening version + answer validation
    RuleEvaluator         — runs the closed set of scoring/orchestration/results/
                            destination strategies against session snapshots
    TriageProjector       — support-role recommendations and patient-order triage
    DefinitionLoader      — parses definitions/v1 YAML and seeds the store

Collaborator interfaces:
    AccountDirectory      — account existence and attributes
    InstitutionDirectory  — per-institution provider-triage flow
    CrisisNotifier        — told when a session first indicates crisis

Errors:
    NotFoundError, ValidationFailed, ConflictError (all ValueError)
    EvaluationError       — strategy failure with kind TIMEOUT | RUNTIME_ERROR |
                            INVALID_RESULT_SHAPE; always retryable
"""

from screening_rules.catalog import QuestionCatalog
from screening_rules.definitions import DefinitionStore
from screening_rules.errors import (
    ConflictError,
    EvaluationError,
    EvaluationErrorKind,
    FieldError,
    NotFoundError,
    ValidationFailed,
)
from screening_rules.evaluator import RuleEvaluator
from screening_rules.interfaces import (
    AccountDirectory,
    CrisisNotifier,
    InstitutionDirectory,
    LoggingCrisisNotifier,
    PermissiveAccountDirectory,
    StaticInstitutionDirectory,
)
from screening_rules.loader import DefinitionLoader, SeedReport
from screening_rules.locks import KeyedLocks
from screening_rules.models.session import (
    AdvanceResult,
    CompletedStep,
    QuestionsStep,
    SessionInfo,
    SessionState,
    StepResult,
    SubmitAnswersResult,
)
from screening_rules.orchestrator import ScreeningOrchestrator
from screening_rules.projector import TriageProjector

__all__ = [
    # Components
    "ScreeningOrchestrator",
    "DefinitionStore",
    "QuestionCatalog",
    "RuleEvaluator",
    "TriageProjector",
    "DefinitionLoader",
    "SeedReport",
    "KeyedLocks",
    # Interfaces
    "AccountDirectory",
    "InstitutionDirectory",
    "CrisisNotifier",
    "PermissiveAccountDirectory",
    "StaticInstitutionDirectory",
    "LoggingCrisisNotifier",
    # Errors
    "ConflictError",
    "EvaluationError",
    "EvaluationErrorKind",
    "FieldError",
    "NotFoundError",
    "ValidationFailed",
    # Session / step
    "AdvanceResult",
    "CompletedStep",
    "QuestionsStep",
    "SessionInfo",
    "SessionState",
    "StepResult",
    "SubmitAnswersResult",
]
