"""Public model re-exports for screening_rules.

Consumers should import from ``screening_rules.models`` rather than
reaching into sub-modules directly.
"""

# --- Strategies ---
from screening_rules.models.strategy import (
    AccountCondition,
    AnswerCondition,
    ClinicalTriageResults,
    Condition,
    CrisisCondition,
    Decision,
    DestinationFunction,
    DestinationRule,
    FixedDestination,
    MaxOptionScoring,
    OrchestrationFunction,
    ResultsFunction,
    RoutingRule,
    ScoreCondition,
    ScoringFunction,
    SequentialOrchestration,
    SupportRoleRule,
    SupportRoleRulesResults,
    SupportRoleWeight,
    ThresholdDestination,
    ThresholdRoutingOrchestration,
    TriageDestination,
    TriageRow,
    TriageRule,
    WeightedSumScoring,
)

# --- Evaluation ---
from screening_rules.models.evaluation import (
    AnswerSnapshot,
    ResultsOutput,
    RoutingToken,
    ScreeningSnapshot,
    SessionSnapshot,
)

# --- Catalog ---
from screening_rules.models.question import (
    CatalogOption,
    CatalogQuestion,
    OptionConfig,
    QuestionConfig,
    QuestionPayload,
)

# --- Definitions ---
from screening_rules.models.definition import (
    AnswerOptionDefinition,
    FlowDefinition,
    FlowVersionPayload,
    QuestionDefinition,
    ScreeningDefinition,
    ScreeningVersionPayload,
)

# --- Session / step / triage ---
from screening_rules.models.session import (
    AdvanceResult,
    AnsweredQuestionView,
    AnswerView,
    CompletedStep,
    FlowInfo,
    FlowVersionInfo,
    QuestionsStep,
    RecommendationView,
    ScreeningCompletion,
    ScreeningInfo,
    ScreeningVersionInfo,
    SessionInfo,
    SessionScreeningView,
    SessionState,
    StepResult,
    SubmitAnswersResult,
    TriageGroupView,
    TriageView,
)

__all__ = [
    # Strategies
    "AccountCondition",
    "AnswerCondition",
    "ClinicalTriageResults",
    "Condition",
    "CrisisCondition",
    "Decision",
    "DestinationFunction",
    "DestinationRule",
    "FixedDestination",
    "MaxOptionScoring",
    "OrchestrationFunction",
    "ResultsFunction",
    "RoutingRule",
    "ScoreCondition",
    "ScoringFunction",
    "SequentialOrchestration",
    "SupportRoleRule",
    "SupportRoleRulesResults",
    "SupportRoleWeight",
    "ThresholdDestination",
    "ThresholdRoutingOrchestration",
    "TriageDestination",
    "TriageRow",
    "TriageRule",
    "WeightedSumScoring",
    # Evaluation
    "AnswerSnapshot",
    "ResultsOutput",
    "RoutingToken",
    "ScreeningSnapshot",
    "SessionSnapshot",
    # Catalog
    "CatalogOption",
    "CatalogQuestion",
    "OptionConfig",
    "QuestionConfig",
    "QuestionPayload",
    # Definitions
    "AnswerOptionDefinition",
    "FlowDefinition",
    "FlowVersionPayload",
    "QuestionDefinition",
    "ScreeningDefinition",
    "ScreeningVersionPayload",
    # Session
    "AdvanceResult",
    "AnsweredQuestionView",
    "AnswerView",
    "CompletedStep",
    "FlowInfo",
    "FlowVersionInfo",
    "QuestionsStep",
    "RecommendationView",
    "ScreeningCompletion",
    "ScreeningInfo",
    "ScreeningVersionInfo",
    "SessionInfo",
    "SessionScreeningView",
    "SessionState",
    "StepResult",
    "SubmitAnswersResult",
    "TriageGroupView",
    "TriageView",
]
