"""Screening constants shared across the SDK.

Referenced by the evaluator, orchestrator and projector.  The evaluator
limits can be overridden via environment variables so operators can tune
them per deployment without code changes.
"""

import os

# Wall-clock limit for one strategy evaluation.
# Overridable via EVALUATION_TIMEOUT_SECONDS.
EVALUATION_TIMEOUT_SECONDS = float(os.getenv("EVALUATION_TIMEOUT_SECONDS", "2.0"))

# Maximum number of condition checks / rule visits per evaluation.
# Overridable via EVALUATION_STEP_BUDGET.
EVALUATION_STEP_BUDGET = int(os.getenv("EVALUATION_STEP_BUDGET", "10000"))

# Longest stretch of answer text a ``matches`` condition searches.
# Overridable via EVALUATION_MATCH_TEXT_LIMIT.
EVALUATION_MATCH_TEXT_LIMIT = int(os.getenv("EVALUATION_MATCH_TEXT_LIMIT", "4096"))

# Routing destination used when a crisis-flagged session completes and the
# flow version does not name its own.  Overridable via DEFAULT_CRISIS_DESTINATION.
DEFAULT_CRISIS_DESTINATION = os.getenv("DEFAULT_CRISIS_DESTINATION", "CRISIS")

# Human-readable labels for the reference endpoints.
CARE_TYPE_LABELS: dict[str, str] = {
    "UNSPECIFIED": "Unspecified",
    "SUBCLINICAL": "Subclinical",
    "COLLABORATIVE": "Collaborative care",
    "SPECIALTY": "Specialty care",
}

FOCUS_TYPE_LABELS: dict[str, str] = {
    "GENERAL": "General",
    "DEPRESSION": "Depression",
    "ANXIETY": "Anxiety",
    "SUBSTANCE_USE": "Substance use",
    "TRAUMA": "Trauma",
    "SAFETY_PLANNING": "Safety planning",
    "EATING_DISORDER": "Eating disorder",
    "OTHER": "Other",
}

SUPPORT_ROLE_LABELS: dict[str, str] = {
    "CLINICIAN": "Clinician",
    "COACH": "Coach",
    "CARE_MANAGER": "Care manager",
    "PSYCHIATRIST": "Psychiatrist",
    "PSYCHOTHERAPIST": "Psychotherapist",
    "OTHER": "Other",
}
