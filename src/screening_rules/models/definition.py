"""Definition payloads — what a new screening or flow version is created from.

These models are the input side of the Definition Store.  They are built
from API request bodies or from the YAML files under ``definitions/v1/``.
Strategy fields use the discriminated unions from ``models.strategy`` so a
malformed strategy is rejected before anything reaches the database.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Optional

from pydantic import BaseModel, Field, model_validator

from screening_db.models.enums import AnswerFormat, ContentHint, FlowType

from screening_rules.models.question import OptionConfig, QuestionConfig
from screening_rules.models.strategy import (
    DestinationFunction,
    OrchestrationFunction,
    ResultsFunction,
    ScoringFunction,
)


def content_hash(payload: BaseModel) -> str:
    """sha256 of the payload's canonical JSON form."""
    canonical = json.dumps(payload.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


class AnswerOptionDefinition(BaseModel):
    code: str
    text: str
    score: int = 0
    indicates_crisis: bool = False
    freeform_supplement: bool = False
    freeform_supplement_text: Optional[str] = None
    config: OptionConfig = OptionConfig()


class QuestionDefinition(BaseModel):
    code: str
    text: str
    intro_text: Optional[str] = None
    answer_format: AnswerFormat = AnswerFormat.SINGLE_SELECT
    content_hint: ContentHint = ContentHint.NONE
    minimum_answer_count: int = 1
    maximum_answer_count: Optional[int] = None
    options: list[AnswerOptionDefinition] = []
    config: QuestionConfig = QuestionConfig()

    @model_validator(mode="after")
    def _check_cardinality(self) -> "QuestionDefinition":
        if self.answer_format == AnswerFormat.FREEFORM_TEXT and not self.options:
            # Freeform answers still reference an option row
            self.options = [AnswerOptionDefinition(code="text", text="Free text")]
        if not self.options:
            raise ValueError(f"question {self.code!r} has no answer options")

        codes = [o.code for o in self.options]
        if len(set(codes)) != len(codes):
            raise ValueError(f"question {self.code!r} has duplicate option codes")

        if self.maximum_answer_count is None:
            if self.answer_format == AnswerFormat.MULTI_SELECT:
                self.maximum_answer_count = len(self.options)
            else:
                self.maximum_answer_count = 1
        if self.answer_format != AnswerFormat.MULTI_SELECT and self.maximum_answer_count != 1:
            raise ValueError(
                f"question {self.code!r}: {self.answer_format.value} allows exactly one answer"
            )
        if self.minimum_answer_count < 0 or self.minimum_answer_count > self.maximum_answer_count:
            raise ValueError(
                f"question {self.code!r}: minimum_answer_count must be between 0 and "
                f"maximum_answer_count"
            )
        return self


class ScreeningVersionPayload(BaseModel):
    scoring_function: ScoringFunction
    questions: list[QuestionDefinition] = Field(min_length=1)

    @model_validator(mode="after")
    def _unique_question_codes(self) -> "ScreeningVersionPayload":
        codes = [q.code for q in self.questions]
        if len(set(codes)) != len(codes):
            raise ValueError("duplicate question codes in screening version")
        return self


class FlowVersionPayload(BaseModel):
    """New flow version.  Screenings are referenced by name."""

    initial_screening: str
    skippable: bool = False
    orchestration_function: OrchestrationFunction
    results_function: Optional[ResultsFunction] = None
    destination_function: DestinationFunction
    crisis_destination: Optional[str] = None

    def referenced_screenings(self) -> set[str]:
        """Every screening name this version can route to."""
        names = {self.initial_screening}
        orchestration = self.orchestration_function
        if orchestration.strategy == "sequential":
            names.update(orchestration.screenings)
        else:
            names.update(orchestration.transitions)
            for rules in orchestration.transitions.values():
                names.update(r.then.next for r in rules if r.then.next is not None)
            if orchestration.default.next is not None:
                names.add(orchestration.default.next)
        return names


class ScreeningDefinition(BaseModel):
    """A screening head plus the version payload, as read from YAML."""

    name: str
    screening_type: str
    version: ScreeningVersionPayload

    @classmethod
    def from_yaml_dict(cls, raw: dict[str, Any]) -> "ScreeningDefinition":
        head = {k: raw[k] for k in ("name", "screening_type") if k in raw}
        body = {k: v for k, v in raw.items() if k not in head}
        return cls(**head, version=body)


class FlowDefinition(BaseModel):
    """A flow head plus the version payload, as read from YAML."""

    name: str
    flow_type: FlowType = FlowType.STANDARD
    institution_id: Optional[str] = None
    version: FlowVersionPayload

    @classmethod
    def from_yaml_dict(cls, raw: dict[str, Any]) -> "FlowDefinition":
        head = {k: raw[k] for k in ("name", "flow_type", "institution_id") if k in raw}
        body = {k: v for k, v in raw.items() if k not in head}
        return cls(**head, version=body)
