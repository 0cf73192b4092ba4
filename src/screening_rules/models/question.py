"""Typed catalog models for questions and answer options.

Questions and options persist an open JSONB ``metadata`` column.  Known keys
are lifted into typed config models when the catalog reads a row; only keys
nobody anticipated stay behind in ``extensions``.  Callers therefore never
re-parse the raw map.

Answer formats:
  - single_select: exactly one option
  - multi_select: between minimum and maximum options
  - freeform_text: text in the question's (single) option, shape checked by
    the content hint
"""

from __future__ import annotations

import uuid
from typing import Any, Optional

from pydantic import BaseModel

from screening_db.models.enums import AnswerFormat, ContentHint


class _MetadataConfig(BaseModel):
    """Splits a raw metadata map into typed fields and leftover extensions."""

    extensions: dict[str, Any] = {}

    @classmethod
    def from_metadata(cls, raw: dict[str, Any] | None) -> "_MetadataConfig":
        raw = dict(raw or {})
        known = {name: raw.pop(name) for name in list(raw) if name in cls.model_fields and name != "extensions"}
        return cls(**known, extensions=raw)

    def to_metadata(self) -> dict[str, Any]:
        known = self.model_dump(exclude={"extensions"}, exclude_none=True, exclude_defaults=True)
        return {**self.extensions, **known}


class QuestionConfig(_MetadataConfig):
    help_text: Optional[str] = None
    placeholder: Optional[str] = None
    # Freeform answers longer than this are rejected
    max_text_length: Optional[int] = None


class OptionConfig(_MetadataConfig):
    help_text: Optional[str] = None
    # "None of the above": cannot be combined with other options
    exclusive: bool = False


class CatalogOption(BaseModel):
    id: uuid.UUID
    code: str
    text: str
    score: int
    indicates_crisis: bool = False
    freeform_supplement: bool = False
    freeform_supplement_text: Optional[str] = None
    display_order: int
    config: OptionConfig = OptionConfig()


class CatalogQuestion(BaseModel):
    id: uuid.UUID
    screening_version_id: uuid.UUID
    code: str
    question_text: str
    intro_text: Optional[str] = None
    answer_format: AnswerFormat
    content_hint: ContentHint = ContentHint.NONE
    minimum_answer_count: int
    maximum_answer_count: int
    display_order: int
    options: list[CatalogOption]
    config: QuestionConfig = QuestionConfig()

    @property
    def required(self) -> bool:
        return self.minimum_answer_count >= 1

    def option(self, option_id: uuid.UUID) -> CatalogOption | None:
        for opt in self.options:
            if opt.id == option_id:
                return opt
        return None


class QuestionPayload(BaseModel):
    """Flattened question for API consumers (no scores or crisis flags)."""

    question_id: str
    code: str
    question_text: str
    intro_text: Optional[str] = None
    answer_format: str
    content_hint: str
    minimum_answer_count: int
    maximum_answer_count: int
    # [{answer_option_id, code, text, freeform_supplement, freeform_supplement_text}]
    options: list[dict]
    help_text: Optional[str] = None
    placeholder: Optional[str] = None
    # Currently valid answer, if the question was already answered
    selected_option_ids: list[str] = []
    freeform_text: Optional[str] = None
