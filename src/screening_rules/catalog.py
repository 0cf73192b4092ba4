"""QuestionCatalog — questions and answer options per screening version.

Screening versions are immutable, so a loaded question set is cached by
version id for the lifetime of the catalog.  Rows are mapped into the typed
``CatalogQuestion`` / ``CatalogOption`` models; the JSONB metadata is split
into typed config and leftover extensions once, at load time.

Also owns answer validation, which only needs the question itself and is
shared by the orchestrator and the step API.
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from screening_db.models.enums import AnswerFormat, ContentHint
from screening_db.repository import DefinitionRepository

from screening_rules.errors import FieldError
from screening_rules.models.question import (
    CatalogOption,
    CatalogQuestion,
    OptionConfig,
    QuestionConfig,
    QuestionPayload,
)

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
# Digits with optional leading +, spaces, dashes, dots and parentheses
_PHONE_RE = re.compile(r"^\+?[0-9 ()\-.]{7,20}$")
_INTEGER_RE = re.compile(r"^[+-]?\d+$")


class QuestionCatalog:
    """Read access to question sets plus answer validation."""

    def __init__(self) -> None:
        self._repo = DefinitionRepository()
        self._cache: dict[uuid.UUID, list[CatalogQuestion]] = {}

    # ==================================================================
    # Loading
    # ==================================================================

    async def get_questions(
        self, db: AsyncSession, screening_version_id: uuid.UUID
    ) -> list[CatalogQuestion]:
        """All questions of a screening version in display order."""
        cached = self._cache.get(screening_version_id)
        if cached is not None:
            return cached

        rows = await self._repo.list_questions(db, screening_version_id)
        options = await self._repo.list_answer_options(db, [r.id for r in rows])
        by_question: dict[uuid.UUID, list[CatalogOption]] = {}
        for opt in options:
            by_question.setdefault(opt.question_id, []).append(
                CatalogOption(
                    id=opt.id,
                    code=opt.code,
                    text=opt.answer_option_text,
                    score=opt.score,
                    indicates_crisis=opt.indicates_crisis,
                    freeform_supplement=opt.freeform_supplement,
                    freeform_supplement_text=opt.freeform_supplement_text,
                    display_order=opt.display_order,
                    config=OptionConfig.from_metadata(opt.extension_metadata),
                )
            )

        questions = [
            CatalogQuestion(
                id=row.id,
                screening_version_id=row.screening_version_id,
                code=row.code,
                question_text=row.question_text,
                intro_text=row.intro_text,
                answer_format=AnswerFormat(row.answer_format),
                content_hint=ContentHint(row.content_hint or ContentHint.NONE),
                minimum_answer_count=row.minimum_answer_count,
                maximum_answer_count=row.maximum_answer_count,
                display_order=row.display_order,
                options=sorted(by_question.get(row.id, []), key=lambda o: o.display_order),
                config=QuestionConfig.from_metadata(row.extension_metadata),
            )
            for row in sorted(rows, key=lambda r: r.display_order)
        ]
        self._cache[screening_version_id] = questions
        logger.debug(
            "Loaded %d questions for screening version %s", len(questions), screening_version_id
        )
        return questions

    async def get_question(
        self, db: AsyncSession, screening_version_id: uuid.UUID, question_id: uuid.UUID
    ) -> CatalogQuestion | None:
        for question in await self.get_questions(db, screening_version_id):
            if question.id == question_id:
                return question
        return None

    async def get_required_question_ids(
        self, db: AsyncSession, screening_version_id: uuid.UUID
    ) -> list[uuid.UUID]:
        """Ids of questions with ``minimum_answer_count >= 1``."""
        return [q.id for q in await self.get_questions(db, screening_version_id) if q.required]

    # ==================================================================
    # Validation
    # ==================================================================

    @staticmethod
    def validate_selection(
        question: CatalogQuestion,
        answer_option_ids: Iterable[uuid.UUID],
        freeform_text: str | None = None,
    ) -> tuple[list[tuple[CatalogOption, str | None]], list[FieldError]]:
        """Check an answer set against the question's cardinality and format.

        Returns
        -------
        tuple
            ``(selection, errors)``.  ``selection`` is the ordered list of
            ``(option, text)`` pairs to store; it is only meaningful when
            ``errors`` is empty.
        """
        ids = list(answer_option_ids)
        errors: list[FieldError] = []
        text = freeform_text.strip() if freeform_text is not None else None

        # Freeform questions carry a single option that the caller may omit
        if (
            not ids
            and question.answer_format == AnswerFormat.FREEFORM_TEXT
            and len(question.options) == 1
            and text
        ):
            ids = [question.options[0].id]

        options: list[CatalogOption] = []
        for option_id in ids:
            option = question.option(option_id)
            if option is None:
                errors.append(
                    FieldError(
                        field="answer_option_ids",
                        message="You can only supply answers for the current question.",
                    )
                )
                return [], errors
            options.append(option)

        if len(set(ids)) != len(ids):
            errors.append(
                FieldError(field="answer_option_ids", message="Duplicate answer options supplied.")
            )

        count = len(options)
        lo, hi = question.minimum_answer_count, question.maximum_answer_count
        # A submitted single-answer question carries exactly one answer even
        # when optional; optional only means it may be left unsubmitted
        if question.answer_format != AnswerFormat.MULTI_SELECT:
            if count == 0:
                errors.append(FieldError(field="answer_option_ids", message="Please select an answer."))
            elif count > 1:
                errors.append(
                    FieldError(field="answer_option_ids", message="Please select only one answer.")
                )
        elif count < lo:
            errors.append(
                FieldError(
                    field="answer_option_ids",
                    message=f"Please select at least {lo} answer{'s' if lo != 1 else ''}.",
                )
            )
        elif count > hi:
            errors.append(
                FieldError(
                    field="answer_option_ids",
                    message=f"Please select at most {hi} answer{'s' if hi != 1 else ''}.",
                )
            )

        if count > 1 and any(o.config.exclusive for o in options):
            errors.append(
                FieldError(
                    field="answer_option_ids",
                    message="This answer cannot be combined with other answers.",
                )
            )

        if question.answer_format == AnswerFormat.FREEFORM_TEXT:
            errors.extend(QuestionCatalog._validate_text(question, text))
        elif text and any(o.freeform_supplement for o in options):
            errors.extend(QuestionCatalog._validate_length(question, text))

        if errors:
            return [], errors

        keep_text = question.answer_format == AnswerFormat.FREEFORM_TEXT
        selection = [
            (opt, text if (keep_text or opt.freeform_supplement) and text else None)
            for opt in options
        ]
        return selection, []

    @staticmethod
    def _validate_text(question: CatalogQuestion, text: str | None) -> list[FieldError]:
        if not text:
            return [FieldError(field="freeform_text", message="Please provide an answer.")]
        hint = question.content_hint
        if hint == ContentHint.EMAIL_ADDRESS and not _EMAIL_RE.match(text):
            return [FieldError(field="freeform_text", message="Please enter a valid email address.")]
        if hint == ContentHint.PHONE_NUMBER and (
            not _PHONE_RE.match(text) or sum(c.isdigit() for c in text) < 7
        ):
            return [FieldError(field="freeform_text", message="Please enter a valid phone number.")]
        if hint == ContentHint.INTEGER and not _INTEGER_RE.match(text):
            return [FieldError(field="freeform_text", message="Please enter a whole number.")]
        return QuestionCatalog._validate_length(question, text)

    @staticmethod
    def _validate_length(question: CatalogQuestion, text: str) -> list[FieldError]:
        limit = question.config.max_text_length
        if limit is not None and len(text) > limit:
            return [
                FieldError(
                    field="freeform_text",
                    message=f"Please keep your answer under {limit} characters.",
                )
            ]
        return []

    # ==================================================================
    # Presentation
    # ==================================================================

    @staticmethod
    def to_payload(
        question: CatalogQuestion,
        *,
        selected_option_ids: list[uuid.UUID] | None = None,
        freeform_text: str | None = None,
    ) -> QuestionPayload:
        """Flatten a question for API consumers, hiding scores and crisis flags."""
        return QuestionPayload(
            question_id=str(question.id),
            code=question.code,
            question_text=question.question_text,
            intro_text=question.intro_text,
            answer_format=question.answer_format.value,
            content_hint=question.content_hint.value,
            minimum_answer_count=question.minimum_answer_count,
            maximum_answer_count=question.maximum_answer_count,
            options=[
                {
                    "answer_option_id": str(o.id),
                    "code": o.code,
                    "text": o.text,
                    "freeform_supplement": o.freeform_supplement,
                    "freeform_supplement_text": o.freeform_supplement_text,
                }
                for o in question.options
            ],
            help_text=question.config.help_text,
            placeholder=question.config.placeholder,
            selected_option_ids=[str(i) for i in selected_option_ids or []],
            freeform_text=freeform_text,
        )
