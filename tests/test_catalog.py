"""QuestionCatalog tests — loading question sets and validating answer selections.

Question sets are created through the DefinitionStore against the in-memory
fakes; validation tests build ``CatalogQuestion`` objects directly.
"""

import uuid

import pytest

from screening_db.models.enums import AnswerFormat, ContentHint
from screening_rules.catalog import QuestionCatalog
from screening_rules.models.question import (
    CatalogOption,
    CatalogQuestion,
    OptionConfig,
    QuestionConfig,
)

from helpers.builders import create_published_screening, screening_payload


# --- Helpers to reduce boilerplate ---


def _option(code, score=0, **kwargs):
    return CatalogOption(
        id=uuid.uuid4(), code=code, text=code.title(), score=score, display_order=1, **kwargs
    )


def _question(options, *, fmt=AnswerFormat.SINGLE_SELECT, lo=1, hi=1, hint=ContentHint.NONE,
              config=None):
    return CatalogQuestion(
        id=uuid.uuid4(),
        screening_version_id=uuid.uuid4(),
        code="q",
        question_text="Question?",
        answer_format=fmt,
        content_hint=hint,
        minimum_answer_count=lo,
        maximum_answer_count=hi,
        display_order=1,
        options=options,
        config=config or QuestionConfig(),
    )


def _messages(errors):
    return [e.message for e in errors]


# =====================================================================
# Loading
# =====================================================================


class TestLoading:
    @pytest.mark.asyncio
    async def test_questions_in_display_order_with_options(self, components, db):
        version = await create_published_screening(
            components.store, db, "phq2", screening_payload(["q1", "q2"])
        )
        vid = uuid.UUID(version.screening_version_id)
        questions = await components.catalog.get_questions(db, vid)

        assert [q.code for q in questions] == ["q1", "q2"]
        assert [o.code for o in questions[0].options] == [
            "not_at_all", "several_days", "more_than_half", "nearly_every_day",
        ]
        assert [o.score for o in questions[0].options] == [0, 1, 2, 3]
        assert all(q.required for q in questions)

    @pytest.mark.asyncio
    async def test_question_sets_are_cached_per_version(self, components, db):
        version = await create_published_screening(
            components.store, db, "phq2", screening_payload(["q1"])
        )
        vid = uuid.UUID(version.screening_version_id)
        first = await components.catalog.get_questions(db, vid)
        # Versions are immutable; a second read must not hit the repository
        components.catalog._repo = None
        assert await components.catalog.get_questions(db, vid) is first

    @pytest.mark.asyncio
    async def test_metadata_split_into_config_and_extensions(self, components, db):
        payload = {
            "scoring_function": {"strategy": "weighted_sum"},
            "questions": [
                {
                    "code": "other",
                    "text": "Anything else?",
                    "answer_format": "freeform_text",
                    "minimum_answer_count": 0,
                    "config": {"max_text_length": 20, "extensions": {"legacy_id": 42}},
                },
                {
                    "code": "symptoms",
                    "text": "Which apply?",
                    "answer_format": "multi_select",
                    "options": [
                        {"code": "sleep", "text": "Sleep"},
                        {"code": "none", "text": "None of these", "config": {"exclusive": True}},
                    ],
                },
            ],
        }
        version = await create_published_screening(components.store, db, "extra", payload)
        questions = await components.catalog.get_questions(db, uuid.UUID(version.screening_version_id))
        other, symptoms = questions

        assert other.config.max_text_length == 20
        assert other.config.extensions == {"legacy_id": 42}
        assert not other.required
        assert len(other.options) == 1, "Freeform question gets a single implicit option"
        assert symptoms.maximum_answer_count == 2
        assert symptoms.options[1].config.exclusive

        required = await components.catalog.get_required_question_ids(
            db, uuid.UUID(version.screening_version_id)
        )
        assert required == [symptoms.id]


# =====================================================================
# Selection validation
# =====================================================================


class TestValidateSelection:
    def test_single_select_accepts_one(self):
        yes = _option("yes", 1)
        selection, errors = QuestionCatalog.validate_selection(_question([yes, _option("no")]), [yes.id])
        assert errors == []
        assert selection == [(yes, None)]

    def test_single_select_requires_an_answer(self):
        _, errors = QuestionCatalog.validate_selection(_question([_option("a")]), [])
        assert _messages(errors) == ["Please select an answer."]

    def test_optional_single_select_rejects_empty_submission(self):
        question = _question([_option("a"), _option("b")], lo=0, hi=1)
        selection, errors = QuestionCatalog.validate_selection(question, [])
        assert selection == []
        assert _messages(errors) == ["Please select an answer."], (
            "Optional single-select may be left unsubmitted, not submitted empty"
        )

    def test_single_select_rejects_two(self):
        a, b = _option("a"), _option("b")
        _, errors = QuestionCatalog.validate_selection(_question([a, b]), [a.id, b.id])
        assert "Please select only one answer." in _messages(errors)

    def test_option_from_another_question_is_rejected(self):
        _, errors = QuestionCatalog.validate_selection(_question([_option("a")]), [uuid.uuid4()])
        assert _messages(errors) == ["You can only supply answers for the current question."]

    def test_duplicates_rejected(self):
        a, b = _option("a"), _option("b")
        question = _question([a, b], fmt=AnswerFormat.MULTI_SELECT, lo=1, hi=2)
        _, errors = QuestionCatalog.validate_selection(question, [a.id, a.id])
        assert "Duplicate answer options supplied." in _messages(errors)

    def test_multi_select_bounds(self):
        opts = [_option(c) for c in "abcd"]
        question = _question(opts, fmt=AnswerFormat.MULTI_SELECT, lo=2, hi=3)
        _, too_few = QuestionCatalog.validate_selection(question, [opts[0].id])
        _, too_many = QuestionCatalog.validate_selection(question, [o.id for o in opts])
        selection, ok = QuestionCatalog.validate_selection(question, [opts[0].id, opts[2].id])
        assert _messages(too_few) == ["Please select at least 2 answers."]
        assert _messages(too_many) == ["Please select at most 3 answers."]
        assert ok == [] and [o.code for o, _ in selection] == ["a", "c"]

    def test_exclusive_option_cannot_be_combined(self):
        a = _option("a")
        none = _option("none", config=OptionConfig(exclusive=True))
        question = _question([a, none], fmt=AnswerFormat.MULTI_SELECT, lo=1, hi=2)
        _, errors = QuestionCatalog.validate_selection(question, [a.id, none.id])
        assert _messages(errors) == ["This answer cannot be combined with other answers."]

    def test_optional_multi_select_accepts_empty(self):
        question = _question([_option("a")], fmt=AnswerFormat.MULTI_SELECT, lo=0, hi=1)
        selection, errors = QuestionCatalog.validate_selection(question, [])
        assert errors == [] and selection == []

    def test_freeform_implies_its_option(self):
        text_opt = _option("text")
        question = _question([text_opt], fmt=AnswerFormat.FREEFORM_TEXT)
        selection, errors = QuestionCatalog.validate_selection(question, [], "  hello  ")
        assert errors == []
        assert selection == [(text_opt, "hello")], "Text is stripped and kept"

    def test_freeform_requires_text(self):
        text_opt = _option("text")
        question = _question([text_opt], fmt=AnswerFormat.FREEFORM_TEXT)
        _, errors = QuestionCatalog.validate_selection(question, [text_opt.id], "   ")
        assert _messages(errors) == ["Please provide an answer."]

    @pytest.mark.parametrize(
        "hint, good, bad, message",
        [
            (ContentHint.EMAIL_ADDRESS, "a@b.org", "not-an-email", "Please enter a valid email address."),
            (ContentHint.PHONE_NUMBER, "+1 (555) 123-4567", "12ab", "Please enter a valid phone number."),
            (ContentHint.INTEGER, "-12", "1.5", "Please enter a whole number."),
        ],
    )
    def test_content_hints(self, hint, good, bad, message):
        question = _question([_option("text")], fmt=AnswerFormat.FREEFORM_TEXT, hint=hint)
        _, ok = QuestionCatalog.validate_selection(question, [], good)
        _, errors = QuestionCatalog.validate_selection(question, [], bad)
        assert ok == []
        assert _messages(errors) == [message]

    def test_max_text_length(self):
        question = _question(
            [_option("text")], fmt=AnswerFormat.FREEFORM_TEXT,
            config=QuestionConfig(max_text_length=5),
        )
        _, errors = QuestionCatalog.validate_selection(question, [], "too long")
        assert _messages(errors) == ["Please keep your answer under 5 characters."]

    def test_supplement_text_kept_only_on_supplement_option(self):
        plain = _option("plain")
        other = _option("other", freeform_supplement=True)
        question = _question([plain, other], fmt=AnswerFormat.MULTI_SELECT, lo=1, hi=2)
        selection, errors = QuestionCatalog.validate_selection(
            question, [plain.id, other.id], "my own words"
        )
        assert errors == []
        assert selection == [(plain, None), (other, "my own words")]


# =====================================================================
# Presentation
# =====================================================================


def test_payload_hides_scores_and_crisis_flags():
    crisis = _option("yes", 3, indicates_crisis=True)
    payload = QuestionCatalog.to_payload(
        _question([crisis], config=QuestionConfig(help_text="Be honest")),
        selected_option_ids=[crisis.id],
    )
    dumped = payload.model_dump()
    assert dumped["help_text"] == "Be honest"
    assert dumped["selected_option_ids"] == [str(crisis.id)]
    assert "score" not in dumped["options"][0]
    assert "indicates_crisis" not in dumped["options"][0]
