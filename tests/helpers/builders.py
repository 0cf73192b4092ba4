"""Wiring helpers: SDK components backed by the in-memory fakes.

``build_components()`` constructs the same object graph the server builds at
startup, then swaps every repository for a fake sharing one ``FakeState``.
"""

from dataclasses import dataclass
from typing import Any
from unittest.mock import AsyncMock

from screening_rules.catalog import QuestionCatalog
from screening_rules.definitions import DefinitionStore
from screening_rules.evaluator import RuleEvaluator
from screening_rules.interfaces import (
    AccountDirectory,
    CrisisNotifier,
    PermissiveAccountDirectory,
    StaticInstitutionDirectory,
)
from screening_rules.loader import DefinitionLoader
from screening_rules.orchestrator import ScreeningOrchestrator
from screening_rules.projector import TriageProjector

from helpers.fakes import (
    FakeDefinitionRepository,
    FakeSessionRepository,
    FakeState,
    FakeTriageRepository,
)


@dataclass
class Components:
    state: FakeState
    store: DefinitionStore
    catalog: QuestionCatalog
    projector: TriageProjector
    orchestrator: ScreeningOrchestrator


class RecordingNotifier(CrisisNotifier):
    """Collects every crisis notification."""

    def __init__(self, fail: bool = False):
        self.sessions = []
        self.fail = fail

    async def notify(self, session):
        self.sessions.append(session)
        if self.fail:
            raise RuntimeError("pager unavailable")


def make_db() -> AsyncMock:
    """Stand-in for AsyncSession; the fakes never touch it."""
    return AsyncMock()


def build_components(
    *,
    state: FakeState | None = None,
    evaluator: RuleEvaluator | None = None,
    accounts: AccountDirectory | None = None,
    notifier: CrisisNotifier | None = None,
    provider_triage_flows: dict[str, str] | None = None,
) -> Components:
    state = state or FakeState()
    institutions = StaticInstitutionDirectory(provider_triage_flows)

    store = DefinitionStore(institutions)
    store._repo = FakeDefinitionRepository(state)

    catalog = QuestionCatalog()
    catalog._repo = FakeDefinitionRepository(state)

    projector = TriageProjector()
    projector._sessions = FakeSessionRepository(state)
    projector._repo = FakeTriageRepository(state)

    orchestrator = ScreeningOrchestrator(
        store=store,
        catalog=catalog,
        evaluator=evaluator or RuleEvaluator(),
        projector=projector,
        accounts=accounts or PermissiveAccountDirectory(),
        institutions=institutions,
        notifier=notifier or RecordingNotifier(),
    )
    orchestrator._repo = FakeSessionRepository(state)
    orchestrator._defs = FakeDefinitionRepository(state)

    return Components(state, store, catalog, projector, orchestrator)


async def seed_definitions(components: Components, db) -> dict[str, Any]:
    """Seed definitions/v1 and return ``{name: info}`` for every flow."""
    loader = DefinitionLoader()
    loader.load()
    await loader.seed(db, components.store)
    return {name: await components.store.find_flow(db, name) for name in loader.flows}


# =====================================================================
# Small inline definitions
# =====================================================================


def frequency_options(crisis_from: int | None = None) -> list[dict]:
    """The 0..3 frequency scale; options scoring >= ``crisis_from`` indicate crisis."""
    labels = [
        ("not_at_all", "Not at all"),
        ("several_days", "Several days"),
        ("more_than_half", "More than half the days"),
        ("nearly_every_day", "Nearly every day"),
    ]
    return [
        {
            "code": code,
            "text": text,
            "score": score,
            "indicates_crisis": crisis_from is not None and score >= crisis_from,
        }
        for score, (code, text) in enumerate(labels)
    ]


def screening_payload(codes: list[str], *, crisis_question: str | None = None) -> dict:
    """A weighted-sum screening with one frequency question per code."""
    return {
        "scoring_function": {"strategy": "weighted_sum"},
        "questions": [
            {
                "code": code,
                "text": f"Question {code}",
                "options": frequency_options(1 if code == crisis_question else None),
            }
            for code in codes
        ],
    }


async def create_published_screening(store: DefinitionStore, db, name: str, payload: dict):
    """Create a screening head plus one published version; returns the version info."""
    info = await store.find_screening(db, name)
    if info is None:
        info = await store.create_screening(db, name=name, screening_type=name.upper())
    version = await store.create_screening_version(db, info.screening_id, payload)
    await store.publish_screening_version(db, info.screening_id, version.screening_version_id)
    return version


async def create_published_flow(
    store: DefinitionStore,
    db,
    name: str,
    payload: dict,
    *,
    flow_type: str = "standard",
    institution_id: str | None = None,
):
    """Create a flow head plus one published version; returns ``(flow, version)``."""
    info = await store.find_flow(db, name)
    if info is None:
        info = await store.create_flow(
            db, name=name, flow_type=flow_type, institution_id=institution_id
        )
    version = await store.create_flow_version(db, info.flow_id, payload)
    await store.publish_flow_version(db, info.flow_id, version.flow_version_id)
    return info, version
