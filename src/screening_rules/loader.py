"""DefinitionLoader — reads screening and flow definitions from ``definitions/v1/``.

Layout::

    definitions/v1/
        screenings/*.yaml   one screening per file (ScreeningDefinition)
        flows/*.yaml        one flow per file (FlowDefinition)

The loader only parses and cross-checks the files.  :meth:`seed` pushes them
into a :class:`DefinitionStore`, creating a new version (and publishing it)
only when the file content differs from the active version.

Usage::

    loader = DefinitionLoader()     # defaults to definitions/v1 under the repo root
    loader.load()
    report = await loader.seed(db, DefinitionStore())
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from screening_rules.definitions import DefinitionStore
from screening_rules.models.definition import FlowDefinition, ScreeningDefinition, content_hash

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Utility helpers
# ---------------------------------------------------------------------------

def find_repo_root(start: Optional[Path] = None) -> Path:
    """Walk upwards from *start* to find the repo root (dir with pyproject.toml or .git).

    Falls back to cwd if no marker is found.
    """
    p = (start or Path(__file__).resolve()).parent
    for parent in [p, *p.parents]:
        if (parent / "pyproject.toml").exists() or (parent / ".git").exists():
            return parent
    return Path.cwd()


def load_yaml(path: Path | str) -> Any:
    """Load a single YAML file and return the parsed contents."""
    if isinstance(path, str):
        path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Missing YAML file: {path}")
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f)


@dataclass
class SeedReport:
    """Names of definitions per outcome of one :meth:`DefinitionLoader.seed` run."""

    published: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)

    def __str__(self) -> str:
        return f"{len(self.published)} published, {len(self.unchanged)} unchanged"


# ---------------------------------------------------------------------------
# DefinitionLoader
# ---------------------------------------------------------------------------

class DefinitionLoader:
    """Parses the definition tree into typed models.

    Attributes populated after :meth:`load`:

        screenings — dict[name, ScreeningDefinition]
        flows      — dict[name, FlowDefinition]
    """

    def __init__(self, definitions_dir: str | Path | None = None) -> None:
        if definitions_dir is None:
            definitions_dir = find_repo_root() / "definitions" / "v1"
        self._base = Path(definitions_dir)
        self.screenings: dict[str, ScreeningDefinition] = {}
        self.flows: dict[str, FlowDefinition] = {}

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def load(self) -> None:
        """Parse every YAML file and check that flows only reference known screenings.

        Raises:
            FileNotFoundError: the definitions directory is missing.
            ValueError: a file does not parse into its model, a name is
                defined twice, or a flow references an unknown screening.
        """
        if not self._base.is_dir():
            raise FileNotFoundError(f"Missing definitions directory: {self._base}")

        for path in sorted((self._base / "screenings").glob("*.yaml")):
            definition = self._parse(ScreeningDefinition, path)
            if definition.name in self.screenings:
                raise ValueError(f"Screening {definition.name!r} defined twice ({path.name})")
            self.screenings[definition.name] = definition

        for path in sorted((self._base / "flows").glob("*.yaml")):
            definition = self._parse(FlowDefinition, path)
            if definition.name in self.flows:
                raise ValueError(f"Flow {definition.name!r} defined twice ({path.name})")
            unknown = definition.version.referenced_screenings() - set(self.screenings)
            if unknown:
                raise ValueError(
                    f"Flow {definition.name!r} references unknown screenings: "
                    f"{', '.join(sorted(unknown))}"
                )
            self.flows[definition.name] = definition

        logger.info(
            "DefinitionLoader loaded: %d screenings, %d flows from %s",
            len(self.screenings),
            len(self.flows),
            self._base,
        )

    @staticmethod
    def _parse(model, path: Path):
        raw = load_yaml(path)
        if not isinstance(raw, dict):
            raise ValueError(f"{path.name}: expected a mapping at the top level")
        try:
            return model.from_yaml_dict(raw)
        except ValidationError as exc:
            raise ValueError(f"{path.name}: {exc}") from exc

    # ------------------------------------------------------------------
    # Seeding
    # ------------------------------------------------------------------

    async def seed(
        self,
        db: AsyncSession,
        store: DefinitionStore,
        *,
        account_id: str | None = None,
    ) -> SeedReport:
        """Create missing definitions and publish changed versions.

        Screenings are seeded before flows so flow versions can resolve
        screening names.  The caller commits.
        """
        report = SeedReport()

        for name, definition in self.screenings.items():
            info = await store.find_screening(db, name)
            if info is None:
                info = await store.create_screening(
                    db, name=name, screening_type=definition.screening_type
                )
            digest = content_hash(definition.version)
            if info.active_screening_version_id is not None:
                active = await store.get_active_screening_version(db, info.screening_id)
                if active.content_hash == digest:
                    report.unchanged.append(f"screening:{name}")
                    continue
            version = await store.create_screening_version(
                db, info.screening_id, definition.version, created_by_account_id=account_id
            )
            await store.publish_screening_version(
                db, info.screening_id, version.screening_version_id
            )
            report.published.append(f"screening:{name}")

        for name, definition in self.flows.items():
            info = await store.find_flow(db, name)
            if info is None:
                info = await store.create_flow(
                    db,
                    name=name,
                    flow_type=definition.flow_type,
                    institution_id=definition.institution_id,
                )
            digest = content_hash(definition.version)
            if info.active_flow_version_id is not None:
                active = await store.get_active_flow_version(db, info.flow_id)
                if active.content_hash == digest:
                    report.unchanged.append(f"flow:{name}")
                    continue
            version = await store.create_flow_version(
                db, info.flow_id, definition.version, created_by_account_id=account_id
            )
            await store.publish_flow_version(db, info.flow_id, version.flow_version_id)
            report.published.append(f"flow:{name}")

        logger.info("Seeded definitions: %s", report)
        return report
