"""Definition seeding CLI — ``screening-seed``.

Loads the screening and flow YAML files under ``definitions/v1`` and pushes
them into the database.  A definition gets a new version (published
immediately) only when its content differs from the active version, so the
command is safe to re-run on every deploy.

Examples::

    # Seed definitions/v1 from the repo root
    uv run screening-seed

    # Seed from another directory, recording who published
    uv run screening-seed --definitions-dir /srv/definitions/v1 --account-id ops

    # Parse and cross-check the files without touching the database
    uv run screening-seed --check
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys

logger = logging.getLogger(__name__)


async def run_seed(
    *,
    definitions_dir: str | None = None,
    account_id: str | None = None,
) -> tuple[int, int]:
    """Seed the definitions and return ``(published, unchanged)`` counts.

    Creates its own database session and commits once everything is
    written, so a failing file leaves the database untouched.
    """
    # Lazy imports to avoid loading DB machinery at module import time
    from screening_db.engine import dispose_engine, get_session_factory
    from screening_rules.definitions import DefinitionStore
    from screening_rules.loader import DefinitionLoader

    loader = DefinitionLoader(definitions_dir)
    loader.load()
    factory = get_session_factory()

    try:
        async with factory() as db:
            report = await loader.seed(db, DefinitionStore(), account_id=account_id)
            await db.commit()
        for name in report.published:
            logger.info("Published %s", name)
        return len(report.published), len(report.unchanged)
    finally:
        await dispose_engine()


def cli() -> None:
    """Console-script entry point: ``screening-seed``."""
    parser = argparse.ArgumentParser(
        prog="screening-seed",
        description="Seed screening and flow definitions into the database.",
    )
    parser.add_argument(
        "--definitions-dir",
        default=os.getenv("SERVER_DEFINITIONS_DIR") or None,
        help="Directory holding screenings/ and flows/ (default: definitions/v1 in the repo)",
    )
    parser.add_argument(
        "--account-id",
        default=None,
        help="Account recorded as the creator of new versions",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        default=False,
        help="Only parse and cross-check the files; do not connect to the database",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    if args.check:
        from screening_rules.loader import DefinitionLoader

        loader = DefinitionLoader(args.definitions_dir)
        try:
            loader.load()
        except (FileNotFoundError, ValueError) as exc:
            print(f"Invalid definitions: {exc}", file=sys.stderr)
            sys.exit(1)
        print(f"OK: {len(loader.screenings)} screenings, {len(loader.flows)} flows")
        sys.exit(0)

    published, unchanged = asyncio.run(
        run_seed(definitions_dir=args.definitions_dir, account_id=args.account_id)
    )

    print(f"Published: {published}, unchanged: {unchanged}")
    sys.exit(0)
