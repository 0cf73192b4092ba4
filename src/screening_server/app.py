"""Application factory and CLI entry point.

``create_app()`` builds the FastAPI application with:
  - Lifespan handler that wires the SDK components once (and optionally
    seeds ``definitions/v1`` into the database)
  - CORS middleware
  - Global exception handlers (SDK errors → 404/409/422/503)
  - All API routes mounted under ``/api/v1``
  - A ``/health`` endpoint for readiness probes

The ``cli()`` function is the ``screening-server`` console-script entry point.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from screening_db.engine import dispose_engine, get_engine, get_session_factory
from screening_rules.definitions import DefinitionStore
from screening_rules.errors import (
    ConflictError,
    EvaluationError,
    NotFoundError,
    ValidationFailed,
)
from screening_rules.evaluator import RuleEvaluator
from screening_rules.interfaces import StaticInstitutionDirectory
from screening_rules.loader import DefinitionLoader
from screening_rules.orchestrator import ScreeningOrchestrator
from screening_rules.projector import TriageProjector

from screening_server.config import ServerSettings, load_settings
from screening_server.errors import (
    conflict_handler,
    evaluation_error_handler,
    generic_error_handler,
    not_found_handler,
    validation_failed_handler,
    value_error_handler,
)
from screening_server.routes import register_routes

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------
# Lifespan — runs once at startup/shutdown
# ------------------------------------------------------------------

def build_components(app: FastAPI, settings: ServerSettings) -> None:
    """Construct the SDK components and stash them on ``app.state``."""
    institutions = StaticInstitutionDirectory(settings.provider_triage_flows)
    definitions = DefinitionStore(institutions)
    projector = TriageProjector()
    orchestrator = ScreeningOrchestrator(
        store=definitions,
        evaluator=RuleEvaluator(),
        projector=projector,
        institutions=institutions,
    )
    app.state.definitions = definitions
    app.state.projector = projector
    app.state.orchestrator = orchestrator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Initialise shared resources at startup, tear down on shutdown.

    Startup:
      1. Build the definition store, projector and orchestrator
      2. If ``SERVER_SEED_ON_STARTUP`` is set, load and seed ``definitions/v1``

    Shutdown:
      1. Dispose the database engine's connection pool
    """
    settings: ServerSettings = app.state.settings
    build_components(app, settings)

    if settings.seed_on_startup:
        loader = DefinitionLoader(settings.definitions_dir)
        loader.load()
        async with get_session_factory()() as db:
            report = await loader.seed(db, app.state.definitions)
            await db.commit()
        logger.info("Startup seed finished: %s", report)

    yield

    # --- Shutdown ---
    await dispose_engine()
    logger.info("Database engine disposed")


# ------------------------------------------------------------------
# Factory
# ------------------------------------------------------------------

def create_app(settings: ServerSettings | None = None) -> FastAPI:
    """Build and return the configured FastAPI application."""
    if settings is None:
        settings = load_settings()

    # --- Configure logging ---
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    app = FastAPI(
        title="Screening API Server",
        description="REST API for versioned screening flows, sessions and triage",
        version="0.1.0",
        lifespan=lifespan,
    )

    # Store settings so the lifespan handler can read them
    app.state.settings = settings

    # --- CORS ---
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # --- Exception handlers (most specific class wins) ---
    app.add_exception_handler(NotFoundError, not_found_handler)
    app.add_exception_handler(ValidationFailed, validation_failed_handler)
    app.add_exception_handler(ConflictError, conflict_handler)
    app.add_exception_handler(EvaluationError, evaluation_error_handler)
    app.add_exception_handler(ValueError, value_error_handler)
    app.add_exception_handler(Exception, generic_error_handler)

    # --- Health check (outside /api/v1 prefix) ---
    @app.get("/health")
    async def health() -> dict:
        """Readiness probe — verifies DB connectivity."""
        try:
            engine = get_engine()
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return {"status": "ok"}
        except Exception as exc:
            logger.error("Health check failed: %s", exc)
            return {"status": "error", "detail": str(exc)}

    # --- Mount all API routes ---
    register_routes(app)

    return app


# ------------------------------------------------------------------
# Module-level ASGI export (for uvicorn screening_server.app:app)
# ------------------------------------------------------------------
app = create_app()


# ------------------------------------------------------------------
# CLI entry point
# ------------------------------------------------------------------

def cli() -> None:
    """Console-script entry point: ``screening-server``."""
    import uvicorn

    settings = load_settings()
    uvicorn.run(
        "screening_server.app:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        reload=False,
    )
