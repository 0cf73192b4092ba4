"""screening_db — PostgreSQL persistence layer for screening flows.

This package provides the ORM models, async engine factory, and
repositories for versioned definitions, screening sessions and patient-order
triage.  It is consumed by the ``screening_rules`` SDK and the FastAPI
server.
"""

from screening_db.engine import dispose_engine, get_engine, get_session_factory
from screening_db.models.enums import SessionStatus
from screening_db.models.session import ScreeningSession
from screening_db.repository import (
    DefinitionRepository,
    RowLockedError,
    SessionRepository,
    TriageRepository,
)

__all__ = [
    "ScreeningSession",
    "SessionStatus",
    "get_engine",
    "get_session_factory",
    "dispose_engine",
    "DefinitionRepository",
    "SessionRepository",
    "TriageRepository",
    "RowLockedError",
]
