"""Database configuration — reads connection parameters from environment.

Connection URL sources, in order of precedence:
1. ``DATABASE_URL`` (either the plain ``postgresql://`` or the
   ``postgresql+asyncpg://`` form is accepted).
2. ``PG_HOST``, ``PG_PORT``, ``PG_USER``, ``PG_PASSWORD``, ``PG_DATABASE``.

Alembic needs a synchronous URL; the runtime engine needs the asyncpg one.
Both are derived from the same source so they never point at different
databases.

``PG_LOCK_TIMEOUT_MS`` bounds how long a statement waits on a row lock held
by another transaction.  Session and triage writers use ``NOWAIT`` locks, so
this only matters for plain reads that touch locked rows.
"""

import os

_SYNC_PREFIX = "postgresql://"
_ASYNC_PREFIX = "postgresql+asyncpg://"


def _build_url_from_parts() -> str:
    host = os.getenv("PG_HOST", "localhost")
    port = os.getenv("PG_PORT", "5432")
    user = os.getenv("PG_USER", "screening")
    password = os.getenv("PG_PASSWORD", "screening")
    database = os.getenv("PG_DATABASE", "screening")
    return f"{_SYNC_PREFIX}{user}:{password}@{host}:{port}/{database}"


def get_sync_url() -> str:
    """Return a psycopg2 URL for Alembic."""
    url = os.getenv("DATABASE_URL") or _build_url_from_parts()
    return url.replace(_ASYNC_PREFIX, _SYNC_PREFIX, 1)


def get_async_url() -> str:
    """Return an asyncpg URL for the runtime engine."""
    url = os.getenv("DATABASE_URL") or _build_url_from_parts()
    if url.startswith(_SYNC_PREFIX):
        return url.replace(_SYNC_PREFIX, _ASYNC_PREFIX, 1)
    return url


def get_lock_timeout_ms() -> int:
    """Server-side ``lock_timeout`` applied to every pooled connection."""
    return int(os.getenv("PG_LOCK_TIMEOUT_MS", "2000"))
