"""Server configuration — reads settings from environment variables.

All settings have sensible defaults for local development.  In production
the values are typically overridden via env vars or a ``.env`` file.
"""

import os
from dataclasses import dataclass, field

# --- Pagination defaults ---
# Module-level constants read at import time so FastAPI Query() defaults
# can reference them (Query defaults must be static at decoration time).
DEFAULT_PAGE_LIMIT = int(os.getenv("DEFAULT_PAGE_LIMIT", "20"))
MAX_PAGE_LIMIT = int(os.getenv("MAX_PAGE_LIMIT", "100"))


@dataclass(frozen=True)
class ServerSettings:
    """Immutable server configuration read from environment at startup."""

    # Network
    host: str = "0.0.0.0"
    port: int = 8080

    # CORS — comma-separated origins, or "*" for wide-open dev mode
    cors_origins: list[str] = field(default_factory=lambda: ["*"])

    # Definitions directory (None → DefinitionLoader default, definitions/v1 from repo root)
    definitions_dir: str | None = None

    # Seed definitions/v1 into the database at startup
    seed_on_startup: bool = False

    # Logging
    log_level: str = "INFO"

    # Institution id → provider-triage flow id
    provider_triage_flows: dict[str, str] = field(default_factory=dict)


def _parse_mapping(raw: str) -> dict[str, str]:
    """Parse ``"a=1,b=2"`` into ``{"a": "1", "b": "2"}``; malformed pairs are ignored."""
    mapping: dict[str, str] = {}
    for pair in raw.split(","):
        key, sep, value = pair.partition("=")
        if sep and key.strip() and value.strip():
            mapping[key.strip()] = value.strip()
    return mapping


def load_settings() -> ServerSettings:
    """Build settings from ``SERVER_*`` environment variables."""
    raw_origins = os.getenv("SERVER_CORS_ORIGINS", "*")
    origins = [o.strip() for o in raw_origins.split(",") if o.strip()]

    return ServerSettings(
        host=os.getenv("SERVER_HOST", "0.0.0.0"),
        port=int(os.getenv("SERVER_PORT", "8080")),
        cors_origins=origins,
        definitions_dir=os.getenv("SERVER_DEFINITIONS_DIR") or None,
        seed_on_startup=os.getenv("SERVER_SEED_ON_STARTUP", "").lower() in ("1", "true", "yes"),
        log_level=os.getenv("SERVER_LOG_LEVEL", "INFO").upper(),
        provider_triage_flows=_parse_mapping(os.getenv("SERVER_PROVIDER_TRIAGE_FLOWS", "")),
    )
