"""Global exception handlers — map SDK exceptions to HTTP status codes.

The SDK raises typed ``ValueError`` subclasses for the conditions callers
can act on, plus ``EvaluationError`` when a strategy fails.  Rather than
catching these in every route, we install global handlers so route handlers
stay focused on the happy path:

    NotFoundError     → 404
    ValidationFailed  → 422 with the structured field errors
    ConflictError     → 409 (re-fetch and retry)
    EvaluationError   → 503 with ``kind`` and ``retryable``
    other ValueError  → keyword fallback (404 / 409 / 400)
    anything else     → 500
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from screening_rules.errors import (
    ConflictError,
    EvaluationError,
    NotFoundError,
    ValidationFailed,
)

logger = logging.getLogger(__name__)

# --- Keyword patterns in plain ValueError messages and their HTTP status codes ---
# Checked in order; first match wins.
_VALUE_ERROR_PATTERNS: list[tuple[str, int]] = [
    ("already exists", 409),
    ("not found", 404),
]


# --- Client-safe messages keyed by HTTP status code ---
# Internal details (account ids, session ids, strategy names) stay in the
# server log; the client receives only a generic description.
_SAFE_MESSAGES: dict[int, str] = {
    404: "Resource not found",
    409: "Resource was modified concurrently or already exists",
    400: "Invalid request",
    503: "Screening rules could not be evaluated; please retry",
}


async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    logger.info("NotFound at %s: %s", request.url, exc)
    return JSONResponse(status_code=404, content={"detail": _SAFE_MESSAGES[404]})


async def validation_failed_handler(request: Request, exc: ValidationFailed) -> JSONResponse:
    """Return the structured field errors; they are written for end users."""
    logger.warning("ValidationFailed at %s: %s", request.url, exc)
    return JSONResponse(
        status_code=422,
        content={"detail": [e.model_dump() for e in exc.errors]},
    )


async def conflict_handler(request: Request, exc: ConflictError) -> JSONResponse:
    logger.warning("Conflict at %s: %s", request.url, exc)
    return JSONResponse(status_code=409, content={"detail": _SAFE_MESSAGES[409]})


async def evaluation_error_handler(request: Request, exc: EvaluationError) -> JSONResponse:
    """Strategy failures are retryable; the session was left unchanged."""
    logger.warning("%r at %s", exc, request.url)
    return JSONResponse(
        status_code=503,
        content={
            "detail": _SAFE_MESSAGES[503],
            "kind": exc.kind.value,
            "retryable": exc.retryable,
        },
    )


async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    """Map any other ``ValueError`` to a contextual HTTP error response.

    Inspects the exception message to decide between 404 (not found),
    409 (duplicate), or 400.  The raw message is logged server-side but
    **never** sent to the client.
    """
    msg = str(exc)
    status = 400  # default
    for pattern, code in _VALUE_ERROR_PATTERNS:
        if pattern in msg.lower():
            status = code
            break

    logger.warning("ValueError [%d] at %s: %s", status, request.url, msg)
    safe_detail = _SAFE_MESSAGES.get(status, "Invalid request")
    return JSONResponse(status_code=status, content={"detail": safe_detail})


async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unhandled exceptions — log full traceback, return 500."""
    logger.exception("Unhandled exception at %s", request.url)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )
