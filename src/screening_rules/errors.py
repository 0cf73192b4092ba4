"""Exceptions raised by the screening SDK.

``NotFoundError``, ``ValidationFailed`` and ``ConflictError`` subclass
``ValueError`` so callers that only care about "bad request" can keep
catching ``ValueError``; the server maps each subclass to its own status
code.  ``EvaluationError`` is deliberately *not* a ``ValueError``: it
signals a failed strategy evaluation, which is retryable and never the
caller's fault.
"""

from __future__ import annotations

import enum

from pydantic import BaseModel


class FieldError(BaseModel):
    """One structured validation problem."""

    field: str
    message: str


class NotFoundError(ValueError):
    """A referenced definition, version, session or group does not exist."""


class ValidationFailed(ValueError):
    """Input was rejected; nothing was written."""

    def __init__(self, errors: list[FieldError] | str) -> None:
        if isinstance(errors, str):
            errors = [FieldError(field="__root__", message=errors)]
        self.errors = errors
        super().__init__("; ".join(f"{e.field}: {e.message}" for e in errors))


class ConflictError(ValueError):
    """Another writer holds the session or patient order; re-fetch and retry."""


class EvaluationErrorKind(str, enum.Enum):
    TIMEOUT = "TIMEOUT"
    RUNTIME_ERROR = "RUNTIME_ERROR"
    INVALID_RESULT_SHAPE = "INVALID_RESULT_SHAPE"


class EvaluationError(Exception):
    """A scoring, orchestration, results or destination strategy failed.

    The session is left in its last valid state, so every evaluation error
    is retryable.
    """

    retryable = True

    def __init__(self, kind: EvaluationErrorKind, message: str, *, strategy: str | None = None) -> None:
        self.kind = kind
        self.strategy = strategy
        super().__init__(message)

    def __repr__(self) -> str:
        return f"EvaluationError(kind={self.kind.value}, strategy={self.strategy!r}, message={str(self)!r})"
