from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    PARSE_ERROR = "parse_error"
    AUTH_REQUIRED = "auth_required"
    NO_VALID_RECORDS = "no_valid_records"
    BATCH_PERSIST_ERROR = "batch_persist_error"
    INVALID_TRANSITION = "invalid_transition"
    SESSION_BUSY = "session_busy"


class PipelineError(RuntimeError):
    """Base class for failures raised by the CSV import pipeline."""

    kind: ErrorKind


class ParseError(PipelineError):
    """Raised when an upload cannot be turned into header-keyed rows."""

    kind = ErrorKind.PARSE_ERROR


class AuthRequired(PipelineError):
    """Raised when an import is attempted without an authenticated user."""

    kind = ErrorKind.AUTH_REQUIRED


class NoValidRecords(PipelineError):
    """Raised when every candidate row failed validation."""

    kind = ErrorKind.NO_VALID_RECORDS


class BatchPersistError(PipelineError):
    """Raised when the store rejects one batch of expenses."""

    kind = ErrorKind.BATCH_PERSIST_ERROR

    def __init__(self, batch_index: int, message: str = "") -> None:
        self.batch_index = batch_index
        super().__init__(message or f"Failed to persist batch {batch_index}.")


class InvalidTransition(PipelineError):
    """Raised when an import session action is not legal in its current step."""

    kind = ErrorKind.INVALID_TRANSITION


class SessionBusy(PipelineError):
    """Raised when a session is asked to do work while an import is running."""

    kind = ErrorKind.SESSION_BUSY
