"""
errors.py
----------
Exception hierarchy for the reconciliation engine.

Callers can catch ReconciliationError for anything the engine raises on
purpose. The subclasses map onto the outcomes an API layer would report:

    ValidationError     -> 400 (bad input value)
    NotFoundError       -> 404 (unknown id / index, or not owned by the user)
    ConflictError       -> 409 (already resolved, duplicate upload, ...)
    InvalidStateError   -> 409/400 (transition not allowed from current state)
    RulesNotFoundError  -> 500 (no rule set could be resolved at all)
    StatementParseError -> 422 (the uploaded statement could not be read)
"""


class ReconciliationError(Exception):
    """Base class for all engine errors."""


class ValidationError(ReconciliationError, ValueError):
    """A value failed validation at construction or write time."""


class NotFoundError(ReconciliationError, LookupError):
    """The requested session, transaction or suggestion does not exist."""


class ConflictError(ReconciliationError):
    """The operation conflicts with work that already happened."""


class DuplicateImportError(ConflictError):
    """The same statement file was already imported by this user."""

    def __init__(self, message: str, existing_session_id: str):
        super().__init__(message)
        self.existing_session_id = existing_session_id


class InvalidStateError(ReconciliationError):
    """A state-machine transition was requested from the wrong state."""

    def __init__(self, message: str, current: str | None = None, requested: str | None = None):
        super().__init__(message)
        self.current = current
        self.requested = requested


class RulesNotFoundError(ReconciliationError):
    """Neither a user override nor the default detection rule set exists."""


class StatementParseError(ReconciliationError):
    """The statement could not be parsed into lines."""
