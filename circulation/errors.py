"""Exceptions raised by the circulation engine.

Validation and conflict errors are user-correctable and reported verbatim.
``NotFound`` doubles as a ``LookupError`` and validation errors as a
``ValueError`` so callers that only know the builtin types still work.
``ConsistencyError`` signals a bookkeeping mismatch between the ledger and
the inventory; it is logged by the raiser and nothing is mutated.
"""

from __future__ import annotations


class CirculationError(Exception):
    """Base class for every error raised by the engine."""


class ValidationError(CirculationError, ValueError):
    """Rejected input, detected before any mutation."""


class InvalidDueDate(ValidationError):
    pass


class InvalidState(ValidationError):
    """An entity is not in the state an operation requires."""


class ConflictError(CirculationError):
    """Expected, user-facing conflict; retrying the same request will not help."""


class PatronHasActiveLoan(ConflictError):
    pass


class CopyUnavailable(ConflictError):
    pass


class CopyAlreadyLoaned(ConflictError):
    pass


class DuplicateActiveLoan(ConflictError):
    pass


class NotFound(CirculationError, LookupError):
    pass


class ConsistencyError(CirculationError):
    pass


class LockTimeout(CirculationError):
    """An entity lock could not be acquired in time. Nothing was changed."""
