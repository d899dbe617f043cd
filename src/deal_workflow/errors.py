"""
Custom exceptions and error handling for the deal workflow core.

Provides:
- Typed exception hierarchy for the failure modes of each component
- Error context preservation for debugging
- Wrapping of database driver errors into the data-source hierarchy

Resolver and calculation-engine problems are reported per item inside their
result structures; the classes here are raised only by explicit actions
(completing a section, marking a deal ready) and by the data sources.
"""

from typing import Any


class DealWorkflowError(Exception):
    """Base exception for all deal workflow errors."""

    def __init__(self, message: str, context: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self) -> str:
        if self.context:
            return f"{self.message} | context={self.context}"
        return self.message


# =============================================================================
# Lookup / Input Errors
# =============================================================================


class NotFoundError(DealWorkflowError):
    """A deal, packet or participant does not exist."""

    pass


class ValidationError(DealWorkflowError):
    """Malformed input: bad formula, unparsable date or number."""

    pass


class UnknownFormulaFormatError(ValidationError):
    """Formula does not match any supported date-arithmetic shape."""

    pass


class NotReadyError(DealWorkflowError):
    """A dependency has not been satisfied yet. A wait state, not a failure."""

    pass


# =============================================================================
# State Transition Errors
# =============================================================================


class StateTransitionError(DealWorkflowError):
    """Base class for illegal state transition attempts."""

    pass


class AlreadyCompletedError(StateTransitionError):
    """Participant section was already completed."""

    pass


class NotAllowedError(StateTransitionError):
    """Transition or edit is not permitted in the current state."""

    pass


# =============================================================================
# Data Source Errors
# =============================================================================


class DataSourceError(DealWorkflowError):
    """Base class for persistence-layer errors."""

    pass


class TransientIOError(DataSourceError):
    """Temporary persistence failure (connection drop, timeout)."""

    pass


class DataSourceQueryError(DataSourceError):
    """Non-transient persistence failure (bad SQL, constraint violation)."""

    pass


# =============================================================================
# Error Handling Utilities
# =============================================================================


_TRANSIENT_MARKERS = ('connection', 'connect', 'timeout', 'timed out', 'too many clients')


def is_transient_database_error(exc: BaseException) -> bool:
    """True when a driver exception looks like a temporary failure."""
    error_str = str(exc).lower()
    return any(marker in error_str for marker in _TRANSIENT_MARKERS)


def wrap_database_error(exc: Exception, context: dict[str, Any] | None = None) -> DataSourceError:
    """
    Wrap a database driver exception in our typed error hierarchy.

    Args:
        exc: The original exception
        context: Additional context for debugging

    Returns:
        Typed DataSourceError subclass
    """
    ctx = context or {}
    ctx['original_error'] = str(exc)
    ctx['error_type'] = type(exc).__name__

    if is_transient_database_error(exc):
        return TransientIOError(
            f"Database temporarily unavailable: {exc}",
            context=ctx,
        )
    return DataSourceQueryError(
        f"Database query error: {exc}",
        context=ctx,
    )
