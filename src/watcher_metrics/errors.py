"""
Error types for the watcher metrics pipeline.

Domain errors are expressed with WatcherError (or a subclass) carrying a
stable error code and structured details, so callers such as a dashboard API
can map them to responses without parsing messages.

Missing files and malformed log lines are not errors in this package; they
are treated as "no data yet" by the readers.
"""

from __future__ import annotations

from typing import Any


class WatcherError(Exception):
    """
    Base exception class for metrics pipeline errors.

    Attributes:
        error_code: Internal error code string (e.g., "invalid_argument",
            "unavailable", "failed_precondition", "internal").
        message: Human-readable error message.
        details: Optional structured details (e.g., paths, tier names).

    Example:
        >>> raise WatcherError(
        ...     error_code="invalid_argument",
        ...     message="Unknown rollup tier",
        ...     details={"tier": "10min"},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize a WatcherError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(WatcherError):
    """
    Error raised when an operation receives invalid input arguments.

    Used for unknown tier names, negative look-back windows and similar
    parameter validation failures.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class UnavailableError(WatcherError):
    """
    Error raised when a required resource is held elsewhere.

    Raised when another live collector daemon owns the single-writer lock.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UnavailableError."""
        super().__init__(error_code="unavailable", message=message, details=details)


class FailedPreconditionError(WatcherError):
    """
    Error raised when local storage cannot be read or written.

    Wraps OSErrors from rotation, rollup appends and checkpoint writes.
    The previous on-disk state is left untouched when this is raised.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FailedPreconditionError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class InternalError(WatcherError):
    """
    Error raised for unexpected internal errors.

    Raised when a caller-supplied aggregate function fails, so the
    failure is attributed to the tier being processed.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InternalError."""
        super().__init__(error_code="internal", message=message, details=details)
