"""
Exception hierarchy for the analysis worker.

Every error the worker reports to its host derives from AnalysisWorkerError
and carries a ``kind`` tag. The task protocol copies that tag into the
structured error response, so hosts can branch on it without parsing
messages.
"""

from typing import Any, Optional


class AnalysisWorkerError(Exception):
    """
    Base class for all errors reported by the analysis worker.

    Attributes:
        kind: Stable error tag placed in error responses
        message: Human-readable error message
        details: Optional structured context for debugging
    """

    kind = "AnalysisWorkerError"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class InvalidInputError(AnalysisWorkerError, ValueError):
    """Empty, malformed, or dimensionally inconsistent payload."""

    kind = "InvalidInput"


class UnsupportedOperationError(AnalysisWorkerError):
    """Unrecognized task kind."""

    kind = "UnsupportedOperation"


class ComputationFailureError(AnalysisWorkerError):
    """Unexpected internal fault during a computation."""

    kind = "ComputationFailure"


class TaskCancelledError(AnalysisWorkerError):
    """Task aborted by an explicit host request."""

    kind = "Cancelled"


class TaskTimeoutError(TaskCancelledError):
    """Task ran past its time limit; reported with the Cancelled kind."""
