"""
Error taxonomy for the approval workflow engine.

Every failure surfaced to callers is one of these. The API layer maps
them to HTTP status codes in ``clearance.main``.
"""

from typing import Any, Optional


class WorkflowError(Exception):
    """Base class for approval workflow errors."""

    pass


class ReportedError(WorkflowError):
    """A blocking failure that carries the validation report behind it."""

    error_code = "workflow_error"

    def __init__(self, message: str, report: Optional[Any] = None):
        super().__init__(message)
        self.report = report

    @property
    def checks(self) -> list:
        if self.report is None:
            return []
        return [c for c in self.report.checks if c.blocking]

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.error_code,
            "message": str(self),
            "report": self.report.to_dict() if self.report is not None else None,
        }


class ValidationError(ReportedError):
    """Raised when a decision or request fails validation."""

    error_code = "validation_failed"


class AuthorityError(ReportedError):
    """Raised when the actor lacks authority for the stage, amount or action."""

    error_code = "insufficient_authority"


class ConflictError(WorkflowError):
    """Raised when a caller acted on a stale view of a workflow."""

    def __init__(
        self,
        message: str,
        expected_version: Optional[int] = None,
        actual_version: Optional[int] = None,
    ):
        super().__init__(message)
        self.expected_version = expected_version
        self.actual_version = actual_version


class ConfigurationError(WorkflowError):
    """Raised when the approval policy is missing, malformed or incomplete."""

    pass


class ConnectivityError(WorkflowError):
    """Raised when the realtime channel cannot be (re)established."""

    pass


class WorkflowNotFoundError(WorkflowError):
    """Raised when a workflow (or one of its children) does not exist."""

    pass
