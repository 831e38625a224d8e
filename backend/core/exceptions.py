"""Custom exceptions for the project automation engine."""

from typing import Any, Optional


class AutomationException(Exception):
    """Base exception for the automation engine."""

    def __init__(self, message: str, status_code: int = 500):
        """Initialize exception with message and status code.

        Args:
            message: Exception message
            status_code: HTTP status code
        """
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class NotFoundError(AutomationException):
    """Resource not found exception."""

    def __init__(self, message: str = "Resource not found"):
        """Initialize NotFoundError with 404 status code."""
        super().__init__(message, 404)


class ForbiddenError(AutomationException):
    """Forbidden access exception."""

    def __init__(self, message: str = "Forbidden"):
        """Initialize ForbiddenError with 403 status code."""
        super().__init__(message, 403)


class ValidationError(AutomationException):
    """Malformed workflow definition, condition or request payload."""

    def __init__(self, message: str = "Validation failed", errors: Optional[list[str]] = None):
        """Initialize ValidationError with 422 status code.

        Args:
            message: Summary message
            errors: Individual validation failures
        """
        super().__init__(message, 422)
        self.errors = errors or []


class ConflictError(AutomationException):
    """Resource conflict exception."""

    def __init__(self, message: str = "Resource conflict"):
        """Initialize ConflictError with 409 status code."""
        super().__init__(message, 409)


class InvalidStateError(ConflictError):
    """Operation is not allowed in the resource's current status."""


class ConcurrencyConflict(ConflictError):
    """A worker lost the claim race on an execution."""


# ─── Engine runtime errors ──────────────────────────────────────────────────
# These end up on the execution record rather than on an HTTP response.


class EngineError(AutomationException):
    """Failure raised while interpreting a workflow."""

    retryable: bool = False

    def __init__(self, message: str, node_id: Optional[str] = None):
        super().__init__(message, 500)
        self.node_id = node_id

    @property
    def error_type(self) -> str:
        return type(self).__name__


class RoutingError(EngineError):
    """Decision node had no true branch and no default connection."""


class EvaluationError(EngineError):
    """Condition could not be evaluated. Never escapes the evaluator."""


class ActionError(EngineError):
    """Action handler failure."""

    def __init__(
        self,
        message: str,
        action_type: Optional[str] = None,
        retryable: bool = True,
        details: Optional[dict[str, Any]] = None,
        node_id: Optional[str] = None,
    ):
        super().__init__(message, node_id=node_id)
        self.action_type = action_type
        self.retryable = retryable
        self.details = details or {}


class ActionTimeoutError(ActionError):
    """Action handler exceeded its timeout."""

    def __init__(self, action_type: str, timeout: float, node_id: Optional[str] = None):
        super().__init__(
            f"Action '{action_type}' timed out after {timeout}s",
            action_type=action_type,
            retryable=True,
            node_id=node_id,
        )
        self.timeout = timeout


class ApprovalTimeoutError(EngineError):
    """Approval deadline passed without a response and no reject branch exists."""


class ApprovalRejectedError(EngineError):
    """Approval was rejected and the node has no rejected branch."""


class StepLimitExceeded(EngineError):
    """Execution visited more nodes than the step budget allows."""

    def __init__(self, limit: int, node_id: Optional[str] = None):
        super().__init__(f"Step limit exceeded ({limit} steps)", node_id=node_id)
        self.limit = limit
