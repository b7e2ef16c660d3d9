"""
Error taxonomy shared by the analytics services, the implementation queue
and the HTTP layer.
"""

from typing import Optional


class OptimizerError(Exception):
    """Base class for all domain errors."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationError(OptimizerError):
    """Malformed input or a disallowed state transition."""

    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(OptimizerError):
    status_code = 404
    code = "NOT_FOUND"


class UnauthorizedError(OptimizerError):
    """Raised by the identity layer; never derived inside the services."""

    status_code = 401
    code = "UNAUTHORIZED"


class InsufficientDataError(OptimizerError):
    status_code = 422
    code = "INSUFFICIENT_DATA"

    def __init__(self, message: str, *, required: int, actual: int):
        super().__init__(message, details={"required": required, "actual": actual})
        self.required = required
        self.actual = actual


class ConflictError(OptimizerError):
    """Two recommendations pull the same lever in opposite directions."""

    status_code = 409
    code = "CONFLICT"

    def __init__(self, message: str, *, conflicts: Optional[list[tuple[str, str]]] = None):
        conflicts = conflicts or []
        super().__init__(message, details={"conflicts": [list(pair) for pair in conflicts]})
        self.conflicts = conflicts


class ExternalApplyError(OptimizerError):
    """
    Failure reported by the advertising platform.
    Transient failures (timeouts, throttling, 5xx) may be retried;
    permanent ones abort the item immediately.
    """

    status_code = 502
    code = "EXTERNAL_APPLY_FAILED"

    def __init__(self, message: str, *, transient: bool = False):
        super().__init__(message, details={"transient": transient})
        self.transient = transient


class RollbackError(OptimizerError):
    """Rollback failed; the item needs manual resolution."""

    status_code = 502
    code = "ROLLBACK_FAILED"


class QueueStoppedError(OptimizerError):
    status_code = 503
    code = "QUEUE_STOPPED"
