# backend/repairflow/domain/errors.py
from __future__ import annotations

from typing import Any, Optional


class WorkflowError(Exception):
    """
    Base for every error a command can surface to the initiating actor.

    ``code`` is the stable machine-readable tag returned in API bodies,
    ``http_status`` is what the FastAPI handler maps it to.
    """

    code = "workflow_error"
    http_status = 400
    retryable = False

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"error": self.code, "detail": self.message, "retryable": self.retryable}
        if self.context:
            out["context"] = {k: (str(v) if v is not None else None) for k, v in self.context.items()}
        return out


class ValidationError(WorkflowError):
    code = "validation_error"
    http_status = 422


class NotFoundError(WorkflowError):
    code = "not_found"
    http_status = 404


class PermissionDeniedError(WorkflowError):
    code = "permission_denied"
    http_status = 403


class IllegalTransitionError(WorkflowError):
    code = "illegal_transition"
    http_status = 409

    def __init__(self, entity: str, current: Any, attempted: Any, reason: Optional[str] = None) -> None:
        msg = f"{entity}: illegal transition {current} -> {attempted}"
        if reason:
            msg = f"{msg} ({reason})"
        super().__init__(msg, current=current, attempted=attempted)
        self.entity = entity
        self.current = current
        self.attempted = attempted


class ConcurrencyConflictError(WorkflowError):
    code = "concurrency_conflict"
    http_status = 409
    retryable = True


class PolicyViolationError(WorkflowError):
    code = "policy_violation"
    http_status = 422


class ConfigurationError(WorkflowError):
    """Operator-facing: a required escalation rule (or similar) is missing."""

    code = "configuration_error"
    http_status = 500
