"""
Workflow error taxonomy.

Services raise these; the app factory registers one JSON handler for the
base class so every endpoint answers with the same shape:

    {"error": "<message>", "reason": "<code>", "details": {...}}

Usage:
    from app.qdocs.errors import NotFoundError, ValidationError

    raise NotFoundError("Document", 42)
    raise ValidationError("Invalid payload", details={"title": "required"})
"""

from __future__ import annotations

from typing import Any


class WorkflowError(Exception):
    """Base class for errors surfaced synchronously at the operation boundary."""

    reason: str = "workflow_error"
    http_status: int = 400

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message, "reason": self.reason}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(WorkflowError):
    """Malformed input or a missing required field. Details are keyed by field name."""

    reason = "validation_error"
    http_status = 400


class NotFoundError(WorkflowError):
    """A referenced document, task, assignment, session or user does not exist."""

    reason = "not_found"
    http_status = 404

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class AuthorizationError(WorkflowError):
    """
    Caller lacks the role or ownership the operation requires.

    The message is deliberately generic: it never says which fields would have
    been accepted.
    """

    reason = "forbidden"
    http_status = 403

    def __init__(self, message: str = "Not allowed") -> None:
        super().__init__(message)


class TaskNotActionableError(AuthorizationError):
    """The task exists and belongs to the caller but is not at the document's current step."""

    reason = "task_not_actionable"

    def __init__(self, message: str = "Task is not actionable yet") -> None:
        super().__init__(message)


class IllegalTransitionError(WorkflowError):
    """Requested state change is not in the allowed-next set for the current state."""

    reason = "illegal_transition"
    http_status = 400

    def __init__(self, entity: str, current: str, requested: str, message: str | None = None) -> None:
        self.entity = entity
        self.current = current
        self.requested = requested
        msg = message or f"Cannot move {entity} from '{current}' to '{requested}'"
        super().__init__(msg, details={"current": current, "requested": requested})


class AuditLockError(WorkflowError):
    """An audit session is active and the operation is audit-sensitive."""

    reason = "audit_mode_lock"
    http_status = 403

    def __init__(self, operation: str, audit_session_id: int, audit_type: str | None = None) -> None:
        self.operation = operation
        self.audit_session_id = audit_session_id
        msg = f"Operation '{operation}' is locked while an audit session is active"
        if audit_type:
            msg += f" ({audit_type})"
        super().__init__(msg, details={"auditSessionId": audit_session_id})


class AuditSessionConflictError(WorkflowError):
    """An audit session is already active; only one may be open at a time."""

    reason = "audit_session_active"
    http_status = 403

    def __init__(self, audit_session_id: int | None) -> None:
        self.audit_session_id = audit_session_id
        details = {"auditSessionId": audit_session_id} if audit_session_id is not None else None
        super().__init__("An audit session is already active", details=details)
