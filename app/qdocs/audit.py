import json
from typing import Any

from flask import g, has_request_context, request
from sqlalchemy import select
from sqlalchemy.orm import Session

from app.qdocs.models import AuditEvent, User
from app.qdocs.modules.audit_mode.models import AuditModeState

_UNSET: Any = object()


def current_audit_session_id(s: Session) -> int | None:
    """Id of the open audit session, or None. Plain read; the guard does the locked read."""
    return s.execute(
        select(AuditModeState.active_session_id).where(AuditModeState.id == AuditModeState.SINGLETON_ID)
    ).scalar_one_or_none()


def record_event(
    s: Session,
    *,
    actor: User | None,
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
    audit_session_id: int | None = _UNSET,
) -> AuditEvent:
    """
    Append-only audit event helper.

    Events written while an audit session is open are tagged with its id.
    """
    in_request = has_request_context()
    rid = request_id or (getattr(g, "request_id", None) if in_request else None)
    if audit_session_id is _UNSET:
        audit_session_id = current_audit_session_id(s)
    ev = AuditEvent(
        request_id=rid,
        actor_user_id=actor.id if actor else None,
        actor_user_email=actor.email if actor else None,
        audit_session_id=audit_session_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        client_ip=request.remote_addr if in_request else None,
    )
    s.add(ev)
    return ev
