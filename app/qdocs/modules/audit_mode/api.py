from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.qdocs.db import db_session, parse_id, unit_of_work
from app.qdocs.errors import ValidationError
from app.qdocs.rbac import AUDIT_LOG_VIEW, current_user, require_login, require_permission

from .models import AuditType
from .service import get_audit_guard

bp = Blueprint("audit_mode", __name__)


def _opt_str(data: dict, key: str, errors: dict[str, str]) -> str | None:
    v = data.get(key)
    if v is None:
        return None
    if not isinstance(v, str):
        errors[key] = "expected string"
        return None
    return v.strip() or None


@bp.get("/audit-session")
@require_login
def get_audit_session():
    session = get_audit_guard().active_session(db_session())
    return jsonify({"session": session.to_dict() if session else None, "auditMode": session is not None})


@bp.post("/audit-session")
@require_login
def start_audit_session():
    # The guard enforces audit_mode.manage itself.
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object", details={"body": "expected object"})
    errors: dict[str, str] = {}
    try:
        audit_type = AuditType(data.get("auditType"))
    except ValueError:
        errors["auditType"] = f"must be one of {[t.value for t in AuditType]}"
        audit_type = None
    auditor_org = _opt_str(data, "auditorOrg", errors)
    auditor_name = _opt_str(data, "auditorName", errors)
    comment = _opt_str(data, "comment", errors)
    if errors:
        raise ValidationError("Invalid audit session payload", details=errors)

    s = db_session()
    with unit_of_work(s):
        session = get_audit_guard().start(
            s,
            actor=current_user(),
            audit_type=audit_type,  # type: ignore[arg-type]
            auditor_org=auditor_org,
            auditor_name=auditor_name,
            comment=comment,
        )
    return jsonify({"session": session.to_dict()})


@bp.patch("/audit-session")
@require_login
def close_audit_session():
    data = request.get_json(silent=True) or {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object", details={"body": "expected object"})
    errors: dict[str, str] = {}
    comment = _opt_str(data, "comment", errors)
    if errors:
        raise ValidationError("Invalid audit session payload", details=errors)

    s = db_session()
    with unit_of_work(s):
        session = get_audit_guard().close(s, actor=current_user(), comment=comment)
    return jsonify({"session": session.to_dict()})


@bp.get("/audit-log")
@require_permission(AUDIT_LOG_VIEW)
def audit_log():
    errors: dict[str, str] = {}
    audit_session_id = None
    raw_session = (request.args.get("auditSessionId") or "").strip()
    if raw_session:
        audit_session_id = parse_id(raw_session)
        if audit_session_id is None:
            errors["auditSessionId"] = "expected integer"

    limit = 200
    raw_limit = (request.args.get("limit") or "").strip()
    if raw_limit:
        # service clamps to 1..1000
        limit = parse_id(raw_limit)
        if limit is None:
            errors["limit"] = "expected positive integer"
    if errors:
        raise ValidationError("Invalid filter", details=errors)

    events = get_audit_guard().list_events(
        db_session(),
        actor=current_user(),
        audit_session_id=audit_session_id,
        active_only=(request.args.get("session") or "").strip().lower() == "active",
        action=(request.args.get("action") or "").strip() or None,
        entity_type=(request.args.get("entityType") or "").strip() or None,
        q=(request.args.get("q") or "").strip() or None,
        limit=limit,
    )
    return jsonify({"events": [e.to_dict() for e in events]})
