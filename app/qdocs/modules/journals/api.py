from __future__ import annotations

from flask import Blueprint, jsonify, request

from app.qdocs.db import db_session, unit_of_work
from app.qdocs.errors import ValidationError
from app.qdocs.modules.audit_mode.service import guarded_write
from app.qdocs.rbac import JOURNALS_EDIT, JOURNALS_VIEW, current_user, require_permission

from . import service

bp = Blueprint("journals", __name__)


@bp.get("/journals/<journal>/entries")
@require_permission(JOURNALS_VIEW)
def list_entries(journal: str):
    raw_date = request.args.get("date")
    entry_date = service.parse_entry_date(raw_date) if raw_date else None
    rows = service.list_entries(db_session(), journal, entry_date=entry_date)
    return jsonify({"entries": [r.to_dict() for r in rows]})


@bp.put("/journals/<journal>/entries")
@require_permission(JOURNALS_EDIT)
@guarded_write("journal.upsert")
def upsert_entries(journal: str):
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object", details={"body": "expected object"})
    entries = data.get("entries")
    if not isinstance(entries, list):
        raise ValidationError("Invalid journal payload", details={"entries": "expected list"})

    s = db_session()
    with unit_of_work(s):
        rows = service.upsert_entries(
            s,
            actor=current_user(),
            journal=journal,
            entry_date=service.parse_entry_date(data.get("date")),
            entries=entries,
        )
    return jsonify({"entries": [r.to_dict() for r in rows]})


@bp.delete("/journals/<journal>/entries/<int:entry_id>")
@require_permission(JOURNALS_EDIT)
@guarded_write("journal.delete")
def delete_entry(journal: str, entry_id: int):
    s = db_session()
    with unit_of_work(s):
        service.delete_entry(s, actor=current_user(), journal=journal, entry_id=entry_id)
    return jsonify({"ok": True})
