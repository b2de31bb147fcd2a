from __future__ import annotations

import json

from flask import Blueprint, current_app, g, jsonify, request, send_file

from app.qdocs.db import db_session, parse_id, unit_of_work
from app.qdocs.errors import ValidationError
from app.qdocs.modules.audit_mode.service import guarded_write
from app.qdocs.notifications import Notifier
from app.qdocs.rbac import DOCS_CREATE, DOCS_IMPORT, DOCS_VIEW, current_user, require_permission
from app.qdocs.storage import storage_from_config

from . import service
from .schemas import (
    parse_advance_assignment,
    parse_create_document,
    parse_set_assignments,
    parse_stages_only,
    parse_task_decision,
)

bp = Blueprint("documents", __name__)

# Per-file limit for imports; the request as a whole is capped by MAX_CONTENT_LENGTH.
MAX_IMPORT_FILE_BYTES = 10 * 1024 * 1024


def _notifier() -> Notifier:
    return current_app.extensions["notifier"]


def _json_body():
    return request.get_json(silent=True)


def _create_payload():
    if request.is_json:
        return _json_body()
    # Form posts carry the list fields as JSON-encoded strings.
    payload: dict = {k: v for k, v in request.form.items() if k not in ("stages", "watchers", "executionAssignees")}
    for key in ("stages", "watchers", "executionAssignees"):
        raw = (request.form.get(key) or "").strip()
        if not raw:
            continue
        try:
            payload[key] = json.loads(raw)
        except json.JSONDecodeError:
            raise ValidationError("Invalid document payload", details={key: "expected JSON list"}) from None
    return payload


@bp.get("/documents")
@require_permission(DOCS_VIEW)
def list_documents():
    s = db_session()
    docs = service.list_documents_for(s, current_user())
    return jsonify({"documents": [d.to_dict() for d in docs]})


@bp.post("/documents")
@require_permission(DOCS_CREATE)
def create_document():
    s = db_session()
    u = current_user()
    data = parse_create_document(_create_payload())
    with unit_of_work(s):
        doc = service.create_document(s, author=u, data=data)
    service.notify_route_started(_notifier(), doc)
    return jsonify({"document": doc.to_dict()})


@bp.get("/documents/<int:doc_id>")
@require_permission(DOCS_VIEW)
def get_document(doc_id: int):
    s = db_session()
    doc = service.get_document_for(s, current_user(), doc_id)
    return jsonify({"document": doc.to_dict()})


@bp.post("/documents/<int:doc_id>/acknowledge")
@require_permission(DOCS_VIEW)
def acknowledge_document(doc_id: int):
    s = db_session()
    with unit_of_work(s):
        doc = service.acknowledge_document(s, actor=current_user(), document_id=doc_id)
    return jsonify({"ok": True, "documentId": doc.id})


@bp.get("/documents/<int:doc_id>/files/<int:file_id>")
@require_permission(DOCS_VIEW)
def download_document_file(doc_id: int, file_id: int):
    s = db_session()
    storage = storage_from_config(current_app.config)
    with unit_of_work(s):
        f, fobj = service.open_document_file(
            s, actor=current_user(), document_id=doc_id, file_id=file_id, storage=storage
        )
    return send_file(fobj, mimetype=f.content_type, as_attachment=True, download_name=f.filename, max_age=0)


def _import_files() -> list[service.UploadedFile]:
    out: list[service.UploadedFile] = []
    for f in request.files.getlist("files"):
        if not f or not f.filename:
            continue
        data = f.read()
        if len(data) > MAX_IMPORT_FILE_BYTES:
            raise ValidationError(
                "File too large",
                details={"files": f"{f.filename} exceeds {MAX_IMPORT_FILE_BYTES // (1024 * 1024)}MB"},
            )
        out.append(
            service.UploadedFile(
                filename=f.filename,
                content_type=f.mimetype or "application/octet-stream",
                data=data,
            )
        )
    return out


@bp.post("/documents/import")
@require_permission(DOCS_IMPORT)
@guarded_write("document.import")
def import_documents():
    s = db_session()
    u = current_user()

    mode = (request.form.get("mode") or "").strip().lower()
    title_prefix = (request.form.get("titlePrefix") or "").strip()

    responsible_id = None
    raw_responsible = (request.form.get("responsibleId") or "").strip()
    if raw_responsible:
        responsible_id = parse_id(raw_responsible)
        if responsible_id is None:
            raise ValidationError("Invalid import payload", details={"responsibleId": "expected integer"})

    stages = []
    raw_stages = (request.form.get("stages") or "").strip()
    if mode == "workflow" and raw_stages:
        try:
            decoded = json.loads(raw_stages)
        except json.JSONDecodeError:
            raise ValidationError("Invalid import payload", details={"stages": "expected JSON list"}) from None
        stages = parse_stages_only(decoded)

    files = _import_files()
    storage = storage_from_config(current_app.config)
    with unit_of_work(s):
        docs = service.import_documents(
            s,
            actor=u,
            mode=mode,
            files=files,
            storage=storage,
            title_prefix=title_prefix,
            responsible_id=responsible_id,
            stages=stages,
        )
    if mode == "workflow":
        for doc in docs:
            service.notify_route_started(_notifier(), doc)
    current_app.logger.info(
        "Import complete mode=%s count=%d request_id=%s", mode, len(docs), getattr(g, "request_id", None)
    )
    return jsonify({"documents": [d.to_dict() for d in docs]})


@bp.patch("/tasks/<int:task_id>")
@require_permission(DOCS_VIEW)
def decide_task(task_id: int):
    s = db_session()
    data = parse_task_decision(_json_body())
    with unit_of_work(s):
        result = service.decide_task(s, actor=current_user(), task_id=task_id, data=data)
    service.notify_decision(_notifier(), result)
    return jsonify({"task": result.task.to_dict(), "document": result.document.to_dict()})


@bp.put("/documents/<int:doc_id>/execution")
@require_permission(DOCS_VIEW)
def set_execution(doc_id: int):
    s = db_session()
    data = parse_set_assignments(_json_body())
    with unit_of_work(s):
        doc = service.set_assignments(s, actor=current_user(), document_id=doc_id, data=data)
    return jsonify({"document": doc.to_dict()})


@bp.patch("/documents/<int:doc_id>/execution")
@require_permission(DOCS_VIEW)
def advance_execution(doc_id: int):
    s = db_session()
    data = parse_advance_assignment(_json_body())
    with unit_of_work(s):
        assignment, doc = service.advance_assignment(s, actor=current_user(), document_id=doc_id, data=data)
    return jsonify({"assignment": assignment.to_dict(), "document": doc.to_dict()})
