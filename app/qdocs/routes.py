from flask import Blueprint, current_app

from app.qdocs.db import db_session
from app.qdocs.audit import current_audit_session_id

bp = Blueprint("routes", __name__)


@bp.get("/health")
def health():
    """Health check endpoint. Returns JSON, including whether audit mode is on."""
    try:
        active = current_audit_session_id(db_session()) is not None
    except Exception as e:
        current_app.logger.error("Health check DB error: %s", e)
        return {"ok": False}, 503
    return {"ok": True, "auditMode": active}


@bp.get("/healthz")
def healthz():
    """
    Fast health check for k8s/DO probes. No DB access, minimal overhead.
    """
    return "ok", 200
