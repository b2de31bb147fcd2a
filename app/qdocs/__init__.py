from datetime import timedelta

from flask import Flask, g, jsonify, request, session
from dotenv import load_dotenv
from werkzeug.routing import IntegerConverter

# Core models first: module models import Base from here.
from app.qdocs import models as _models  # noqa: F401
from app.qdocs.config import load_config
from app.qdocs.db import MAX_ID, init_db, teardown_db_session
from app.qdocs.errors import WorkflowError
from app.qdocs.routes import bp as routes_bp
from app.qdocs.auth import bp as auth_bp, load_current_user
from app.qdocs.modules.audit_mode.api import bp as audit_mode_bp
from app.qdocs.modules.audit_mode.service import AuditGuard
from app.qdocs.modules.documents.api import bp as documents_bp
from app.qdocs.modules.journals.api import bp as journals_bp
from app.qdocs.notifications import notifier_from_config


class IdConverter(IntegerConverter):
    """``<int:...>`` bounded to ids the database can hold; anything else is a 404."""

    def __init__(self, map, *args, **kwargs):
        kwargs.setdefault("min", 1)
        kwargs.setdefault("max", MAX_ID)
        super().__init__(map, *args, **kwargs)


def create_app() -> Flask:
    load_dotenv()
    app = Flask(__name__)
    app.config.from_mapping(load_config())
    app.config["PERMANENT_SESSION_LIFETIME"] = timedelta(hours=8)
    app.config["SESSION_REFRESH_EACH_REQUEST"] = True

    # Bulk scan imports; per-file limit enforced in the import route.
    app.config.setdefault("MAX_CONTENT_LENGTH", 50 * 1024 * 1024)

    from app.qdocs.security import ensure_csrf_token, validate_csrf

    @app.before_request
    def _csrf_guard():
        if request.path.startswith(("/health", "/healthz")):
            return None
        ensure_csrf_token()
        session.permanent = True
        if not app.config.get("CSRF_ENABLED", True):
            return None
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            # Login/logout issue the token themselves.
            if (request.endpoint or "").startswith("auth."):
                return None
            if not validate_csrf(request):
                return jsonify({"error": "CSRF token missing or invalid.", "reason": "csrf_failed"}), 400

    # Production guardrails (fail fast with clear logs)
    env = (app.config.get("ENV") or "").strip().lower()
    if env in ("prod", "production"):
        if not app.config.get("DATABASE_URL") or str(app.config["DATABASE_URL"]).strip() == "":
            raise RuntimeError("DATABASE_URL is required in production.")
        if str(app.config["DATABASE_URL"]).startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production (not sqlite).")
        if not app.config.get("SECRET_KEY") or str(app.config["SECRET_KEY"]) in ("", "change-me"):
            raise RuntimeError("SECRET_KEY must be set to a strong value in production (not default).")

    init_db(app)

    def _dispose_engine_on_fork() -> None:
        import os

        if hasattr(os, "register_at_fork"):
            def _after_fork_child():
                engine = app.extensions.get("sqlalchemy_engine")
                if engine:
                    engine.dispose()
                    app.logger.info("Disposed DB engine after fork (pid=%s)", os.getpid())

            os.register_at_fork(after_in_child=_after_fork_child)

    _dispose_engine_on_fork()

    if app.config.get("STORAGE_BACKEND") == "s3":
        missing_s3 = [
            key
            for key in ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")
            if not app.config.get(key)
        ]
        if missing_s3:
            app.logger.error("STORAGE CONFIG ERROR: Missing required S3 env vars: %s", ", ".join(missing_s3))

    app.extensions["audit_guard"] = AuditGuard()
    app.extensions["notifier"] = notifier_from_config(app.config)

    app.url_map.converters["int"] = IdConverter
    app.register_blueprint(routes_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(documents_bp)
    app.register_blueprint(audit_mode_bp)
    app.register_blueprint(journals_bp)

    def _load_user_wrapper():
        if request.path.startswith(("/health", "/healthz")):
            g.current_user = None
            return None
        return load_current_user()

    app.before_request(_load_user_wrapper)
    app.teardown_appcontext(teardown_db_session)

    @app.errorhandler(WorkflowError)
    def _workflow_error(e: WorkflowError):
        s = getattr(g, "db_session", None)
        if s is not None:
            s.rollback()
        app.logger.info(
            "%s on %s %s: %s (request_id=%s)",
            e.reason,
            request.method,
            request.path,
            e.message,
            getattr(g, "request_id", None),
        )
        return jsonify(e.to_dict()), e.http_status

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"error": "Not found", "reason": "not_found"}), 404

    @app.errorhandler(405)
    def _err_405(e):  # type: ignore[no-redef]
        return jsonify({"error": "Method not allowed", "reason": "method_not_allowed"}), 405

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        app.logger.exception("Unhandled 500 (request_id=%s)", rid)
        return jsonify({"error": "Internal server error", "reason": "internal_error", "requestId": rid}), 500

    @app.errorhandler(403)
    def _err_403(e):  # type: ignore[no-redef]
        missing = getattr(g, "missing_permission", None)
        if missing:
            app.logger.warning("Forbidden: missing_permission=%s request_id=%s", missing, getattr(g, "request_id", None))
        return jsonify({"error": "Not allowed", "reason": "forbidden"}), 403

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return jsonify({"error": "File too large. Maximum size is 50MB.", "reason": "payload_too_large"}), 413

    import logging
    logging.getLogger(__name__).info("create_app() complete; app ready to serve")

    return app
