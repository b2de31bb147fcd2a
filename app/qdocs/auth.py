from __future__ import annotations

import uuid
from collections import defaultdict
from datetime import datetime, timedelta

from flask import Blueprint, current_app, g, jsonify, request, session
from werkzeug.security import check_password_hash

from app.qdocs.audit import record_event
from app.qdocs.db import db_session
from app.qdocs.models import User
from app.qdocs.security import ensure_csrf_token

bp = Blueprint("auth", __name__)
_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds


def _check_rate_limit(ip: str) -> bool:
    now = datetime.utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    _login_attempts[ip] = [t for t in _login_attempts[ip] if t > cutoff]
    return len(_login_attempts[ip]) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(datetime.utcnow())


def _user_payload(user: User) -> dict:
    return {
        **user.to_ref(),
        "roles": sorted(r.key for r in user.roles),
        "permissions": sorted({p.key for r in user.roles for p in r.permissions}),
    }


def load_current_user() -> None:
    """
    Loads g.current_user from the signed session cookie.
    Also assigns a simple per-request request_id (for audit/log correlation).
    """
    if not getattr(g, "request_id", None):
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    if request.path.startswith(("/static/", "/health", "/healthz")):
        g.current_user = None
        return

    user_id = session.get("user_id")
    if not user_id:
        g.current_user = None
        return

    try:
        s = db_session()
        user = s.get(User, int(user_id))
        if not user or not user.is_active:
            session.pop("user_id", None)
            g.current_user = None
            return
        g.current_user = user
    except Exception as e:
        current_app.logger.error("load_current_user DB error (clearing session): %s", e)
        session.pop("user_id", None)
        g.current_user = None


@bp.post("/login")
def login_post():
    payload = request.get_json(silent=True) if request.is_json else None
    source = payload if isinstance(payload, dict) else request.form
    email = str(source.get("email") or "").strip().lower()
    password = str(source.get("password") or "")
    ip = request.remote_addr or "unknown"

    if _check_rate_limit(ip):
        return jsonify({"error": "Too many login attempts. Please wait 5 minutes.", "reason": "rate_limited"}), 429

    _record_attempt(ip)

    try:
        s = db_session()
        user = s.query(User).filter(User.email == email).one_or_none()
        if not user or not user.is_active or not check_password_hash(user.password_hash, password):
            record_event(
                s,
                actor=None,
                action="auth.login_failed",
                entity_type="User",
                entity_id=email,
                reason="Invalid credentials",
                metadata={"email": email},
            )
            s.commit()
            return jsonify({"error": "Invalid credentials.", "reason": "invalid_credentials"}), 401

        session["user_id"] = user.id
        _login_attempts[ip].clear()
        record_event(s, actor=user, action="auth.login", entity_type="User", entity_id=str(user.id))
        s.commit()
        return jsonify({"user": _user_payload(user), "csrfToken": ensure_csrf_token()})
    except Exception:
        current_app.logger.exception("Login POST crashed (email=%s request_id=%s)", email, getattr(g, "request_id", None))
        raise


@bp.get("/me")
def me():
    user = getattr(g, "current_user", None)
    if not user:
        return jsonify({"error": "Authentication required", "reason": "unauthenticated"}), 401
    return jsonify({"user": _user_payload(user), "csrfToken": ensure_csrf_token()})


@bp.get("/logout")
def logout():
    s = db_session()
    user = getattr(g, "current_user", None)
    if user:
        record_event(s, actor=user, action="auth.logout", entity_type="User", entity_id=str(user.id))
        s.commit()
    session.pop("user_id", None)
    return jsonify({"ok": True})
