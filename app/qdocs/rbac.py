from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g, jsonify

from app.qdocs.models import User

# Permission keys referenced by policies and routes.
DOCS_VIEW = "docs.view"
DOCS_CREATE = "docs.create"
DOCS_IMPORT = "docs.import"
DOCS_OVERRIDE = "docs.override"
AUDIT_MODE_MANAGE = "audit_mode.manage"
AUDIT_LOG_VIEW = "audit_log.view"
JOURNALS_VIEW = "journals.view"
JOURNALS_EDIT = "journals.edit"

PERMISSION_NAMES: dict[str, str] = {
    DOCS_VIEW: "Docs: view",
    DOCS_CREATE: "Docs: create",
    DOCS_IMPORT: "Docs: import scans",
    DOCS_OVERRIDE: "Docs: act on behalf of assignees",
    AUDIT_MODE_MANAGE: "Audit mode: start/close",
    AUDIT_LOG_VIEW: "Audit log: view",
    JOURNALS_VIEW: "Journals: view",
    JOURNALS_EDIT: "Journals: edit",
}

# Seeded role matrix. auditor is read-only.
ROLE_PERMISSIONS: dict[str, tuple[str, tuple[str, ...]]] = {
    "director": ("Director", tuple(PERMISSION_NAMES)),
    "head": (
        "Department head",
        (DOCS_VIEW, DOCS_CREATE, DOCS_IMPORT, AUDIT_MODE_MANAGE, AUDIT_LOG_VIEW, JOURNALS_VIEW, JOURNALS_EDIT),
    ),
    "technologist": ("Technologist", (DOCS_VIEW, DOCS_CREATE, AUDIT_LOG_VIEW, JOURNALS_VIEW, JOURNALS_EDIT)),
    "auditor": ("Auditor", (DOCS_VIEW, AUDIT_LOG_VIEW, JOURNALS_VIEW)),
    "employee": ("Employee", (DOCS_VIEW, DOCS_CREATE, JOURNALS_VIEW, JOURNALS_EDIT)),
}


def user_has_permission(user: User | None, permission_key: str) -> bool:
    if not user or not user.is_active:
        return False
    for role in user.roles:
        for perm in role.permissions:
            if perm.key == permission_key:
                return True
    return False


def current_user() -> User:
    u = getattr(g, "current_user", None)
    if not u:
        # require_permission should prevent this.
        raise RuntimeError("No current user")
    return u


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            user: User | None = getattr(g, "current_user", None)
            if not user or not user.is_active:
                return jsonify({"error": "Authentication required", "reason": "unauthenticated"}), 401
            if not user_has_permission(user, permission_key):
                g.missing_permission = permission_key
                return jsonify({"error": "Not allowed", "reason": "forbidden"}), 403
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def require_login(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Signed-in user only; the service applies its own policy."""

    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        user: User | None = getattr(g, "current_user", None)
        if not user or not user.is_active:
            return jsonify({"error": "Authentication required", "reason": "unauthenticated"}), 401
        return fn(*args, **kwargs)

    return wrapped
