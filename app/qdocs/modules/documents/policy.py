"""
Authorization policies for the document workflow.

One function per operation, each taking (caller, entity) and answering
allow/deny, so the rules can be tested without HTTP plumbing.
"""

from __future__ import annotations

from app.qdocs.models import User
from app.qdocs.rbac import DOCS_CREATE, DOCS_IMPORT, DOCS_OVERRIDE, user_has_permission

from .models import Document, ExecutionAssignment, Task


def has_override(user: User | None) -> bool:
    return user_has_permission(user, DOCS_OVERRIDE)


def can_create_document(user: User | None) -> bool:
    return user_has_permission(user, DOCS_CREATE)


def can_import_documents(user: User | None) -> bool:
    return user_has_permission(user, DOCS_IMPORT)


def can_view_document(user: User | None, doc: Document) -> bool:
    if not user:
        return False
    return user.id in doc.participant_ids() or has_override(user)


def can_acknowledge_document(user: User | None, doc: Document) -> bool:
    # Read-only roles (no create permission) may look but not acknowledge.
    return can_view_document(user, doc) and can_create_document(user)


def can_decide_task(user: User | None, task: Task) -> bool:
    if not user:
        return False
    return task.assignee_id == user.id or has_override(user)


def can_manage_execution(user: User | None, doc: Document) -> bool:
    if not user:
        return False
    if user.id in (doc.author_id, doc.recipient_id, doc.responsible_id):
        return True
    return has_override(user)


def can_advance_assignment(user: User | None, assignment: ExecutionAssignment) -> bool:
    # No override here: only the executor reports their own progress.
    return bool(user) and assignment.assignee_id == user.id
