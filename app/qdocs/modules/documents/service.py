"""
Document workflow service layer.

Creation, task decisions, execution assignment and import. Functions here
flush but never commit: the API wraps each call in ``unit_of_work`` so every
operation lands as one all-or-nothing transaction. Notifications are sent by
the caller after commit through the ``notify_*`` helpers.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import BinaryIO

from sqlalchemy import exists, func, or_, select, update
from sqlalchemy.orm import Session

from app.qdocs.audit import record_event
from app.qdocs.errors import (
    AuthorizationError,
    IllegalTransitionError,
    NotFoundError,
    TaskNotActionableError,
    ValidationError,
)
from app.qdocs.models import User
from app.qdocs.notifications import Notifier, deliver
from app.qdocs.storage import Storage, build_document_storage_key, file_digest, sanitize_upload_filename

from . import policy
from .models import (
    Document,
    DocumentFile,
    DocumentStatus,
    DocumentWatcher,
    ExecutionAssignment,
    ExecutionStatus,
    Task,
    TaskDecision,
    TaskStatus,
)
from .schemas import AdvanceAssignmentInput, CreateDocumentInput, SetAssignmentsInput, StageInput, TaskDecisionInput

logger = logging.getLogger(__name__)

IMPORT_MODES = ("archive", "workflow")
IMPORT_BODY = "Imported (digitised paper record)"


@dataclass(frozen=True)
class UploadedFile:
    filename: str
    content_type: str
    data: bytes


@dataclass(frozen=True)
class DecisionResult:
    document: Document
    task: Task
    next_task: Task | None
    # Set when the decision ended the approval route (approved / in_execution / rejected).
    final_status: DocumentStatus | None


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def ensure_users_exist(s: Session, user_ids: set[int] | list[int]) -> None:
    """Single set-difference check over every referenced user id."""
    wanted = set(user_ids)
    if not wanted:
        return
    found = set(s.execute(select(User.id).where(User.id.in_(wanted))).scalars())
    missing = sorted(wanted - found)
    if missing:
        raise ValidationError(
            f"Unknown users: {', '.join(str(m) for m in missing)}",
            details={"users": missing},
        )


def _lock_document(s: Session, document_id: int) -> Document:
    doc = s.execute(
        select(Document)
        .where(Document.id == document_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if doc is None:
        raise NotFoundError("Document", document_id)
    return doc


def get_document_for(s: Session, user: User, document_id: int) -> Document:
    doc = s.get(Document, document_id)
    if doc is None:
        raise NotFoundError("Document", document_id)
    if not policy.can_view_document(user, doc):
        raise AuthorizationError("No access to this document")
    return doc


def list_documents_for(s: Session, user: User) -> list[Document]:
    stmt = select(Document)
    if not policy.has_override(user):
        uid = user.id
        stmt = stmt.where(
            or_(
                Document.author_id == uid,
                Document.recipient_id == uid,
                Document.responsible_id == uid,
                exists().where(Task.document_id == Document.id, Task.assignee_id == uid),
                exists().where(DocumentWatcher.document_id == Document.id, DocumentWatcher.user_id == uid),
                exists().where(ExecutionAssignment.document_id == Document.id, ExecutionAssignment.assignee_id == uid),
            )
        )
    stmt = stmt.order_by(Document.created_at.desc(), Document.id.desc())
    return list(s.execute(stmt).scalars())


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def _materialize_route(s: Session, doc: Document, author: User, stages: list[StageInput], now: datetime) -> None:
    # Step 0 is the initiator and is approved on creation.
    doc.tasks.append(
        Task(
            step=0,
            assignee_id=author.id,
            action=None,
            status=TaskStatus.APPROVED,
            visible_after_step=0,
            completed_at=now,
        )
    )
    for i, stage in enumerate(stages, start=1):
        doc.tasks.append(
            Task(
                step=i,
                assignee_id=stage.assignee_id,
                action=stage.action,
                status=TaskStatus.PENDING,
                instruction=stage.instruction,
                can_skip=stage.can_skip,
                comment_required=stage.comment_required,
                visible_after_step=i - 1,
            )
        )


def create_document(s: Session, *, author: User, data: CreateDocumentInput) -> Document:
    """Create a document with its whole route. Every referenced user is checked before any write."""
    if not policy.can_create_document(author):
        raise AuthorizationError("Not allowed to create documents")
    if not data.stages:
        raise ValidationError("Invalid document payload", details={"stages": "add at least one stage"})

    ensure_users_exist(s, data.referenced_user_ids())

    now = datetime.utcnow()
    doc = Document(
        title=data.title,
        body=data.body,
        author_id=author.id,
        recipient_id=data.recipient_id,
        responsible_id=data.responsible_id,
        status=DocumentStatus.IN_PROGRESS,
        current_step=1,
        execution_notes=data.execution_notes,
        created_at=now,
        updated_at=now,
    )
    s.add(doc)
    _materialize_route(s, doc, author, data.stages, now)

    watcher_ids = sorted({w for w in data.watchers if w != author.id})
    for uid in watcher_ids:
        doc.watchers.append(DocumentWatcher(user_id=uid))

    for uid in dict.fromkeys(data.execution_assignees):
        doc.execution_assignments.append(
            ExecutionAssignment(assignee_id=uid, status=ExecutionStatus.PENDING, created_at=now, updated_at=now)
        )

    s.flush()

    record_event(
        s,
        actor=author,
        action="document.create",
        entity_type="Document",
        entity_id=str(doc.id),
        metadata={
            "title": doc.title,
            "stages": len(data.stages),
            "watchers": watcher_ids,
            "execution_assignees": list(dict.fromkeys(data.execution_assignees)),
        },
    )
    s.flush()
    logger.info("Document %s created by user=%s with %d stage(s)", doc.id, author.id, len(data.stages))
    return doc


# ---------------------------------------------------------------------------
# Task decisions
# ---------------------------------------------------------------------------


def decide_task(s: Session, *, actor: User, task_id: int, data: TaskDecisionInput) -> DecisionResult:
    """
    Apply one decision to one task.

    Visibility and pending-ness are re-read under row locks inside the
    transaction, and the write itself is conditional on the task still being
    pending, so of two racing decisions only the first to commit wins.
    """
    task = s.execute(
        select(Task).where(Task.id == task_id).with_for_update().execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if task is None:
        raise NotFoundError("Task", task_id)
    if not policy.can_decide_task(actor, task):
        raise AuthorizationError("You are not assigned to this task")

    doc = _lock_document(s, task.document_id)
    outcome = data.decision.outcome

    if task.status.is_terminal:
        raise IllegalTransitionError(
            "task", task.status.value, outcome.value, "Task has already been decided"
        )
    if not task.is_actionable(doc.current_step, doc.status):
        raise TaskNotActionableError()
    if data.decision is TaskDecision.SKIP and not task.can_skip:
        raise IllegalTransitionError("task", task.status.value, outcome.value, "This stage cannot be skipped")
    if data.decision is not TaskDecision.SKIP and task.comment_required and not data.comment:
        raise ValidationError("A comment is required for this stage", details={"comment": "required"})

    now = datetime.utcnow()
    res = s.execute(
        update(Task)
        .where(Task.id == task.id, Task.status == TaskStatus.PENDING)
        .values(status=outcome, comment=data.comment or None, completed_at=now)
    )
    if res.rowcount != 1:
        raise IllegalTransitionError("task", "decided", outcome.value, "Task was decided concurrently")

    next_task: Task | None = None
    final_status: DocumentStatus | None = None
    values: dict = {"updated_at": now}
    if outcome is TaskStatus.REJECTED:
        # Cursor stays put; nothing after this step becomes actionable.
        final_status = DocumentStatus.REJECTED
        values["status"] = final_status
    else:
        values["current_step"] = task.step + 1
        if task.step >= doc.last_step:
            final_status = DocumentStatus.IN_EXECUTION if doc.execution_assignments else DocumentStatus.APPROVED
            values["status"] = final_status
        else:
            next_task = doc.task_at(task.step + 1)

    res = s.execute(
        update(Document)
        .where(
            Document.id == doc.id,
            Document.current_step == task.step,
            Document.status == DocumentStatus.IN_PROGRESS,
        )
        .values(**values)
    )
    if res.rowcount != 1:
        raise IllegalTransitionError("document", doc.status.value, "advance", "Document moved on concurrently")

    record_event(
        s,
        actor=actor,
        action="document.task.decide",
        entity_type="Task",
        entity_id=str(task.id),
        reason=data.comment[:512] or None,
        metadata={
            "document_id": doc.id,
            "step": task.step,
            "decision": data.decision.value,
            "status": outcome.value,
            "on_behalf_of": task.assignee_id if task.assignee_id != actor.id else None,
            "document_status": (final_status or doc.status).value,
        },
    )
    s.flush()
    s.refresh(doc)
    s.refresh(task)
    logger.info(
        "Task %s (doc=%s step=%s) -> %s by user=%s",
        task.id,
        doc.id,
        task.step,
        outcome.value,
        actor.id,
    )
    return DecisionResult(document=doc, task=task, next_task=next_task, final_status=final_status)


# ---------------------------------------------------------------------------
# Execution sub-workflow
# ---------------------------------------------------------------------------


def _promote_if_executed(s: Session, actor: User, doc: Document) -> bool:
    remaining = s.execute(
        select(func.count(ExecutionAssignment.id)).where(
            ExecutionAssignment.document_id == doc.id,
            ExecutionAssignment.status != ExecutionStatus.COMPLETED,
        )
    ).scalar_one()
    if remaining:
        return False
    doc.status = DocumentStatus.EXECUTED
    doc.updated_at = datetime.utcnow()
    record_event(
        s,
        actor=actor,
        action="document.executed",
        entity_type="Document",
        entity_id=str(doc.id),
    )
    return True


def set_assignments(s: Session, *, actor: User, document_id: int, data: SetAssignmentsInput) -> Document:
    """Upsert the execution assignees of a document and prune everyone not listed."""
    doc = _lock_document(s, document_id)
    if not policy.can_manage_execution(actor, doc):
        raise AuthorizationError("Not allowed to assign executors for this document")
    if not data.assignments:
        raise ValidationError("At least one assignee is required", details={"assignments": "required"})

    # A repeated assignee in one request keeps its last entry.
    wanted = {a.assignee_id: a for a in data.assignments}
    ensure_users_exist(s, set(wanted))

    if doc.status not in (DocumentStatus.APPROVED, DocumentStatus.IN_EXECUTION):
        raise IllegalTransitionError(
            "document",
            doc.status.value,
            DocumentStatus.IN_EXECUTION.value,
            "Executors can only be assigned once the approval route is resolved",
        )

    now = datetime.utcnow()
    existing = {a.assignee_id: a for a in doc.execution_assignments}
    created: list[int] = []
    for assignee_id, item in wanted.items():
        row = existing.get(assignee_id)
        if row is None:
            doc.execution_assignments.append(
                ExecutionAssignment(
                    assignee_id=assignee_id,
                    status=ExecutionStatus.PENDING,
                    deadline=item.deadline,
                    comment=item.comment,
                    created_at=now,
                    updated_at=now,
                )
            )
            created.append(assignee_id)
        else:
            row.deadline = item.deadline
            row.comment = item.comment
            row.updated_at = now

    removed = sorted(set(existing) - set(wanted))
    for assignee_id in removed:
        doc.execution_assignments.remove(existing[assignee_id])

    doc.status = DocumentStatus.IN_EXECUTION
    if data.notes is not None:
        doc.execution_notes = data.notes
    doc.updated_at = now
    s.flush()

    record_event(
        s,
        actor=actor,
        action="document.execution.assign",
        entity_type="Document",
        entity_id=str(doc.id),
        metadata={
            "assignees": sorted(wanted),
            "created": sorted(created),
            "removed": removed,
        },
    )
    # Pruning can leave only finished work behind.
    _promote_if_executed(s, actor, doc)
    s.flush()
    return doc


def advance_assignment(
    s: Session,
    *,
    actor: User,
    document_id: int,
    data: AdvanceAssignmentInput,
) -> tuple[ExecutionAssignment, Document]:
    """Move one assignment forward along the execution flow; completes the document when all are done."""
    assignment = s.execute(
        select(ExecutionAssignment)
        .where(ExecutionAssignment.id == data.assignment_id)
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()
    if assignment is None or assignment.document_id != document_id:
        raise NotFoundError("ExecutionAssignment", data.assignment_id)
    if not policy.can_advance_assignment(actor, assignment):
        raise AuthorizationError("Only the assignee can update this assignment")

    # Lock order: document, then assignment. Serialises the completion count per document.
    doc = _lock_document(s, document_id)
    assignment = s.execute(
        select(ExecutionAssignment)
        .where(ExecutionAssignment.id == data.assignment_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one()

    if doc.status is not DocumentStatus.IN_EXECUTION:
        raise IllegalTransitionError(
            "document", doc.status.value, DocumentStatus.IN_EXECUTION.value, "Document is not in execution"
        )

    current = assignment.status
    if not current.can_advance_to(data.status):
        raise IllegalTransitionError("execution assignment", current.value, data.status.value)

    now = datetime.utcnow()
    values: dict = {"status": data.status, "updated_at": now}
    if data.comment is not None:
        values["comment"] = data.comment
    res = s.execute(
        update(ExecutionAssignment)
        .where(ExecutionAssignment.id == assignment.id, ExecutionAssignment.status == current)
        .values(**values)
    )
    if res.rowcount != 1:
        raise IllegalTransitionError(
            "execution assignment", current.value, data.status.value, "Assignment changed concurrently"
        )

    record_event(
        s,
        actor=actor,
        action="document.execution.status",
        entity_type="ExecutionAssignment",
        entity_id=str(assignment.id),
        metadata={"document_id": doc.id, "from": current.value, "to": data.status.value},
    )

    if data.status is ExecutionStatus.COMPLETED:
        _promote_if_executed(s, actor, doc)
    s.flush()
    s.refresh(assignment)
    return assignment, doc


# ---------------------------------------------------------------------------
# Acknowledge / import
# ---------------------------------------------------------------------------


def acknowledge_document(s: Session, *, actor: User, document_id: int) -> Document:
    doc = s.get(Document, document_id)
    if doc is None:
        raise NotFoundError("Document", document_id)
    if not policy.can_acknowledge_document(actor, doc):
        raise AuthorizationError("No access to this document")
    record_event(
        s,
        actor=actor,
        action="document.acknowledge",
        entity_type="Document",
        entity_id=str(doc.id),
    )
    s.flush()
    return doc


def open_document_file(
    s: Session, *, actor: User, document_id: int, file_id: int, storage: Storage
) -> tuple[DocumentFile, BinaryIO]:
    doc = get_document_for(s, actor, document_id)
    f = next((f for f in doc.files if f.id == file_id), None)
    if f is None:
        raise NotFoundError("DocumentFile", file_id)
    if not storage.exists(f.storage_key):
        logger.error("Stored blob missing for file=%s key=%s", f.id, f.storage_key)
        raise NotFoundError("DocumentFile", file_id)
    record_event(
        s,
        actor=actor,
        action="document.file.download",
        entity_type="DocumentFile",
        entity_id=str(f.id),
        metadata={"document_id": doc.id, "storage_key": f.storage_key},
    )
    return f, storage.open(f.storage_key)


def _import_title(filename: str, prefix: str) -> str:
    name = (filename or "").strip() or "Document"
    stem, _ext = os.path.splitext(name)
    stem = stem or name
    return f"{prefix}: {stem}" if prefix else stem


def import_documents(
    s: Session,
    *,
    actor: User,
    mode: str,
    files: list[UploadedFile],
    storage: Storage,
    title_prefix: str = "",
    responsible_id: int | None = None,
    stages: list[StageInput] | None = None,
) -> list[Document]:
    """
    Digitise scanned paper documents.

    ``archive`` files land as already-approved documents with no route;
    ``workflow`` files each get the same route, recipient = first stage assignee.
    Blobs are stored before the rows are written.
    """
    if not policy.can_import_documents(actor):
        raise AuthorizationError("Not allowed to import documents")
    if mode not in IMPORT_MODES:
        raise ValidationError("Invalid import mode", details={"mode": f"must be one of {list(IMPORT_MODES)}"})
    if not files:
        raise ValidationError("Add at least one file", details={"files": "required"})
    stages = stages or []
    if mode == "workflow":
        errors = {}
        if responsible_id is None:
            errors["responsibleId"] = "required for workflow import"
        if not stages:
            errors["stages"] = "add at least one stage"
        if errors:
            raise ValidationError("Invalid workflow import", details=errors)
        ensure_users_exist(s, {responsible_id, *(st.assignee_id for st in stages)})  # type: ignore[arg-type]

    stored: list[tuple[UploadedFile, str, str, int]] = []
    for f in files:
        sha256, size_bytes = file_digest(f.data)
        key = build_document_storage_key(actor.id, f.filename, sha256=sha256)
        storage.put_bytes(key, f.data, content_type=f.content_type)
        stored.append((f, key, sha256, size_bytes))

    now = datetime.utcnow()
    created: list[Document] = []
    for f, key, sha256, size_bytes in stored:
        title = _import_title(f.filename, title_prefix.strip())
        if mode == "archive":
            doc = Document(
                title=title,
                body=IMPORT_BODY,
                author_id=actor.id,
                recipient_id=actor.id,
                responsible_id=actor.id,
                status=DocumentStatus.APPROVED,
                current_step=0,
                created_at=now,
                updated_at=now,
            )
            s.add(doc)
            _materialize_route(s, doc, actor, [], now)
        else:
            doc = Document(
                title=title,
                body=IMPORT_BODY,
                author_id=actor.id,
                recipient_id=stages[0].assignee_id,
                responsible_id=responsible_id,
                status=DocumentStatus.IN_PROGRESS,
                current_step=1,
                created_at=now,
                updated_at=now,
            )
            s.add(doc)
            _materialize_route(s, doc, actor, stages, now)
        doc.files.append(
            DocumentFile(
                storage_key=key,
                filename=sanitize_upload_filename(f.filename),
                content_type=f.content_type or "application/octet-stream",
                sha256=sha256,
                size_bytes=size_bytes,
                uploaded_by_user_id=actor.id,
                uploaded_at=now,
            )
        )
        s.flush()
        record_event(
            s,
            actor=actor,
            action=f"document.import.{mode}",
            entity_type="Document",
            entity_id=str(doc.id),
            metadata={
                "filename": f.filename,
                "storage_key": key,
                "sha256": sha256,
                "size_bytes": size_bytes,
                "stages": len(stages) if mode == "workflow" else 0,
            },
        )
        created.append(doc)

    s.flush()
    logger.info("Imported %d document(s) mode=%s by user=%s", len(created), mode, actor.id)
    return created


# ---------------------------------------------------------------------------
# Post-commit notifications
# ---------------------------------------------------------------------------


def notify_route_started(notifier: Notifier, doc: Document) -> None:
    first = doc.task_at(1)
    if first is not None and first.status is TaskStatus.PENDING and first.assignee is not None:
        deliver(notifier.task_assigned, first.assignee, doc, first)


def notify_decision(notifier: Notifier, result: DecisionResult) -> None:
    doc = result.document
    if result.final_status is not None:
        comment = result.task.comment if result.final_status is DocumentStatus.REJECTED else None
        deliver(notifier.document_status, doc.author, doc, result.final_status.value, comment)
    elif result.next_task is not None and result.next_task.assignee is not None:
        deliver(notifier.task_assigned, result.next_task.assignee, doc, result.next_task)
