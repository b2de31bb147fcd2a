from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.qdocs.models import Base, User


def _enum_column(enum_cls: type[enum.Enum], length: int = 16) -> Enum:
    return Enum(
        enum_cls,
        native_enum=False,
        length=length,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


class DocumentStatus(str, enum.Enum):
    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REJECTED = "rejected"
    IN_EXECUTION = "in_execution"
    EXECUTED = "executed"

    @property
    def chain_resolved(self) -> bool:
        return self in (DocumentStatus.APPROVED, DocumentStatus.IN_EXECUTION, DocumentStatus.EXECUTED)


class TaskAction(str, enum.Enum):
    APPROVE = "approve"
    SIGN = "sign"
    REVIEW = "review"


class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self is not TaskStatus.PENDING


class TaskDecision(str, enum.Enum):
    COMPLETE = "complete"
    SKIP = "skip"
    REJECT = "reject"

    @property
    def outcome(self) -> TaskStatus:
        return _DECISION_OUTCOME[self]


_DECISION_OUTCOME = {
    TaskDecision.COMPLETE: TaskStatus.APPROVED,
    TaskDecision.SKIP: TaskStatus.SKIPPED,
    TaskDecision.REJECT: TaskStatus.REJECTED,
}


class ExecutionStatus(str, enum.Enum):
    PENDING = "pending"
    VIEWED = "viewed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"

    def allowed_next(self) -> frozenset["ExecutionStatus"]:
        return EXECUTION_FLOW[self]

    def can_advance_to(self, nxt: "ExecutionStatus") -> bool:
        return nxt in EXECUTION_FLOW[self]


# Strictly forward; completed is terminal.
EXECUTION_FLOW: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({ExecutionStatus.VIEWED, ExecutionStatus.IN_PROGRESS, ExecutionStatus.COMPLETED}),
    ExecutionStatus.VIEWED: frozenset({ExecutionStatus.IN_PROGRESS, ExecutionStatus.COMPLETED}),
    ExecutionStatus.IN_PROGRESS: frozenset({ExecutionStatus.COMPLETED}),
    ExecutionStatus.COMPLETED: frozenset(),
}


class Document(Base):
    __tablename__ = "documents"
    __table_args__ = (
        Index("idx_documents_author", "author_id"),
        Index("idx_documents_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")

    author_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    recipient_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    responsible_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    status: Mapped[DocumentStatus] = mapped_column(
        _enum_column(DocumentStatus),
        nullable=False,
        default=DocumentStatus.IN_PROGRESS,
    )
    # Only ever moves forward; gates which task is actionable.
    current_step: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    execution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    author: Mapped[User] = relationship("User", foreign_keys=[author_id], lazy="selectin")
    recipient: Mapped[User] = relationship("User", foreign_keys=[recipient_id], lazy="selectin")
    responsible: Mapped[User | None] = relationship("User", foreign_keys=[responsible_id], lazy="selectin")

    tasks: Mapped[list["Task"]] = relationship(
        "Task",
        back_populates="document",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="Task.step",
    )
    watchers: Mapped[list["DocumentWatcher"]] = relationship(
        "DocumentWatcher",
        back_populates="document",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    execution_assignments: Mapped[list["ExecutionAssignment"]] = relationship(
        "ExecutionAssignment",
        back_populates="document",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="ExecutionAssignment.id",
    )
    files: Mapped[list["DocumentFile"]] = relationship(
        "DocumentFile",
        back_populates="document",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def last_step(self) -> int:
        return max((t.step for t in self.tasks), default=0)

    def task_at(self, step: int) -> "Task | None":
        for t in self.tasks:
            if t.step == step:
                return t
        return None

    def participant_ids(self) -> set[int]:
        ids = {self.author_id, self.recipient_id}
        if self.responsible_id:
            ids.add(self.responsible_id)
        ids.update(t.assignee_id for t in self.tasks)
        ids.update(w.user_id for w in self.watchers)
        ids.update(a.assignee_id for a in self.execution_assignments)
        return ids

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "body": self.body,
            "status": self.status.value,
            "currentStep": self.current_step,
            "executionNotes": self.execution_notes,
            "author": self.author.to_ref() if self.author else None,
            "recipient": self.recipient.to_ref() if self.recipient else None,
            "responsible": self.responsible.to_ref() if self.responsible else None,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
            "tasks": [t.to_dict(current_step=self.current_step) for t in self.tasks],
            "watchers": [w.user.to_ref() for w in self.watchers if w.user],
            "executionAssignments": [a.to_dict() for a in self.execution_assignments],
            "files": [f.to_dict() for f in self.files],
        }


class Task(Base):
    __tablename__ = "document_tasks"
    __table_args__ = (
        UniqueConstraint("document_id", "step", name="uq_document_task_step"),
        Index("idx_document_tasks_assignee", "assignee_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    step: Mapped[int] = mapped_column(Integer, nullable=False)
    assignee_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    # Step 0 (the initiator) has no action.
    action: Mapped[TaskAction | None] = mapped_column(_enum_column(TaskAction), nullable=True)
    status: Mapped[TaskStatus] = mapped_column(_enum_column(TaskStatus), nullable=False, default=TaskStatus.PENDING)

    instruction: Mapped[str | None] = mapped_column(Text, nullable=True)
    can_skip: Mapped[bool] = mapped_column(nullable=False, default=False)
    comment_required: Mapped[bool] = mapped_column(nullable=False, default=False)
    visible_after_step: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    comment: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    document: Mapped[Document] = relationship("Document", back_populates="tasks", lazy="selectin")
    assignee: Mapped[User] = relationship("User", foreign_keys=[assignee_id], lazy="selectin")

    def is_visible(self, current_step: int) -> bool:
        return current_step >= self.visible_after_step

    def is_actionable(self, current_step: int, document_status: DocumentStatus) -> bool:
        return (
            document_status == DocumentStatus.IN_PROGRESS
            and self.status == TaskStatus.PENDING
            and self.step == current_step
            and self.is_visible(current_step)
        )

    def to_dict(self, *, current_step: int | None = None) -> dict:
        out = {
            "id": self.id,
            "documentId": self.document_id,
            "step": self.step,
            "assignee": self.assignee.to_ref() if self.assignee else None,
            "action": self.action.value if self.action else None,
            "status": self.status.value,
            "instruction": self.instruction,
            "canSkip": self.can_skip,
            "commentRequired": self.comment_required,
            "visibleAfterStep": self.visible_after_step,
            "comment": self.comment,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }
        if current_step is not None:
            out["visible"] = self.is_visible(current_step)
        return out


class DocumentWatcher(Base):
    __tablename__ = "document_watchers"
    __table_args__ = (
        UniqueConstraint("document_id", "user_id", name="uq_document_watcher"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    document: Mapped[Document] = relationship("Document", back_populates="watchers", lazy="selectin")
    user: Mapped[User] = relationship("User", lazy="selectin")


class ExecutionAssignment(Base):
    __tablename__ = "execution_assignments"
    __table_args__ = (
        UniqueConstraint("document_id", "assignee_id", name="uq_execution_assignment_assignee"),
        Index("idx_execution_assignments_status", "document_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)
    assignee_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    status: Mapped[ExecutionStatus] = mapped_column(
        _enum_column(ExecutionStatus),
        nullable=False,
        default=ExecutionStatus.PENDING,
    )
    deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    document: Mapped[Document] = relationship("Document", back_populates="execution_assignments", lazy="selectin")
    assignee: Mapped[User] = relationship("User", lazy="selectin")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "documentId": self.document_id,
            "assignee": self.assignee.to_ref() if self.assignee else None,
            "status": self.status.value,
            "allowedNext": sorted(s.value for s in self.status.allowed_next()),
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "comment": self.comment,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class DocumentFile(Base):
    __tablename__ = "document_files"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    document_id: Mapped[int] = mapped_column(ForeignKey("documents.id", ondelete="CASCADE"), nullable=False)

    storage_key: Mapped[str] = mapped_column(String(512), nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    content_type: Mapped[str] = mapped_column(String(128), nullable=False, default="application/octet-stream")
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False)

    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    uploaded_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    document: Mapped[Document] = relationship("Document", back_populates="files", lazy="selectin")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "filename": self.filename,
            "contentType": self.content_type,
            "sha256": self.sha256,
            "sizeBytes": self.size_bytes,
            "uploadedAt": self.uploaded_at.isoformat() if self.uploaded_at else None,
        }
