from __future__ import annotations

import enum
from datetime import datetime

from sqlalchemy import DateTime, Enum, ForeignKey, Index, Integer, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.qdocs.models import Base, User


class AuditType(str, enum.Enum):
    HACCP = "HACCP"
    SANPIN = "SanPiN"
    INTERNAL = "Internal"
    CERTIFICATION = "Certification"


class AuditSessionStatus(str, enum.Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class AuditSession(Base):
    __tablename__ = "audit_sessions"
    __table_args__ = (
        # At most one active session, enforced by the database.
        Index(
            "uq_audit_sessions_single_active",
            "status",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    audit_type: Mapped[AuditType] = mapped_column(
        Enum(AuditType, native_enum=False, length=32, values_callable=lambda m: [x.value for x in m]),
        nullable=False,
    )
    status: Mapped[AuditSessionStatus] = mapped_column(
        Enum(AuditSessionStatus, native_enum=False, length=16, values_callable=lambda m: [x.value for x in m]),
        nullable=False,
        default=AuditSessionStatus.ACTIVE,
    )

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    auditor_org: Mapped[str | None] = mapped_column(String(255), nullable=True)
    auditor_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    comment: Mapped[str | None] = mapped_column(Text, nullable=True)

    initiated_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)

    initiated_by: Mapped[User] = relationship("User", lazy="selectin")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "auditType": self.audit_type.value,
            "status": self.status.value,
            "startedAt": self.started_at.isoformat() if self.started_at else None,
            "endedAt": self.ended_at.isoformat() if self.ended_at else None,
            "auditorOrg": self.auditor_org,
            "auditorName": self.auditor_name,
            "comment": self.comment,
            "initiatedBy": self.initiated_by.to_ref() if self.initiated_by else None,
        }


class AuditModeState(Base):
    """
    Singleton row (id=1) that every guarded write reads under a shared lock.

    start/close take the exclusive lock on this row, so a check-and-reject can
    never interleave with a concurrent start.
    """

    __tablename__ = "audit_mode_state"

    SINGLETON_ID = 1

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    active_session_id: Mapped[int | None] = mapped_column(
        ForeignKey("audit_sessions.id", ondelete="SET NULL"),
        nullable=True,
    )
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    active_session: Mapped[AuditSession | None] = relationship("AuditSession", lazy="selectin")
