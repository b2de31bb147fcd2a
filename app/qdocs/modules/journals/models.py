from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import JSON, Date, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.qdocs.models import Base

JOURNALS = ("temperature", "health")


class JournalEntry(Base):
    __tablename__ = "journal_entries"
    __table_args__ = (
        UniqueConstraint("journal", "entry_date", "subject", name="uq_journal_entry_day_subject"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    journal: Mapped[str] = mapped_column(String(32), nullable=False)  # temperature | health
    entry_date: Mapped[date] = mapped_column(Date, nullable=False)
    subject: Mapped[str] = mapped_column(String(128), nullable=False)  # equipment / employee code
    values: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    recorded_by_user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "journal": self.journal,
            "date": self.entry_date.isoformat(),
            "subject": self.subject,
            "values": self.values or {},
            "recordedByUserId": self.recorded_by_user_id,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
