from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.qdocs.audit import record_event
from app.qdocs.errors import NotFoundError, ValidationError
from app.qdocs.models import User

from .models import JOURNALS, JournalEntry

logger = logging.getLogger(__name__)


def ensure_journal(journal: str) -> str:
    key = (journal or "").strip().lower()
    if key not in JOURNALS:
        raise NotFoundError("Journal", journal)
    return key


def parse_entry_date(raw: Any) -> date:
    if raw is None or raw == "":
        return datetime.utcnow().date()
    if not isinstance(raw, str):
        raise ValidationError("Invalid date", details={"date": "expected YYYY-MM-DD"})
    try:
        return date.fromisoformat(raw.strip())
    except ValueError:
        raise ValidationError("Invalid date", details={"date": "expected YYYY-MM-DD"}) from None


def list_entries(s: Session, journal: str, *, entry_date: date | None = None) -> list[JournalEntry]:
    stmt = select(JournalEntry).where(JournalEntry.journal == ensure_journal(journal))
    if entry_date is not None:
        stmt = stmt.where(JournalEntry.entry_date == entry_date)
    stmt = stmt.order_by(JournalEntry.entry_date.desc(), JournalEntry.subject.asc())
    return list(s.execute(stmt).scalars())


def upsert_entries(
    s: Session,
    *,
    actor: User,
    journal: str,
    entry_date: date,
    entries: list[dict[str, Any]],
) -> list[JournalEntry]:
    """Insert or overwrite one row per (journal, day, subject)."""
    journal = ensure_journal(journal)
    if not entries:
        raise ValidationError("Nothing to save", details={"entries": "required"})

    by_subject: dict[str, dict] = {}
    for i, raw in enumerate(entries):
        subject = raw.get("subject") if isinstance(raw, dict) else None
        values = raw.get("values") if isinstance(raw, dict) else None
        if not isinstance(subject, str) or not subject.strip():
            raise ValidationError("Invalid entry", details={f"entries[{i}].subject": "required"})
        if not isinstance(values, dict):
            raise ValidationError("Invalid entry", details={f"entries[{i}].values": "expected object"})
        by_subject[subject.strip()] = values

    existing = {
        e.subject: e
        for e in s.execute(
            select(JournalEntry).where(
                JournalEntry.journal == journal,
                JournalEntry.entry_date == entry_date,
                JournalEntry.subject.in_(list(by_subject)),
            )
        ).scalars()
    }

    now = datetime.utcnow()
    out: list[JournalEntry] = []
    for subject, values in by_subject.items():
        row = existing.get(subject)
        if row is None:
            row = JournalEntry(
                journal=journal,
                entry_date=entry_date,
                subject=subject,
                values=values,
                recorded_by_user_id=actor.id,
                created_at=now,
                updated_at=now,
            )
            s.add(row)
        else:
            row.values = {**(row.values or {}), **values}
            row.recorded_by_user_id = actor.id
            row.updated_at = now
        out.append(row)
    s.flush()

    record_event(
        s,
        actor=actor,
        action=f"journal.{journal}.upsert",
        entity_type="JournalEntry",
        entity_id=entry_date.isoformat(),
        metadata={"subjects": sorted(by_subject), "overwritten": sorted(existing)},
    )
    logger.info("Journal %s %s: %d row(s) saved by user=%s", journal, entry_date, len(out), actor.id)
    return out


def delete_entry(s: Session, *, actor: User, journal: str, entry_id: int) -> None:
    journal = ensure_journal(journal)
    row = s.get(JournalEntry, entry_id)
    if row is None or row.journal != journal:
        raise NotFoundError("JournalEntry", entry_id)
    record_event(
        s,
        actor=actor,
        action=f"journal.{journal}.delete",
        entity_type="JournalEntry",
        entity_id=str(row.id),
        metadata={"date": row.entry_date.isoformat(), "subject": row.subject},
    )
    s.delete(row)
    s.flush()
