"""
Audit mode guard.

One persisted row (``audit_mode_state``) is the gate every audit-sensitive
write consults. The check and the write share the request transaction:

    guard.check_and_maybe_reject(s, "journal.temperature.upsert")   # shared row lock
    ... write rows ...
    s.commit()                                                       # lock released

start/close take the exclusive lock on the same row, so a concurrent start
either sees the write finish first or makes the check fail.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from functools import wraps
from typing import Any

from flask import current_app
from sqlalchemy import or_, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.qdocs.audit import record_event
from app.qdocs.db import db_session
from app.qdocs.errors import AuditLockError, AuditSessionConflictError, AuthorizationError, NotFoundError
from app.qdocs.models import AuditEvent, User
from app.qdocs.rbac import AUDIT_LOG_VIEW, AUDIT_MODE_MANAGE, user_has_permission

from .models import AuditModeState, AuditSession, AuditSessionStatus, AuditType

logger = logging.getLogger(__name__)


def can_manage_audit_mode(user: User | None) -> bool:
    return user_has_permission(user, AUDIT_MODE_MANAGE)


def can_view_audit_log(user: User | None) -> bool:
    return user_has_permission(user, AUDIT_LOG_VIEW)


class AuditGuard:
    def _state(self, s: Session, *, lock: str | None = None) -> AuditModeState:
        stmt = select(AuditModeState).where(AuditModeState.id == AuditModeState.SINGLETON_ID)
        if lock == "share":
            stmt = stmt.with_for_update(read=True)
        elif lock == "update":
            stmt = stmt.with_for_update()
        state = s.execute(stmt).scalar_one_or_none()
        if state is None:
            # Seeded by migrations/init_db; created lazily for fresh databases.
            self._insert_state_row(s)
            state = s.execute(stmt.execution_options(populate_existing=True)).scalar_one()
        return state

    def _insert_state_row(self, s: Session) -> None:
        """Insert the singleton row unless a concurrent request already did."""
        if s.get_bind().dialect.name == "postgresql":
            insert = pg_insert
        else:
            insert = sqlite_insert
        s.execute(
            insert(AuditModeState)
            .values(id=AuditModeState.SINGLETON_ID, active_session_id=None, updated_at=datetime.utcnow())
            .on_conflict_do_nothing(index_elements=[AuditModeState.id])
        )

    def active_session(self, s: Session) -> AuditSession | None:
        state = self._state(s)
        if state.active_session_id is None:
            return None
        return s.get(AuditSession, state.active_session_id)

    def check_and_maybe_reject(self, s: Session, operation: str) -> None:
        """Raise AuditLockError if a session is open. Call before any side effect."""
        state = self._state(s, lock="share")
        if state.active_session_id is None:
            return None
        session = s.get(AuditSession, state.active_session_id)
        audit_type = session.audit_type.value if session else None
        logger.warning(
            "Audit lock rejected operation=%s audit_session_id=%s",
            operation,
            state.active_session_id,
        )
        raise AuditLockError(operation, state.active_session_id, audit_type)

    def start(
        self,
        s: Session,
        *,
        actor: User,
        audit_type: AuditType,
        auditor_org: str | None = None,
        auditor_name: str | None = None,
        comment: str | None = None,
    ) -> AuditSession:
        if not can_manage_audit_mode(actor):
            raise AuthorizationError("Not allowed to start an audit session")

        state = self._state(s, lock="update")
        if state.active_session_id is not None:
            raise AuditSessionConflictError(state.active_session_id)

        session = AuditSession(
            audit_type=audit_type,
            status=AuditSessionStatus.ACTIVE,
            started_at=datetime.utcnow(),
            auditor_org=auditor_org,
            auditor_name=auditor_name,
            comment=comment,
            initiated_by_user_id=actor.id,
        )
        s.add(session)
        try:
            s.flush()
        except IntegrityError as e:
            # The partial unique index caught a start that bypassed the state row.
            raise AuditSessionConflictError(None) from e

        state.active_session_id = session.id
        state.updated_at = datetime.utcnow()

        record_event(
            s,
            actor=actor,
            action="audit_session.start",
            entity_type="AuditSession",
            entity_id=str(session.id),
            audit_session_id=session.id,
            metadata={
                "audit_type": audit_type.value,
                "auditor_org": auditor_org,
                "auditor_name": auditor_name,
            },
        )
        logger.info("Audit session %s started by user=%s type=%s", session.id, actor.id, audit_type.value)
        return session

    def close(self, s: Session, *, actor: User, comment: str | None = None) -> AuditSession:
        if not can_manage_audit_mode(actor):
            raise AuthorizationError("Not allowed to close the audit session")

        state = self._state(s, lock="update")
        if state.active_session_id is None:
            raise NotFoundError("Active audit session")

        session = s.get(AuditSession, state.active_session_id)
        if session is None:
            raise NotFoundError("AuditSession", state.active_session_id)

        session.status = AuditSessionStatus.CLOSED
        session.ended_at = datetime.utcnow()
        if comment:
            session.comment = comment
        state.active_session_id = None
        state.updated_at = datetime.utcnow()

        record_event(
            s,
            actor=actor,
            action="audit_session.close",
            entity_type="AuditSession",
            entity_id=str(session.id),
            audit_session_id=session.id,
        )
        logger.info("Audit session %s closed by user=%s", session.id, actor.id)
        return session

    def list_events(
        self,
        s: Session,
        *,
        actor: User,
        audit_session_id: int | None = None,
        active_only: bool = False,
        action: str | None = None,
        entity_type: str | None = None,
        q: str | None = None,
        limit: int = 200,
    ) -> list[AuditEvent]:
        if not can_view_audit_log(actor):
            raise AuthorizationError("Not allowed to view the audit log")

        if active_only:
            audit_session_id = self._state(s).active_session_id
            if audit_session_id is None:
                return []

        stmt = select(AuditEvent)
        if audit_session_id is not None:
            stmt = stmt.where(AuditEvent.audit_session_id == audit_session_id)
        if action:
            stmt = stmt.where(AuditEvent.action == action)
        if entity_type:
            stmt = stmt.where(AuditEvent.entity_type == entity_type)
        if q:
            like = f"%{q}%"
            stmt = stmt.where(or_(AuditEvent.action.ilike(like), AuditEvent.entity_type.ilike(like)))
        stmt = stmt.order_by(AuditEvent.id.desc()).limit(max(1, min(limit, 1000)))
        return list(s.execute(stmt).scalars())


def get_audit_guard() -> AuditGuard:
    return current_app.extensions["audit_guard"]


def guarded_write(operation: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Route decorator for audit-sensitive writes.

    Runs the guard check on the request session before the handler body, so the
    shared lock is held until the handler commits.
    """

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            get_audit_guard().check_and_maybe_reject(db_session(), operation)
            return fn(*args, **kwargs)

        return wrapped

    return decorator
