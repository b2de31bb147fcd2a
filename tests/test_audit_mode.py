import io

import pytest

from app.qdocs.db import session_scope
from app.qdocs.errors import AuditLockError
from app.qdocs.models import AuditEvent
from app.qdocs.modules.audit_mode.models import AuditModeState, AuditSession, AuditSessionStatus
from app.qdocs.modules.journals.models import JournalEntry

from tests.conftest import create_document


def _start(client, audit_type="HACCP", **extra):
    return client.post("/audit-session", json={"auditType": audit_type, **extra})


def _journal_put(client, subject="Fridge 1"):
    return client.put(
        "/journals/temperature/entries",
        json={"date": "2026-10-19", "entries": [{"subject": subject, "values": {"morning": 3.5}}]},
    )


def test_no_session_by_default(login_as):
    r = login_as("emp1").get("/audit-session")
    assert r.status_code == 200
    assert r.get_json() == {"session": None, "auditMode": False}


def test_audit_session_locks_sensitive_writes(app, login_as, users):
    head = login_as("head")
    r = _start(head, auditorOrg="Rospotrebnadzor", auditorName="I. Petrova")
    assert r.status_code == 200
    session = r.get_json()["session"]
    assert session["auditType"] == "HACCP"
    assert session["status"] == "active"
    assert session["initiatedBy"]["id"] == users["head"]

    r = login_as("emp1").get("/audit-session")
    assert r.get_json()["auditMode"] is True
    assert r.get_json()["session"]["id"] == session["id"]

    r = _journal_put(login_as("emp1"))
    assert r.status_code == 403
    body = r.get_json()
    assert body["reason"] == "audit_mode_lock"
    assert body["details"] == {"auditSessionId": session["id"]}

    r = login_as("head").post(
        "/documents/import",
        data={"mode": "archive", "files": [(io.BytesIO(b"%PDF-1.4 scan"), "scan.pdf")]},
        content_type="multipart/form-data",
    )
    assert r.status_code == 403
    assert r.get_json()["reason"] == "audit_mode_lock"

    with session_scope(app) as s:
        assert s.query(JournalEntry).count() == 0
        assert s.query(AuditEvent).filter(AuditEvent.action.like("journal.%")).count() == 0
        assert s.query(AuditEvent).filter(AuditEvent.action.like("document.import.%")).count() == 0


def test_only_one_session_at_a_time(app, login_as):
    assert _start(login_as("head")).status_code == 200

    r = _start(login_as("director"), audit_type="Internal")
    assert r.status_code == 403
    assert r.get_json()["reason"] == "audit_session_active"

    with session_scope(app) as s:
        assert s.query(AuditSession).filter(AuditSession.status == AuditSessionStatus.ACTIVE).count() == 1


@pytest.mark.parametrize("handle", ["emp1", "tech", "auditor"])
def test_start_requires_manage_permission(login_as, handle):
    r = _start(login_as(handle))
    assert r.status_code == 403
    assert r.get_json()["reason"] == "forbidden"


def test_start_validates_payload(login_as):
    r = _start(login_as("head"), audit_type="surprise")
    assert r.status_code == 400
    assert "auditType" in r.get_json()["details"]

    r = login_as("head").post("/audit-session", data="nope", content_type="text/plain")
    assert r.status_code == 400


def test_unguarded_writes_continue_and_are_tagged(app, login_as, users):
    session_id = _start(login_as("head")).get_json()["session"]["id"]

    doc = create_document(
        login_as("emp1"),
        recipient=users["emp2"],
        stages=[{"assigneeId": users["emp2"], "action": "review"}],
    )
    assert doc["status"] == "in_progress"

    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "document.create").one()
        assert ev.audit_session_id == session_id

    r = login_as("tech").get("/audit-log?session=active")
    assert r.status_code == 200
    events = r.get_json()["events"]
    assert {e["action"] for e in events} >= {"audit_session.start", "document.create"}
    assert all(e["auditSessionId"] == session_id for e in events)

    r = login_as("tech").get(f"/audit-log?auditSessionId={session_id}&action=document.create")
    assert [e["entityId"] for e in r.get_json()["events"]] == [str(doc["id"])]

    assert login_as("emp1").get("/audit-log").status_code == 403


def test_close_unlocks_writes(app, login_as):
    head = login_as("head")
    session_id = _start(head).get_json()["session"]["id"]
    assert _journal_put(login_as("emp1")).status_code == 403

    assert login_as("emp1").patch("/audit-session", json={}).status_code == 403

    r = head.patch("/audit-session", json={"comment": "No findings"})
    assert r.status_code == 200
    closed = r.get_json()["session"]
    assert closed["status"] == "closed"
    assert closed["endedAt"] is not None
    assert closed["comment"] == "No findings"

    assert login_as("emp1").get("/audit-session").get_json() == {"session": None, "auditMode": False}
    assert _journal_put(login_as("emp1")).status_code == 200

    r = head.patch("/audit-session", json={})
    assert r.status_code == 404

    # events after close are no longer tagged
    with session_scope(app) as s:
        ev = s.query(AuditEvent).filter(AuditEvent.action == "journal.temperature.upsert").one()
        assert ev.audit_session_id is None
        tagged = s.query(AuditEvent).filter(AuditEvent.audit_session_id == session_id).all()
        assert {e.action for e in tagged} == {"audit_session.start", "audit_session.close"}

    # a new session may be opened afterwards
    assert _start(head, audit_type="Internal").status_code == 200


def test_guard_check_at_service_level(app, login_as):
    guard = app.extensions["audit_guard"]
    with session_scope(app) as s:
        guard.check_and_maybe_reject(s, "journal.upsert")

    session_id = _start(login_as("head")).get_json()["session"]["id"]
    with session_scope(app) as s:
        with pytest.raises(AuditLockError) as exc:
            guard.check_and_maybe_reject(s, "journal.upsert")
        assert exc.value.audit_session_id == session_id
        assert exc.value.operation == "journal.upsert"
        s.rollback()


def test_state_row_is_created_when_missing(app, login_as):
    with session_scope(app) as s:
        s.query(AuditModeState).delete()

    assert login_as("emp1").get("/audit-session").get_json()["auditMode"] is False
    assert _start(login_as("head")).status_code == 200
    with session_scope(app) as s:
        assert s.get(AuditModeState, AuditModeState.SINGLETON_ID).active_session_id is not None

@pytest.mark.parametrize("query", ["limit=²", "limit=0", "auditSessionId=²", f"auditSessionId={10**20}"])
def test_audit_log_rejects_malformed_filters(login_as, query):
    r = login_as("tech").get(f"/audit-log?{query}")
    assert r.status_code == 400
    body = r.get_json()
    assert body["reason"] == "validation_error"
    assert set(body["details"]) == {query.split("=")[0]}


def test_state_row_insert_keeps_existing_row(app, login_as):
    session_id = _start(login_as("head")).get_json()["session"]["id"]
    guard = app.extensions["audit_guard"]
    with session_scope(app) as s:
        # a second request racing to seed the row finds it already there
        guard._insert_state_row(s)
    with session_scope(app) as s:
        assert s.query(AuditModeState).count() == 1
        assert guard.active_session(s).id == session_id
