import pytest

from app.qdocs.db import session_scope
from app.qdocs.errors import IllegalTransitionError
from app.qdocs.models import User
from app.qdocs.modules.documents import service
from app.qdocs.modules.documents.models import ExecutionAssignment, ExecutionStatus
from app.qdocs.modules.documents.schemas import AdvanceAssignmentInput

from tests.conftest import create_document, task_ids


def _approved_document(login_as, users, **extra) -> dict:
    doc = create_document(
        login_as("director"),
        recipient=users["emp1"],
        stages=[{"assigneeId": users["emp1"], "action": "approve"}],
        **extra,
    )
    r = login_as("emp1").patch(f"/tasks/{task_ids(doc)[1]}", json={"decision": "complete"})
    assert r.status_code == 200
    return r.get_json()["document"]


def _assignment_id(doc: dict, assignee_id: int) -> int:
    for a in doc["executionAssignments"]:
        if a["assignee"]["id"] == assignee_id:
            return a["id"]
    raise KeyError(assignee_id)


def test_execution_fan_out_until_executed(login_as, users):
    doc = _approved_document(login_as, users)
    assert doc["status"] == "approved"

    r = login_as("director").put(
        f"/documents/{doc['id']}/execution",
        json={
            "assignments": [
                {"assigneeId": users["emp2"], "deadline": "2026-11-01T12:00:00Z"},
                {"assigneeId": users["emp3"], "comment": "Night shift"},
            ],
            "notes": "Post on the notice board",
        },
    )
    assert r.status_code == 200
    doc = r.get_json()["document"]
    assert doc["status"] == "in_execution"
    assert doc["executionNotes"] == "Post on the notice board"
    assert {a["status"] for a in doc["executionAssignments"]} == {"pending"}
    a2 = _assignment_id(doc, users["emp2"])
    a3 = _assignment_id(doc, users["emp3"])
    assert next(a for a in doc["executionAssignments"] if a["id"] == a2)["deadline"] == "2026-11-01T12:00:00"

    emp2 = login_as("emp2")
    r = emp2.patch(f"/documents/{doc['id']}/execution", json={"assignmentId": a2, "status": "viewed"})
    assert r.status_code == 200
    assert r.get_json()["assignment"]["allowedNext"] == ["completed", "in_progress"]

    r = emp2.patch(f"/documents/{doc['id']}/execution", json={"assignmentId": a2, "status": "completed"})
    assert r.status_code == 200
    assert r.get_json()["document"]["status"] == "in_execution"

    emp3 = login_as("emp3")
    r = emp3.patch(f"/documents/{doc['id']}/execution", json={"assignmentId": a3, "status": "in_progress"})
    assert r.status_code == 200
    r = emp3.patch(
        f"/documents/{doc['id']}/execution",
        json={"assignmentId": a3, "status": "completed", "comment": "Done"},
    )
    assert r.status_code == 200
    body = r.get_json()
    assert body["assignment"]["comment"] == "Done"
    assert body["document"]["status"] == "executed"


def test_backwards_and_repeated_transitions_rejected(login_as, users):
    doc = _approved_document(login_as, users)
    r = login_as("director").put(
        f"/documents/{doc['id']}/execution",
        json={"assignments": [{"assigneeId": users["emp2"]}, {"assigneeId": users["emp3"]}]},
    )
    doc = r.get_json()["document"]
    a2 = _assignment_id(doc, users["emp2"])
    emp2 = login_as("emp2")

    assert emp2.patch(f"/documents/{doc['id']}/execution", json={"assignmentId": a2, "status": "in_progress"}).status_code == 200

    for status in ("viewed", "in_progress"):
        r = emp2.patch(f"/documents/{doc['id']}/execution", json={"assignmentId": a2, "status": status})
        assert r.status_code == 400
        body = r.get_json()
        assert body["reason"] == "illegal_transition"
        assert body["details"] == {"current": "in_progress", "requested": status}

    r = emp2.patch(f"/documents/{doc['id']}/execution", json={"assignmentId": a2, "status": "pending"})
    assert r.status_code == 400
    assert r.get_json()["reason"] == "validation_error"


def test_only_own_assignee_may_advance(login_as, users):
    doc = _approved_document(login_as, users)
    r = login_as("director").put(
        f"/documents/{doc['id']}/execution",
        json={"assignments": [{"assigneeId": users["emp2"]}, {"assigneeId": users["emp3"]}]},
    )
    doc = r.get_json()["document"]
    a3 = _assignment_id(doc, users["emp3"])

    for handle in ("emp2", "director"):
        r = login_as(handle).patch(f"/documents/{doc['id']}/execution", json={"assignmentId": a3, "status": "viewed"})
        assert r.status_code == 403

    r = login_as("emp3").patch(f"/documents/{doc['id']}/execution", json={"assignmentId": 99999, "status": "viewed"})
    assert r.status_code == 404


def test_set_assignments_authorization_and_validation(login_as, users):
    doc = _approved_document(login_as, users)
    url = f"/documents/{doc['id']}/execution"

    # emp3 is neither author, recipient nor responsible
    r = login_as("emp3").put(url, json={"assignments": [{"assigneeId": users["emp2"]}]})
    assert r.status_code == 403

    # recipient may assign
    r = login_as("emp1").put(url, json={"assignments": []})
    assert r.status_code == 400

    r = login_as("emp1").put(url, json={"assignments": [{"assigneeId": 31337}]})
    assert r.status_code == 400
    assert r.get_json()["details"]["users"] == [31337]

    r = login_as("emp1").put(url, json={"assignments": [{"assigneeId": users["emp2"]}]})
    assert r.status_code == 200


def test_assignments_need_resolved_route(login_as, users):
    doc = create_document(
        login_as("director"),
        recipient=users["emp1"],
        stages=[{"assigneeId": users["emp1"], "action": "approve"}],
    )
    r = login_as("director").put(
        f"/documents/{doc['id']}/execution",
        json={"assignments": [{"assigneeId": users["emp2"]}]},
    )
    assert r.status_code == 400
    body = r.get_json()
    assert body["reason"] == "illegal_transition"
    assert body["details"]["current"] == "in_progress"


def test_duplicates_collapse_and_absent_assignees_are_pruned(app, login_as, users):
    doc = _approved_document(login_as, users)
    url = f"/documents/{doc['id']}/execution"
    director = login_as("director")

    r = director.put(
        url,
        json={
            "assignments": [
                {"assigneeId": users["emp2"], "comment": "first"},
                {"assigneeId": users["emp2"], "comment": "second"},
                {"assigneeId": users["emp3"]},
            ]
        },
    )
    assert r.status_code == 200
    doc = r.get_json()["document"]
    assert len(doc["executionAssignments"]) == 2
    a2 = _assignment_id(doc, users["emp2"])
    assert next(a for a in doc["executionAssignments"] if a["id"] == a2)["comment"] == "second"

    login_as("emp2").patch(url, json={"assignmentId": a2, "status": "viewed"})

    # re-assign: emp2 kept with status untouched, emp3 dropped, emp1 added
    r = director.put(url, json={"assignments": [{"assigneeId": users["emp2"]}, {"assigneeId": users["emp1"]}]})
    assert r.status_code == 200
    doc = r.get_json()["document"]
    by_user = {a["assignee"]["id"]: a for a in doc["executionAssignments"]}
    assert set(by_user) == {users["emp1"], users["emp2"]}
    assert by_user[users["emp2"]]["id"] == a2
    assert by_user[users["emp2"]]["status"] == "viewed"
    assert by_user[users["emp1"]]["status"] == "pending"

    with session_scope(app) as s:
        assert s.query(ExecutionAssignment).filter(ExecutionAssignment.document_id == doc["id"]).count() == 2


def test_assignees_attached_at_creation_start_execution_on_approval(login_as, users):
    doc = _approved_document(login_as, users, executionAssignees=[users["emp2"], users["emp2"]])
    assert doc["status"] == "in_execution"
    assert [a["assignee"]["id"] for a in doc["executionAssignments"]] == [users["emp2"]]

    a2 = _assignment_id(doc, users["emp2"])
    r = login_as("emp2").patch(f"/documents/{doc['id']}/execution", json={"assignmentId": a2, "status": "completed"})
    assert r.status_code == 200
    assert r.get_json()["document"]["status"] == "executed"

    # executed documents do not accept new assignments
    r = login_as("director").put(
        f"/documents/{doc['id']}/execution",
        json={"assignments": [{"assigneeId": users["emp3"]}]},
    )
    assert r.status_code == 400
    assert r.get_json()["details"]["current"] == "executed"


def test_advance_rereads_status_inside_transaction(app, login_as, users):
    doc = _approved_document(login_as, users, executionAssignees=[users["emp2"]])
    a2 = _assignment_id(doc, users["emp2"])

    sm = app.extensions["sqlalchemy_sessionmaker"]
    stale = sm()
    try:
        stale.get(ExecutionAssignment, a2)  # cached as pending

        r = login_as("emp2").patch(f"/documents/{doc['id']}/execution", json={"assignmentId": a2, "status": "completed"})
        assert r.status_code == 200

        with pytest.raises(IllegalTransitionError):
            service.advance_assignment(
                stale,
                actor=stale.get(User, users["emp2"]),
                document_id=doc["id"],
                data=AdvanceAssignmentInput(assignment_id=a2, status=ExecutionStatus.IN_PROGRESS),
            )
        stale.rollback()
    finally:
        stale.close()


@pytest.mark.parametrize(
    "current,allowed",
    [
        ("pending", {"viewed", "in_progress", "completed"}),
        ("viewed", {"in_progress", "completed"}),
        ("in_progress", {"completed"}),
        ("completed", set()),
    ],
)
def test_allowed_next_table(current, allowed):
    status = ExecutionStatus(current)
    assert {s.value for s in status.allowed_next()} == allowed
    for target in ExecutionStatus:
        assert status.can_advance_to(target) is (target.value in allowed)
