from datetime import datetime

import pytest

from app.qdocs.errors import ValidationError
from app.qdocs.modules.documents.models import ExecutionStatus, TaskAction, TaskDecision
from app.qdocs.modules.documents.schemas import (
    parse_advance_assignment,
    parse_create_document,
    parse_set_assignments,
    parse_stages_only,
    parse_task_decision,
)


def _payload(**overrides):
    data = {
        "title": "Hand washing",
        "body": "Hand washing before entering production.",
        "recipientId": 2,
        "stages": [{"assigneeId": 3, "action": "approve"}],
    }
    data.update(overrides)
    return data


def test_create_document_parses_optional_fields():
    data = parse_create_document(
        _payload(
            title="  Hand washing  ",
            responsibleId="4",
            watchers=[5, "6"],
            executionAssignees=[7],
            executionNotes="  ",
            stages=[{"assigneeId": 3, "action": "sign", "instruction": "Sign page 2", "canSkip": True}],
        )
    )
    assert data.title == "Hand washing"
    assert data.responsible_id == 4
    assert data.watchers == [5, 6]
    assert data.execution_notes is None
    (stage,) = data.stages
    assert stage.action is TaskAction.SIGN
    assert stage.instruction == "Sign page 2"
    assert stage.can_skip is True
    assert stage.comment_required is False
    assert data.referenced_user_ids() == {2, 3, 4, 5, 6, 7}


def test_create_document_collects_all_field_errors():
    with pytest.raises(ValidationError) as exc:
        parse_create_document(
            {
                "title": "ab",
                "body": "short",
                "recipientId": True,
                "stages": [{"assigneeId": "x", "action": "stamp", "canSkip": "yes"}],
                "watchers": "5",
            }
        )
    assert set(exc.value.details) == {
        "title",
        "body",
        "recipientId",
        "stages[0].assigneeId",
        "stages[0].action",
        "stages[0].canSkip",
        "watchers",
    }


@pytest.mark.parametrize("payload", [None, [], "text"])
def test_body_must_be_object(payload):
    with pytest.raises(ValidationError) as exc:
        parse_create_document(payload)
    assert exc.value.details == {"body": "expected object"}


def test_stages_only_requires_non_empty_list():
    with pytest.raises(ValidationError):
        parse_stages_only([])
    assert [s.assignee_id for s in parse_stages_only([{"assigneeId": 9, "action": "review"}])] == [9]


def test_task_decision():
    assert parse_task_decision({"decision": "skip"}).decision is TaskDecision.SKIP
    assert parse_task_decision({"decision": "reject", "comment": "  wrong scope "}).comment == "wrong scope"
    with pytest.raises(ValidationError):
        parse_task_decision({"decision": "approve"})
    with pytest.raises(ValidationError):
        parse_task_decision({"decision": "complete", "comment": 5})


def test_assignment_deadline_normalised_to_naive_utc():
    data = parse_set_assignments(
        {
            "assignments": [
                {"assigneeId": 1, "deadline": "2026-11-01T15:00:00+03:00"},
                {"assigneeId": 2, "deadline": "2026-11-01T12:00:00Z"},
                {"assigneeId": 3},
            ],
            "notes": "Before audit",
        }
    )
    assert [a.deadline for a in data.assignments] == [
        datetime(2026, 11, 1, 12, 0),
        datetime(2026, 11, 1, 12, 0),
        None,
    ]
    assert data.notes == "Before audit"


def test_assignment_errors():
    with pytest.raises(ValidationError) as exc:
        parse_set_assignments({"assignments": [{"assigneeId": 1, "deadline": "next week"}, "x"]})
    assert set(exc.value.details) == {"assignments[0].deadline", "assignments[1]"}

    with pytest.raises(ValidationError) as exc:
        parse_set_assignments({"assignments": []})
    assert "assignments" in exc.value.details


def test_advance_assignment_rejects_pending_target():
    data = parse_advance_assignment({"assignmentId": "12", "status": "viewed"})
    assert data.assignment_id == 12
    assert data.status is ExecutionStatus.VIEWED

    with pytest.raises(ValidationError) as exc:
        parse_advance_assignment({"assignmentId": 12, "status": "pending"})
    assert set(exc.value.details) == {"status"}


@pytest.mark.parametrize("value", ["--1", "²", "1.5", "", 0, -3, 10**20, "99999999999", 2.0])
def test_ids_outside_integer_key_range_are_rejected(value):
    with pytest.raises(ValidationError) as exc:
        parse_create_document(_payload(recipientId=value))
    assert exc.value.details == {"recipientId": "required integer"}


def test_ids_accept_padded_numeric_strings():
    data = parse_create_document(_payload(recipientId=" 12 ", watchers=["2147483647"]))
    assert data.recipient_id == 12
    assert data.watchers == [2147483647]


def test_assignment_id_must_fit_integer_key():
    with pytest.raises(ValidationError) as exc:
        parse_advance_assignment({"assignmentId": 2**31, "status": "completed"})
    assert "assignmentId" in exc.value.details
