"""
Request payload parsing for the documents API.

Each ``parse_*`` function takes the decoded JSON body and either returns a
typed input object or raises ValidationError with per-field messages, before
anything reaches the engine.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from app.qdocs.db import parse_id
from app.qdocs.errors import ValidationError

from .models import ExecutionStatus, TaskAction, TaskDecision


@dataclass(frozen=True)
class StageInput:
    assignee_id: int
    action: TaskAction
    instruction: str | None = None
    can_skip: bool = False
    comment_required: bool = False


@dataclass(frozen=True)
class CreateDocumentInput:
    title: str
    body: str
    recipient_id: int
    stages: list[StageInput]
    responsible_id: int | None = None
    watchers: list[int] = field(default_factory=list)
    execution_assignees: list[int] = field(default_factory=list)
    execution_notes: str | None = None

    def referenced_user_ids(self) -> set[int]:
        ids = {self.recipient_id}
        if self.responsible_id is not None:
            ids.add(self.responsible_id)
        ids.update(st.assignee_id for st in self.stages)
        ids.update(self.watchers)
        ids.update(self.execution_assignees)
        return ids


@dataclass(frozen=True)
class AssignmentInput:
    assignee_id: int
    deadline: datetime | None = None
    comment: str | None = None


@dataclass(frozen=True)
class SetAssignmentsInput:
    assignments: list[AssignmentInput]
    notes: str | None = None


@dataclass(frozen=True)
class AdvanceAssignmentInput:
    assignment_id: int
    status: ExecutionStatus
    comment: str | None = None


@dataclass(frozen=True)
class TaskDecisionInput:
    decision: TaskDecision
    comment: str = ""


def _require_object(payload: Any) -> dict:
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object", details={"body": "expected object"})
    return payload


def _opt_str(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise TypeError("expected string")
    value = value.strip()
    return value or None


def _int_list(value: Any, name: str, errors: dict[str, str]) -> list[int]:
    if value is None:
        return []
    if not isinstance(value, list):
        errors[name] = "expected a list of user ids"
        return []
    out: list[int] = []
    for item in value:
        iv = parse_id(item)
        if iv is None:
            errors[name] = "expected a list of user ids"
            return []
        out.append(iv)
    return out


def _parse_datetime(value: Any) -> datetime:
    if not isinstance(value, str) or not value.strip():
        raise ValueError("expected ISO 8601 datetime")
    raw = value.strip()
    if raw.endswith("Z"):
        raw = raw[:-1] + "+00:00"
    dt = datetime.fromisoformat(raw)
    # Stored naive UTC, like every other timestamp in the schema.
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _parse_stage(raw: Any, idx: int, errors: dict[str, str]) -> StageInput | None:
    key = f"stages[{idx}]"
    if not isinstance(raw, dict):
        errors[key] = "expected object"
        return None
    assignee_id = parse_id(raw.get("assigneeId"))
    if assignee_id is None:
        errors[f"{key}.assigneeId"] = "required integer"
    try:
        action = TaskAction(raw.get("action"))
    except ValueError:
        errors[f"{key}.action"] = f"must be one of {[a.value for a in TaskAction]}"
        action = None
    try:
        instruction = _opt_str(raw.get("instruction"))
    except TypeError:
        errors[f"{key}.instruction"] = "expected string"
        instruction = None
    flags = {}
    for name in ("canSkip", "commentRequired"):
        v = raw.get(name, False)
        if not isinstance(v, bool):
            errors[f"{key}.{name}"] = "expected boolean"
            v = False
        flags[name] = v
    if assignee_id is None or action is None:
        return None
    return StageInput(
        assignee_id=assignee_id,
        action=action,
        instruction=instruction,
        can_skip=flags["canSkip"],
        comment_required=flags["commentRequired"],
    )


def parse_create_document(payload: Any) -> CreateDocumentInput:
    data = _require_object(payload)
    errors: dict[str, str] = {}

    title = data.get("title")
    if not isinstance(title, str) or len(title.strip()) < 3:
        errors["title"] = "at least 3 characters"
    body = data.get("body")
    if not isinstance(body, str) or len(body.strip()) < 10:
        errors["body"] = "at least 10 characters"

    recipient_id = parse_id(data.get("recipientId"))
    if recipient_id is None:
        errors["recipientId"] = "required integer"

    responsible_id = None
    if data.get("responsibleId") is not None:
        responsible_id = parse_id(data.get("responsibleId"))
        if responsible_id is None:
            errors["responsibleId"] = "expected integer"

    raw_stages = data.get("stages")
    stages: list[StageInput] = []
    if not isinstance(raw_stages, list) or not raw_stages:
        errors["stages"] = "add at least one stage"
    else:
        for i, raw in enumerate(raw_stages):
            st = _parse_stage(raw, i, errors)
            if st is not None:
                stages.append(st)

    watchers = _int_list(data.get("watchers"), "watchers", errors)
    execution_assignees = _int_list(data.get("executionAssignees"), "executionAssignees", errors)

    try:
        execution_notes = _opt_str(data.get("executionNotes"))
    except TypeError:
        errors["executionNotes"] = "expected string"
        execution_notes = None

    if errors:
        raise ValidationError("Invalid document payload", details=errors)

    return CreateDocumentInput(
        title=title.strip(),
        body=body.strip(),
        recipient_id=recipient_id,  # type: ignore[arg-type]
        responsible_id=responsible_id,
        stages=stages,
        watchers=watchers,
        execution_assignees=execution_assignees,
        execution_notes=execution_notes,
    )


def parse_stages_only(raw_stages: Any) -> list[StageInput]:
    """Stage list for imports: same shape as on create, flags optional."""
    errors: dict[str, str] = {}
    if not isinstance(raw_stages, list) or not raw_stages:
        raise ValidationError("Invalid stages", details={"stages": "add at least one stage"})
    stages = []
    for i, raw in enumerate(raw_stages):
        st = _parse_stage(raw, i, errors)
        if st is not None:
            stages.append(st)
    if errors:
        raise ValidationError("Invalid stages", details=errors)
    return stages


def parse_task_decision(payload: Any) -> TaskDecisionInput:
    data = _require_object(payload)
    try:
        decision = TaskDecision(data.get("decision"))
    except ValueError:
        raise ValidationError(
            "Invalid decision",
            details={"decision": f"must be one of {[d.value for d in TaskDecision]}"},
        ) from None
    comment = data.get("comment")
    if comment is not None and not isinstance(comment, str):
        raise ValidationError("Invalid decision", details={"comment": "expected string"})
    return TaskDecisionInput(decision=decision, comment=(comment or "").strip())


def parse_set_assignments(payload: Any) -> SetAssignmentsInput:
    data = _require_object(payload)
    errors: dict[str, str] = {}

    raw = data.get("assignments")
    assignments: list[AssignmentInput] = []
    if not isinstance(raw, list) or not raw:
        errors["assignments"] = "at least one assignee is required"
    else:
        for i, item in enumerate(raw):
            key = f"assignments[{i}]"
            if not isinstance(item, dict):
                errors[key] = "expected object"
                continue
            assignee_id = parse_id(item.get("assigneeId"))
            if assignee_id is None:
                errors[f"{key}.assigneeId"] = "required integer"
                continue
            deadline = None
            if item.get("deadline") is not None:
                try:
                    deadline = _parse_datetime(item.get("deadline"))
                except ValueError:
                    errors[f"{key}.deadline"] = "expected ISO 8601 datetime"
                    continue
            try:
                comment = _opt_str(item.get("comment"))
            except TypeError:
                errors[f"{key}.comment"] = "expected string"
                continue
            assignments.append(AssignmentInput(assignee_id=assignee_id, deadline=deadline, comment=comment))

    try:
        notes = _opt_str(data.get("notes"))
    except TypeError:
        errors["notes"] = "expected string"
        notes = None

    if errors:
        raise ValidationError("Invalid assignment payload", details=errors)
    return SetAssignmentsInput(assignments=assignments, notes=notes)


def parse_advance_assignment(payload: Any) -> AdvanceAssignmentInput:
    data = _require_object(payload)
    errors: dict[str, str] = {}

    assignment_id = parse_id(data.get("assignmentId"))
    if assignment_id is None:
        errors["assignmentId"] = "required integer"

    status = None
    try:
        status = ExecutionStatus(data.get("status"))
    except ValueError:
        errors["status"] = "must be one of ['viewed', 'in_progress', 'completed']"
    if status is ExecutionStatus.PENDING:
        errors["status"] = "must be one of ['viewed', 'in_progress', 'completed']"

    try:
        comment = _opt_str(data.get("comment"))
    except TypeError:
        errors["comment"] = "expected string"
        comment = None

    if errors:
        raise ValidationError("Invalid status payload", details=errors)
    return AdvanceAssignmentInput(assignment_id=assignment_id, status=status, comment=comment)  # type: ignore[arg-type]
