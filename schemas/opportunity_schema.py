from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

OPPORTUNITY_STATUSES = ("Open", "Won", "Lost", "Abandoned")

OPPORTUNITY_MUTABLE_FIELDS = {
    "name",
    "value",
    "stage",
    "status",
    "source",
    "owner",
    "tags",
    "contactId",
    "contactName",
    "contactEmail",
    "contactPhone",
    "companyName",
    "pipelineId",
    "followUpDate",
    "followUpRead",
    "tasks",
    "notes",
}

TASK_IDENTITY_FIELDS = ("createdBy", "assignee", "assignedBy")
TASK_FIELDS = {
    "id",
    "title",
    "description",
    "isCompleted",
    "dueDate",
    "dueTime",
    "isRecurring",
    "assignee",
    "assignedBy",
    "createdBy",
}

_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def _optional_str(payload: Dict[str, Any], field: str) -> Optional[str]:
    value = payload.get(field)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _require_str(payload: Dict[str, Any], field: str) -> str:
    text = _optional_str(payload, field)
    if not text:
        raise ValueError(f"{field} is required")
    return text


def normalize_tags(value: Any) -> List[str]:
    """Split, trim and de-duplicate tags case-insensitively, keeping the first spelling."""
    if value is None:
        return []
    if isinstance(value, str):
        raw_items: Iterable[Any] = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        raw_items = value
    else:
        raise ValueError("tags must be a list or comma-separated string")
    seen = set()
    out: List[str] = []
    for item in raw_items:
        text = " ".join(str(item or "").split())
        if not text:
            continue
        key = text.casefold()
        if key in seen:
            continue
        seen.add(key)
        out.append(text)
    return out


def normalize_value(raw: Any) -> float:
    if raw is None or raw == "":
        return 0.0
    try:
        numeric = float(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError("value must be numeric") from exc
    if numeric != numeric or numeric < 0:
        raise ValueError("value must be a non-negative number")
    return numeric


def normalize_status(raw: Any) -> str:
    text = str(raw or "Open").strip().lower()
    for status in OPPORTUNITY_STATUSES:
        if status.lower() == text:
            return status
    raise ValueError(f"Invalid status: {raw}")


def normalize_date(raw: Any, field: str = "date") -> Optional[str]:
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw.date().isoformat()
    if isinstance(raw, date):
        return raw.isoformat()
    text = str(raw).strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10]).isoformat()
    except ValueError as exc:
        raise ValueError(f"{field} must be YYYY-MM-DD") from exc


def normalize_time(raw: Any, field: str = "time") -> Optional[str]:
    text = str(raw or "").strip()
    if not text:
        return None
    if not _TIME_RE.match(text[:5]):
        raise ValueError(f"{field} must be HH:MM")
    return text[:5]


def normalize_task(raw: Any) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise ValueError("task must be an object")
    task = {key: raw[key] for key in TASK_FIELDS if key in raw}
    task["id"] = str(raw.get("id") or uuid4().hex)
    task["title"] = _require_str(raw, "title")
    task["isCompleted"] = bool(raw.get("isCompleted"))
    for field in TASK_IDENTITY_FIELDS:
        if field in task:
            task[field] = _optional_str(task, field)
    if "dueDate" in task:
        task["dueDate"] = normalize_date(task.get("dueDate"), "dueDate")
    if "dueTime" in task:
        task["dueTime"] = normalize_time(task.get("dueTime"), "dueTime")
    if "isRecurring" in task:
        task["isRecurring"] = bool(task.get("isRecurring"))
    return {key: value for key, value in task.items() if value is not None}


def normalize_tasks(raw: Any) -> List[Dict[str, Any]]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError("tasks must be a list")
    tasks = [normalize_task(item) for item in raw]
    ids = [task["id"] for task in tasks]
    if len(ids) != len(set(ids)):
        raise ValueError("task ids must be unique")
    return tasks


def normalize_notes(raw: Any) -> List[Dict[str, Any]]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ValueError("notes must be a list")
    notes = []
    for item in raw:
        if not isinstance(item, dict):
            raise ValueError("note must be an object")
        notes.append(
            {
                "id": str(item.get("id") or uuid4().hex),
                "content": str(item.get("content") or ""),
                "createdAt": item.get("createdAt") or datetime.utcnow().isoformat() + "Z",
            }
        )
    return notes


def _normalize_field(name: str, value: Any) -> Any:
    if name == "value":
        return normalize_value(value)
    if name == "status":
        return normalize_status(value)
    if name == "tags":
        return normalize_tags(value)
    if name == "followUpDate":
        return normalize_date(value, "followUpDate")
    if name == "followUpRead":
        return bool(value)
    if name == "tasks":
        return normalize_tasks(value)
    if name == "notes":
        return normalize_notes(value)
    if name == "stage":
        return str(value or "").strip() or None
    if value is None:
        return None
    return str(value).strip()


def validate_opportunity_create(payload: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValueError("Invalid JSON payload")
    record: Dict[str, Any] = {"name": _require_str(payload, "name")}
    for name in OPPORTUNITY_MUTABLE_FIELDS - {"name"}:
        if name in payload:
            record[name] = _normalize_field(name, payload.get(name))
    record.setdefault("value", 0.0)
    record.setdefault("status", "Open")
    record.setdefault("tags", [])
    record.setdefault("tasks", [])
    record.setdefault("notes", [])
    record.setdefault("followUpRead", False)
    return record


def validate_opportunity_update(payload: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValueError("Invalid JSON payload")
    updates = {name: _normalize_field(name, payload.get(name)) for name in OPPORTUNITY_MUTABLE_FIELDS if name in payload}
    if "name" in updates and not updates["name"]:
        raise ValueError("name is required")
    return updates


APPOINTMENT_FIELDS = {"title", "date", "time", "assignedTo", "contactId", "opportunityId", "notes"}


def _normalize_appointment_field(name: str, value: Any) -> Any:
    if name == "date":
        return normalize_date(value)
    if name == "time":
        return normalize_time(value)
    if value is None:
        return None
    return str(value).strip() or None


def validate_appointment_create(payload: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValueError("Invalid JSON payload")
    record = {name: _normalize_appointment_field(name, payload.get(name)) for name in APPOINTMENT_FIELDS if name in payload}
    record["title"] = _require_str(payload, "title")
    for name in ("date", "time"):
        if not record.get(name):
            raise ValueError(f"{name} is required")
    return {key: value for key, value in record.items() if value is not None}


def validate_appointment_update(payload: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise ValueError("Invalid JSON payload")
    updates = {name: _normalize_appointment_field(name, payload.get(name)) for name in APPOINTMENT_FIELDS if name in payload}
    for name in ("title", "date", "time"):
        if name in updates and not updates[name]:
            raise ValueError(f"{name} is required")
    return updates
