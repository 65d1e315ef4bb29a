from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

from services.crm_rbac import ActorIdentity, normalize_identity
from services.pipeline_rules import is_won, stage_key


def parse_timestamp(value: Any) -> Optional[datetime]:
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _value(record: Dict[str, Any]) -> float:
    try:
        return float(record.get("value") or 0)
    except (TypeError, ValueError):
        return 0.0


def compute_stage_counts(records: Iterable[Dict[str, Any]]) -> Dict[str, Dict[str, float]]:
    counts: Dict[str, Dict[str, float]] = {}
    for record in records:
        bucket = counts.setdefault(stage_key(record.get("stage")), {"count": 0, "value": 0.0})
        bucket["count"] += 1
        bucket["value"] += _value(record)
    return counts


def window_start(days_back: int, now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    start = now - timedelta(days=max(0, int(days_back)))
    return start.replace(hour=0, minute=0, second=0, microsecond=0)


def _trend_label(moment: datetime) -> str:
    return f"{moment.strftime('%b')} {moment.day}"


def compute_dashboard_stats(
    records: Iterable[Dict[str, Any]],
    days_back: int = 30,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    start = window_start(days_back, now)
    windowed = []
    for record in records:
        created = parse_timestamp(record.get("createdAt"))
        if created is not None and created >= start:
            windowed.append((created, record))

    total = len(windowed)
    won = sum(1 for _, record in windowed if is_won(record))
    lost = sum(1 for _, record in windowed if record.get("status") == "Lost")
    open_count = sum(1 for _, record in windowed if record.get("status") == "Open")
    conversion_rate = round(won * 100.0 / total, 2) if total else 0.0

    trend: Dict[str, float] = {}
    cumulative = 0.0
    for created, record in sorted(windowed, key=lambda pair: pair[0]):
        cumulative += _value(record)
        trend[_trend_label(created)] = cumulative

    tasks = [task for _, record in windowed for task in record.get("tasks") or []]
    completed = sum(1 for task in tasks if task.get("isCompleted"))

    return {
        "totalOpportunities": total,
        "totalPipelineValue": sum(_value(record) for _, record in windowed),
        "wonOpportunities": won,
        "lostOpportunities": lost,
        "openOpportunities": open_count,
        "conversionRate": conversion_rate,
        "stageBreakdown": compute_stage_counts(record for _, record in windowed),
        "pipelineTrend": [{"name": name, "value": value} for name, value in trend.items()],
        "taskStats": {"completed": completed, "pending": len(tasks) - completed, "total": len(tasks)},
        "windowStart": start.isoformat().replace("+00:00", "Z"),
    }


def tasks_assigned_to(records: Iterable[Dict[str, Any]], actor: ActorIdentity) -> List[Dict[str, Any]]:
    out = []
    for record in records:
        for task in record.get("tasks") or []:
            if actor.matches(task.get("assignee")):
                out.append(
                    {
                        **task,
                        "opportunityId": record.get("id"),
                        "opportunityName": record.get("name"),
                    }
                )
    out.sort(key=lambda task: (bool(task.get("isCompleted")), task.get("dueDate") or "9999-12-31", task.get("dueTime") or ""))
    return out


def task_visibility_report(records: Iterable[Dict[str, Any]], actor: ActorIdentity) -> Dict[str, Any]:
    """Why a user does or does not see tasks: where every task is assigned."""
    opportunities = 0
    total = 0
    mine = 0
    unassigned = 0
    others = 0
    by_assignee: Dict[str, int] = {}
    for record in records:
        opportunities += 1
        for task in record.get("tasks") or []:
            total += 1
            assignee = normalize_identity(task.get("assignee"))
            if not assignee:
                unassigned += 1
            elif actor.matches(assignee):
                mine += 1
            else:
                others += 1
            label = assignee or "(unassigned)"
            by_assignee[label] = by_assignee.get(label, 0) + 1
    return {
        "actor": {"id": actor.user_id, "email": actor.email},
        "opportunities": opportunities,
        "totalTasks": total,
        "assignedToMe": mine,
        "assignedToOthers": others,
        "unassigned": unassigned,
        "byAssignee": by_assignee,
    }
