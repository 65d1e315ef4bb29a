from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from services.crm_rbac import (
    ActorIdentity,
    can_delete_task,
    can_edit_task,
    can_toggle_task_completion,
)

logger = logging.getLogger(__name__)

ACTION_DELETE = "delete"
ACTION_EDIT = "edit"
ACTION_COMPLETE = "complete"

_DENIED_MESSAGES = {
    ACTION_DELETE: 'Permission denied: You cannot delete task "{title}" because you did not create it.',
    ACTION_EDIT: 'Permission denied: You cannot edit task "{title}" because you did not create it.',
    ACTION_COMPLETE: 'Permission denied: You cannot complete task "{title}" because it is not assigned to you.',
}


class CRMPermissionError(Exception):
    code = "forbidden"


class TaskPermissionError(CRMPermissionError):
    code = "task_permission_denied"

    def __init__(self, action: str, task: Dict[str, Any]):
        self.action = action
        self.task_id = str(task.get("id") or "")
        self.task_title = str(task.get("title") or "")
        super().__init__(_DENIED_MESSAGES[action].format(title=self.task_title))

    def to_details(self) -> Dict[str, str]:
        return {"action": self.action, "taskId": self.task_id, "taskTitle": self.task_title}


def _index_tasks(tasks: Optional[List[Dict[str, Any]]]) -> Dict[str, Dict[str, Any]]:
    return {str(task.get("id")): task for task in tasks or [] if task.get("id") is not None}


def _without_completion(task: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in task.items() if key != "isCompleted"}


def classify_task_change(old: Dict[str, Any], new: Dict[str, Any]) -> Optional[str]:
    """None when unchanged, "complete" for a completion-only toggle, otherwise "edit"."""
    if old == new:
        return None
    if _without_completion(old) == _without_completion(new):
        return ACTION_COMPLETE
    return ACTION_EDIT


def stamp_new_tasks(
    old_tasks: Optional[List[Dict[str, Any]]],
    new_tasks: List[Dict[str, Any]],
    actor: ActorIdentity,
) -> List[Dict[str, Any]]:
    """
    Carry stored authorship onto incoming tasks and stamp the actor on new ones.
    createdBy never changes once recorded, and a new task is always credited to
    the actor, whatever the client sent.
    """
    previous = _index_tasks(old_tasks)
    stamped: List[Dict[str, Any]] = []
    for task in new_tasks:
        task = dict(task)
        old = previous.get(str(task.get("id")))
        if old is not None:
            if old.get("createdBy"):
                task["createdBy"] = old["createdBy"]
            else:
                task.pop("createdBy", None)
            if task.get("assignee") != old.get("assignee") and actor.label:
                task["assignedBy"] = actor.label
        else:
            task.pop("createdBy", None)
            task.pop("assignedBy", None)
            if actor.label:
                task["createdBy"] = actor.label
                task["assignedBy"] = actor.label
        stamped.append(task)
    return stamped


def check_task_changes(
    old_tasks: Optional[List[Dict[str, Any]]],
    new_tasks: List[Dict[str, Any]],
    actor: ActorIdentity,
    *,
    legacy_policy: Optional[str] = None,
) -> None:
    """Raise TaskPermissionError on the first change the actor may not make."""
    previous = _index_tasks(old_tasks)
    incoming = _index_tasks(new_tasks)

    for task_id, old in previous.items():
        if task_id not in incoming and not can_delete_task(old, actor, legacy_policy=legacy_policy):
            raise TaskPermissionError(ACTION_DELETE, old)

    for task_id, new in incoming.items():
        old = previous.get(task_id)
        if old is None:
            continue
        change = classify_task_change(old, new)
        if change is None:
            continue
        if change == ACTION_COMPLETE:
            allowed = can_toggle_task_completion(old, actor, legacy_policy=legacy_policy)
        else:
            allowed = can_edit_task(old, actor, legacy_policy=legacy_policy)
        if not allowed:
            raise TaskPermissionError(change, new)


def guard_opportunity_update(
    existing: Dict[str, Any],
    updates: Dict[str, Any],
    actor: ActorIdentity,
    *,
    legacy_policy: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Validate an opportunity update against task permissions.

    Returns the updates to persist. Nothing is written when a single task
    change is refused: the whole update is rejected with TaskPermissionError.
    """
    prepared = dict(updates)
    if "tasks" in prepared:
        old_tasks = (existing or {}).get("tasks") or []
        new_tasks = stamp_new_tasks(old_tasks, list(prepared.get("tasks") or []), actor)
        try:
            check_task_changes(old_tasks, new_tasks, actor, legacy_policy=legacy_policy)
        except TaskPermissionError as exc:
            logger.info(
                "Rejected update of opportunity %s by %s: %s",
                (existing or {}).get("id"),
                actor.label or "anonymous",
                exc,
            )
            raise
        prepared["tasks"] = new_tasks
    if "followUpDate" in prepared:
        prepared["followUpRead"] = False
    return prepared
