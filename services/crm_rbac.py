from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Optional

from shared.config import get_legacy_task_policy

LEGACY_PERMISSIVE = "permissive"
LEGACY_DENY = "deny"


def normalize_identity(value: Any) -> str:
    text = str(value or "").strip()
    if "@" in text:
        return text.lower()
    return text


@dataclass(frozen=True)
class ActorIdentity:
    """
    The acting user, resolved once per session.

    Authorship and assignment fields may hold either the user id or the email,
    depending on where they were captured, so both count as the same actor.
    """

    user_id: Optional[str] = None
    email: Optional[str] = None

    @property
    def keys(self) -> FrozenSet[str]:
        return frozenset(
            key for key in (normalize_identity(self.user_id), normalize_identity(self.email)) if key
        )

    @property
    def key(self) -> str:
        return normalize_identity(self.email) or normalize_identity(self.user_id)

    @property
    def label(self) -> str:
        """Value stamped into createdBy / assignedBy."""
        return normalize_identity(self.email) or normalize_identity(self.user_id)

    def is_anonymous(self) -> bool:
        return not self.keys

    def matches(self, value: Any) -> bool:
        normalized = normalize_identity(value)
        return bool(normalized) and normalized in self.keys


def _has_author(task: Dict[str, Any]) -> bool:
    return bool(normalize_identity(task.get("createdBy")))


def is_task_author(task: Dict[str, Any], actor: ActorIdentity) -> bool:
    return actor.matches(task.get("createdBy"))


def is_task_assignee(task: Dict[str, Any], actor: ActorIdentity) -> bool:
    return actor.matches(task.get("assignee"))


def _author_rule(task: Dict[str, Any], actor: ActorIdentity, legacy_policy: Optional[str]) -> bool:
    if not task:
        return False
    if not _has_author(task):
        policy = legacy_policy or get_legacy_task_policy()
        return policy == LEGACY_PERMISSIVE
    return is_task_author(task, actor)


def can_delete_task(task: Dict[str, Any], actor: ActorIdentity, *, legacy_policy: Optional[str] = None) -> bool:
    return _author_rule(task, actor, legacy_policy)


def can_edit_task(task: Dict[str, Any], actor: ActorIdentity, *, legacy_policy: Optional[str] = None) -> bool:
    return _author_rule(task, actor, legacy_policy)


def can_toggle_task_completion(
    task: Dict[str, Any],
    actor: ActorIdentity,
    *,
    legacy_policy: Optional[str] = None,
) -> bool:
    # Assignees may close out work they did not author.
    if _author_rule(task, actor, legacy_policy):
        return True
    return bool(task) and is_task_assignee(task, actor)
