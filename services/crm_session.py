from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Dict, List, Optional

from services.appointment_service import AppointmentService
from services.crm_rbac import ActorIdentity
from services.crm_store import DocumentStore, get_document_store
from services.opportunity_service import OpportunityService
from services.reminder_scanner import Reminder, ReminderScanner
from shared.config import get_session_idle_seconds, live_updates_enabled

logger = logging.getLogger(__name__)


class CRMSession:
    """
    Per-user state that outlives a single request: the actor identity, the
    opportunity aggregate store behind the service, and the reminder scanner.
    """

    def __init__(
        self,
        identity: ActorIdentity,
        store: Optional[DocumentStore] = None,
        *,
        profile: Optional[Dict[str, Any]] = None,
        scanner: Optional[ReminderScanner] = None,
        live_updates: Optional[bool] = None,
    ):
        self.identity = identity
        self.profile = dict(profile or {})
        self.last_seen = datetime.now(timezone.utc)
        self.store = store or get_document_store()
        self.opportunities = OpportunityService(self.store, identity)
        self.appointments = AppointmentService(self.store, identity)
        self.reminders = scanner or ReminderScanner(notify=self._persist_notification)
        if live_updates is None:
            live_updates = live_updates_enabled()
        if live_updates:
            self.opportunities.subscribe_opportunities()

    @property
    def key(self) -> str:
        return self.identity.key

    def _persist_notification(self, reminder: Reminder) -> None:
        self.store.create(
            "notifications",
            {
                "userEmail": self.identity.email,
                "userId": self.identity.user_id,
                "type": reminder.kind,
                "title": reminder.title,
                "message": reminder.message,
                "entityType": reminder.entity_type,
                "entityId": reminder.entity_id,
                "reminderKey": reminder.key,
                "read": False,
            },
        )

    def scan_reminders(self, now: Optional[datetime] = None) -> List[Reminder]:
        now = now or self.reminders.now()
        follow_ups = self.store.query_all("opportunities", filters={"followUpDate": now.date().isoformat()})
        return self.reminders.scan(self.appointments.list_appointments(mine=True), follow_ups, now=now)

    def close(self) -> None:
        self.opportunities.close()


_sessions: Dict[str, CRMSession] = {}
_sessions_lock = Lock()


def get_session(
    identity: ActorIdentity,
    store: Optional[DocumentStore] = None,
    *,
    profile: Optional[Dict[str, Any]] = None,
) -> CRMSession:
    if identity.is_anonymous():
        raise ValueError("a signed-in user is required")
    with _sessions_lock:
        session = _sessions.get(identity.key)
        if session is None:
            session = CRMSession(identity, store, profile=profile)
            _sessions[identity.key] = session
            logger.info("Started CRM session for %s", identity.label)
        elif profile:
            session.profile.update(profile)
        session.last_seen = datetime.now(timezone.utc)
        return session


def iter_sessions() -> List[CRMSession]:
    with _sessions_lock:
        return list(_sessions.values())


def end_session(identity: ActorIdentity) -> bool:
    with _sessions_lock:
        session = _sessions.pop(identity.key, None)
    if session is None:
        return False
    session.close()
    logger.info("Ended CRM session for %s", identity.label)
    return True


def prune_idle_sessions(max_idle_seconds: Optional[int] = None, now: Optional[datetime] = None) -> int:
    """End sessions with no request for ``max_idle_seconds``. Returns how many ended."""
    idle_limit = timedelta(seconds=max_idle_seconds or get_session_idle_seconds())
    cutoff = (now or datetime.now(timezone.utc)) - idle_limit
    with _sessions_lock:
        idle = [key for key, session in _sessions.items() if session.last_seen < cutoff]
        ended = [_sessions.pop(key) for key in idle]
    for session in ended:
        session.close()
        logger.info("Ended idle CRM session for %s", session.identity.label)
    return len(ended)


def reset_sessions_for_tests() -> None:
    with _sessions_lock:
        sessions = list(_sessions.values())
        _sessions.clear()
    for session in sessions:
        session.close()
