from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional, Set
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from shared.config import get_timezone_name

logger = logging.getLogger(__name__)

KIND_APPOINTMENT = "appointment"
KIND_FOLLOW_UP = "follow_up"


@dataclass(frozen=True)
class Reminder:
    key: str
    kind: str
    entity_type: str
    entity_id: str
    title: str
    message: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "key": self.key,
            "type": self.kind,
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "title": self.title,
            "message": self.message,
        }


def local_now() -> datetime:
    """Naive wall-clock time in the configured CRM timezone."""
    name = get_timezone_name()
    try:
        zone = ZoneInfo(name)
    except ZoneInfoNotFoundError:
        logger.warning("Unknown CRM_TIMEZONE %s, using UTC", name)
        zone = ZoneInfo("UTC")
    return datetime.now(zone).replace(tzinfo=None)


def _appointment_moment(appointment: Dict[str, Any]) -> datetime:
    date_part = str(appointment.get("date") or "").strip()
    time_part = str(appointment.get("time") or "").strip()
    if not date_part or not time_part:
        raise ValueError("appointment date and time are required")
    return datetime.fromisoformat(f"{date_part}T{time_part}")


def _same_minute(left: datetime, right: datetime) -> bool:
    return left.replace(second=0, microsecond=0) == right.replace(second=0, microsecond=0)


class ReminderScanner:
    """
    Fires each appointment and follow-up reminder at most once per scanner.

    Appointments fire during the minute they are scheduled for; follow-ups
    fire on their date while still unread. Fired keys live as long as the
    scanner does, so a new session starts with a clean slate.
    """

    def __init__(
        self,
        notify: Callable[[Reminder], None],
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._notify = notify
        self._clock = clock or local_now
        self._fired: Set[str] = set()
        self._lock = Lock()

    def now(self) -> datetime:
        return self._clock()

    @property
    def fired_keys(self) -> Set[str]:
        with self._lock:
            return set(self._fired)

    def _claim(self, key: str) -> bool:
        with self._lock:
            if key in self._fired:
                return False
            self._fired.add(key)
            return True

    def _deliver(self, reminder: Reminder) -> None:
        try:
            self._notify(reminder)
        except Exception as exc:  # pylint: disable=broad-except
            logger.error("Reminder %s could not be delivered: %s", reminder.key, exc)

    def _scan_appointments(self, appointments: Iterable[Dict[str, Any]], now: datetime) -> List[Reminder]:
        fired: List[Reminder] = []
        for appointment in appointments:
            try:
                moment = _appointment_moment(appointment)
            except ValueError:
                logger.debug("Skipping appointment %s with malformed date/time", appointment.get("id"))
                continue
            if not _same_minute(now, moment):
                continue
            key = f"apt-{appointment.get('id')}-{appointment.get('date')}-{appointment.get('time')}"
            if not self._claim(key):
                continue
            title = str(appointment.get("title") or "Appointment")
            reminder = Reminder(
                key=key,
                kind=KIND_APPOINTMENT,
                entity_type="appointment",
                entity_id=str(appointment.get("id") or ""),
                title=f"Appointment: {title}",
                message=f"{title} starts now ({appointment.get('time')})",
            )
            self._deliver(reminder)
            fired.append(reminder)
        return fired

    def _scan_follow_ups(self, opportunities: Iterable[Dict[str, Any]], now: datetime) -> List[Reminder]:
        today = now.date().isoformat()
        fired: List[Reminder] = []
        for opportunity in opportunities:
            follow_up = str(opportunity.get("followUpDate") or "").strip()
            if not follow_up or opportunity.get("followUpRead"):
                continue
            if follow_up != today:
                continue
            key = f"opp-{opportunity.get('id')}-{follow_up}"
            if not self._claim(key):
                continue
            label = opportunity.get("companyName") or opportunity.get("contactName") or opportunity.get("name") or "opportunity"
            reminder = Reminder(
                key=key,
                kind=KIND_FOLLOW_UP,
                entity_type="opportunity",
                entity_id=str(opportunity.get("id") or ""),
                title="Follow-up due",
                message=f"Follow up with {label} today",
            )
            self._deliver(reminder)
            fired.append(reminder)
        return fired

    def scan(
        self,
        appointments: Iterable[Dict[str, Any]],
        opportunities: Iterable[Dict[str, Any]],
        now: Optional[datetime] = None,
    ) -> List[Reminder]:
        now = now or self.now()
        fired = self._scan_appointments(appointments, now)
        fired.extend(self._scan_follow_ups(opportunities, now))
        if fired:
            logger.info("Fired %s reminders", len(fired))
        return fired

    def reset(self) -> None:
        with self._lock:
            self._fired.clear()
