from __future__ import annotations

import logging
from typing import Any, Dict, List

from schemas.opportunity_schema import validate_appointment_create, validate_appointment_update
from services.crm_rbac import ActorIdentity
from services.crm_store import DocumentStore, RecordNotFoundError

logger = logging.getLogger(__name__)

APPOINTMENTS = "appointments"


class AppointmentService:
    """Calendar entries the reminder scanner fires on, matched by ``assignedTo``."""

    def __init__(self, store: DocumentStore, actor: ActorIdentity):
        self.store = store
        self.actor = actor

    def list_appointments(self, *, mine: bool = False) -> List[Dict[str, Any]]:
        records = self.store.query_all(APPOINTMENTS)
        if mine:
            records = [item for item in records if self.actor.matches(item.get("assignedTo"))]
        return sorted(records, key=lambda item: (str(item.get("date") or ""), str(item.get("time") or "")))

    def add_appointment(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        record = validate_appointment_create(payload)
        if self.actor.label:
            record.setdefault("assignedTo", self.actor.label)
        created = self.store.create(APPOINTMENTS, record)
        logger.info("Appointment %s created by %s", created.get("id"), self.actor.label)
        return created

    def update_appointment(self, appointment_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        updates = validate_appointment_update(payload)
        if not updates:
            raise ValueError("no valid fields to update")
        return self.store.update(APPOINTMENTS, appointment_id, updates)

    def delete_appointment(self, appointment_id: str) -> None:
        if not self.store.delete(APPOINTMENTS, appointment_id):
            raise RecordNotFoundError(APPOINTMENTS, str(appointment_id))
