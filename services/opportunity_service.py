from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from schemas.opportunity_schema import (
    normalize_tags,
    validate_opportunity_create,
    validate_opportunity_update,
)
from services.crm_rbac import ActorIdentity
from services.crm_stats import (
    compute_dashboard_stats,
    compute_stage_counts,
    task_visibility_report,
    tasks_assigned_to,
)
from services.crm_store import (
    DocumentStore,
    FetchCancelledError,
    GatewayError,
    RecordNotFoundError,
    bulk_delete,
)
from services.opportunity_cache import FLAT_SCOPE, OpportunityAggregateStore, stage_scope
from services.pipeline_rules import (
    DEFAULT_STAGES,
    normalize_stages,
    rename_stage,
    reorder_stages,
    stage_transition_updates,
)
from services.task_guard import guard_opportunity_update, stamp_new_tasks
from shared.config import cascade_contact_delete_enabled, get_legacy_task_policy, get_page_sizes

logger = logging.getLogger(__name__)

OPPORTUNITIES = "opportunities"
CONTACTS = "contacts"
STAGES = "stages"
PIPELINE_DOC_ID = "pipeline"
CREATED_DESC = ("createdAt", "desc")
CREATED_ASC = ("createdAt", "asc")


class OpportunityService:
    """
    Opportunity reads and writes for one signed-in user.

    Writes go guard -> document store -> aggregate store, so the cache only
    ever holds confirmed results. Fetch failures propagate and leave the
    cache as it was.
    """

    def __init__(
        self,
        store: DocumentStore,
        actor: ActorIdentity,
        cache: Optional[OpportunityAggregateStore] = None,
        *,
        page_sizes: Optional[Dict[str, int]] = None,
        legacy_policy: Optional[str] = None,
        cascade_contacts: Optional[bool] = None,
    ):
        self.store = store
        self.actor = actor
        self.cache = cache or OpportunityAggregateStore()
        self.page_sizes = {**get_page_sizes(), **(page_sizes or {})}
        self.legacy_policy = legacy_policy or get_legacy_task_policy()
        self.cascade_contacts = cascade_contact_delete_enabled() if cascade_contacts is None else cascade_contacts
        self._unsubscribers: List[Callable[[], None]] = []

    # Flat list ----------------------------------------------------------

    def _fetch_flat_page(self, cursor: Optional[str]) -> List[Dict[str, Any]]:
        token = self.cache.issue_token(FLAT_SCOPE)
        try:
            page = self.store.query(
                OPPORTUNITIES,
                order=CREATED_DESC,
                cursor=cursor,
                limit=self.page_sizes["opportunities"],
                token=token,
            )
            self.cache.merge(page.records, token)
        except FetchCancelledError:
            logger.debug("Flat opportunity fetch superseded")
            return []
        finally:
            self.cache.release_token(token)
        if token.cancelled:
            return []
        self.cache.set_flat_page(page.next_cursor, page.has_more)
        return page.records

    def fetch_opportunities(self) -> List[Dict[str, Any]]:
        return self._fetch_flat_page(None)

    def load_more_opportunities(self) -> List[Dict[str, Any]]:
        state = self.cache.flat_state()
        if not state.has_more or not state.cursor:
            return []
        return self._fetch_flat_page(state.cursor)

    # Per-stage board ----------------------------------------------------

    def _fetch_stage_page(self, stage_id: str, cursor: Optional[str]) -> List[Dict[str, Any]]:
        token = self.cache.issue_token(stage_scope(stage_id))
        try:
            page = self.store.query(
                OPPORTUNITIES,
                filters={"stage": stage_id},
                order=CREATED_DESC,
                cursor=cursor,
                limit=self.page_sizes["stage"],
                token=token,
            )
            self.cache.merge(page.records, token)
        except FetchCancelledError:
            self.cache.finish_stage_load(stage_id, success=False)
            return []
        except Exception:
            self.cache.finish_stage_load(stage_id, success=False)
            raise
        finally:
            self.cache.release_token(token)
        self.cache.finish_stage_load(stage_id, cursor=page.next_cursor, has_more=page.has_more)
        return page.records

    def fetch_opportunities_by_stage(self, stage_id: str) -> List[Dict[str, Any]]:
        stage_id = str(stage_id)
        if not self.cache.begin_stage_load(stage_id):
            return []
        return self._fetch_stage_page(stage_id, None)

    def load_more_by_stage(self, stage_id: str) -> List[Dict[str, Any]]:
        stage_id = str(stage_id)
        if not self.cache.begin_stage_load(stage_id, require_more=True):
            return []
        return self._fetch_stage_page(stage_id, self.cache.stage_state(stage_id).cursor)

    # Aggregates ---------------------------------------------------------

    def _all_opportunities(self) -> List[Dict[str, Any]]:
        return self.store.query_all(OPPORTUNITIES, page_size=self.page_sizes["scan"])

    def fetch_stage_counts(self) -> Dict[str, Dict[str, float]]:
        counts = compute_stage_counts(self._all_opportunities())
        self.cache.set_stage_counts(counts)
        return counts

    def fetch_dashboard_stats(self, days_back: int = 30, now: Optional[datetime] = None) -> Dict[str, Any]:
        stats = compute_dashboard_stats(self._all_opportunities(), days_back=days_back, now=now)
        self.cache.set_dashboard_stats(stats)
        return stats

    def _refresh_stage_counts(self) -> None:
        try:
            self.fetch_stage_counts()
        except GatewayError as exc:
            logger.warning("Stage counts refresh failed, keeping previous counts: %s", exc)

    # Mutations ----------------------------------------------------------

    def _load(self, opportunity_id: str) -> Dict[str, Any]:
        record = self.store.get(OPPORTUNITIES, opportunity_id)
        if record is None:
            raise RecordNotFoundError(OPPORTUNITIES, str(opportunity_id))
        return record

    def get_opportunity(self, opportunity_id: str) -> Dict[str, Any]:
        record = self._load(opportunity_id)
        self.cache.merge([record])
        return record

    def add_opportunity(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        record = validate_opportunity_create(payload)
        record["tasks"] = stamp_new_tasks([], record.get("tasks") or [], self.actor)
        if self.actor.label:
            record.setdefault("owner", self.actor.label)
        if record.get("followUpDate"):
            record["followUpRead"] = False
        created = self.store.create(OPPORTUNITIES, record)
        self.cache.apply(created)
        self._refresh_stage_counts()
        return created

    def update_opportunity(self, opportunity_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        updates = validate_opportunity_update(payload)
        if not updates:
            raise ValueError("no valid fields to update")
        existing = self._load(opportunity_id)
        prepared = guard_opportunity_update(existing, updates, self.actor, legacy_policy=self.legacy_policy)
        saved = self.store.update(OPPORTUNITIES, opportunity_id, prepared)
        self.cache.apply(saved)
        if "stage" in prepared or "value" in prepared:
            self._refresh_stage_counts()
        return saved

    def move_opportunity_stage(self, opportunity_id: str, stage_id: str) -> Dict[str, Any]:
        existing = self._load(opportunity_id)
        return self.update_opportunity(opportunity_id, stage_transition_updates(existing, stage_id))

    def mark_follow_up_read(self, opportunity_id: str) -> Dict[str, Any]:
        return self.update_opportunity(opportunity_id, {"followUpRead": True})

    def bulk_add_tags(self, opportunity_ids: Iterable[str], tags: Any) -> List[Dict[str, Any]]:
        extra = normalize_tags(tags)
        saved = []
        for opportunity_id in opportunity_ids:
            existing = self._load(opportunity_id)
            saved.append(self.update_opportunity(opportunity_id, {"tags": list(existing.get("tags") or []) + extra}))
        return saved

    def _cascade_contacts(self, opportunities: List[Dict[str, Any]], deleting_ids: set) -> List[str]:
        if not self.cascade_contacts:
            return []
        contact_ids = []
        for opportunity in opportunities:
            contact_id = str(opportunity.get("contactId") or "").strip()
            if contact_id and contact_id not in contact_ids:
                contact_ids.append(contact_id)
        removed = []
        for contact_id in contact_ids:
            linked = self.store.query_all(OPPORTUNITIES, filters={"contactId": contact_id})
            if any(str(item.get("id")) not in deleting_ids for item in linked):
                logger.info("Keeping contact %s, still linked to other opportunities", contact_id)
                continue
            if self.store.delete(CONTACTS, contact_id):
                removed.append(contact_id)
        return removed

    def delete_opportunity(self, opportunity_id: str) -> Dict[str, Any]:
        return self.bulk_delete_opportunities([opportunity_id])

    def bulk_delete_opportunities(self, opportunity_ids: Iterable[str]) -> Dict[str, Any]:
        ids = []
        for opportunity_id in opportunity_ids:
            opportunity_id = str(opportunity_id)
            if opportunity_id and opportunity_id not in ids:
                ids.append(opportunity_id)
        if not ids:
            raise ValueError("ids are required")
        existing = [record for record in (self.store.get(OPPORTUNITIES, item) for item in ids) if record]
        deleted = bulk_delete(self.store, OPPORTUNITIES, ids)
        contacts = self._cascade_contacts(existing, set(deleted))
        self.cache.evict(ids)
        self._refresh_stage_counts()
        return {"deleted": deleted, "contactsDeleted": contacts}

    def delete_contact(self, contact_id: str) -> Dict[str, Any]:
        """Delete a contact together with the opportunities linked to it."""
        linked = self.store.query_all(OPPORTUNITIES, filters={"contactId": str(contact_id)})
        linked_ids = [str(item.get("id")) for item in linked]
        deleted = bulk_delete(self.store, OPPORTUNITIES, linked_ids)
        if linked_ids:
            self.cache.evict(linked_ids)
            self._refresh_stage_counts()
        contact_deleted = self.store.delete(CONTACTS, str(contact_id))
        return {"deleted": contact_deleted, "opportunitiesDeleted": deleted}

    def remove_duplicate_opportunities(self) -> Dict[str, int]:
        """Keep the oldest opportunity per (name, contact) and delete the rest."""
        seen: Dict[str, str] = {}
        duplicates: List[str] = []
        for record in self.store.query_all(OPPORTUNITIES, order=CREATED_ASC, page_size=self.page_sizes["scan"]):
            name = str(record.get("name") or "").strip().lower()
            if not name:
                continue
            key = f"{name}_{record.get('contactId') or ''}"
            if key in seen:
                duplicates.append(str(record.get("id")))
            else:
                seen[key] = str(record.get("id"))
        if duplicates:
            bulk_delete(self.store, OPPORTUNITIES, duplicates)
            self.cache.evict(duplicates)
            self._refresh_stage_counts()
        return {"removed": len(duplicates), "kept": len(seen)}

    def reset_all_tasks(self) -> int:
        """Maintenance: clear every task list. Bypasses the task guard."""
        count = 0
        for record in self._all_opportunities():
            saved = self.store.update(OPPORTUNITIES, str(record.get("id")), {"tasks": []})
            self.cache.apply(saved)
            count += 1
        logger.info("Reset tasks on %s opportunities", count)
        return count

    # Tasks views --------------------------------------------------------

    def list_my_tasks(self) -> List[Dict[str, Any]]:
        return tasks_assigned_to(self._all_opportunities(), self.actor)

    def task_visibility(self) -> Dict[str, Any]:
        return task_visibility_report(self.cache.snapshot(), self.actor)

    # Stages -------------------------------------------------------------

    def get_stages(self) -> List[Dict[str, str]]:
        doc = self.store.get(STAGES, PIPELINE_DOC_ID)
        if not doc or not doc.get("stages"):
            return [dict(stage) for stage in DEFAULT_STAGES]
        return normalize_stages(doc["stages"])

    def save_stages(self, stages: Any) -> List[Dict[str, str]]:
        normalized = normalize_stages(stages)
        if self.store.get(STAGES, PIPELINE_DOC_ID):
            self.store.update(STAGES, PIPELINE_DOC_ID, {"stages": normalized})
        else:
            self.store.create(STAGES, {"id": PIPELINE_DOC_ID, "stages": normalized})
        return normalized

    def rename_stage(self, stage_id: str, title: str) -> List[Dict[str, str]]:
        return self.save_stages(rename_stage(self.get_stages(), stage_id, title))

    def reorder_stages(self, ordered_ids: List[str]) -> List[Dict[str, str]]:
        return self.save_stages(reorder_stages(self.get_stages(), ordered_ids))

    # Live updates -------------------------------------------------------

    def subscribe_opportunities(self) -> None:
        self._unsubscribers.append(self.store.subscribe(OPPORTUNITIES, self.cache.replace_from_subscription))

    def close(self) -> None:
        while self._unsubscribers:
            self._unsubscribers.pop()()
        self.cache.clear()
