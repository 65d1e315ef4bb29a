from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional

from services.crm_store import FetchToken
from services.pipeline_rules import stage_key

logger = logging.getLogger(__name__)

FLAT_SCOPE = "flat"


def stage_scope(stage_id: str) -> str:
    return f"stage:{stage_id}"


@dataclass
class PageState:
    cursor: Optional[str] = None
    has_more: bool = False
    in_flight: bool = False
    loaded: bool = False


class OpportunityAggregateStore:
    """
    In-memory opportunity collection fed by the flat list, the per-stage
    board and mutation results.

    Fetched batches are merged by id and never remove records another fetch
    loaded. Mutations bump an epoch; a fetch issued before a mutation cannot
    overwrite the mutated (or evicted) record when it lands.
    """

    def __init__(self):
        self._lock = Lock()
        self._records: Dict[str, Dict[str, Any]] = {}
        self._touched: Dict[str, int] = {}
        self._epoch = 0
        self._flat = PageState()
        self._stages: Dict[str, PageState] = {}
        self._tokens: Dict[str, FetchToken] = {}
        self._stage_counts: Dict[str, Dict[str, float]] = {}
        self._dashboard_stats: Optional[Dict[str, Any]] = None

    # Fetch tokens -------------------------------------------------------

    def issue_token(self, scope: str) -> FetchToken:
        """New token for a fetch scope; the previous fetch of that scope is superseded."""
        with self._lock:
            previous = self._tokens.get(scope)
            if previous is not None:
                previous.cancel()
            token = FetchToken(scope=scope, epoch=self._epoch)
            self._tokens[scope] = token
            return token

    def release_token(self, token: FetchToken) -> None:
        with self._lock:
            if self._tokens.get(token.scope) is token:
                self._tokens.pop(token.scope, None)
            self._prune_touched()

    def _prune_touched(self) -> None:
        # Only an open fetch issued before a mutation can land a stale copy.
        if not self._tokens:
            self._touched.clear()
            return
        oldest = min(token.epoch for token in self._tokens.values())
        self._touched = {record_id: epoch for record_id, epoch in self._touched.items() if epoch > oldest}

    # Mutation API -------------------------------------------------------

    def merge(self, records: Iterable[Dict[str, Any]], token: Optional[FetchToken] = None) -> int:
        """Upsert fetched records by id. Returns how many were merged."""
        merged = 0
        with self._lock:
            if token is not None and token.cancelled:
                logger.debug("Dropping results of superseded fetch %s", token.scope)
                return 0
            for record in records:
                record_id = str(record.get("id") or "")
                if not record_id:
                    continue
                if token is not None and self._touched.get(record_id, 0) > token.epoch:
                    logger.debug("Skipping stale copy of opportunity %s from %s", record_id, token.scope)
                    continue
                self._records[record_id] = dict(record)
                merged += 1
        return merged

    def apply(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """Store a confirmed mutation result."""
        record_id = str(record.get("id") or "")
        if not record_id:
            raise ValueError("opportunity id is required")
        with self._lock:
            self._epoch += 1
            self._touched[record_id] = self._epoch
            self._records[record_id] = dict(record)
            self._prune_touched()
        return dict(record)

    def replace_from_subscription(self, records: Iterable[Dict[str, Any]]) -> List[str]:
        """
        Make the cache mirror a live-update result set, which is the whole
        collection: records missing from it were deleted elsewhere and are
        evicted. Returns the evicted ids.
        """
        incoming: Dict[str, Dict[str, Any]] = {}
        for record in records:
            record_id = str(record.get("id") or "")
            if record_id:
                incoming[record_id] = dict(record)
        with self._lock:
            self._epoch += 1
            removed = [record_id for record_id in self._records if record_id not in incoming]
            for record_id in removed:
                self._records.pop(record_id, None)
                self._touched[record_id] = self._epoch
            for record_id, record in incoming.items():
                self._records[record_id] = record
                self._touched[record_id] = self._epoch
            self._prune_touched()
        return removed

    def evict(self, ids: Iterable[str]) -> List[str]:
        removed: List[str] = []
        with self._lock:
            self._epoch += 1
            for record_id in ids:
                record_id = str(record_id)
                self._touched[record_id] = self._epoch
                if self._records.pop(record_id, None) is not None:
                    removed.append(record_id)
            self._prune_touched()
        return removed

    def clear(self) -> None:
        with self._lock:
            for token in self._tokens.values():
                token.cancel()
            self._tokens.clear()
            self._records.clear()
            self._touched.clear()
            self._flat = PageState()
            self._stages.clear()
            self._stage_counts = {}
            self._dashboard_stats = None

    # Reads --------------------------------------------------------------

    def get(self, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._records.get(str(record_id))
            return dict(record) if record else None

    def snapshot(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(record) for record in self._records.values()]

    def by_stage(self, stage_id: str) -> List[Dict[str, Any]]:
        wanted = stage_key(stage_id)
        return [record for record in self.snapshot() if stage_key(record.get("stage")) == wanted]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __contains__(self, record_id: object) -> bool:
        with self._lock:
            return str(record_id) in self._records

    # Pagination ---------------------------------------------------------

    def flat_state(self) -> PageState:
        with self._lock:
            return replace(self._flat)

    def set_flat_page(self, cursor: Optional[str], has_more: bool) -> None:
        with self._lock:
            self._flat = PageState(cursor=cursor, has_more=has_more, loaded=True)

    def stage_state(self, stage_id: str) -> PageState:
        with self._lock:
            return replace(self._stages.get(stage_id) or PageState())

    def begin_stage_load(self, stage_id: str, *, require_more: bool = False) -> bool:
        """
        Mark a stage page load as in flight. False means the caller must not
        fetch: a load is already running, or (for load-more) nothing is left.
        """
        with self._lock:
            state = self._stages.setdefault(stage_id, PageState())
            if state.in_flight:
                return False
            if require_more and (not state.loaded or not state.has_more):
                return False
            state.in_flight = True
            return True

    def finish_stage_load(
        self,
        stage_id: str,
        *,
        cursor: Optional[str] = None,
        has_more: bool = False,
        success: bool = True,
    ) -> None:
        with self._lock:
            state = self._stages.setdefault(stage_id, PageState())
            state.in_flight = False
            if success:
                state.cursor = cursor
                state.has_more = has_more
                state.loaded = True

    # Derived views ------------------------------------------------------

    @property
    def stage_counts(self) -> Dict[str, Dict[str, float]]:
        with self._lock:
            return {stage: dict(bucket) for stage, bucket in self._stage_counts.items()}

    def set_stage_counts(self, counts: Dict[str, Dict[str, float]]) -> None:
        with self._lock:
            self._stage_counts = {stage: dict(bucket) for stage, bucket in counts.items()}

    @property
    def dashboard_stats(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            return dict(self._dashboard_stats) if self._dashboard_stats is not None else None

    def set_dashboard_stats(self, stats: Dict[str, Any]) -> None:
        with self._lock:
            self._dashboard_stats = dict(stats)
