from __future__ import annotations

import base64
import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from azure.core.exceptions import AzureError, HttpResponseError, ResourceNotFoundError
from azure.data.tables import TableServiceClient, UpdateMode

from shared.config import get_storage_connection_string, get_workspace_id, is_demo_mode

logger = logging.getLogger(__name__)

TABLES = {
    "contacts": os.getenv("CRM_CONTACTS_TABLE", "CRMContacts"),
    "opportunities": os.getenv("CRM_OPPORTUNITIES_TABLE", "CRMOpportunities"),
    "appointments": os.getenv("CRM_APPOINTMENTS_TABLE", "CRMAppointments"),
    "conversations": os.getenv("CRM_CONVERSATIONS_TABLE", "CRMConversations"),
    "stages": os.getenv("CRM_STAGES_TABLE", "CRMStages"),
    "notifications": os.getenv("CRM_NOTIFICATIONS_TABLE", "CRMNotifications"),
}

_RESERVED_KEYS = {"PartitionKey", "RowKey", "Timestamp", "etag"}

Filters = Optional[Dict[str, Any]]
Order = Optional[Tuple[str, str]]


class GatewayError(RuntimeError):
    """Transport or backend failure while talking to the document store."""


class RecordNotFoundError(GatewayError):
    def __init__(self, collection: str, record_id: str):
        super().__init__(f"{collection}/{record_id} not found")
        self.collection = collection
        self.record_id = record_id


class QueryCapabilityError(GatewayError):
    """The backend refused a filtered query; callers fall back to a partition scan."""


class FetchCancelledError(RuntimeError):
    pass


class FetchToken:
    """
    Abort token handed to a fetch.

    Cancelling it makes the gateway drop the result on arrival, and the
    aggregate store refuses to merge anything fetched under it.
    """

    def __init__(self, scope: str = "", epoch: int = 0):
        self.scope = scope
        self.epoch = epoch
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise FetchCancelledError(f"fetch '{self.scope}' was superseded")


@dataclass
class QueryPage:
    records: List[Dict[str, Any]] = field(default_factory=list)
    next_cursor: Optional[str] = None

    @property
    def has_more(self) -> bool:
        return self.next_cursor is not None


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return _utc_now().isoformat().replace("+00:00", "Z")


def new_id() -> str:
    ts_ms = int(_utc_now().timestamp() * 1000)
    return f"{ts_ms:013d}_{uuid4().hex[:12]}"


def _escape_odata(value: str) -> str:
    return str(value or "").replace("'", "''")


def _json_dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, separators=(",", ":"))


def _json_load(raw: Any) -> Any:
    if not isinstance(raw, str):
        return raw
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def _encode_payload(payload: Dict[str, Any]) -> Dict[str, Any]:
    encoded: Dict[str, Any] = {}
    for key, value in payload.items():
        if value is None or key == "id":
            continue
        if isinstance(value, (list, dict)):
            encoded[f"{key}Json"] = _json_dump(value)
        else:
            encoded[key] = value
    return encoded


def _decode_payload(entity: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key, value in entity.items():
        if key in _RESERVED_KEYS:
            continue
        if key.endswith("Json"):
            out[key[:-4]] = _json_load(value)
        else:
            out[key] = value
    out["id"] = entity.get("RowKey") or out.get("id")
    return out


def _order_key(record: Dict[str, Any], field_name: str) -> Tuple[int, Any, str]:
    value = record.get(field_name)
    record_id = str(record.get("id") or "")
    if value is None or value == "":
        return (0, "", record_id)
    if isinstance(value, bool):
        return (1, int(value), record_id)
    if isinstance(value, (int, float)):
        return (1, float(value), record_id)
    return (2, str(value), record_id)


def encode_cursor(key: Tuple[int, Any, str]) -> str:
    raw = _json_dump(list(key)).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_cursor(cursor: str) -> Tuple[int, Any, str]:
    value = str(cursor or "").strip()
    padding = "=" * ((4 - len(value) % 4) % 4)
    try:
        parts = json.loads(base64.urlsafe_b64decode(value + padding).decode("utf-8"))
        rank, order_value, record_id = parts
        return (int(rank), order_value, str(record_id))
    except (ValueError, TypeError) as exc:
        raise ValueError("invalid pagination cursor") from exc


def matches_filters(record: Dict[str, Any], filters: Filters) -> bool:
    if not filters:
        return True
    for name, expected in filters.items():
        if record.get(name) != expected:
            return False
    return True


def _odata_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        return f"'{_escape_odata(value)}'"
    raise QueryCapabilityError(f"cannot express filter value of type {type(value).__name__}")


class DocumentStore:
    """
    CRUD + query + subscribe over named collections, partitioned by workspace.

    Subclasses only move encoded entities in and out of the backend; ordering,
    keyset pagination and change notification are handled here so every
    backend pages identically.
    """

    backend_name = "abstract"

    def __init__(self, workspace_id: Optional[str] = None):
        self.workspace_id = str(workspace_id or get_workspace_id())
        self._listeners: Dict[int, Tuple[str, Filters, Callable[[List[Dict[str, Any]]], None]]] = {}
        self._listener_lock = Lock()
        self._listener_seq = 0

    # Backend primitives -------------------------------------------------

    def _insert(self, collection: str, row_key: str, entity: Dict[str, Any]) -> None:
        raise NotImplementedError

    def _read(self, collection: str, row_key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def _replace(self, collection: str, row_key: str, entity: Dict[str, Any]) -> None:
        raise NotImplementedError

    def _remove(self, collection: str, row_key: str) -> bool:
        raise NotImplementedError

    def _scan(self, collection: str, filters: Filters) -> List[Dict[str, Any]]:
        raise NotImplementedError

    # Public API ---------------------------------------------------------

    def _check_collection(self, collection: str) -> None:
        if collection not in TABLES:
            raise ValueError(f"unknown collection: {collection}")

    def create(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        self._check_collection(collection)
        row_key = str(record.get("id") or new_id())
        now = utc_now_iso()
        payload = {
            **record,
            "createdAt": record.get("createdAt") or now,
            "updatedAt": now,
        }
        entity = {"PartitionKey": self.workspace_id, "RowKey": row_key, **_encode_payload(payload)}
        self._insert(collection, row_key, entity)
        self._notify(collection)
        return _decode_payload(entity)

    def get(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        self._check_collection(collection)
        if not record_id:
            return None
        entity = self._read(collection, str(record_id))
        return _decode_payload(entity) if entity else None

    def update(self, collection: str, record_id: str, partial: Dict[str, Any]) -> Dict[str, Any]:
        existing = self.get(collection, record_id)
        if existing is None:
            raise RecordNotFoundError(collection, str(record_id))
        merged = {
            **existing,
            **partial,
            "id": str(record_id),
            "createdAt": existing.get("createdAt") or partial.get("createdAt") or utc_now_iso(),
            "updatedAt": utc_now_iso(),
        }
        entity = {"PartitionKey": self.workspace_id, "RowKey": str(record_id), **_encode_payload(merged)}
        self._replace(collection, str(record_id), entity)
        self._notify(collection)
        return _decode_payload(entity)

    def delete(self, collection: str, record_id: str) -> bool:
        self._check_collection(collection)
        if not record_id:
            return False
        deleted = self._remove(collection, str(record_id))
        if deleted:
            self._notify(collection)
        return deleted

    def query(
        self,
        collection: str,
        filters: Filters = None,
        order: Order = None,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
        token: Optional[FetchToken] = None,
    ) -> QueryPage:
        self._check_collection(collection)
        if token:
            token.raise_if_cancelled()
        try:
            entities = self._scan(collection, filters)
        except QueryCapabilityError as exc:
            logger.warning("Filtered query on %s rejected, falling back to partition scan: %s", collection, exc)
            entities = self._scan(collection, None)
        rows = [_decode_payload(item) for item in entities]
        rows = [item for item in rows if matches_filters(item, filters)]

        field_name, direction = order or ("id", "asc")
        descending = str(direction).lower() == "desc"
        keyed = sorted(
            ((_order_key(item, field_name), item) for item in rows),
            key=lambda pair: pair[0],
            reverse=descending,
        )
        if cursor:
            after = decode_cursor(cursor)
            keyed = [pair for pair in keyed if (pair[0] < after if descending else pair[0] > after)]

        if limit is not None:
            safe_limit = max(1, int(limit))
            page = keyed[:safe_limit]
            next_cursor = encode_cursor(page[-1][0]) if len(keyed) > safe_limit and page else None
        else:
            page = keyed
            next_cursor = None

        if token:
            token.raise_if_cancelled()
        return QueryPage(records=[item for _, item in page], next_cursor=next_cursor)

    def query_all(
        self,
        collection: str,
        filters: Filters = None,
        order: Order = None,
        page_size: int = 200,
        token: Optional[FetchToken] = None,
    ) -> List[Dict[str, Any]]:
        out: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            page = self.query(collection, filters=filters, order=order, cursor=cursor, limit=page_size, token=token)
            out.extend(page.records)
            if not page.next_cursor:
                return out
            cursor = page.next_cursor

    def subscribe(
        self,
        collection: str,
        callback: Callable[[List[Dict[str, Any]]], None],
        filters: Filters = None,
    ) -> Callable[[], None]:
        """
        Register for full result sets whenever a write through this store
        touches the collection. Returns the unsubscribe callable.
        """
        self._check_collection(collection)
        with self._listener_lock:
            self._listener_seq += 1
            handle = self._listener_seq
            self._listeners[handle] = (collection, filters, callback)

        def _unsubscribe() -> None:
            with self._listener_lock:
                self._listeners.pop(handle, None)

        return _unsubscribe

    def _notify(self, collection: str) -> None:
        with self._listener_lock:
            targets = [entry for entry in self._listeners.values() if entry[0] == collection]
        for _, filters, callback in targets:
            try:
                callback(self.query_all(collection, filters=filters))
            except Exception as exc:  # pylint: disable=broad-except
                logger.warning("CRM subscriber for %s failed: %s", collection, exc)


class MemoryDocumentStore(DocumentStore):
    """Process-local store used in demo mode and tests."""

    backend_name = "memory"

    def __init__(self, workspace_id: Optional[str] = None):
        super().__init__(workspace_id)
        self._lock = Lock()
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def _bucket(self, collection: str) -> Dict[str, Dict[str, Any]]:
        return self._tables.setdefault(TABLES[collection], {})

    def _insert(self, collection: str, row_key: str, entity: Dict[str, Any]) -> None:
        with self._lock:
            bucket = self._bucket(collection)
            if row_key in bucket:
                raise GatewayError(f"{collection}/{row_key} already exists")
            bucket[row_key] = dict(entity)

    def _read(self, collection: str, row_key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entity = self._bucket(collection).get(row_key)
            return dict(entity) if entity else None

    def _replace(self, collection: str, row_key: str, entity: Dict[str, Any]) -> None:
        with self._lock:
            self._bucket(collection)[row_key] = dict(entity)

    def _remove(self, collection: str, row_key: str) -> bool:
        with self._lock:
            return self._bucket(collection).pop(row_key, None) is not None

    def _scan(self, collection: str, filters: Filters) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(entity) for entity in self._bucket(collection).values()]


class TableDocumentStore(DocumentStore):
    """Azure Table Storage backend: one table per collection, workspace partition."""

    backend_name = "azure_tables"

    def __init__(self, connection_string: str, workspace_id: Optional[str] = None):
        super().__init__(workspace_id)
        self._service = TableServiceClient.from_connection_string(connection_string)
        self._clients: Dict[str, Any] = {}
        self._lock = Lock()

    def _table(self, collection: str):
        table_name = TABLES[collection]
        if table_name in self._clients:
            return self._clients[table_name]
        with self._lock:
            if table_name not in self._clients:
                try:
                    self._service.create_table_if_not_exists(table_name)
                except AzureError as exc:
                    raise GatewayError(f"failed to initialize table '{table_name}': {exc}") from exc
                self._clients[table_name] = self._service.get_table_client(table_name=table_name)
            return self._clients[table_name]

    def _insert(self, collection: str, row_key: str, entity: Dict[str, Any]) -> None:
        try:
            self._table(collection).create_entity(entity=entity)
        except AzureError as exc:
            raise GatewayError(f"create {collection}/{row_key} failed: {exc}") from exc

    def _read(self, collection: str, row_key: str) -> Optional[Dict[str, Any]]:
        try:
            return dict(self._table(collection).get_entity(partition_key=self.workspace_id, row_key=row_key))
        except ResourceNotFoundError:
            return None
        except AzureError as exc:
            raise GatewayError(f"get {collection}/{row_key} failed: {exc}") from exc

    def _replace(self, collection: str, row_key: str, entity: Dict[str, Any]) -> None:
        try:
            self._table(collection).upsert_entity(entity=entity, mode=UpdateMode.REPLACE)
        except AzureError as exc:
            raise GatewayError(f"update {collection}/{row_key} failed: {exc}") from exc

    def _remove(self, collection: str, row_key: str) -> bool:
        if self._read(collection, row_key) is None:
            return False
        try:
            self._table(collection).delete_entity(partition_key=self.workspace_id, row_key=row_key)
            return True
        except ResourceNotFoundError:
            return False
        except AzureError as exc:
            raise GatewayError(f"delete {collection}/{row_key} failed: {exc}") from exc

    def _filter_expression(self, filters: Filters) -> str:
        clauses = [f"PartitionKey eq '{_escape_odata(self.workspace_id)}'"]
        for name, value in (filters or {}).items():
            clauses.append(f"{name} eq {_odata_literal(value)}")
        return " and ".join(clauses)

    def _scan(self, collection: str, filters: Filters) -> List[Dict[str, Any]]:
        filter_expr = self._filter_expression(filters)
        try:
            return [dict(item) for item in self._table(collection).query_entities(query_filter=filter_expr)]
        except HttpResponseError as exc:
            if filters and exc.status_code == 400:
                raise QueryCapabilityError(str(exc)) from exc
            raise GatewayError(f"query {collection} failed: {exc}") from exc
        except AzureError as exc:
            raise GatewayError(f"query {collection} failed: {exc}") from exc


_store: Optional[DocumentStore] = None
_store_lock = Lock()


def get_document_store() -> DocumentStore:
    global _store
    if _store is not None:
        return _store
    with _store_lock:
        if _store is None:
            connection_string = get_storage_connection_string()
            if is_demo_mode() or not connection_string:
                from shared.demo_data import seed_demo_data

                memory = MemoryDocumentStore()
                seed_demo_data(memory)
                logger.info("CRM running in demo mode with the in-memory document store")
                _store = memory
            else:
                _store = TableDocumentStore(connection_string)
        return _store


def set_document_store(store: Optional[DocumentStore]) -> None:
    global _store
    with _store_lock:
        _store = store


def bulk_delete(store: DocumentStore, collection: str, ids: Iterable[str]) -> List[str]:
    """Delete every id, returning the ids that existed."""
    deleted: List[str] = []
    for record_id in ids:
        if store.delete(collection, record_id):
            deleted.append(str(record_id))
    return deleted
