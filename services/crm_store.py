from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from shared.config import get_storage_connection_string

logger = logging.getLogger(__name__)

TABLES = {
    "prospects": os.getenv("PIPELINE_PROSPECTS_TABLE", "PipelineProspects"),
    "todos": os.getenv("PIPELINE_TODOS_TABLE", "PipelineTodos"),
    "calendar_events": os.getenv("PIPELINE_CALENDAR_EVENTS_TABLE", "PipelineCalendarEvents"),
}

_service_client = None
_table_clients: Dict[str, Any] = {}
_table_init_failed = False
_table_lock = Lock()

_memory_lock = Lock()
_id_lock = Lock()
_last_id_ms = 0
_memory_store: Dict[str, Dict[str, Dict[str, dict]]] = {}


class EntityNotFoundError(LookupError):
    """Raised by update_entity when the target row does not exist."""

    def __init__(self, table_key: str, entity_id: str):
        super().__init__(f"{table_key} row '{entity_id}' not found")
        self.table_key = table_key
        self.entity_id = entity_id


def tenant_partition(tenant_id: Any) -> str:
    return str(tenant_id or "").strip()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def utc_now_iso() -> str:
    return _utc_now().isoformat().replace("+00:00", "Z")


def _new_id() -> str:
    """Timestamp-prefixed row key, strictly increasing within the process."""
    global _last_id_ms
    with _id_lock:
        ts_ms = max(int(_utc_now().timestamp() * 1000), _last_id_ms + 1)
        _last_id_ms = ts_ms
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


def _get_service_client():
    global _service_client, _table_init_failed
    if _table_init_failed:
        return None
    if _service_client is not None:
        return _service_client
    conn_str = get_storage_connection_string()
    if not conn_str:
        return None
    from azure.data.tables import TableServiceClient

    try:
        _service_client = TableServiceClient.from_connection_string(conn_str)
        return _service_client
    except ValueError as exc:
        _table_init_failed = True
        logger.warning("Invalid storage connection string, using in-memory pipeline store: %s", exc)
        return None


def _get_table_client(table_name: str):
    if table_name in _table_clients:
        return _table_clients[table_name]
    service = _get_service_client()
    if service is None:
        return None
    with _table_lock:
        if table_name in _table_clients:
            return _table_clients[table_name]
        service.create_table_if_not_exists(table_name)
        client = service.get_table_client(table_name)
        _table_clients[table_name] = client
        return client


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
        if key in {"PartitionKey", "RowKey", "Timestamp", "etag"}:
            continue
        if key.endswith("Json"):
            out[key[:-4]] = _json_load(value)
        else:
            out[key] = value
    out["id"] = entity.get("RowKey") or out.get("id")
    return out


def _memory_put(table_name: str, tenant_id: str, row_key: str, payload: Dict[str, Any]) -> dict:
    with _memory_lock:
        table_bucket = _memory_store.setdefault(table_name, {})
        tenant_bucket = table_bucket.setdefault(tenant_id, {})
        entity = {
            "PartitionKey": tenant_id,
            "RowKey": row_key,
            **payload,
        }
        tenant_bucket[row_key] = entity
        return dict(entity)


def _memory_get(table_name: str, tenant_id: str, row_key: str) -> Optional[dict]:
    with _memory_lock:
        entity = (
            _memory_store
            .get(table_name, {})
            .get(tenant_id, {})
            .get(row_key)
        )
        return dict(entity) if entity else None


def _memory_delete(table_name: str, tenant_id: str, row_key: str) -> bool:
    with _memory_lock:
        table_bucket = _memory_store.get(table_name, {})
        tenant_bucket = table_bucket.get(tenant_id, {})
        return tenant_bucket.pop(row_key, None) is not None


def _memory_list(table_name: str, tenant_id: str) -> List[dict]:
    with _memory_lock:
        tenant_bucket = _memory_store.get(table_name, {}).get(tenant_id, {})
        return [dict(entity) for entity in tenant_bucket.values()]


def create_entity(table_key: str, tenant_id: str, payload: Dict[str, Any], entity_id: Optional[str] = None) -> Dict[str, Any]:
    tenant = tenant_partition(tenant_id)
    now = utc_now_iso()
    row_key = str(entity_id or payload.get("id") or _new_id())
    base = {
        **payload,
        "createdAt": payload.get("createdAt") or now,
        "updatedAt": now,
    }
    encoded = _encode_payload(base)
    client = _get_table_client(TABLES[table_key])
    if client:
        entity = {
            "PartitionKey": tenant,
            "RowKey": row_key,
            **encoded,
        }
        client.create_entity(entity=entity)
        return _decode_payload(entity)

    memory_entity = _memory_put(TABLES[table_key], tenant, row_key, encoded)
    return _decode_payload(memory_entity)


def get_entity(table_key: str, tenant_id: str, entity_id: str) -> Optional[Dict[str, Any]]:
    tenant = tenant_partition(tenant_id)
    if not tenant or not entity_id:
        return None
    client = _get_table_client(TABLES[table_key])
    if client:
        from azure.core.exceptions import ResourceNotFoundError

        try:
            entity = client.get_entity(partition_key=tenant, row_key=entity_id)
        except ResourceNotFoundError:
            return None
        return _decode_payload(entity)
    memory_entity = _memory_get(TABLES[table_key], tenant, entity_id)
    return _decode_payload(memory_entity) if memory_entity else None


def update_entity(table_key: str, tenant_id: str, entity_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
    """
    Merge ``patch`` into an existing row and return the stored result.
    A ``None`` value clears the field. Raises EntityNotFoundError when the row
    does not exist; storage errors propagate to the caller.
    """
    tenant = tenant_partition(tenant_id)
    existing = get_entity(table_key, tenant, entity_id)
    if existing is None:
        raise EntityNotFoundError(table_key, entity_id)
    merged = {
        **existing,
        **patch,
        "createdAt": existing.get("createdAt") or utc_now_iso(),
        "updatedAt": utc_now_iso(),
    }
    encoded = _encode_payload(merged)
    client = _get_table_client(TABLES[table_key])
    if client:
        from azure.data.tables import UpdateMode

        entity = {
            "PartitionKey": tenant,
            "RowKey": entity_id,
            **encoded,
        }
        client.upsert_entity(entity=entity, mode=UpdateMode.REPLACE)
        return _decode_payload(entity)
    memory_entity = _memory_put(TABLES[table_key], tenant, entity_id, encoded)
    return _decode_payload(memory_entity)


def delete_entity(table_key: str, tenant_id: str, entity_id: str) -> bool:
    tenant = tenant_partition(tenant_id)
    if not tenant or not entity_id:
        return False
    client = _get_table_client(TABLES[table_key])
    if client:
        from azure.core.exceptions import ResourceNotFoundError

        if get_entity(table_key, tenant, entity_id) is None:
            return False
        try:
            client.delete_entity(partition_key=tenant, row_key=entity_id)
        except ResourceNotFoundError:
            return False
        return True
    return _memory_delete(TABLES[table_key], tenant, entity_id)


def list_entities(
    table_key: str,
    tenant_id: str,
    *,
    filter_fn: Optional[Callable[[Dict[str, Any]], bool]] = None,
    limit: Optional[int] = None,
    descending: bool = False,
) -> List[Dict[str, Any]]:
    """
    Return a tenant's rows ordered by id (creation order). Row ids are
    timestamp-prefixed, so ties in any later stable sort keep creation order.
    """
    tenant = tenant_partition(tenant_id)
    client = _get_table_client(TABLES[table_key])
    if client:
        filter_expr = f"PartitionKey eq '{_escape_odata(tenant)}'"
        rows = [_decode_payload(item) for item in client.query_entities(query_filter=filter_expr)]
    else:
        rows = [_decode_payload(item) for item in _memory_list(TABLES[table_key], tenant)]

    rows.sort(key=lambda item: str(item.get("id") or ""))
    if descending:
        rows.reverse()
    if filter_fn:
        rows = [item for item in rows if filter_fn(item)]
    if limit:
        rows = rows[: max(1, int(limit))]
    return rows


def find_entity(
    table_key: str,
    tenant_id: str,
    predicate: Callable[[Dict[str, Any]], bool],
) -> Optional[Dict[str, Any]]:
    for row in list_entities(table_key, tenant_id):
        if predicate(row):
            return row
    return None


def storage_backend() -> str:
    return "azure_tables" if _get_service_client() is not None else "memory"


def reset_memory_store_for_tests() -> None:
    with _memory_lock:
        _memory_store.clear()
