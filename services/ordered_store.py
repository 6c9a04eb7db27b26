from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

from azure.core.exceptions import AzureError

from services.crm_store import EntityNotFoundError, create_entity, list_entities, update_entity
from services.reorder import (
    Move,
    OrderedItem,
    Reassignment,
    WriteRecord,
    compute_reassignment,
    display_order,
    next_sort_index,
)

logger = logging.getLogger(__name__)

RowFilter = Callable[[Dict[str, Any]], bool]
UpdateFn = Callable[[str, str, str, Dict[str, Any]], Dict[str, Any]]


@dataclass(frozen=True)
class OrderedCollection:
    """Which table holds the rows and which of their fields carry bucket and order."""

    table_key: str
    bucket_field: str
    order_field: str

    def to_item(self, row: Dict[str, Any]) -> OrderedItem:
        return OrderedItem(
            id=str(row.get("id") or ""),
            bucket_key=_bucket_value(row.get(self.bucket_field)),
            sort_index=_coerce_index(row.get(self.order_field)),
            payload=row,
        )

    def to_row(self, item: OrderedItem) -> Dict[str, Any]:
        row = dict(item.payload)
        row["id"] = item.id
        row[self.bucket_field] = item.bucket_key
        row[self.order_field] = item.sort_index
        return row

    def patch_for(self, write: WriteRecord) -> Dict[str, Any]:
        return {self.bucket_field: write.bucket_key, self.order_field: write.sort_index}


PROSPECTS = OrderedCollection("prospects", "pipelineStage", "stageOrder")
TODOS = OrderedCollection("todos", "dueDate", "displayOrder")


@dataclass
class PersistResult:
    written: List[WriteRecord] = field(default_factory=list)
    failed: List[WriteRecord] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failed


@dataclass
class MoveOutcome:
    reassignment: Reassignment
    items: List[OrderedItem]
    persisted: Optional[PersistResult] = None
    reloaded: bool = False

    def to_dict(self, collection: OrderedCollection) -> Dict[str, Any]:
        failed = self.persisted.failed if self.persisted else []
        return {
            "items": [collection.to_row(item) for item in self.items],
            "writes": [record.to_dict() for record in self.reassignment.writes],
            "failed": [record.id for record in failed],
            "reloaded": self.reloaded,
        }


def _bucket_value(value: Any) -> Optional[str]:
    text = str(value or "").strip()
    return text or None


def _coerce_index(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def load_items(
    collection: OrderedCollection,
    tenant_id: str,
    *,
    filter_fn: Optional[RowFilter] = None,
) -> List[OrderedItem]:
    """All of a tenant's items, in creation order, across every bucket."""
    rows = list_entities(collection.table_key, tenant_id, filter_fn=filter_fn)
    return [collection.to_item(row) for row in rows]


def ordered_rows(
    collection: OrderedCollection,
    items: Iterable[OrderedItem],
    bucket_key: Optional[str],
) -> List[Dict[str, Any]]:
    return [collection.to_row(item) for item in display_order(items, bucket_key)]


def insert_ordered(collection: OrderedCollection, tenant_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Create a row appended to the end of its bucket."""
    bucket_key = _bucket_value(payload.get(collection.bucket_field))
    siblings = load_items(collection, tenant_id)
    row = {
        **payload,
        collection.bucket_field: bucket_key,
        collection.order_field: next_sort_index(siblings, bucket_key),
    }
    return create_entity(collection.table_key, tenant_id, row)


def persist_reassignment(
    collection: OrderedCollection,
    tenant_id: str,
    writes: Iterable[WriteRecord],
    *,
    update_fn: Optional[UpdateFn] = None,
) -> PersistResult:
    """
    Write each record in order. A failed row is logged and skipped; rows already
    written stay written. Callers reload when the result is not ok.
    """
    update = update_fn or update_entity
    result = PersistResult()
    for record in writes:
        try:
            update(collection.table_key, tenant_id, record.id, collection.patch_for(record))
        except (EntityNotFoundError, AzureError) as exc:
            logger.warning(
                "Failed to persist %s %s -> %s[%s]: %s",
                collection.table_key,
                record.id,
                record.bucket_key,
                record.sort_index,
                exc,
            )
            result.failed.append(record)
            continue
        result.written.append(record)
    return result


def commit_reassignment(
    collection: OrderedCollection,
    tenant_id: str,
    reassignment: Reassignment,
    *,
    filter_fn: Optional[RowFilter] = None,
    update_fn: Optional[UpdateFn] = None,
) -> MoveOutcome:
    """Persist an already computed reassignment, reloading on any failed write."""
    if reassignment.invalid or not reassignment.writes:
        return MoveOutcome(reassignment=reassignment, items=reassignment.items)
    persisted = persist_reassignment(collection, tenant_id, reassignment.writes, update_fn=update_fn)
    if persisted.ok:
        return MoveOutcome(reassignment=reassignment, items=reassignment.items, persisted=persisted)
    logger.warning(
        "Reloading %s for tenant %s after %s failed write(s)",
        collection.table_key,
        tenant_id,
        len(persisted.failed),
    )
    items = load_items(collection, tenant_id, filter_fn=filter_fn)
    return MoveOutcome(reassignment=reassignment, items=items, persisted=persisted, reloaded=True)


def apply_move(
    collection: OrderedCollection,
    tenant_id: str,
    move: Move,
    *,
    items: Optional[List[OrderedItem]] = None,
    filter_fn: Optional[RowFilter] = None,
    update_fn: Optional[UpdateFn] = None,
) -> MoveOutcome:
    current = items if items is not None else load_items(collection, tenant_id, filter_fn=filter_fn)
    reassignment = compute_reassignment(current, move)
    return commit_reassignment(
        collection,
        tenant_id,
        reassignment,
        filter_fn=filter_fn,
        update_fn=update_fn,
    )


def move_to_end(
    collection: OrderedCollection,
    tenant_id: str,
    item_id: str,
    dest_bucket: str,
    *,
    items: Optional[List[OrderedItem]] = None,
) -> MoveOutcome:
    """Move one item to the end of ``dest_bucket`` through the engine."""
    current = items if items is not None else load_items(collection, tenant_id)
    target = next((item for item in current if item.id == item_id), None)
    if target is None:
        return apply_move(collection, tenant_id, Move(item_id, None, -1, dest_bucket, 0), items=current)
    source_list = display_order(current, target.bucket_key)
    source_index = next(idx for idx, item in enumerate(source_list) if item.id == item_id)
    if target.bucket_key == dest_bucket:
        dest_index = len(source_list) - 1
    else:
        dest_index = len(display_order(current, dest_bucket))
    move = Move(item_id, target.bucket_key, source_index, dest_bucket, dest_index)
    return apply_move(collection, tenant_id, move, items=current)
