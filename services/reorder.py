"""
Ordered-item reassignment.

Items live in buckets (a pipeline stage, or a calendar day) and carry a manual
sort index that is only meaningful among siblings of the same bucket. A drag
gesture is described by a Move; compute_reassignment turns it into the new
in-memory ordering plus the write-set needed to persist it. Nothing in this
module performs I/O.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrderedItem:
    id: str
    bucket_key: Optional[str]
    sort_index: int
    payload: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def placed(self, bucket_key: Optional[str], sort_index: int) -> "OrderedItem":
        return replace(self, bucket_key=bucket_key, sort_index=sort_index)


@dataclass(frozen=True)
class Move:
    item_id: str
    source_bucket: Optional[str]
    source_index: int
    dest_bucket: Optional[str]
    dest_index: int

    @classmethod
    def from_payload(cls, body: Mapping[str, Any]) -> "Move":
        """
        Build a Move from a request body. Accepts the flat shape
        ``{itemId, sourceBucket, sourceIndex, destBucket, destIndex}`` and the
        drag-end shape ``{draggableId, source: {droppableId, index},
        destination: {droppableId, index} | null}``.
        Raises ValueError for a missing item id or non-integer indexes.
        """
        if "source" in body or "destination" in body:
            source = body.get("source") or {}
            destination = body.get("destination") or {}
            item_id = body.get("draggableId") or body.get("itemId")
            source_bucket = source.get("droppableId")
            source_index = source.get("index")
            dest_bucket = destination.get("droppableId")
            dest_index = destination.get("index", 0)
        else:
            item_id = body.get("itemId") or body.get("id")
            source_bucket = body.get("sourceBucket")
            source_index = body.get("sourceIndex")
            dest_bucket = body.get("destBucket")
            dest_index = body.get("destIndex", 0)

        item_id = str(item_id or "").strip()
        if not item_id:
            raise ValueError("itemId is required")
        try:
            parsed_source_index = int(source_index) if source_index is not None else -1
            parsed_dest_index = int(dest_index) if dest_index is not None else 0
        except (TypeError, ValueError) as exc:
            raise ValueError("sourceIndex and destIndex must be integers") from exc
        return cls(
            item_id=item_id,
            source_bucket=_bucket_or_none(source_bucket),
            source_index=parsed_source_index,
            dest_bucket=_bucket_or_none(dest_bucket),
            dest_index=parsed_dest_index,
        )


@dataclass(frozen=True)
class WriteRecord:
    id: str
    bucket_key: Optional[str]
    sort_index: int

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "bucketKey": self.bucket_key, "sortIndex": self.sort_index}


@dataclass
class Reassignment:
    items: List[OrderedItem]
    writes: List[WriteRecord]
    moved: Optional[OrderedItem] = None
    invalid: Optional[str] = None

    @property
    def changed(self) -> bool:
        return bool(self.writes)


def _bucket_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def display_order(items: Iterable[OrderedItem], bucket_key: Optional[str]) -> List[OrderedItem]:
    """Members of one bucket in display order; ties keep their input order."""
    members = [item for item in items if item.bucket_key == bucket_key]
    return sorted(members, key=lambda item: item.sort_index)


def next_sort_index(items: Iterable[OrderedItem], bucket_key: Optional[str]) -> int:
    """Sort index for an item appended to the end of ``bucket_key``."""
    indexes = [item.sort_index for item in items if item.bucket_key == bucket_key]
    return max(indexes) + 1 if indexes else 0


def group_by_bucket(items: Iterable[OrderedItem]) -> Dict[Optional[str], List[OrderedItem]]:
    materialized = list(items)
    buckets: Dict[Optional[str], List[OrderedItem]] = {}
    for item in materialized:
        buckets.setdefault(item.bucket_key, [])
    for bucket_key in buckets:
        buckets[bucket_key] = display_order(materialized, bucket_key)
    return buckets


def diff_write_set(before: Iterable[OrderedItem], after: Iterable[OrderedItem]) -> List[WriteRecord]:
    """Write records for every item whose bucket or sort index differs between two states."""
    previous = {item.id: item for item in before}
    writes: List[WriteRecord] = []
    for item in after:
        old = previous.get(item.id)
        if old is None or old.bucket_key != item.bucket_key or old.sort_index != item.sort_index:
            writes.append(WriteRecord(item.id, item.bucket_key, item.sort_index))
    return writes


def _unchanged(items: List[OrderedItem], invalid: Optional[str] = None) -> Reassignment:
    return Reassignment(items=items, writes=[], moved=None, invalid=invalid)


def compute_reassignment(items: Iterable[OrderedItem], move: Move) -> Reassignment:
    """
    Apply one drag gesture to ``items`` without mutating them.

    Dropping outside any bucket, or back onto the same position, returns the
    input unchanged with no writes. An unknown item, or one that is not in
    ``move.source_bucket``, is an invalid move and is also left unchanged.
    The item id decides which item moves; ``move.source_index`` from a stale
    view is only logged.

    Every member of the destination bucket is re-indexed 0..n-1 and, for a
    cross-bucket move, so is every remaining member of the source bucket. The
    write-set holds the moved item first, then each sibling whose index
    actually changed.
    """
    current = list(items)
    if move.dest_bucket is None:
        return _unchanged(current)
    same_bucket = move.source_bucket == move.dest_bucket
    if same_bucket and move.source_index == move.dest_index:
        return _unchanged(current)

    source_list = display_order(current, move.source_bucket)
    position = next((idx for idx, item in enumerate(source_list) if item.id == move.item_id), None)
    if position is None:
        known = any(item.id == move.item_id for item in current)
        reason = "item_not_in_source_bucket" if known else "unknown_item"
        logger.info("Rejected move of %s from %s: %s", move.item_id, move.source_bucket, reason)
        return _unchanged(current, invalid=reason)
    if position != move.source_index:
        logger.debug(
            "Move of %s reported source index %s but item is at %s in %s",
            move.item_id,
            move.source_index,
            position,
            move.source_bucket,
        )

    dest_list = source_list if same_bucket else display_order(current, move.dest_bucket)
    moved = source_list.pop(position)
    dest_index = max(0, min(move.dest_index, len(dest_list)))
    if same_bucket and dest_index == position:
        return _unchanged(current)
    dest_list.insert(dest_index, moved)

    placements: Dict[str, OrderedItem] = {}
    for idx, item in enumerate(dest_list):
        placements[item.id] = item.placed(move.dest_bucket, idx)
    if not same_bucket:
        for idx, item in enumerate(source_list):
            placements[item.id] = item.placed(move.source_bucket, idx)

    originals = {item.id: item for item in current}
    moved_after = placements[moved.id]
    writes = [WriteRecord(moved_after.id, moved_after.bucket_key, moved_after.sort_index)]
    touched = dest_list + ([] if same_bucket else source_list)
    for item in touched:
        if item.id == moved.id:
            continue
        after = placements[item.id]
        before = originals[item.id]
        if after.bucket_key != before.bucket_key or after.sort_index != before.sort_index:
            writes.append(WriteRecord(after.id, after.bucket_key, after.sort_index))

    updated = [placements.get(item.id, item) for item in current]
    return Reassignment(items=updated, writes=writes, moved=moved_after)


def reassign(items: Iterable[OrderedItem], move: Move) -> Tuple[List[OrderedItem], List[WriteRecord]]:
    result = compute_reassignment(items, move)
    return result.items, result.writes
