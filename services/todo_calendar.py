"""
Team to-do lists, one ordered bucket per calendar day.

Todos are bucketed by ``dueDate`` (YYYY-MM-DD) and ordered by
``displayOrder``. The board shows a rolling window starting today.
"""
from __future__ import annotations

import logging
import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional

from azure.core.exceptions import AzureError

from org_shared import OrgActor
from services.attachments import delete_task_attachment, upload_task_attachment
from services.calendar_events import create_event, normalize_person, to_iso
from services.crm_store import EntityNotFoundError, delete_entity, get_entity, update_entity
from services.ordered_store import (
    TODOS,
    MoveOutcome,
    apply_move,
    commit_reassignment,
    insert_ordered,
    load_items,
    move_to_end,
    ordered_rows,
)
from services.org_rbac import TODO_MUTABLE_FIELDS
from services.reorder import Move, Reassignment, compute_reassignment, diff_write_set, display_order
from shared.config import get_todo_window_days

logger = logging.getLogger(__name__)

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def parse_iso_date(value: Any) -> Optional[date]:
    raw = str(value or "").strip()
    if not _DATE_RE.match(raw):
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError:
        return None


def day_label(day: date, today: date) -> str:
    offset = (day - today).days
    if offset == 0:
        return "Today"
    if offset == 1:
        return "Tomorrow"
    return f"{day:%a}, {day:%b} {day.day}"


def window_days(today: date, days: Optional[int] = None) -> List[Dict[str, Any]]:
    count = days if days is not None else get_todo_window_days()
    out = []
    for offset in range(max(1, count)):
        day = today + timedelta(days=offset)
        out.append({"date": day.isoformat(), "label": day_label(day, today), "isToday": offset == 0})
    return out


def list_window(tenant_id: str, today: date, days: Optional[int] = None) -> Dict[str, Any]:
    columns = window_days(today, days)
    wanted = {column["date"] for column in columns}
    items = load_items(TODOS, tenant_id, filter_fn=lambda row: row.get("dueDate") in wanted)
    for column in columns:
        column["todos"] = ordered_rows(TODOS, items, column["date"])
    return {"today": today.isoformat(), "days": columns}


def _clean_text(value: Any, max_len: int) -> Optional[str]:
    text = str(value or "").strip()
    return text[:max_len] if text else None


def _companion_event_payload(todo: Dict[str, Any], body: Dict[str, Any]) -> Dict[str, Any]:
    start_raw = body.get("startTime")
    end_raw = body.get("endTime")
    payload: Dict[str, Any] = {
        "title": todo.get("title"),
        "description": todo.get("description"),
        "eventType": "task",
        "assignedTo": todo.get("assignedTo"),
    }
    if start_raw and end_raw:
        payload.update({"startTime": start_raw, "endTime": end_raw, "allDay": False})
        return payload
    due = parse_iso_date(todo.get("dueDate")) or datetime.now(timezone.utc).date()
    start = datetime.combine(due, time.min, tzinfo=timezone.utc)
    payload.update(
        {
            "startTime": to_iso(start),
            "endTime": to_iso(start + timedelta(days=1) - timedelta(seconds=1)),
            "allDay": True,
        }
    )
    return payload


def create_todo(actor: OrgActor, body: Dict[str, Any], *, today: date) -> Dict[str, Any]:
    title = _clean_text(body.get("title"), 500)
    if not title:
        raise ValueError("title is required")
    due_raw = body.get("dueDate")
    due = parse_iso_date(due_raw) if due_raw else today
    if due is None:
        raise ValueError("dueDate must be YYYY-MM-DD")
    payload = {
        "title": title,
        "description": _clean_text(body.get("description"), 4000),
        "completed": False,
        "assignedTo": normalize_person(body.get("assignedTo")),
        "dueDate": due.isoformat(),
        "attachments": [],
        "userId": actor.user_id,
        "organizationId": actor.organization_id,
    }
    created = insert_ordered(TODOS, actor.tenant_id, payload)
    if body.get("addToCalendar"):
        try:
            event = create_event(actor, _companion_event_payload(created, body))
            created = update_entity("todos", actor.tenant_id, created["id"], {"calendarEventId": event["id"]})
        except (ValueError, AzureError) as exc:
            logger.warning("Todo %s created without its calendar event: %s", created.get("id"), exc)
    return created


def update_todo(tenant_id: str, todo_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    """
    Patch a todo. A new ``dueDate`` moves the todo to the end of that day
    through the reassignment engine; ``displayOrder`` is never patched.
    """
    if "displayOrder" in body:
        raise ValueError("displayOrder can only change through a todo move")
    existing = get_entity("todos", tenant_id, todo_id)
    if existing is None:
        raise EntityNotFoundError("todos", todo_id)

    updates: Dict[str, Any] = {}
    new_due: Optional[date] = None
    for key in TODO_MUTABLE_FIELDS:
        if key not in body:
            continue
        value = body.get(key)
        if key == "title":
            title = _clean_text(value, 500)
            if not title:
                raise ValueError("title cannot be empty")
            updates["title"] = title
        elif key == "description":
            updates["description"] = _clean_text(value, 4000)
        elif key == "completed":
            updates["completed"] = bool(value)
        elif key == "assignedTo":
            updates["assignedTo"] = normalize_person(value)
        elif key == "dueDate":
            new_due = parse_iso_date(value)
            if new_due is None:
                raise ValueError("dueDate must be YYYY-MM-DD")
    if not updates and new_due is None:
        raise ValueError("no valid fields to update")

    if updates:
        update_entity("todos", tenant_id, todo_id, updates)
    if new_due is not None and new_due.isoformat() != existing.get("dueDate"):
        outcome = move_to_end(TODOS, tenant_id, todo_id, new_due.isoformat())
        if outcome.reloaded:
            logger.warning("Todo %s due date change was only partially persisted", todo_id)
    updated = get_entity("todos", tenant_id, todo_id)
    if updated is None:
        raise EntityNotFoundError("todos", todo_id)
    return updated


def toggle_todo(tenant_id: str, todo_id: str) -> Dict[str, Any]:
    existing = get_entity("todos", tenant_id, todo_id)
    if existing is None:
        raise EntityNotFoundError("todos", todo_id)
    return update_entity("todos", tenant_id, todo_id, {"completed": not bool(existing.get("completed"))})


def delete_todo(tenant_id: str, todo_id: str) -> bool:
    existing = get_entity("todos", tenant_id, todo_id)
    if existing is None:
        return False
    for attachment in existing.get("attachments") or []:
        blob_name = attachment.get("blobName") if isinstance(attachment, dict) else None
        if blob_name:
            delete_task_attachment(blob_name)
    return delete_entity("todos", tenant_id, todo_id)


def move_todo(tenant_id: str, move: Move) -> MoveOutcome:
    for bucket in (move.source_bucket, move.dest_bucket):
        if bucket is not None and parse_iso_date(bucket) is None:
            raise ValueError("todo buckets must be YYYY-MM-DD dates")
    return apply_move(TODOS, tenant_id, move)


def carry_over_incomplete(tenant_id: str, today: date) -> MoveOutcome:
    """
    Move yesterday's incomplete todos to the end of today, keeping their
    relative order. Completed todos stay where they are.
    """
    yesterday = (today - timedelta(days=1)).isoformat()
    target = today.isoformat()
    before = load_items(TODOS, tenant_id)
    state = list(before)
    pending = [item.id for item in display_order(before, yesterday) if not item.payload.get("completed")]
    for item_id in pending:
        source_list = display_order(state, yesterday)
        source_index = next(idx for idx, item in enumerate(source_list) if item.id == item_id)
        move = Move(item_id, yesterday, source_index, target, len(display_order(state, target)))
        state = compute_reassignment(state, move).items
    writes = diff_write_set(before, state)
    if pending:
        logger.info("Carrying over %s todo(s) from %s to %s for tenant %s", len(pending), yesterday, target, tenant_id)
    return commit_reassignment(TODOS, tenant_id, Reassignment(items=state, writes=writes))


def carried_over_ids(outcome: MoveOutcome, today: date) -> List[str]:
    """Ids of todos that moved from yesterday onto ``today`` and were written successfully."""
    yesterday = (today - timedelta(days=1)).isoformat()
    target = today.isoformat()
    failed = {record.id for record in (outcome.persisted.failed if outcome.persisted else [])}
    # Item payloads are the rows as loaded, so they still carry the old dueDate.
    return [
        item.id
        for item in display_order(outcome.reassignment.items, target)
        if item.payload.get("dueDate") == yesterday and item.id not in failed
    ]


def attach_screenshot(
    tenant_id: str,
    todo_id: str,
    *,
    filename: Optional[str],
    data: bytes,
    content_type: Optional[str],
) -> Dict[str, Any]:
    existing = get_entity("todos", tenant_id, todo_id)
    if existing is None:
        raise EntityNotFoundError("todos", todo_id)
    record = upload_task_attachment(
        tenant_id=tenant_id,
        todo_id=todo_id,
        filename=filename,
        data=data,
        content_type=content_type,
    )
    attachments = [item for item in existing.get("attachments") or [] if isinstance(item, dict)]
    attachments.append(record)
    return update_entity("todos", tenant_id, todo_id, {"attachments": attachments})
