from __future__ import annotations

import calendar
import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Any, Dict, Iterable, List, Optional, Tuple

from azure.core.exceptions import AzureError

from org_shared import OrgActor
from services.crm_store import (
    EntityNotFoundError,
    create_entity,
    delete_entity,
    get_entity,
    list_entities,
    update_entity,
)

logger = logging.getLogger(__name__)

EVENT_TYPES = ["task", "demo", "meeting", "call", "other"]
DEMO_TITLES = {"first_demo": "First Demo", "second_demo": "Second Demo"}
DEMO_DATE_FIELDS = {"first_demo": "firstDemoScheduledAt", "second_demo": "secondDemoScheduledAt"}

DEFAULT_PERSON = "team"
PERSON_CONFIG = {
    "team": {"label": "Team", "color": "#A855F7"},
    "veeti": {"label": "Veeti", "color": "#3B82F6"},
    "alppa": {"label": "Alppa", "color": "#F97316"},
    "ilari": {"label": "Ilari", "color": "#10B981"},
}
ORG_TEAM_MEMBERS = {
    "funect": ["team", "veeti", "alppa"],
    "77-football": ["team", "ilari", "alppa"],
}
DEFAULT_TEAM_MEMBERS = ["team", "alppa"]

MINUTES_PER_DAY = 24 * 60
EVENT_MUTABLE_FIELDS = {
    "title",
    "description",
    "eventType",
    "startTime",
    "endTime",
    "allDay",
    "prospectId",
    "location",
    "assignedTo",
}


def normalize_person(value: Any) -> str:
    person = str(value or "").strip().lower()
    return person if person in PERSON_CONFIG else DEFAULT_PERSON


def color_for_person(value: Any) -> str:
    return PERSON_CONFIG[normalize_person(value)]["color"]


def team_members_for_org(slug: str) -> List[Dict[str, str]]:
    members = ORG_TEAM_MEMBERS.get(str(slug or "").strip().lower(), DEFAULT_TEAM_MEMBERS)
    return [
        {"value": person, "label": PERSON_CONFIG[person]["label"], "color": PERSON_CONFIG[person]["color"]}
        for person in members
    ]


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    else:
        raw = str(value or "").strip()
        if not raw:
            return None
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed


def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _event_bounds(row: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    start = parse_datetime(row.get("startTime"))
    end = parse_datetime(row.get("endTime")) or start
    return start, end


def sanitize_event_payload(body: Dict[str, Any], *, partial: bool = False) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key in EVENT_MUTABLE_FIELDS:
        if key not in body:
            continue
        value = body.get(key)
        if key in {"startTime", "endTime"}:
            parsed = parse_datetime(value)
            if parsed is None:
                raise ValueError(f"{key} must be an ISO timestamp")
            out[key] = to_iso(parsed)
        elif key == "allDay":
            out[key] = bool(value)
        elif key == "eventType":
            event_type = str(value or "").strip().lower()
            if event_type not in EVENT_TYPES:
                raise ValueError(f"eventType must be one of {', '.join(EVENT_TYPES)}")
            out[key] = event_type
        elif key == "assignedTo":
            out[key] = normalize_person(value)
        else:
            text = str(value or "").strip()
            out[key] = text or None
    if not partial:
        if not out.get("title"):
            raise ValueError("title is required")
        if not out.get("startTime") or not out.get("endTime"):
            raise ValueError("startTime and endTime are required")
        out.setdefault("eventType", "other")
        out.setdefault("allDay", False)
        out.setdefault("assignedTo", DEFAULT_PERSON)
    elif "title" in out and not out["title"]:
        raise ValueError("title cannot be empty")
    if "assignedTo" in out:
        out["color"] = color_for_person(out["assignedTo"])
    return out


def _check_order(row: Dict[str, Any]) -> None:
    start, end = _event_bounds(row)
    if start and end and end < start:
        raise ValueError("endTime must not be before startTime")


def _prospect_summaries(tenant_id: str, rows: Iterable[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    wanted = {str(row.get("prospectId")) for row in rows if row.get("prospectId")}
    if not wanted:
        return {}
    summaries: Dict[str, Dict[str, Any]] = {}
    for prospect in list_entities("prospects", tenant_id, filter_fn=lambda item: item.get("id") in wanted):
        summaries[prospect["id"]] = {
            "id": prospect["id"],
            "name": prospect.get("name"),
            "type": prospect.get("type"),
            "pipelineStage": prospect.get("pipelineStage"),
        }
    return summaries


def list_events(tenant_id: str, start: datetime, end: datetime) -> List[Dict[str, Any]]:
    """Events starting inside [start, end], ordered by start, with their prospect attached."""

    def _in_range(row: Dict[str, Any]) -> bool:
        event_start = parse_datetime(row.get("startTime"))
        return event_start is not None and start <= event_start <= end

    rows = list_entities("calendar_events", tenant_id, filter_fn=_in_range)
    rows.sort(key=lambda row: parse_datetime(row.get("startTime")))
    prospects = _prospect_summaries(tenant_id, rows)
    for row in rows:
        row["prospect"] = prospects.get(str(row.get("prospectId"))) if row.get("prospectId") else None
    return rows


def day_bounds(day: date, tz: tzinfo = timezone.utc) -> Tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=tz)
    return start, start + timedelta(days=1) - timedelta(microseconds=1)


def list_day_events(tenant_id: str, day: date, tz: tzinfo = timezone.utc) -> List[Dict[str, Any]]:
    start, end = day_bounds(day, tz)
    return list_events(tenant_id, start, end)


def list_month_events(tenant_id: str, year: int, month: int, tz: tzinfo = timezone.utc) -> List[Dict[str, Any]]:
    last_day = calendar.monthrange(year, month)[1]
    start, _ = day_bounds(date(year, month, 1), tz)
    _, end = day_bounds(date(year, month, last_day), tz)
    return list_events(tenant_id, start, end)


def get_event(tenant_id: str, event_id: str) -> Optional[Dict[str, Any]]:
    return get_entity("calendar_events", tenant_id, event_id)


def create_event(actor: OrgActor, body: Dict[str, Any]) -> Dict[str, Any]:
    payload = sanitize_event_payload(body)
    _check_order(payload)
    payload.update({"userId": actor.user_id, "organizationId": actor.organization_id})
    created = create_entity("calendar_events", actor.tenant_id, payload)
    logger.info("Calendar event %s (%s) created for org %s", created.get("id"), created.get("eventType"), actor.slug)
    return created


def update_event(tenant_id: str, event_id: str, body: Dict[str, Any]) -> Dict[str, Any]:
    updates = sanitize_event_payload(body, partial=True)
    if not updates:
        raise ValueError("no valid fields to update")
    existing = get_entity("calendar_events", tenant_id, event_id)
    if existing is None:
        raise EntityNotFoundError("calendar_events", event_id)
    _check_order({**existing, **updates})
    return update_entity("calendar_events", tenant_id, event_id, updates)


def delete_event(tenant_id: str, event_id: str) -> bool:
    return delete_entity("calendar_events", tenant_id, event_id)


def list_prospect_demos(tenant_id: str, prospect_id: str) -> List[Dict[str, Any]]:
    rows = list_entities(
        "calendar_events",
        tenant_id,
        filter_fn=lambda row: row.get("prospectId") == prospect_id and row.get("eventType") == "demo",
    )
    rows.sort(key=lambda row: parse_datetime(row.get("startTime")) or datetime.min.replace(tzinfo=timezone.utc))
    return rows


def stamp_demo_date(tenant_id: str, prospect_id: str, field_name: str, start: datetime) -> bool:
    """Record a demo date on the prospect. Failures are logged; the event stays."""
    try:
        update_entity("prospects", tenant_id, prospect_id, {field_name: to_iso(start)})
    except (EntityNotFoundError, AzureError) as exc:
        logger.error("Error updating prospect %s demo date: %s", prospect_id, exc)
        return False
    return True


def create_demo_event(
    actor: OrgActor,
    prospect_id: str,
    demo_type: str,
    start: datetime,
    end: datetime,
    prospect_name: str,
    responsible_person: Optional[str] = None,
) -> Dict[str, Any]:
    if demo_type not in DEMO_TITLES:
        raise ValueError("demoType must be first_demo or second_demo")
    event = create_event(
        actor,
        {
            "title": f"{DEMO_TITLES[demo_type]} - {prospect_name}",
            "description": f"Demo scheduled for {prospect_name}",
            "eventType": "demo",
            "startTime": to_iso(start),
            "endTime": to_iso(end),
            "prospectId": prospect_id,
            "assignedTo": responsible_person or DEFAULT_PERSON,
        },
    )
    stamp_demo_date(actor.tenant_id, prospect_id, DEMO_DATE_FIELDS[demo_type], start)
    return event


def _minutes_between(start: datetime, end: datetime) -> int:
    return int((end - start).total_seconds() // 60)


def event_position(row: Dict[str, Any], day: date, tz: tzinfo = timezone.utc) -> Tuple[int, int]:
    """
    Top offset and height of an event in a one-pixel-per-minute day column.
    Parts of the event outside ``day`` are clipped.
    """
    start, end = _event_bounds(row)
    if start is None or end is None:
        return 0, 0
    day_start = datetime.combine(day, time.min, tzinfo=tz)
    top = max(0, min(MINUTES_PER_DAY, _minutes_between(day_start, start)))
    bottom = max(0, min(MINUTES_PER_DAY, _minutes_between(day_start, end)))
    return top, max(0, bottom - top)


def layout_day(events: Iterable[Dict[str, Any]], day: date, tz: tzinfo = timezone.utc) -> Dict[str, Any]:
    """
    Position timed events of one day and split overlapping ones into lanes.
    Lanes are assigned greedily in start order; every event of an overlap
    cluster reports that cluster's lane count.
    """
    all_day: List[Dict[str, Any]] = []
    timed: List[Tuple[datetime, datetime, Dict[str, Any]]] = []
    for row in events:
        start, end = _event_bounds(row)
        if row.get("allDay") or start is None or end is None:
            all_day.append(row)
            continue
        timed.append((start, end, row))
    timed.sort(key=lambda entry: (entry[0], entry[1]))

    placed: List[Dict[str, Any]] = []
    cluster: List[Dict[str, Any]] = []
    lane_ends: List[datetime] = []
    cluster_end: Optional[datetime] = None

    def _close_cluster() -> None:
        for entry in cluster:
            entry["lanes"] = len(lane_ends)
        placed.extend(cluster)

    for start, end, row in timed:
        if cluster and cluster_end is not None and start >= cluster_end:
            _close_cluster()
            cluster = []
            lane_ends = []
            cluster_end = None
        lane = next((idx for idx, lane_end in enumerate(lane_ends) if lane_end <= start), None)
        if lane is None:
            lane = len(lane_ends)
            lane_ends.append(end)
        else:
            lane_ends[lane] = end
        cluster_end = end if cluster_end is None else max(cluster_end, end)
        top, height = event_position(row, day, tz)
        cluster.append({"event": row, "top": top, "height": height, "lane": lane, "lanes": 1})
    if cluster:
        _close_cluster()
    return {"allDay": all_day, "timed": placed}
