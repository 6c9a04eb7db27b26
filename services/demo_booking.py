"""
Public demo bookings: the website form and the Cal.com webhook.

Both flows find or create the prospect by e-mail, put a one-hour demo on the
calendar and move the prospect to the end of ``first_demo`` through the
reassignment engine.
"""
from __future__ import annotations

import logging
import time as time_module
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Dict, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from org_shared import OrgActor, system_actor
from services.calendar_events import create_event, parse_datetime, stamp_demo_date, to_iso
from services.crm_store import find_entity, get_entity, update_entity
from services.ordered_store import PROSPECTS, insert_ordered, move_to_end
from shared.config import get_demo_booking_settings, get_rate_limit_settings
from schemas.demo_booking_schema import slot_start, validate_booking_slot

logger = logging.getLogger(__name__)

BOOKING_CREATED = "BOOKING_CREATED"


class RateLimiter:
    """Fixed-window request counter per client key, kept in process memory."""

    def __init__(self, max_requests: int, window_seconds: int):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._lock = Lock()
        self._windows: Dict[str, Tuple[int, float]] = {}

    def allow(self, key: str, now: Optional[float] = None) -> bool:
        current = time_module.monotonic() if now is None else now
        with self._lock:
            self._prune(current)
            entry = self._windows.get(key)
            if entry is None or current >= entry[1]:
                self._windows[key] = (1, current + self.window_seconds)
                return True
            count, reset_at = entry
            if count >= self.max_requests:
                return False
            self._windows[key] = (count + 1, reset_at)
            return True

    def _prune(self, current: float) -> None:
        expired = [key for key, (_, reset_at) in self._windows.items() if current >= reset_at]
        for key in expired:
            self._windows.pop(key, None)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


_rate_settings = get_rate_limit_settings()
booking_rate_limiter = RateLimiter(_rate_settings["max_requests"], _rate_settings["window_seconds"])


def booking_timezone(settings: Optional[Dict[str, Any]] = None):
    name = (settings or get_demo_booking_settings()).get("timezone") or "UTC"
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError:
        logger.warning("Unknown DEMO_BOOKING_TIMEZONE %s, using UTC", name)
        return timezone.utc


def find_or_create_prospect(
    tenant_id: str,
    *,
    email: str,
    name: str,
    contact_name: str,
    phone: Optional[str] = None,
    source_note: str,
    default_owner: str,
    update_existing: bool = True,
) -> Dict[str, Any]:
    normalized_email = str(email or "").strip().lower()
    existing = find_entity(
        "prospects",
        tenant_id,
        lambda row: str(row.get("email") or "").strip().lower() == normalized_email,
    )
    if existing:
        if not update_existing:
            return existing
        patch: Dict[str, Any] = {"notes": f"Contact: {contact_name}\nUpdated via {source_note}."}
        if phone:
            patch["phone"] = phone
        return update_entity("prospects", tenant_id, existing["id"], patch)
    created = insert_ordered(
        PROSPECTS,
        tenant_id,
        {
            "name": name,
            "email": normalized_email,
            "phone": phone,
            "pipelineStage": "not_contacted",
            "priority": "medium",
            "leadSource": "website",
            "responsiblePerson": default_owner,
            "notes": f"Contact: {contact_name}\nBooked demo via {source_note}.",
            "organizationId": tenant_id,
        },
    )
    logger.info("Created prospect %s from %s", created.get("id"), source_note)
    return created


def _schedule_public_demo(
    actor: OrgActor,
    prospect: Dict[str, Any],
    *,
    start: datetime,
    end: datetime,
    title: str,
    description: str,
    location: str,
    owner: str,
) -> Dict[str, Any]:
    event = create_event(
        actor,
        {
            "title": title,
            "description": description,
            "eventType": "demo",
            "startTime": to_iso(start),
            "endTime": to_iso(end),
            "allDay": False,
            "prospectId": prospect["id"],
            "assignedTo": owner,
            "location": location,
        },
    )
    current = get_entity("prospects", actor.tenant_id, prospect["id"]) or prospect
    date_field = "secondDemoScheduledAt" if current.get("firstDemoScheduledAt") else "firstDemoScheduledAt"
    stamp_demo_date(actor.tenant_id, prospect["id"], date_field, start)
    if current.get("pipelineStage") != "first_demo":
        outcome = move_to_end(PROSPECTS, actor.tenant_id, prospect["id"], "first_demo")
        if outcome.reassignment.invalid or outcome.reloaded:
            logger.warning(
                "Prospect %s was not fully moved to first_demo (%s)",
                prospect["id"],
                outcome.reassignment.invalid or "partial write",
            )
    return event


def book_demo(
    organization_id: str,
    booking: Dict[str, Any],
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Book a validated website demo request. Raises ValueError when the slot is
    outside the bookable window.
    """
    settings = get_demo_booking_settings()
    tz = booking_timezone(settings)
    start = slot_start(booking, tz)
    error = validate_booking_slot(start, now or datetime.now(timezone.utc), settings)
    if error:
        raise ValueError(error)
    end = start + timedelta(minutes=settings["duration_minutes"])

    actor = system_actor(organization_id, settings["organization_slug"])
    prospect = find_or_create_prospect(
        actor.tenant_id,
        email=booking["email"],
        name=booking["company"],
        contact_name=booking["name"],
        phone=booking.get("phone"),
        source_note="website demo booking",
        default_owner=settings["default_owner"],
    )
    event = _schedule_public_demo(
        actor,
        prospect,
        start=start,
        end=end,
        title=f"Demo - {booking['company']}",
        description=f"Website demo booking\nContact: {booking['name']}\nEmail: {booking['email']}",
        location=settings["location"],
        owner=settings["default_owner"],
    )
    return {
        "success": True,
        "prospectId": prospect["id"],
        "eventId": event["id"],
        "scheduledTime": to_iso(start),
    }


def process_cal_webhook(organization_id: str, body: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
    """Handle a Cal.com webhook delivery. Returns ``(status_code, response_body)``."""
    if str(body.get("triggerEvent") or "") != BOOKING_CREATED:
        return 200, {"message": "Event ignored"}
    payload = body.get("payload") if isinstance(body.get("payload"), dict) else {}
    attendees = payload.get("attendees") if isinstance(payload.get("attendees"), list) else []
    attendee = attendees[0] if attendees and isinstance(attendees[0], dict) else None
    if not attendee or not str(attendee.get("email") or "").strip():
        return 400, {"error": "No attendee found", "code": "validation_error"}

    start = parse_datetime(payload.get("startTime"))
    end = parse_datetime(payload.get("endTime"))
    if start is None or end is None:
        return 400, {"error": "startTime and endTime are required", "code": "validation_error"}

    settings = get_demo_booking_settings()
    actor = system_actor(organization_id, settings["organization_slug"])
    attendee_name = str(attendee.get("name") or attendee.get("email")).strip()
    prospect = find_or_create_prospect(
        actor.tenant_id,
        email=attendee["email"],
        name=attendee_name,
        contact_name=attendee_name,
        source_note="Cal.com",
        default_owner=settings["default_owner"],
        update_existing=False,
    )
    meeting_url = payload.get("meetingUrl")
    event = _schedule_public_demo(
        actor,
        prospect,
        start=start,
        end=end,
        title=f"Demo - {attendee_name}",
        description=(
            f"Cal.com booking\nEmail: {attendee['email']}\nMeeting URL: {meeting_url or 'TBD'}\n\n"
            f"{payload.get('description') or ''}"
        ).rstrip(),
        location=meeting_url or payload.get("location") or "Google Meet",
        owner=settings["default_owner"],
    )
    logger.info("Cal.com booking %s created prospect %s event %s", payload.get("uid"), prospect["id"], event["id"])
    return 200, {"success": True, "prospectId": prospect["id"], "eventId": event["id"]}
