from __future__ import annotations

import re
from datetime import date, datetime, time, timedelta
from typing import Any, Dict, List, Optional, Tuple

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
TIME_RE = re.compile(r"^\d{2}:\d{2}$")


def _text(payload: Dict[str, Any], field: str) -> str:
    value = payload.get(field)
    if value is None:
        return ""
    return str(value).strip()


def _check_length(errors: Dict[str, List[str]], field: str, value: str, low: int, high: int, message: str) -> None:
    if len(value) < low:
        errors.setdefault(field, []).append(message)
    elif len(value) > high:
        errors.setdefault(field, []).append(f"{field} must be at most {high} characters")


def validate_demo_booking(payload: Any) -> Tuple[Optional[Dict[str, Any]], Dict[str, List[str]]]:
    """
    Validate a website booking form. Returns ``(booking, {})`` on success and
    ``(None, field_errors)`` otherwise.
    """
    if not isinstance(payload, dict):
        return None, {"body": ["Invalid JSON payload"]}
    errors: Dict[str, List[str]] = {}

    name = _text(payload, "name")
    _check_length(errors, "name", name, 2, 100, "Name must be at least 2 characters")

    email = _text(payload, "email").lower()
    if not EMAIL_RE.match(email):
        errors.setdefault("email", []).append("Invalid email address")
    elif len(email) > 255:
        errors.setdefault("email", []).append("email must be at most 255 characters")

    company = _text(payload, "company")
    _check_length(errors, "company", company, 1, 200, "Company name is required")

    phone = _text(payload, "phone")
    if len(phone) > 50:
        errors.setdefault("phone", []).append("phone must be at most 50 characters")

    slot = payload.get("selectedSlot")
    slot_date = slot_time = ""
    if not isinstance(slot, dict):
        errors.setdefault("selectedSlot", []).append("selectedSlot is required")
    else:
        slot_date = _text(slot, "date")
        slot_time = _text(slot, "time")
        if not DATE_RE.match(slot_date) or _parse_date(slot_date) is None:
            errors.setdefault("selectedSlot", []).append("Date must be in YYYY-MM-DD format")
        if not TIME_RE.match(slot_time) or _parse_time(slot_time) is None:
            errors.setdefault("selectedSlot", []).append("Time must be in HH:MM format")

    if errors:
        return None, errors
    return {
        "name": name,
        "email": email,
        "company": company,
        "phone": phone or None,
        "date": slot_date,
        "time": slot_time,
    }, {}


def _parse_date(raw: str) -> Optional[date]:
    try:
        return date.fromisoformat(raw)
    except ValueError:
        return None


def _parse_time(raw: str) -> Optional[time]:
    try:
        hours, minutes = (int(part) for part in raw.split(":"))
        return time(hours, minutes)
    except ValueError:
        return None


def slot_start(booking: Dict[str, Any], tz) -> datetime:
    day = _parse_date(booking["date"])
    clock = _parse_time(booking["time"])
    if day is None or clock is None:
        raise ValueError("invalid booking slot")
    return datetime.combine(day, clock, tzinfo=tz)


def validate_booking_slot(start: datetime, now: datetime, settings: Dict[str, Any]) -> Optional[str]:
    """Return an error message when the slot is outside the bookable window."""
    local_now = now.astimezone(start.tzinfo)
    start_of_today = datetime.combine(local_now.date(), time.min, tzinfo=start.tzinfo)
    if start < start_of_today:
        return "Cannot book a demo in the past"
    if start > local_now + timedelta(days=int(settings["max_days_ahead"])):
        return f"Cannot book more than {settings['max_days_ahead']} days in advance"
    if start.hour < int(settings["open_hour"]) or start.hour >= int(settings["close_hour"]):
        return "Please select a time between {:02d}:00 and {:02d}:00".format(
            int(settings["open_hour"]), int(settings["close_hour"])
        )
    return None
