from __future__ import annotations

import json
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import azure.functions as func

from org_shared import OrgActor, has_identity, resolve_actor


def json_response(data: Any, *, status_code: int, cors: Dict[str, str]) -> func.HttpResponse:
    return func.HttpResponse(
        json.dumps(data, default=str),
        status_code=status_code,
        mimetype="application/json",
        headers=cors,
    )


def error_response(
    *,
    cors: Dict[str, str],
    status_code: int,
    message: str,
    code: str,
    details: Optional[Any] = None,
) -> func.HttpResponse:
    payload = {"error": message, "code": code}
    if details is not None:
        payload["details"] = details
    return json_response(payload, status_code=status_code, cors=cors)


def parse_body(req: func.HttpRequest) -> Dict[str, Any]:
    try:
        payload = req.get_json()
        if isinstance(payload, dict):
            return payload
    except ValueError:
        pass
    return {}


def resolve_actor_or_error(
    req: func.HttpRequest,
    body: Dict[str, Any],
    cors: Dict[str, str],
) -> Tuple[Optional[OrgActor], Optional[func.HttpResponse]]:
    if not has_identity(req, body):
        return None, error_response(cors=cors, status_code=401, message="Not authenticated", code="auth_required")
    actor = resolve_actor(req, body)
    if not actor:
        return None, error_response(
            cors=cors,
            status_code=403,
            message="You are not a member of this organization",
            code="forbidden",
        )
    return actor, None


def request_today(req: func.HttpRequest) -> date:
    """
    The caller's calendar day. Browsers send ``today`` (YYYY-MM-DD) or
    ``tzOffsetMinutes`` so the window follows their local midnight.
    """
    raw_today = str(req.params.get("today") or "").strip()
    if raw_today:
        try:
            return date.fromisoformat(raw_today)
        except ValueError:
            pass
    return datetime.now(request_tz(req)).date()


def request_tz(req: func.HttpRequest) -> timezone:
    raw_offset = str(req.params.get("tzOffsetMinutes") or "").strip()
    try:
        offset = int(raw_offset) if raw_offset else 0
    except ValueError:
        offset = 0
    offset = max(-14 * 60, min(14 * 60, offset))
    return timezone(timedelta(minutes=offset))


def client_ip(req: func.HttpRequest) -> str:
    headers = req.headers or {}
    forwarded = str(headers.get("x-forwarded-for") or "").split(",")[0].strip()
    if forwarded:
        # Azure front ends append the port.
        if forwarded.count(":") == 1:
            forwarded = forwarded.split(":")[0]
        return forwarded
    return str(headers.get("x-real-ip") or "unknown").strip() or "unknown"
