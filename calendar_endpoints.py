from __future__ import annotations

import logging
from datetime import date, timedelta

import azure.functions as func

from endpoint_shared import error_response, json_response, parse_body, request_tz, resolve_actor_or_error
from function_app import app
from services.calendar_events import (
    create_demo_event,
    create_event,
    delete_event,
    get_event,
    layout_day,
    list_day_events,
    list_events,
    list_month_events,
    list_prospect_demos,
    parse_datetime,
    team_members_for_org,
    update_event,
)
from services.crm_store import EntityNotFoundError, get_entity
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)


@app.function_name(name="CalendarEvents")
@app.route(route="orgs/{slug}/calendar/events", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def calendar_events(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    if req.method == "POST":
        try:
            created = create_event(actor, body)
        except ValueError as exc:
            return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")
        return json_response({"item": created}, status_code=201, cors=cors)

    tz = request_tz(req)
    raw_day = str(req.params.get("day") or "").strip()
    raw_month = str(req.params.get("month") or "").strip()
    try:
        if raw_day:
            day = date.fromisoformat(raw_day)
            items = list_day_events(actor.tenant_id, day, tz)
            return json_response(
                {"items": items, "layout": layout_day(items, day, tz)},
                status_code=200,
                cors=cors,
            )
        if raw_month:
            year, month = (int(part) for part in raw_month.split("-", 1))
            items = list_month_events(actor.tenant_id, year, month, tz)
        else:
            start = parse_datetime(req.params.get("start"))
            end = parse_datetime(req.params.get("end"))
            if start is None:
                return error_response(
                    cors=cors,
                    status_code=400,
                    message="day, month or start is required",
                    code="validation_error",
                )
            items = list_events(actor.tenant_id, start, end or start + timedelta(days=7))
    except ValueError:
        return error_response(cors=cors, status_code=400, message="invalid date range", code="validation_error")
    return json_response(
        {"items": items, "teamMembers": team_members_for_org(actor.slug)},
        status_code=200,
        cors=cors,
    )


@app.function_name(name="CalendarEventDetail")
@app.route(
    route="orgs/{slug}/calendar/events/{event_id}",
    methods=["PATCH", "DELETE", "OPTIONS"],
    auth_level=func.AuthLevel.ANONYMOUS,
)
def calendar_event_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["PATCH", "DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    event_id = str(req.route_params.get("event_id") or "").strip()
    if not get_event(actor.tenant_id, event_id):
        return error_response(cors=cors, status_code=404, message="event not found", code="not_found")

    if req.method == "DELETE":
        return json_response({"deleted": delete_event(actor.tenant_id, event_id)}, status_code=200, cors=cors)

    try:
        after = update_event(actor.tenant_id, event_id, body)
    except ValueError as exc:
        return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")
    except EntityNotFoundError:
        return error_response(cors=cors, status_code=404, message="event not found", code="not_found")
    return json_response({"item": after}, status_code=200, cors=cors)


@app.function_name(name="ProspectDemos")
@app.route(
    route="orgs/{slug}/prospects/{prospect_id}/demos",
    methods=["GET", "POST", "OPTIONS"],
    auth_level=func.AuthLevel.ANONYMOUS,
)
def prospect_demos(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    prospect_id = str(req.route_params.get("prospect_id") or "").strip()
    prospect = get_entity("prospects", actor.tenant_id, prospect_id)
    if not prospect:
        return error_response(cors=cors, status_code=404, message="prospect not found", code="not_found")

    if req.method == "GET":
        return json_response({"items": list_prospect_demos(actor.tenant_id, prospect_id)}, status_code=200, cors=cors)

    start = parse_datetime(body.get("startTime"))
    if start is None:
        return error_response(cors=cors, status_code=400, message="startTime is required", code="validation_error")
    end = parse_datetime(body.get("endTime")) or start + timedelta(hours=1)
    try:
        event = create_demo_event(
            actor,
            prospect_id,
            str(body.get("demoType") or "first_demo"),
            start,
            end,
            str(prospect.get("name") or ""),
            body.get("responsiblePerson") or prospect.get("responsiblePerson"),
        )
    except ValueError as exc:
        return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")
    return json_response({"item": event}, status_code=201, cors=cors)
