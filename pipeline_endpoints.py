from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict

import azure.functions as func
from azure.core.exceptions import AzureError

from endpoint_shared import error_response, json_response, parse_body, resolve_actor_or_error
from function_app import app
from org_shared import extract_email, list_user_organizations
from services.calendar_events import create_demo_event, delete_event, parse_datetime, team_members_for_org
from services.crm_store import EntityNotFoundError, list_entities
from services.ordered_store import PROSPECTS
from services.org_rbac import can_delete_row
from services.pipeline import (
    STAGE_LABELS,
    begin_stage_move,
    create_prospect,
    delete_prospect,
    get_prospect,
    load_board,
    load_summary,
    normalize_stage,
    update_prospect,
)
from services.reorder import Move
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)


@app.function_name(name="Organizations")
@app.route(route="orgs", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def organizations(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    email = extract_email(req)
    if not email:
        return error_response(cors=cors, status_code=401, message="Not authenticated", code="auth_required")
    return json_response({"items": list_user_organizations(email)}, status_code=200, cors=cors)


@app.function_name(name="PipelineBoard")
@app.route(route="orgs/{slug}/pipeline", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def pipeline_board(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    actor, auth_error = resolve_actor_or_error(req, {}, cors)
    if auth_error:
        return auth_error
    assert actor
    return json_response(
        {"columns": load_board(actor.tenant_id), "teamMembers": team_members_for_org(actor.slug)},
        status_code=200,
        cors=cors,
    )


@app.function_name(name="Prospects")
@app.route(route="orgs/{slug}/prospects", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def prospects(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    if req.method == "GET":
        stage = normalize_stage(req.params.get("stage"))
        query = str(req.params.get("q") or "").strip().lower()

        def _matches(row: Dict[str, Any]) -> bool:
            if stage and row.get("pipelineStage") != stage:
                return False
            if query:
                haystack = " ".join(str(row.get(key) or "") for key in ("name", "email", "city", "country"))
                return query in haystack.lower()
            return True

        rows = list_entities("prospects", actor.tenant_id, filter_fn=_matches)
        rows.sort(key=lambda row: str(row.get("name") or "").lower())
        return json_response({"items": rows}, status_code=200, cors=cors)

    try:
        created = create_prospect(actor, body)
    except ValueError as exc:
        return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")
    return json_response({"item": created}, status_code=201, cors=cors)


@app.function_name(name="ProspectDetail")
@app.route(
    route="orgs/{slug}/prospects/{prospect_id}",
    methods=["GET", "PATCH", "DELETE", "OPTIONS"],
    auth_level=func.AuthLevel.ANONYMOUS,
)
def prospect_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "PATCH", "DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    prospect_id = str(req.route_params.get("prospect_id") or "").strip()
    before = get_prospect(actor.tenant_id, prospect_id)
    if not before:
        return error_response(cors=cors, status_code=404, message="prospect not found", code="not_found")

    if req.method == "GET":
        return json_response({"item": before}, status_code=200, cors=cors)

    if req.method == "DELETE":
        if not can_delete_row(actor.role, actor.user_id, before):
            return error_response(
                cors=cors,
                status_code=403,
                message="Only admins or the creator can delete prospects",
                code="forbidden",
            )
        deleted = delete_prospect(actor.tenant_id, prospect_id)
        return json_response({"deleted": bool(deleted)}, status_code=200, cors=cors)

    try:
        after = update_prospect(actor.tenant_id, prospect_id, body)
    except ValueError as exc:
        return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")
    except EntityNotFoundError:
        return error_response(cors=cors, status_code=404, message="prospect not found", code="not_found")
    return json_response({"item": after}, status_code=200, cors=cors)


@app.function_name(name="PipelineMove")
@app.route(route="orgs/{slug}/pipeline/move", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def pipeline_move(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    try:
        gate = begin_stage_move(actor.tenant_id, Move.from_payload(body))
    except ValueError as exc:
        return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")
    if gate.invalid:
        return error_response(
            cors=cors,
            status_code=400,
            message="prospect is not in the source stage",
            code="invalid_move",
            details={"reason": gate.invalid},
        )
    if not gate.needs_confirmation:
        outcome = gate.confirm()
        return json_response(outcome.to_dict(PROSPECTS), status_code=200, cors=cors)

    stage = gate.move.dest_bucket
    demo = body.get("demo") if isinstance(body.get("demo"), dict) else None
    if not demo:
        gate.cancel()
        return error_response(
            cors=cors,
            status_code=409,
            message=f"Schedule the demo before moving to {STAGE_LABELS.get(stage, stage)}",
            code="demo_required",
            details={"prospectId": gate.move.item_id, "stage": stage},
        )
    start = parse_datetime(demo.get("startTime"))
    if start is None:
        gate.cancel()
        return error_response(cors=cors, status_code=400, message="demo.startTime is required", code="validation_error")
    end = parse_datetime(demo.get("endTime")) or start + timedelta(hours=1)

    scheduled: Dict[str, Any] = {}

    def _schedule_demo(item) -> None:
        prospect = item.payload
        scheduled["event"] = create_demo_event(
            actor,
            item.id,
            stage,
            start,
            end,
            str(prospect.get("name") or ""),
            demo.get("responsiblePerson") or prospect.get("responsiblePerson"),
        )

    def _unschedule_demo(item) -> None:
        event = scheduled.pop("event", None)
        if not event:
            return
        try:
            delete_event(actor.tenant_id, event["id"])
        except AzureError as exc:
            logger.error("Could not remove demo event %s after failed move: %s", event["id"], exc)

    try:
        outcome = gate.confirm(_schedule_demo, rollback=_unschedule_demo)
    except ValueError as exc:
        gate.cancel()
        return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")
    except Exception:  # pylint: disable=broad-except
        gate.cancel()
        logger.exception("Demo scheduling failed for prospect %s", gate.move.item_id)
        return error_response(cors=cors, status_code=500, message="Failed to schedule demo", code="server_error")
    return json_response(
        {**outcome.to_dict(PROSPECTS), "demoEvent": scheduled.get("event")},
        status_code=200,
        cors=cors,
    )


@app.function_name(name="PipelineAnalytics")
@app.route(route="orgs/{slug}/analytics", methods=["GET", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def pipeline_analytics(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    actor, auth_error = resolve_actor_or_error(req, {}, cors)
    if auth_error:
        return auth_error
    assert actor
    return json_response(load_summary(actor.tenant_id), status_code=200, cors=cors)
