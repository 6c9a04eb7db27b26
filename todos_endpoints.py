from __future__ import annotations

import logging

import azure.functions as func

from endpoint_shared import (
    error_response,
    json_response,
    parse_body,
    request_today,
    resolve_actor_or_error,
)
from function_app import app
from services.attachments import BlobConfigError
from services.crm_store import EntityNotFoundError, get_entity
from services.ordered_store import TODOS
from services.org_rbac import can_delete_row
from services.reorder import Move
from services.todo_calendar import (
    attach_screenshot,
    carried_over_ids,
    carry_over_incomplete,
    create_todo,
    delete_todo,
    list_window,
    move_todo,
    toggle_todo,
    update_todo,
)
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)


def _window_days(req: func.HttpRequest):
    raw = str(req.params.get("days") or "").strip()
    try:
        return max(1, min(31, int(raw))) if raw else None
    except ValueError:
        return None


@app.function_name(name="Todos")
@app.route(route="orgs/{slug}/todos", methods=["GET", "POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def todos(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["GET", "POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    today = request_today(req)
    if req.method == "GET":
        return json_response(list_window(actor.tenant_id, today, _window_days(req)), status_code=200, cors=cors)

    try:
        created = create_todo(actor, body, today=today)
    except ValueError as exc:
        return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")
    return json_response({"item": created}, status_code=201, cors=cors)


@app.function_name(name="TodoDetail")
@app.route(route="orgs/{slug}/todos/{todo_id}", methods=["PATCH", "DELETE", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def todo_detail(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["PATCH", "DELETE", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    todo_id = str(req.route_params.get("todo_id") or "").strip()
    before = get_entity("todos", actor.tenant_id, todo_id)
    if not before:
        return error_response(cors=cors, status_code=404, message="todo not found", code="not_found")

    if req.method == "DELETE":
        if not can_delete_row(actor.role, actor.user_id, before):
            return error_response(
                cors=cors,
                status_code=403,
                message="Only admins or the creator can delete todos",
                code="forbidden",
            )
        return json_response({"deleted": delete_todo(actor.tenant_id, todo_id)}, status_code=200, cors=cors)

    try:
        after = update_todo(actor.tenant_id, todo_id, body)
    except ValueError as exc:
        return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")
    except EntityNotFoundError:
        return error_response(cors=cors, status_code=404, message="todo not found", code="not_found")
    return json_response({"item": after}, status_code=200, cors=cors)


@app.function_name(name="TodoToggle")
@app.route(route="orgs/{slug}/todos/{todo_id}/toggle", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def todo_toggle(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    todo_id = str(req.route_params.get("todo_id") or "").strip()
    try:
        item = toggle_todo(actor.tenant_id, todo_id)
    except EntityNotFoundError:
        return error_response(cors=cors, status_code=404, message="todo not found", code="not_found")
    return json_response({"item": item}, status_code=200, cors=cors)


@app.function_name(name="TodoMove")
@app.route(route="orgs/{slug}/todos/move", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def todo_move(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    try:
        outcome = move_todo(actor.tenant_id, Move.from_payload(body))
    except ValueError as exc:
        return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")
    if outcome.reassignment.invalid:
        return error_response(
            cors=cors,
            status_code=400,
            message="todo is not on the source day",
            code="invalid_move",
            details={"reason": outcome.reassignment.invalid},
        )
    return json_response(outcome.to_dict(TODOS), status_code=200, cors=cors)


@app.function_name(name="TodoCarryOver")
@app.route(route="orgs/{slug}/todos/carry-over", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def todo_carry_over(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    body = parse_body(req)
    actor, auth_error = resolve_actor_or_error(req, body, cors)
    if auth_error:
        return auth_error
    assert actor

    today = request_today(req)
    outcome = carry_over_incomplete(actor.tenant_id, today)
    return json_response(
        {**outcome.to_dict(TODOS), "carried": carried_over_ids(outcome, today)},
        status_code=200,
        cors=cors,
    )


@app.function_name(name="TodoAttachments")
@app.route(
    route="orgs/{slug}/todos/{todo_id}/attachments",
    methods=["POST", "OPTIONS"],
    auth_level=func.AuthLevel.ANONYMOUS,
)
def todo_attachments(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"])
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)
    actor, auth_error = resolve_actor_or_error(req, {}, cors)
    if auth_error:
        return auth_error
    assert actor

    todo_id = str(req.route_params.get("todo_id") or "").strip()
    filename = req.params.get("filename") or req.headers.get("x-filename")
    try:
        item = attach_screenshot(
            actor.tenant_id,
            todo_id,
            filename=filename,
            data=req.get_body() or b"",
            content_type=req.headers.get("content-type"),
        )
    except ValueError as exc:
        return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")
    except EntityNotFoundError:
        return error_response(cors=cors, status_code=404, message="todo not found", code="not_found")
    except BlobConfigError as exc:
        logger.error("Attachment upload unavailable: %s", exc)
        return error_response(
            cors=cors,
            status_code=503,
            message="Attachment storage is not configured",
            code="storage_unavailable",
        )
    return json_response({"item": item}, status_code=201, cors=cors)
