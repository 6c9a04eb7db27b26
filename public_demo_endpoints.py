from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import azure.functions as func

from endpoint_shared import client_ip, error_response, json_response, parse_body
from function_app import app
from org_shared import resolve_organization
from schemas.demo_booking_schema import validate_demo_booking
from services.demo_booking import book_demo, booking_rate_limiter, process_cal_webhook
from shared.config import get_demo_booking_settings
from utils.cors import build_cors_headers

logger = logging.getLogger(__name__)


def _booking_organization(req: func.HttpRequest) -> Optional[Dict[str, Any]]:
    slug = req.params.get("org") or get_demo_booking_settings()["organization_slug"]
    return resolve_organization(slug)


@app.function_name(name="PublicDemoBooking")
@app.route(route="public/demo-booking", methods=["POST", "OPTIONS"], auth_level=func.AuthLevel.ANONYMOUS)
def public_demo_booking(req: func.HttpRequest) -> func.HttpResponse:
    cors = build_cors_headers(req, ["POST", "OPTIONS"], public=True)
    if req.method == "OPTIONS":
        return func.HttpResponse("", status_code=204, headers=cors)

    ip = client_ip(req)
    if not booking_rate_limiter.allow(ip):
        logger.info("Rate limited demo booking from %s", ip)
        return error_response(
            cors=cors,
            status_code=429,
            message="Too many requests. Please try again later.",
            code="rate_limited",
        )

    booking, field_errors = validate_demo_booking(parse_body(req))
    if booking is None:
        return error_response(
            cors=cors,
            status_code=400,
            message="Invalid input",
            code="validation_error",
            details=field_errors,
        )
    org = _booking_organization(req)
    if not org:
        return error_response(cors=cors, status_code=404, message="organization not found", code="not_found")

    try:
        result = book_demo(org["id"], booking)
    except ValueError as exc:
        return error_response(cors=cors, status_code=400, message=str(exc), code="validation_error")
    except Exception:  # pylint: disable=broad-except
        logger.exception("Demo booking failed")
        return error_response(
            cors=cors,
            status_code=500,
            message="Failed to book demo. Please try again.",
            code="server_error",
        )
    return json_response(result, status_code=201, cors=cors)


@app.function_name(name="CalWebhook")
@app.route(route="public/webhook/cal", methods=["GET", "POST"], auth_level=func.AuthLevel.ANONYMOUS)
def cal_webhook(req: func.HttpRequest) -> func.HttpResponse:
    if req.method == "GET":
        return json_response({"status": "Webhook endpoint active"}, status_code=200, cors={})
    body = parse_body(req)
    logger.info("Cal.com webhook received: %s", body.get("triggerEvent"))
    org = _booking_organization(req)
    if not org:
        return error_response(cors={}, status_code=404, message="organization not found", code="not_found")
    try:
        status_code, payload = process_cal_webhook(org["id"], body)
    except Exception:  # pylint: disable=broad-except
        logger.exception("Cal.com webhook failed")
        return error_response(cors={}, status_code=500, message="Failed to process webhook", code="server_error")
    return json_response(payload, status_code=status_code, cors={})
