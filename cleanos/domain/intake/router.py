"""
Tally Webhook Handler

Each organization's intake form posts to its own route token. The token
selects the organization and the signing secret used to verify the
tally-signature header.
"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ...database import get_db
from ...webhook_security import verify_tally_signature
from ..integrations.service import get_integration_route, log_route_validation_failure, log_webhook_attempt
from .service import FORM_RESPONSE_EVENT, IntakeService, extract_response_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/tally", tags=["Webhooks"])

PROVIDER = "tally"


@router.post("/{route_token}")
async def handle_tally_webhook(route_token: str, request: Request, db: Session = Depends(get_db)):
    """
    Handle Tally form webhooks

    Events handled:
    - FORM_RESPONSE - creates a quote request and a booking request
    """
    endpoint = f"/webhooks/tally/{route_token}"

    route = get_integration_route(db, route_token, PROVIDER)
    if not route:
        log_route_validation_failure(db, PROVIDER, endpoint, "Unknown route token", route_token=route_token)
        raise HTTPException(status_code=404, detail="Unknown webhook route")

    body = await request.body()
    signature = request.headers.get("tally-signature")
    if not signature:
        log_route_validation_failure(db, PROVIDER, endpoint, "Missing tally-signature header", route_token=route_token)
        raise HTTPException(status_code=400, detail="Missing signature")

    if not route.signing_secret or not verify_tally_signature(body, signature, route.signing_secret):
        logger.warning(f"⚠️ Invalid Tally signature for route {route_token}")
        log_webhook_attempt(
            db, PROVIDER, endpoint, 401, "signature_verification",
            route_token=route_token, organization_id=route.organization_id, error_message="Invalid signature",
        )
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = json.loads(body.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        log_route_validation_failure(db, PROVIDER, endpoint, "Invalid JSON", route_token=route_token)
        raise HTTPException(status_code=400, detail="Invalid JSON") from None
    if not isinstance(payload, dict):
        log_route_validation_failure(db, PROVIDER, endpoint, "Payload is not an object", route_token=route_token)
        raise HTTPException(status_code=400, detail="Invalid payload")

    event_type = payload.get("eventType")
    event_id = payload.get("eventId") or extract_response_id(payload)
    logger.info(f"📥 Received Tally webhook: {event_type} for org {route.organization_id}")

    if event_type != FORM_RESPONSE_EVENT:
        logger.info(f"ℹ️ Ignoring Tally event type: {event_type}")
        log_webhook_attempt(
            db, PROVIDER, endpoint, 200, "success",
            route_token=route_token, organization_id=route.organization_id,
            event_id=event_id, event_type=event_type,
        )
        return {"status": "ignored", "event_type": event_type}

    try:
        result = IntakeService(db).ingest_form_response(route.organization_id, payload)
    except Exception as e:
        logger.exception(f"❌ Failed to ingest Tally response for route {route_token}")
        db.rollback()
        log_webhook_attempt(
            db, PROVIDER, endpoint, 500, "event_processing",
            route_token=route_token, organization_id=route.organization_id,
            event_id=event_id, event_type=event_type, error_message=str(e),
        )
        raise HTTPException(status_code=500, detail="Webhook processing failed") from e

    log_webhook_attempt(
        db, PROVIDER, endpoint, 200, "duplicate" if result["status"] == "duplicate" else "success",
        route_token=route_token, organization_id=route.organization_id,
        event_id=event_id, event_type=event_type,
    )
    return {"status": result["status"], "event_type": event_type, "result": result}
