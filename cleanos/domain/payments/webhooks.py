"""
Stripe Webhook Handler

Verifies the signature, records the event id (redeliveries are acknowledged
without side effects) and hands the event to the payment orchestrator.
Every attempt is written to the webhook attempt log with the stage it
reached.
"""

import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from ...config import STRIPE_WEBHOOK_SECRET
from ...database import get_db
from ...errors import CleanOSError, ProcessorUnavailable
from ...webhook_security import verify_stripe_webhook
from ..integrations.service import log_webhook_attempt
from .repository import PaymentRepository
from .router import get_payment_orchestrator
from .service import PaymentOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

PROVIDER = "stripe"
ENDPOINT = "/webhooks/stripe"


@router.post("/stripe")
async def handle_stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """
    Handle Stripe webhook events

    Events handled:
    - checkout.session.completed / setup_intent.succeeded - card saved
    - setup_intent.setup_failed - card setup failed
    - payment_intent.succeeded / payment_failed / requires_action - charge outcome
    """
    if not STRIPE_WEBHOOK_SECRET:
        logger.error("❌ STRIPE_WEBHOOK_SECRET not configured")
        log_webhook_attempt(
            db, PROVIDER, ENDPOINT, 500, "config_lookup", error_message="Webhook secret not configured"
        )
        raise HTTPException(status_code=500, detail="Webhook not configured")

    is_valid, body = await verify_stripe_webhook(request, STRIPE_WEBHOOK_SECRET, raise_on_failure=False)
    if not is_valid:
        log_webhook_attempt(
            db, PROVIDER, ENDPOINT, 400, "signature_verification", error_message="Invalid signature"
        )
        raise HTTPException(status_code=400, detail="Invalid signature")

    try:
        event = json.loads(body.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        logger.error("❌ Invalid JSON payload")
        log_webhook_attempt(db, PROVIDER, ENDPOINT, 400, "route_validation", error_message="Invalid JSON")
        raise HTTPException(status_code=400, detail="Invalid JSON") from None

    event_id = event.get("id") if isinstance(event, dict) else None
    event_type = event.get("type") if isinstance(event, dict) else None
    if not event_id or not event_type:
        log_webhook_attempt(db, PROVIDER, ENDPOINT, 400, "route_validation", error_message="Missing event id or type")
        raise HTTPException(status_code=400, detail="Malformed event")

    metadata = ((event.get("data") or {}).get("object") or {}).get("metadata") or {}
    organization_id = metadata.get("organizationId")

    logger.info(f"📥 Received Stripe webhook: {event_type} ({event_id})")

    recorded = PaymentRepository.record_webhook_event(db, PROVIDER, event_id, event_type, organization_id)
    if recorded is None:
        logger.info(f"ℹ️ Duplicate Stripe event {event_id}, acknowledging")
        log_webhook_attempt(
            db, PROVIDER, ENDPOINT, 200, "duplicate",
            organization_id=organization_id, event_id=event_id, event_type=event_type,
        )
        return {"status": "duplicate", "event_type": event_type}

    try:
        result = orchestrator.handle_event(event)
    except CleanOSError as e:
        if isinstance(e, ProcessorUnavailable):
            _release_and_fail(db, recorded, organization_id, event_id, event_type, e)
        # Redelivering cannot change the outcome; acknowledge and keep the dedup row
        logger.warning(f"⚠️ Stripe event {event_id} rejected by booking rules: {e.message}")
        db.rollback()
        PaymentRepository.mark_webhook_event(db, recorded, "failed", error_message=e.message)
        log_webhook_attempt(
            db, PROVIDER, ENDPOINT, 200, "event_processing",
            organization_id=organization_id, event_id=event_id, event_type=event_type, error_message=e.message,
        )
        return {"status": "failed", "event_type": event_type, "error": e.to_dict()}
    except Exception as e:
        _release_and_fail(db, recorded, organization_id, event_id, event_type, e)

    PaymentRepository.mark_webhook_event(db, recorded, "processed")
    log_webhook_attempt(
        db, PROVIDER, ENDPOINT, 200, "success",
        organization_id=organization_id, event_id=event_id, event_type=event_type,
    )
    return {"status": "success", "event_type": event_type, "result": result}


def _release_and_fail(db: Session, recorded, organization_id, event_id, event_type, error: Exception):
    """Drop the dedup row so Stripe's redelivery is processed again, then fail with 500"""
    logger.error(f"❌ Failed to process Stripe event {event_id}: {error}", exc_info=error)
    db.rollback()
    PaymentRepository.release_webhook_event(db, recorded)
    log_webhook_attempt(
        db, PROVIDER, ENDPOINT, 500, "event_processing",
        organization_id=organization_id, event_id=event_id, event_type=event_type, error_message=str(error),
    )
    raise HTTPException(status_code=500, detail="Webhook processing failed") from error
