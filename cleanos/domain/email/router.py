"""Email router - suppression list management and Resend delivery webhooks"""

import json
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ...auth import RequestContext, get_request_context
from ...config import RESEND_WEBHOOK_SECRET
from ...database import get_db
from ...models import EmailSuppression
from ...webhook_security import verify_resend_webhook
from ..integrations.service import log_webhook_attempt
from .events import EmailEventService, build_event_id
from .service import EmailService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/email", tags=["Email"])
webhook_router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

PROVIDER = "resend"
ENDPOINT = "/webhooks/resend"


class SuppressionCreate(BaseModel):
    email: str
    reason: str = "hard_bounce"


class SuppressionResponse(BaseModel):
    id: int
    email: str
    reason: str
    sourceEventId: Optional[str] = None
    created_at: Optional[datetime] = None


def get_email_service(db: Session = Depends(get_db)) -> EmailService:
    return EmailService(db)


def suppression_to_response(suppression: EmailSuppression) -> SuppressionResponse:
    return SuppressionResponse(
        id=suppression.id,
        email=suppression.email,
        reason=suppression.reason,
        sourceEventId=suppression.source_event_id,
        created_at=suppression.created_at,
    )


@router.get("/suppressions", response_model=list[SuppressionResponse])
async def list_suppressions(
    limit: int = Query(50, ge=1, le=500),
    ctx: RequestContext = Depends(get_request_context),
    service: EmailService = Depends(get_email_service),
):
    """Most recently suppressed recipients"""
    return [suppression_to_response(s) for s in service.list_recent_suppressions(limit=limit)]


@router.post("/suppressions", response_model=SuppressionResponse)
async def add_suppression(
    data: SuppressionCreate,
    ctx: RequestContext = Depends(get_request_context),
    service: EmailService = Depends(get_email_service),
):
    logger.info(f"🚫 Manual suppression requested by {ctx.subject_id}")
    return suppression_to_response(service.suppress_email(data.email, data.reason))


@webhook_router.post("/resend")
async def handle_resend_webhook(request: Request, db: Session = Depends(get_db)):
    """
    Handle Resend delivery events

    Events handled:
    - email.sent / email.delivered / email.delivery_delayed - send status
    - email.bounced / email.complained / email.failed - failure and suppression
    """
    if not RESEND_WEBHOOK_SECRET:
        logger.error("❌ RESEND_WEBHOOK_SECRET not configured")
        log_webhook_attempt(db, PROVIDER, ENDPOINT, 500, "config_lookup", error_message="Webhook secret not configured")
        raise HTTPException(status_code=500, detail="Webhook not configured")

    is_valid, body = await verify_resend_webhook(request, RESEND_WEBHOOK_SECRET, raise_on_failure=False)
    if not is_valid:
        log_webhook_attempt(db, PROVIDER, ENDPOINT, 401, "signature_verification", error_message="Invalid signature")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        event = json.loads(body.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        log_webhook_attempt(db, PROVIDER, ENDPOINT, 400, "route_validation", error_message="Invalid JSON")
        raise HTTPException(status_code=400, detail="Invalid JSON") from None
    if not isinstance(event, dict):
        log_webhook_attempt(db, PROVIDER, ENDPOINT, 400, "route_validation", error_message="Payload is not an object")
        raise HTTPException(status_code=400, detail="Invalid payload")

    event_type = event.get("type")
    event_id = build_event_id(event)

    try:
        result = EmailEventService(db).handle_event(event)
    except Exception as e:
        logger.exception(f"❌ Failed to process Resend event {event_id}")
        db.rollback()
        log_webhook_attempt(
            db, PROVIDER, ENDPOINT, 500, "event_processing",
            event_id=event_id, event_type=event_type, error_message=str(e),
        )
        raise HTTPException(status_code=500, detail="Webhook processing failed") from e

    stage = "duplicate" if result["status"] == "duplicate" else "success"
    log_webhook_attempt(db, PROVIDER, ENDPOINT, 200, stage, event_id=event_id, event_type=event_type)
    return {"status": result["status"], "event_type": event_type}
