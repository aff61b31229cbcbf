"""Payment router - checkout sessions for card setup"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ...auth import RequestContext, get_request_context
from ...database import get_db
from .service import PaymentOrchestrator
from .stripe_service import StripeService, get_stripe_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


class CheckoutSessionRequest(BaseModel):
    bookingId: str
    successUrl: Optional[str] = None
    cancelUrl: Optional[str] = None
    supersede: bool = False


class CheckoutSessionResponse(BaseModel):
    sessionId: str
    url: Optional[str] = None
    reused: bool
    status: str


def get_payment_orchestrator(
    db: Session = Depends(get_db),
    processor: StripeService = Depends(get_stripe_service),
) -> PaymentOrchestrator:
    """Dependency injection for PaymentOrchestrator"""
    return PaymentOrchestrator(db, processor)


@router.post("/checkout-session", response_model=CheckoutSessionResponse)
async def create_checkout_session(
    data: CheckoutSessionRequest,
    ctx: RequestContext = Depends(get_request_context),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Open (or reuse) the hosted card-setup checkout for a booking"""
    result = orchestrator.create_checkout_session(
        ctx, data.bookingId, data.successUrl, data.cancelUrl, supersede=data.supersede
    )
    return CheckoutSessionResponse(
        sessionId=result["session_id"],
        url=result["url"],
        reused=result["reused"],
        status=result["status"],
    )
