"""Booking router - FastAPI endpoints for the booking lifecycle"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ...auth import RequestContext, get_request_context
from ...database import get_db
from ...models import Booking, BookingLifecycleEvent
from ..payments.router import get_payment_orchestrator
from ..payments.service import PaymentOrchestrator
from .schemas import (
    AdminOverrideRequest,
    BookingCreate,
    BookingResponse,
    CancelBookingRequest,
    ChargeBookingRequest,
    CompleteJobRequest,
    LifecycleEventResponse,
    ScheduleUpdate,
    TransitionResponse,
)
from .service import BookingService
from .state_machine import map_operational_status_to_funnel

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


def get_booking_service(db: Session = Depends(get_db)) -> BookingService:
    """Dependency injection for BookingService"""
    return BookingService(db)


def booking_to_response(booking: Booking) -> BookingResponse:
    return BookingResponse(
        id=booking.public_id,
        email=booking.email,
        customerName=booking.customer_name,
        status=booking.status,
        funnelStage=map_operational_status_to_funnel(booking.status),
        serviceType=booking.service_type,
        serviceDate=booking.service_date,
        amount=booking.amount,
        notes=booking.notes,
        stripeCheckoutSessionId=booking.stripe_checkout_session_id,
        stripeCustomerId=booking.stripe_customer_id,
        stripePaymentIntentId=booking.stripe_payment_intent_id,
        cancelledAt=booking.cancelled_at,
        cancellationReason=booking.cancellation_reason,
        created_at=booking.created_at,
        updated_at=booking.updated_at,
    )


def event_to_response(event: BookingLifecycleEvent) -> LifecycleEventResponse:
    return LifecycleEventResponse(
        id=event.id,
        eventType=event.event_type,
        fromStatus=event.from_status,
        toStatus=event.to_status,
        reason=event.reason,
        source=event.source,
        actorUserId=event.actor_user_id,
        fromServiceDate=event.from_service_date,
        toServiceDate=event.to_service_date,
        metadata=event.event_metadata,
        created_at=event.created_at,
    )


# ============================================================================
# CORE CRUD OPERATIONS
# ============================================================================


@router.get("", response_model=list[BookingResponse])
async def list_bookings(
    status: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    ctx: RequestContext = Depends(get_request_context),
    service: BookingService = Depends(get_booking_service),
):
    """List the organization's bookings, newest first"""
    return [booking_to_response(b) for b in service.list_bookings(ctx, status=status, limit=limit)]


@router.post("", response_model=BookingResponse)
async def create_booking(
    data: BookingCreate,
    ctx: RequestContext = Depends(get_request_context),
    service: BookingService = Depends(get_booking_service),
):
    return booking_to_response(service.create_booking(ctx, data))


@router.post("/from-request/{request_id}", response_model=BookingResponse)
async def create_booking_from_request(
    request_id: int,
    ctx: RequestContext = Depends(get_request_context),
    service: BookingService = Depends(get_booking_service),
):
    """Convert an intake booking request into a booking (idempotent)"""
    return booking_to_response(service.create_booking_from_request(ctx, request_id))


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    ctx: RequestContext = Depends(get_request_context),
    service: BookingService = Depends(get_booking_service),
):
    return booking_to_response(service.get_booking(ctx, booking_id))


@router.get("/{booking_id}/timeline", response_model=list[LifecycleEventResponse])
async def get_booking_timeline(
    booking_id: str,
    ctx: RequestContext = Depends(get_request_context),
    service: BookingService = Depends(get_booking_service),
):
    return [event_to_response(e) for e in service.get_timeline(ctx, booking_id)]


# ============================================================================
# LIFECYCLE ACTIONS
# ============================================================================


@router.post("/{booking_id}/card-on-file", response_model=TransitionResponse)
async def mark_card_on_file(
    booking_id: str,
    ctx: RequestContext = Depends(get_request_context),
    service: BookingService = Depends(get_booking_service),
):
    booking, changed = service.confirm_card_on_file(ctx, booking_id)
    return TransitionResponse(booking=booking_to_response(booking), changed=changed)


@router.post("/{booking_id}/schedule", response_model=BookingResponse)
async def update_schedule(
    booking_id: str,
    data: ScheduleUpdate,
    ctx: RequestContext = Depends(get_request_context),
    service: BookingService = Depends(get_booking_service),
):
    """Set or clear the service date"""
    return booking_to_response(service.update_schedule(ctx, booking_id, data.serviceDate))


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def mark_completed(
    booking_id: str,
    data: CompleteJobRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: BookingService = Depends(get_booking_service),
):
    return booking_to_response(service.mark_completed(ctx, booking_id, data.finalAmount))


@router.post("/{booking_id}/cancel", response_model=TransitionResponse)
async def cancel_booking(
    booking_id: str,
    data: CancelBookingRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: BookingService = Depends(get_booking_service),
):
    booking, changed = service.cancel_booking(ctx, booking_id, data.reason)
    return TransitionResponse(booking=booking_to_response(booking), changed=changed)


@router.post("/{booking_id}/override", response_model=TransitionResponse)
async def admin_override_status(
    booking_id: str,
    data: AdminOverrideRequest,
    ctx: RequestContext = Depends(get_request_context),
    service: BookingService = Depends(get_booking_service),
):
    """Admin-only status write that bypasses the transition table (audit-logged)"""
    booking, changed = service.admin_override_status(ctx, booking_id, data.status, data.reason)
    return TransitionResponse(booking=booking_to_response(booking), changed=changed)


# ============================================================================
# PAYMENTS
# ============================================================================


@router.post("/{booking_id}/charge")
async def charge_completed_job(
    booking_id: str,
    data: ChargeBookingRequest,
    ctx: RequestContext = Depends(get_request_context),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Charge the saved card for a completed job"""
    return orchestrator.charge_booking(ctx, booking_id, data.amount, data.description)


@router.get("/{booking_id}/payment-intents")
async def get_payment_intents(
    booking_id: str,
    ctx: RequestContext = Depends(get_request_context),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    return [
        {
            "id": record.id,
            "stripePaymentIntentId": record.stripe_payment_intent_id,
            "amount": record.amount,
            "currency": record.currency,
            "status": record.status,
            "errorCode": record.error_code,
            "errorMessage": record.error_message,
            "created_at": record.created_at,
        }
        for record in orchestrator.list_payment_intents(ctx, booking_id)
    ]


@router.post("/admin/backfill-statuses")
async def backfill_legacy_statuses(
    ctx: RequestContext = Depends(get_request_context),
    service: BookingService = Depends(get_booking_service),
):
    """Normalize legacy "failed" bookings to payment_failed (admin only)"""
    return service.backfill_legacy_statuses(ctx)
