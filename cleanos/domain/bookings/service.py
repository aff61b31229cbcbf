"""Booking service - Lifecycle operations on the booking entity"""

import logging
from datetime import date, datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...auth import RequestContext
from ...errors import BookingNotFound, InvalidTransitionError, NotFoundError, PermissionDeniedError, ValidationError
from ...models import Booking, BookingLifecycleEvent
from ...shared.validators import validate_email
from ..email.service import EmailService
from . import state_machine as sm
from .repository import BookingRepository
from .schemas import BookingCreate

logger = logging.getLogger(__name__)


class BookingService:
    """Service layer for booking lifecycle logic"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = BookingRepository()

    # ========================================================================
    # QUERIES
    # ========================================================================

    def get_booking(self, ctx: RequestContext, booking_id: str) -> Booking:
        booking = self.repo.get_booking(self.db, ctx.organization_id, booking_id)
        if not booking:
            raise BookingNotFound(booking_id)
        return booking

    def list_bookings(self, ctx: RequestContext, status: Optional[str] = None, limit: int = 50) -> list[Booking]:
        if status and not sm.is_valid_status(status) and status != sm.LEGACY_FAILED:
            raise ValidationError(f"Unknown booking status: {status}")
        return self.repo.list_bookings(self.db, ctx.organization_id, status=status, limit=limit)

    def get_timeline(self, ctx: RequestContext, booking_id: str) -> list[BookingLifecycleEvent]:
        booking = self.get_booking(ctx, booking_id)
        return self.repo.get_lifecycle_events(self.db, booking.id)

    # ========================================================================
    # TRANSITIONS
    # ========================================================================

    def apply_transition(
        self,
        booking: Booking,
        to_status: str,
        source: str,
        reason: Optional[str] = None,
        actor_user_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> bool:
        """
        Validate and apply a transition inside the caller's unit of work.

        The row is re-read (and locked where the database supports it) before
        the status check. Returns False when the booking is already in the
        target status.
        """
        # Pending attribute changes must reach the row before it is re-read
        self.db.flush()
        current = self.repo.get_booking_for_update(self.db, booking.id)
        if current is None:
            raise BookingNotFound(booking.public_id)

        from_status = current.status
        sm.assert_transition(from_status, to_status, amount=current.amount)
        if from_status == to_status:
            return False

        current.status = to_status
        if to_status == sm.CANCELLED:
            current.cancelled_at = datetime.utcnow()
            current.cancelled_by = actor_user_id
            current.cancellation_reason = reason

        self.repo.add_lifecycle_event(
            self.db,
            current,
            "transition",
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            source=source,
            actor_user_id=actor_user_id,
            from_service_date=current.service_date,
            to_service_date=current.service_date,
            event_metadata=metadata,
        )
        logger.info(f"✅ Booking {current.public_id} transitioned: {from_status} → {to_status} ({source})")
        return True

    def transition(
        self,
        booking: Booking,
        to_status: str,
        source: str,
        reason: Optional[str] = None,
        actor_user_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> bool:
        """apply_transition as its own committed unit of work"""
        try:
            changed = self.apply_transition(booking, to_status, source, reason, actor_user_id, metadata)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return changed

    def recompute_scheduled_state(self, booking: Booking, source: str, actor_user_id: Optional[str] = None) -> bool:
        """
        Schedule gate: card_saved → scheduled once the booking has a service date
        and a qualifying assignment; scheduled → card_saved when it loses either.
        Does not commit.
        """
        has_assignment = bool(self.repo.get_active_assignments(self.db, booking.id))
        eligible = booking.service_date is not None and has_assignment

        if booking.status == sm.CARD_SAVED and eligible:
            return self.apply_transition(
                booking, sm.SCHEDULED, source, reason="Service date and cleaner assigned", actor_user_id=actor_user_id
            )
        if booking.status == sm.SCHEDULED and not eligible:
            return self.apply_transition(
                booking,
                sm.CARD_SAVED,
                source,
                reason="Service date or cleaner assignment removed",
                actor_user_id=actor_user_id,
            )
        return False

    def sync_status_from_assignments(self, booking: Booking, source: str, actor_user_id: Optional[str] = None) -> bool:
        """Advance scheduled/in_progress bookings from their assignments' progress. Does not commit."""
        active = self.repo.get_active_assignments(self.db, booking.id)
        if not active:
            return False

        any_in_progress = any(a.status == "in_progress" for a in active)
        all_completed = all(a.status == "completed" for a in active)
        changed = False

        if booking.status == sm.SCHEDULED and (any_in_progress or all_completed):
            changed = self.apply_transition(
                booking, sm.IN_PROGRESS, source, reason="Cleaner started the job", actor_user_id=actor_user_id
            )

        if booking.status == sm.IN_PROGRESS and all_completed:
            if booking.amount is None:
                logger.warning(f"⚠️ Booking {booking.public_id} finished on site but has no amount; left in_progress")
            else:
                changed = (
                    self.apply_transition(
                        booking, sm.COMPLETED, source, reason="All assignments completed", actor_user_id=actor_user_id
                    )
                    or changed
                )
        return changed

    # ========================================================================
    # OPERATIONS
    # ========================================================================

    def create_booking(
        self,
        ctx: RequestContext,
        data: BookingCreate,
        booking_request_id: Optional[int] = None,
        source: str = "bookings.create",
    ) -> Booking:
        """Create a booking in pending_card (idempotent on the intake response id)"""
        if not data.email or not data.email.strip():
            raise ValidationError("Email is required to create a booking")
        email = validate_email(data.email)

        if data.intakeResponseId:
            existing = self.repo.get_booking_by_intake_response(self.db, ctx.organization_id, data.intakeResponseId)
            if existing:
                logger.info(f"ℹ️ Booking already exists for intake response {data.intakeResponseId}")
                return existing

        try:
            booking = self.repo.add_booking(
                self.db,
                organization_id=ctx.organization_id,
                email=email,
                customer_name=data.customerName,
                status=sm.PENDING_CARD,
                service_type=data.serviceType,
                service_date=data.serviceDate,
                amount=data.amount,
                notes=data.notes,
                intake_response_id=data.intakeResponseId,
                booking_request_id=booking_request_id,
            )
            self.repo.add_lifecycle_event(
                self.db,
                booking,
                "created",
                to_status=sm.PENDING_CARD,
                source=source,
                actor_user_id=ctx.subject_id,
                to_service_date=data.serviceDate,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(booking)
        logger.info(f"📥 Created booking {booking.public_id} for org {ctx.organization_id}")
        return booking

    def create_booking_from_request(self, ctx: RequestContext, request_id: int) -> Booking:
        """Convert an intake booking request; returns the linked booking if already converted"""
        request = self.repo.get_booking_request(self.db, ctx.organization_id, request_id)
        if not request:
            raise NotFoundError(f"Booking request {request_id} not found")

        if request.booking_id:
            booking = self.db.get(Booking, request.booking_id)
            if booking:
                return booking

        if not request.email:
            raise ValidationError("Booking request has no email address")

        booking = self.create_booking(
            ctx,
            BookingCreate(
                email=request.email,
                customerName=request.contact_name,
                serviceType=request.service_type,
                notes=request.notes,
                intakeResponseId=request.source_response_id,
            ),
            booking_request_id=request.id,
            source="bookings.create_from_request",
        )

        request.booking_id = booking.id
        request.status = "confirmed"
        self.db.commit()

        EmailService(self.db).notify(
            f"booking-confirmed:{booking.public_id}",
            booking.email,
            "booking-confirmed",
            {"customer_name": booking.customer_name, "service_date": booking.service_date},
            organization_id=booking.organization_id,
        )
        return booking

    def mark_card_on_file(self, booking: Booking, source: str, actor_user_id: Optional[str] = None) -> bool:
        """pending_card → card_saved, then run the schedule gate. Does not commit."""
        changed = self.apply_transition(
            booking, sm.CARD_SAVED, source, reason="Card saved", actor_user_id=actor_user_id
        )
        self.recompute_scheduled_state(booking, source, actor_user_id=actor_user_id)
        return changed

    def confirm_card_on_file(self, ctx: RequestContext, booking_id: str) -> tuple[Booking, bool]:
        booking = self.get_booking(ctx, booking_id)
        try:
            changed = self.mark_card_on_file(booking, "bookings.mark_card_on_file", actor_user_id=ctx.subject_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return booking, changed

    def update_schedule(self, ctx: RequestContext, booking_id: str, service_date: Optional[date]) -> Booking:
        """Set or clear the service date; reschedules are audit-logged and re-run the schedule gate"""
        booking = self.get_booking(ctx, booking_id)
        if booking.status in sm.TERMINAL_STATUSES:
            raise InvalidTransitionError(booking.status, booking.status, f"Cannot reschedule a {booking.status} booking")

        try:
            previous = booking.service_date
            if previous != service_date:
                booking.service_date = service_date
                self.repo.add_lifecycle_event(
                    self.db,
                    booking,
                    "rescheduled",
                    from_status=booking.status,
                    to_status=booking.status,
                    source="bookings.update_schedule",
                    actor_user_id=ctx.subject_id,
                    from_service_date=previous,
                    to_service_date=service_date,
                )
                self.db.flush()
                logger.info(f"📅 Booking {booking.public_id} rescheduled: {previous} → {service_date}")

            self.recompute_scheduled_state(booking, "bookings.update_schedule", actor_user_id=ctx.subject_id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(booking)
        return booking

    def mark_completed(self, ctx: RequestContext, booking_id: str, final_amount: Optional[int] = None) -> Booking:
        booking = self.get_booking(ctx, booking_id)
        if booking.status not in (sm.SCHEDULED, sm.IN_PROGRESS):
            raise InvalidTransitionError(
                booking.status, sm.COMPLETED, f"Only scheduled or in-progress jobs can be completed (status: {booking.status})"
            )

        amount = final_amount if final_amount is not None else booking.amount
        if amount is None:
            raise ValidationError("A final amount is required to complete this job")
        if amount < 0:
            raise ValidationError("Amount must be a non-negative number of cents")

        try:
            booking.amount = amount
            self.apply_transition(
                booking,
                sm.COMPLETED,
                "bookings.mark_completed",
                reason="Job marked completed",
                actor_user_id=ctx.subject_id,
                metadata={"final_amount": amount},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(booking)
        return booking

    def cancel_booking(self, ctx: RequestContext, booking_id: str, reason: Optional[str] = None) -> tuple[Booking, bool]:
        booking = self.get_booking(ctx, booking_id)
        changed = self.transition(
            booking,
            sm.CANCELLED,
            "bookings.cancel",
            reason=reason or "Cancelled",
            actor_user_id=ctx.subject_id,
        )
        self.db.refresh(booking)
        return booking, changed

    def admin_override_status(self, ctx: RequestContext, booking_id: str, status: str, reason: str) -> tuple[Booking, bool]:
        """
        Privileged escape hatch: write any status, bypassing the transition table.
        Requires an admin role and a reason; always audit-logged with the actor.
        """
        if not ctx.is_admin:
            logger.warning(f"🚫 Non-admin {ctx.subject_id} attempted status override on {booking_id}")
            raise PermissionDeniedError("Only organization admins can override booking status")

        booking = self.get_booking(ctx, booking_id)
        changed = self._override(booking, status, reason, "bookings.admin_override", ctx.subject_id)
        self.db.refresh(booking)
        return booking, changed

    def _override(self, booking: Booking, status: str, reason: str, source: str, actor_user_id: str) -> bool:
        if not reason or not reason.strip():
            raise ValidationError("A reason is required for a status override")
        if not actor_user_id:
            raise ValidationError("An actor is required for a status override")
        if not sm.is_valid_status(status):
            raise ValidationError(f"Unknown booking status: {status}")

        try:
            self.db.flush()
            current = self.repo.get_booking_for_update(self.db, booking.id)
            from_status = current.status
            if from_status == status:
                return False

            current.status = status
            if status == sm.CANCELLED:
                current.cancelled_at = datetime.utcnow()
                current.cancelled_by = actor_user_id
                current.cancellation_reason = reason
            else:
                current.cancelled_at = None
                current.cancelled_by = None
                current.cancellation_reason = None

            self.repo.add_lifecycle_event(
                self.db,
                current,
                "override_transition",
                from_status=from_status,
                to_status=status,
                reason=reason.strip(),
                source=source,
                actor_user_id=actor_user_id,
                from_service_date=current.service_date,
                to_service_date=current.service_date,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.warning(f"⚠️ Booking {booking.public_id} status overridden: {from_status} → {status} by {actor_user_id} ({reason})")
        return True

    def backfill_legacy_statuses(self, ctx: RequestContext) -> dict:
        """Rewrite legacy "failed" rows to payment_failed through the audited override path"""
        if not ctx.is_admin:
            raise PermissionDeniedError("Only organization admins can run status backfills")

        converted = 0
        for booking in self.repo.list_bookings_with_status(self.db, ctx.organization_id, sm.LEGACY_FAILED):
            if self._override(
                booking,
                sm.PAYMENT_FAILED,
                "Legacy failed status normalized",
                "bookings.backfill",
                ctx.subject_id,
            ):
                converted += 1
        logger.info(f"📊 Backfilled {converted} legacy failed booking(s)")
        return {"converted": converted}
