"""Booking repository - Database operations for bookings and their audit trail"""

from typing import Optional

from sqlalchemy.orm import Session

from ...models import Booking, BookingAssignment, BookingLifecycleEvent, BookingRequest

INACTIVE_ASSIGNMENT_STATUSES = ("declined", "cancelled")


class BookingRepository:
    """Repository for booking database operations"""

    @staticmethod
    def get_booking(db: Session, organization_id: str, public_id: str) -> Optional[Booking]:
        return (
            db.query(Booking)
            .filter(Booking.organization_id == organization_id, Booking.public_id == public_id)
            .first()
        )

    @staticmethod
    def get_booking_for_update(db: Session, booking_id: int) -> Optional[Booking]:
        """Re-read a booking row inside the current transaction, locking it where supported"""
        return db.query(Booking).filter(Booking.id == booking_id).with_for_update().populate_existing().first()

    @staticmethod
    def get_booking_by_intake_response(
        db: Session, organization_id: str, intake_response_id: str
    ) -> Optional[Booking]:
        return (
            db.query(Booking)
            .filter(
                Booking.organization_id == organization_id,
                Booking.intake_response_id == intake_response_id,
            )
            .first()
        )

    @staticmethod
    def find_by_processor_ids(
        db: Session,
        checkout_session_id: Optional[str] = None,
        setup_intent_id: Optional[str] = None,
        payment_intent_id: Optional[str] = None,
        customer_id: Optional[str] = None,
    ) -> Optional[Booking]:
        """Indexed lookup on stored Stripe identifiers, most specific first"""
        lookups = [
            (Booking.stripe_payment_intent_id, payment_intent_id),
            (Booking.stripe_setup_intent_id, setup_intent_id),
            (Booking.stripe_checkout_session_id, checkout_session_id),
        ]
        for column, value in lookups:
            if value:
                booking = db.query(Booking).filter(column == value).first()
                if booking:
                    return booking

        if customer_id:
            # A customer may own several bookings; only a single pending one is unambiguous
            candidates = (
                db.query(Booking)
                .filter(Booking.stripe_customer_id == customer_id, Booking.status == "pending_card")
                .all()
            )
            if len(candidates) == 1:
                return candidates[0]
        return None

    @staticmethod
    def list_bookings(
        db: Session, organization_id: str, status: Optional[str] = None, limit: int = 50
    ) -> list[Booking]:
        query = db.query(Booking).filter(Booking.organization_id == organization_id)
        if status:
            query = query.filter(Booking.status == status)
        return query.order_by(Booking.created_at.desc(), Booking.id.desc()).limit(limit).all()

    @staticmethod
    def list_bookings_with_status(db: Session, organization_id: str, status: str) -> list[Booking]:
        return (
            db.query(Booking)
            .filter(Booking.organization_id == organization_id, Booking.status == status)
            .all()
        )

    @staticmethod
    def add_booking(db: Session, **booking_data) -> Booking:
        booking = Booking(**booking_data)
        db.add(booking)
        db.flush()
        return booking

    @staticmethod
    def add_lifecycle_event(db: Session, booking: Booking, event_type: str, **event_data) -> BookingLifecycleEvent:
        event = BookingLifecycleEvent(
            booking_id=booking.id,
            organization_id=booking.organization_id,
            event_type=event_type,
            **event_data,
        )
        db.add(event)
        return event

    @staticmethod
    def get_lifecycle_events(db: Session, booking_id: int) -> list[BookingLifecycleEvent]:
        return (
            db.query(BookingLifecycleEvent)
            .filter(BookingLifecycleEvent.booking_id == booking_id)
            .order_by(BookingLifecycleEvent.id.asc())
            .all()
        )

    @staticmethod
    def get_active_assignments(db: Session, booking_id: int) -> list[BookingAssignment]:
        return (
            db.query(BookingAssignment)
            .filter(
                BookingAssignment.booking_id == booking_id,
                BookingAssignment.status.notin_(INACTIVE_ASSIGNMENT_STATUSES),
            )
            .all()
        )

    @staticmethod
    def get_booking_request(db: Session, organization_id: str, request_id: int) -> Optional[BookingRequest]:
        return (
            db.query(BookingRequest)
            .filter(BookingRequest.organization_id == organization_id, BookingRequest.id == request_id)
            .first()
        )
