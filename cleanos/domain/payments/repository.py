"""Payment repository - charge attempts, setup intents and webhook dedup rows"""

from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models import PaymentIntentRecord, PaymentWebhookEvent, SetupIntentRecord

ACTIVE_PAYMENT_INTENT_STATUSES = ("processing", "requires_action", "requires_confirmation", "requires_capture")


class PaymentRepository:
    @staticmethod
    def get_payment_intent(db: Session, stripe_payment_intent_id: str) -> Optional[PaymentIntentRecord]:
        return (
            db.query(PaymentIntentRecord)
            .filter(PaymentIntentRecord.stripe_payment_intent_id == stripe_payment_intent_id)
            .first()
        )

    @staticmethod
    def list_payment_intents(db: Session, booking_id: int) -> list[PaymentIntentRecord]:
        return (
            db.query(PaymentIntentRecord)
            .filter(PaymentIntentRecord.booking_id == booking_id)
            .order_by(PaymentIntentRecord.created_at.desc(), PaymentIntentRecord.id.desc())
            .all()
        )

    @staticmethod
    def count_payment_intents(db: Session, booking_id: int) -> int:
        return db.query(PaymentIntentRecord).filter(PaymentIntentRecord.booking_id == booking_id).count()

    @staticmethod
    def get_active_payment_intent(db: Session, booking_id: int) -> Optional[PaymentIntentRecord]:
        return (
            db.query(PaymentIntentRecord)
            .filter(
                PaymentIntentRecord.booking_id == booking_id,
                PaymentIntentRecord.status.in_(ACTIVE_PAYMENT_INTENT_STATUSES),
            )
            .first()
        )

    @staticmethod
    def upsert_payment_intent(
        db: Session,
        booking,
        stripe_payment_intent_id: Optional[str],
        amount: int,
        currency: str,
        status: str,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> PaymentIntentRecord:
        record = None
        if stripe_payment_intent_id:
            record = PaymentRepository.get_payment_intent(db, stripe_payment_intent_id)
        if record is None:
            record = PaymentIntentRecord(
                booking_id=booking.id,
                organization_id=booking.organization_id,
                stripe_payment_intent_id=stripe_payment_intent_id,
                amount=amount,
                currency=currency,
            )
            db.add(record)
        record.status = status
        record.error_code = error_code
        record.error_message = error_message
        return record

    @staticmethod
    def upsert_setup_intent(
        db: Session, booking, stripe_setup_intent_id: str, status: str, error_message: Optional[str] = None
    ) -> SetupIntentRecord:
        record = (
            db.query(SetupIntentRecord)
            .filter(SetupIntentRecord.stripe_setup_intent_id == stripe_setup_intent_id)
            .first()
        )
        if record is None:
            record = SetupIntentRecord(
                booking_id=booking.id,
                organization_id=booking.organization_id,
                stripe_setup_intent_id=stripe_setup_intent_id,
            )
            db.add(record)
        record.status = status
        record.error_message = error_message
        return record

    # Webhook dedup

    @staticmethod
    def record_webhook_event(
        db: Session, provider: str, event_id: str, event_type: str, organization_id: Optional[str] = None
    ) -> Optional[PaymentWebhookEvent]:
        """Insert the dedup row; None means this event was already received"""
        event = PaymentWebhookEvent(
            provider=provider,
            event_id=event_id,
            event_type=event_type,
            organization_id=organization_id,
            status="received",
        )
        db.add(event)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            return None
        db.refresh(event)
        return event

    @staticmethod
    def mark_webhook_event(db: Session, event: PaymentWebhookEvent, status: str, error_message: Optional[str] = None):
        event.status = status
        event.error_message = error_message
        event.processed_at = datetime.utcnow()
        db.commit()

    @staticmethod
    def release_webhook_event(db: Session, event: PaymentWebhookEvent) -> None:
        """Forget a failed event so the provider's redelivery is processed again"""
        db.delete(event)
        db.commit()
