"""Email repository - send queue, suppression list and provider event log"""

from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ...models import EmailEvent, EmailSend, EmailSuppression


class EmailRepository:
    """Repository for email database operations"""

    # Send queue

    @staticmethod
    def get_send_by_key(db: Session, idempotency_key: str) -> Optional[EmailSend]:
        return db.query(EmailSend).filter(EmailSend.idempotency_key == idempotency_key).first()

    @staticmethod
    def get_send_by_provider_id(db: Session, provider_email_id: str) -> Optional[EmailSend]:
        return db.query(EmailSend).filter(EmailSend.provider_email_id == provider_email_id).first()

    @staticmethod
    def insert_send(db: Session, **send_data) -> Optional[EmailSend]:
        """Insert a queued send; returns None if the idempotency key already exists"""
        send = EmailSend(status="queued", **send_data)
        db.add(send)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            return None
        db.refresh(send)
        return send

    @staticmethod
    def update_send(db: Session, send: EmailSend, **updates) -> EmailSend:
        for key, value in updates.items():
            setattr(send, key, value)
        db.commit()
        db.refresh(send)
        return send

    # Suppressions

    @staticmethod
    def get_suppression(db: Session, email: str) -> Optional[EmailSuppression]:
        return db.query(EmailSuppression).filter(EmailSuppression.email == email).first()

    @staticmethod
    def upsert_suppression(
        db: Session, email: str, reason: str, source_event_id: Optional[str] = None
    ) -> EmailSuppression:
        suppression = EmailRepository.get_suppression(db, email)
        if suppression:
            suppression.reason = reason
            suppression.source_event_id = source_event_id
            suppression.created_at = datetime.utcnow()
        else:
            suppression = EmailSuppression(email=email, reason=reason, source_event_id=source_event_id)
            db.add(suppression)
        try:
            db.commit()
        except IntegrityError:
            # Concurrent insert for the same address won; update that row instead
            db.rollback()
            suppression = EmailRepository.get_suppression(db, email)
            suppression.reason = reason
            suppression.source_event_id = source_event_id
            suppression.created_at = datetime.utcnow()
            db.commit()
        db.refresh(suppression)
        return suppression

    @staticmethod
    def list_recent_suppressions(db: Session, limit: int = 50) -> list[EmailSuppression]:
        return (
            db.query(EmailSuppression)
            .order_by(EmailSuppression.created_at.desc(), EmailSuppression.id.desc())
            .limit(limit)
            .all()
        )

    # Provider events

    @staticmethod
    def record_event(db: Session, event_id: str, provider_email_id: Optional[str], event_type: str, payload: dict) -> bool:
        """Record a provider event; False if it was already recorded"""
        if db.query(EmailEvent.id).filter(EmailEvent.event_id == event_id).first():
            return False
        db.add(
            EmailEvent(
                event_id=event_id,
                provider_email_id=provider_email_id,
                type=event_type,
                payload=payload,
            )
        )
        try:
            db.flush()
        except IntegrityError:
            db.rollback()
            return False
        return True

    @staticmethod
    def release_event(db: Session, event_id: str) -> None:
        """Forget an event whose processing failed so its redelivery is applied"""
        db.query(EmailEvent).filter(EmailEvent.event_id == event_id).delete(synchronize_session=False)
        db.commit()
