"""
Email provider event ingestion (Resend)

Delivery, bounce and complaint events update the matching send row and feed
the suppression list. Each event is applied at most once: its id is derived
from the provider message id, the event type and the event timestamp, and
recorded in email_events before any effect is applied.
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from .repository import EmailRepository
from .service import EmailService

logger = logging.getLogger(__name__)

FAILURE_EVENT_TYPES = {"email.bounced", "email.complained", "email.failed"}


def build_event_id(event: dict) -> Optional[str]:
    data = event.get("data") or {}
    email_id = data.get("email_id")
    event_type = event.get("type")
    created_at = event.get("created_at") or data.get("created_at")
    if not email_id or not event_type:
        return None
    return f"{email_id}:{event_type}:{created_at}"


def next_send_status(current: str, event_type: str) -> Optional[str]:
    """Status a send should move to for an event, or None to leave it alone"""
    if event_type == "email.sent":
        if current in ("delivered", "delivery_delayed", "failed"):
            return None
        return "sent"
    if event_type == "email.delivered":
        if current in ("delivered", "failed"):
            return None
        return "delivered"
    if event_type == "email.delivery_delayed":
        if current not in ("queued", "sent"):
            return None
        return "delivery_delayed"
    if event_type in FAILURE_EVENT_TYPES:
        return "failed"
    return None


def is_hard_bounce(data: dict) -> bool:
    bounce = data.get("bounce") or {}
    bounce_type = str(bounce.get("type") or "").lower()
    return "hard" in bounce_type or "permanent" in bounce_type


class EmailEventService:
    def __init__(self, db: Session):
        self.db = db
        self.repo = EmailRepository()
        self.email_service = EmailService(db)

    def handle_event(self, event: dict) -> dict:
        event_type = event.get("type")
        data = event.get("data") or {}
        email_id = data.get("email_id")

        event_id = build_event_id(event)
        if not event_id:
            logger.warning(f"⚠️ Ignoring malformed email event: type={event_type}")
            return {"status": "ignored", "reason": "malformed"}

        if not self.repo.record_event(self.db, event_id, email_id, event_type, event):
            logger.info(f"ℹ️ Duplicate email event {event_id}, skipping")
            return {"status": "duplicate", "event_id": event_id}

        try:
            self._apply_event(event_id, event_type, data)
        except Exception:
            # Status and suppression writes commit separately; a partial run must be replayable
            self.db.rollback()
            self.repo.release_event(self.db, event_id)
            raise
        return {"status": "processed", "event_id": event_id}

    def _apply_event(self, event_id: str, event_type: str, data: dict) -> None:
        email_id = data.get("email_id")
        send = self.repo.get_send_by_provider_id(self.db, email_id)
        if send:
            new_status = next_send_status(send.status, event_type)
            if new_status:
                error_code = event_type if new_status == "failed" else None
                self.email_service.mark_send_status(send, new_status, error_code=error_code)
                logger.info(f"📧 Email send {send.id} → {new_status} ({event_type})")
        else:
            logger.info(f"ℹ️ No email send found for provider id {email_id}")

        recipients = data.get("to") or ([send.to_email] if send else [])
        if isinstance(recipients, str):
            recipients = [recipients]

        if event_type == "email.complained":
            for recipient in recipients:
                self.email_service.suppress_email(recipient, "complaint", source_event_id=event_id)
        elif event_type == "email.bounced" and is_hard_bounce(data):
            for recipient in recipients:
                self.email_service.suppress_email(recipient, "hard_bounce", source_event_id=event_id)

        # Persist the dedup row even when nothing else changed
        self.db.commit()
