"""Email service - idempotent transactional sends and the suppression list"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from ...errors import ValidationError
from ...models import EmailSend, EmailSuppression
from ...shared.validators import normalize_email
from .repository import EmailRepository
from .sender import send_email
from .templates import render_template

logger = logging.getLogger(__name__)

SEND_STATUSES = {"queued", "sent", "delivered", "delivery_delayed", "failed", "skipped"}
# Rows in these statuses are never re-sent for the same idempotency key
REUSABLE_SEND_STATUSES = {"queued", "sent", "delivered", "delivery_delayed", "skipped"}
SUPPRESSION_REASONS = {"hard_bounce", "complaint"}


class EmailService:
    """Service layer for outbound email"""

    def __init__(self, db: Session):
        self.db = db
        self.repo = EmailRepository()

    # ========================================================================
    # SEND QUEUE
    # ========================================================================

    def queue_send(
        self,
        idempotency_key: str,
        to: str,
        template: str,
        subject: Optional[str] = None,
        provider: str = "resend",
        organization_id: Optional[str] = None,
    ) -> EmailSend:
        """Return the existing send for this key, or insert a new queued one"""
        if not idempotency_key:
            raise ValidationError("idempotency_key is required")

        existing = self.repo.get_send_by_key(self.db, idempotency_key)
        if existing:
            return existing

        send = self.repo.insert_send(
            self.db,
            idempotency_key=idempotency_key,
            to_email=normalize_email(to),
            subject=subject,
            template=template,
            provider=provider,
            organization_id=organization_id,
        )
        if send is None:
            # Lost an insert race on the unique key; the winner's row is the answer
            send = self.repo.get_send_by_key(self.db, idempotency_key)
        return send

    def mark_send_status(
        self,
        send: EmailSend,
        status: str,
        provider_email_id: Optional[str] = None,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> EmailSend:
        if status not in SEND_STATUSES:
            raise ValidationError(f"Unknown email send status: {status}")

        updates = {"status": status, "error_code": error_code, "error_message": error_message}
        if provider_email_id:
            updates["provider_email_id"] = provider_email_id
        if status == "sent":
            updates["sent_at"] = datetime.utcnow()
        return self.repo.update_send(self.db, send, **updates)

    def send_transactional(
        self,
        idempotency_key: str,
        to: str,
        template: str,
        context: Optional[dict] = None,
        organization_id: Optional[str] = None,
    ) -> dict:
        """
        Send a templated email at most once per idempotency key.

        Returns a dict with the send id, final status and whether an existing
        send was reused. Provider failures mark the row failed and re-raise.
        """
        recipient = normalize_email(to)
        if not recipient:
            raise ValidationError("Recipient email is required")

        existing = self.repo.get_send_by_key(self.db, idempotency_key)
        if existing and existing.status in REUSABLE_SEND_STATUSES:
            logger.info(f"📧 Reusing email send {existing.id} for key {idempotency_key} ({existing.status})")
            return {"send_id": existing.id, "status": existing.status, "idempotent_reuse": True}

        subject, mjml_content = render_template(template, context)
        if existing:
            # Previous attempt failed; retry on the same row
            send = existing
        else:
            send = self.repo.insert_send(
                self.db,
                idempotency_key=idempotency_key,
                to_email=recipient,
                subject=subject,
                template=template,
                provider="resend",
                organization_id=organization_id,
            )
            if send is None:
                winner = self.repo.get_send_by_key(self.db, idempotency_key)
                return {"send_id": winner.id, "status": winner.status, "idempotent_reuse": True}

        if self.is_suppressed(recipient):
            logger.info(f"🚫 Skipping email to suppressed recipient {recipient}")
            self.mark_send_status(send, "skipped", error_code="suppressed")
            return {"send_id": send.id, "status": "skipped", "idempotent_reuse": False}

        try:
            response = send_email(recipient, subject, mjml_content, idempotency_key=idempotency_key)
        except Exception as e:
            self.mark_send_status(send, "failed", error_code="send_failed", error_message=str(e))
            raise

        provider_email_id = response.get("id") if isinstance(response, dict) else None
        self.mark_send_status(send, "sent", provider_email_id=provider_email_id)
        return {"send_id": send.id, "status": "sent", "idempotent_reuse": False}

    def notify(self, idempotency_key: str, to: Optional[str], template: str, context: dict, organization_id: Optional[str] = None) -> None:
        """Best-effort customer notification; failures never block the booking flow"""
        if not to:
            return
        try:
            self.send_transactional(idempotency_key, to, template, context, organization_id=organization_id)
        except Exception as e:
            logger.error(f"❌ Failed to send {template} email ({idempotency_key}): {e}")

    # ========================================================================
    # SUPPRESSIONS
    # ========================================================================

    def is_suppressed(self, email: str) -> bool:
        return self.repo.get_suppression(self.db, normalize_email(email)) is not None

    def suppress_email(self, email: str, reason: str, source_event_id: Optional[str] = None) -> EmailSuppression:
        normalized = normalize_email(email)
        if not normalized:
            raise ValidationError("Email is required")
        if reason not in SUPPRESSION_REASONS:
            raise ValidationError(f"Unknown suppression reason: {reason}")

        suppression = self.repo.upsert_suppression(self.db, normalized, reason, source_event_id)
        logger.info(f"🚫 Suppressed {normalized} ({reason})")
        return suppression

    def list_recent_suppressions(self, limit: int = 50) -> list[EmailSuppression]:
        return self.repo.list_recent_suppressions(self.db, limit=limit)
