"""
Deferred payment orchestrator

Collects a card up front (Stripe checkout in setup mode), charges it
off-session once the job is completed, and reconciles Stripe's webhooks
against the booking lifecycle. Webhook effects are idempotent: an event whose
target status the booking already holds is a successful no-op.
"""

import logging
from typing import Optional
from urllib.parse import urlencode

import stripe
from sqlalchemy.orm import Session

from ...auth import RequestContext
from ...config import APP_URL, FRONTEND_URL
from ...errors import (
    CardDeclined,
    CleanOSError,
    InvalidTransitionError,
    PaymentProcessorError,
    ProcessorUnavailable,
    RequiresAction,
    ValidationError,
)
from ...models import Booking, PaymentIntentRecord
from ..bookings import state_machine as sm
from ..bookings.repository import BookingRepository
from ..bookings.service import BookingService
from ..email.service import EmailService
from .repository import PaymentRepository
from .stripe_service import StripeService, stripe_service

logger = logging.getLogger(__name__)

WEBHOOK_SOURCE = "stripe.webhook"


def build_payment_link(payment_intent_id: str, client_secret: Optional[str]) -> str:
    """Customer-facing page where a charge needing verification is completed"""
    params = {"payment_intent": payment_intent_id}
    if client_secret:
        params["payment_intent_client_secret"] = client_secret
    return f"{APP_URL}/complete-payment?{urlencode(params)}"


def _error_message(error: Optional[dict]) -> Optional[str]:
    if not error:
        return None
    return error.get("message") or error.get("code")


# Worth retrying with backoff; every other Stripe error is permanent for the request
TRANSIENT_STRIPE_ERRORS = (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)


def map_stripe_error(error: stripe.StripeError) -> CleanOSError:
    message = f"Payment processor error: {error.user_message or str(error)}"
    if isinstance(error, TRANSIENT_STRIPE_ERRORS):
        return ProcessorUnavailable(message)
    if isinstance(error, stripe.InvalidRequestError):
        return ValidationError(error.user_message or str(error))
    return PaymentProcessorError(message)


class PaymentOrchestrator:
    """Sequences Stripe calls and reconciles their webhooks with booking status"""

    def __init__(self, db: Session, processor: Optional[StripeService] = None):
        self.db = db
        self.processor = processor or stripe_service
        self.repo = PaymentRepository()
        self.booking_repo = BookingRepository()
        self.bookings = BookingService(db)

    def _require_processor(self) -> StripeService:
        if not self.processor.is_available():
            raise ProcessorUnavailable("Payment processor is not configured")
        return self.processor

    # ========================================================================
    # CHECKOUT (CARD SETUP)
    # ========================================================================

    def create_checkout_session(
        self,
        ctx: RequestContext,
        booking_id: str,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
        supersede: bool = False,
    ) -> dict:
        """
        Open (or reuse) a setup-mode checkout session for a pending_card booking.

        An open prior session is returned as-is unless `supersede` is set, in
        which case it is expired before the replacement is created.
        """
        booking = self.bookings.get_booking(ctx, booking_id)
        processor = self._require_processor()
        # Held until commit so concurrent callers see the session this call stores
        booking = self.booking_repo.get_booking_for_update(self.db, booking.id)
        if booking.status != sm.PENDING_CARD:
            status = booking.status
            self.db.rollback()
            raise InvalidTransitionError(status, sm.CARD_SAVED, f"Card setup is not available for a {status} booking")

        success_url = success_url or f"{FRONTEND_URL}/bookings/{booking.public_id}/card-saved?session_id={{CHECKOUT_SESSION_ID}}"
        cancel_url = cancel_url or f"{FRONTEND_URL}/bookings/{booking.public_id}"
        metadata = {
            "bookingId": booking.public_id,
            "organizationId": booking.organization_id,
            "email": booking.email,
        }
        prior_session_id = booking.stripe_checkout_session_id

        try:
            if prior_session_id:
                prior = processor.retrieve_checkout_session(prior_session_id)
                if prior.status == "complete":
                    logger.info(f"ℹ️ Checkout {prior_session_id} already completed; awaiting webhook")
                    self.db.rollback()
                    return {"session_id": prior_session_id, "url": None, "reused": True, "status": "complete"}
                if prior.status == "open" and not supersede:
                    logger.info(f"💳 Reusing open checkout session {prior_session_id} for booking {booking.public_id}")
                    self.db.rollback()
                    return {"session_id": prior_session_id, "url": prior.url, "reused": True, "status": "open"}
                if prior.status == "open":
                    processor.expire_checkout_session(prior_session_id)
                    logger.info(f"💳 Expired checkout session {prior_session_id} (superseded)")

            customer_id = booking.stripe_customer_id
            if not customer_id:
                customer = processor.create_customer(
                    email=booking.email,
                    name=booking.customer_name,
                    metadata=metadata,
                    idempotency_key=f"org:{booking.organization_id}:stripe_customer:{booking.email}",
                )
                customer_id = customer.id

            session = processor.create_setup_checkout_session(
                customer_id=customer_id,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata,
                idempotency_key=f"booking:{booking.public_id}:checkout:{prior_session_id or 'initial'}",
            )
        except stripe.StripeError as e:
            logger.error(f"❌ Stripe error creating checkout for booking {booking.public_id}: {e}")
            self.db.rollback()
            raise map_stripe_error(e) from e

        try:
            if not booking.stripe_customer_id:
                booking.stripe_customer_id = customer_id
            booking.stripe_checkout_session_id = session.id
            if prior_session_id:
                self.booking_repo.add_lifecycle_event(
                    self.db,
                    booking,
                    "checkout_superseded",
                    from_status=booking.status,
                    to_status=booking.status,
                    source="payments.create_checkout_session",
                    actor_user_id=ctx.subject_id,
                    event_metadata={"previous_session_id": prior_session_id, "session_id": session.id},
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(f"💳 Created checkout session {session.id} for booking {booking.public_id}")
        return {"session_id": session.id, "url": session.url, "reused": False, "status": "open"}

    # ========================================================================
    # CHARGE ON COMPLETION
    # ========================================================================

    def charge_booking(
        self,
        ctx: RequestContext,
        booking_id: str,
        amount: Optional[int] = None,
        description: Optional[str] = None,
    ) -> dict:
        """
        Charge the saved card for a completed job.

        Raises InvalidTransitionError (wrong status, nothing mutated),
        CardDeclined (booking → payment_failed), RequiresAction (booking stays
        completed), ProcessorUnavailable (transient, nothing mutated) or
        ValidationError when Stripe rejects the request itself.
        """
        booking = self.bookings.get_booking(ctx, booking_id)
        if booking.status not in sm.CHARGEABLE_STATUSES:
            raise InvalidTransitionError(
                booking.status, sm.CHARGED, f"Only completed jobs can be charged (status: {booking.status})"
            )

        if amount is not None and booking.amount is not None and amount != booking.amount:
            raise ValidationError(f"Charge amount {amount} does not match booking amount {booking.amount}")
        charge_amount = amount if amount is not None else booking.amount
        if charge_amount is None:
            raise ValidationError("Booking has no amount to charge")
        if not isinstance(charge_amount, int) or charge_amount < 0:
            raise ValidationError("Amount must be a non-negative number of cents")
        if not booking.stripe_customer_id:
            raise ValidationError("No saved card on file for this booking")

        active = self.repo.get_active_payment_intent(self.db, booking.id)
        if active:
            raise InvalidTransitionError(
                booking.status,
                sm.CHARGED,
                f"A charge is already in progress for this booking ({active.status})",
            )

        processor = self._require_processor()
        description = description or f"Cleaning service for booking {booking.public_id}"
        attempt = self.repo.count_payment_intents(self.db, booking.id) + 1
        metadata = {
            "bookingId": booking.public_id,
            "organizationId": booking.organization_id,
            "email": booking.email,
        }

        try:
            payment_method_id = processor.get_default_card(booking.stripe_customer_id)
            if not payment_method_id:
                raise ValidationError("No saved card found for this customer")

            intent = processor.charge_saved_card(
                customer_id=booking.stripe_customer_id,
                payment_method_id=payment_method_id,
                amount=charge_amount,
                description=description,
                metadata=metadata,
                idempotency_key=f"booking:{booking.public_id}:charge:{attempt}",
            )
        except stripe.CardError as e:
            return self._handle_card_error(ctx, booking, charge_amount, e)
        except stripe.StripeError as e:
            logger.error(f"❌ Stripe error charging booking {booking.public_id}: {e}")
            raise map_stripe_error(e) from e

        logger.info(f"💳 Charge {intent.id} for booking {booking.public_id}: {intent.status}")
        try:
            self.repo.upsert_payment_intent(
                self.db, booking, intent.id, charge_amount, processor.currency, intent.status
            )
            if amount is not None and booking.amount is None:
                booking.amount = amount
            if not booking.stripe_payment_intent_id:
                booking.stripe_payment_intent_id = intent.id

            if intent.status == "succeeded":
                self.bookings.apply_transition(
                    booking,
                    sm.CHARGED,
                    "payments.charge_booking",
                    reason="Charge succeeded",
                    actor_user_id=ctx.subject_id,
                    metadata={"payment_intent_id": intent.id, "amount": charge_amount},
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if intent.status == "requires_action":
            link = build_payment_link(intent.id, intent.client_secret)
            self._notify_action_required(booking, intent.id, link)
            raise RequiresAction("Customer verification is required", payment_intent_id=intent.id, next_action_url=link)

        if intent.status == "succeeded":
            self._notify_receipt(booking, intent.id)
            return {"status": sm.CHARGED, "payment_intent_id": intent.id, "amount": charge_amount}

        return {"status": intent.status, "payment_intent_id": intent.id, "amount": charge_amount}

    def _handle_card_error(self, ctx: RequestContext, booking: Booking, amount: int, error) -> dict:
        error_details = getattr(error, "error", None)
        intent = getattr(error_details, "payment_intent", None) if error_details else None
        intent_id = getattr(intent, "id", None) if intent else None
        code = error.code

        if code == "authentication_required":
            if intent_id:
                try:
                    self.repo.upsert_payment_intent(
                        self.db, booking, intent_id, amount, self.processor.currency, "requires_action",
                        error_code=code, error_message=error.user_message,
                    )
                    self.db.commit()
                except Exception:
                    self.db.rollback()
                    raise
            link = build_payment_link(intent_id, getattr(intent, "client_secret", None)) if intent_id else None
            logger.info(f"💳 Charge for booking {booking.public_id} requires authentication")
            if intent_id:
                self._notify_action_required(booking, intent_id, link)
            raise RequiresAction("Customer verification is required", payment_intent_id=intent_id, next_action_url=link)

        message = error.user_message or str(error)
        logger.warning(f"⚠️ Card declined for booking {booking.public_id}: {code} {message}")
        try:
            self.repo.upsert_payment_intent(
                self.db, booking, intent_id, amount, self.processor.currency, "failed",
                error_code=code, error_message=message,
            )
            self.bookings.apply_transition(
                booking,
                sm.PAYMENT_FAILED,
                "payments.charge_booking",
                reason=message,
                actor_user_id=ctx.subject_id,
                metadata={"payment_intent_id": intent_id, "decline_code": code},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        raise CardDeclined(message, decline_code=code)

    def list_payment_intents(self, ctx: RequestContext, booking_id: str) -> list[PaymentIntentRecord]:
        booking = self.bookings.get_booking(ctx, booking_id)
        return self.repo.list_payment_intents(self.db, booking.id)

    # ========================================================================
    # WEBHOOK RECONCILIATION
    # ========================================================================

    def handle_event(self, event: dict) -> dict:
        event_type = event.get("type")
        obj = (event.get("data") or {}).get("object") or {}
        handlers = {
            "checkout.session.completed": self._on_checkout_completed,
            "setup_intent.succeeded": self._on_setup_intent_succeeded,
            "setup_intent.setup_failed": self._on_setup_intent_failed,
            "payment_intent.succeeded": self._on_payment_intent_succeeded,
            "payment_intent.payment_failed": self._on_payment_intent_failed,
            "payment_intent.requires_action": self._on_payment_intent_requires_action,
        }
        handler = handlers.get(event_type)
        if not handler:
            logger.info(f"ℹ️ Unhandled Stripe event type: {event_type}")
            return {"status": "ignored", "reason": "unhandled_event_type"}
        return handler(obj)

    def _find_booking(self, obj: dict, **processor_ids) -> Optional[Booking]:
        metadata = obj.get("metadata") or {}
        booking_id = metadata.get("bookingId")
        if booking_id:
            query = self.db.query(Booking).filter(Booking.public_id == booking_id)
            organization_id = metadata.get("organizationId")
            if organization_id:
                query = query.filter(Booking.organization_id == organization_id)
            booking = query.first()
            if booking:
                return booking

        payment_intent_id = processor_ids.get("payment_intent_id")
        if payment_intent_id:
            record = self.repo.get_payment_intent(self.db, payment_intent_id)
            if record:
                return record.booking

        return self.booking_repo.find_by_processor_ids(self.db, **processor_ids)

    def _unmatched(self, kind: str, object_id: Optional[str]) -> dict:
        logger.warning(f"⚠️ No booking matched Stripe {kind} {object_id}; acknowledging")
        return {"status": "ignored", "reason": "booking_not_found"}

    def _apply_card_saved(self, booking: Booking, setup_intent_id: Optional[str], customer_id: Optional[str]) -> dict:
        if booking.status != sm.PENDING_CARD:
            # Persist any intent bookkeeping even when the status is left alone
            self.db.commit()

        if booking.status == sm.CANCELLED:
            logger.info(f"ℹ️ Card saved for cancelled booking {booking.public_id}; no status change")
            return {"status": "ignored", "reason": "booking_cancelled", "booking_id": booking.public_id}
        if booking.status != sm.PENDING_CARD:
            if booking.status in (sm.PAYMENT_FAILED, sm.LEGACY_FAILED):
                logger.warning(
                    f"⚠️ Card saved for booking {booking.public_id} in {booking.status}; needs admin recovery"
                )
            return {"status": "processed", "changed": False, "booking_id": booking.public_id}

        try:
            if setup_intent_id and not booking.stripe_setup_intent_id:
                booking.stripe_setup_intent_id = setup_intent_id
            if customer_id and not booking.stripe_customer_id:
                booking.stripe_customer_id = customer_id
            changed = self.bookings.mark_card_on_file(booking, WEBHOOK_SOURCE)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if changed:
            EmailService(self.db).notify(
                f"payment-saved:{booking.public_id}",
                booking.email,
                "payment-saved",
                {"customer_name": booking.customer_name},
                organization_id=booking.organization_id,
            )
        return {"status": "processed", "changed": changed, "booking_id": booking.public_id}

    def _on_checkout_completed(self, session: dict) -> dict:
        if session.get("mode") != "setup":
            return {"status": "ignored", "reason": "not_setup_mode"}

        booking = self._find_booking(session, checkout_session_id=session.get("id"))
        if not booking:
            return self._unmatched("checkout session", session.get("id"))

        setup_intent_id = session.get("setup_intent")
        if setup_intent_id:
            self.repo.upsert_setup_intent(self.db, booking, setup_intent_id, "succeeded")
        return self._apply_card_saved(booking, setup_intent_id, session.get("customer"))

    def _on_setup_intent_succeeded(self, setup_intent: dict) -> dict:
        booking = self._find_booking(
            setup_intent, setup_intent_id=setup_intent.get("id"), customer_id=setup_intent.get("customer")
        )
        if not booking:
            return self._unmatched("setup intent", setup_intent.get("id"))

        self.repo.upsert_setup_intent(self.db, booking, setup_intent["id"], "succeeded")
        return self._apply_card_saved(booking, setup_intent.get("id"), setup_intent.get("customer"))

    def _on_setup_intent_failed(self, setup_intent: dict) -> dict:
        booking = self._find_booking(
            setup_intent, setup_intent_id=setup_intent.get("id"), customer_id=setup_intent.get("customer")
        )
        if not booking:
            return self._unmatched("setup intent", setup_intent.get("id"))

        message = _error_message(setup_intent.get("last_setup_error")) or "Card setup failed"
        changed = False
        try:
            self.repo.upsert_setup_intent(self.db, booking, setup_intent["id"], "failed", error_message=message)
            if booking.status == sm.PENDING_CARD:
                changed = self.bookings.apply_transition(
                    booking, sm.PAYMENT_FAILED, WEBHOOK_SOURCE, reason=message,
                    metadata={"setup_intent_id": setup_intent.get("id")},
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return {"status": "processed", "changed": changed, "booking_id": booking.public_id}

    def _on_payment_intent_succeeded(self, intent: dict) -> dict:
        booking = self._find_booking(intent, payment_intent_id=intent.get("id"))
        if not booking:
            return self._unmatched("payment intent", intent.get("id"))

        changed = False
        try:
            self.repo.upsert_payment_intent(
                self.db, booking, intent.get("id"), intent.get("amount") or booking.amount or 0,
                intent.get("currency") or self.processor.currency, "succeeded",
            )
            if not booking.stripe_payment_intent_id:
                booking.stripe_payment_intent_id = intent.get("id")
            if booking.status in sm.CHARGEABLE_STATUSES:
                changed = self.bookings.apply_transition(
                    booking, sm.CHARGED, WEBHOOK_SOURCE, reason="Charge succeeded",
                    metadata={"payment_intent_id": intent.get("id")},
                )
            elif booking.status != sm.CHARGED:
                logger.error(
                    f"❌ Payment {intent.get('id')} succeeded for booking {booking.public_id} in {booking.status}"
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if changed:
            self._notify_receipt(booking, intent.get("id"))
        return {"status": "processed", "changed": changed, "booking_id": booking.public_id}

    def _on_payment_intent_failed(self, intent: dict) -> dict:
        booking = self._find_booking(intent, payment_intent_id=intent.get("id"))
        if not booking:
            return self._unmatched("payment intent", intent.get("id"))

        error = intent.get("last_payment_error") or {}
        message = _error_message(error) or "Payment failed"
        error_code = error.get("decline_code") or error.get("code")
        record = self.repo.get_payment_intent(self.db, intent.get("id")) if intent.get("id") else None
        if error.get("code") == "authentication_required" or (record and record.status == "requires_action"):
            # The emailed verification link can still complete this intent; a new charge must stay blocked
            logger.info(f"💳 Payment {intent.get('id')} for booking {booking.public_id} still awaits verification")
            try:
                self.repo.upsert_payment_intent(
                    self.db, booking, intent.get("id"), intent.get("amount") or booking.amount or 0,
                    intent.get("currency") or self.processor.currency, "requires_action",
                    error_code=error_code, error_message=message,
                )
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
            return {"status": "processed", "changed": False, "booking_id": booking.public_id}

        changed = False
        try:
            self.repo.upsert_payment_intent(
                self.db, booking, intent.get("id"), intent.get("amount") or booking.amount or 0,
                intent.get("currency") or self.processor.currency, "failed",
                error_code=error_code, error_message=message,
            )
            if booking.status == sm.COMPLETED:
                changed = self.bookings.apply_transition(
                    booking, sm.PAYMENT_FAILED, WEBHOOK_SOURCE, reason=message,
                    metadata={"payment_intent_id": intent.get("id")},
                )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return {"status": "processed", "changed": changed, "booking_id": booking.public_id}

    def _on_payment_intent_requires_action(self, intent: dict) -> dict:
        booking = self._find_booking(intent, payment_intent_id=intent.get("id"))
        if not booking:
            return self._unmatched("payment intent", intent.get("id"))

        try:
            self.repo.upsert_payment_intent(
                self.db, booking, intent.get("id"), intent.get("amount") or booking.amount or 0,
                intent.get("currency") or self.processor.currency, "requires_action",
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return {"status": "processed", "changed": False, "booking_id": booking.public_id}

    # ========================================================================
    # NOTIFICATIONS
    # ========================================================================

    def _notify_receipt(self, booking: Booking, payment_intent_id: str) -> None:
        EmailService(self.db).notify(
            f"payment-receipt:{payment_intent_id}",
            booking.email,
            "payment-receipt",
            {"customer_name": booking.customer_name, "amount": booking.amount},
            organization_id=booking.organization_id,
        )

    def _notify_action_required(self, booking: Booking, payment_intent_id: str, link: str) -> None:
        EmailService(self.db).notify(
            f"payment-action-required:{payment_intent_id}",
            booking.email,
            "payment-action-required",
            {"customer_name": booking.customer_name, "amount": booking.amount, "next_action_url": link},
            organization_id=booking.organization_id,
        )
