"""
Unit tests for card setup and off-session charging.
"""

from unittest.mock import MagicMock

import pytest
import stripe

from cleanos.domain.payments.service import PaymentOrchestrator, build_payment_link
from cleanos.errors import (
    CardDeclined,
    InvalidTransitionError,
    PaymentProcessorError,
    ProcessorUnavailable,
    RequiresAction,
    ValidationError,
)
from cleanos.models import BookingLifecycleEvent, PaymentIntentRecord


def make_intent(intent_id="pi_test_123", status="succeeded", client_secret="pi_test_123_secret"):
    intent = MagicMock()
    intent.id = intent_id
    intent.status = status
    intent.client_secret = client_secret
    return intent


def card_error(code, message="Your card was declined.", payment_intent=None):
    error = stripe.CardError(message, None, code)
    if payment_intent is not None:
        error.error = MagicMock(payment_intent=payment_intent)
    return error


@pytest.fixture
def completed_booking(make_booking):
    return make_booking(status="completed", amount=15000, stripe_customer_id="cus_test_123")


@pytest.fixture
def orchestrator(db_session, mock_processor):
    mock_processor.get_default_card.return_value = "pm_test_123"
    mock_processor.charge_saved_card.return_value = make_intent()
    return PaymentOrchestrator(db_session, mock_processor)


class TestChargeBooking:
    """Test charging a completed job."""

    def test_charge_completed_booking(self, db_session, ctx, orchestrator, mock_processor, completed_booking):
        result = orchestrator.charge_booking(ctx, completed_booking.public_id)

        db_session.refresh(completed_booking)
        assert result == {"status": "charged", "payment_intent_id": "pi_test_123", "amount": 15000}
        assert completed_booking.status == "charged"
        assert completed_booking.stripe_payment_intent_id == "pi_test_123"

        call_kwargs = mock_processor.charge_saved_card.call_args[1]
        assert call_kwargs["amount"] == 15000
        assert call_kwargs["customer_id"] == "cus_test_123"
        assert call_kwargs["payment_method_id"] == "pm_test_123"
        assert call_kwargs["idempotency_key"] == f"booking:{completed_booking.public_id}:charge:1"
        assert call_kwargs["metadata"]["bookingId"] == completed_booking.public_id

    def test_charging_twice_raises(self, ctx, orchestrator, mock_processor, completed_booking):
        orchestrator.charge_booking(ctx, completed_booking.public_id)

        with pytest.raises(InvalidTransitionError):
            orchestrator.charge_booking(ctx, completed_booking.public_id)

        assert mock_processor.charge_saved_card.call_count == 1

    def test_successful_charge_sends_receipt(self, ctx, orchestrator, completed_booking, mock_send_email):
        orchestrator.charge_booking(ctx, completed_booking.public_id)

        assert mock_send_email.call_count == 1
        assert mock_send_email.call_args[1]["idempotency_key"] == "payment-receipt:pi_test_123"

    @pytest.mark.parametrize("status", ["pending_card", "card_saved", "scheduled", "in_progress", "cancelled"])
    def test_non_completed_booking_is_not_charged(
        self, db_session, ctx, orchestrator, mock_processor, make_booking, status
    ):
        booking = make_booking(status=status, amount=15000, stripe_customer_id="cus_test_123")

        with pytest.raises(InvalidTransitionError):
            orchestrator.charge_booking(ctx, booking.public_id)

        db_session.refresh(booking)
        assert booking.status == status
        assert booking.amount == 15000
        mock_processor.charge_saved_card.assert_not_called()

    def test_amount_mismatch_is_rejected(self, ctx, orchestrator, mock_processor, completed_booking):
        with pytest.raises(ValidationError, match="does not match"):
            orchestrator.charge_booking(ctx, completed_booking.public_id, amount=9999)

        mock_processor.charge_saved_card.assert_not_called()

    def test_no_saved_customer_is_rejected(self, ctx, orchestrator, make_booking):
        booking = make_booking(status="completed", amount=15000)

        with pytest.raises(ValidationError, match="No saved card"):
            orchestrator.charge_booking(ctx, booking.public_id)

    def test_card_declined_moves_to_payment_failed(
        self, db_session, ctx, orchestrator, mock_processor, completed_booking
    ):
        mock_processor.charge_saved_card.side_effect = card_error("card_declined")

        with pytest.raises(CardDeclined) as exc_info:
            orchestrator.charge_booking(ctx, completed_booking.public_id)

        db_session.refresh(completed_booking)
        assert exc_info.value.status_code == 402
        assert exc_info.value.decline_code == "card_declined"
        assert completed_booking.status == "payment_failed"
        record = db_session.query(PaymentIntentRecord).one()
        assert record.status == "failed"
        assert record.error_code == "card_declined"

    def test_retry_after_decline_can_charge(self, db_session, ctx, orchestrator, mock_processor, completed_booking):
        mock_processor.charge_saved_card.side_effect = card_error("card_declined")
        with pytest.raises(CardDeclined):
            orchestrator.charge_booking(ctx, completed_booking.public_id)

        mock_processor.charge_saved_card.side_effect = None
        mock_processor.charge_saved_card.return_value = make_intent("pi_retry")
        result = orchestrator.charge_booking(ctx, completed_booking.public_id)

        assert result["status"] == "charged"
        assert mock_processor.charge_saved_card.call_args[1]["idempotency_key"].endswith(":charge:2")

    def test_authentication_required_keeps_booking_completed(
        self, db_session, ctx, orchestrator, mock_processor, completed_booking
    ):
        intent = MagicMock(id="pi_auth_123", client_secret="pi_auth_123_secret")
        mock_processor.charge_saved_card.side_effect = card_error(
            "authentication_required", "Authentication required", payment_intent=intent
        )

        with pytest.raises(RequiresAction) as exc_info:
            orchestrator.charge_booking(ctx, completed_booking.public_id)

        db_session.refresh(completed_booking)
        assert completed_booking.status == "completed"
        assert exc_info.value.payment_intent_id == "pi_auth_123"
        assert "payment_intent=pi_auth_123" in exc_info.value.next_action_url
        assert exc_info.value.to_dict()["next_action_url"] == exc_info.value.next_action_url
        record = db_session.query(PaymentIntentRecord).one()
        assert record.status == "requires_action"

    def test_requires_action_blocks_second_charge(self, ctx, orchestrator, mock_processor, completed_booking):
        mock_processor.charge_saved_card.return_value = make_intent("pi_3ds", status="requires_action")

        with pytest.raises(RequiresAction):
            orchestrator.charge_booking(ctx, completed_booking.public_id)
        with pytest.raises(InvalidTransitionError, match="already in progress"):
            orchestrator.charge_booking(ctx, completed_booking.public_id)

    def test_processor_error_is_transient(self, db_session, ctx, orchestrator, mock_processor, completed_booking):
        mock_processor.charge_saved_card.side_effect = stripe.APIConnectionError("Network unreachable")

        with pytest.raises(ProcessorUnavailable):
            orchestrator.charge_booking(ctx, completed_booking.public_id)

        db_session.refresh(completed_booking)
        assert completed_booking.status == "completed"
        assert db_session.query(PaymentIntentRecord).count() == 0

    @pytest.mark.parametrize(
        "error, expected",
        [
            (stripe.InvalidRequestError("Amount must be at least 50 cents", "amount"), ValidationError),
            (stripe.AuthenticationError("Invalid API Key provided"), PaymentProcessorError),
            (stripe.PermissionError("Key lacks charge permission"), PaymentProcessorError),
            (stripe.RateLimitError("Too many requests"), ProcessorUnavailable),
        ],
    )
    def test_stripe_errors_are_classified(
        self, db_session, ctx, orchestrator, mock_processor, completed_booking, error, expected
    ):
        mock_processor.charge_saved_card.side_effect = error

        with pytest.raises(expected):
            orchestrator.charge_booking(ctx, completed_booking.public_id)

        db_session.refresh(completed_booking)
        assert completed_booking.status == "completed"
        assert db_session.query(PaymentIntentRecord).count() == 0

    def test_unconfigured_processor(self, ctx, orchestrator, mock_processor, completed_booking):
        mock_processor.is_available.return_value = False

        with pytest.raises(ProcessorUnavailable):
            orchestrator.charge_booking(ctx, completed_booking.public_id)


class TestCheckoutSession:
    """Test the setup-mode checkout session."""

    @pytest.fixture
    def processor(self, mock_processor):
        mock_processor.create_customer.return_value = MagicMock(id="cus_new")
        session = MagicMock(id="cs_test_1", url="https://checkout.stripe.com/c/cs_test_1")
        mock_processor.create_setup_checkout_session.return_value = session
        return mock_processor

    def test_create_checkout_session(self, db_session, ctx, processor, make_booking):
        booking = make_booking(status="pending_card")

        result = PaymentOrchestrator(db_session, processor).create_checkout_session(ctx, booking.public_id)

        db_session.refresh(booking)
        assert result["session_id"] == "cs_test_1"
        assert result["reused"] is False
        assert booking.stripe_checkout_session_id == "cs_test_1"
        assert booking.stripe_customer_id == "cus_new"
        customer_kwargs = processor.create_customer.call_args[1]
        assert customer_kwargs["idempotency_key"] == f"org:{ctx.organization_id}:stripe_customer:customer@example.com"
        session_kwargs = processor.create_setup_checkout_session.call_args[1]
        assert session_kwargs["idempotency_key"] == f"booking:{booking.public_id}:checkout:initial"

    def test_open_session_is_reused(self, db_session, ctx, processor, make_booking):
        booking = make_booking(status="pending_card", stripe_checkout_session_id="cs_old", stripe_customer_id="cus_1")
        processor.retrieve_checkout_session.return_value = MagicMock(status="open", url="https://checkout/cs_old")

        result = PaymentOrchestrator(db_session, processor).create_checkout_session(ctx, booking.public_id)

        assert result == {"session_id": "cs_old", "url": "https://checkout/cs_old", "reused": True, "status": "open"}
        processor.create_setup_checkout_session.assert_not_called()

    def test_supersede_expires_prior_session(self, db_session, ctx, processor, make_booking):
        booking = make_booking(status="pending_card", stripe_checkout_session_id="cs_old", stripe_customer_id="cus_1")
        processor.retrieve_checkout_session.return_value = MagicMock(status="open")

        result = PaymentOrchestrator(db_session, processor).create_checkout_session(
            ctx, booking.public_id, supersede=True
        )

        db_session.refresh(booking)
        processor.expire_checkout_session.assert_called_once_with("cs_old")
        processor.create_customer.assert_not_called()
        assert result["session_id"] == "cs_test_1"
        assert booking.stripe_checkout_session_id == "cs_test_1"
        assert booking.stripe_customer_id == "cus_1"
        session_kwargs = processor.create_setup_checkout_session.call_args[1]
        assert session_kwargs["idempotency_key"] == f"booking:{booking.public_id}:checkout:cs_old"
        event = (
            db_session.query(BookingLifecycleEvent)
            .filter(BookingLifecycleEvent.event_type == "checkout_superseded")
            .one()
        )
        assert event.event_metadata == {"previous_session_id": "cs_old", "session_id": "cs_test_1"}

    def test_completed_session_is_not_replaced(self, db_session, ctx, processor, make_booking):
        booking = make_booking(status="pending_card", stripe_checkout_session_id="cs_done", stripe_customer_id="cus_1")
        processor.retrieve_checkout_session.return_value = MagicMock(status="complete")

        result = PaymentOrchestrator(db_session, processor).create_checkout_session(
            ctx, booking.public_id, supersede=True
        )

        assert result["reused"] is True
        assert result["url"] is None
        processor.expire_checkout_session.assert_not_called()

    def test_card_saved_booking_has_no_checkout(self, db_session, ctx, processor, make_booking):
        booking = make_booking(status="card_saved")

        with pytest.raises(InvalidTransitionError):
            PaymentOrchestrator(db_session, processor).create_checkout_session(ctx, booking.public_id)

    def test_stripe_error_is_processor_unavailable(self, db_session, ctx, processor, make_booking):
        booking = make_booking(status="pending_card")
        processor.create_customer.side_effect = stripe.APIError("Stripe is down")

        with pytest.raises(ProcessorUnavailable):
            PaymentOrchestrator(db_session, processor).create_checkout_session(ctx, booking.public_id)

        db_session.refresh(booking)
        assert booking.stripe_customer_id is None

    def test_rejected_checkout_request_is_validation_error(self, db_session, ctx, processor, make_booking):
        booking = make_booking(status="pending_card")
        processor.create_setup_checkout_session.side_effect = stripe.InvalidRequestError(
            "Not a valid URL", "success_url"
        )

        with pytest.raises(ValidationError, match="Not a valid URL"):
            PaymentOrchestrator(db_session, processor).create_checkout_session(ctx, booking.public_id)

        db_session.refresh(booking)
        assert booking.status == "pending_card"
        assert booking.stripe_checkout_session_id is None


class TestPaymentEndpoints:
    def test_charge_endpoint_maps_decline_to_402(self, client, mock_processor, make_booking):
        booking = make_booking(status="completed", amount=15000, stripe_customer_id="cus_test_123")
        mock_processor.get_default_card.return_value = "pm_test_123"
        mock_processor.charge_saved_card.side_effect = card_error("card_declined")

        response = client.post(f"/bookings/{booking.public_id}/charge", json={})

        assert response.status_code == 402
        assert response.json()["code"] == "card_declined"

    def test_checkout_endpoint(self, client, mock_processor, make_booking):
        booking = make_booking(status="pending_card")
        mock_processor.create_customer.return_value = MagicMock(id="cus_new")
        mock_processor.create_setup_checkout_session.return_value = MagicMock(id="cs_1", url="https://checkout/cs_1")

        response = client.post("/payments/checkout-session", json={"bookingId": booking.public_id})

        assert response.status_code == 200
        assert response.json() == {"sessionId": "cs_1", "url": "https://checkout/cs_1", "reused": False, "status": "open"}

    def test_payment_intents_listing(self, client, mock_processor, make_booking):
        booking = make_booking(status="completed", amount=15000, stripe_customer_id="cus_test_123")
        mock_processor.get_default_card.return_value = "pm_test_123"
        mock_processor.charge_saved_card.return_value = make_intent()
        client.post(f"/bookings/{booking.public_id}/charge", json={})

        response = client.get(f"/bookings/{booking.public_id}/payment-intents")

        assert [r["stripePaymentIntentId"] for r in response.json()] == ["pi_test_123"]
        assert response.json()[0]["status"] == "succeeded"


def test_build_payment_link():
    link = build_payment_link("pi_1", "pi_1_secret")

    assert link.endswith("/complete-payment?payment_intent=pi_1&payment_intent_client_secret=pi_1_secret")
