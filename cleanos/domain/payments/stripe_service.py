"""Stripe service - Thin wrapper over the Stripe SDK for card setup and off-session charges"""

import logging
from typing import Optional

import stripe

from ...config import STRIPE_CURRENCY, STRIPE_SECRET_KEY

logger = logging.getLogger(__name__)


class StripeService:
    """Service for Stripe API operations"""

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or STRIPE_SECRET_KEY
        self.currency = STRIPE_CURRENCY
        self.client = None

        if not self.api_key:
            logger.warning("STRIPE_SECRET_KEY not set; payment endpoints will fail until configured")
        else:
            stripe.api_key = self.api_key
            self.client = stripe
            logger.info("Stripe client initialized")

    def is_available(self) -> bool:
        """Check if the Stripe client is configured"""
        return self.client is not None

    def _require_client(self):
        if not self.client:
            raise RuntimeError("Stripe client not initialized")
        return self.client

    def create_customer(self, email: str, name: Optional[str], metadata: dict, idempotency_key: str):
        client = self._require_client()
        return client.Customer.create(
            email=email,
            name=name,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )

    def create_setup_checkout_session(
        self,
        customer_id: str,
        success_url: str,
        cancel_url: str,
        metadata: dict,
        idempotency_key: Optional[str] = None,
    ):
        """Hosted checkout that collects a card without charging it"""
        client = self._require_client()
        return client.checkout.Session.create(
            mode="setup",
            customer=customer_id,
            payment_method_types=["card"],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            setup_intent_data={"metadata": metadata},
            idempotency_key=idempotency_key,
        )

    def retrieve_checkout_session(self, session_id: str):
        client = self._require_client()
        return client.checkout.Session.retrieve(session_id)

    def expire_checkout_session(self, session_id: str):
        client = self._require_client()
        return client.checkout.Session.expire(session_id)

    def get_default_card(self, customer_id: str) -> Optional[str]:
        """Id of the customer's saved card, if any"""
        client = self._require_client()
        methods = client.PaymentMethod.list(customer=customer_id, type="card", limit=1)
        if not methods.data:
            return None
        return methods.data[0].id

    def charge_saved_card(
        self,
        customer_id: str,
        payment_method_id: str,
        amount: int,
        description: str,
        metadata: dict,
        idempotency_key: str,
    ):
        """Off-session, immediately confirmed charge against a saved card"""
        client = self._require_client()
        return client.PaymentIntent.create(
            amount=amount,
            currency=self.currency,
            customer=customer_id,
            payment_method=payment_method_id,
            off_session=True,
            confirm=True,
            description=description,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )


stripe_service = StripeService()


def get_stripe_service() -> StripeService:
    """Dependency injection for the Stripe service singleton"""
    return stripe_service
