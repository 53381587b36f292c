"""Stripe Service - payment gateway calls for the annual registered office fee.

This service handles:
- Creating the gateway customer for a new registration
- Creating checkout sessions for the fixed annual fee
- Issuing refunds (idempotent via the gateway's idempotency key)

The lifecycle engine depends on the PaymentGateway interface only, so tests can
inject a fake and the engine never talks to the network directly.
"""
import stripe
import os
import logging
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any

from services.errors import ExternalServiceFailure

logger = logging.getLogger(__name__)

# Initialize Stripe (prefer STRIPE_SECRET_KEY; fallback STRIPE_API_KEY)
stripe.api_key = (os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY") or "").strip()

ANNUAL_FEE_PENCE = int(os.getenv("ANNUAL_FEE_PENCE", "7500"))
FEE_CURRENCY = os.getenv("FEE_CURRENCY", "gbp")
PRODUCT_NAME = os.getenv("FEE_PRODUCT_NAME", "Registered Office Service")
PRODUCT_DESCRIPTION = os.getenv("FEE_PRODUCT_DESCRIPTION", "Annual registered office address service")


def frontend_origin() -> str:
    return (os.getenv("FRONTEND_ORIGIN") or "http://localhost:3000").strip().rstrip("/")


class PaymentGateway(ABC):
    """Outbound payment gateway contract."""

    @abstractmethod
    async def create_customer(self, email: str, metadata: Dict[str, str]) -> str:
        """Create a gateway customer and return its reference."""

    @abstractmethod
    async def create_checkout_session(
        self,
        customer_id: str,
        account_id: str,
        subscription_id: str,
        origin_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a checkout session for the annual fee. Returns checkout_url and session_id."""

    @abstractmethod
    async def request_refund(self, transaction_id: str, idempotency_key: str, amount: Optional[int] = None) -> str:
        """Refund a captured payment. Returns the refund reference."""


class StripeService(PaymentGateway):
    """Stripe implementation of the payment gateway."""

    def _require_key(self):
        if not (stripe.api_key or "").strip():
            raise ExternalServiceFailure("stripe", "STRIPE_SECRET_KEY or STRIPE_API_KEY is not set")

    async def create_customer(self, email: str, metadata: Dict[str, str]) -> str:
        self._require_key()
        try:
            customer = stripe.Customer.create(email=email, metadata=metadata)
        except stripe.StripeError as e:
            logger.error(f"Stripe customer creation failed for {email}: {e}")
            raise ExternalServiceFailure("stripe", f"customer creation failed: {e}") from e
        logger.info(f"Stripe customer created: {customer.id}")
        return customer.id

    async def create_checkout_session(
        self,
        customer_id: str,
        account_id: str,
        subscription_id: str,
        origin_url: Optional[str] = None,
    ) -> Dict[str, Any]:
        self._require_key()

        base = (origin_url or frontend_origin()).strip().rstrip("/")
        if not base.startswith("http://") and not base.startswith("https://"):
            raise ExternalServiceFailure("stripe", f"invalid redirect base URL: {base!r}")

        try:
            session = stripe.checkout.Session.create(
                customer=customer_id,
                mode="payment",
                payment_method_types=["card", "bacs_debit"],
                line_items=[
                    {
                        "price_data": {
                            "currency": FEE_CURRENCY,
                            "product_data": {
                                "name": PRODUCT_NAME,
                                "description": PRODUCT_DESCRIPTION,
                            },
                            "unit_amount": ANNUAL_FEE_PENCE,
                        },
                        "quantity": 1,
                    }
                ],
                # subscription_id is MANDATORY for webhook reconciliation
                metadata={"account_id": account_id, "subscription_id": subscription_id},
                payment_intent_data={
                    "metadata": {"account_id": account_id, "subscription_id": subscription_id},
                },
                success_url=f"{base}/dashboard/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
                cancel_url=f"{base}/dashboard/payment/cancel",
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout error for subscription {subscription_id}: {e}")
            raise ExternalServiceFailure("stripe", f"checkout session failed: {e}") from e

        logger.info(f"Checkout session created for subscription {subscription_id}: {session.id}")
        return {"checkout_url": session.url, "session_id": session.id}

    async def request_refund(self, transaction_id: str, idempotency_key: str, amount: Optional[int] = None) -> str:
        self._require_key()
        params: Dict[str, Any] = {"payment_intent": transaction_id}
        if amount:
            params["amount"] = amount
        try:
            refund = stripe.Refund.create(idempotency_key=idempotency_key, **params)
        except stripe.StripeError as e:
            logger.error(f"Stripe refund failed for {transaction_id}: {e}")
            raise ExternalServiceFailure("stripe", f"refund failed: {e}") from e
        logger.info(f"Stripe refund requested for {transaction_id}: {refund.id}")
        return refund.id


stripe_service = StripeService()
