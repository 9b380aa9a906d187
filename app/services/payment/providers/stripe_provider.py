# app/services/payment/providers/stripe_provider.py
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

import stripe

from ..provider_interface import (
    BuyerInfo,
    CheckoutClosed,
    EventInfo,
    PaymentError,
    PaymentProviderInterface,
    TicketLedger,
)

logger = logging.getLogger(__name__)


@dataclass
class StripeConfig:
    """Configuration for Stripe provider."""
    secret_key: str
    webhook_secret: str
    success_url: str
    cancel_url: str
    currency: str = "EUR"
    payment_methods: List[str] = field(default_factory=lambda: ["card"])
    max_retries: int = 2
    # Seconds a signed webhook timestamp may lag behind our clock
    webhook_tolerance: int = 300


# Checkout session payment_status values that mean the money is captured
PAID_SESSION_STATES = {"paid", "no_payment_required"}


def build_stripe_client(config: StripeConfig) -> stripe.StripeClient:
    """Create a Stripe client bound to this config's key only."""
    return stripe.StripeClient(
        config.secret_key,
        max_network_retries=config.max_retries,
    )


def construct_stripe_event(
    payload: bytes, signature: str, config: StripeConfig
) -> Dict[str, Any]:
    """
    Verify a Stripe webhook delivery and return the decoded event.

    The signature (HMAC-SHA256 over timestamp and raw body, compared in
    constant time by the Stripe SDK) is checked before any field is read.
    Raises stripe.SignatureVerificationError on mismatch.
    """
    stripe.Webhook.construct_event(
        payload,
        signature,
        config.webhook_secret,
        tolerance=config.webhook_tolerance,
    )
    return json.loads(payload)


def _stripe_id(value) -> str:
    """Expandable fields arrive either as an id string or as an object."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return value.get("id") or ""


class StripeProvider(PaymentProviderInterface):
    """
    Stripe Checkout implementation of PaymentProviderInterface.

    Stripe captures the charge when the checkout session completes, so
    polling only has to look at the session's payment_status.
    """

    def __init__(
        self,
        config: StripeConfig,
        ledger: TicketLedger,
        client: stripe.StripeClient,
    ):
        super().__init__(ledger)
        self._config = config
        self._client = client

    @property
    def provider_name(self) -> str:
        return "stripe"

    def create_checkout(
        self, ticket, event: EventInfo, buyer: BuyerInfo, total_amount: int
    ) -> str:
        currency = self._config.currency.lower()
        pickup_amount = ticket.pickup_price if ticket.includes_pickup else 0

        line_items = [
            {
                "price_data": {
                    "currency": currency,
                    "product_data": {
                        "name": event.name,
                        "description": f"Ticket for {event.name}",
                    },
                    "unit_amount": total_amount - pickup_amount,
                },
                "quantity": 1,
            }
        ]
        if ticket.includes_pickup:
            line_items.append(
                {
                    "price_data": {
                        "currency": currency,
                        "product_data": {
                            "name": "Pickup service",
                            "description": f"Pickup from: {ticket.pickup_address}",
                        },
                        "unit_amount": pickup_amount,
                    },
                    "quantity": 1,
                }
            )

        metadata = {
            "ticket_id": ticket.id,
            "user_id": buyer.id,
            "event_id": event.id,
        }
        params: Dict[str, Any] = {
            "mode": "payment",
            "line_items": line_items,
            "success_url": (
                f"{self._config.success_url}?ticket_id={ticket.id}"
                "&session_id={CHECKOUT_SESSION_ID}"
            ),
            "cancel_url": f"{self._config.cancel_url}?ticket_id={ticket.id}",
            "client_reference_id": ticket.id,
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
        }
        if buyer.email:
            params["customer_email"] = buyer.email
        if self._config.payment_methods:
            params["payment_method_types"] = list(self._config.payment_methods)

        try:
            session = self._client.checkout.sessions.create(params=params)
        except stripe.StripeError as e:
            logger.error(f"Stripe error creating checkout for ticket {ticket.id}: {e}")
            raise PaymentError(
                code="PROVIDER_ERROR",
                message="Payment service temporarily unavailable",
                retryable=True,
            )

        self._ledger.attach_checkout_reference(
            ticket, "stripe", stripe_session_id=session.id
        )
        logger.info(f"Created Stripe session {session.id} for ticket {ticket.id}")
        return session.url

    def process_refund(self, ticket, amount: int) -> None:
        if not ticket.stripe_payment_intent_id:
            raise PaymentError(
                code="MISSING_PAYMENT_REFERENCE",
                message="No Stripe payment intent ID found",
            )
        if amount <= 0:
            raise PaymentError(code="INVALID_REFUND", message="Refund amount must be positive")

        try:
            refund = self._client.refunds.create(
                params={
                    "payment_intent": ticket.stripe_payment_intent_id,
                    "amount": amount,
                    "metadata": {"ticket_id": ticket.id},
                },
                options={"idempotency_key": f"refund_{ticket.id}_{amount}"},
            )
        except stripe.InvalidRequestError as e:
            logger.error(f"Invalid refund request for ticket {ticket.id}: {e}")
            raise PaymentError(code="INVALID_REFUND", message=str(e), retryable=False)
        except stripe.StripeError as e:
            logger.error(f"Error creating refund for ticket {ticket.id}: {e}")
            raise PaymentError(
                code="PROVIDER_ERROR",
                message="Could not process refund",
                retryable=True,
            )

        if refund.status in ("failed", "canceled"):
            raise PaymentError(
                code="REFUND_FAILED",
                message=f"Stripe refund {refund.id} is {refund.status}",
            )
        logger.info(f"Refunded {amount} cents for ticket {ticket.id} (refund {refund.id})")

    def check_and_capture_order(self, ticket) -> bool:
        if not ticket.stripe_session_id:
            return False

        try:
            session = self._client.checkout.sessions.retrieve(ticket.stripe_session_id)
        except stripe.StripeError as e:
            raise PaymentError(
                code="PROVIDER_ERROR",
                message=f"Could not retrieve Stripe session: {e}",
                retryable=True,
            )

        if session.get("payment_status") in PAID_SESSION_STATES:
            payment_intent_id = _stripe_id(session.get("payment_intent")) or session.id
            self._ledger.confirm_payment(ticket.id, payment_intent_id)
            return True

        if session.get("status") == "expired":
            raise CheckoutClosed(session.id, "expired")

        return False
