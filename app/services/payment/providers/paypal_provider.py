# app/services/payment/providers/paypal_provider.py
import logging
from dataclasses import dataclass

from app.models.ticket import CONFIRMABLE_STATUSES
from ..provider_interface import (
    BuyerInfo,
    CheckoutClosed,
    EventInfo,
    PaymentError,
    PaymentProviderInterface,
    TicketLedger,
)
from .paypal_client import PayPalClient, extract_capture_id, to_paypal_value

logger = logging.getLogger(__name__)


@dataclass
class PayPalConfig:
    """Configuration for PayPal provider."""
    client_id: str
    secret: str
    api_base: str
    success_url: str
    cancel_url: str
    currency: str = "EUR"
    brand_name: str = ""
    webhook_id: str = ""


# Order states that can never be paid any more
CLOSED_ORDER_STATES = {"VOIDED", "EXPIRED", "CANCELLED"}


class PayPalProvider(PaymentProviderInterface):
    """
    PayPal Orders v2 implementation of PaymentProviderInterface.

    Unlike Stripe, an approved PayPal order holds no money until we capture
    it. Capturing happens in check_and_capture_order, which both the poller
    and the CHECKOUT.ORDER.APPROVED webhook use.
    """

    def __init__(self, config: PayPalConfig, ledger: TicketLedger, client: PayPalClient):
        super().__init__(ledger)
        self._config = config
        self._client = client

    @property
    def provider_name(self) -> str:
        return "paypal"

    def create_checkout(
        self, ticket, event: EventInfo, buyer: BuyerInfo, total_amount: int
    ) -> str:
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": ticket.id,
                    # Echoed back on captures, so webhooks can find the ticket
                    "custom_id": ticket.id,
                    "description": f"Ticket for {event.name}",
                    "amount": {
                        "currency_code": self._config.currency,
                        "value": to_paypal_value(total_amount),
                    },
                }
            ],
            "application_context": {
                "brand_name": self._config.brand_name,
                "landing_page": "LOGIN",
                "shipping_preference": "NO_SHIPPING",
                "user_action": "PAY_NOW",
                "return_url": f"{self._config.success_url}?ticket_id={ticket.id}",
                "cancel_url": f"{self._config.cancel_url}?ticket_id={ticket.id}",
            },
        }

        try:
            order = self._client.create_order(payload)
        except PaymentError as e:
            logger.error(f"PayPal error creating order for ticket {ticket.id}: {e.message}")
            raise

        order_id = order.get("id")
        if not order_id:
            raise PaymentError(code="INVALID_RESPONSE", message="PayPal returned no order id")

        self._ledger.attach_checkout_reference(ticket, "paypal", paypal_order_id=order_id)

        approval_url = next(
            (
                link.get("href")
                for link in order.get("links") or []
                if link.get("rel") in ("approve", "payer-action")
            ),
            None,
        )
        if not approval_url:
            raise PaymentError(
                code="NO_APPROVAL_URL",
                message=f"PayPal order {order_id} has no approval link",
            )

        logger.info(f"Created PayPal order {order_id} for ticket {ticket.id}")
        return approval_url

    def process_refund(self, ticket, amount: int) -> None:
        if not ticket.paypal_capture_id:
            raise PaymentError(
                code="MISSING_PAYMENT_REFERENCE",
                message="No PayPal capture ID found",
            )
        if amount <= 0:
            raise PaymentError(code="INVALID_REFUND", message="Refund amount must be positive")

        refund = self._client.refund_capture(
            ticket.paypal_capture_id,
            to_paypal_value(amount),
            self._config.currency,
            request_id=f"refund-{ticket.id}-{amount}",
        )
        status = refund.get("status")
        if status not in ("COMPLETED", "PENDING"):
            raise PaymentError(
                code="REFUND_FAILED",
                message=f"PayPal refund for ticket {ticket.id} returned status {status}",
            )
        logger.info(f"Refunded {amount} cents for ticket {ticket.id} (PayPal refund {refund.get('id')})")

    def check_and_capture_order(self, ticket) -> bool:
        order_id = ticket.paypal_order_id
        if not order_id:
            return False

        order = self._client.get_order(order_id)
        status = order.get("status")

        if status == "APPROVED":
            if ticket.status not in CONFIRMABLE_STATUSES:
                logger.warning(
                    f"Not capturing approved PayPal order {order_id}: "
                    f"ticket {ticket.id} is {ticket.status or 'deleted'}"
                )
                return False
            order = self._capture(order_id)
            status = order.get("status")

        if status == "COMPLETED":
            capture_id = extract_capture_id(order) or ticket.paypal_capture_id or order_id
            self._ledger.confirm_payment(ticket.id, capture_id)
            return True

        if status in CLOSED_ORDER_STATES:
            raise CheckoutClosed(order_id, status)

        return False

    def _capture(self, order_id: str) -> dict:
        try:
            captured = self._client.capture_order(order_id)
        except PaymentError as e:
            if e.code != "ORDER_ALREADY_CAPTURED":
                raise
            # Webhook and poller raced to capture; read back the winner's result
            return self._client.get_order(order_id)

        logger.info(f"Captured PayPal order {order_id}: {captured.get('status')}")
        return captured
