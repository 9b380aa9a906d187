# app/services/payment/provider_interface.py
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Optional


@dataclass
class EventInfo:
    """What the ticketing core needs to know about an event."""
    id: str
    name: str
    starts_at: datetime
    capacity: int
    # Base price in cents per buyer group, e.g. {"guests": 3500, "plus": 2500}
    group_prices: dict
    # None or "all" means every group may buy
    allowed_group: Optional[str] = None
    is_active: bool = True


@dataclass
class BuyerInfo:
    """What the ticketing core needs to know about a buyer."""
    id: str
    email: str
    group: str
    name: str = ""


class PaymentError(Exception):
    """Custom exception for payment errors."""

    def __init__(self, code: str, message: str, retryable: bool = False):
        self.code = code
        self.message = message
        self.retryable = retryable
        super().__init__(message)


class CheckoutClosed(Exception):
    """The remote checkout ended without payment (expired, voided, cancelled)."""

    def __init__(self, reference: str, remote_status: str):
        self.reference = reference
        self.remote_status = remote_status
        super().__init__(f"Checkout {reference} is closed ({remote_status})")


class TicketLedger(ABC):
    """
    The write side that payment providers report back into.

    Providers never touch ticket status themselves; they record correlation
    ids and hand confirmed payments to the ledger, which applies the guarded
    transition.
    """

    @abstractmethod
    def attach_checkout_reference(self, ticket, provider: str, **ids) -> None:
        """Persist provider correlation ids onto the ticket."""

    @abstractmethod
    def confirm_payment(self, ticket_id: str, correlation_id: str):
        """Apply the paid transition for a confirmed payment."""


class PaymentProviderInterface(ABC):
    """
    Capability interface implemented once per payment back-end.

    Stripe captures automatically when checkout succeeds; PayPal needs an
    explicit capture after the buyer approves. ``check_and_capture_order``
    hides that difference so callers never branch on the provider.
    """

    def __init__(self, ledger: TicketLedger):
        self._ledger = ledger

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Provider code identifier ('stripe' or 'paypal')."""

    @abstractmethod
    def create_checkout(
        self, ticket, event: EventInfo, buyer: BuyerInfo, total_amount: int
    ) -> str:
        """
        Create the remote checkout and return the URL to send the buyer to.

        The correlation id is persisted on the ticket before the URL is
        returned.
        """

    @abstractmethod
    def process_refund(self, ticket, amount: int) -> None:
        """Refund ``amount`` cents of the ticket's captured payment."""

    @abstractmethod
    def check_and_capture_order(self, ticket) -> bool:
        """
        Poll the remote checkout once.

        Returns True when the payment is (now) captured and the paid
        transition was applied. Returns False when nothing has happened yet.
        Raises CheckoutClosed when the checkout can no longer be paid.
        """
