# app/models/ticket.py
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text

from app.db.base_class import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value):
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class TicketStatus(str, enum.Enum):
    PENDING = "pending"
    PENDING_CANCELLATION = "pending_cancellation"
    PAID = "paid"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# Statuses that occupy the one-ticket-per-user-per-event slot and a seat.
ACTIVE_STATUSES = (
    TicketStatus.PENDING.value,
    TicketStatus.PENDING_CANCELLATION.value,
    TicketStatus.PAID.value,
)
# Statuses a payment confirmation may move to paid.
CONFIRMABLE_STATUSES = (
    TicketStatus.PENDING.value,
    TicketStatus.PENDING_CANCELLATION.value,
)
TERMINAL_STATUSES = (
    TicketStatus.CANCELLED.value,
    TicketStatus.REFUNDED.value,
)

# Provider correlation columns, grouped per provider.
PROVIDER_ID_FIELDS = {
    "stripe": ("stripe_session_id", "stripe_payment_intent_id"),
    "paypal": ("paypal_order_id", "paypal_capture_id"),
}


class Ticket(Base):
    """A single seat bought by one user for one event.

    Users and events live in other services; only their ids are stored.
    All amounts are in the smallest currency unit (cents).
    """
    __tablename__ = "tickets"

    id = Column(
        String, primary_key=True, default=lambda: f"tkt_{uuid.uuid4().hex[:12]}"
    )
    user_id = Column(String, nullable=False, index=True)
    event_id = Column(String, nullable=False, index=True)

    # Status: 'pending', 'pending_cancellation', 'paid', 'cancelled', 'refunded'
    status = Column(String(50), nullable=False, default=TicketStatus.PENDING.value)

    # Pricing
    currency = Column(String(3), nullable=False, default="EUR")
    price = Column(Integer, nullable=False)
    includes_pickup = Column(Boolean, nullable=False, default=False)
    pickup_price = Column(Integer, nullable=False, default=0)
    pickup_address = Column(Text, nullable=True)
    total_amount = Column(Integer, nullable=False)

    # Payment linkage
    payment_provider = Column(String(20), nullable=True)
    stripe_session_id = Column(String(255), nullable=True, index=True)
    stripe_payment_intent_id = Column(String(255), nullable=True)
    paypal_order_id = Column(String(255), nullable=True, index=True)
    paypal_capture_id = Column(String(255), nullable=True)

    # Refund bookkeeping
    refunded_amount = Column(Integer, nullable=False, default=0)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )
    # Doubles as the grace-period tombstone while pending_cancellation.
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_tickets_user_event_status", "user_id", "event_id", "status"),
    )

    def __init__(self, **kwargs):
        kwargs.setdefault("pickup_price", 0)
        kwargs.setdefault("includes_pickup", False)
        kwargs.setdefault("refunded_amount", 0)
        super().__init__(**kwargs)
        self.recalculate_total()

    def recalculate_total(self) -> int:
        """Derive total_amount from the price inputs."""
        self.total_amount = self.price + (self.pickup_price if self.includes_pickup else 0)
        return self.total_amount

    def set_provider_ids(self, provider: str, **ids) -> None:
        """Attach one provider's correlation ids and clear the other group."""
        if provider not in PROVIDER_ID_FIELDS:
            raise ValueError(f"Unknown payment provider '{provider}'")
        for name, fields in PROVIDER_ID_FIELDS.items():
            if name == provider:
                continue
            for field in fields:
                setattr(self, field, None)
        for field, value in ids.items():
            if field not in PROVIDER_ID_FIELDS[provider]:
                raise ValueError(f"{field} is not a {provider} field")
            setattr(self, field, value)
        self.payment_provider = provider

    @property
    def checkout_reference(self):
        """The id of the remote checkout (Stripe session or PayPal order)."""
        if self.payment_provider == "paypal":
            return self.paypal_order_id
        return self.stripe_session_id

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def refundable_amount(self) -> int:
        return self.total_amount - (self.refunded_amount or 0)
