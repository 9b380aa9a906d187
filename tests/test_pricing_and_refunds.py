"""
Tests for ticket pricing and the refund policy.

Verifies that:
- PricingPolicy picks the buyer group's price and falls back to guests
- Pickup is added only when requested, and the ticket total always
  equals price plus the included pickup price
- RefundPolicy honours the notice window, the percentage and the
  enable switch, and never returns more than is refundable
"""

from datetime import datetime, timedelta, timezone

import pytest

from app.models.ticket import Ticket
from app.services.payment.provider_interface import EventInfo
from app.services.ticketing.pricing import PricingPolicy
from app.services.ticketing.refund_policy import RefundPolicy


def _make_event(**overrides):
    defaults = {
        "id": "evt_1",
        "name": "Summer Night",
        "starts_at": datetime(2026, 8, 1, 20, 0, tzinfo=timezone.utc),
        "capacity": 100,
        "group_prices": {"guests": 3500, "plus": 2500},
    }
    defaults.update(overrides)
    return EventInfo(**defaults)


class TestPricingPolicy:
    """Tests for PricingPolicy."""

    def setup_method(self):
        self.policy = PricingPolicy(pickup_price=1000)
        self.event = _make_event()

    def test_guest_price_without_pickup(self):
        quote = self.policy.quote(self.event, "guests", includes_pickup=False)

        assert quote.price == 3500
        assert quote.pickup_price == 0
        assert quote.total == 3500

    def test_pickup_added_to_total(self):
        """35.00 ticket + 10.00 pickup = 45.00."""
        quote = self.policy.quote(self.event, "guests", includes_pickup=True)

        assert quote.price == 3500
        assert quote.pickup_price == 1000
        assert quote.total == 4500

    def test_group_specific_price(self):
        assert self.policy.quote(self.event, "plus", False).price == 2500

    def test_unknown_group_pays_default_price(self):
        assert self.policy.quote(self.event, "bubble", False).price == 3500

    def test_event_without_any_usable_price(self):
        event = _make_event(group_prices={"plus": 2500})

        with pytest.raises(ValueError):
            self.policy.quote(event, "guests", False)


class TestTicketTotal:
    """The stored total is always derived from the price inputs."""

    def test_total_on_construction(self):
        ticket = Ticket(user_id="u", event_id="e", price=3500, includes_pickup=True, pickup_price=1000)
        assert ticket.total_amount == 4500

    def test_pickup_price_ignored_when_not_included(self):
        ticket = Ticket(user_id="u", event_id="e", price=3500, includes_pickup=False, pickup_price=1000)
        assert ticket.total_amount == 3500

    def test_recalculate_after_change(self):
        ticket = Ticket(user_id="u", event_id="e", price=3500)
        ticket.includes_pickup = True
        ticket.pickup_price = 1000
        ticket.recalculate_total()

        assert ticket.total_amount == 4500

    def test_setting_provider_ids_clears_other_provider(self):
        ticket = Ticket(user_id="u", event_id="e", price=3500)
        ticket.set_provider_ids("stripe", stripe_session_id="cs_1")
        ticket.set_provider_ids("paypal", paypal_order_id="ORDER-1")

        assert ticket.payment_provider == "paypal"
        assert ticket.paypal_order_id == "ORDER-1"
        assert ticket.stripe_session_id is None
        assert ticket.checkout_reference == "ORDER-1"

    def test_foreign_provider_field_rejected(self):
        ticket = Ticket(user_id="u", event_id="e", price=3500)

        with pytest.raises(ValueError):
            ticket.set_provider_ids("stripe", paypal_order_id="ORDER-1")


class TestRefundPolicy:
    """Tests for RefundPolicy."""

    def setup_method(self):
        self.policy = RefundPolicy(enabled=True, notice_days=14, percent=50)
        self.now = datetime(2026, 7, 1, 12, 0, tzinfo=timezone.utc)
        self.ticket = Ticket(user_id="u", event_id="e", price=3500)

    # ------------------------------------------------------------------ #
    # Eligibility window
    # ------------------------------------------------------------------ #

    def test_refund_twenty_days_before(self):
        """35.00 ticket, 20 days out, 14 days / 50% -> 17.50."""
        decision = self.policy.evaluate(self.ticket, self.now + timedelta(days=20), self.now)

        assert decision.eligible is True
        assert decision.amount == 1750
        assert decision.days_until_event == 20

    def test_exactly_at_notice_boundary(self):
        decision = self.policy.evaluate(self.ticket, self.now + timedelta(days=14), self.now)
        assert decision.eligible is True

    def test_inside_notice_window(self):
        decision = self.policy.evaluate(
            self.ticket, self.now + timedelta(days=13, hours=23), self.now
        )

        assert decision.eligible is False
        assert decision.amount == 0

    def test_disabled_policy_never_refunds(self):
        policy = RefundPolicy(enabled=False, notice_days=14, percent=50)
        decision = policy.evaluate(self.ticket, self.now + timedelta(days=60), self.now)

        assert decision.eligible is False

    # ------------------------------------------------------------------ #
    # Amounts
    # ------------------------------------------------------------------ #

    def test_amount_rounds_down(self):
        ticket = Ticket(user_id="u", event_id="e", price=3333)
        decision = self.policy.evaluate(ticket, self.now + timedelta(days=30), self.now)

        assert decision.amount == 1666

    def test_already_refunded_part_is_excluded(self):
        self.ticket.refunded_amount = 3000
        decision = self.policy.evaluate(self.ticket, self.now + timedelta(days=30), self.now)

        assert decision.amount == 250
        assert decision.amount + self.ticket.refunded_amount <= self.ticket.total_amount

    def test_naive_event_date_treated_as_utc(self):
        starts_at = (self.now + timedelta(days=20)).replace(tzinfo=None)
        decision = self.policy.evaluate(self.ticket, starts_at, self.now)

        assert decision.eligible is True

    def test_invalid_percent_rejected(self):
        with pytest.raises(ValueError):
            RefundPolicy(enabled=True, notice_days=14, percent=150)
