# app/services/ticketing/refund_policy.py
from dataclasses import dataclass
from datetime import datetime

from app.models.ticket import ensure_utc


@dataclass(frozen=True)
class RefundDecision:
    eligible: bool
    amount: int = 0
    days_until_event: int = 0
    reason: str = ""


class RefundPolicy:
    """
    Refund eligibility for paid tickets.

    A ticket cancelled at least ``notice_days`` whole days before the event
    gets ``percent`` of what is still refundable back, rounded down to the
    cent so the refund never exceeds the charge.
    """

    def __init__(self, enabled: bool, notice_days: int, percent: int):
        if not 0 <= percent <= 100:
            raise ValueError("percent must be between 0 and 100")
        self.enabled = enabled
        self.notice_days = notice_days
        self.percent = percent

    def evaluate(self, ticket, event_starts_at: datetime, now: datetime) -> RefundDecision:
        days_until_event = (ensure_utc(event_starts_at) - ensure_utc(now)).days

        if not self.enabled:
            return RefundDecision(False, 0, days_until_event, "refunds are disabled")
        if days_until_event < self.notice_days:
            return RefundDecision(
                False,
                0,
                days_until_event,
                f"refunds require at least {self.notice_days} days notice",
            )

        amount = ticket.refundable_amount * self.percent // 100
        if amount <= 0:
            return RefundDecision(False, 0, days_until_event, "nothing left to refund")
        return RefundDecision(True, amount, days_until_event)
