# app/services/ticketing/ticket_service.py
"""
Ticket Lifecycle Service

Owns every status change of a ticket:
- purchase (pending + provider checkout)
- payment confirmation from webhooks, pollers and the buyer's return
- cancellation with grace period, refunds and admin overrides

Three writers race on the same row: the user, provider webhooks and the
reconciliation poller. All of them end up in CRUDTicket.transition, so a
late or duplicated message is a zero-row update instead of a corruption.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from app.crud.ticket_crud import ticket_crud
from app.models.ticket import (
    ACTIVE_STATUSES,
    CONFIRMABLE_STATUSES,
    PROVIDER_ID_FIELDS,
    Ticket,
    TicketStatus,
    ensure_utc,
)
from app.services.payment.provider_interface import (
    CheckoutClosed,
    PaymentError,
    PaymentProviderInterface,
    TicketLedger,
)
from .errors import (
    CheckoutFailed,
    InvalidTransition,
    RefundFailed,
    RefundNotEligible,
    TicketNotFound,
    ValidationFailed,
)
from .refund_policy import RefundDecision

logger = logging.getLogger(__name__)

OPEN_GROUPS = (None, "", "all")


class ConfirmOutcome(str, enum.Enum):
    CONFIRMED = "confirmed"
    REACTIVATED = "reactivated"
    ALREADY_PAID = "already_paid"
    ORPHANED = "orphaned"


class CancellationOutcome(str, enum.Enum):
    DELETED = "deleted"
    GRACE_PERIOD = "pending_cancellation"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


@dataclass
class CancellationResult:
    ticket_id: str
    outcome: CancellationOutcome
    status: Optional[str]
    refunded_amount: int = 0


@dataclass
class EventCancellationSummary:
    event_id: str
    cancelled: int = 0
    refunded: int = 0


class TicketService(TicketLedger):
    """Ticket lifecycle operations for one unit of work (one DB session)."""

    def __init__(self, db: Session, runtime):
        self.db = db
        self.runtime = runtime

    # ========================================
    # Provider plumbing
    # ========================================

    def provider_for(self, code: str) -> PaymentProviderInterface:
        return self.runtime.providers.get_provider(code, self)

    def attach_checkout_reference(self, ticket: Ticket, provider: str, **ids) -> None:
        ticket_crud.attach_provider_ids(self.db, ticket, provider, **ids)

    # ========================================
    # Purchase
    # ========================================

    def create_ticket(
        self,
        user_id: str,
        event_id: str,
        includes_pickup: bool = False,
        pickup_address: Optional[str] = None,
        payment_provider: str = "stripe",
    ) -> Tuple[Ticket, str]:
        """
        Create a pending ticket and its remote checkout.

        Returns the ticket and the URL the buyer has to visit. If the
        provider call fails nothing stays behind in the database.
        """
        if not self.runtime.providers.is_provider_available(payment_provider):
            raise ValidationFailed(
                "provider_unavailable",
                f"Payment provider '{payment_provider}' is not available",
            )

        event = self.runtime.events.get_event(event_id)
        if event is None or not event.is_active:
            raise ValidationFailed("event_not_found", f"Event {event_id} not found")

        buyer = self.runtime.users.get_buyer(user_id)
        if buyer is None:
            raise ValidationFailed("user_not_found", f"User {user_id} not found")

        if event.allowed_group not in OPEN_GROUPS and buyer.group != event.allowed_group:
            raise ValidationFailed(
                "group_not_permitted", "Event not available for your group"
            )

        pickup_address = (pickup_address or "").strip() or None
        if includes_pickup and not pickup_address:
            raise ValidationFailed(
                "pickup_address_required", "A pickup address is required for pickup service"
            )

        if ticket_crud.get_active_for_user_event(self.db, user_id, event_id):
            raise ValidationFailed(
                "duplicate_ticket", "You already have a ticket for this event"
            )

        if ticket_crud.count_seats_taken(self.db, event_id) >= event.capacity:
            raise ValidationFailed("event_fully_booked", "Event is fully booked")

        try:
            quote = self.runtime.pricing.quote(event, buyer.group, includes_pickup)
        except ValueError as e:
            raise ValidationFailed("price_unavailable", str(e))

        ticket = ticket_crud.create(
            self.db,
            Ticket(
                user_id=user_id,
                event_id=event_id,
                status=TicketStatus.PENDING.value,
                currency=self.runtime.currency,
                price=quote.price,
                includes_pickup=includes_pickup,
                pickup_price=quote.pickup_price,
                pickup_address=pickup_address if includes_pickup else None,
                payment_provider=payment_provider,
            ),
        )

        provider = self.provider_for(payment_provider)
        try:
            checkout_url = provider.create_checkout(ticket, event, buyer, ticket.total_amount)
        except PaymentError as e:
            self._discard(ticket.id)
            logger.error(f"Checkout for ticket {ticket.id} failed, ticket removed: {e.message}")
            raise CheckoutFailed(f"Could not start {payment_provider} checkout: {e.message}")
        except Exception:
            self._discard(ticket.id)
            raise

        logger.info(
            f"Created ticket {ticket.id} for user {user_id} / event {event_id} "
            f"({ticket.total_amount} {ticket.currency} via {payment_provider})"
        )
        self.runtime.audit.record(
            "ticket_created",
            user_id,
            ticket.id,
            {"total_amount": ticket.total_amount, "provider": payment_provider},
        )
        self.runtime.start_reconciliation(ticket)
        return ticket, checkout_url

    def _discard(self, ticket_id: str) -> None:
        self.db.rollback()
        ticket_crud.delete(self.db, ticket_id, (TicketStatus.PENDING.value,))

    def retry_checkout(self, ticket_id: str, user_id: str) -> str:
        """Issue a fresh checkout URL for a ticket that is still pending."""
        ticket = self._get_owned(ticket_id, user_id)
        if ticket.status != TicketStatus.PENDING.value:
            raise InvalidTransition(ticket.id, ticket.status, "retry checkout for")

        event = self.runtime.events.get_event(ticket.event_id)
        if event is None:
            raise ValidationFailed("event_not_found", f"Event {ticket.event_id} not found")
        buyer = self.runtime.users.get_buyer(user_id)
        if buyer is None:
            raise ValidationFailed("user_not_found", f"User {user_id} not found")

        provider_code = ticket.payment_provider or "stripe"
        if not self.runtime.providers.is_provider_available(provider_code):
            raise ValidationFailed(
                "provider_unavailable",
                f"Payment provider '{provider_code}' is not available",
            )

        try:
            checkout_url = self.provider_for(provider_code).create_checkout(
                ticket, event, buyer, ticket.total_amount
            )
        except PaymentError as e:
            raise CheckoutFailed(f"Could not restart {provider_code} checkout: {e.message}")

        logger.info(f"Restarted checkout for ticket {ticket.id}")
        self.runtime.start_reconciliation(ticket)
        return checkout_url

    # ========================================
    # Payment confirmation
    # ========================================

    def confirm_payment(self, ticket_id: str, correlation_id: str) -> ConfirmOutcome:
        """
        Move a ticket to paid after the provider reported the money captured.

        Safe to call any number of times from any source.
        """
        ticket = ticket_crud.get(self.db, ticket_id)
        if ticket is None:
            return self._orphaned(ticket_id, correlation_id, "ticket does not exist")
        was_cancelling = ticket.status == TicketStatus.PENDING_CANCELLATION.value

        now = self.runtime.clock()
        values = {"status": TicketStatus.PAID.value, "completed_at": now, "cancelled_at": None}
        if correlation_id:
            provider = ticket.payment_provider or "stripe"
            values[PROVIDER_ID_FIELDS[provider][1]] = correlation_id

        # One guard for both source statuses: a cancellation committing
        # between the read above and this update must not orphan the payment.
        changed = ticket_crud.transition(self.db, ticket_id, CONFIRMABLE_STATUSES, values)
        if changed:
            self.runtime.cancel_grace_period(ticket_id)
            outcome = ConfirmOutcome.REACTIVATED if was_cancelling else ConfirmOutcome.CONFIRMED
            return self._paid(ticket_id, outcome, correlation_id)

        self.db.expire_all()
        current = ticket_crud.get(self.db, ticket_id)
        if current is None:
            return self._orphaned(ticket_id, correlation_id, "ticket was deleted")
        if current.status == TicketStatus.PAID.value:
            logger.info(f"Ticket {ticket_id} already paid, ignoring duplicate confirmation")
            return ConfirmOutcome.ALREADY_PAID
        return self._orphaned(ticket_id, correlation_id, f"ticket is {current.status}")

    def _paid(self, ticket_id: str, outcome: ConfirmOutcome, correlation_id: str) -> ConfirmOutcome:
        self.db.expire_all()
        ticket = ticket_crud.get(self.db, ticket_id)
        logger.info(f"Ticket {ticket_id} paid ({outcome.value}, payment {correlation_id})")
        self.runtime.stop_reconciliation(ticket_id)
        self.runtime.audit.record(
            "payment_confirmed",
            None,
            ticket_id,
            {"outcome": outcome.value, "payment": correlation_id},
        )
        try:
            self.runtime.confirmations.ticket_confirmed(ticket)
        except Exception as e:
            logger.error(f"Failed to send confirmation for ticket {ticket_id}: {e}")
        return outcome

    def _orphaned(self, ticket_id: str, correlation_id: str, reason: str) -> ConfirmOutcome:
        logger.error(f"Payment {correlation_id} arrived for ticket {ticket_id}: {reason}")
        self.runtime.alerts.payment_without_ticket(ticket_id, correlation_id, reason)
        self.runtime.audit.record(
            "orphaned_payment", None, ticket_id, {"payment": correlation_id, "reason": reason}
        )
        return ConfirmOutcome.ORPHANED

    def proactive_confirm(self, ticket_id: str, user_id: str) -> str:
        """
        Poll the provider once on behalf of a buyer returning from checkout.

        Returns the ticket status afterwards.
        """
        ticket = self._get_owned(ticket_id, user_id)
        if ticket.status not in (
            TicketStatus.PENDING.value,
            TicketStatus.PENDING_CANCELLATION.value,
        ):
            return ticket.status

        try:
            self.provider_for(ticket.payment_provider or "stripe").check_and_capture_order(ticket)
        except (PaymentError, CheckoutClosed, ValueError) as e:
            logger.warning(f"Proactive check for ticket {ticket_id} failed: {e}")

        self.db.expire_all()
        current = ticket_crud.get(self.db, ticket_id)
        return current.status if current else TicketStatus.CANCELLED.value

    # ========================================
    # Cancellation & refunds
    # ========================================

    def request_cancellation(
        self, ticket_id: str, user_id: str, mode: str = "auto"
    ) -> CancellationResult:
        ticket = self._get_owned(ticket_id, user_id)
        result = self._cancel(ticket, mode)
        self.runtime.audit.record(
            "ticket_cancelled",
            user_id,
            ticket_id,
            {"mode": mode, "outcome": result.outcome.value, "refunded": result.refunded_amount},
        )
        return result

    def admin_cancel_ticket(self, ticket_id: str, mode: str = "auto") -> CancellationResult:
        """Cancel any ticket. Rate limiting and auditing are up to the caller."""
        ticket = ticket_crud.get(self.db, ticket_id)
        if ticket is None:
            raise TicketNotFound(ticket_id)
        return self._cancel(ticket, mode)

    def _cancel(self, ticket: Ticket, mode: str, retry: bool = True) -> CancellationResult:
        if ticket.status == TicketStatus.PENDING.value:
            result = self._cancel_pending(ticket)
        elif ticket.status == TicketStatus.PAID.value:
            result = self._cancel_paid(ticket, mode)
        else:
            raise InvalidTransition(ticket.id, ticket.status, "cancel")

        if result is not None:
            return result

        # Lost a race with another writer; act on whatever the ticket is now.
        self.db.expire_all()
        current = ticket_crud.get(self.db, ticket.id)
        if current is None:
            raise TicketNotFound(ticket.id)
        if not retry:
            raise InvalidTransition(current.id, current.status, "cancel")
        return self._cancel(current, mode, retry=False)

    def checkout_in_flight(self, ticket: Ticket) -> bool:
        """Whether the buyer may still be completing payment for ``ticket``."""
        if not ticket.checkout_reference:
            return False
        started = ensure_utc(ticket.updated_at or ticket.created_at)
        window = timedelta(minutes=self.runtime.checkout_in_flight_minutes)
        return self.runtime.clock() - started < window

    def _cancel_pending(self, ticket: Ticket) -> Optional[CancellationResult]:
        if not self.checkout_in_flight(ticket):
            if not ticket_crud.delete(self.db, ticket.id, (TicketStatus.PENDING.value,)):
                return None
            self.runtime.stop_reconciliation(ticket.id)
            logger.info(f"Deleted pending ticket {ticket.id} (no checkout in flight)")
            return CancellationResult(ticket.id, CancellationOutcome.DELETED, None)

        now = self.runtime.clock()
        changed = ticket_crud.transition(
            self.db,
            ticket.id,
            (TicketStatus.PENDING.value,),
            {"status": TicketStatus.PENDING_CANCELLATION.value, "cancelled_at": now},
        )
        if not changed:
            return None

        deadline = now + timedelta(seconds=self.runtime.grace_period_seconds)
        self.runtime.schedule_grace_period(ticket.id, deadline)
        logger.info(f"Ticket {ticket.id} pending cancellation until {deadline.isoformat()}")
        return CancellationResult(
            ticket.id,
            CancellationOutcome.GRACE_PERIOD,
            TicketStatus.PENDING_CANCELLATION.value,
        )

    def evaluate_refund(self, ticket: Ticket) -> RefundDecision:
        event = self.runtime.events.get_event(ticket.event_id)
        if event is None:
            return RefundDecision(False, reason="event no longer exists")
        return self.runtime.refunds.evaluate(ticket, event.starts_at, self.runtime.clock())

    def _cancel_paid(self, ticket: Ticket, mode: str) -> Optional[CancellationResult]:
        amount = 0
        if mode != "no_refund":
            decision = self.evaluate_refund(ticket)
            if decision.eligible:
                amount = decision.amount
            elif mode == "refund":
                raise RefundNotEligible(f"Ticket is not eligible for a refund: {decision.reason}")

        if amount:
            self._refund_with_provider(ticket, amount)

        now = self.runtime.clock()
        values = {"status": TicketStatus.CANCELLED.value, "cancelled_at": now}
        if amount:
            values["refunded_amount"] = Ticket.refunded_amount + amount
            values["refunded_at"] = now

        changed = ticket_crud.transition(
            self.db,
            ticket.id,
            (TicketStatus.PAID.value,),
            values,
            Ticket.refunded_amount + amount <= Ticket.total_amount,
        )
        if not changed:
            if amount:
                logger.critical(
                    f"Refunded {amount} for ticket {ticket.id} but could not mark it cancelled"
                )
            return None

        logger.info(f"Cancelled paid ticket {ticket.id} (refund {amount})")
        return CancellationResult(
            ticket.id,
            CancellationOutcome.CANCELLED,
            TicketStatus.CANCELLED.value,
            amount,
        )

    def _refund_with_provider(self, ticket: Ticket, amount: int) -> None:
        if amount > ticket.refundable_amount:
            raise RefundFailed(f"Refund of {amount} exceeds the refundable amount")
        try:
            self.provider_for(ticket.payment_provider or "stripe").process_refund(ticket, amount)
        except PaymentError as e:
            logger.error(f"Refund of {amount} for ticket {ticket.id} failed: {e.message}")
            raise RefundFailed(f"Refund failed: {e.message}")
        except ValueError as e:
            raise RefundFailed(str(e))

    def refund_ticket(self, ticket_id: str, full_refund: bool = True) -> CancellationResult:
        """Admin refund of a paid ticket, bypassing the notice window."""
        ticket = ticket_crud.get(self.db, ticket_id)
        if ticket is None:
            raise TicketNotFound(ticket_id)
        if ticket.status != TicketStatus.PAID.value:
            raise InvalidTransition(ticket.id, ticket.status, "refund")

        if full_refund:
            amount = ticket.refundable_amount
        else:
            amount = ticket.refundable_amount * self.runtime.refunds.percent // 100

        if amount:
            self._refund_with_provider(ticket, amount)

        now = self.runtime.clock()
        changed = ticket_crud.transition(
            self.db,
            ticket.id,
            (TicketStatus.PAID.value,),
            {
                "status": TicketStatus.REFUNDED.value,
                "refunded_amount": Ticket.refunded_amount + amount,
                "refunded_at": now,
            },
            Ticket.refunded_amount + amount <= Ticket.total_amount,
        )
        if not changed:
            logger.critical(f"Refunded {amount} for ticket {ticket.id} but could not mark it refunded")
            self.db.expire_all()
            current = ticket_crud.get(self.db, ticket_id)
            raise InvalidTransition(ticket_id, current.status if current else "deleted", "refund")

        logger.info(f"Refunded ticket {ticket.id} ({amount})")
        return CancellationResult(
            ticket.id, CancellationOutcome.REFUNDED, TicketStatus.REFUNDED.value, amount
        )

    def cancel_event_tickets(self, event_id: str, refund_paid: bool) -> EventCancellationSummary:
        """Cancel every live ticket of an event, fully refunding paid ones if asked."""
        summary = EventCancellationSummary(event_id=event_id)
        now = self.runtime.clock()
        for ticket in ticket_crud.get_active_for_event(self.db, event_id):
            if ticket.status == TicketStatus.PAID.value and refund_paid:
                self.refund_ticket(ticket.id, full_refund=True)
                summary.refunded += 1
                continue

            if ticket_crud.transition(
                self.db,
                ticket.id,
                ACTIVE_STATUSES,
                {"status": TicketStatus.CANCELLED.value, "cancelled_at": now},
            ):
                self.runtime.cancel_grace_period(ticket.id)
                summary.cancelled += 1

        logger.info(
            f"Event {event_id}: cancelled {summary.cancelled}, refunded {summary.refunded} tickets"
        )
        return summary

    # ========================================
    # Grace period & sweeps
    # ========================================

    def finalize_cancellation(self, ticket_id: str) -> bool:
        """End a ticket's grace period. False if a payment got there first."""
        changed = ticket_crud.transition(
            self.db,
            ticket_id,
            (TicketStatus.PENDING_CANCELLATION.value,),
            {"status": TicketStatus.CANCELLED.value},
        )
        if changed:
            logger.info(f"Ticket {ticket_id} cancelled after grace period")
        return bool(changed)

    def finalize_expired_cancellations(self) -> int:
        cutoff = self.runtime.clock() - timedelta(seconds=self.runtime.grace_period_seconds)
        finalized = 0
        for ticket in ticket_crud.get_expired_cancellations(self.db, cutoff):
            if self.finalize_cancellation(ticket.id):
                finalized += 1
        return finalized

    def expire_stale_pending(self, ttl_minutes: int) -> int:
        """
        Cancel tickets whose checkout has been idle longer than ``ttl_minutes``.

        Idle time counts from the last write (a retried checkout resets it).
        A ticket whose checkout is still in flight gets the grace period
        instead of a direct cancel.
        """
        if ttl_minutes <= 0:
            return 0
        now = self.runtime.clock()
        cutoff = now - timedelta(minutes=ttl_minutes)
        expired = 0
        for ticket in ticket_crud.get_stale_pending(self.db, cutoff):
            if self.checkout_in_flight(ticket):
                if self._cancel_pending(ticket) is None:
                    continue
            elif not ticket_crud.transition(
                self.db,
                ticket.id,
                (TicketStatus.PENDING.value,),
                {"status": TicketStatus.CANCELLED.value, "cancelled_at": now},
            ):
                continue
            expired += 1
            self.runtime.audit.record("ticket_expired", None, ticket.id)
        return expired

    # ========================================
    # Reads
    # ========================================

    def _get_owned(self, ticket_id: str, user_id: str) -> Ticket:
        ticket = ticket_crud.get_for_user(self.db, ticket_id, user_id)
        if ticket is None:
            raise TicketNotFound(ticket_id)
        return ticket

    def get_ticket(self, ticket_id: str, user_id: str) -> Ticket:
        return self._get_owned(ticket_id, user_id)

    def list_user_tickets(self, user_id: str) -> List[Ticket]:
        return ticket_crud.get_by_user(self.db, user_id)
