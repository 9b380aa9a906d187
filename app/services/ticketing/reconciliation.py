# app/services/ticketing/reconciliation.py
"""
Active payment reconciliation.

Webhooks are not guaranteed to arrive, so every checkout gets a bounded
poller that asks the provider directly. Each ticket has at most one poller;
starting a new one (retry checkout) stops the previous one.
"""
import itertools
import logging
import threading
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional

from apscheduler.jobstores.base import JobLookupError

from app.crud.ticket_crud import ticket_crud
from app.models.ticket import TicketStatus
from app.services.payment.provider_interface import CheckoutClosed

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TicketSnapshot:
    """
    The provider references of a ticket at the time its checkout started.

    Polling continues from these when the ticket row itself is gone, so a
    payment for a deleted ticket still gets noticed.
    """
    id: str
    payment_provider: str
    status: Optional[str] = None
    stripe_session_id: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    paypal_order_id: Optional[str] = None
    paypal_capture_id: Optional[str] = None

    @classmethod
    def of(cls, ticket) -> "TicketSnapshot":
        return cls(
            id=ticket.id,
            payment_provider=ticket.payment_provider or "stripe",
            status=ticket.status,
            stripe_session_id=ticket.stripe_session_id,
            stripe_payment_intent_id=ticket.stripe_payment_intent_id,
            paypal_order_id=ticket.paypal_order_id,
            paypal_capture_id=ticket.paypal_capture_id,
        )


@dataclass
class ReconciliationPoll:
    """One checkout being polled: its snapshot, scheduler job and progress."""
    snapshot: TicketSnapshot
    job_id: str
    attempts: int = 0
    stopped: bool = False


class ReconciliationPoller:
    """
    Polls the provider for each open checkout.

    Every poll is one short run of an APScheduler interval job; no worker
    thread is held between polls.
    """

    def __init__(
        self,
        session_factory: Callable,
        service_factory: Callable,
        scheduler=None,
        max_attempts: int = 24,
        interval_seconds: float = 5.0,
    ):
        self._session_factory = session_factory
        self._service_factory = service_factory
        self._scheduler = scheduler
        self.max_attempts = max_attempts
        self.interval_seconds = interval_seconds
        self._lock = threading.Lock()
        self._polls: Dict[str, ReconciliationPoll] = {}
        self._sequence = itertools.count(1)

    def start(self, ticket) -> ReconciliationPoll:
        """Begin polling for ``ticket``, replacing any poll already running."""
        snapshot = TicketSnapshot.of(ticket)
        poll = ReconciliationPoll(
            snapshot=snapshot, job_id=f"reconcile:{snapshot.id}:{next(self._sequence)}"
        )
        with self._lock:
            previous = self._polls.get(snapshot.id)
            self._polls[snapshot.id] = poll
        if previous is not None:
            self._cancel(previous)

        if self._scheduler is None:
            logger.debug(f"No scheduler, not polling ticket {snapshot.id}")
            return poll

        self._scheduler.add_job(
            self.tick,
            trigger="interval",
            seconds=self.interval_seconds,
            args=[poll],
            id=poll.job_id,
            name=f"reconcile {snapshot.id}",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
        )
        logger.info(
            f"Started reconciliation for ticket {snapshot.id} "
            f"({self.max_attempts} x {self.interval_seconds}s)"
        )
        return poll

    def stop(self, ticket_id: str) -> None:
        with self._lock:
            poll = self._polls.pop(ticket_id, None)
        if poll is not None:
            self._cancel(poll)

    def is_polling(self, ticket_id: str) -> bool:
        with self._lock:
            return ticket_id in self._polls

    def tick(self, poll: ReconciliationPoll) -> bool:
        """
        One scheduled run: poll once, end the job when done or out of attempts.

        Returns True while more polls are due.
        """
        if poll.stopped:
            self._finish(poll)
            return False

        poll.attempts += 1
        done = self.poll_once(poll.snapshot)
        if not done and poll.attempts < self.max_attempts:
            return True

        if not done:
            logger.info(
                f"Reconciliation for ticket {poll.snapshot.id} gave up after {poll.attempts} polls"
            )
        self._finish(poll)
        return False

    def run(self, poll: ReconciliationPoll) -> int:
        """Drive ``poll`` to the end on the calling thread. Returns the polls made."""
        while self.tick(poll):
            pass
        return poll.attempts

    def _finish(self, poll: ReconciliationPoll) -> None:
        with self._lock:
            if self._polls.get(poll.snapshot.id) is poll:
                del self._polls[poll.snapshot.id]
        self._cancel(poll)

    def _cancel(self, poll: ReconciliationPoll) -> None:
        poll.stopped = True
        if self._scheduler is None:
            return
        try:
            self._scheduler.remove_job(poll.job_id)
        except JobLookupError:
            pass

    def poll_once(self, snapshot: TicketSnapshot) -> bool:
        """One poll. Returns True when there is nothing left to wait for."""
        db = self._session_factory()
        try:
            ticket = ticket_crud.get(db, snapshot.id)
            if ticket is not None and ticket.status == TicketStatus.PAID.value:
                return True

            # Cancelled and deleted tickets keep being polled but never captured.
            # A payment that completes anyway must still reach confirm_payment.
            target = ticket if ticket is not None else replace(snapshot, status=None)
            service = self._service_factory(db)
            provider = service.provider_for(snapshot.payment_provider)
            return provider.check_and_capture_order(target)
        except CheckoutClosed as e:
            logger.info(f"Stopping reconciliation for ticket {snapshot.id}: {e}")
            return True
        except Exception as e:
            logger.warning(f"Reconciliation poll for ticket {snapshot.id} failed: {e}")
            db.rollback()
            return False
        finally:
            db.close()
