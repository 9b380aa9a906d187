# app/services/ticketing/runtime.py
"""
Long-lived collaborators shared by every TicketService.

A TicketService lives for one DB session. The things that outlive it
(provider clients, policies, the poller and the grace timers) sit here and
are built once at startup from settings.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from app.core.config import settings
from app.services.payment.provider_factory import (
    PaymentProviderFactory,
    get_payment_provider_factory,
)
from .collaborators import (
    AlertNotifier,
    AuditRecorder,
    ConfirmationNotifier,
    EventDirectory,
    HttpDirectory,
    LoggingAlertNotifier,
    LoggingAuditRecorder,
    LoggingConfirmationNotifier,
    UserDirectory,
)
from .grace_period import GracePeriodCanceller
from .pricing import PricingPolicy
from .reconciliation import ReconciliationPoller
from .refund_policy import RefundPolicy

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TicketRuntime:
    events: EventDirectory
    users: UserDirectory
    providers: PaymentProviderFactory
    pricing: PricingPolicy
    refunds: RefundPolicy
    audit: AuditRecorder
    confirmations: ConfirmationNotifier
    alerts: AlertNotifier
    currency: str = "EUR"
    grace_period_seconds: int = 300
    checkout_in_flight_minutes: int = 30
    poller: Optional[ReconciliationPoller] = None
    grace: Optional[GracePeriodCanceller] = None
    clock: Callable[[], datetime] = _utcnow

    def bind_background(
        self,
        session_factory: Callable,
        scheduler=None,
        max_attempts: int = 24,
        interval_seconds: float = 5.0,
    ) -> None:
        """Create the poller and grace timers, both running on ``scheduler``."""
        from .ticket_service import TicketService

        def service_factory(db):
            return TicketService(db, self)

        self.poller = ReconciliationPoller(
            session_factory,
            service_factory,
            scheduler=scheduler,
            max_attempts=max_attempts,
            interval_seconds=interval_seconds,
        )
        self.grace = GracePeriodCanceller(session_factory, service_factory, scheduler=scheduler)

    def start_reconciliation(self, ticket) -> None:
        if self.poller is not None:
            self.poller.start(ticket)

    def stop_reconciliation(self, ticket_id: str) -> None:
        if self.poller is not None:
            self.poller.stop(ticket_id)

    def schedule_grace_period(self, ticket_id: str, deadline: datetime) -> None:
        if self.grace is not None:
            self.grace.schedule(ticket_id, deadline)

    def cancel_grace_period(self, ticket_id: str) -> None:
        if self.grace is not None:
            self.grace.cancel(ticket_id)


def build_runtime(config=settings, providers: Optional[PaymentProviderFactory] = None) -> TicketRuntime:
    directory = HttpDirectory(config.EVENT_SERVICE_URL, config.INTERNAL_API_KEY)
    return TicketRuntime(
        events=directory,
        users=directory,
        providers=providers or get_payment_provider_factory(),
        pricing=PricingPolicy(pickup_price=config.PICKUP_SERVICE_PRICE),
        refunds=RefundPolicy(
            enabled=config.TICKET_CANCELLATION_ENABLED,
            notice_days=config.TICKET_CANCELLATION_DAYS,
            percent=config.TICKET_CANCELLATION_REFUND_PERCENT,
        ),
        audit=LoggingAuditRecorder(),
        confirmations=LoggingConfirmationNotifier(),
        alerts=LoggingAlertNotifier(),
        currency=config.CURRENCY,
        grace_period_seconds=config.GRACE_PERIOD_SECONDS,
        checkout_in_flight_minutes=config.CHECKOUT_IN_FLIGHT_MINUTES,
    )


# Global runtime instance
_runtime: Optional[TicketRuntime] = None


def init_ticket_runtime(session_factory: Callable, scheduler=None) -> TicketRuntime:
    runtime = get_ticket_runtime()
    runtime.bind_background(
        session_factory,
        scheduler=scheduler,
        max_attempts=settings.RECONCILE_MAX_ATTEMPTS,
        interval_seconds=settings.RECONCILE_INTERVAL_SECONDS,
    )
    logger.info(
        "Ticket runtime ready (providers: %s, background: %s)",
        ", ".join(runtime.providers.list_available_providers()) or "none",
        "scheduler" if scheduler is not None else "disabled",
    )
    return runtime


def get_ticket_runtime() -> TicketRuntime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime
