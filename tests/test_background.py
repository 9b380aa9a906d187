"""
Tests for the periodic sweeps, the scheduler wiring, the event-service
directory and the provider factory.
"""

from unittest.mock import MagicMock

import httpx
import pytest

from app.background_tasks import ticket_tasks
from app.core.config import settings
from app.crud.ticket_crud import ticket_crud
from app.models.ticket import TicketStatus
from app.scheduler import build_scheduler
from app.services.payment.provider_factory import PaymentProviderFactory
from app.services.payment.providers.stripe_provider import StripeConfig, StripeProvider
from app.services.ticketing.collaborators import HttpDirectory
from app.services.ticketing.errors import DirectoryUnavailable


# ============================================
# Sweeps
# ============================================

@pytest.fixture
def sweep_env(monkeypatch, session_factory, runtime):
    monkeypatch.setattr(ticket_tasks, "SessionLocal", session_factory)
    monkeypatch.setattr(ticket_tasks, "get_ticket_runtime", lambda: runtime)
    return runtime


def test_finalize_sweep(sweep_env, service, clock, db):
    ticket, _ = service.create_ticket("user_1", "evt_1")
    service.request_cancellation(ticket.id, "user_1")
    clock.advance(minutes=10)

    assert ticket_tasks.finalize_expired_cancellations() == 1

    db.expire_all()
    assert ticket_crud.get(db, ticket.id).status == TicketStatus.CANCELLED.value


def test_stale_pending_sweep(sweep_env, service, clock, monkeypatch):
    monkeypatch.setattr(settings, "PENDING_TICKET_TTL_MINUTES", 60)
    service.create_ticket("user_1", "evt_1")
    clock.advance(hours=2)

    assert ticket_tasks.expire_stale_pending() == 1


def test_stale_pending_sweep_disabled(sweep_env, monkeypatch):
    monkeypatch.setattr(settings, "PENDING_TICKET_TTL_MINUTES", 0)
    assert ticket_tasks.expire_stale_pending() == 0


def test_sweep_errors_are_contained(monkeypatch, session_factory):
    broken_runtime = MagicMock()
    broken_runtime.clock.side_effect = RuntimeError("clock broke")
    monkeypatch.setattr(ticket_tasks, "SessionLocal", session_factory)
    monkeypatch.setattr(ticket_tasks, "get_ticket_runtime", lambda: broken_runtime)

    assert ticket_tasks.finalize_expired_cancellations() == 0


def test_scheduler_registers_sweeps():
    scheduler = build_scheduler(workers=2)

    job_ids = {job.id for job in scheduler.get_jobs()}

    assert job_ids == {"finalize_expired_cancellations", "expire_stale_pending"}
    assert not scheduler.running


# ============================================
# Event service directory
# ============================================

def _directory(handler, api_key="internal-key"):
    client = httpx.Client(transport=httpx.MockTransport(handler), base_url="http://events")
    return HttpDirectory("http://events", api_key, client=client)


def test_directory_reads_event():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "id": "evt_1",
                "name": "Summer Night",
                "startsAt": "2026-08-01T20:00:00Z",
                "capacity": 120,
                "groupPrices": {"guests": 3500, "plus": "2500"},
                "allowedGroup": "all",
            },
        )

    event = _directory(handler).get_event("evt_1")

    assert seen[0].url.path == "/internal/events/evt_1"
    assert seen[0].headers["x-api-key"] == "internal-key"
    assert event.capacity == 120
    assert event.group_prices == {"guests": 3500, "plus": 2500}
    assert event.starts_at.tzinfo is not None
    assert event.is_active is True


def test_directory_reads_buyer():
    def handler(request):
        return httpx.Response(
            200,
            json={"id": "user_1", "email": "a@b.c", "group": "plus", "firstName": "Ada", "lastName": "L"},
        )

    buyer = _directory(handler).get_buyer("user_1")

    assert buyer.group == "plus"
    assert buyer.name == "Ada L"


def test_directory_unknown_is_none():
    directory = _directory(lambda request: httpx.Response(404))
    assert directory.get_event("evt_x") is None
    assert directory.get_buyer("user_x") is None


def test_directory_outage():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(DirectoryUnavailable):
        _directory(handler).get_event("evt_1")

    with pytest.raises(DirectoryUnavailable):
        _directory(lambda request: httpx.Response(500)).get_event("evt_1")


# ============================================
# Provider factory
# ============================================

def test_factory_only_offers_configured_providers():
    config = StripeConfig(
        secret_key="sk_test", webhook_secret="whsec", success_url="s", cancel_url="c"
    )
    factory = PaymentProviderFactory(stripe_config=config, stripe_client=MagicMock())

    assert factory.list_available_providers() == ["stripe"]
    assert factory.is_provider_available("paypal") is False
    assert isinstance(factory.get_provider("stripe", MagicMock()), StripeProvider)
    with pytest.raises(ValueError):
        factory.get_provider("paypal", MagicMock())
