# tests/conftest.py
import os

# Must be set before the app (and its settings) are imported.
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("JWT_SECRET", "test-secret")

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from starlette.testclient import TestClient

from app.api import deps
from app.core.limiter import limiter
from app.db.base_class import Base
from app.main import app
from app.models.ticket import PROVIDER_ID_FIELDS
from app.services.payment.provider_interface import (
    BuyerInfo,
    CheckoutClosed,
    EventInfo,
    PaymentError,
    PaymentProviderInterface,
)
from app.services.ticketing.collaborators import EventDirectory, UserDirectory
from app.services.ticketing.pricing import PricingPolicy
from app.services.ticketing.refund_policy import RefundPolicy
from app.services.ticketing.runtime import TicketRuntime
from app.services.ticketing.ticket_service import TicketService


# --- Test Database Setup ---
# One in-memory SQLite database per test; StaticPool keeps every session
# (request, poller, grace timer) on the same connection.
@pytest.fixture(scope="function")
def engine():
    test_engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# --- Fakes ---
class FakeClock:
    def __init__(self):
        self.now = datetime.now(timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeDirectory(EventDirectory, UserDirectory):
    def __init__(self):
        self.events = {}
        self.buyers = {}

    def get_event(self, event_id):
        return self.events.get(event_id)

    def get_buyer(self, user_id):
        return self.buyers.get(user_id)


class FakeGateway:
    """Remote state and call log of one fake payment provider."""

    def __init__(self, code):
        self.code = code
        self.fail_checkout = False
        self.fail_refund = False
        # What check_and_capture_order sees remotely: "open", "paid" or "closed"
        self.remote_status = "open"
        self.checkouts = []
        self.refunds = []
        self.polls = []
        self.polled_orders = []
        self._counter = 0

    def next_reference(self):
        self._counter += 1
        return f"{self.code}_ref_{self._counter}"


class FakeProvider(PaymentProviderInterface):
    def __init__(self, ledger, gateway):
        super().__init__(ledger)
        self.gateway = gateway

    @property
    def provider_name(self):
        return self.gateway.code

    def create_checkout(self, ticket, event, buyer, total_amount):
        if self.gateway.fail_checkout:
            raise PaymentError(code="PROVIDER_ERROR", message="provider down", retryable=True)
        reference = self.gateway.next_reference()
        session_field = PROVIDER_ID_FIELDS[self.gateway.code][0]
        self._ledger.attach_checkout_reference(
            ticket, self.gateway.code, **{session_field: reference}
        )
        self.gateway.checkouts.append((ticket.id, total_amount, reference))
        return f"https://pay.example.com/{reference}"

    def process_refund(self, ticket, amount):
        if self.gateway.fail_refund:
            raise PaymentError(code="PROVIDER_ERROR", message="refund rejected")
        self.gateway.refunds.append((ticket.id, amount))

    def check_and_capture_order(self, ticket):
        self.gateway.polls.append(ticket.id)
        self.gateway.polled_orders.append(getattr(ticket, "paypal_order_id", None))
        if self.gateway.remote_status == "paid":
            self._ledger.confirm_payment(ticket.id, f"capture_for_{ticket.id}")
            return True
        if self.gateway.remote_status == "closed":
            raise CheckoutClosed(f"{self.gateway.code}_order", "EXPIRED")
        return False


class FakeProviderFactory:
    stripe_config = None
    paypal_config = None
    paypal_client = None

    def __init__(self, codes=("stripe", "paypal")):
        self.gateways = {code: FakeGateway(code) for code in codes}

    def is_provider_available(self, code):
        return code in self.gateways

    def list_available_providers(self):
        return list(self.gateways)

    def get_provider(self, code, ledger):
        if code not in self.gateways:
            raise ValueError(f"Payment provider '{code}' is not available")
        return FakeProvider(ledger, self.gateways[code])


# --- Runtime & Service Fixtures ---
@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def directory(clock):
    fake = FakeDirectory()
    fake.events["evt_1"] = EventInfo(
        id="evt_1",
        name="Summer Night",
        starts_at=clock.now + timedelta(days=20),
        capacity=10,
        group_prices={"guests": 3500, "plus": 2500},
    )
    fake.buyers["user_1"] = BuyerInfo(id="user_1", email="one@example.com", group="guests")
    fake.buyers["user_2"] = BuyerInfo(id="user_2", email="two@example.com", group="plus")
    return fake


@pytest.fixture
def providers():
    return FakeProviderFactory()


@pytest.fixture
def runtime(directory, providers, clock, session_factory):
    ticket_runtime = TicketRuntime(
        events=directory,
        users=directory,
        providers=providers,
        pricing=PricingPolicy(pickup_price=1000),
        refunds=RefundPolicy(enabled=True, notice_days=14, percent=50),
        audit=MagicMock(),
        confirmations=MagicMock(),
        alerts=MagicMock(),
        grace_period_seconds=300,
        checkout_in_flight_minutes=30,
        clock=clock,
    )
    ticket_runtime.bind_background(session_factory, scheduler=None, max_attempts=3, interval_seconds=0)
    return ticket_runtime


@pytest.fixture
def service(db, runtime):
    return TicketService(db, runtime)


# --- Test Client Fixtures ---
@pytest.fixture(scope="function")
def client(session_factory, runtime):
    """
    TestClient on the in-memory database with fake providers and directory.
    Authentication is real: requests carry signed JWTs from tests/utils/auth.py.
    """

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[deps.get_db] = override_get_db
    app.dependency_overrides[deps.get_runtime] = lambda: runtime
    limiter.reset()

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
