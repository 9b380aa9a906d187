"""
Tests for the PayPal REST client and provider.

HTTP traffic goes through httpx.MockTransport; each test installs a small
router that plays the PayPal API.
"""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import httpx
import pytest

from app.models.ticket import Ticket
from app.services.payment.provider_interface import (
    BuyerInfo,
    CheckoutClosed,
    EventInfo,
    PaymentError,
)
from app.services.payment.providers.paypal_client import (
    PayPalClient,
    extract_capture_id,
    from_paypal_value,
    to_paypal_value,
)
from app.services.payment.providers.paypal_provider import PayPalConfig, PayPalProvider

BASE_URL = "https://api-m.sandbox.paypal.com"


class FakePayPal:
    """Minimal PayPal API: token endpoint plus whatever routes a test sets."""

    def __init__(self):
        self.routes = {}
        self.requests = []
        self.token_requests = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            self.token_requests += 1
            return httpx.Response(200, json={"access_token": "A21-token", "expires_in": 32400})

        self.requests.append(request)
        handler = self.routes.get((request.method, request.url.path))
        if handler is None:
            return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})
        status, body = handler(request) if callable(handler) else handler
        return httpx.Response(status, json=body)

    def last_json(self):
        return json.loads(self.requests[-1].content)


def _completed_order(order_id="ORDER-1", capture_id="CAP-1"):
    return {
        "id": order_id,
        "status": "COMPLETED",
        "purchase_units": [{"payments": {"captures": [{"id": capture_id, "status": "COMPLETED"}]}}],
    }


@pytest.fixture
def api():
    return FakePayPal()


@pytest.fixture
def client(api):
    http = httpx.Client(transport=httpx.MockTransport(api), base_url=BASE_URL)
    return PayPalClient("client-id", "secret", BASE_URL, http_client=http)


@pytest.fixture
def ledger():
    return MagicMock()


@pytest.fixture
def provider(client, ledger):
    config = PayPalConfig(
        client_id="client-id",
        secret="secret",
        api_base=BASE_URL,
        success_url="https://app.example.com/tickets/success",
        cancel_url="https://app.example.com/tickets/cancel",
        brand_name="Tickets",
        webhook_id="WH-1",
    )
    return PayPalProvider(config, ledger, client)


@pytest.fixture
def ticket():
    return Ticket(
        id="tkt_pp",
        user_id="user_1",
        event_id="evt_1",
        status="pending",
        price=3500,
        payment_provider="paypal",
        paypal_order_id="ORDER-1",
    )


def test_value_conversion():
    assert to_paypal_value(1750) == "17.50"
    assert to_paypal_value(5) == "0.05"
    assert from_paypal_value("17.50") == 1750
    assert from_paypal_value("45") == 4500


def test_extract_capture_id():
    assert extract_capture_id(_completed_order()) == "CAP-1"
    assert extract_capture_id({"purchase_units": [{}]}) is None


class TestPayPalClient:

    def test_token_is_cached(self, api, client):
        api.routes[("GET", "/v2/checkout/orders/ORDER-1")] = (200, {"id": "ORDER-1"})

        client.get_order("ORDER-1")
        client.get_order("ORDER-1")

        assert api.token_requests == 1
        assert api.requests[0].headers["Authorization"] == "Bearer A21-token"

    def test_error_code_from_details(self, api, client):
        api.routes[("POST", "/v2/checkout/orders/ORDER-1/capture")] = (
            422,
            {"name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "ORDER_ALREADY_CAPTURED"}]},
        )

        with pytest.raises(PaymentError) as exc_info:
            client.capture_order("ORDER-1")

        assert exc_info.value.code == "ORDER_ALREADY_CAPTURED"
        assert exc_info.value.retryable is False

    def test_server_error_is_retryable(self, api, client):
        api.routes[("GET", "/v2/checkout/orders/ORDER-1")] = (503, {"name": "SERVICE_UNAVAILABLE"})

        with pytest.raises(PaymentError) as exc_info:
            client.get_order("ORDER-1")
        assert exc_info.value.retryable is True

    def test_capture_request_id_is_stable(self, api, client):
        api.routes[("POST", "/v2/checkout/orders/ORDER-1/capture")] = (201, _completed_order())

        client.capture_order("ORDER-1")

        assert api.requests[-1].headers["PayPal-Request-Id"] == "capture-ORDER-1"

    def test_verify_webhook_signature(self, api, client):
        api.routes[("POST", "/v1/notifications/verify-webhook-signature")] = (
            200,
            {"verification_status": "SUCCESS"},
        )
        headers = {
            "PAYPAL-AUTH-ALGO": "SHA256withRSA",
            "PAYPAL-CERT-URL": "https://api.paypal.com/cert",
            "PAYPAL-TRANSMISSION-ID": "t-1",
            "PAYPAL-TRANSMISSION-SIG": "sig",
            "PAYPAL-TRANSMISSION-TIME": "2026-07-01T12:00:00Z",
        }

        assert client.verify_webhook_signature(headers, {"id": "WH-EVT"}, "WH-1") is True
        assert api.last_json()["webhook_id"] == "WH-1"
        assert api.last_json()["transmission_id"] == "t-1"

    def test_verify_webhook_failure(self, api, client):
        api.routes[("POST", "/v1/notifications/verify-webhook-signature")] = (
            200,
            {"verification_status": "FAILURE"},
        )
        headers = {
            "paypal-auth-algo": "a",
            "paypal-cert-url": "b",
            "paypal-transmission-id": "c",
            "paypal-transmission-sig": "d",
            "paypal-transmission-time": "e",
        }

        assert client.verify_webhook_signature(headers, {}, "WH-1") is False

    def test_verify_webhook_missing_headers(self, api, client):
        assert client.verify_webhook_signature({}, {}, "WH-1") is False
        assert api.requests == []


class TestCreateCheckout:

    def test_order_payload_and_approval_link(self, api, provider, ledger, ticket):
        api.routes[("POST", "/v2/checkout/orders")] = (
            201,
            {
                "id": "ORDER-NEW",
                "status": "CREATED",
                "links": [
                    {"rel": "self", "href": "https://api/orders/ORDER-NEW"},
                    {"rel": "approve", "href": "https://www.paypal.com/checkoutnow?token=ORDER-NEW"},
                ],
            },
        )
        event = EventInfo(
            id="evt_1",
            name="Summer Night",
            starts_at=datetime(2026, 8, 1, tzinfo=timezone.utc),
            capacity=10,
            group_prices={"guests": 3500},
        )
        buyer = BuyerInfo(id="user_1", email="one@example.com", group="guests")

        url = provider.create_checkout(ticket, event, buyer, 4500)

        unit = api.last_json()["purchase_units"][0]
        assert url == "https://www.paypal.com/checkoutnow?token=ORDER-NEW"
        assert unit["custom_id"] == "tkt_pp"
        assert unit["amount"] == {"currency_code": "EUR", "value": "45.00"}
        assert api.requests[-1].headers["PayPal-Request-Id"]
        ledger.attach_checkout_reference.assert_called_once_with(
            ticket, "paypal", paypal_order_id="ORDER-NEW"
        )

    def test_missing_approval_link(self, api, provider, ticket):
        api.routes[("POST", "/v2/checkout/orders")] = (201, {"id": "ORDER-NEW", "links": []})

        with pytest.raises(PaymentError) as exc_info:
            provider.create_checkout(ticket, MagicMock(name="event"), MagicMock(), 3500)
        assert exc_info.value.code == "NO_APPROVAL_URL"


class TestCheckAndCapture:

    def test_approved_order_is_captured(self, api, provider, ledger, ticket):
        api.routes[("GET", "/v2/checkout/orders/ORDER-1")] = (200, {"id": "ORDER-1", "status": "APPROVED"})
        api.routes[("POST", "/v2/checkout/orders/ORDER-1/capture")] = (201, _completed_order())

        assert provider.check_and_capture_order(ticket) is True
        ledger.confirm_payment.assert_called_once_with("tkt_pp", "CAP-1")

    def test_approved_order_for_cancelled_ticket_not_captured(self, api, provider, ledger, ticket):
        ticket.status = "cancelled"
        api.routes[("GET", "/v2/checkout/orders/ORDER-1")] = (200, {"id": "ORDER-1", "status": "APPROVED"})

        assert provider.check_and_capture_order(ticket) is False

        paths = [r.url.path for r in api.requests]
        assert "/v2/checkout/orders/ORDER-1/capture" not in paths
        ledger.confirm_payment.assert_not_called()

    def test_capture_race_reads_back_order(self, api, provider, ledger, ticket):
        reads = []

        def get_order(request):
            reads.append(request)
            if len(reads) == 1:
                return 200, {"id": "ORDER-1", "status": "APPROVED"}
            return 200, _completed_order(capture_id="CAP-WINNER")

        api.routes[("GET", "/v2/checkout/orders/ORDER-1")] = get_order
        api.routes[("POST", "/v2/checkout/orders/ORDER-1/capture")] = (
            422,
            {"details": [{"issue": "ORDER_ALREADY_CAPTURED"}]},
        )

        assert provider.check_and_capture_order(ticket) is True
        ledger.confirm_payment.assert_called_once_with("tkt_pp", "CAP-WINNER")

    def test_completed_order_confirms_even_for_deleted_ticket(self, api, provider, ledger, ticket):
        ticket.status = None
        api.routes[("GET", "/v2/checkout/orders/ORDER-1")] = (200, _completed_order())

        assert provider.check_and_capture_order(ticket) is True
        ledger.confirm_payment.assert_called_once_with("tkt_pp", "CAP-1")

    @pytest.mark.parametrize("status", ["VOIDED", "EXPIRED", "CANCELLED"])
    def test_closed_orders(self, api, provider, ticket, status):
        api.routes[("GET", "/v2/checkout/orders/ORDER-1")] = (200, {"id": "ORDER-1", "status": status})

        with pytest.raises(CheckoutClosed) as exc_info:
            provider.check_and_capture_order(ticket)
        assert exc_info.value.remote_status == status

    def test_created_order_keeps_waiting(self, api, provider, ledger, ticket):
        api.routes[("GET", "/v2/checkout/orders/ORDER-1")] = (200, {"id": "ORDER-1", "status": "CREATED"})

        assert provider.check_and_capture_order(ticket) is False
        ledger.confirm_payment.assert_not_called()


class TestRefund:

    def test_refund_capture(self, api, provider, ticket):
        ticket.paypal_capture_id = "CAP-1"
        api.routes[("POST", "/v2/payments/captures/CAP-1/refund")] = (
            201,
            {"id": "REF-1", "status": "COMPLETED"},
        )

        provider.process_refund(ticket, 1750)

        assert api.last_json() == {"amount": {"currency_code": "EUR", "value": "17.50"}}
        assert api.requests[-1].headers["PayPal-Request-Id"] == "refund-tkt_pp-1750"

    def test_refund_needs_capture(self, provider, ticket):
        with pytest.raises(PaymentError) as exc_info:
            provider.process_refund(ticket, 1750)
        assert exc_info.value.code == "MISSING_PAYMENT_REFERENCE"

    def test_refund_rejected(self, api, provider, ticket):
        ticket.paypal_capture_id = "CAP-1"
        api.routes[("POST", "/v2/payments/captures/CAP-1/refund")] = (201, {"id": "REF-1", "status": "FAILED"})

        with pytest.raises(PaymentError) as exc_info:
            provider.process_refund(ticket, 1750)
        assert exc_info.value.code == "REFUND_FAILED"
