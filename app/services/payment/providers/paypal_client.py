# app/services/payment/providers/paypal_client.py
"""
Thin PayPal REST client (Orders v2, Payments v2, webhook verification).

Uses synchronous httpx so it can be called from request handlers and from
the reconciliation worker threads alike.
"""
import logging
import time
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from ..provider_interface import PaymentError

logger = logging.getLogger(__name__)

TOKEN_REFRESH_MARGIN_SECONDS = 60


def to_paypal_value(cents: int) -> str:
    """1750 -> '17.50'"""
    return f"{cents // 100}.{cents % 100:02d}"


def from_paypal_value(value: str) -> int:
    """'17.50' -> 1750"""
    return int((Decimal(value) * 100).to_integral_value())


def extract_capture_id(order: Dict[str, Any]) -> Optional[str]:
    """Capture ids are nested at purchase_units[0].payments.captures[0].id."""
    for unit in order.get("purchase_units") or []:
        captures = (unit.get("payments") or {}).get("captures") or []
        if captures and captures[0].get("id"):
            return captures[0]["id"]
    return None


class PayPalClient:
    def __init__(
        self,
        client_id: str,
        secret: str,
        base_url: str,
        http_client: Optional[httpx.Client] = None,
        timeout: float = 30.0,
    ):
        self._client_id = client_id
        self._secret = secret
        self._http = http_client or httpx.Client(base_url=base_url, timeout=timeout)
        self._token: Optional[str] = None
        self._token_expires_at = 0.0

    def _access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        try:
            response = self._http.post(
                "/v1/oauth2/token",
                auth=(self._client_id, self._secret),
                data={"grant_type": "client_credentials"},
            )
        except httpx.HTTPError as e:
            raise PaymentError(
                code="PROVIDER_ERROR",
                message=f"Failed to reach PayPal: {e}",
                retryable=True,
            )
        if response.status_code != 200:
            raise PaymentError(
                code="AUTHENTICATION_FAILED",
                message=f"PayPal token request failed (status {response.status_code})",
            )

        body = response.json()
        self._token = body["access_token"]
        expires_in = int(body.get("expires_in", 3600))
        self._token_expires_at = (
            time.monotonic() + max(expires_in - TOKEN_REFRESH_MARGIN_SECONDS, 0)
        )
        return self._token

    def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        request_headers = {
            "Authorization": f"Bearer {self._access_token()}",
            "Content-Type": "application/json",
        }
        if headers:
            request_headers.update(headers)

        try:
            response = self._http.request(method, path, json=json, headers=request_headers)
        except httpx.HTTPError as e:
            raise PaymentError(
                code="PROVIDER_ERROR",
                message=f"PayPal request {method} {path} failed: {e}",
                retryable=True,
            )

        if response.status_code >= 400:
            raise PaymentError(
                code=self._error_code(response),
                message=f"PayPal {method} {path} failed (status {response.status_code}): {response.text}",
                retryable=response.status_code >= 500,
            )
        if not response.content:
            return {}
        return response.json()

    @staticmethod
    def _error_code(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return "PROVIDER_ERROR"
        details = body.get("details") or []
        if details and details[0].get("issue"):
            return details[0]["issue"]
        return body.get("name") or "PROVIDER_ERROR"

    def create_order(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request(
            "POST",
            "/v2/checkout/orders",
            json=payload,
            headers={"PayPal-Request-Id": uuid.uuid4().hex},
        )

    def get_order(self, order_id: str) -> Dict[str, Any]:
        return self._request("GET", f"/v2/checkout/orders/{order_id}")

    def capture_order(self, order_id: str) -> Dict[str, Any]:
        return self._request(
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            json={},
            headers={
                "Prefer": "return=representation",
                # Same id for the same order makes retried captures safe
                "PayPal-Request-Id": f"capture-{order_id}",
            },
        )

    def refund_capture(
        self, capture_id: str, value: str, currency: str, request_id: str
    ) -> Dict[str, Any]:
        return self._request(
            "POST",
            f"/v2/payments/captures/{capture_id}/refund",
            json={"amount": {"currency_code": currency, "value": value}},
            headers={"PayPal-Request-Id": request_id},
        )

    def verify_webhook_signature(
        self, headers: Dict[str, str], event: Dict[str, Any], webhook_id: str
    ) -> bool:
        """Ask PayPal whether a webhook delivery was signed for our webhook id."""
        lowered = {k.lower(): v for k, v in headers.items()}
        required = (
            "paypal-auth-algo",
            "paypal-cert-url",
            "paypal-transmission-id",
            "paypal-transmission-sig",
            "paypal-transmission-time",
        )
        if any(not lowered.get(name) for name in required):
            return False

        result = self._request(
            "POST",
            "/v1/notifications/verify-webhook-signature",
            json={
                "auth_algo": lowered["paypal-auth-algo"],
                "cert_url": lowered["paypal-cert-url"],
                "transmission_id": lowered["paypal-transmission-id"],
                "transmission_sig": lowered["paypal-transmission-sig"],
                "transmission_time": lowered["paypal-transmission-time"],
                "webhook_id": webhook_id,
                "webhook_event": event,
            },
        )
        return result.get("verification_status") == "SUCCESS"
