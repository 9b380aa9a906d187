# app/api/v1/endpoints/webhooks.py
"""
Webhook endpoints for payment providers.

These endpoints handle asynchronous notifications from Stripe and PayPal
and feed confirmed payments into the ticket lifecycle.

SECURITY NOTES:
- Signatures are verified before any field of the payload is trusted
- Processing is idempotent: confirm_payment ignores repeats
- Unknown event types are acknowledged with 200 so providers stop retrying
"""
import json
import logging
from dataclasses import replace

import stripe
from fastapi import APIRouter, Depends, Header, HTTPException, Request
from starlette.concurrency import run_in_threadpool

from app.api import deps
from app.crud.ticket_crud import ticket_crud
from app.models.ticket import CONFIRMABLE_STATUSES
from app.services.payment.provider_interface import CheckoutClosed, PaymentError
from app.services.payment.providers.stripe_provider import (
    PAID_SESSION_STATES,
    construct_stripe_event,
)
from app.services.ticketing.reconciliation import TicketSnapshot
from app.services.ticketing.runtime import TicketRuntime
from app.services.ticketing.ticket_service import TicketService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


# ========================================
# Stripe
# ========================================

@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str = Header(None, alias="Stripe-Signature"),
    service: TicketService = Depends(deps.get_ticket_service),
    runtime: TicketRuntime = Depends(deps.get_runtime),
):
    """
    Handle Stripe webhook events.

    Stripe will retry on non-2xx responses.
    """
    # Signature is computed over the raw bytes
    body = await request.body()

    if not stripe_signature:
        logger.warning("Webhook received without Stripe-Signature header")
        raise HTTPException(status_code=400, detail="Missing signature")

    config = runtime.providers.stripe_config
    if config is None:
        logger.error("Stripe webhook received but Stripe is not configured")
        raise HTTPException(status_code=503, detail="Stripe is not configured")

    client_ip = request.client.host if request.client else None
    try:
        event = construct_stripe_event(body, stripe_signature, config)
    except (stripe.SignatureVerificationError, ValueError) as e:
        logger.warning(f"Invalid Stripe webhook signature from {client_ip}: {e}")
        raise HTTPException(status_code=400, detail="Invalid signature")

    result = await run_in_threadpool(_process_stripe_event, service, event)
    return {"status": "processed", "event_id": event.get("id"), **result}


def _process_stripe_event(service: TicketService, event: dict) -> dict:
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type in (
        "checkout.session.completed",
        "checkout.session.async_payment_succeeded",
    ):
        return _handle_checkout_completed(service, obj)

    if event_type == "checkout.session.expired":
        logger.info(f"Stripe session {obj.get('id')} expired")
        return {}

    if event_type in (
        "payment_intent.payment_failed",
        "checkout.session.async_payment_failed",
    ):
        logger.warning(f"Stripe payment failed ({event_type}) for {obj.get('id')}")
        return {}

    logger.info(f"Unhandled Stripe event type: {event_type}")
    return {}


def _handle_checkout_completed(service: TicketService, session: dict) -> dict:
    if session.get("payment_status") not in PAID_SESSION_STATES:
        # Delayed payment methods complete the session before the money arrives
        logger.info(f"Stripe session {session.get('id')} completed but not paid yet")
        return {}

    ticket_id = (session.get("metadata") or {}).get("ticket_id") or session.get(
        "client_reference_id"
    )
    if not ticket_id and session.get("id"):
        ticket = ticket_crud.get_by_stripe_session(service.db, session["id"])
        ticket_id = ticket.id if ticket else None
    if not ticket_id:
        logger.error(f"Paid Stripe session {session.get('id')} carries no ticket reference")
        return {}

    payment_intent = session.get("payment_intent")
    if isinstance(payment_intent, dict):
        payment_intent = payment_intent.get("id")

    outcome = service.confirm_payment(ticket_id, payment_intent or session.get("id"))
    return {"ticket_id": ticket_id, "outcome": outcome.value}


# ========================================
# PayPal
# ========================================

@router.post("/paypal")
async def paypal_webhook(
    request: Request,
    service: TicketService = Depends(deps.get_ticket_service),
    runtime: TicketRuntime = Depends(deps.get_runtime),
):
    """
    Handle PayPal webhook events.

    Deliveries are verified through PayPal's verification API when a
    webhook id is configured.
    """
    body = await request.body()
    try:
        event = json.loads(body)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid payload")

    config = runtime.providers.paypal_config
    if config is None:
        logger.warning("PayPal webhook received but PayPal is not configured, ignoring")
        return {"status": "ignored"}

    if config.webhook_id:
        try:
            verified = await run_in_threadpool(
                runtime.providers.paypal_client.verify_webhook_signature,
                dict(request.headers),
                event,
                config.webhook_id,
            )
        except PaymentError as e:
            logger.error(f"Could not verify PayPal webhook: {e.message}")
            verified = False
        if not verified:
            logger.warning(f"Rejected unverified PayPal webhook {event.get('id')}")
            raise HTTPException(status_code=400, detail="Invalid signature")
    else:
        logger.warning(
            f"PAYPAL_WEBHOOK_ID not set, accepting unverified PayPal webhook {event.get('id')}"
        )

    result = await run_in_threadpool(_process_paypal_event, service, event)
    return {"status": "processed", "event_id": event.get("id"), **result}


def _process_paypal_event(service: TicketService, event: dict) -> dict:
    event_type = event.get("event_type")
    resource = event.get("resource") or {}

    if event_type == "PAYMENT.CAPTURE.COMPLETED":
        return _handle_capture_completed(service, resource)

    if event_type == "CHECKOUT.ORDER.APPROVED":
        return _handle_order_approved(service, resource)

    if event_type in ("PAYMENT.CAPTURE.DENIED", "PAYMENT.CAPTURE.REFUNDED"):
        ticket_id = resource.get("custom_id")
        logger.warning(f"PayPal {event_type} for capture {resource.get('id')} (ticket {ticket_id})")
        service.runtime.audit.record(
            event_type.lower(), None, ticket_id or resource.get("id", ""), {"capture": resource.get("id")}
        )
        return {"ticket_id": ticket_id}

    logger.info(f"Unhandled PayPal event type: {event_type}")
    return {}


def _handle_capture_completed(service: TicketService, capture: dict) -> dict:
    ticket_id = capture.get("custom_id")
    if not ticket_id:
        order_id = (
            (capture.get("supplementary_data") or {}).get("related_ids") or {}
        ).get("order_id")
        ticket = ticket_crud.get_by_paypal_order(service.db, order_id) if order_id else None
        ticket_id = ticket.id if ticket else None
    if not ticket_id:
        logger.error(f"PayPal capture {capture.get('id')} carries no ticket reference")
        return {}

    outcome = service.confirm_payment(ticket_id, capture.get("id"))
    return {"ticket_id": ticket_id, "outcome": outcome.value}


def _handle_order_approved(service: TicketService, order: dict) -> dict:
    units = order.get("purchase_units") or [{}]
    ticket_id = units[0].get("custom_id") or units[0].get("reference_id")
    ticket = ticket_crud.get(service.db, ticket_id) if ticket_id else None
    if ticket is None and order.get("id"):
        ticket = ticket_crud.get_by_paypal_order(service.db, order["id"])

    if ticket is None or ticket.status not in CONFIRMABLE_STATUSES:
        # Capturing would take money for a ticket that no longer wants it
        logger.warning(
            f"Approved PayPal order {order.get('id')} has no open ticket, not capturing"
        )
        return {"ticket_id": ticket_id}

    # A retried checkout replaces paypal_order_id; capture the order that was approved.
    target = replace(
        TicketSnapshot.of(ticket), paypal_order_id=order.get("id") or ticket.paypal_order_id
    )
    try:
        captured = service.provider_for("paypal").check_and_capture_order(target)
    except (PaymentError, CheckoutClosed) as e:
        logger.warning(f"Capture of PayPal order {order.get('id')} failed: {e}")
        return {"ticket_id": ticket.id, "captured": False}
    return {"ticket_id": ticket.id, "captured": captured}
