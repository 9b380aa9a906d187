# app/api/v1/endpoints/admin_tickets.py
"""
Admin endpoints for ticket cancellation and refunds.

Bulk mistakes here cost real money, so every call is rate limited per
admin and written to the audit log.
"""
import logging

from fastapi import APIRouter, Depends, Query, Request

from app.api import deps
from app.core.config import settings
from app.core.limiter import get_user_or_remote_address, limiter
from app.schemas.ticket import (
    CancellationMode,
    CancellationResponse,
    EventCancellationResponse,
)
from app.schemas.token import TokenPayload
from app.services.ticketing.runtime import TicketRuntime
from app.services.ticketing.ticket_service import TicketService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin - Tickets"])


def _response(result) -> CancellationResponse:
    return CancellationResponse(
        ticket_id=result.ticket_id,
        outcome=result.outcome.value,
        status=result.status,
        refunded_amount=result.refunded_amount,
    )


@router.post("/tickets/{ticket_id}/cancel", response_model=CancellationResponse)
@limiter.limit(settings.ADMIN_CANCEL_RATE_LIMIT, key_func=get_user_or_remote_address)
def admin_cancel_ticket(
    ticket_id: str,
    request: Request,
    mode: CancellationMode = Query(CancellationMode.auto),
    admin: TokenPayload = Depends(deps.require_admin),
    service: TicketService = Depends(deps.get_ticket_service),
    runtime: TicketRuntime = Depends(deps.get_runtime),
):
    """
    **[ADMIN]** Cancel any user's ticket.

    - `auto`: refund if the cancellation policy allows
    - `refund`: refund or fail with `refund_not_eligible`
    - `no_refund`: cancel without contacting the payment provider
    """
    try:
        result = service.admin_cancel_ticket(ticket_id, mode.value)
    except Exception as e:
        runtime.audit.record(
            "admin_cancel_failed", admin.sub, ticket_id, {"mode": mode.value, "error": str(e)}
        )
        raise

    runtime.audit.record(
        "admin_cancel",
        admin.sub,
        ticket_id,
        {"mode": mode.value, "outcome": result.outcome.value, "refunded": result.refunded_amount},
    )
    logger.info(f"Admin {admin.sub} cancelled ticket {ticket_id} ({mode.value})")
    return _response(result)


@router.post("/tickets/{ticket_id}/refund", response_model=CancellationResponse)
@limiter.limit(settings.ADMIN_CANCEL_RATE_LIMIT, key_func=get_user_or_remote_address)
def admin_refund_ticket(
    ticket_id: str,
    request: Request,
    full: bool = Query(True, description="Refund everything instead of the policy percentage"),
    admin: TokenPayload = Depends(deps.require_admin),
    service: TicketService = Depends(deps.get_ticket_service),
    runtime: TicketRuntime = Depends(deps.get_runtime),
):
    """**[ADMIN]** Refund a paid ticket regardless of the notice period."""
    result = service.refund_ticket(ticket_id, full_refund=full)
    runtime.audit.record(
        "admin_refund", admin.sub, ticket_id, {"full": full, "refunded": result.refunded_amount}
    )
    return _response(result)


@router.post("/events/{event_id}/cancel-tickets", response_model=EventCancellationResponse)
@limiter.limit(settings.ADMIN_CANCEL_RATE_LIMIT, key_func=get_user_or_remote_address)
def admin_cancel_event_tickets(
    event_id: str,
    request: Request,
    refund_paid: bool = Query(True),
    admin: TokenPayload = Depends(deps.require_admin),
    service: TicketService = Depends(deps.get_ticket_service),
    runtime: TicketRuntime = Depends(deps.get_runtime),
):
    """**[ADMIN]** Cancel every ticket of an event, e.g. when the event is called off."""
    summary = service.cancel_event_tickets(event_id, refund_paid)
    runtime.audit.record(
        "admin_cancel_event",
        admin.sub,
        event_id,
        {"refund_paid": refund_paid, "cancelled": summary.cancelled, "refunded": summary.refunded},
    )
    return EventCancellationResponse(
        event_id=summary.event_id,
        cancelled=summary.cancelled,
        refunded=summary.refunded,
    )
