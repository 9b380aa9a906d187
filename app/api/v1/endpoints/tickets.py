# app/api/v1/endpoints/tickets.py
"""
Buyer-facing ticket endpoints.

Every ticket operation is scoped to the authenticated user; tickets of
other users answer 404.
"""
import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from app.api import deps
from app.models.ticket import TicketStatus
from app.schemas.ticket import (
    CancellationResponse,
    CheckoutResponse,
    PaymentStatusResponse,
    TicketListResponse,
    TicketPurchaseInput,
    TicketResponse,
)
from app.schemas.token import TokenPayload
from app.services.ticketing.ticket_service import TicketService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tickets", tags=["Tickets"])


@router.post("", response_model=CheckoutResponse, status_code=status.HTTP_201_CREATED)
def purchase_ticket(
    purchase_in: TicketPurchaseInput,
    current_user: TokenPayload = Depends(deps.get_current_user),
    service: TicketService = Depends(deps.get_ticket_service),
):
    """
    Buy a ticket.

    Creates a pending ticket and returns the provider checkout URL the buyer
    has to be redirected to.
    """
    ticket, checkout_url = service.create_ticket(
        user_id=current_user.sub,
        event_id=purchase_in.event_id,
        includes_pickup=purchase_in.includes_pickup,
        pickup_address=purchase_in.pickup_address,
        payment_provider=purchase_in.payment_provider.value,
    )
    return CheckoutResponse(
        ticket_id=ticket.id,
        checkout_url=checkout_url,
        payment_provider=purchase_in.payment_provider,
    )


@router.get("", response_model=TicketListResponse)
def list_my_tickets(
    current_user: TokenPayload = Depends(deps.get_current_user),
    service: TicketService = Depends(deps.get_ticket_service),
):
    tickets = service.list_user_tickets(current_user.sub)
    return TicketListResponse(
        tickets=[TicketResponse.model_validate(t) for t in tickets],
        total=len(tickets),
    )


@router.get("/{ticket_id}", response_model=TicketResponse)
def get_my_ticket(
    ticket_id: str,
    current_user: TokenPayload = Depends(deps.get_current_user),
    service: TicketService = Depends(deps.get_ticket_service),
):
    return service.get_ticket(ticket_id, current_user.sub)


@router.post("/{ticket_id}/retry-checkout", response_model=CheckoutResponse)
def retry_checkout(
    ticket_id: str,
    current_user: TokenPayload = Depends(deps.get_current_user),
    service: TicketService = Depends(deps.get_ticket_service),
):
    """Get a new checkout URL for a ticket that is still pending."""
    checkout_url = service.retry_checkout(ticket_id, current_user.sub)
    ticket = service.get_ticket(ticket_id, current_user.sub)
    return CheckoutResponse(
        ticket_id=ticket.id,
        checkout_url=checkout_url,
        payment_provider=ticket.payment_provider,
    )


@router.post(
    "/{ticket_id}/confirm-payment",
    response_model=PaymentStatusResponse,
    responses={202: {"model": PaymentStatusResponse}},
)
def confirm_payment(
    ticket_id: str,
    current_user: TokenPayload = Depends(deps.get_current_user),
    service: TicketService = Depends(deps.get_ticket_service),
):
    """
    Called by the frontend when the buyer returns from checkout.

    Asks the provider once. 200 when the ticket is paid, 202 while the
    payment is still pending.
    """
    ticket_status = service.proactive_confirm(ticket_id, current_user.sub)
    body = PaymentStatusResponse(ticket_id=ticket_id, status=ticket_status)
    if ticket_status in (TicketStatus.PENDING.value, TicketStatus.PENDING_CANCELLATION.value):
        return JSONResponse(
            status_code=status.HTTP_202_ACCEPTED,
            content=body.model_dump(),
        )
    return body


@router.delete("/{ticket_id}", response_model=CancellationResponse)
def cancel_ticket(
    ticket_id: str,
    current_user: TokenPayload = Depends(deps.get_current_user),
    service: TicketService = Depends(deps.get_ticket_service),
):
    """Cancel a ticket. Paid tickets are refunded when the policy allows."""
    result = service.request_cancellation(ticket_id, current_user.sub, mode="auto")
    return CancellationResponse(
        ticket_id=result.ticket_id,
        outcome=result.outcome.value,
        status=result.status,
        refunded_amount=result.refunded_amount,
    )
