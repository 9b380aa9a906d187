# app/services/ticketing/errors.py
"""
Errors raised by the ticketing core.

Each carries a stable machine-readable ``code`` and the HTTP status the API
layer should answer with. The exception handler in app/main.py turns them
into ``{"detail": {"code": ..., "message": ...}}`` responses.
"""


class TicketError(Exception):
    status_code = 400
    code = "ticket_error"

    def __init__(self, message: str, code: str = None, status_code: int = None):
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class TicketNotFound(TicketError):
    status_code = 404
    code = "ticket_not_found"

    def __init__(self, ticket_id: str):
        super().__init__(f"Ticket {ticket_id} not found")


class ValidationFailed(TicketError):
    """A purchase request was rejected before anything was written."""

    # Conflicts with existing state answer 409, everything else 400.
    CONFLICT_CODES = {"event_fully_booked", "duplicate_ticket"}

    def __init__(self, code: str, message: str):
        super().__init__(
            message,
            code=code,
            status_code=409 if code in self.CONFLICT_CODES else 400,
        )


class InvalidTransition(TicketError):
    status_code = 409
    code = "invalid_ticket_status"

    def __init__(self, ticket_id: str, status: str, action: str):
        self.ticket_id = ticket_id
        self.status = status
        super().__init__(f"Cannot {action} ticket {ticket_id} in status '{status}'")


class RefundNotEligible(TicketError):
    status_code = 409
    code = "refund_not_eligible"


class CheckoutFailed(TicketError):
    status_code = 502
    code = "checkout_failed"


class RefundFailed(TicketError):
    status_code = 502
    code = "refund_failed"


class DirectoryUnavailable(TicketError):
    """The event/user service could not be reached."""
    status_code = 503
    code = "directory_unavailable"
