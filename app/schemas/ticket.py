# app/schemas/ticket.py
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


# ============================================
# Enums
# ============================================

class PaymentProviderCode(str, Enum):
    stripe = "stripe"
    paypal = "paypal"


class CancellationMode(str, Enum):
    auto = "auto"
    refund = "refund"
    no_refund = "no_refund"


# ============================================
# Requests
# ============================================

class TicketPurchaseInput(BaseModel):
    event_id: str
    includes_pickup: bool = False
    pickup_address: Optional[str] = Field(default=None, max_length=500)
    payment_provider: PaymentProviderCode = PaymentProviderCode.stripe

    @model_validator(mode="after")
    def _strip_address(self):
        if self.pickup_address is not None:
            self.pickup_address = self.pickup_address.strip() or None
        return self


# ============================================
# Responses
# ============================================

class CheckoutResponse(BaseModel):
    ticket_id: str
    checkout_url: str
    payment_provider: PaymentProviderCode


class PaymentStatusResponse(BaseModel):
    ticket_id: str
    status: str


class TicketResponse(BaseModel):
    id: str
    event_id: str
    status: str
    currency: str
    price: int
    includes_pickup: bool
    pickup_price: int
    pickup_address: Optional[str] = None
    total_amount: int
    payment_provider: Optional[str] = None
    refunded_amount: int = 0
    refunded_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class TicketListResponse(BaseModel):
    tickets: List[TicketResponse]
    total: int


class CancellationResponse(BaseModel):
    ticket_id: str
    outcome: str
    status: Optional[str] = None
    refunded_amount: int = 0


class EventCancellationResponse(BaseModel):
    event_id: str
    cancelled: int
    refunded: int
