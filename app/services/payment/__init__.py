# app/services/payment/__init__.py
from .provider_interface import (
    BuyerInfo,
    CheckoutClosed,
    EventInfo,
    PaymentError,
    PaymentProviderInterface,
    TicketLedger,
)
from .provider_factory import PaymentProviderFactory, get_payment_provider_factory

__all__ = [
    "BuyerInfo",
    "CheckoutClosed",
    "EventInfo",
    "PaymentError",
    "PaymentProviderInterface",
    "PaymentProviderFactory",
    "TicketLedger",
    "get_payment_provider_factory",
]
