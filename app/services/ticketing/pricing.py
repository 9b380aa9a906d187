# app/services/ticketing/pricing.py
from dataclasses import dataclass

from app.services.payment.provider_interface import EventInfo

DEFAULT_GROUP = "guests"


@dataclass(frozen=True)
class PriceQuote:
    price: int
    pickup_price: int
    includes_pickup: bool

    @property
    def total(self) -> int:
        return self.price + (self.pickup_price if self.includes_pickup else 0)


class PricingPolicy:
    """
    Maps (event, buyer group, pickup flag) to a charge, in cents.

    Events price each buyer group separately. Groups without their own
    price pay the default group's price.
    """

    def __init__(self, pickup_price: int, default_group: str = DEFAULT_GROUP):
        self.pickup_price = pickup_price
        self.default_group = default_group

    def base_price(self, event: EventInfo, group: str) -> int:
        prices = event.group_prices or {}
        if group in prices:
            return int(prices[group])
        if self.default_group in prices:
            return int(prices[self.default_group])
        raise ValueError(f"Event {event.id} has no price for group '{group}'")

    def quote(self, event: EventInfo, group: str, includes_pickup: bool) -> PriceQuote:
        return PriceQuote(
            price=self.base_price(event, group),
            pickup_price=self.pickup_price if includes_pickup else 0,
            includes_pickup=includes_pickup,
        )
