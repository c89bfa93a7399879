"""
Wire contract of the inventory service.

The inventory service produces these shapes and the order service's HTTP
client parses them, so both sides import the same models.
"""

from pydantic import Field

from shared.events import CamelModel, Money


class ReservationRequest(CamelModel):
    product_id: str = Field(min_length=1)
    quantity: int = Field(gt=0)


class AvailabilityRequest(CamelModel):
    items: list[ReservationRequest] = Field(min_length=1)


class ProductSnapshot(CamelModel):
    id: str
    sku: str
    name: str
    description: str | None = None
    price: Money
    quantity: int


class AvailabilityItem(CamelModel):
    product_id: str
    available: bool
    reason: str | None = None
    available_quantity: int | None = None
    requested_quantity: int | None = None
    product: ProductSnapshot | None = None


class AvailabilityReport(CamelModel):
    available: bool
    items: list[AvailabilityItem]

    @property
    def unavailable(self) -> list[AvailabilityItem]:
        return [item for item in self.items if not item.available]


class ReserveRequest(CamelModel):
    quantity: int = Field(gt=0)
    reference: str = Field(min_length=1)


class ReservationSnapshot(CamelModel):
    """Price and name as they were when the stock was taken."""

    product_id: str
    reference: str
    product_name: str
    unit_price: Money
    quantity: int
    remaining: int


class ReleaseResult(CamelModel):
    product_id: str
    reference: str
    released: bool
    quantity: int
