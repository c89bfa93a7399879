"""
Pydantic schemas shared across all services.

The order snapshot travels inside OrderCreatedEvent, so the order service and
the shipping service read and write the same shape. Everything is camelCase on
the wire; money is Decimal in Python and a JSON number outside.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer
from pydantic.alias_generators import to_camel

ORDER_CREATED_TOPIC = "order.created"

Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )


class ShippingAddress(CamelModel):
    street: str = Field(min_length=1)
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    zip_code: str = Field(min_length=1)
    country: str = Field(min_length=1)


class LineItemSnapshot(CamelModel):
    product_id: str
    product_name: str
    quantity: int
    unit_price: Money
    line_total: Money


class OrderSnapshot(CamelModel):
    order_id: str
    customer_id: str
    customer_name: str
    customer_email: str
    line_items: list[LineItemSnapshot] = Field(min_length=1)
    total_amount: Money
    status: str
    shipping_address: ShippingAddress
    created_at: datetime


class OrderCreatedEvent(BaseModel):
    """Body of a persistent message on the order.created topic."""

    type: Literal["ORDER_CREATED"] = "ORDER_CREATED"
    timestamp: datetime = Field(default_factory=utcnow)
    data: OrderSnapshot

    model_config = {"extra": "ignore"}

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode()


class EventHeaders(BaseModel):
    """Metadata carried in Kafka headers rather than in the body."""

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    correlation_id: str = "unknown"
    retry_count: int = 0

    def to_kafka(self) -> dict[str, str]:
        return {
            "event-id": self.event_id,
            "correlation-id": self.correlation_id,
            "retry-count": str(self.retry_count),
        }

    @classmethod
    def from_kafka(cls, headers: dict[str, str]) -> "EventHeaders":
        try:
            retry_count = int(headers.get("retry-count", "0"))
        except ValueError:
            retry_count = 0
        return cls(
            event_id=headers.get("event-id") or str(uuid.uuid4()),
            correlation_id=headers.get("correlation-id", "unknown"),
            retry_count=retry_count,
        )
