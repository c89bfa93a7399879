from datetime import datetime

from shared.events import CamelModel, Money, ShippingAddress
from shipping_service.models import Shipment, ShipmentStatus


class TimelineEntry(CamelModel):
    status: str
    timestamp: datetime
    description: str


class StatusUpdate(CamelModel):
    status: ShipmentStatus


class ShipmentResponse(CamelModel):
    shipping_id: str
    order_id: str
    tracking_number: str
    status: str
    customer_id: str
    customer_name: str
    customer_email: str
    shipping_address: ShippingAddress
    total_amount: Money
    carrier: str
    estimated_delivery: datetime
    shipped_at: datetime | None = None
    in_transit_at: datetime | None = None
    actual_delivery: datetime | None = None
    failed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_shipment(cls, shipment: Shipment) -> "ShipmentResponse":
        return cls(
            shipping_id=shipment.shipping_id,
            order_id=shipment.order_id,
            tracking_number=shipment.tracking_number,
            status=shipment.status.value,
            customer_id=shipment.customer_id,
            customer_name=shipment.customer_name,
            customer_email=shipment.customer_email,
            shipping_address=ShippingAddress.model_validate(shipment.shipping_address),
            total_amount=shipment.total_amount,
            carrier=shipment.carrier,
            estimated_delivery=shipment.estimated_delivery,
            shipped_at=shipment.shipped_at,
            in_transit_at=shipment.in_transit_at,
            actual_delivery=shipment.actual_delivery,
            failed_at=shipment.failed_at,
            created_at=shipment.created_at,
            updated_at=shipment.updated_at,
        )


class TrackingResponse(CamelModel):
    tracking_number: str
    shipping_id: str
    order_id: str
    status: str
    estimated_delivery: datetime
    actual_delivery: datetime | None = None
    carrier: str
    shipping_address: ShippingAddress
    timeline: list[TimelineEntry]
