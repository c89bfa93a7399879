from sqlalchemy.ext.asyncio import AsyncSession

from shared.dispatch import CommandTable
from shipping_service import lifecycle
from shipping_service.lifecycle import LifecyclePolicy
from shipping_service.models import ShipmentStatus
from shipping_service.schemas import ShipmentResponse, TrackingResponse

commands = CommandTable("shipping")


@commands.register("list_shipments")
async def list_shipments(db: AsyncSession) -> list[ShipmentResponse]:
    return [ShipmentResponse.from_shipment(s) for s in await lifecycle.list_shipments(db)]


@commands.register("get_shipment")
async def get_shipment(db: AsyncSession, shipping_id: str) -> ShipmentResponse:
    return ShipmentResponse.from_shipment(await lifecycle.get_by_shipping_id(db, shipping_id))


@commands.register("get_by_order")
async def get_by_order(db: AsyncSession, order_id: str) -> ShipmentResponse:
    return ShipmentResponse.from_shipment(await lifecycle.get_by_order_id(db, order_id))


@commands.register("track")
async def track(db: AsyncSession, tracking_number: str) -> TrackingResponse:
    shipment = await lifecycle.get_by_tracking_number(db, tracking_number)
    return TrackingResponse(
        tracking_number=shipment.tracking_number,
        shipping_id=shipment.shipping_id,
        order_id=shipment.order_id,
        status=shipment.status.value,
        estimated_delivery=shipment.estimated_delivery,
        actual_delivery=shipment.actual_delivery,
        carrier=shipment.carrier,
        shipping_address=shipment.shipping_address,
        timeline=lifecycle.timeline(shipment),
    )


@commands.register("update_status")
async def update_status(
    db: AsyncSession, shipping_id: str, target: ShipmentStatus, policy: LifecyclePolicy
) -> ShipmentResponse:
    shipment = await lifecycle.advance(db, shipping_id, target, policy)
    return ShipmentResponse.from_shipment(shipment)
