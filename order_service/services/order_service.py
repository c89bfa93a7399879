"""
Order assembly saga.

  1. advisory availability pre-check: fail fast, no side effects
  2. reserve every line in ascending productId order, orderId as reference
  3. any reserve failure releases what was already taken (compensation),
     then reports the failing items
  4. price from the reservation-time snapshot, total = Σ lineTotal
  5. order + outbox row committed together
  6. inline publish; a broker failure is logged and left to the outbox relay
"""

import logging
import uuid
from collections import Counter
from datetime import timedelta
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from order_service.metrics import COMPENSATIONS, ORDERS
from order_service.models import Order, OrderLineItem, OrderStatus, OutboxMessage, StockCompensation
from order_service.schemas.order import CustomerInfo, InvoiceResponse, OrderCreate, OrderResponse
from order_service.services.inventory_client import InventoryClient
from order_service.services.outbox import deliver
from shared.errors import (
    InsufficientAvailabilityError,
    InsufficientQuantityError,
    NotFoundError,
    UpstreamUnavailableError,
    ValidationError,
)
from shared.events import (
    ORDER_CREATED_TOPIC,
    EventHeaders,
    LineItemSnapshot,
    OrderCreatedEvent,
    ShippingAddress,
    utcnow,
)
from shared.messaging import EventPublisher
from shared.stock import ReservationRequest, ReservationSnapshot

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _build_response(order: Order) -> OrderResponse:
    return OrderResponse(
        order_id=order.id,
        customer_id=order.customer_id,
        customer_name=order.customer_name,
        customer_email=order.customer_email,
        line_items=[
            LineItemSnapshot(
                product_id=item.product_id,
                product_name=item.product_name,
                quantity=item.quantity,
                unit_price=item.unit_price,
                line_total=item.line_total,
            )
            for item in order.line_items
        ],
        total_amount=order.total_amount,
        status=order.status.value,
        shipping_address=ShippingAddress.model_validate(order.shipping_address),
        created_at=order.created_at,
    )


async def _fetch_order(db: AsyncSession, order_id: str) -> Order | None:
    result = await db.execute(
        select(Order).where(Order.id == order_id).options(selectinload(Order.line_items))
    )
    return result.scalars().first()


def _validate(order_data: OrderCreate) -> None:
    counts = Counter(item.product_id for item in order_data.items)
    duplicates = sorted(pid for pid, n in counts.items() if n > 1)
    if duplicates:
        raise ValidationError(
            "Each product may appear only once per order",
            details=[{"productId": pid, "reason": "Duplicate line item"} for pid in duplicates],
        )


def _unavailable_detail(exc: InsufficientQuantityError | NotFoundError, item: ReservationRequest) -> dict:
    if isinstance(exc, NotFoundError):
        return {"productId": item.product_id, "available": False, "reason": "Product not found"}
    return {
        "productId": item.product_id,
        "available": False,
        "reason": "Insufficient quantity",
        "availableQuantity": exc.available,
        "requestedQuantity": exc.requested,
    }


async def _compensate(
    db: AsyncSession,
    inventory: InventoryClient,
    order_id: str,
    lines: list[tuple[str, int]],
    request_id: str,
) -> None:
    """Release every (product, quantity) taken for order_id, newest first."""
    deferred = 0
    for product_id, quantity in reversed(lines):
        try:
            await inventory.release(product_id, quantity, order_id, request_id)
            COMPENSATIONS.labels("released").inc()
        except UpstreamUnavailableError as exc:
            db.add(
                StockCompensation(
                    order_ref=order_id,
                    product_id=product_id,
                    quantity=quantity,
                    attempts=1,
                    last_error=exc.message,
                )
            )
            deferred += 1
            COMPENSATIONS.labels("deferred").inc()
            logger.error(
                "Compensation deferred: inventory unreachable",
                extra={"order_id": order_id, "product_id": product_id, "quantity": quantity},
            )
        except (NotFoundError, ValidationError) as exc:
            logger.error(
                "Compensation rejected by inventory",
                extra={"order_id": order_id, "product_id": product_id, "error": exc.message},
            )
    if deferred:
        await db.commit()
    logger.info(
        "Compensated partial reservation",
        extra={"order_id": order_id, "request_id": request_id, "lines": len(lines), "deferred": deferred},
    )


async def _reserve_all(
    db: AsyncSession,
    inventory: InventoryClient,
    order_id: str,
    items: list[ReservationRequest],
    request_id: str,
) -> dict[str, ReservationSnapshot]:
    reserved: dict[str, ReservationSnapshot] = {}
    taken: list[tuple[str, int]] = []

    # Fixed global order avoids lock-ordering deadlocks between concurrent orders.
    for item in sorted(items, key=lambda i: i.product_id):
        try:
            snapshot = await inventory.reserve(item.product_id, item.quantity, order_id, request_id)
        except (InsufficientQuantityError, NotFoundError) as exc:
            logger.warning(
                "Reservation lost a race: compensating",
                extra={"order_id": order_id, "product_id": item.product_id, "error": exc.message},
            )
            await _compensate(db, inventory, order_id, taken, request_id)
            raise InsufficientAvailabilityError(
                "Some items are not available",
                details=[_unavailable_detail(exc, item)],
            ) from exc
        except UpstreamUnavailableError:
            # Outcome of this reserve is unknown; releasing by reference is a no-op if it never landed.
            await _compensate(db, inventory, order_id, taken + [(item.product_id, item.quantity)], request_id)
            raise
        except ValidationError:
            await _compensate(db, inventory, order_id, taken, request_id)
            raise
        reserved[item.product_id] = snapshot
        taken.append((item.product_id, item.quantity))

    return reserved


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def create_order(
    db: AsyncSession,
    order_data: OrderCreate,
    request_id: str,
    inventory: InventoryClient,
    publisher: EventPublisher,
) -> OrderResponse:
    _validate(order_data)

    # 1. Advisory pre-check
    report = await inventory.check_availability(order_data.items, request_id)
    if not report.available:
        ORDERS.labels("unavailable").inc()
        raise InsufficientAvailabilityError(
            "Some items are not available",
            details=[
                item.model_dump(mode="json", by_alias=True, exclude_none=True)
                for item in report.unavailable
            ],
        )

    # 2. Reserve (all or nothing)
    order_id = str(uuid.uuid4())
    try:
        reserved = await _reserve_all(db, inventory, order_id, order_data.items, request_id)
    except InsufficientAvailabilityError:
        ORDERS.labels("unavailable").inc()
        raise
    except UpstreamUnavailableError:
        ORDERS.labels("upstream_unavailable").inc()
        raise

    # 3. Price from the reservation-time snapshot
    line_items: list[OrderLineItem] = []
    total = Decimal("0.00")
    for position, req_item in enumerate(order_data.items):
        snapshot = reserved[req_item.product_id]
        line_total = snapshot.unit_price * req_item.quantity
        total += line_total
        line_items.append(
            OrderLineItem(
                position=position,
                product_id=req_item.product_id,
                product_name=snapshot.product_name,
                quantity=req_item.quantity,
                unit_price=snapshot.unit_price,
                line_total=line_total,
            )
        )

    # 4. Persist order + outbox row atomically
    order = Order(
        id=order_id,
        customer_id=order_data.customer_id,
        customer_name=order_data.customer_name,
        customer_email=str(order_data.customer_email),
        status=OrderStatus.CONFIRMED,
        total_amount=total,
        shipping_address=order_data.shipping_address.model_dump(by_alias=True),
        created_at=utcnow(),
        line_items=line_items,
    )
    response = _build_response(order)
    event = OrderCreatedEvent(data=response)
    message = OutboxMessage(
        topic=ORDER_CREATED_TOPIC,
        key=order_id,
        payload=event.model_dump(mode="json", by_alias=True),
        headers=EventHeaders(correlation_id=request_id).to_kafka(),
    )
    db.add(order)
    db.add(message)
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Order persistence failed: releasing reservations", extra={"order_id": order_id})
        await _compensate(
            db, inventory, order_id, [(i.product_id, i.quantity) for i in order_data.items], request_id
        )
        ORDERS.labels("persistence_failed").inc()
        raise UpstreamUnavailableError("Order could not be saved, reservations were released") from exc

    ORDERS.labels("confirmed").inc()
    logger.info(
        "Order persisted, publishing order.created",
        extra={
            "order_id": order_id,
            "request_id": request_id,
            "amount": float(total),
            "item_count": len(line_items),
        },
    )

    # 5. Publish. Failure is not fatal: the relay retries from the outbox
    await deliver(db, message, publisher, path="inline")

    return response


async def get_order(db: AsyncSession, order_id: str) -> OrderResponse:
    order = await _fetch_order(db, order_id)
    if order is None:
        raise NotFoundError(f"Order {order_id} not found")
    return _build_response(order)


async def list_orders(db: AsyncSession, limit: int = 100) -> list[OrderResponse]:
    result = await db.execute(
        select(Order)
        .options(selectinload(Order.line_items))
        .order_by(Order.created_at.desc())
        .limit(limit)
    )
    return [_build_response(order) for order in result.scalars().all()]


async def build_invoice(
    db: AsyncSession,
    order_id: str,
    tax_rate: Decimal = Decimal("0.10"),
    due_days: int = 30,
) -> InvoiceResponse:
    order = await get_order(db, order_id)
    subtotal = order.total_amount
    issue_date = utcnow()
    return InvoiceResponse(
        invoice_id=f"INV-{order.order_id}",
        order_id=order.order_id,
        customer_info=CustomerInfo(
            id=order.customer_id,
            name=order.customer_name,
            email=order.customer_email,
        ),
        items=order.line_items,
        subtotal=subtotal,
        tax=subtotal * tax_rate,
        total=subtotal * (1 + tax_rate),
        issue_date=issue_date,
        due_date=issue_date + timedelta(days=due_days),
        shipping_address=order.shipping_address,
    )
