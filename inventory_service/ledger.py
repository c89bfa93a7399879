"""
Stock ledger: the only code allowed to change StockItem.quantity.

Every mutation is a single conditional UPDATE evaluated by the database:
  - reserve:  quantity = quantity - :q  WHERE quantity >= :q
  - restock:  quantity = quantity + :d  WHERE quantity + :d >= 0
  - release:  quantity = quantity + reserved quantity, gated on the
              reservation row flipping from active to released
There is no read-then-write anywhere, so concurrent reservations against the
same item cannot oversell and quantity never goes negative.
"""

import logging
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from inventory_service.metrics import RESERVATIONS
from inventory_service.models import StockItem, StockReservation
from shared.errors import InsufficientQuantityError, NotFoundError, ValidationError
from shared.events import utcnow
from shared.stock import ProductSnapshot, ReleaseResult, ReservationSnapshot

logger = logging.getLogger(__name__)

_DEMO_CATALOG = [
    {"sku": "LAPTOP-001", "name": "Laptop Pro 15", "description": "15-inch laptop, 32 GB RAM", "price": Decimal("1299.99"), "quantity": 25},
    {"sku": "MOUSE-001", "name": "Wireless Mouse", "description": "Ergonomic 2.4 GHz mouse", "price": Decimal("49.99"), "quantity": 150},
    {"sku": "KEYB-001", "name": "Mechanical Keyboard", "description": "Tenkeyless, brown switches", "price": Decimal("129.00"), "quantity": 60},
    {"sku": "MON-001", "name": "27in Monitor", "description": "1440p IPS panel", "price": Decimal("329.50"), "quantity": 30},
    {"sku": "HUB-001", "name": "USB-C Hub", "description": "7-in-1 dock", "price": Decimal("39.90"), "quantity": 80},
]


def to_snapshot(item: StockItem) -> ProductSnapshot:
    return ProductSnapshot(
        id=item.id,
        sku=item.sku,
        name=item.name,
        description=item.description,
        price=item.price,
        quantity=item.quantity,
    )


async def seed_catalog(db: AsyncSession) -> None:
    """Populate stock_items if the table is empty. Called once on startup."""
    result = await db.execute(select(StockItem).limit(1))
    if result.scalars().first() is not None:
        return
    for item_data in _DEMO_CATALOG:
        db.add(StockItem(**item_data))
    await db.commit()
    logger.info("Seeded %d stock items", len(_DEMO_CATALOG))


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


async def create_item(
    db: AsyncSession,
    sku: str,
    name: str,
    price: Decimal,
    quantity: int,
    description: str | None = None,
) -> ProductSnapshot:
    if price < 0 or quantity < 0:
        raise ValidationError("Price and quantity must not be negative")
    item = StockItem(sku=sku, name=name, description=description, price=price, quantity=quantity)
    db.add(item)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ValidationError(f"SKU already exists: {sku}") from exc
    logger.info("Stock item created", extra={"product_id": item.id, "sku": sku, "quantity": quantity})
    return to_snapshot(item)


async def list_items(db: AsyncSession) -> list[ProductSnapshot]:
    result = await db.execute(select(StockItem).order_by(StockItem.sku))
    return [to_snapshot(item) for item in result.scalars().all()]


async def update_item(
    db: AsyncSession,
    product_id: str,
    name: str | None = None,
    price: Decimal | None = None,
    description: str | None = None,
) -> ProductSnapshot:
    """Change catalog fields. Quantity is left to reserve/release/restock."""
    if price is not None and price < 0:
        raise ValidationError("Price must not be negative")
    values = {
        key: value
        for key, value in (("name", name), ("price", price), ("description", description))
        if value is not None
    }
    if not values:
        raise ValidationError("Nothing to update")

    result = await db.execute(
        update(StockItem)
        .where(StockItem.id == product_id)
        .values(**values, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await db.rollback()
        raise NotFoundError(f"Product {product_id} not found")
    await db.commit()

    logger.info("Stock item updated", extra={"product_id": product_id, "fields": sorted(values)})
    return await get(db, product_id)


async def restock(db: AsyncSession, product_id: str, delta: int) -> ProductSnapshot:
    """Adjust quantity by delta in one statement; refused if it would go negative."""
    if delta == 0:
        raise ValidationError("Quantity change must not be zero")

    result = await db.execute(
        update(StockItem)
        .where(StockItem.id == product_id, StockItem.quantity + delta >= 0)
        .values(quantity=StockItem.quantity + delta, updated_at=utcnow())
        .returning(StockItem.quantity)
        .execution_options(synchronize_session=False)
    )
    row = result.first()
    if row is None:
        await db.rollback()
        item = await _load(db, product_id)
        if item is None:
            raise NotFoundError(f"Product {product_id} not found")
        raise InsufficientQuantityError(product_id, -delta, item.quantity)
    await db.commit()

    RESERVATIONS.labels("restocked").inc()
    logger.info(
        "Stock adjusted",
        extra={"product_id": product_id, "delta": delta, "quantity": row[0]},
    )
    return await get(db, product_id)


async def _load(db: AsyncSession, product_id: str) -> StockItem | None:
    result = await db.execute(
        select(StockItem)
        .where(StockItem.id == product_id)
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def get(db: AsyncSession, product_id: str) -> ProductSnapshot:
    item = await _load(db, product_id)
    if item is None:
        raise NotFoundError(f"Product {product_id} not found")
    return to_snapshot(item)


# ---------------------------------------------------------------------------
# Reservation / release
# ---------------------------------------------------------------------------


async def _find_reservation(
    db: AsyncSession, product_id: str, reference: str
) -> StockReservation | None:
    result = await db.execute(
        select(StockReservation)
        .where(
            StockReservation.product_id == product_id,
            StockReservation.reference == reference,
        )
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def reserve(
    db: AsyncSession, product_id: str, quantity: int, reference: str
) -> ReservationSnapshot:
    if quantity <= 0:
        raise ValidationError(f"Quantity for product {product_id} must be positive")

    # Compare-and-decrement: the WHERE clause is the availability check.
    result = await db.execute(
        update(StockItem)
        .where(StockItem.id == product_id, StockItem.quantity >= quantity)
        .values(quantity=StockItem.quantity - quantity, updated_at=utcnow())
        .returning(StockItem.name, StockItem.price, StockItem.quantity)
        .execution_options(synchronize_session=False)
    )
    row = result.first()

    if row is None:
        await db.rollback()
        item = await _load(db, product_id)
        if item is None:
            RESERVATIONS.labels("not_found").inc()
            raise NotFoundError(f"Product {product_id} not found")
        RESERVATIONS.labels("insufficient").inc()
        logger.info(
            "Reservation refused: insufficient quantity",
            extra={
                "product_id": product_id,
                "reference": reference,
                "requested": quantity,
                "available": item.quantity,
            },
        )
        raise InsufficientQuantityError(product_id, quantity, item.quantity)

    name, price, remaining = row
    db.add(
        StockReservation(
            product_id=product_id,
            reference=reference,
            quantity=quantity,
            unit_price=price,
            product_name=name,
        )
    )
    try:
        await db.commit()
    except IntegrityError:
        # Same reference reserved before: undo this decrement, return the original.
        await db.rollback()
        return await _replay_reservation(db, product_id, reference)

    RESERVATIONS.labels("reserved").inc()
    logger.info(
        "Stock reserved",
        extra={
            "product_id": product_id,
            "reference": reference,
            "quantity": quantity,
            "remaining": remaining,
        },
    )
    return ReservationSnapshot(
        product_id=product_id,
        reference=reference,
        product_name=name,
        unit_price=price,
        quantity=quantity,
        remaining=remaining,
    )


async def _replay_reservation(
    db: AsyncSession, product_id: str, reference: str
) -> ReservationSnapshot:
    existing = await _find_reservation(db, product_id, reference)
    if existing is None:
        raise NotFoundError(f"Product {product_id} not found")
    if existing.released_at is not None:
        raise ValidationError(
            f"Reservation {reference} for product {product_id} was already released"
        )
    item = await _load(db, product_id)
    RESERVATIONS.labels("replayed").inc()
    logger.info(
        "Duplicate reservation request: returning existing reservation",
        extra={"product_id": product_id, "reference": reference},
    )
    return ReservationSnapshot(
        product_id=product_id,
        reference=reference,
        product_name=existing.product_name,
        unit_price=existing.unit_price,
        quantity=existing.quantity,
        remaining=item.quantity if item is not None else 0,
    )


async def _tombstone(
    db: AsyncSession, item: StockItem, quantity: int, reference: str
) -> ReleaseResult:
    """
    Record a release for a reference that was never reserved.

    A reserve still in flight for the same reference then collides on
    uq_stock_reservations_product_reference and rolls its decrement back.
    """
    product_id = item.id
    db.add(
        StockReservation(
            product_id=product_id,
            reference=reference,
            quantity=0,
            unit_price=item.price,
            product_name=item.name,
            released_at=utcnow(),
        )
    )
    try:
        await db.commit()
    except IntegrityError:
        # The reserve won the race; release it normally.
        await db.rollback()
        return await release(db, product_id, quantity, reference)

    RESERVATIONS.labels("release_before_reserve").inc()
    logger.info(
        "Release recorded before any reservation",
        extra={"product_id": product_id, "reference": reference},
    )
    return ReleaseResult(product_id=product_id, reference=reference, released=False, quantity=0)


async def release(
    db: AsyncSession, product_id: str, quantity: int, reference: str
) -> ReleaseResult:
    """
    Compensate a reservation. Already released references are a no-op.

    Releasing a reference that was never reserved leaves a released marker
    behind, so a late reserve for it cannot take stock.
    """
    result = await db.execute(
        update(StockReservation)
        .where(
            StockReservation.product_id == product_id,
            StockReservation.reference == reference,
            StockReservation.released_at.is_(None),
        )
        .values(released_at=utcnow())
        .returning(StockReservation.quantity)
        .execution_options(synchronize_session=False)
    )
    row = result.first()

    if row is None:
        await db.rollback()
        item = await _load(db, product_id)
        if item is None:
            raise NotFoundError(f"Product {product_id} not found")
        if await _find_reservation(db, product_id, reference) is None:
            return await _tombstone(db, item, quantity, reference)
        RESERVATIONS.labels("release_noop").inc()
        logger.info(
            "Nothing to release",
            extra={"product_id": product_id, "reference": reference},
        )
        return ReleaseResult(product_id=product_id, reference=reference, released=False, quantity=0)

    reserved_quantity = row[0]
    if reserved_quantity != quantity:
        logger.warning(
            "Release quantity differs from reservation: releasing reserved amount",
            extra={
                "product_id": product_id,
                "reference": reference,
                "requested": quantity,
                "reserved": reserved_quantity,
            },
        )

    await db.execute(
        update(StockItem)
        .where(StockItem.id == product_id)
        .values(quantity=StockItem.quantity + reserved_quantity, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    RESERVATIONS.labels("released").inc()
    logger.info(
        "Stock released",
        extra={"product_id": product_id, "reference": reference, "quantity": reserved_quantity},
    )
    return ReleaseResult(
        product_id=product_id,
        reference=reference,
        released=True,
        quantity=reserved_quantity,
    )
