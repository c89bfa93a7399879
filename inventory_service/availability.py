"""
Advisory availability check.

Reads the ledger in one batch query and classifies every requested line. It
reserves nothing: a positive verdict can be stale by the time the caller
reserves, and the reservation itself re-validates.
"""

import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from inventory_service.ledger import to_snapshot
from inventory_service.metrics import AVAILABILITY_CHECKS
from inventory_service.models import StockItem
from shared.stock import AvailabilityItem, AvailabilityReport, ReservationRequest

logger = logging.getLogger(__name__)

PRODUCT_NOT_FOUND = "Product not found"
INSUFFICIENT_QUANTITY = "Insufficient quantity"


async def check(db: AsyncSession, items: list[ReservationRequest]) -> AvailabilityReport:
    product_ids = {item.product_id for item in items}
    result = await db.execute(select(StockItem).where(StockItem.id.in_(product_ids)))
    stock: dict[str, StockItem] = {s.id: s for s in result.scalars().all()}

    verdicts: list[AvailabilityItem] = []
    for item in items:
        current = stock.get(item.product_id)
        if current is None:
            verdicts.append(
                AvailabilityItem(product_id=item.product_id, available=False, reason=PRODUCT_NOT_FOUND)
            )
        elif current.quantity < item.quantity:
            verdicts.append(
                AvailabilityItem(
                    product_id=item.product_id,
                    available=False,
                    reason=INSUFFICIENT_QUANTITY,
                    available_quantity=current.quantity,
                    requested_quantity=item.quantity,
                )
            )
        else:
            verdicts.append(
                AvailabilityItem(
                    product_id=item.product_id,
                    available=True,
                    product=to_snapshot(current),
                )
            )

    report = AvailabilityReport(available=all(v.available for v in verdicts), items=verdicts)
    AVAILABILITY_CHECKS.labels("available" if report.available else "unavailable").inc()
    logger.info(
        "Availability checked",
        extra={
            "item_count": len(items),
            "available": report.available,
            "unavailable": [v.product_id for v in report.unavailable],
        },
    )
    return report
