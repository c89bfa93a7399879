r"""
Shipment lifecycle.

State machine:

    processing -> shipped -> in-transit -> delivered
         \___________\____________\______> failed

  - delivered and failed are terminal
  - a forward target is reached by walking every intermediate stage, so each
    stage gets its own timestamp; backward moves are rejected
  - requesting the current status is a no-op (actual_delivery is stamped once)
  - a manual change discards pending scheduled actions for the shipment, then
    schedules the next automatic step from the new state
"""

import logging
import random
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import InvalidTransitionError, NotFoundError
from shared.events import OrderCreatedEvent, utcnow
from shipping_service.metrics import SHIPMENTS_CREATED, TRANSITIONS
from shipping_service.models import ScheduledTransition, Shipment, ShipmentStatus, TransitionState
from shipping_service.schemas import TimelineEntry

logger = logging.getLogger(__name__)

DELIVERY_PATH: list[ShipmentStatus] = [
    ShipmentStatus.PROCESSING,
    ShipmentStatus.SHIPPED,
    ShipmentStatus.IN_TRANSIT,
    ShipmentStatus.DELIVERED,
]

TERMINAL_STATES: set[ShipmentStatus] = {ShipmentStatus.DELIVERED, ShipmentStatus.FAILED}


@dataclass(frozen=True)
class LifecyclePolicy:
    carrier: str = "Standard Shipping"
    lead_times: dict[str, tuple[int, int]] = field(
        default_factory=lambda: {"Standard Shipping": (5, 7)}
    )
    auto_delays: dict[str, float] = field(
        default_factory=lambda: {"shipped": 60.0, "in-transit": 3600.0}
    )

    @classmethod
    def from_settings(cls, settings) -> "LifecyclePolicy":
        return cls(
            carrier=settings.default_carrier,
            lead_times=dict(settings.carrier_lead_times),
            auto_delays=dict(settings.auto_progression_delays),
        )

    def estimated_delivery(self, now: datetime) -> datetime:
        min_days, max_days = self.lead_times.get(self.carrier, (5, 7))
        return now + timedelta(days=random.randint(min_days, max_days))


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


def transition_path(current: ShipmentStatus, target: ShipmentStatus) -> list[ShipmentStatus]:
    """Statuses to walk through, in order, to get from current to target."""
    if target == current:
        return []
    if current in TERMINAL_STATES:
        raise InvalidTransitionError(current.value, target.value)
    if target == ShipmentStatus.FAILED:
        return [ShipmentStatus.FAILED]
    here, there = DELIVERY_PATH.index(current), DELIVERY_PATH.index(target)
    if there <= here:
        raise InvalidTransitionError(current.value, target.value)
    return DELIVERY_PATH[here + 1 : there + 1]


def _enter(shipment: Shipment, status: ShipmentStatus, now: datetime) -> None:
    shipment.status = status
    shipment.updated_at = now
    if status == ShipmentStatus.SHIPPED and shipment.shipped_at is None:
        shipment.shipped_at = now
    elif status == ShipmentStatus.IN_TRANSIT and shipment.in_transit_at is None:
        shipment.in_transit_at = now
    elif status == ShipmentStatus.DELIVERED and shipment.actual_delivery is None:
        shipment.actual_delivery = now
    elif status == ShipmentStatus.FAILED and shipment.failed_at is None:
        shipment.failed_at = now


def schedule_next(
    db: AsyncSession, shipment: Shipment, now: datetime, policy: LifecyclePolicy
) -> ScheduledTransition | None:
    if shipment.status in TERMINAL_STATES:
        return None
    following = DELIVERY_PATH[DELIVERY_PATH.index(shipment.status) + 1]
    delay = policy.auto_delays.get(following.value)
    if delay is None:
        return None
    action = ScheduledTransition(
        shipping_id=shipment.shipping_id,
        from_status=shipment.status,
        to_status=following,
        due_at=now + timedelta(seconds=delay),
        state=TransitionState.PENDING,
        created_at=now,
    )
    db.add(action)
    return action


async def _discard_pending(db: AsyncSession, shipping_id: str, now: datetime) -> int:
    result = await db.execute(
        update(ScheduledTransition)
        .where(
            ScheduledTransition.shipping_id == shipping_id,
            ScheduledTransition.state == TransitionState.PENDING,
        )
        .values(state=TransitionState.DISCARDED, resolved_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


async def load_for_update(db: AsyncSession, shipping_id: str) -> Shipment | None:
    result = await db.execute(
        select(Shipment)
        .where(Shipment.shipping_id == shipping_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def _find_by(db: AsyncSession, criterion) -> Shipment | None:
    result = await db.execute(
        select(Shipment).where(criterion).execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def get_by_shipping_id(db: AsyncSession, shipping_id: str) -> Shipment:
    shipment = await _find_by(db, Shipment.shipping_id == shipping_id)
    if shipment is None:
        raise NotFoundError(f"Shipment {shipping_id} not found")
    return shipment


async def get_by_order_id(db: AsyncSession, order_id: str) -> Shipment:
    shipment = await _find_by(db, Shipment.order_id == order_id)
    if shipment is None:
        raise NotFoundError(f"No shipment found for order {order_id}")
    return shipment


async def get_by_tracking_number(db: AsyncSession, tracking_number: str) -> Shipment:
    shipment = await _find_by(db, Shipment.tracking_number == tracking_number)
    if shipment is None:
        raise NotFoundError(f"Tracking number {tracking_number} not found")
    return shipment


async def list_shipments(db: AsyncSession, limit: int = 100) -> list[Shipment]:
    result = await db.execute(select(Shipment).order_by(Shipment.created_at.desc()).limit(limit))
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def on_order_created(
    db: AsyncSession, event: OrderCreatedEvent, policy: LifecyclePolicy
) -> tuple[Shipment, bool]:
    """Create the shipment for an order. Returns (shipment, created)."""
    order = event.data

    # --- Idempotency check ---
    existing = await _find_by(db, Shipment.order_id == order.order_id)
    if existing is not None:
        SHIPMENTS_CREATED.labels("duplicate").inc()
        logger.info(
            "Shipment already exists: skipping (idempotency)",
            extra={"order_id": order.order_id, "shipping_id": existing.shipping_id},
        )
        return existing, False

    now = utcnow()
    shipment = Shipment(
        shipping_id=f"SHIP-{uuid.uuid4().hex[:12].upper()}",
        order_id=order.order_id,
        tracking_number=f"TRK{uuid.uuid4().hex[:16].upper()}",
        status=ShipmentStatus.PROCESSING,
        customer_id=order.customer_id,
        customer_name=order.customer_name,
        customer_email=order.customer_email,
        shipping_address=order.shipping_address.model_dump(by_alias=True),
        total_amount=order.total_amount,
        carrier=policy.carrier,
        estimated_delivery=policy.estimated_delivery(now),
        created_at=now,
        updated_at=now,
    )
    db.add(shipment)

    try:
        # Flush the shipment first so the due action's foreign key resolves.
        await db.flush()
        schedule_next(db, shipment, now, policy)
        await db.commit()
    except IntegrityError:
        # Lost the race to a concurrent delivery of the same event: first writer wins.
        await db.rollback()
        winner = await _find_by(db, Shipment.order_id == order.order_id)
        if winner is None:
            raise
        SHIPMENTS_CREATED.labels("duplicate").inc()
        logger.info(
            "Concurrent delivery created the shipment first: skipping",
            extra={"order_id": order.order_id, "shipping_id": winner.shipping_id},
        )
        return winner, False

    SHIPMENTS_CREATED.labels("created").inc()
    logger.info(
        "Shipment created",
        extra={
            "order_id": order.order_id,
            "shipping_id": shipment.shipping_id,
            "tracking_number": shipment.tracking_number,
            "carrier": shipment.carrier,
            "estimated_delivery": shipment.estimated_delivery.isoformat(),
        },
    )
    return shipment, True


async def advance(
    db: AsyncSession,
    shipping_id: str,
    target: ShipmentStatus,
    policy: LifecyclePolicy,
) -> Shipment:
    """Manual status update. Takes precedence over any pending scheduled action."""
    shipment = await load_for_update(db, shipping_id)
    if shipment is None:
        raise NotFoundError(f"Shipment {shipping_id} not found")

    previous = shipment.status
    try:
        steps = transition_path(previous, target)
    except InvalidTransitionError:
        logger.info(
            "Rejected shipment transition",
            extra={"shipping_id": shipping_id, "current": previous.value, "requested": target.value},
        )
        await db.commit()
        raise

    if not steps:
        # Nothing changed; commit only ends the transaction and its row lock.
        await db.commit()
        return shipment

    now = utcnow()
    for status in steps:
        _enter(shipment, status, now)
        TRANSITIONS.labels("manual", status.value).inc()

    discarded = await _discard_pending(db, shipping_id, now)
    schedule_next(db, shipment, now, policy)
    await db.commit()

    logger.info(
        "Shipment status updated",
        extra={
            "shipping_id": shipping_id,
            "from": previous.value,
            "to": shipment.status.value,
            "discarded_actions": discarded,
        },
    )
    return shipment


def timeline(shipment: Shipment) -> list[TimelineEntry]:
    """Human-readable history derived only from the shipment's persisted stamps."""
    entries = [
        TimelineEntry(
            status=ShipmentStatus.PROCESSING.value,
            timestamp=shipment.created_at,
            description="Order received and processing started",
        )
    ]
    if shipment.shipped_at is not None:
        entries.append(
            TimelineEntry(
                status=ShipmentStatus.SHIPPED.value,
                timestamp=shipment.shipped_at,
                description=f"Package shipped with {shipment.carrier}",
            )
        )
    if shipment.in_transit_at is not None:
        entries.append(
            TimelineEntry(
                status=ShipmentStatus.IN_TRANSIT.value,
                timestamp=shipment.in_transit_at,
                description="Package is in transit",
            )
        )
    if shipment.actual_delivery is not None:
        entries.append(
            TimelineEntry(
                status=ShipmentStatus.DELIVERED.value,
                timestamp=shipment.actual_delivery,
                description="Package delivered successfully",
            )
        )
    if shipment.status == ShipmentStatus.FAILED:
        entries.append(
            TimelineEntry(
                status=ShipmentStatus.FAILED.value,
                timestamp=shipment.failed_at or shipment.updated_at,
                description="Delivery failed",
            )
        )
    return entries
