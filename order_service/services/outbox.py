"""
Outbox relay and reconciliation sweep.

An order is committed together with its OutboxMessage. The inline publish in
create_order is the fast path; this module is the safety net:
  - unpublished messages older than the grace period are re-sent, oldest first
  - deferred stock releases are re-sent to the inventory service
Both loops tolerate duplicates: the shipping consumer is idempotent per
orderId and releases are idempotent per reservation reference.
"""

import asyncio
import json
import logging
from datetime import timedelta

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from order_service.metrics import COMPENSATIONS, EVENTS_PUBLISHED, OUTBOX_PENDING
from order_service.models import OutboxMessage, StockCompensation
from order_service.services.inventory_client import InventoryClient
from shared.errors import BrokerUnavailableError, NotFoundError, UpstreamUnavailableError, ValidationError
from shared.events import utcnow
from shared.messaging import EventPublisher

logger = logging.getLogger(__name__)


async def _record(db: AsyncSession, message: OutboxMessage) -> bool:
    """Commit the row's delivery bookkeeping. False if the database refused it."""
    order_id, topic = message.key, message.topic
    try:
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception(
            "Could not record outbox delivery state",
            extra={"order_id": order_id, "topic": topic},
        )
        return False
    return True


async def deliver(
    db: AsyncSession,
    message: OutboxMessage,
    publisher: EventPublisher,
    path: str,
) -> bool:
    """
    Publish one outbox row. Returns False while the row is still pending.

    A row that was published but could not be marked as such stays pending;
    the relay sends it again and the consumer absorbs the duplicate.
    """
    message.attempts += 1
    order_id, topic, attempts = message.key, message.topic, message.attempts
    try:
        await publisher.publish(
            topic,
            json.dumps(message.payload).encode(),
            key=order_id,
            headers=message.headers,
        )
    except BrokerUnavailableError as exc:
        message.last_error = exc.message
        await _record(db, message)
        EVENTS_PUBLISHED.labels(path, "failed").inc()
        logger.warning(
            "MessagingDeliveryFailure: event left in outbox for the relay",
            extra={
                "order_id": order_id,
                "topic": topic,
                "attempts": attempts,
                "error": exc.message,
            },
        )
        return False

    EVENTS_PUBLISHED.labels(path, "published").inc()
    message.published_at = utcnow()
    message.last_error = None
    if not await _record(db, message):
        return False
    logger.info(
        "Published %s event",
        topic,
        extra={"order_id": order_id, "attempts": attempts, "path": path},
    )
    return True


async def relay_pending(
    db: AsyncSession,
    publisher: EventPublisher,
    grace_period: float,
    batch_size: int,
) -> int:
    """Re-send unpublished outbox rows. Stops at the first broker failure."""
    cutoff = utcnow() - timedelta(seconds=grace_period)
    result = await db.execute(
        select(OutboxMessage)
        .where(OutboxMessage.published_at.is_(None), OutboxMessage.created_at <= cutoff)
        .order_by(OutboxMessage.created_at)
        .limit(batch_size)
    )
    published = 0
    for message in result.scalars().all():
        if not await deliver(db, message, publisher, path="relay"):
            break
        published += 1

    pending = await db.scalar(
        select(func.count()).select_from(OutboxMessage).where(OutboxMessage.published_at.is_(None))
    )
    OUTBOX_PENDING.set(pending or 0)
    if published:
        logger.info("Outbox relay published %d message(s)", published, extra={"pending": pending})
    return published


async def retry_compensations(
    db: AsyncSession,
    inventory: InventoryClient,
    batch_size: int,
) -> int:
    """Re-send deferred stock releases. Stops at the first upstream failure."""
    result = await db.execute(
        select(StockCompensation)
        .where(StockCompensation.completed_at.is_(None))
        .order_by(StockCompensation.created_at)
        .limit(batch_size)
    )
    completed = 0
    for compensation in result.scalars().all():
        compensation.attempts += 1
        try:
            await inventory.release(
                compensation.product_id,
                compensation.quantity,
                compensation.order_ref,
                request_id=f"compensation-{compensation.id}",
            )
        except UpstreamUnavailableError as exc:
            compensation.last_error = exc.message
            await db.commit()
            logger.warning(
                "Deferred release still failing",
                extra={"order_id": compensation.order_ref, "attempts": compensation.attempts},
            )
            break
        except (NotFoundError, ValidationError) as exc:
            # Nothing left to release on the inventory side.
            compensation.last_error = exc.message
        compensation.completed_at = utcnow()
        await db.commit()
        COMPENSATIONS.labels("released").inc()
        completed += 1
    return completed


async def run_relay(
    session_factory: async_sessionmaker,
    publisher: EventPublisher,
    inventory: InventoryClient,
    interval: float,
    grace_period: float,
    batch_size: int,
) -> None:
    """Background sweep. Runs until cancelled."""
    logger.info("Outbox relay started", extra={"interval_s": interval})
    while True:
        try:
            async with session_factory() as db:
                await relay_pending(db, publisher, grace_period, batch_size)
                await retry_compensations(db, inventory, batch_size)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Outbox relay sweep failed")
        await asyncio.sleep(interval)
