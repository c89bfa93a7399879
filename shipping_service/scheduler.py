"""
Durable scheduler for automatic shipment progression.

Due actions live in scheduled_transitions, so a restart loses nothing: the
next sweep picks up whatever is overdue. Each action is resolved in its own
transaction, with the shipment row locked before the action row so the lock
order matches manual updates:
  - still pending and shipment still in from_status -> applied
  - still pending but shipment moved on              -> discarded
  - no longer pending (fired before, or superseded)   -> skipped, no effect
"""

import asyncio
import logging
import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.events import utcnow
from shipping_service.lifecycle import LifecyclePolicy, _enter, load_for_update, schedule_next
from shipping_service.metrics import SCHEDULED_ACTIONS, SCHEDULER_LAG, TRANSITIONS
from shipping_service.models import ScheduledTransition, TransitionState

logger = logging.getLogger(__name__)


class Resolution(str, Enum):
    APPLIED = "applied"
    DISCARDED = "discarded"
    SKIPPED = "skipped"


async def apply_action(
    db: AsyncSession,
    action_id: uuid.UUID,
    policy: LifecyclePolicy,
    now: datetime | None = None,
) -> Resolution:
    now = now or utcnow()
    result = await db.execute(
        select(ScheduledTransition)
        .where(ScheduledTransition.id == action_id)
        .execution_options(populate_existing=True)
    )
    action = result.scalars().first()
    if action is None or action.state != TransitionState.PENDING:
        await db.commit()
        SCHEDULED_ACTIONS.labels(Resolution.SKIPPED.value).inc()
        return Resolution.SKIPPED

    shipment = await load_for_update(db, action.shipping_id)
    applicable = shipment is not None and shipment.status == action.from_status
    resolution = Resolution.APPLIED if applicable else Resolution.DISCARDED

    claimed = await db.execute(
        update(ScheduledTransition)
        .where(
            ScheduledTransition.id == action_id,
            ScheduledTransition.state == TransitionState.PENDING,
        )
        .values(
            state=TransitionState.APPLIED if applicable else TransitionState.DISCARDED,
            resolved_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if not claimed.rowcount:
        await db.rollback()
        SCHEDULED_ACTIONS.labels(Resolution.SKIPPED.value).inc()
        return Resolution.SKIPPED

    shipping_id, to_status = action.shipping_id, action.to_status
    if applicable:
        _enter(shipment, to_status, now)
        schedule_next(db, shipment, now, policy)
        TRANSITIONS.labels("scheduled", to_status.value).inc()
    await db.commit()

    SCHEDULED_ACTIONS.labels(resolution.value).inc()
    logger.info(
        "Scheduled transition %s",
        resolution.value,
        extra={"shipping_id": shipping_id, "action_id": str(action_id), "to": to_status.value},
    )
    return resolution


async def fire_due(
    session_factory: async_sessionmaker,
    policy: LifecyclePolicy,
    batch_size: int = 100,
    now: datetime | None = None,
) -> dict[Resolution, int]:
    """Resolve every pending action due at or before now."""
    now = now or utcnow()
    async with session_factory() as db:
        result = await db.execute(
            select(ScheduledTransition.id, ScheduledTransition.due_at)
            .where(
                ScheduledTransition.state == TransitionState.PENDING,
                ScheduledTransition.due_at <= now,
            )
            .order_by(ScheduledTransition.due_at)
            .limit(batch_size)
        )
        due = result.all()

    counts = {r: 0 for r in Resolution}
    for action_id, due_at in due:
        async with session_factory() as db:
            resolution = await apply_action(db, action_id, policy, now)
        counts[resolution] += 1
        if resolution == Resolution.APPLIED:
            SCHEDULER_LAG.observe(max(0.0, (now.replace(tzinfo=None) - due_at.replace(tzinfo=None)).total_seconds()))
    return counts


async def run_scheduler(
    session_factory: async_sessionmaker,
    policy: LifecyclePolicy,
    interval: float,
    batch_size: int,
) -> None:
    """Polling loop. Runs until cancelled."""
    logger.info("Shipment scheduler started", extra={"interval_s": interval})
    while True:
        try:
            counts = await fire_due(session_factory, policy, batch_size)
            if any(counts.values()):
                logger.info(
                    "Scheduler sweep complete",
                    extra={r.value: n for r, n in counts.items()},
                )
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduler sweep failed")
        await asyncio.sleep(interval)
