from datetime import timedelta

from sqlalchemy import select, update

from shared.events import utcnow
from shipping_service import lifecycle
from shipping_service.models import ScheduledTransition, Shipment, ShipmentStatus, TransitionState
from shipping_service.scheduler import Resolution, apply_action, fire_due


async def _pending(sessions, shipping_id) -> list[ScheduledTransition]:
    async with sessions() as db:
        result = await db.execute(
            select(ScheduledTransition).where(
                ScheduledTransition.shipping_id == shipping_id,
                ScheduledTransition.state == TransitionState.PENDING,
            )
        )
        return list(result.scalars().all())


async def _status(sessions, shipping_id) -> Shipment:
    async with sessions() as db:
        return await lifecycle.get_by_shipping_id(db, shipping_id)


class TestFireDue:
    async def test_nothing_fires_before_due(self, shipping_sessions, make_event, policy):
        async with shipping_sessions() as db:
            shipment, _ = await lifecycle.on_order_created(db, make_event(), policy)

        counts = await fire_due(shipping_sessions, policy)

        assert counts[Resolution.APPLIED] == 0
        assert (await _status(shipping_sessions, shipment.shipping_id)).status == ShipmentStatus.PROCESSING

    async def test_due_action_advances_and_schedules_next(self, shipping_sessions, make_event, policy):
        async with shipping_sessions() as db:
            shipment, _ = await lifecycle.on_order_created(db, make_event(), policy)

        counts = await fire_due(shipping_sessions, policy, now=utcnow() + timedelta(seconds=61))

        assert counts[Resolution.APPLIED] == 1
        current = await _status(shipping_sessions, shipment.shipping_id)
        assert current.status == ShipmentStatus.SHIPPED
        assert current.shipped_at is not None
        [following] = await _pending(shipping_sessions, shipment.shipping_id)
        assert (following.from_status, following.to_status) == (
            ShipmentStatus.SHIPPED,
            ShipmentStatus.IN_TRANSIT,
        )

    async def test_delivery_is_never_automatic_by_default(self, shipping_sessions, make_event, policy):
        async with shipping_sessions() as db:
            shipment, _ = await lifecycle.on_order_created(db, make_event(), policy)

        later = utcnow() + timedelta(seconds=61)
        await fire_due(shipping_sessions, policy, now=later)
        await fire_due(shipping_sessions, policy, now=later + timedelta(hours=2))

        current = await _status(shipping_sessions, shipment.shipping_id)
        assert current.status == ShipmentStatus.IN_TRANSIT
        assert await _pending(shipping_sessions, shipment.shipping_id) == []

    async def test_refiring_is_a_noop(self, shipping_sessions, make_event, policy):
        async with shipping_sessions() as db:
            shipment, _ = await lifecycle.on_order_created(db, make_event(), policy)
        [action] = await _pending(shipping_sessions, shipment.shipping_id)

        async with shipping_sessions() as db:
            first = await apply_action(db, action.id, policy)
        async with shipping_sessions() as db:
            second = await apply_action(db, action.id, policy)

        assert (first, second) == (Resolution.APPLIED, Resolution.SKIPPED)
        assert len(await _pending(shipping_sessions, shipment.shipping_id)) == 1

    async def test_stale_action_is_discarded(self, shipping_sessions, make_event, policy):
        async with shipping_sessions() as db:
            shipment, _ = await lifecycle.on_order_created(db, make_event(), policy)
        [action] = await _pending(shipping_sessions, shipment.shipping_id)
        async with shipping_sessions() as db:
            await db.execute(
                update(Shipment)
                .where(Shipment.shipping_id == shipment.shipping_id)
                .values(status=ShipmentStatus.FAILED)
            )
            await db.commit()

        async with shipping_sessions() as db:
            resolution = await apply_action(db, action.id, policy)

        assert resolution == Resolution.DISCARDED
        assert (await _status(shipping_sessions, shipment.shipping_id)).status == ShipmentStatus.FAILED

    async def test_manual_delivery_wins_over_pending_action(self, shipping_sessions, make_event, policy):
        async with shipping_sessions() as db:
            shipment, _ = await lifecycle.on_order_created(db, make_event(), policy)
        sid = shipment.shipping_id
        async with shipping_sessions() as db:
            await lifecycle.advance(db, sid, ShipmentStatus.SHIPPED, policy)
        [transit] = await _pending(shipping_sessions, sid)

        async with shipping_sessions() as db:
            await lifecycle.advance(db, sid, ShipmentStatus.DELIVERED, policy)
        delivered = await _status(shipping_sessions, sid)

        counts = await fire_due(shipping_sessions, policy, now=utcnow() + timedelta(hours=2))
        async with shipping_sessions() as db:
            late = await apply_action(db, transit.id, policy)

        assert counts[Resolution.APPLIED] == 0
        assert late == Resolution.SKIPPED
        final = await _status(shipping_sessions, sid)
        assert final.status == ShipmentStatus.DELIVERED
        assert final.actual_delivery == delivered.actual_delivery
