"""
order.created consumer for the shipping service.

Guarantees:
  - Idempotency: one shipment per orderId no matter how often the event arrives
  - At-least-once delivery: the subscriber commits the offset only after the
    shipment row is committed, or the message was requeued / dead-lettered
  - Database trouble requeues the message with an incremented retry count
"""

import logging

from aiokafka import AIOKafkaConsumer
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from shared.events import EventHeaders, OrderCreatedEvent
from shared.messaging import Delivery, EventPublisher, EventSubscriber, MessageHandler, Outcome
from shipping_service.lifecycle import LifecyclePolicy, on_order_created
from shipping_service.metrics import MESSAGES_CONSUMED

logger = logging.getLogger(__name__)


def make_handler(session_factory: async_sessionmaker, policy: LifecyclePolicy) -> MessageHandler:
    async def handle(event: OrderCreatedEvent, meta: EventHeaders) -> Delivery:
        order_id = event.data.order_id
        logger.info(
            "Received order.created event",
            extra={
                "order_id": order_id,
                "event_id": meta.event_id,
                "correlation_id": meta.correlation_id,
                "retry_count": meta.retry_count,
            },
        )
        try:
            async with session_factory() as db:
                await on_order_created(db, event, policy)
        except SQLAlchemyError as exc:
            logger.error(
                "Could not persist shipment: requeueing",
                extra={"order_id": order_id, "error": str(exc)},
            )
            return Delivery.REQUEUE
        return Delivery.ACK

    return handle


def record_outcome(outcome: Outcome) -> None:
    MESSAGES_CONSUMED.labels(outcome.value).inc()


async def run_consumer(
    consumer: AIOKafkaConsumer,
    publisher: EventPublisher,
    session_factory: async_sessionmaker,
    policy: LifecyclePolicy,
    max_delivery_attempts: int,
    retry_backoff: float,
) -> None:
    subscriber = EventSubscriber(
        consumer,
        publisher,
        OrderCreatedEvent,
        max_delivery_attempts=max_delivery_attempts,
        retry_backoff=retry_backoff,
    )
    await subscriber.run(make_handler(session_factory, policy), on_outcome=record_outcome)
