"""Event bus: publisher bounds and subscriber ack / requeue / dead-letter handling."""

import asyncio

import pytest
from aiokafka.errors import KafkaConnectionError
from sqlalchemy import func, select

from shared.errors import BrokerUnavailableError
from shared.events import EventHeaders, OrderCreatedEvent
from shared.messaging import Delivery, EventPublisher, EventSubscriber, Outcome
from shipping_service.consumer import make_handler
from shipping_service.models import Shipment


class FakeProducer:
    def __init__(self, hang: bool = False, refuse_start: bool = False) -> None:
        self.hang = hang
        self.refuse_start = refuse_start
        self.sent: list[dict] = []
        self.stopped = False

    async def start(self) -> None:
        if self.refuse_start:
            raise KafkaConnectionError("no brokers")

    async def stop(self) -> None:
        self.stopped = True

    async def send_and_wait(self, topic, value=None, key=None, headers=None):
        if self.hang:
            await asyncio.sleep(60)
        self.sent.append({"topic": topic, "value": value, "key": key, "headers": headers})


def _headers(**values) -> list[tuple[str, bytes]]:
    return [(k, str(v).encode()) for k, v in values.items()]


def _subscriber(consumer, publisher, max_attempts=5) -> EventSubscriber:
    return EventSubscriber(
        consumer, publisher, OrderCreatedEvent, max_delivery_attempts=max_attempts, retry_backoff=0
    )


async def _ack(event, meta):
    return Delivery.ACK


async def _requeue(event, meta):
    return Delivery.REQUEUE


class TestEventPublisher:
    async def test_publish_encodes_key_and_headers(self):
        producer = FakeProducer()
        publisher = EventPublisher(lambda: producer, publish_timeout=1.0)

        await publisher.publish("order.created", b"{}", key="order-1", headers={"event-id": "e-1"})

        [sent] = producer.sent
        assert sent["key"] == b"order-1"
        assert ("event-id", b"e-1") in sent["headers"]

    async def test_unacknowledged_publish_times_out(self):
        publisher = EventPublisher(lambda: FakeProducer(hang=True), publish_timeout=0.05)

        with pytest.raises(BrokerUnavailableError):
            await publisher.publish("order.created", b"{}")

    async def test_broker_down_at_startup_is_not_fatal(self):
        producers = [FakeProducer(refuse_start=True), FakeProducer()]
        publisher = EventPublisher(lambda: producers.pop(0), publish_timeout=1.0)

        await publisher.start()
        await publisher.publish("order.created", b"{}")

        assert producers == []


class TestEventSubscriber:
    async def test_ack_commits(self, fake_consumer, publisher, make_message, make_event):
        msg = make_message(value=make_event().to_bytes())

        outcome = await _subscriber(fake_consumer, publisher).handle(msg, _ack)

        assert outcome == Outcome.PROCESSED
        assert fake_consumer.commits == 1
        assert publisher.sent == []

    async def test_requeue_increments_retry_count(self, fake_consumer, publisher, make_message, make_event):
        msg = make_message(
            value=make_event().to_bytes(),
            key=b"order-1",
            headers=_headers(**{"event-id": "e-1", "correlation-id": "req-1", "retry-count": 1}),
        )

        outcome = await _subscriber(fake_consumer, publisher).handle(msg, _requeue)

        assert outcome == Outcome.RETRIED
        [retry] = publisher.on("order.created")
        assert retry.value == msg.value
        assert retry.key == "order-1"
        assert retry.headers["retry-count"] == "2"
        assert retry.headers["event-id"] == "e-1"
        assert retry.headers["correlation-id"] == "req-1"
        assert fake_consumer.commits == 1

    async def test_handler_exception_counts_as_requeue(self, fake_consumer, publisher, make_message, make_event):
        async def boom(event, meta):
            raise RuntimeError("database went away")

        outcome = await _subscriber(fake_consumer, publisher).handle(
            make_message(value=make_event().to_bytes()), boom
        )

        assert outcome == Outcome.RETRIED
        assert publisher.on("order.created")[0].headers["retry-count"] == "1"

    async def test_dead_letter_after_max_attempts(self, fake_consumer, publisher, make_message, make_event):
        msg = make_message(value=make_event().to_bytes(), headers=_headers(**{"retry-count": 4}))

        outcome = await _subscriber(fake_consumer, publisher, max_attempts=5).handle(msg, _requeue)

        assert outcome == Outcome.DLQ
        assert publisher.on("order.created") == []
        [dead] = publisher.on("order.created.dlq")
        assert dead.headers["dead-letter-reason"] == "max delivery attempts exceeded"
        assert fake_consumer.commits == 1

    async def test_unparseable_body_goes_straight_to_dlq(self, fake_consumer, publisher, make_message):
        called = []

        async def handler(event, meta):
            called.append(event)
            return Delivery.ACK

        outcome = await _subscriber(fake_consumer, publisher).handle(
            make_message(value=b'{"type": "ORDER_CREATED", "data": {}}'), handler
        )

        assert outcome == Outcome.DLQ
        assert called == []
        [dead] = publisher.on("order.created.dlq")
        assert dead.headers["dead-letter-reason"].startswith("unparseable")

    async def test_undecodable_headers_do_not_stop_delivery(
        self, fake_consumer, publisher, make_message, make_event
    ):
        msg = make_message(
            value=make_event().to_bytes(),
            key=b"\xff\xfeorder",
            headers=[("correlation-id", b"\xff\xfe"), ("retry-count", b"\x80")],
        )
        seen: list[EventHeaders] = []

        async def handler(event, meta):
            seen.append(meta)
            return Delivery.REQUEUE

        outcome = await _subscriber(fake_consumer, publisher).handle(msg, handler)

        assert outcome == Outcome.RETRIED
        assert seen[0].retry_count == 0
        assert "\ufffd" in seen[0].correlation_id
        [retry] = publisher.on("order.created")
        assert retry.headers["retry-count"] == "1"
        assert fake_consumer.commits == 1

    async def test_run_survives_unexpected_errors(self, fake_consumer, publisher, make_message, make_event):
        failures = [KafkaConnectionError("coordinator not available")]
        consumer = fake_consumer

        async def flaky_commit():
            if failures:
                raise failures.pop()
            consumer.commits += 1

        consumer.commit = flaky_commit
        consumer.messages = [
            make_message(value=make_event().to_bytes(), offset=0),
            make_message(value=make_event().to_bytes(), offset=1),
        ]
        outcomes: list[Outcome] = []

        await _subscriber(consumer, publisher).run(_ack, outcomes.append)

        assert outcomes == [Outcome.REWOUND, Outcome.PROCESSED]
        [(partition, offset)] = consumer.seeks
        assert (partition.topic, offset) == ("order.created", 0)
        assert consumer.commits == 1

    async def test_rewinds_when_republish_fails(self, fake_consumer, publisher, make_message, make_event):
        publisher.down = True
        msg = make_message(value=make_event().to_bytes(), offset=42)

        outcome = await _subscriber(fake_consumer, publisher).handle(msg, _requeue)

        assert outcome == Outcome.REWOUND
        assert fake_consumer.commits == 0
        [(partition, offset)] = fake_consumer.seeks
        assert (partition.topic, partition.partition, offset) == ("order.created", 0, 42)

    async def test_run_reports_each_outcome(self, fake_consumer, publisher, make_message, make_event):
        fake_consumer.messages = [
            make_message(value=make_event().to_bytes(), offset=0),
            make_message(value=b"not json", offset=1),
        ]
        outcomes: list[Outcome] = []

        await _subscriber(fake_consumer, publisher).run(_ack, outcomes.append)

        assert outcomes == [Outcome.PROCESSED, Outcome.DLQ]
        assert fake_consumer.commits == 2


class TestShipmentConsumer:
    async def test_redelivered_event_creates_one_shipment(
        self, fake_consumer, publisher, make_message, make_event, shipping_sessions, policy
    ):
        event = make_event()
        fake_consumer.messages = [
            make_message(value=event.to_bytes(), offset=n, headers=_headers(**EventHeaders().to_kafka()))
            for n in range(3)
        ]
        outcomes: list[Outcome] = []

        await _subscriber(fake_consumer, publisher).run(
            make_handler(shipping_sessions, policy), outcomes.append
        )

        assert outcomes == [Outcome.PROCESSED] * 3
        assert fake_consumer.commits == 3
        async with shipping_sessions() as db:
            count = await db.scalar(
                select(func.count()).select_from(Shipment).where(Shipment.order_id == event.data.order_id)
            )
        assert count == 1
