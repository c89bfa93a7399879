"""
Durable event bus on Kafka.

Publishing:
  - acks="all" + idempotent producer; a publish only succeeds once the broker
    has acknowledged it, and never waits longer than the publish timeout
  - broker trouble surfaces as BrokerUnavailableError (transient)

Subscribing (at-least-once):
  - offsets are committed manually, after the outcome of a message is settled
  - handlers return Delivery.ACK or Delivery.REQUEUE; an exception counts as REQUEUE
  - a requeue republishes the body with retry-count + 1 after a backoff
  - past max_delivery_attempts, or when the body cannot be parsed, the message
    is moved to <topic>.dlq instead
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from enum import Enum

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.errors import KafkaError
from opentelemetry import trace
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from shared.errors import BrokerUnavailableError, PoisonMessageError
from shared.events import EventHeaders
from shared.tracing import extract_context, inject_headers

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DLQ_SUFFIX = ".dlq"


class Delivery(str, Enum):
    ACK = "ack"
    REQUEUE = "requeue"


class Outcome(str, Enum):
    PROCESSED = "processed"
    RETRIED = "retried"
    DLQ = "dlq"
    REWOUND = "rewound"


def create_producer(bootstrap_servers: str, request_timeout_ms: int) -> AIOKafkaProducer:
    return AIOKafkaProducer(
        bootstrap_servers=bootstrap_servers,
        enable_idempotence=True,
        acks="all",
        request_timeout_ms=request_timeout_ms,
    )


def create_consumer(topic: str, bootstrap_servers: str, group_id: str) -> AIOKafkaConsumer:
    return AIOKafkaConsumer(
        topic,
        bootstrap_servers=bootstrap_servers,
        group_id=group_id,
        enable_auto_commit=False,
        auto_offset_reset="earliest",
    )


def _text(value: bytes) -> str:
    return value.decode(errors="replace")


def decode_headers(raw) -> dict[str, str]:
    """Header values are best effort; undecodable bytes become U+FFFD."""
    if not raw:
        return {}
    return {k: _text(v) if isinstance(v, bytes) else str(v) for k, v in raw}


# ---------------------------------------------------------------------------
# Publisher
# ---------------------------------------------------------------------------


class EventPublisher:
    """Lazily started producer; survives a broker that is down at boot time."""

    def __init__(
        self,
        producer_factory: Callable[[], AIOKafkaProducer],
        publish_timeout: float,
    ) -> None:
        self._factory = producer_factory
        self._timeout = publish_timeout
        self._producer: AIOKafkaProducer | None = None
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        try:
            await self._ensure_producer()
        except BrokerUnavailableError as exc:
            logger.warning(
                "Broker unavailable at startup: will retry on first publish",
                extra={"error": exc.message},
            )

    async def stop(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None

    async def _ensure_producer(self) -> AIOKafkaProducer:
        async with self._lock:
            if self._producer is None:
                producer = self._factory()
                try:
                    await asyncio.wait_for(producer.start(), timeout=self._timeout)
                except (asyncio.TimeoutError, KafkaError) as exc:
                    await _discard(producer)
                    raise BrokerUnavailableError(f"Could not connect to broker: {exc!r}") from exc
                self._producer = producer
            return self._producer

    async def publish(
        self,
        topic: str,
        value: bytes,
        key: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        producer = await self._ensure_producer()
        kafka_headers = [(k, v.encode()) for k, v in inject_headers(headers).items()]
        try:
            await asyncio.wait_for(
                producer.send_and_wait(
                    topic,
                    value=value,
                    key=key.encode() if key is not None else None,
                    headers=kafka_headers,
                ),
                timeout=self._timeout,
            )
        except (asyncio.TimeoutError, KafkaError) as exc:
            raise BrokerUnavailableError(
                f"Broker did not acknowledge publish to {topic}: {exc!r}"
            ) from exc


async def _discard(producer: AIOKafkaProducer) -> None:
    try:
        await producer.stop()
    except KafkaError as exc:
        logger.debug("Ignoring error while stopping a failed producer", extra={"error": str(exc)})


# ---------------------------------------------------------------------------
# Subscriber
# ---------------------------------------------------------------------------

MessageHandler = Callable[[BaseModel, EventHeaders], Awaitable[Delivery]]


class EventSubscriber:
    def __init__(
        self,
        consumer: AIOKafkaConsumer,
        publisher: EventPublisher,
        event_model: type[BaseModel],
        max_delivery_attempts: int,
        retry_backoff: float,
    ) -> None:
        self._consumer = consumer
        self._publisher = publisher
        self._event_model = event_model
        self._max_attempts = max_delivery_attempts
        self._retry_backoff = retry_backoff

    async def run(
        self,
        handler: MessageHandler,
        on_outcome: Callable[[Outcome], None] | None = None,
    ) -> None:
        """Main consumer loop. Runs until cancelled."""
        async for msg in self._consumer:
            try:
                outcome = await self.handle(msg, handler)
            except Exception:
                logger.exception(
                    "Unexpected error while handling message: rewinding",
                    extra={"topic": msg.topic, "offset": msg.offset, "partition": msg.partition},
                )
                self._consumer.seek(TopicPartition(msg.topic, msg.partition), msg.offset)
                await asyncio.sleep(self._retry_backoff)
                outcome = Outcome.REWOUND
            if on_outcome is not None:
                on_outcome(outcome)

    def _parse(self, value: bytes) -> BaseModel:
        try:
            return self._event_model.model_validate_json(value)
        except (PydanticValidationError, ValueError) as exc:
            raise PoisonMessageError(str(exc)) from exc

    async def handle(self, msg, handler: MessageHandler) -> Outcome:
        headers = decode_headers(msg.headers)
        meta = EventHeaders.from_kafka(headers)

        with tracer.start_as_current_span(
            f"kafka.consume.{msg.topic}", context=extract_context(headers)
        ):
            try:
                event = self._parse(msg.value)
            except PoisonMessageError as exc:
                logger.error(
                    "Unparseable message: sending to DLQ",
                    extra={"error": str(exc), "offset": msg.offset, "partition": msg.partition},
                )
                outcome = await self._dead_letter(msg, headers, reason=f"unparseable: {exc}")
            else:
                try:
                    delivery = await handler(event, meta)
                except Exception as exc:
                    logger.exception(
                        "Handler failed: requeueing",
                        extra={
                            "event_id": meta.event_id,
                            "correlation_id": meta.correlation_id,
                            "retry_count": meta.retry_count,
                            "error": str(exc),
                        },
                    )
                    delivery = Delivery.REQUEUE

                if delivery == Delivery.ACK:
                    outcome = Outcome.PROCESSED
                else:
                    outcome = await self._requeue(msg, headers, meta)

        if outcome != Outcome.REWOUND:
            await self._consumer.commit()
        return outcome

    async def _requeue(self, msg, headers: dict[str, str], meta: EventHeaders) -> Outcome:
        attempts = meta.retry_count + 1
        if attempts >= self._max_attempts:
            logger.error(
                "Message exceeded %d delivery attempts: sending to DLQ",
                self._max_attempts,
                extra={"event_id": meta.event_id, "correlation_id": meta.correlation_id},
            )
            return await self._dead_letter(msg, headers, reason="max delivery attempts exceeded")

        backoff = self._retry_backoff * (2 ** meta.retry_count)
        logger.info(
            "Requeueing message in %.2fs",
            backoff,
            extra={"event_id": meta.event_id, "retry_count": attempts},
        )
        await asyncio.sleep(backoff)

        retry_headers = dict(headers)
        retry_headers.update(meta.model_copy(update={"retry_count": attempts}).to_kafka())
        try:
            await self._publisher.publish(
                msg.topic,
                msg.value,
                key=_text(msg.key) if msg.key else None,
                headers=retry_headers,
            )
        except BrokerUnavailableError as exc:
            return self._rewind(msg, exc)
        return Outcome.RETRIED

    async def _dead_letter(self, msg, headers: dict[str, str], reason: str) -> Outcome:
        dlq_headers = dict(headers)
        dlq_headers["dead-letter-reason"] = reason
        dlq_headers["original-offset"] = str(msg.offset)
        try:
            await self._publisher.publish(
                msg.topic + DLQ_SUFFIX,
                msg.value,
                key=_text(msg.key) if msg.key else None,
                headers=dlq_headers,
            )
        except BrokerUnavailableError as exc:
            return self._rewind(msg, exc)
        return Outcome.DLQ

    def _rewind(self, msg, exc: BrokerUnavailableError) -> Outcome:
        # Offset stays uncommitted; seek back so this message is read again.
        logger.warning(
            "Could not republish message: rewinding",
            extra={"offset": msg.offset, "partition": msg.partition, "error": exc.message},
        )
        self._consumer.seek(TopicPartition(msg.topic, msg.partition), msg.offset)
        return Outcome.REWOUND
