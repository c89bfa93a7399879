"""
Shipping Service entry point.
Consumes order.created, owns the shipment lifecycle and its durable scheduler.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from prometheus_client import make_asgi_app

from shared.events import ORDER_CREATED_TOPIC
from shared.logging import setup_logging
from shared.messaging import EventPublisher, create_consumer, create_producer
from shared.middleware import MetricsMiddleware, RequestIDMiddleware, register_error_handlers
from shared.tracing import setup_tracing
from shipping_service.config import settings
from shipping_service.consumer import run_consumer
from shipping_service.database import AsyncSessionLocal, Base, engine
from shipping_service.lifecycle import LifecyclePolicy
from shipping_service.routes import router
from shipping_service.scheduler import run_scheduler

setup_logging("shipping-service", settings.log_level)
logger = logging.getLogger(__name__)

setup_tracing("shipping-service", settings.otlp_endpoint, settings.tracing_enabled)


async def _stop(task: asyncio.Task) -> None:
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting up: creating database tables")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)

    policy = LifecyclePolicy.from_settings(settings)
    app.state.policy = policy

    publisher = EventPublisher(
        lambda: create_producer(
            settings.kafka_bootstrap_servers,
            request_timeout_ms=int(settings.kafka_publish_timeout * 1000),
        ),
        publish_timeout=settings.kafka_publish_timeout,
    )
    tasks: list[asyncio.Task] = []
    consumer = None

    if settings.consumer_enabled:
        await publisher.start()
        consumer = create_consumer(
            ORDER_CREATED_TOPIC,
            settings.kafka_bootstrap_servers,
            settings.kafka_consumer_group,
        )
        await consumer.start()
        tasks.append(
            asyncio.create_task(
                run_consumer(
                    consumer,
                    publisher,
                    AsyncSessionLocal,
                    policy,
                    max_delivery_attempts=settings.max_delivery_attempts,
                    retry_backoff=settings.retry_backoff,
                )
            )
        )
        logger.info(
            "Consumer started",
            extra={
                "topic": ORDER_CREATED_TOPIC,
                "bootstrap_servers": settings.kafka_bootstrap_servers,
                "consumer_group": settings.kafka_consumer_group,
            },
        )

    if settings.scheduler_enabled:
        tasks.append(
            asyncio.create_task(
                run_scheduler(
                    AsyncSessionLocal,
                    policy,
                    interval=settings.scheduler_interval,
                    batch_size=settings.scheduler_batch_size,
                )
            )
        )
    logger.info("Startup complete")

    yield

    for task in tasks:
        await _stop(task)
    if consumer is not None:
        await consumer.stop()
    await publisher.stop()
    await engine.dispose()
    logger.info("Shutting down")


app = FastAPI(
    title="Shipping Service",
    description="Shipment lifecycle driven by order.created events and a durable scheduler",
    version="1.0.0",
    lifespan=lifespan,
)

FastAPIInstrumentor.instrument_app(app)
app.add_middleware(
    MetricsMiddleware,
    service="shipping",
    path_patterns=[
        (r"/shipments/order/[^/]+", "/shipments/order/{order_id}"),
        (r"/shipments/track/[^/]+", "/shipments/track/{tracking_number}"),
        (r"/shipments/(?!order/|track/)[^/]+", "/shipments/{shipping_id}"),
    ],
)
app.add_middleware(RequestIDMiddleware)
register_error_handlers(app)
app.include_router(router)

# Expose Prometheus metrics at /metrics
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


@app.get("/health", tags=["health"])
async def health():
    return {"status": "ok", "service": "shipping-service"}
