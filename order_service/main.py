import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from prometheus_client import make_asgi_app

import order_service.models  # noqa: F401  (registers tables)
from order_service.config import settings
from order_service.database import AsyncSessionLocal, Base, engine
from order_service.routers import orders
from order_service.services.inventory_client import InventoryClient
from order_service.services.outbox import run_relay
from shared.logging import setup_logging
from shared.messaging import EventPublisher, create_producer
from shared.middleware import MetricsMiddleware, RequestIDMiddleware, register_error_handlers
from shared.tracing import setup_tracing

setup_logging("order-service", settings.log_level)
logger = logging.getLogger(__name__)

setup_tracing("order-service", settings.otlp_endpoint, settings.tracing_enabled)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting up: creating database tables")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)

    publisher = EventPublisher(
        lambda: create_producer(
            settings.kafka_bootstrap_servers,
            request_timeout_ms=int(settings.kafka_publish_timeout * 1000),
        ),
        publish_timeout=settings.kafka_publish_timeout,
    )
    await publisher.start()
    inventory = InventoryClient.create(
        settings.inventory_service_url,
        timeout=settings.inventory_timeout,
        max_retries=settings.inventory_max_retries,
        retry_backoff=settings.inventory_retry_backoff,
    )
    app.state.publisher = publisher
    app.state.inventory = inventory

    relay = asyncio.create_task(
        run_relay(
            AsyncSessionLocal,
            publisher,
            inventory,
            interval=settings.outbox_relay_interval,
            grace_period=settings.outbox_grace_period,
            batch_size=settings.outbox_batch_size,
        )
    )
    logger.info("Startup complete")

    yield

    relay.cancel()
    try:
        await relay
    except asyncio.CancelledError:
        pass
    await inventory.aclose()
    await publisher.stop()
    await engine.dispose()
    logger.info("Shutting down")


app = FastAPI(
    title="Order Service",
    description="Order assembly saga with stock reservation and outbox delivery",
    version="1.0.0",
    lifespan=lifespan,
)

FastAPIInstrumentor.instrument_app(app)
app.add_middleware(
    MetricsMiddleware,
    service="orders",
    path_patterns=[(r"/orders/[0-9a-f-]{36}", "/orders/{order_id}")],
)
app.add_middleware(RequestIDMiddleware)
register_error_handlers(app)
app.include_router(orders.router)

# Expose Prometheus metrics at /metrics
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


@app.get("/health", tags=["health"])
async def health():
    return {"status": "ok", "service": "order-service"}
