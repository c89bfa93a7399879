"""
Inventory Service entry point.
Owns the stock ledger; exposes availability checks and conditional reserve/release.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from prometheus_client import make_asgi_app

from inventory_service import ledger
from inventory_service.config import settings
from inventory_service.database import AsyncSessionLocal, Base, engine
from inventory_service.routes import router
from shared.logging import setup_logging
from shared.middleware import MetricsMiddleware, RequestIDMiddleware, register_error_handlers
from shared.tracing import setup_tracing

setup_logging("inventory-service", settings.log_level)
logger = logging.getLogger(__name__)

setup_tracing("inventory-service", settings.otlp_endpoint, settings.tracing_enabled)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting up: creating database tables")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    SQLAlchemyInstrumentor().instrument(engine=engine.sync_engine)

    if settings.seed_catalog:
        async with AsyncSessionLocal() as db:
            await ledger.seed_catalog(db)
    logger.info("Startup complete")

    yield

    await engine.dispose()
    logger.info("Shutting down")


app = FastAPI(
    title="Inventory Service",
    description="Stock ledger with atomic conditional reservation",
    version="1.0.0",
    lifespan=lifespan,
)

FastAPIInstrumentor.instrument_app(app)
app.add_middleware(
    MetricsMiddleware,
    service="inventory",
    path_patterns=[(r"/products/[^/]+", "/products/{product_id}")],
)
app.add_middleware(RequestIDMiddleware)
register_error_handlers(app)
app.include_router(router)

# Expose Prometheus metrics at /metrics
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)


@app.get("/health", tags=["health"])
async def health():
    return {"status": "ok", "service": "inventory-service"}
