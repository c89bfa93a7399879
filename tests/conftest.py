import os

# Settings are read at import time, so the environment must be in place first.
os.environ.setdefault("INVENTORY_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("INVENTORY_SEED_CATALOG", "false")
os.environ.setdefault("INVENTORY_TRACING_ENABLED", "false")
os.environ.setdefault("ORDER_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ORDER_TRACING_ENABLED", "false")
os.environ.setdefault("SHIPPING_DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SHIPPING_TRACING_ENABLED", "false")
os.environ.setdefault("SHIPPING_CONSUMER_ENABLED", "false")
os.environ.setdefault("SHIPPING_SCHEDULER_ENABLED", "false")

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

import inventory_service.models  # noqa: F401
import order_service.models  # noqa: F401
import shipping_service.models  # noqa: F401
from inventory_service import database as inventory_db
from inventory_service import ledger
from inventory_service.main import app as inventory_app
from order_service import database as order_db
from order_service.main import app as order_app
from order_service.services.inventory_client import InventoryClient
from shared.errors import BrokerUnavailableError
from shared.events import LineItemSnapshot, OrderCreatedEvent, OrderSnapshot, ShippingAddress
from shipping_service import database as shipping_db
from shipping_service.lifecycle import LifecyclePolicy
from shipping_service.main import app as shipping_app


# ---------------------------------------------------------------------------
# Databases: one sqlite file per service per test
# ---------------------------------------------------------------------------


async def _sessions(path, base):
    engine = create_async_engine(f"sqlite+aiosqlite:///{path}")
    async with engine.begin() as conn:
        await conn.run_sync(base.metadata.create_all)
    return engine, async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
async def inventory_sessions(tmp_path):
    engine, factory = await _sessions(tmp_path / "inventory.db", inventory_db.Base)
    yield factory
    await engine.dispose()


@pytest.fixture
async def order_sessions(tmp_path):
    engine, factory = await _sessions(tmp_path / "orders.db", order_db.Base)
    yield factory
    await engine.dispose()


@pytest.fixture
async def shipping_sessions(tmp_path):
    engine, factory = await _sessions(tmp_path / "shipping.db", shipping_db.Base)
    yield factory
    await engine.dispose()


def _override_db(app, dependency, factory):
    async def get_db():
        async with factory() as db:
            yield db

    app.dependency_overrides[dependency] = get_db


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------


@pytest.fixture
def make_product(inventory_sessions):
    async def make(sku: str, price: str, quantity: int, name: str | None = None) -> str:
        async with inventory_sessions() as db:
            product = await ledger.create_item(
                db, sku=sku, name=name or sku.title(), price=Decimal(price), quantity=quantity
            )
        return product.id

    return make


@pytest.fixture
def stock_of(inventory_sessions):
    async def read(product_id: str) -> int:
        async with inventory_sessions() as db:
            return (await ledger.get(db, product_id)).quantity

    return read


@pytest.fixture
async def inventory_api(inventory_sessions):
    _override_db(inventory_app, inventory_db.get_db, inventory_sessions)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=inventory_app), base_url="http://inventory"
    ) as client:
        yield client
    inventory_app.dependency_overrides.clear()


@pytest.fixture
def inventory_client(inventory_api):
    return InventoryClient(inventory_api, max_retries=1, retry_backoff=0)


# ---------------------------------------------------------------------------
# Messaging fakes
# ---------------------------------------------------------------------------


@dataclass
class Published:
    topic: str
    value: bytes
    key: str | None
    headers: dict[str, str]


class RecordingPublisher:
    """Stands in for EventPublisher; set ``down`` to simulate a broker outage."""

    def __init__(self) -> None:
        self.sent: list[Published] = []
        self.down = False

    async def publish(self, topic, value, key=None, headers=None) -> None:
        if self.down:
            raise BrokerUnavailableError("Broker did not acknowledge publish")
        self.sent.append(Published(topic, value, key, dict(headers or {})))

    def on(self, topic: str) -> list[Published]:
        return [p for p in self.sent if p.topic == topic]


@dataclass
class FakeMessage:
    value: bytes
    topic: str = "order.created"
    partition: int = 0
    offset: int = 0
    key: bytes | None = None
    headers: list = field(default_factory=list)


class FakeConsumer:
    def __init__(self, messages=()) -> None:
        self.messages = list(messages)
        self.commits = 0
        self.seeks: list[tuple] = []

    async def commit(self) -> None:
        self.commits += 1

    def seek(self, partition, offset) -> None:
        self.seeks.append((partition, offset))

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for msg in self.messages:
            yield msg


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def fake_consumer():
    return FakeConsumer()


@pytest.fixture
def make_message():
    return FakeMessage


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


@pytest.fixture
def order_payload():
    def build(items: list[tuple[str, int]], **overrides) -> dict:
        payload = {
            "customerId": "cust-1",
            "customerName": "Ada Lovelace",
            "customerEmail": "ada@example.com",
            "items": [{"productId": pid, "quantity": qty} for pid, qty in items],
            "shippingAddress": {
                "street": "1 Analytical Way",
                "city": "London",
                "state": "LDN",
                "zipCode": "N1 9GU",
                "country": "UK",
            },
        }
        payload.update(overrides)
        return payload

    return build


@pytest.fixture
async def order_api(order_sessions, inventory_client, publisher):
    _override_db(order_app, order_db.get_db, order_sessions)
    order_app.state.inventory = inventory_client
    order_app.state.publisher = publisher
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=order_app), base_url="http://orders"
    ) as client:
        yield client
    order_app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Shipping
# ---------------------------------------------------------------------------


@pytest.fixture
def policy():
    return LifecyclePolicy(
        carrier="Standard Shipping",
        lead_times={"Standard Shipping": (5, 7)},
        auto_delays={"shipped": 60.0, "in-transit": 3600.0},
    )


@pytest.fixture
def make_event():
    def build(order_id: str | None = None) -> OrderCreatedEvent:
        return OrderCreatedEvent(
            data=OrderSnapshot(
                order_id=order_id or str(uuid.uuid4()),
                customer_id="cust-1",
                customer_name="Ada Lovelace",
                customer_email="ada@example.com",
                line_items=[
                    LineItemSnapshot(
                        product_id="p-1",
                        product_name="Laptop Pro 15",
                        quantity=2,
                        unit_price=Decimal("1299.99"),
                        line_total=Decimal("2599.98"),
                    )
                ],
                total_amount=Decimal("2599.98"),
                status="confirmed",
                shipping_address=ShippingAddress(
                    street="1 Analytical Way",
                    city="London",
                    state="LDN",
                    zip_code="N1 9GU",
                    country="UK",
                ),
                created_at=datetime.now(timezone.utc),
            )
        )

    return build


@pytest.fixture
async def shipping_api(shipping_sessions, policy):
    _override_db(shipping_app, shipping_db.get_db, shipping_sessions)
    shipping_app.state.policy = policy
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=shipping_app), base_url="http://shipping"
    ) as client:
        yield client
    shipping_app.dependency_overrides.clear()
