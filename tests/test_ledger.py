import asyncio
from decimal import Decimal

import pytest

from inventory_service import ledger
from shared.errors import InsufficientQuantityError, NotFoundError, ValidationError


class TestReserve:
    async def test_reserve_decrements_and_snapshots_price(self, inventory_sessions, make_product):
        pid = await make_product("LAPTOP-001", "1299.99", 10)

        async with inventory_sessions() as db:
            snapshot = await ledger.reserve(db, pid, 3, "order-1")

        assert snapshot.product_name == "Laptop-001"
        assert snapshot.unit_price == Decimal("1299.99")
        assert snapshot.quantity == 3
        assert snapshot.remaining == 7

        async with inventory_sessions() as db:
            assert (await ledger.get(db, pid)).quantity == 7

    async def test_insufficient_quantity_leaves_stock_untouched(self, inventory_sessions, make_product, stock_of):
        pid = await make_product("MOUSE-001", "49.99", 2)

        async with inventory_sessions() as db:
            with pytest.raises(InsufficientQuantityError) as exc_info:
                await ledger.reserve(db, pid, 3, "order-1")

        assert exc_info.value.available == 2
        assert exc_info.value.requested == 3
        assert exc_info.value.status_code == 409
        assert await stock_of(pid) == 2

    async def test_unknown_product(self, inventory_sessions):
        async with inventory_sessions() as db:
            with pytest.raises(NotFoundError):
                await ledger.reserve(db, "does-not-exist", 1, "order-1")

    async def test_non_positive_quantity_rejected(self, inventory_sessions, make_product):
        pid = await make_product("HUB-001", "39.90", 5)
        async with inventory_sessions() as db:
            with pytest.raises(ValidationError):
                await ledger.reserve(db, pid, 0, "order-1")

    async def test_same_reference_reserves_once(self, inventory_sessions, make_product, stock_of):
        pid = await make_product("KEYB-001", "129.00", 10)

        async with inventory_sessions() as db:
            first = await ledger.reserve(db, pid, 4, "order-1")
        async with inventory_sessions() as db:
            second = await ledger.reserve(db, pid, 4, "order-1")

        assert first.quantity == second.quantity == 4
        assert await stock_of(pid) == 6

    async def test_concurrent_reservations_never_oversell(self, inventory_sessions, make_product, stock_of):
        pid = await make_product("MON-001", "329.50", 5)

        async def attempt(n: int) -> bool:
            async with inventory_sessions() as db:
                try:
                    await ledger.reserve(db, pid, 1, f"order-{n}")
                except InsufficientQuantityError:
                    return False
            return True

        results = await asyncio.gather(*(attempt(n) for n in range(12)))

        assert sum(results) == 5
        assert await stock_of(pid) == 0


class TestRelease:
    async def test_release_restores_quantity(self, inventory_sessions, make_product, stock_of):
        pid = await make_product("LAPTOP-001", "1299.99", 5)
        async with inventory_sessions() as db:
            await ledger.reserve(db, pid, 5, "order-1")
        assert await stock_of(pid) == 0

        async with inventory_sessions() as db:
            result = await ledger.release(db, pid, 5, "order-1")

        assert result.released is True
        assert result.quantity == 5
        assert await stock_of(pid) == 5

    async def test_second_release_is_a_noop(self, inventory_sessions, make_product, stock_of):
        pid = await make_product("LAPTOP-001", "1299.99", 5)
        async with inventory_sessions() as db:
            await ledger.reserve(db, pid, 2, "order-1")
        async with inventory_sessions() as db:
            await ledger.release(db, pid, 2, "order-1")
        async with inventory_sessions() as db:
            again = await ledger.release(db, pid, 2, "order-1")

        assert again.released is False
        assert await stock_of(pid) == 5

    async def test_unknown_reference_is_a_noop(self, inventory_sessions, make_product, stock_of):
        pid = await make_product("LAPTOP-001", "1299.99", 5)
        async with inventory_sessions() as db:
            result = await ledger.release(db, pid, 3, "never-reserved")

        assert result.released is False
        assert await stock_of(pid) == 5

    async def test_release_uses_reserved_quantity(self, inventory_sessions, make_product, stock_of):
        pid = await make_product("LAPTOP-001", "1299.99", 5)
        async with inventory_sessions() as db:
            await ledger.reserve(db, pid, 2, "order-1")
        async with inventory_sessions() as db:
            result = await ledger.release(db, pid, 4, "order-1")

        assert result.quantity == 2
        assert await stock_of(pid) == 5

    async def test_unknown_product(self, inventory_sessions):
        async with inventory_sessions() as db:
            with pytest.raises(NotFoundError):
                await ledger.release(db, "does-not-exist", 1, "order-1")

    async def test_released_reference_cannot_be_reserved_again(self, inventory_sessions, make_product, stock_of):
        pid = await make_product("LAPTOP-001", "1299.99", 5)
        async with inventory_sessions() as db:
            await ledger.reserve(db, pid, 1, "order-1")
        async with inventory_sessions() as db:
            await ledger.release(db, pid, 1, "order-1")
        async with inventory_sessions() as db:
            with pytest.raises(ValidationError):
                await ledger.reserve(db, pid, 1, "order-1")

        assert await stock_of(pid) == 5

    async def test_release_before_reserve_blocks_late_reserve(self, inventory_sessions, make_product, stock_of):
        pid = await make_product("LAPTOP-001", "1299.99", 10)
        async with inventory_sessions() as db:
            early = await ledger.release(db, pid, 4, "order-timed-out")
        async with inventory_sessions() as db:
            with pytest.raises(ValidationError):
                await ledger.reserve(db, pid, 4, "order-timed-out")
        async with inventory_sessions() as db:
            again = await ledger.release(db, pid, 4, "order-timed-out")

        assert early.released is False
        assert again.released is False
        assert await stock_of(pid) == 10


class TestCatalog:
    async def test_update_changes_price_and_name_only(self, inventory_sessions, make_product):
        pid = await make_product("LAPTOP-001", "1299.99", 7)

        async with inventory_sessions() as db:
            updated = await ledger.update_item(db, pid, name="Laptop Pro 16", price=Decimal("1399.00"))

        assert updated.name == "Laptop Pro 16"
        assert updated.price == Decimal("1399.00")
        assert updated.sku == "LAPTOP-001"
        assert updated.quantity == 7

    async def test_update_rejects_empty_and_unknown(self, inventory_sessions, make_product):
        pid = await make_product("LAPTOP-001", "1299.99", 7)
        async with inventory_sessions() as db:
            with pytest.raises(ValidationError):
                await ledger.update_item(db, pid)
        async with inventory_sessions() as db:
            with pytest.raises(NotFoundError):
                await ledger.update_item(db, "missing", name="x")

    async def test_restock_adds_and_removes(self, inventory_sessions, make_product, stock_of):
        pid = await make_product("HUB-001", "39.90", 3)

        async with inventory_sessions() as db:
            await ledger.restock(db, pid, 10)
        async with inventory_sessions() as db:
            await ledger.restock(db, pid, -5)

        assert await stock_of(pid) == 8

    async def test_restock_never_goes_negative(self, inventory_sessions, make_product, stock_of):
        pid = await make_product("HUB-001", "39.90", 3)

        async with inventory_sessions() as db:
            with pytest.raises(InsufficientQuantityError) as exc_info:
                await ledger.restock(db, pid, -4)

        assert exc_info.value.available == 3
        assert await stock_of(pid) == 3

    async def test_restock_unknown_product(self, inventory_sessions):
        async with inventory_sessions() as db:
            with pytest.raises(NotFoundError):
                await ledger.restock(db, "missing", 5)

    async def test_duplicate_sku_rejected(self, inventory_sessions, make_product):
        await make_product("LAPTOP-001", "1299.99", 5)
        async with inventory_sessions() as db:
            with pytest.raises(ValidationError):
                await ledger.create_item(db, sku="LAPTOP-001", name="Other", price=Decimal("1"), quantity=1)

    async def test_seed_catalog_only_fills_an_empty_table(self, inventory_sessions):
        async with inventory_sessions() as db:
            await ledger.seed_catalog(db)
        async with inventory_sessions() as db:
            await ledger.seed_catalog(db)
        async with inventory_sessions() as db:
            items = await ledger.list_items(db)

        assert len(items) == 5
        assert {i.sku for i in items} >= {"LAPTOP-001", "MOUSE-001"}

    async def test_get_unknown_product(self, inventory_sessions):
        async with inventory_sessions() as db:
            with pytest.raises(NotFoundError):
                await ledger.get(db, "missing")
