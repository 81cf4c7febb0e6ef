"""
Service-level tests for the cart.

They run against a real SQLite file per test and a running broadcaster
with fake sockets, so store constraints and fan-out are both exercised.
"""
import asyncio

import pytest
from sqlalchemy import text

from conftest import FakeWebSocket
from webshop_backend.cart import CartService
from webshop_backend.db.database import build_engine, build_session_factory
from webshop_backend.db.functions import get_cart_lines, upsert_cart_line
from webshop_backend.db.schemas import MAX_LINE_QUANTITY
from webshop_backend.errors import InvalidInput, NotFound, Unavailable, UnknownProduct
from webshop_backend.owners import CartOwner


class TestGetCart:
    @pytest.mark.asyncio
    async def test_empty_cart_is_not_an_error(self, db, carts, alice):
        cart = await carts.get_cart(db, alice)

        assert cart.owner == "user:1"
        assert cart.items == []
        assert cart.total_quantity == 0

    @pytest.mark.asyncio
    async def test_lines_are_joined_with_catalog_data(self, db, carts, alice):
        await carts.add_item(db, alice, 2, 1)

        cart = await carts.get_cart(db, alice)

        line = cart.items[0]
        assert line.product_id == 2
        assert line.name == "Smartphone"
        assert line.price == 699.99
        assert line.in_stock is True

    @pytest.mark.asyncio
    async def test_lines_keep_insertion_order(self, db, carts, alice):
        for product_id in (3, 1, 2):
            await carts.add_item(db, alice, product_id, 1)
        await carts.add_item(db, alice, 3, 1)

        cart = await carts.get_cart(db, alice)

        assert [line.product_id for line in cart.items] == [3, 1, 2]

    @pytest.mark.asyncio
    async def test_catalog_price_change_shows_in_next_read(self, db, carts, alice):
        await carts.add_item(db, alice, 1, 2)
        product = await db.execute(text("UPDATE products SET price = 10.5 WHERE id = 1"))
        await db.commit()

        cart = await carts.get_cart(db, alice)

        assert product.rowcount == 1
        assert cart.items[0].price == 10.5
        assert cart.total_price == 21.0


class TestAddItem:
    @pytest.mark.asyncio
    async def test_adding_same_product_twice_merges_quantities(self, db, carts, alice):
        await carts.add_item(db, alice, 1, 2)
        cart = await carts.add_item(db, alice, 1, 3)

        assert len(cart.items) == 1
        assert cart.items[0].quantity == 5

    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", [0, -1, None])
    async def test_non_positive_quantity_is_rejected(self, db, carts, alice, quantity):
        with pytest.raises(InvalidInput):
            await carts.add_item(db, alice, 1, quantity)

        assert (await carts.get_cart(db, alice)).items == []

    @pytest.mark.asyncio
    async def test_unknown_product_is_invalid_input(self, db, carts, alice):
        with pytest.raises(UnknownProduct) as exc_info:
            await carts.add_item(db, alice, 999, 1)

        assert isinstance(exc_info.value, InvalidInput)
        assert exc_info.value.product_id == 999

    @pytest.mark.asyncio
    async def test_out_of_stock_product_cannot_be_added(self, db, carts, inventory, alice):
        await inventory.set_availability(db, 4, False)

        with pytest.raises(InvalidInput, match="out of stock"):
            await carts.add_item(db, alice, 4, 1)

    @pytest.mark.asyncio
    async def test_concurrent_adds_yield_one_line(self, session_factory, carts, alice):
        async def add_one():
            async with session_factory() as db:
                await carts.add_item(db, alice, 1, 1)

        await asyncio.gather(*(add_one() for _ in range(25)))

        async with session_factory() as db:
            cart = await carts.get_cart(db, alice)
        assert len(cart.items) == 1
        assert cart.items[0].quantity == 25

    @pytest.mark.asyncio
    async def test_upsert_merges_without_service_lock(self, db, alice):
        await upsert_cart_line(db, alice.key, 1, 2)
        await upsert_cart_line(db, alice.key, 1, 4)
        await db.commit()

        lines = await get_cart_lines(db, alice.key)

        assert [(line.product_id, line.quantity) for line in lines] == [(1, 6)]

    @pytest.mark.asyncio
    async def test_quantity_above_cap_is_rejected(self, db, carts, alice):
        with pytest.raises(InvalidInput):
            await carts.add_item(db, alice, 1, 10 ** 20)

        assert (await carts.get_cart(db, alice)).items == []

    @pytest.mark.asyncio
    async def test_merge_past_cap_is_rejected(self, db, carts, alice):
        await carts.add_item(db, alice, 1, MAX_LINE_QUANTITY - 1)
        cart = await carts.add_item(db, alice, 1, 1)
        assert cart.items[0].quantity == MAX_LINE_QUANTITY

        with pytest.raises(InvalidInput):
            await carts.add_item(db, alice, 1, 1)

        assert (await carts.get_cart(db, alice)).items[0].quantity == MAX_LINE_QUANTITY

    @pytest.mark.asyncio
    async def test_other_owner_is_not_blocked(self, db, carts, alice, bob):
        async with carts._owner_lock(alice):
            cart = await asyncio.wait_for(carts.add_item(db, bob, 1, 1), timeout=5)

        assert cart.owner == "user:2"


class TestUpdateItem:
    @pytest.mark.asyncio
    async def test_sets_quantity(self, db, carts, alice):
        cart = await carts.add_item(db, alice, 1, 1)

        cart = await carts.update_item(db, alice, cart.items[0].id, 7)

        assert cart.items[0].quantity == 7

    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", [0, -3])
    async def test_non_positive_quantity_removes_line(self, db, carts, alice, quantity):
        cart = await carts.add_item(db, alice, 1, 1)
        await carts.add_item(db, alice, 2, 1)

        cart = await carts.update_item(db, alice, cart.items[0].id, quantity)

        assert [line.product_id for line in cart.items] == [2]
        assert [line.product_id for line in (await carts.get_cart(db, alice)).items] == [2]

    @pytest.mark.asyncio
    async def test_quantity_above_cap_is_rejected(self, db, carts, alice):
        cart = await carts.add_item(db, alice, 1, 1)

        with pytest.raises(InvalidInput):
            await carts.update_item(db, alice, cart.items[0].id, MAX_LINE_QUANTITY + 1)

        assert (await carts.get_cart(db, alice)).items[0].quantity == 1

    @pytest.mark.asyncio
    async def test_unknown_line_is_not_found(self, db, carts, alice):
        with pytest.raises(NotFound):
            await carts.update_item(db, alice, 12345, 2)

    @pytest.mark.asyncio
    async def test_cannot_touch_another_owners_line(self, db, carts, alice, bob):
        cart = await carts.add_item(db, alice, 1, 1)

        with pytest.raises(NotFound):
            await carts.update_item(db, bob, cart.items[0].id, 9)

        assert (await carts.get_cart(db, alice)).items[0].quantity == 1


class TestRemoveAndClear:
    @pytest.mark.asyncio
    async def test_remove_deletes_line(self, db, carts, alice):
        cart = await carts.add_item(db, alice, 1, 1)

        cart = await carts.remove_item(db, alice, cart.items[0].id)

        assert cart.items == []

    @pytest.mark.asyncio
    async def test_remove_missing_line_leaves_cart_unchanged(self, db, carts, alice):
        before = await carts.add_item(db, alice, 1, 2)

        after = await carts.remove_item(db, alice, 98765)

        assert after == before

    @pytest.mark.asyncio
    async def test_strict_remove_of_missing_line_is_not_found(self, db, carts, alice):
        with pytest.raises(NotFound):
            await carts.remove_item(db, alice, 98765, strict=True)

    @pytest.mark.asyncio
    async def test_clear_empties_only_that_owner(self, db, carts, alice, bob):
        await carts.add_item(db, alice, 1, 1)
        await carts.add_item(db, alice, 2, 1)
        await carts.add_item(db, bob, 1, 4)

        await carts.clear_cart(db, alice)

        assert (await carts.get_cart(db, alice)).items == []
        assert (await carts.get_cart(db, bob)).items[0].quantity == 4


class TestOwnerIsolation:
    @pytest.mark.asyncio
    async def test_mutations_never_leak_between_owners(self, db, carts, alice, bob):
        anonymous = CartOwner.anonymous()
        await carts.add_item(db, bob, 3, 1)
        before = await carts.get_cart(db, bob)

        cart = await carts.add_item(db, alice, 3, 2)
        await carts.update_item(db, alice, cart.items[0].id, 5)
        await carts.add_item(db, anonymous, 3, 1)
        await carts.clear_cart(db, alice)

        assert await carts.get_cart(db, bob) == before
        assert (await carts.get_cart(db, anonymous)).items[0].quantity == 1


class TestBroadcasts:
    @pytest.mark.asyncio
    async def test_mutation_reaches_every_connection_of_that_owner(self, db, carts, broadcaster, alice, bob):
        first, second, other = FakeWebSocket(), FakeWebSocket(), FakeWebSocket()
        await broadcaster.connect(first, alice)
        await broadcaster.connect(second, alice)
        await broadcaster.connect(other, bob)

        await carts.add_item(db, alice, 1, 2)
        await broadcaster.flush()

        for socket in (first, second):
            assert socket.kinds() == ["cart_update"]
            message = socket.sent[0]
            assert message["owner_scope"] == "user:1"
            assert message["payload"]["items"][0]["quantity"] == 2
            assert message["payload"]["total_quantity"] == 2
        assert other.sent == []

    @pytest.mark.asyncio
    async def test_clear_broadcasts_empty_cart(self, db, carts, broadcaster, alice):
        socket = FakeWebSocket()
        await carts.add_item(db, alice, 1, 1)
        await broadcaster.connect(socket, alice)

        await carts.clear_cart(db, alice)
        await broadcaster.flush()

        assert socket.sent[-1]["payload"]["items"] == []

    @pytest.mark.asyncio
    async def test_noop_remove_does_not_broadcast(self, db, carts, broadcaster, alice):
        socket = FakeWebSocket()
        await broadcaster.connect(socket, alice)

        await carts.remove_item(db, alice, 4242)
        await broadcaster.flush()

        assert socket.sent == []

    @pytest.mark.asyncio
    async def test_broadcast_failure_does_not_fail_mutation(self, db, carts, broadcaster, alice):
        dead, alive = FakeWebSocket(fail=True), FakeWebSocket()
        await broadcaster.connect(dead, alice)
        await broadcaster.connect(alive, alice)

        cart = await carts.add_item(db, alice, 1, 1)
        await broadcaster.flush()

        assert cart.items[0].quantity == 1
        assert alive.kinds() == ["cart_update"]
        assert broadcaster.connection_count == 1


class TestPushCart:
    @pytest.mark.asyncio
    async def test_snapshot_goes_to_one_connection(self, db, carts, broadcaster, alice):
        target, bystander = FakeWebSocket(), FakeWebSocket()
        connection = await broadcaster.connect(target, alice)
        await broadcaster.connect(bystander, alice)
        await carts.add_item(db, alice, 2, 1)
        await broadcaster.flush()

        await carts.push_cart(db, alice, connection)
        await broadcaster.flush()

        assert target.kinds() == ["cart_update", "cart_update"]
        assert bystander.kinds() == ["cart_update"]

    @pytest.mark.asyncio
    async def test_snapshot_never_lands_after_newer_update(self, session_factory, carts, broadcaster, alice):
        socket = FakeWebSocket()
        connection = await broadcaster.connect(socket, alice)

        async def push():
            async with session_factory() as db:
                await carts.push_cart(db, alice, connection)

        async def add():
            async with session_factory() as db:
                await carts.add_item(db, alice, 1, 1)

        for _ in range(10):
            await asyncio.gather(push(), add(), push())
        await broadcaster.flush()

        async with session_factory() as db:
            final = await carts.get_cart(db, alice)
        assert socket.sent[-1]["payload"]["total_quantity"] == final.total_quantity == 10
        totals = [m["payload"]["total_quantity"] for m in socket.sent]
        assert totals == sorted(totals)


class TestStoreFailures:
    @pytest.mark.asyncio
    async def test_missing_tables_surface_as_unavailable(self, tmp_path, broadcaster, alice):
        engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}")
        factory = build_session_factory(engine)
        service = CartService(broadcaster)
        try:
            async with factory() as db:
                with pytest.raises(Unavailable):
                    await service.get_cart(db, alice)
                with pytest.raises(Unavailable):
                    await service.add_item(db, alice, 1, 1)
        finally:
            await engine.dispose()
