"""Tests for CartSyncEngine."""

import asyncio

import pytest

from storesync.cart import CartSyncEngine
from storesync.errors import CartItemNotFoundError, InvalidProductError, NotAuthenticatedError

from .conftest import PRODUCT, USER, run

CART = f"users/{USER}/cart"

MUG = {"id": "m1", "name": "Mug", "price": 12.5}


async def settle():
    """Let scheduled feed deliveries run."""
    for _ in range(5):
        await asyncio.sleep(0)


def remote_lines(store):
    return {d.data["productId"]: d.data["quantity"] for d in run(store.list(CART))}


@pytest.fixture
def engine(store):
    return CartSyncEngine(store)


class TestAddItem:
    def test_add_new_product(self, store, engine):
        assert run(engine.add_item(USER, PRODUCT, 2)) is True

        item = engine.get_cart_item("p1")
        assert item.quantity == 2
        assert item.name == "Ceramic Vase"
        assert item.image == "vase.jpg"
        assert engine.is_in_cart("p1")
        assert remote_lines(store) == {"p1": 2}
        assert engine.error is None

    def test_repeat_adds_collapse(self, store, engine):
        for quantity in (1, 2, 3):
            run(engine.add_item(USER, PRODUCT, quantity))

        assert len(engine.items) == 1
        assert engine.get_cart_item("p1").quantity == 6
        assert remote_lines(store) == {"p1": 6}

    def test_concurrent_adds_collapse(self, store, engine):
        async def scenario():
            await asyncio.gather(*(engine.add_item(USER, PRODUCT, 1) for _ in range(5)))

        run(scenario())

        assert [i.product_id for i in engine.items] == ["p1"]
        assert engine.get_cart_item("p1").quantity == 5
        assert remote_lines(store) == {"p1": 5}

    def test_two_tabs_add_same_product(self, store):
        tab1 = CartSyncEngine(store)
        tab2 = CartSyncEngine(store)

        async def scenario():
            await asyncio.gather(tab1.add_item(USER, PRODUCT, 1), tab2.add_item(USER, PRODUCT, 2))

        run(scenario())

        assert remote_lines(store) == {"p1": 3}

    def test_similar_product_ids_get_separate_lines(self, store, engine):
        run(engine.add_item(USER, {**PRODUCT, "id": "sku.1"}, 1))
        run(engine.add_item(USER, {**PRODUCT, "id": "sku_1"}, 2))

        assert sorted(i.product_id for i in engine.items) == ["sku.1", "sku_1"]
        assert engine.get_cart_item("sku_1").quantity == 2
        assert remote_lines(store) == {"sku.1": 1, "sku_1": 2}

    def test_add_refuses_document_of_other_product(self, store, engine):
        run(store.set(f"{CART}/p1", {"productId": "other", "name": "Other", "price": 1, "quantity": 4}))

        assert run(engine.add_item(USER, PRODUCT, 1)) is False

        assert "not 'p1'" in engine.error
        assert remote_lines(store) == {"other": 4}

    @pytest.mark.parametrize(
        "product",
        [
            {},
            {"name": "No id", "price": 1},
            {"id": "x", "price": 1},
            {"id": "x", "name": "Negative", "price": -1},
            {"id": "x", "name": "Text price", "price": "1"},
        ],
    )
    def test_invalid_product(self, engine, product):
        with pytest.raises(InvalidProductError):
            run(engine.add_item(USER, product))

    def test_invalid_quantity(self, engine):
        with pytest.raises(InvalidProductError):
            run(engine.add_item(USER, PRODUCT, 0))

    def test_requires_user(self, engine):
        with pytest.raises(NotAuthenticatedError):
            run(engine.add_item("", PRODUCT))


class TestQuantityAndRemoval:
    def test_set_quantity(self, store, engine):
        run(engine.add_item(USER, PRODUCT, 1))

        assert run(engine.set_quantity(USER, "p1", 4)) is True

        assert engine.get_cart_item("p1").quantity == 4
        assert remote_lines(store) == {"p1": 4}

    def test_set_quantity_zero_removes_line(self, store, engine):
        run(engine.add_item(USER, PRODUCT, 2))
        run(engine.add_item(USER, MUG, 1))
        before = engine.total_items()

        assert run(engine.set_quantity(USER, "p1", 0)) is True

        assert not engine.is_in_cart("p1")
        assert engine.total_items() == before - 2
        assert remote_lines(store) == {"m1": 1}

    def test_set_quantity_unknown_product(self, engine):
        with pytest.raises(CartItemNotFoundError):
            run(engine.set_quantity(USER, "nope", 2))

    def test_remove_item(self, store, engine):
        run(engine.add_item(USER, PRODUCT, 1))

        assert run(engine.remove_item(USER, "p1")) is True

        assert engine.items == []
        assert remote_lines(store) == {}

    def test_remove_unknown_product(self, engine):
        with pytest.raises(CartItemNotFoundError):
            run(engine.remove_item(USER, "nope"))

    def test_clear(self, store, engine):
        run(engine.add_item(USER, PRODUCT, 1))
        run(engine.add_item(USER, MUG, 3))
        run(store.set(f"{CART}/other", {"productId": "other", "name": "Other", "price": 1, "quantity": 1}))

        assert run(engine.clear(USER)) is True

        assert engine.items == []
        assert remote_lines(store) == {}


class TestComputedViews:
    def test_totals(self, engine):
        run(engine.add_item(USER, PRODUCT, 2))
        run(engine.add_item(USER, MUG, 1))

        assert engine.total_items() == 3
        assert engine.total_price() == pytest.approx(62.5)

    def test_load_reads_remote_cart(self, store, engine):
        run(store.set(f"{CART}/m1", {"productId": "m1", "name": "Mug", "price": 12.5, "quantity": 2}))

        assert run(engine.load(USER)) is True

        assert engine.get_cart_item("m1").quantity == 2
        assert engine.loading is False


class TestFailures:
    def test_failed_add_reloads(self, store, engine):
        store.fail_commits = 1

        assert run(engine.add_item(USER, PRODUCT, 1)) is False

        assert "injected failure" in engine.error
        assert engine.items == []
        assert not engine.is_busy("p1")

    def test_failed_update_with_failed_reload_rolls_back(self, store, engine):
        run(engine.add_item(USER, PRODUCT, 2))
        store.fail_commits = 1
        store.fail_reads = 1

        assert run(engine.set_quantity(USER, "p1", 5)) is False

        assert engine.get_cart_item("p1").quantity == 2

    def test_failed_remove_with_failed_reload_restores_line(self, store, engine):
        run(engine.add_item(USER, PRODUCT, 2))
        store.fail_commits = 1
        store.fail_reads = 1

        assert run(engine.remove_item(USER, "p1")) is False

        assert engine.get_cart_item("p1").quantity == 2

    def test_failed_load(self, store, engine):
        store.fail_reads = 1
        assert run(engine.load(USER)) is False
        assert engine.error is not None
        assert engine.loading is False

    def test_timeout_clears_busy_state(self, store):
        engine = CartSyncEngine(store, timeout=0.05)

        async def scenario():
            store.held[f"{CART}/p1"] = asyncio.Event()
            return await engine.add_item(USER, PRODUCT, 1)

        assert run(scenario()) is False
        assert "timed out" in engine.error
        assert not engine.is_busy("p1")
        assert engine.items == []
        assert remote_lines(store) == {}


class TestLiveFeed:
    def test_busy_while_write_in_flight(self, store, engine):
        async def scenario():
            gate = store.held[f"{CART}/p1"] = asyncio.Event()
            task = asyncio.create_task(engine.add_item(USER, PRODUCT, 1))
            await settle()
            busy = engine.is_busy("p1"), engine.busy_products
            gate.set()
            await task
            return busy

        busy, products = run(scenario())
        assert busy is True
        assert products == frozenset({"p1"})
        assert not engine.is_busy("p1")

    def test_feed_follows_other_writers(self, store, engine):
        changes = []

        async def scenario():
            engine.subscribe(USER, changes.append)
            await settle()
            await store.set(f"{CART}/m1", {"productId": "m1", "name": "Mug", "price": 12.5, "quantity": 2})
            await settle()
            engine.unsubscribe()

        run(scenario())

        assert engine.get_cart_item("m1").quantity == 2
        assert len(changes) == 2
        assert changes[-1][0].product_id == "m1"

    def test_pending_write_survives_stale_snapshot(self, store, engine):
        path = f"{CART}/p1"

        async def scenario():
            engine.subscribe(USER)
            await engine.add_item(USER, PRODUCT, 1)
            await settle()

            gate = store.held[path] = asyncio.Event()
            task = asyncio.create_task(engine.set_quantity(USER, "p1", 5))
            await settle()
            optimistic = engine.get_cart_item("p1").quantity

            # Another writer commits; its snapshot still shows p1 at 1
            await store.set(f"{CART}/m1", {"productId": "m1", "name": "Mug", "price": 12.5, "quantity": 1})
            await settle()
            during = engine.get_cart_item("p1").quantity, engine.is_in_cart("m1")

            gate.set()
            assert await task
            await settle()
            confirmed = engine.get_cart_item("p1").quantity

            # Once confirmed, the feed is authoritative again
            await store.update(path, {"quantity": 9, "writerId": "other-tab", "writeSeq": 1})
            await settle()
            engine.unsubscribe()
            return optimistic, during, confirmed, engine.get_cart_item("p1").quantity

        optimistic, during, confirmed, final = run(scenario())

        assert optimistic == 5
        assert during == (5, True)
        assert confirmed == 5
        assert final == 9

    def test_pending_removal_survives_stale_snapshot(self, store, engine):
        async def scenario():
            engine.subscribe(USER)
            await engine.add_item(USER, PRODUCT, 1)
            await settle()

            gate = store.held[f"{CART}/p1"] = asyncio.Event()
            task = asyncio.create_task(engine.remove_item(USER, "p1"))
            await settle()
            await store.set(f"{CART}/m1", {"productId": "m1", "name": "Mug", "price": 12.5, "quantity": 1})
            await settle()
            during = engine.is_in_cart("p1")

            gate.set()
            await task
            await settle()
            engine.unsubscribe()
            return during

        assert run(scenario()) is False
        assert not engine.is_in_cart("p1")
        assert engine.is_in_cart("m1")

    def test_listener_not_called_after_unsubscribe(self, store, engine):
        changes = []

        async def scenario():
            unsubscribe = engine.subscribe(USER, changes.append)
            await settle()
            unsubscribe()
            await store.set(f"{CART}/m1", {"productId": "m1", "name": "Mug", "price": 12.5, "quantity": 1})
            await settle()

        run(scenario())
        assert len(changes) == 1
