"""Tests for AddressManager and the single-default invariant."""

import asyncio
import random

import pytest

from storesync.addresses import AddressManager
from storesync.errors import AddressNotFoundError, InvalidAddressError, NotAuthenticatedError

from .conftest import ADDRESS, USER, run


def remote_defaults(store, user_id=USER):
    docs = run(store.list(f"users/{user_id}/addresses"))
    return len(docs), [d.id for d in docs if d.data.get("isDefault")]


def address(**overrides):
    data = dict(ADDRESS)
    data.update(overrides)
    return data


@pytest.fixture
def manager(state):
    return state.addresses


class TestAdd:
    def test_first_address_becomes_default(self, store, manager):
        assert run(manager.add(USER, address(is_default=False))) is True

        assert len(manager.addresses) == 1
        assert manager.addresses[0].is_default is True
        assert remote_defaults(store)[1] == [manager.addresses[0].id]

    def test_second_address_not_default(self, store, manager):
        run(manager.add(USER, address(first_name="First")))
        run(manager.add(USER, address(first_name="Second")))

        assert manager.default_address.first_name == "First"
        count, defaults = remote_defaults(store)
        assert count == 2
        assert len(defaults) == 1

    def test_new_default_demotes_old(self, store, manager):
        run(manager.add(USER, address(first_name="First")))
        run(manager.add(USER, address(first_name="Second", is_default=True)))

        assert manager.default_address.first_name == "Second"
        assert len(remote_defaults(store)[1]) == 1

    def test_default_listed_first_then_newest(self, manager):
        run(manager.add(USER, address(first_name="A")))
        run(manager.add(USER, address(first_name="B")))
        run(manager.add(USER, address(first_name="C")))

        assert [a.first_name for a in manager.addresses] == ["A", "C", "B"]

    def test_validation(self, manager):
        with pytest.raises(InvalidAddressError):
            run(manager.add(USER, address(first_name="")))
        with pytest.raises(InvalidAddressError):
            run(manager.add(USER, address(type="cabin")))

    def test_requires_user(self, manager):
        with pytest.raises(NotAuthenticatedError):
            run(manager.add(None, address()))


class TestUpdate:
    def test_edit_fields(self, store, manager):
        run(manager.add(USER, address()))
        address_id = manager.addresses[0].id

        assert run(manager.update(USER, address_id, {"city": "Cambridge", "phone": "555"})) is True

        updated = manager.get_address(address_id)
        assert updated.city == "Cambridge"
        assert updated.phone == "555"
        assert updated.first_name == "Ada"

    def test_promote_demotes_others(self, store, manager):
        run(manager.add(USER, address(first_name="A")))
        run(manager.add(USER, address(first_name="B")))
        b = next(a for a in manager.addresses if a.first_name == "B")

        run(manager.update(USER, b.id, {"is_default": True}))

        assert remote_defaults(store)[1] == [b.id]

    def test_clearing_only_default_is_ignored(self, store, manager):
        run(manager.add(USER, address()))
        address_id = manager.addresses[0].id

        assert run(manager.update(USER, address_id, {"is_default": False})) is True

        assert remote_defaults(store)[1] == [address_id]

    def test_blanking_required_field(self, manager):
        run(manager.add(USER, address()))
        with pytest.raises(InvalidAddressError):
            run(manager.update(USER, manager.addresses[0].id, {"city": ""}))

    def test_unknown_address(self, manager):
        with pytest.raises(AddressNotFoundError):
            run(manager.update(USER, "nope", {"city": "Paris"}))


class TestDelete:
    def test_deleting_default_promotes_newest(self, store, manager):
        run(manager.add(USER, address(first_name="A")))
        run(manager.add(USER, address(first_name="B")))
        run(manager.add(USER, address(first_name="C")))
        a = manager.default_address

        assert run(manager.delete(USER, a.id)) is True

        assert manager.default_address.first_name == "C"
        count, defaults = remote_defaults(store)
        assert count == 2
        assert len(defaults) == 1

    def test_deleting_last_address(self, store, manager):
        run(manager.add(USER, address()))
        run(manager.delete(USER, manager.addresses[0].id))

        assert manager.addresses == []
        assert remote_defaults(store) == (0, [])

    def test_unknown_address(self, manager):
        with pytest.raises(AddressNotFoundError):
            run(manager.delete(USER, "nope"))


class TestSetDefault:
    def test_moves_default(self, store, manager):
        run(manager.add(USER, address(first_name="A")))
        run(manager.add(USER, address(first_name="B")))
        b = next(a for a in manager.addresses if a.first_name == "B")

        assert run(manager.set_default(USER, b.id)) is True

        assert manager.default_address.id == b.id
        assert manager.addresses[0].id == b.id
        assert remote_defaults(store)[1] == [b.id]

    def test_repairs_corrupt_set(self, store, manager):
        for doc_id in ("x", "y"):
            run(store.set(f"users/{USER}/addresses/{doc_id}", {**_doc(), "isDefault": True}))
        run(manager.load(USER))

        run(manager.set_default(USER, "y"))

        assert remote_defaults(store)[1] == ["y"]

    def test_failed_commit_changes_nothing(self, store, manager):
        run(manager.add(USER, address(first_name="A")))
        run(manager.add(USER, address(first_name="B")))
        a = manager.default_address
        b = next(x for x in manager.addresses if x.first_name == "B")
        store.fail_commits = 1

        assert run(manager.set_default(USER, b.id)) is False

        assert manager.error.startswith("Failed to update default address")
        assert remote_defaults(store)[1] == [a.id]
        assert manager.default_address.id == a.id
        assert manager.is_loading is False

    def test_concurrent_tabs(self, store):
        tab1 = AddressManager(store)
        tab2 = AddressManager(store)

        async def scenario():
            for name in ("A", "B", "C"):
                await tab1.add(USER, address(first_name=name))
            await tab2.load(USER)
            ids = [a.id for a in tab1.addresses]
            await asyncio.gather(
                tab1.set_default(USER, ids[1]),
                tab2.set_default(USER, ids[2]),
                tab1.add(USER, address(first_name="D", is_default=True)),
            )

        run(scenario())

        count, defaults = remote_defaults(store)
        assert count == 4
        assert len(defaults) == 1


def _doc():
    return {
        "type": "home",
        "firstName": "Ada",
        "lastName": "Lovelace",
        "addressLine1": "12 Analytical St",
        "city": "London",
        "state": "LDN",
        "zipCode": "N1 9GU",
        "createdAt": "2024-01-01T00:00:00Z",
        "updatedAt": "2024-01-01T00:00:00Z",
    }


class TestSingleDefaultInvariant:
    @pytest.mark.parametrize("seed", range(5))
    def test_random_operation_sequences(self, store, seed):
        rng = random.Random(seed)
        manager = AddressManager(store)

        async def scenario():
            await manager.load(USER)
            for step in range(30):
                ids = [a.id for a in manager.addresses]
                op = rng.choice(["add", "add", "update", "set_default", "delete"])
                if op == "add" or not ids:
                    await manager.add(USER, address(first_name=f"N{step}", is_default=rng.random() < 0.3))
                elif op == "update":
                    await manager.update(USER, rng.choice(ids), {"is_default": rng.random() < 0.5})
                elif op == "set_default":
                    await manager.set_default(USER, rng.choice(ids))
                else:
                    await manager.delete(USER, rng.choice(ids))

                docs = await store.list(f"users/{USER}/addresses")
                defaults = [d for d in docs if d.data.get("isDefault")]
                assert len(defaults) == (1 if docs else 0)
                assert len([a for a in manager.addresses if a.is_default]) == (1 if docs else 0)

        run(scenario())
