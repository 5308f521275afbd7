"""Tests for CommerceState and logging setup."""

import io
import logging

from storesync.document_store import JsonDocumentStore
from storesync.logging_config import setup_logging
from storesync.state import CommerceState

from .conftest import PRODUCT, USER, make_checkout_record, put_checkout_record, run


class TestCommerceState:
    def test_components_share_store(self, state, store):
        assert state.cart.store is store
        assert state.addresses.store is store
        assert state.orders.store is store
        assert state.orders.cart is state.cart

    def test_from_settings_uses_data_dir(self, settings):
        state = CommerceState.from_settings(settings)

        assert isinstance(state.store, JsonDocumentStore)
        assert state.store.path == settings.store_path

    def test_state_survives_reopen(self, settings):
        state = CommerceState.from_settings(settings)
        run(state.cart.add_item(USER, PRODUCT, 2))

        reopened = CommerceState.from_settings(settings)
        run(reopened.load_user(USER))

        assert reopened.cart.get_cart_item("p1").quantity == 2

    def test_load_user(self, state, store):
        run(put_checkout_record(store, USER, make_checkout_record()))
        run(state.orders.reconcile(USER, "cs_test_a1b2c3d4"))
        run(state.addresses.add(USER, {
            "first_name": "Ada", "last_name": "Lovelace", "address_line1": "12 Analytical St",
            "city": "London", "state": "LDN", "zip_code": "N1 9GU",
        }))

        fresh = CommerceState(store, settings=state.settings)
        run(fresh.load_user(USER))

        assert [o.id for o in fresh.orders.orders] == ["cs_test_a1b2c3d4"]
        assert len(fresh.addresses.addresses) == 1
        assert fresh.cart.items == []


class TestLogging:
    def test_user_prefixed_messages(self, store):
        stream = io.StringIO()
        setup_logging("INFO", stream=stream)
        try:
            state = CommerceState(store)
            run(state.cart.add_item(USER, PRODUCT, 1))
        finally:
            logging.getLogger().handlers.clear()

        output = stream.getvalue()
        assert f"[User: {USER}]" in output
        assert "[PID:" in output
