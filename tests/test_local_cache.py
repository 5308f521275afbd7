"""Tests for LocalOrderCache."""

import json

import pytest

from storesync.checkout import build_order
from storesync.errors import LocalCacheError
from storesync.local_cache import LocalOrderCache
from storesync.models import OrderSource

from .conftest import USER, make_checkout_record


def local_order(session_id="cs_local"):
    order = build_order(make_checkout_record(session_id=session_id), USER, session_id)
    order.source = OrderSource.LOCAL
    return order


class TestLocalOrderCache:
    def test_missing_file_loads_empty(self, temp_dir):
        cache = LocalOrderCache(temp_dir / "local_orders.json")
        assert not cache.exists()
        assert cache.load() == []

    def test_save_keeps_only_local_orders(self, temp_dir):
        cache = LocalOrderCache(temp_dir / "local_orders.json")
        remote = build_order(make_checkout_record(session_id="cs_remote"), USER, "cs_remote")

        cache.save([local_order(), remote])

        loaded = cache.load()
        assert [o.id for o in loaded] == ["cs_local"]
        data = json.loads((temp_dir / "local_orders.json").read_text())
        assert data["schema_version"] == 1

    def test_save_creates_parent_dir(self, temp_dir):
        cache = LocalOrderCache(temp_dir / "nested" / "local_orders.json")
        cache.save([local_order()])
        assert cache.exists()

    def test_no_temp_files_left(self, temp_dir):
        cache = LocalOrderCache(temp_dir / "local_orders.json")
        cache.save([local_order()])
        assert [p.name for p in temp_dir.iterdir()] == ["local_orders.json"]

    def test_corrupt_file_raises(self, temp_dir):
        path = temp_dir / "local_orders.json"
        path.write_text(json.dumps({"orders": [{"id": "x"}]}))
        with pytest.raises(LocalCacheError):
            LocalOrderCache(path).load()

    def test_in_memory_cache(self):
        cache = LocalOrderCache(None)
        cache.save([local_order()])
        assert cache.load() == []
