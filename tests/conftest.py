"""Pytest fixtures for storesync tests."""

import asyncio
import json
import tempfile
from pathlib import Path

import pytest

from storesync.config import Settings
from storesync.document_store import DocumentStore
from storesync.errors import StoreWriteError
from storesync.state import CommerceState


USER = "user_abc123"


class FlakyStore(DocumentStore):
    """In-memory store with injectable failures and delays."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_commits = 0
        self.fail_reads = 0
        self.commit_delay = 0.0
        self.commit_count = 0
        # document path -> event a commit touching it waits on
        self.held: dict[str, asyncio.Event] = {}

    async def _commit(self, writes):
        if self.commit_delay:
            await asyncio.sleep(self.commit_delay)
        for write in writes:
            event = self.held.get(write.path)
            if event is not None:
                await event.wait()
        if self.fail_commits > 0:
            self.fail_commits -= 1
            path = writes[0].path if writes else "<empty>"
            raise StoreWriteError(path, "injected failure")
        self.commit_count += 1
        return await super()._commit(writes)

    def _check_read(self, collection: str) -> None:
        if self.fail_reads > 0:
            self.fail_reads -= 1
            raise StoreWriteError(collection, "injected read failure")

    async def list(self, collection):
        self._check_read(collection)
        return await super().list(collection)

    async def list_snapshot(self, collection):
        self._check_read(collection)
        return await super().list_snapshot(collection)


def run(coro):
    """Run a coroutine to completion in a fresh event loop."""
    return asyncio.run(coro)


def make_checkout_record(
    session_id: str = "cs_test_a1b2c3d4",
    items: list[dict] | None = None,
    subtotal: str = "50.00",
    shipping: str = "5.00",
    tax: str = "4.00",
    total: str | None = "59.00",
    **extra,
) -> dict:
    """Checkout record as written by the payment flow."""
    if items is None:
        items = [{"productId": "p1", "name": "Vase", "price": 25, "quantity": 2}]
    metadata = {
        "orderItems": json.dumps(items),
        "subtotal": subtotal,
        "originalShipping": shipping,
        "originalTax": tax,
        "customerEmail": "ada@example.com",
        "customerName": "Ada Lovelace",
        "shippingFirstName": "Ada",
        "shippingLastName": "Lovelace",
        "shippingAddress1": "12 Analytical St",
        "shippingCity": "London",
        "shippingState": "LDN",
        "shippingZip": "N1 9GU",
        "shippingCountry": "GB",
        "estimatedDeliveryDays": "3-5",
        "shippingMethod": "Express",
    }
    if total is not None:
        metadata["originalTotal"] = total
    record = {
        "sessionId": session_id,
        "customer_email": "ada@example.com",
        "created": "2024-03-01T12:00:00Z",
        "metadata": metadata,
    }
    record.update(extra)
    return record


async def put_checkout_record(store: DocumentStore, user_id: str, record: dict, doc_id: str | None = None) -> str:
    doc_id = doc_id or record["sessionId"]
    await store.set(f"users/{user_id}/checkout_sessions/{doc_id}", record)
    return doc_id


PRODUCT = {
    "id": "p1",
    "name": "Ceramic Vase",
    "price": 25.0,
    "description": "Hand thrown",
    "category": "Pottery",
    "images": ["vase.jpg"],
    "inStock": True,
}

ADDRESS = {
    "type": "home",
    "first_name": "Ada",
    "last_name": "Lovelace",
    "address_line1": "12 Analytical St",
    "city": "London",
    "state": "LDN",
    "zip_code": "N1 9GU",
}


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def settings(temp_dir):
    return Settings(data_dir=temp_dir, operation_timeout=2.0)


@pytest.fixture
def store():
    """In-memory store with failure injection."""
    return FlakyStore()


@pytest.fixture
def state(store, settings):
    return CommerceState(store, settings=settings)


@pytest.fixture
def sample_checkout_record():
    return make_checkout_record()
