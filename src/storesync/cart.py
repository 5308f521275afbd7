"""Cart sync engine.

Keeps the local cart cache consistent with ``users/{uid}/cart`` across two
independent channels: request/response writes issued by this engine, and
the store's live feed.

Feed snapshots are authoritative and replace the cache wholesale, with one
exception. Every local write takes a sequence number and leaves a *fence*
holding the optimistic value for that product. Until a snapshot shows the
write has landed (the snapshot's commit version is at or past the write's,
or the document carries this engine's writer id with a sequence number at
or past the fence), the snapshot's copy of that product is ignored and the
optimistic value kept. A failed write drops its fence and the cart is
re-read from the store.
"""

import logging
import uuid
from dataclasses import dataclass, replace
from typing import Any, Callable, Mapping

from .config import DEFAULT_OPERATION_TIMEOUT
from .document_store import CollectionSnapshot, DocumentStore, Transaction, user_collection
from .errors import CartItemNotFoundError, InvalidProductError, StoreSyncError, StoreWriteError
from .identifiers import safe_document_id
from .models import CartItem, _utc_now
from .utils import KeyedLocks, call_remote, error_message, require_user

log = logging.getLogger(__name__)

CART_COLLECTION = "cart"

CartListener = Callable[[list[CartItem]], None]


def cart_document_id(product_id: str) -> str:
    return safe_document_id(product_id)


@dataclass
class _Fence:
    """Optimistic value of a product line while a local write is unconfirmed."""

    seq: int
    item: CartItem | None  # None: line deleted locally
    previous: CartItem | None = None  # cached line before the write
    committed_version: int | None = None

    def confirmed_by(self, version: int, current: CartItem | None, writer_id: str) -> bool:
        if self.committed_version is not None and version >= self.committed_version:
            return True
        return (
            current is not None
            and current.writer_id == writer_id
            and current.write_seq >= self.seq
        )


def _product_snapshot(product: Mapping[str, Any]) -> dict[str, Any]:
    """
    Validate a product and keep the fields a cart line copies.

    Raises:
        InvalidProductError: If id, name or price are missing or invalid.
    """
    if not product:
        raise InvalidProductError("product is required")
    product_id = product.get("id") or product.get("productId")
    if not product_id:
        raise InvalidProductError("product id is required")
    if not product.get("name"):
        raise InvalidProductError("product name is required")
    price = product.get("price")
    if isinstance(price, bool) or not isinstance(price, (int, float)) or price < 0:
        raise InvalidProductError(f"invalid product price: {price!r}")

    images = list(product.get("images") or [])
    return {
        "product_id": str(product_id),
        "name": str(product["name"]),
        "price": float(price),
        "description": product.get("description") or "",
        "category": product.get("category") or "",
        "image": product.get("image") or (images[0] if images else ""),
        "images": images,
        "in_stock": product.get("inStock") is not False,
    }


class CartSyncEngine:
    """Local cart cache plus the operations that write through to the store."""

    def __init__(
        self,
        store: DocumentStore,
        timeout: float | None = DEFAULT_OPERATION_TIMEOUT,
        writer_id: str | None = None,
    ):
        self.store = store
        self.timeout = timeout
        self.writer_id = writer_id or uuid.uuid4().hex[:12]

        self.items: list[CartItem] = []
        self.loading = False
        self.error: str | None = None

        self._seq = 0
        self._fences: dict[str, _Fence] = {}
        self._busy: set[str] = set()
        self._feed_version = -1
        self._product_locks = KeyedLocks()
        self._unsubscribe: Callable[[], None] | None = None
        self._listeners: list[CartListener] = []

    # --- Computed views (never touch the store) ---

    def total_items(self) -> int:
        return sum(item.quantity for item in self.items)

    def total_price(self) -> float:
        return sum(item.price * item.quantity for item in self.items)

    def get_cart_item(self, product_id: str) -> CartItem | None:
        for item in self.items:
            if item.product_id == product_id:
                return item
        return None

    def is_in_cart(self, product_id: str) -> bool:
        return self.get_cart_item(product_id) is not None

    def is_busy(self, product_id: str) -> bool:
        """True while a write for ``product_id`` is in flight."""
        return product_id in self._busy

    @property
    def busy_products(self) -> frozenset[str]:
        return frozenset(self._busy)

    # --- Operations ---

    async def load(self, user_id: str) -> bool:
        """Replace the cache with the remote cart (pending local writes still win)."""
        user_id = require_user(user_id, "load cart")
        self.loading = True
        self.error = None
        try:
            snapshot = await call_remote(
                self.store.list_snapshot(self._collection(user_id)), "load cart", self.timeout
            )
        except (StoreSyncError, OSError) as e:
            log.error(f"[User: {user_id}] Error loading cart: {e}")
            self.error = error_message(e, "Failed to load cart")
            return False
        finally:
            self.loading = False

        self._merge(snapshot)
        log.info(f"[User: {user_id}] Loaded {len(self.items)} cart items")
        return True

    async def add_item(self, user_id: str, product: Mapping[str, Any], quantity: int = 1) -> bool:
        """
        Add ``quantity`` of a product.

        If the product already has a line, its quantity is increased instead;
        a product never gets a second line.

        Raises:
            NotAuthenticatedError: If ``user_id`` is missing.
            InvalidProductError: If the product snapshot or quantity is invalid.
        """
        user_id = require_user(user_id, "add to cart")
        snapshot = _product_snapshot(product)
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise InvalidProductError(f"quantity must be a positive integer: {quantity!r}")

        product_id = snapshot["product_id"]
        async with self._product_locks.get(product_id):
            existing = self.get_cart_item(product_id)
            if existing is not None:
                log.info(
                    f"[User: {user_id}] {product_id} already in cart, "
                    f"raising quantity {existing.quantity} -> {existing.quantity + quantity}"
                )
                return await self._set_quantity(user_id, product_id, existing.quantity + quantity)
            return await self._create_line(user_id, snapshot, quantity)

    async def set_quantity(self, user_id: str, product_id: str, quantity: int) -> bool:
        """
        Set a line's quantity; a quantity of zero or less removes the line.

        Raises:
            NotAuthenticatedError: If ``user_id`` is missing.
            CartItemNotFoundError: If the product has no line in the cache.
        """
        user_id = require_user(user_id, "update cart item")
        async with self._product_locks.get(product_id):
            return await self._set_quantity(user_id, product_id, quantity)

    async def remove_item(self, user_id: str, product_id: str) -> bool:
        """
        Delete a product's line.

        Raises:
            NotAuthenticatedError: If ``user_id`` is missing.
            CartItemNotFoundError: If the product has no line in the cache.
        """
        user_id = require_user(user_id, "remove from cart")
        async with self._product_locks.get(product_id):
            return await self._remove(user_id, product_id)

    async def clear(self, user_id: str) -> bool:
        """Delete every line of the remote cart in one atomic batch."""
        user_id = require_user(user_id, "clear cart")
        self.loading = True
        self.error = None

        seq = self._next_seq()
        fences = {item.product_id: self._fence(item.product_id, None, seq) for item in list(self.items)}
        self._busy.update(fences)
        try:
            documents = await call_remote(
                self.store.list(self._collection(user_id)), "clear cart", self.timeout
            )
            batch = self.store.batch()
            for doc in documents:
                product_id = str(doc.data.get("productId") or doc.id)
                if product_id not in fences:
                    fences[product_id] = self._fence(product_id, None, seq)
                batch.delete(doc.path)
            version = await call_remote(batch.commit(), "clear cart", self.timeout)
        except (StoreSyncError, OSError) as e:
            await self._write_failed(user_id, fences, e, "Failed to clear cart")
            return False
        finally:
            self._busy.difference_update(fences)
            self.loading = False

        for fence in fences.values():
            fence.committed_version = version
        log.info(f"[User: {user_id}] Cart cleared ({len(fences)} lines)")
        return True

    def subscribe(self, user_id: str, on_change: CartListener | None = None) -> Callable[[], None]:
        """
        Follow the remote cart through the store's live feed.

        Only one feed is active per engine; subscribing again replaces it.
        Must be called with a running event loop.

        Returns:
            A callable that stops the feed.
        """
        user_id = require_user(user_id, "subscribe to cart")
        self.unsubscribe()
        if on_change is not None:
            self._listeners.append(on_change)
        self._unsubscribe = self.store.subscribe(
            self._collection(user_id), self._on_snapshot, self._on_feed_error
        )
        log.info(f"[User: {user_id}] Subscribed to cart changes")
        return self.unsubscribe

    def unsubscribe(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._listeners.clear()

    # --- Write paths ---

    async def _create_line(self, user_id: str, snapshot: dict[str, Any], quantity: int) -> bool:
        product_id = snapshot["product_id"]
        seq = self._next_seq()
        now = _utc_now()
        doc_id = cart_document_id(product_id)
        path = f"{self._collection(user_id)}/{doc_id}"
        item = CartItem(
            id=doc_id,
            quantity=quantity,
            added_at=now,
            updated_at=now,
            write_seq=seq,
            writer_id=self.writer_id,
            **snapshot,
        )
        fence = self._fence(product_id, item, seq)
        self._busy.add(product_id)
        self.error = None

        txns: list[Transaction] = []

        async def create_or_increment(txn: Transaction) -> CartItem:
            txns.append(txn)
            current = await txn.get(path)
            if current is None:
                txn.set(path, item.to_dict())
                return item
            if current.get("productId") != product_id:
                raise StoreWriteError(
                    path, f"document holds product {current.get('productId')!r}, not {product_id!r}"
                )
            # Another writer created the line since our cache was filled
            merged = CartItem.from_dict(doc_id, current)
            merged = replace(
                merged,
                quantity=merged.quantity + quantity,
                updated_at=now,
                write_seq=seq,
                writer_id=self.writer_id,
            )
            txn.update(
                path,
                {
                    "quantity": merged.quantity,
                    "updatedAt": now,
                    "writeSeq": seq,
                    "writerId": self.writer_id,
                },
            )
            return merged

        try:
            result = await call_remote(
                self.store.run_transaction(f"users/{user_id}", create_or_increment),
                "add to cart",
                self.timeout,
            )
        except (StoreSyncError, OSError) as e:
            await self._write_failed(user_id, {product_id: fence}, e, "Failed to add to cart")
            return False
        finally:
            self._busy.discard(product_id)

        fence.item = result
        fence.committed_version = txns[-1].committed_version
        self._put_local(product_id, result)
        log.info(f"[User: {user_id}] Added {product_id} x{quantity} to cart")
        return True

    async def _set_quantity(self, user_id: str, product_id: str, quantity: int) -> bool:
        if quantity <= 0:
            return await self._remove(user_id, product_id)

        existing = self.get_cart_item(product_id)
        if existing is None:
            raise CartItemNotFoundError(product_id)

        seq = self._next_seq()
        now = _utc_now()
        updated = replace(
            existing, quantity=quantity, updated_at=now, write_seq=seq, writer_id=self.writer_id
        )
        fence = self._fence(product_id, updated, seq)
        self._busy.add(product_id)
        self.error = None
        try:
            version = await call_remote(
                self.store.update(
                    f"{self._collection(user_id)}/{existing.id}",
                    {
                        "quantity": quantity,
                        "updatedAt": now,
                        "writeSeq": seq,
                        "writerId": self.writer_id,
                    },
                ),
                "update cart item",
                self.timeout,
            )
        except (StoreSyncError, OSError) as e:
            await self._write_failed(user_id, {product_id: fence}, e, "Failed to update cart item")
            return False
        finally:
            self._busy.discard(product_id)

        fence.committed_version = version
        log.info(f"[User: {user_id}] Set {product_id} quantity to {quantity}")
        return True

    async def _remove(self, user_id: str, product_id: str) -> bool:
        existing = self.get_cart_item(product_id)
        if existing is None:
            raise CartItemNotFoundError(product_id)

        fence = self._fence(product_id, None, self._next_seq())
        self._busy.add(product_id)
        self.error = None
        try:
            version = await call_remote(
                self.store.delete(f"{self._collection(user_id)}/{existing.id}"),
                "remove from cart",
                self.timeout,
            )
        except (StoreSyncError, OSError) as e:
            await self._write_failed(user_id, {product_id: fence}, e, "Failed to remove from cart")
            return False
        finally:
            self._busy.discard(product_id)

        fence.committed_version = version
        log.info(f"[User: {user_id}] Removed {product_id} from cart")
        return True

    async def _write_failed(
        self, user_id: str, fences: dict[str, _Fence], error: Exception, fallback: str
    ) -> None:
        """Drop the failed write's fences and re-read the cart from the store."""
        log.error(f"[User: {user_id}] {fallback}: {error}")
        for product_id, fence in fences.items():
            if self._fences.get(product_id) is fence:
                del self._fences[product_id]
        self.error = error_message(error, fallback)
        try:
            snapshot = await call_remote(
                self.store.list_snapshot(self._collection(user_id)), "reload cart", self.timeout
            )
        except (StoreSyncError, OSError) as e:
            log.error(f"[User: {user_id}] Cart reload after failed write also failed: {e}")
            # Without a fresh read, roll the cache back to the pre-write lines
            for product_id, fence in fences.items():
                if fence.previous is None:
                    self._drop_local(product_id)
                else:
                    self._put_local(product_id, fence.previous)
            return
        self._merge(snapshot)

    # --- Cache maintenance ---

    def _collection(self, user_id: str) -> str:
        return user_collection(user_id, CART_COLLECTION)

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def _fence(self, product_id: str, item: CartItem | None, seq: int) -> _Fence:
        fence = _Fence(seq=seq, item=item, previous=self.get_cart_item(product_id))
        self._fences[product_id] = fence
        if item is None:
            self._drop_local(product_id)
        else:
            self._put_local(product_id, item)
        return fence

    def _put_local(self, product_id: str, item: CartItem) -> None:
        for i, existing in enumerate(self.items):
            if existing.product_id == product_id:
                self.items[i] = item
                return
        self.items.append(item)

    def _drop_local(self, product_id: str) -> None:
        self.items = [i for i in self.items if i.product_id != product_id]

    def _merge(self, snapshot: CollectionSnapshot) -> bool:
        """
        Replace the cache with ``snapshot``, keeping fenced optimistic lines.

        Returns False if the snapshot is older than one already applied.
        """
        if snapshot.version < self._feed_version:
            log.debug(
                f"Dropping stale cart snapshot v{snapshot.version} (have v{self._feed_version})"
            )
            return False
        self._feed_version = snapshot.version

        remote: dict[str, CartItem] = {}
        for doc in snapshot.documents:
            try:
                item = CartItem.from_dict(doc.id, doc.data)
            except (TypeError, ValueError) as e:
                log.warning(f"Skipping malformed cart document {doc.path}: {e}")
                continue
            remote[item.product_id] = item

        for product_id, fence in list(self._fences.items()):
            if fence.confirmed_by(snapshot.version, remote.get(product_id), self.writer_id):
                del self._fences[product_id]
                continue
            if fence.item is None:
                remote.pop(product_id, None)
            else:
                remote[product_id] = fence.item

        self.items = list(remote.values())
        return True

    def _on_snapshot(self, snapshot: CollectionSnapshot) -> None:
        if not self._merge(snapshot):
            return
        self.error = None
        self.loading = False
        for listener in list(self._listeners):
            listener(list(self.items))

    def _on_feed_error(self, error: Exception) -> None:
        log.error(f"Error in cart subscription: {error}")
        self.error = error_message(error, "Cart subscription failed")
        self.loading = False
