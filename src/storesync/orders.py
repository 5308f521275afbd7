"""Order reconciler.

Turns checkout records (``users/{uid}/checkout_sessions``) into canonical
orders (``users/{uid}/orders``) exactly once. The order document id is
derived from the checkout record's correlation id, and the existence check
and the create run in one store transaction. So the payment webhook and the
user's browser can both reconcile the same record and only one order
results.
"""

import copy
import logging
import secrets
from datetime import timedelta
from typing import Any, Mapping

from .cart import CartSyncEngine
from .checkout import DEFAULT_SHIPPING_METHOD, build_order, correlation_id, record_created_at
from .config import DEFAULT_DELIVERY_DAYS, DEFAULT_OPERATION_TIMEOUT, DEFAULT_STORE_PREFIX
from .document_store import DocumentStore, Transaction, user_collection
from .errors import (
    CheckoutRecordNotFoundError,
    EmptyOrderError,
    InvalidOrderTotalsError,
    InvalidProductError,
    InvalidStatusTransitionError,
    LocalCacheError,
    OrderNotFoundError,
    StoreSyncError,
    StoreWriteError,
)
from .identifiers import (
    generate_confirmation_number,
    generate_local_order_id,
    generate_order_number,
    safe_document_id,
)
from .local_cache import LocalOrderCache
from .models import (
    STATUS_TRANSITIONS,
    Order,
    OrderAddress,
    OrderItem,
    OrderSource,
    OrderStatus,
    OrderTotals,
    StatusEntry,
    _utc_now,
    format_timestamp,
    parse_timestamp,
)
from .utils import call_remote, error_message, require_user

log = logging.getLogger(__name__)

CHECKOUT_COLLECTION = "checkout_sessions"
ORDERS_COLLECTION = "orders"

LOCAL_ORDER_NOTE = "Order created locally"


def _created_key(order: Order) -> float:
    created = parse_timestamp(order.created_at)
    return created.timestamp() if created else 0.0


class OrderReconciler:
    """Order list cache plus reconciliation and status updates."""

    def __init__(
        self,
        store: DocumentStore,
        cart: CartSyncEngine | None = None,
        local_cache: LocalOrderCache | None = None,
        store_prefix: str = DEFAULT_STORE_PREFIX,
        default_delivery_days: int = DEFAULT_DELIVERY_DAYS,
        timeout: float | None = DEFAULT_OPERATION_TIMEOUT,
    ):
        self.store = store
        self.cart = cart
        self.local_cache = local_cache or LocalOrderCache(None)
        self.store_prefix = store_prefix
        self.default_delivery_days = default_delivery_days
        self.timeout = timeout

        self.orders: list[Order] = []
        self.is_loading = False
        self.error: str | None = None

        try:
            self.orders = self.local_cache.load()
        except LocalCacheError as e:
            log.warning(f"Ignoring unreadable local order cache: {e}")
            self.error = str(e)

    # --- Reconciliation ---

    async def reconcile(
        self, user_id: str, session_id: str, raise_errors: bool = False
    ) -> Order | None:
        """
        Produce the order for one checkout record.

        Calling this again for the same record returns the existing order and
        leaves the cart alone. The cart is cleared only when a new order was
        created.

        Args:
            raise_errors: Re-raise the failure after recording it, for
                callers that map errors themselves (the HTTP API).

        Returns:
            The order, or None if reconciliation failed (see ``error``).

        Raises:
            NotAuthenticatedError: If ``user_id`` is missing.
        """
        user_id = require_user(user_id, "reconcile order")
        self.is_loading = True
        self.error = None
        try:
            order, created = await call_remote(
                self._reconcile(user_id, session_id), "reconcile order", self.timeout
            )
        except (StoreSyncError, OSError) as e:
            log.error(f"[User: {user_id}] Failed to create order from {session_id}: {e}")
            self.error = error_message(e, "Failed to create order")
            if raise_errors:
                raise
            return None
        finally:
            self.is_loading = False

        self._remember(order)
        if created:
            log.info(
                f"[User: {user_id}] Created order {order.order_number} "
                f"(confirmation {order.confirmation_number}) from {session_id}"
            )
            await self._clear_cart(user_id)
        else:
            log.info(f"[User: {user_id}] Order for {session_id} already exists, not recreating")
        return order

    async def reconcile_all(self, user_id: str) -> list[Order]:
        """
        Reconcile every checkout record of the user, newest first.

        Records without items or with inconsistent totals are skipped and
        logged; they never become orders.

        Returns:
            The orders for all reconcilable records (existing and new).
        """
        user_id = require_user(user_id, "reconcile orders")
        self.is_loading = True
        self.error = None
        orders: list[Order] = []
        created_any = False
        try:
            records = await call_remote(
                self.store.list(user_collection(user_id, CHECKOUT_COLLECTION)),
                "list checkout records",
                self.timeout,
            )
            records.sort(key=lambda d: record_created_at(d.data), reverse=True)
            for record in records:
                try:
                    order, created = await call_remote(
                        self._reconcile(user_id, record.id), "reconcile order", self.timeout
                    )
                except (EmptyOrderError, InvalidOrderTotalsError) as e:
                    log.warning(f"[User: {user_id}] Skipping checkout record {record.id}: {e}")
                    continue
                orders.append(order)
                created_any = created_any or created
        except (StoreSyncError, OSError) as e:
            log.error(f"[User: {user_id}] Error reconciling checkout records: {e}")
            self.error = error_message(e, "Failed to load orders")
        finally:
            self.is_loading = False

        for order in orders:
            self._remember(order)
        log.info(f"[User: {user_id}] Reconciled {len(orders)} checkout records")
        if created_any:
            await self._clear_cart(user_id)
        return orders

    async def _reconcile(self, user_id: str, session_id: str) -> tuple[Order, bool]:
        record = await self.store.get(
            f"{user_collection(user_id, CHECKOUT_COLLECTION)}/{session_id}"
        )
        if record is None:
            raise CheckoutRecordNotFoundError(session_id)

        correlation = correlation_id(record, session_id)
        order_path = f"{user_collection(user_id, ORDERS_COLLECTION)}/{safe_document_id(correlation)}"

        async def create_once(txn: Transaction) -> tuple[Order, bool]:
            existing = await txn.get(order_path)
            if existing is not None:
                owner = existing.get("paymentIntentId")
                if owner and owner != correlation:
                    raise StoreWriteError(
                        order_path, f"order belongs to checkout {owner!r}, not {correlation!r}"
                    )
                return Order.from_dict(existing), False
            order = build_order(
                record,
                user_id,
                session_id,
                store_prefix=self.store_prefix,
                default_delivery_days=self.default_delivery_days,
            )
            txn.set(order_path, order.to_dict())
            return order, True

        return await self.store.run_transaction(f"users/{user_id}", create_once)

    async def _clear_cart(self, user_id: str) -> None:
        if self.cart is None:
            return
        if not await self.cart.clear(user_id):
            log.warning(f"[User: {user_id}] Order created but cart was not cleared: {self.cart.error}")

    # --- Queries ---

    async def load_user_orders(self, user_id: str) -> bool:
        """Read the user's orders, newest first, alongside local test orders."""
        user_id = require_user(user_id, "load orders")
        self.is_loading = True
        self.error = None
        try:
            docs = await call_remote(
                self.store.list(user_collection(user_id, ORDERS_COLLECTION)),
                "load orders",
                self.timeout,
            )
        except (StoreSyncError, OSError) as e:
            log.error(f"[User: {user_id}] Error loading orders: {e}")
            self.error = error_message(e, "Failed to load orders")
            return False
        finally:
            self.is_loading = False

        remote: list[Order] = []
        for doc in docs:
            try:
                order = Order.from_dict(doc.data)
            except (KeyError, TypeError, ValueError) as e:
                log.warning(f"[User: {user_id}] Skipping malformed order {doc.path}: {e}")
                continue
            if not order.items:
                log.warning(f"[User: {user_id}] Skipping order {doc.id} without items")
                continue
            remote.append(order)

        local = [o for o in self.orders if o.is_local]
        self.orders = sorted(remote + local, key=_created_key, reverse=True)
        log.info(f"[User: {user_id}] Loaded {len(remote)} orders")
        return True

    def get_order(self, order_id: str) -> Order | None:
        for order in self.orders:
            if order.id == order_id:
                return order
        return None

    # --- Local orders ---

    def create_local_order(self, order_data: Mapping[str, Any]) -> str:
        """
        Create an order locally, without a checkout record.

        ``order_data`` uses the document schema (camelCase keys). Missing
        totals are computed from the items with no shipping or tax.

        Returns:
            The new order's id.

        Raises:
            EmptyOrderError: If no items are given.
            InvalidProductError: If an item is malformed.
            InvalidOrderTotalsError: If given totals don't add up.
        """
        order_id = generate_local_order_id()
        try:
            items = [
                i if isinstance(i, OrderItem) else OrderItem.from_dict(i)
                for i in order_data.get("items") or []
            ]
        except (KeyError, TypeError, ValueError) as e:
            raise InvalidProductError(f"bad order item: {e}") from e
        if not items:
            raise EmptyOrderError(order_id)

        if order_data.get("totals"):
            totals = OrderTotals.from_dict(order_data["totals"])
            if not totals.is_consistent():
                raise InvalidOrderTotalsError(
                    f"total {totals.total:.2f} != subtotal + shipping + tax"
                )
        else:
            subtotal = sum(i.price * i.quantity for i in items)
            totals = OrderTotals(subtotal=subtotal, total=subtotal)

        customer_id = order_data.get("customerId") or ""
        now = _utc_now()
        created_ms = int(parse_timestamp(now).timestamp() * 1000)
        shipping_address = order_data.get("shippingAddress")

        order = Order(
            id=order_id,
            order_number=generate_order_number(
                created_ms, f"{secrets.randbelow(10000):04d}", self.store_prefix
            ),
            confirmation_number=generate_confirmation_number(customer_id or "test"),
            customer_id=customer_id,
            customer_email=order_data.get("customerEmail") or "",
            customer_name=order_data.get("customerName") or "",
            items=items,
            totals=totals,
            shipping_address=OrderAddress.from_dict(shipping_address or {}),
            shipping_method=order_data.get("shippingMethod") or DEFAULT_SHIPPING_METHOD,
            estimated_delivery=order_data.get("estimatedDelivery")
            or _in_days(now, self.default_delivery_days),
            payment_method=order_data.get("paymentMethod") or "Test Payment",
            payment_intent_id=order_data.get("paymentIntentId"),
            status=OrderStatus.CONFIRMED,
            status_history=[
                StatusEntry(status=OrderStatus.CONFIRMED, timestamp=now, note=LOCAL_ORDER_NOTE)
            ],
            source=OrderSource.LOCAL,
            tracking_number=order_data.get("trackingNumber"),
            carrier=order_data.get("carrier"),
            created_at=now,
            updated_at=now,
        )
        self.orders.insert(0, order)
        self._save_local()
        log.info(f"Local order created: {order_id}")
        return order_id

    # --- Status and tracking ---

    async def update_order_status(
        self, order_id: str, status: OrderStatus | str, note: str | None = None
    ) -> Order | None:
        """
        Move an order to ``status`` and append a history entry.

        Checkout orders are written to the store first; the cache changes
        only once the write succeeded.

        Returns:
            The updated order, or None if the remote write failed.

        Raises:
            OrderNotFoundError: If the order isn't in the cache.
            InvalidStatusTransitionError: If the change isn't a valid progression.
        """
        order = self.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)
        try:
            new_status = OrderStatus(status)
        except ValueError:
            raise InvalidStatusTransitionError(order.status.value, str(status)) from None
        if new_status not in STATUS_TRANSITIONS[order.status]:
            raise InvalidStatusTransitionError(order.status.value, new_status.value)

        updated = copy.deepcopy(order).with_status(new_status, note)
        if not order.is_local:
            ok = await self._write_remote(
                updated,
                {
                    "status": updated.status.value,
                    "statusHistory": [e.to_dict() for e in updated.status_history],
                    "updatedAt": updated.updated_at,
                },
                "update order status",
                "Failed to update order status",
            )
            if not ok:
                return None

        self._remember(updated)
        if updated.is_local:
            self._save_local()
        log.info(f"Order {order_id} status -> {new_status.value}")
        return updated

    async def update_order_tracking(
        self, order_id: str, tracking_number: str, carrier: str | None = None
    ) -> bool:
        """
        Attach tracking information to an order.

        Raises:
            OrderNotFoundError: If the order isn't in the cache.
        """
        order = self.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(order_id)

        updated = copy.deepcopy(order)
        updated.tracking_number = tracking_number
        updated.carrier = carrier or ""
        updated.updated_at = _utc_now()

        if not order.is_local:
            ok = await self._write_remote(
                updated,
                {
                    "trackingNumber": tracking_number,
                    "carrier": updated.carrier,
                    "updatedAt": updated.updated_at,
                },
                "update order tracking",
                "Failed to update tracking",
            )
            if not ok:
                return False

        self._remember(updated)
        if updated.is_local:
            self._save_local()
        log.info(f"Order {order_id} tracking updated")
        return True

    # --- Internals ---

    async def _write_remote(
        self, order: Order, fields: dict[str, Any], operation: str, fallback: str
    ) -> bool:
        self.error = None
        try:
            require_user(order.customer_id, operation)
            await call_remote(
                self.store.update(
                    f"{user_collection(order.customer_id, ORDERS_COLLECTION)}/{order.id}", fields
                ),
                operation,
                self.timeout,
            )
        except (StoreSyncError, OSError) as e:
            log.error(f"[User: {order.customer_id}] {fallback} for {order.id}: {e}")
            self.error = error_message(e, fallback)
            return False
        return True

    def _remember(self, order: Order) -> None:
        for i, existing in enumerate(self.orders):
            if existing.id == order.id:
                self.orders[i] = order
                return
        self.orders.insert(0, order)

    def _save_local(self) -> None:
        self.local_cache.save(self.orders)


def _in_days(timestamp: str, days: int) -> str:
    return format_timestamp(parse_timestamp(timestamp) + timedelta(days=days))
