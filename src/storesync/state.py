"""Session state container.

``CommerceState`` owns the three components for one session and wires them
to a single document store. It replaces module-level singletons: tests and
the API build one per store.
"""

from .addresses import AddressManager
from .cart import CartSyncEngine
from .config import Settings
from .document_store import DocumentStore, JsonDocumentStore
from .local_cache import LocalOrderCache
from .logging_config import get_logger
from .orders import OrderReconciler

log = get_logger(__name__)


class CommerceState:
    """The cart, address and order components sharing one store."""

    def __init__(
        self,
        store: DocumentStore,
        settings: Settings | None = None,
        local_cache: LocalOrderCache | None = None,
    ):
        self.store = store
        self.settings = settings or Settings.from_env()
        timeout = self.settings.operation_timeout

        self.cart = CartSyncEngine(store, timeout=timeout)
        self.addresses = AddressManager(store, timeout=timeout)
        self.orders = OrderReconciler(
            store,
            cart=self.cart,
            local_cache=local_cache,
            store_prefix=self.settings.store_prefix,
            default_delivery_days=self.settings.default_delivery_days,
            timeout=timeout,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "CommerceState":
        """Build state backed by the JSON files under ``settings.data_dir``."""
        log.debug(f"Opening document store at {settings.store_path}")
        return cls(
            JsonDocumentStore(settings.store_path),
            settings=settings,
            local_cache=LocalOrderCache(settings.local_orders_path),
        )

    async def load_user(self, user_id: str) -> None:
        """Fill every component's cache for ``user_id``."""
        await self.cart.load(user_id)
        await self.addresses.load(user_id)
        await self.orders.load_user_orders(user_id)
