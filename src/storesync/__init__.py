"""storesync: commerce state reconciliation for a storefront client."""

__version__ = "0.1.0"

from .addresses import AddressManager
from .cart import CartSyncEngine
from .document_store import DocumentStore, JsonDocumentStore
from .orders import OrderReconciler
from .state import CommerceState

__all__ = [
    "AddressManager",
    "CartSyncEngine",
    "CommerceState",
    "DocumentStore",
    "JsonDocumentStore",
    "OrderReconciler",
    "__version__",
]
