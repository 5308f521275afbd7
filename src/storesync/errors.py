"""Custom exceptions for storesync."""


class StoreSyncError(Exception):
    """Base exception for all storesync errors."""

    pass


class NotAuthenticatedError(StoreSyncError):
    """Raised when an operation is invoked without a resolved user id."""

    def __init__(self, operation: str | None = None):
        self.operation = operation
        msg = "No authenticated user."
        if operation:
            msg = f"No authenticated user for '{operation}'."
        super().__init__(msg)


class DocumentNotFoundError(StoreSyncError):
    """Raised when a document path doesn't exist in the store."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(f"Document not found: {path}")


class CheckoutRecordNotFoundError(StoreSyncError):
    """Raised when a checkout record doesn't exist for the user."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Checkout record not found: {session_id}")


class OrderNotFoundError(StoreSyncError):
    """Raised when an order ID doesn't exist."""

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__(f"Order not found: {order_id}")


class AddressNotFoundError(StoreSyncError):
    """Raised when an address ID doesn't exist."""

    def __init__(self, address_id: str):
        self.address_id = address_id
        super().__init__(f"Address not found: {address_id}")


class CartItemNotFoundError(StoreSyncError):
    """Raised when there is no cart line for a product."""

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Cart item not found for product: {product_id}")


class EmptyOrderError(StoreSyncError):
    """Raised when an order would be created without items."""

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"Order {reference} has no items")


class InvalidOrderTotalsError(StoreSyncError):
    """Raised when order totals are negative or don't add up."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid order totals: {reason}")


class InvalidStatusTransitionError(StoreSyncError):
    """Raised when an order status change is not a valid progression."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Cannot change order status from '{current}' to '{requested}'")


class InvalidAddressError(StoreSyncError):
    """Raised when address form data fails validation."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid address: {reason}")


class InvalidProductError(StoreSyncError):
    """Raised when a product snapshot can't be added to the cart."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Invalid product: {reason}")


class StoreWriteError(StoreSyncError):
    """Raised when the document store rejects or fails a write."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Write to {path} failed: {reason}")


class OperationTimeoutError(StoreSyncError):
    """Raised when a remote call doesn't complete within the timeout."""

    def __init__(self, operation: str, timeout: float):
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"Operation '{operation}' timed out after {timeout:g}s")


class LocalCacheError(StoreSyncError):
    """Raised when the local order cache can't be read."""

    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__(f"Local order cache at {path} is unreadable: {reason}")
