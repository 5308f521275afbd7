"""FastAPI REST API for storesync cart, address and order state."""

import logging
from collections import OrderedDict
from typing import Any, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import __version__
from .config import Settings
from .document_store import DocumentStore, JsonDocumentStore
from .errors import (
    AddressNotFoundError,
    CartItemNotFoundError,
    CheckoutRecordNotFoundError,
    DocumentNotFoundError,
    EmptyOrderError,
    InvalidAddressError,
    InvalidOrderTotalsError,
    InvalidProductError,
    InvalidStatusTransitionError,
    LocalCacheError,
    NotAuthenticatedError,
    OperationTimeoutError,
    OrderNotFoundError,
    StoreSyncError,
    StoreWriteError,
)
from .models import Address, CartItem, Order
from .state import CommerceState
from .utils import require_user

log = logging.getLogger(__name__)

PAYMENT_EVENTS = ("payment_intent.succeeded", "checkout.session.completed")


# --- Pydantic Schemas ---


class CartItemSchema(BaseModel):
    id: str
    product_id: str
    name: str
    price: float
    quantity: int
    description: str = ""
    category: str = ""
    image: str = ""
    images: list[str] = []
    in_stock: bool = True
    added_at: str
    updated_at: str


class CartResponse(BaseModel):
    items: list[CartItemSchema]
    total_items: int
    total_price: float


class CartAddRequest(BaseModel):
    """Request body for adding a product to the cart."""

    product: dict[str, Any] = Field(
        ..., description="Product snapshot: id, name, price and optional display fields"
    )
    quantity: int = Field(default=1, ge=1)


class CartQuantityRequest(BaseModel):
    quantity: int = Field(..., description="New quantity; 0 or less removes the line")


class AddressSchema(BaseModel):
    id: str
    type: str
    is_default: bool
    first_name: str
    last_name: str
    address_line1: str
    address_line2: str
    city: str
    state: str
    zip_code: str
    country: str
    phone: str
    created_at: str
    updated_at: str


class AddressListResponse(BaseModel):
    addresses: list[AddressSchema]
    count: int
    default_id: Optional[str] = None


class OrderItemSchema(BaseModel):
    product_id: str
    name: str
    price: float
    quantity: int
    image: Optional[str] = None
    category: Optional[str] = None


class OrderTotalsSchema(BaseModel):
    subtotal: float
    shipping: float
    tax: float
    total: float


class StatusEntrySchema(BaseModel):
    status: str
    timestamp: str
    note: Optional[str] = None


class OrderSchema(BaseModel):
    id: str
    order_number: str
    confirmation_number: str
    customer_id: str
    customer_email: str
    customer_name: str
    items: list[OrderItemSchema]
    totals: OrderTotalsSchema
    shipping_address: dict[str, Any]
    shipping_method: str
    estimated_delivery: str
    payment_method: str
    payment_intent_id: Optional[str] = None
    status: str
    status_history: list[StatusEntrySchema]
    source: str
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    created_at: str
    updated_at: str


class OrderListResponse(BaseModel):
    orders: list[OrderSchema]
    count: int


class ReconcileRequest(BaseModel):
    session_id: Optional[str] = Field(
        None, description="Checkout record id; reconcile every record if omitted"
    )


class StatusUpdateRequest(BaseModel):
    status: str = Field(..., description="Target status, e.g. 'processing' or 'shipped'")
    note: Optional[str] = None


class TrackingUpdateRequest(BaseModel):
    tracking_number: str = Field(..., min_length=1)
    carrier: Optional[str] = None


class WebhookEvent(BaseModel):
    """Payment processor event; only the fields used for reconciliation."""

    type: str
    data: dict[str, Any] = {}


class WebhookResponse(BaseModel):
    received: bool = True
    handled: bool
    order_id: Optional[str] = None


class ErrorResponse(BaseModel):
    detail: str
    error_type: str


# --- Helper Functions ---


class StateRegistry:
    """
    One ``CommerceState`` per user, all sharing one document store.

    Holds at most ``max_users`` states; the least recently used one is
    dropped first. The store stays the source of truth, so a dropped state
    is rebuilt from it on the user's next request.
    """

    def __init__(self, store: DocumentStore, settings: Settings, max_users: int = 256):
        self.store = store
        self.settings = settings
        self.max_users = max_users
        self._states: OrderedDict[str, CommerceState] = OrderedDict()

    def __len__(self) -> int:
        return len(self._states)

    def for_user(self, user_id: str) -> CommerceState:
        state = self._states.get(user_id)
        if state is None:
            state = self._states[user_id] = CommerceState(self.store, settings=self.settings)
            while len(self._states) > self.max_users:
                evicted, _ = self._states.popitem(last=False)
                log.debug(f"[User: {evicted}] Dropped cached state")
        else:
            self._states.move_to_end(user_id)
        return state


_registry: StateRegistry | None = None


def get_registry() -> StateRegistry:
    """Get the process-wide registry, opening the JSON store on first use."""
    global _registry
    if _registry is None:
        settings = Settings.from_env()
        _registry = StateRegistry(JsonDocumentStore(settings.store_path), settings)
    return _registry


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    """Resolve the caller from the X-User-Id header."""
    return require_user(x_user_id, "api request")


def cart_item_to_schema(item: CartItem) -> CartItemSchema:
    return CartItemSchema(
        id=item.id,
        product_id=item.product_id,
        name=item.name,
        price=item.price,
        quantity=item.quantity,
        description=item.description,
        category=item.category,
        image=item.image,
        images=item.images,
        in_stock=item.in_stock,
        added_at=item.added_at,
        updated_at=item.updated_at,
    )


def address_to_schema(address: Address) -> AddressSchema:
    return AddressSchema(
        id=address.id,
        type=address.type,
        is_default=address.is_default,
        first_name=address.first_name,
        last_name=address.last_name,
        address_line1=address.address_line1,
        address_line2=address.address_line2,
        city=address.city,
        state=address.state,
        zip_code=address.zip_code,
        country=address.country,
        phone=address.phone,
        created_at=address.created_at,
        updated_at=address.updated_at,
    )


def order_to_schema(order: Order) -> OrderSchema:
    """Convert dataclass Order to Pydantic schema."""
    return OrderSchema(
        id=order.id,
        order_number=order.order_number,
        confirmation_number=order.confirmation_number,
        customer_id=order.customer_id,
        customer_email=order.customer_email,
        customer_name=order.customer_name,
        items=[
            OrderItemSchema(
                product_id=i.product_id,
                name=i.name,
                price=i.price,
                quantity=i.quantity,
                image=i.image,
                category=i.category,
            )
            for i in order.items
        ],
        totals=OrderTotalsSchema(**order.totals.to_dict()),
        shipping_address=order.shipping_address.to_dict(),
        shipping_method=order.shipping_method,
        estimated_delivery=order.estimated_delivery,
        payment_method=order.payment_method,
        payment_intent_id=order.payment_intent_id,
        status=order.status.value,
        status_history=[
            StatusEntrySchema(status=e.status.value, timestamp=e.timestamp, note=e.note)
            for e in order.status_history
        ],
        source=order.source.value,
        tracking_number=order.tracking_number,
        carrier=order.carrier,
        created_at=order.created_at,
        updated_at=order.updated_at,
    )


def _cart_response(state: CommerceState) -> CartResponse:
    return CartResponse(
        items=[cart_item_to_schema(i) for i in state.cart.items],
        total_items=state.cart.total_items(),
        total_price=state.cart.total_price(),
    )


def _address_list(state: CommerceState) -> AddressListResponse:
    default = state.addresses.default_address
    return AddressListResponse(
        addresses=[address_to_schema(a) for a in state.addresses.addresses],
        count=len(state.addresses.addresses),
        default_id=default.id if default else None,
    )


def _check(ok: bool, error: str | None, fallback: str) -> None:
    """Turn a component's recorded failure into a 502."""
    if not ok:
        raise HTTPException(status_code=502, detail=error or fallback)


# --- FastAPI App ---


app = FastAPI(
    title="storesync API",
    description="REST API for cart, address and order state",
    version=__version__,
)

# CORS for local development
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Global Exception Handler ---


# Map exception types to HTTP status codes
ERROR_STATUS_CODES: dict[type, int] = {
    NotAuthenticatedError: 401,
    DocumentNotFoundError: 404,
    CheckoutRecordNotFoundError: 404,
    OrderNotFoundError: 404,
    AddressNotFoundError: 404,
    CartItemNotFoundError: 404,
    EmptyOrderError: 409,
    InvalidOrderTotalsError: 409,
    InvalidStatusTransitionError: 409,
    InvalidAddressError: 400,
    InvalidProductError: 400,
    StoreWriteError: 502,
    OperationTimeoutError: 504,
    LocalCacheError: 500,
}


@app.exception_handler(StoreSyncError)
async def storesync_error_handler(request: Request, exc: StoreSyncError) -> JSONResponse:
    """Map StoreSyncError subclasses to appropriate HTTP responses."""
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_type": type(exc).__name__},
    )


# --- Endpoints ---


@app.get("/api/health")
def health_check(registry: StateRegistry = Depends(get_registry)):
    """
    Health check endpoint.

    Returns basic service status. User-agnostic.
    """
    return {
        "status": "ok",
        "version": __version__,
        "store_version": registry.store.version,
    }


# --- Cart Endpoints ---


@app.get("/api/cart", response_model=CartResponse)
async def get_cart(
    user_id: str = Depends(get_user_id), registry: StateRegistry = Depends(get_registry)
):
    state = registry.for_user(user_id)
    _check(await state.cart.load(user_id), state.cart.error, "Failed to load cart")
    return _cart_response(state)


@app.post("/api/cart/items", response_model=CartResponse, status_code=201)
async def add_cart_item(
    request: CartAddRequest,
    user_id: str = Depends(get_user_id),
    registry: StateRegistry = Depends(get_registry),
):
    state = registry.for_user(user_id)
    _check(await state.cart.load(user_id), state.cart.error, "Failed to load cart")
    ok = await state.cart.add_item(user_id, request.product, request.quantity)
    _check(ok, state.cart.error, "Failed to add to cart")
    return _cart_response(state)


@app.patch("/api/cart/items/{product_id}", response_model=CartResponse)
async def set_cart_item_quantity(
    product_id: str,
    request: CartQuantityRequest,
    user_id: str = Depends(get_user_id),
    registry: StateRegistry = Depends(get_registry),
):
    state = registry.for_user(user_id)
    _check(await state.cart.load(user_id), state.cart.error, "Failed to load cart")
    ok = await state.cart.set_quantity(user_id, product_id, request.quantity)
    _check(ok, state.cart.error, "Failed to update cart item")
    return _cart_response(state)


@app.delete("/api/cart/items/{product_id}", response_model=CartResponse)
async def remove_cart_item(
    product_id: str,
    user_id: str = Depends(get_user_id),
    registry: StateRegistry = Depends(get_registry),
):
    state = registry.for_user(user_id)
    _check(await state.cart.load(user_id), state.cart.error, "Failed to load cart")
    ok = await state.cart.remove_item(user_id, product_id)
    _check(ok, state.cart.error, "Failed to remove from cart")
    return _cart_response(state)


@app.delete("/api/cart", response_model=CartResponse)
async def clear_cart(
    user_id: str = Depends(get_user_id), registry: StateRegistry = Depends(get_registry)
):
    state = registry.for_user(user_id)
    _check(await state.cart.clear(user_id), state.cart.error, "Failed to clear cart")
    return _cart_response(state)


# --- Address Endpoints ---


@app.get("/api/addresses", response_model=AddressListResponse)
async def list_addresses(
    user_id: str = Depends(get_user_id), registry: StateRegistry = Depends(get_registry)
):
    state = registry.for_user(user_id)
    _check(await state.addresses.load(user_id), state.addresses.error, "Failed to load addresses")
    return _address_list(state)


@app.post("/api/addresses", response_model=AddressListResponse, status_code=201)
async def add_address(
    request: dict[str, Any],
    user_id: str = Depends(get_user_id),
    registry: StateRegistry = Depends(get_registry),
):
    """Create an address; the body is validated by the address manager."""
    state = registry.for_user(user_id)
    ok = await state.addresses.add(user_id, request)
    _check(ok, state.addresses.error, "Failed to add address")
    return _address_list(state)


@app.patch("/api/addresses/{address_id}", response_model=AddressListResponse)
async def update_address(
    address_id: str,
    request: dict[str, Any],
    user_id: str = Depends(get_user_id),
    registry: StateRegistry = Depends(get_registry),
):
    state = registry.for_user(user_id)
    _check(await state.addresses.load(user_id), state.addresses.error, "Failed to load addresses")
    ok = await state.addresses.update(user_id, address_id, request)
    _check(ok, state.addresses.error, "Failed to update address")
    return _address_list(state)


@app.delete("/api/addresses/{address_id}", response_model=AddressListResponse)
async def delete_address(
    address_id: str,
    user_id: str = Depends(get_user_id),
    registry: StateRegistry = Depends(get_registry),
):
    state = registry.for_user(user_id)
    _check(await state.addresses.load(user_id), state.addresses.error, "Failed to load addresses")
    ok = await state.addresses.delete(user_id, address_id)
    _check(ok, state.addresses.error, "Failed to delete address")
    return _address_list(state)


@app.post("/api/addresses/{address_id}/default", response_model=AddressListResponse)
async def set_default_address(
    address_id: str,
    user_id: str = Depends(get_user_id),
    registry: StateRegistry = Depends(get_registry),
):
    state = registry.for_user(user_id)
    _check(await state.addresses.load(user_id), state.addresses.error, "Failed to load addresses")
    ok = await state.addresses.set_default(user_id, address_id)
    _check(ok, state.addresses.error, "Failed to update default address")
    return _address_list(state)


# --- Order Endpoints ---


@app.get("/api/orders", response_model=OrderListResponse)
async def list_orders(
    user_id: str = Depends(get_user_id), registry: StateRegistry = Depends(get_registry)
):
    state = registry.for_user(user_id)
    _check(await state.orders.load_user_orders(user_id), state.orders.error, "Failed to load orders")
    orders = [o for o in state.orders.orders if o.customer_id == user_id]
    return OrderListResponse(orders=[order_to_schema(o) for o in orders], count=len(orders))


@app.get("/api/orders/{order_id}", response_model=OrderSchema)
async def get_order(
    order_id: str,
    user_id: str = Depends(get_user_id),
    registry: StateRegistry = Depends(get_registry),
):
    state = registry.for_user(user_id)
    _check(await state.orders.load_user_orders(user_id), state.orders.error, "Failed to load orders")
    order = state.orders.get_order(order_id)
    if order is None:
        raise OrderNotFoundError(order_id)
    return order_to_schema(order)


@app.post("/api/orders/reconcile", response_model=OrderListResponse)
async def reconcile_orders(
    request: ReconcileRequest,
    user_id: str = Depends(get_user_id),
    registry: StateRegistry = Depends(get_registry),
):
    """
    Turn checkout records into orders.

    Safe to call repeatedly; an order that already exists is returned as is.
    """
    state = registry.for_user(user_id)
    if request.session_id:
        # The cart cache must be current for the post-order clear
        await state.cart.load(user_id)
        order = await state.orders.reconcile(user_id, request.session_id, raise_errors=True)
        orders = [order]
    else:
        await state.cart.load(user_id)
        orders = await state.orders.reconcile_all(user_id)
        if state.orders.error:
            raise HTTPException(status_code=502, detail=state.orders.error)
    return OrderListResponse(orders=[order_to_schema(o) for o in orders], count=len(orders))


@app.patch("/api/orders/{order_id}/status", response_model=OrderSchema)
async def update_order_status(
    order_id: str,
    request: StatusUpdateRequest,
    user_id: str = Depends(get_user_id),
    registry: StateRegistry = Depends(get_registry),
):
    state = registry.for_user(user_id)
    _check(await state.orders.load_user_orders(user_id), state.orders.error, "Failed to load orders")
    order = await state.orders.update_order_status(order_id, request.status, request.note)
    if order is None:
        raise HTTPException(status_code=502, detail=state.orders.error)
    return order_to_schema(order)


@app.patch("/api/orders/{order_id}/tracking", response_model=OrderSchema)
async def update_order_tracking(
    order_id: str,
    request: TrackingUpdateRequest,
    user_id: str = Depends(get_user_id),
    registry: StateRegistry = Depends(get_registry),
):
    state = registry.for_user(user_id)
    _check(await state.orders.load_user_orders(user_id), state.orders.error, "Failed to load orders")
    ok = await state.orders.update_order_tracking(order_id, request.tracking_number, request.carrier)
    _check(ok, state.orders.error, "Failed to update tracking")
    return order_to_schema(state.orders.get_order(order_id))


# --- Webhook Endpoints ---


@app.post("/api/webhooks/payment", response_model=WebhookResponse)
async def payment_webhook(event: WebhookEvent, registry: StateRegistry = Depends(get_registry)):
    """
    Reconcile the checkout record named by a payment event.

    Runs the same idempotent reconciliation as the success page, so the
    webhook and the browser can race without producing two orders.
    """
    if event.type not in PAYMENT_EVENTS:
        log.info(f"Ignoring payment event {event.type}")
        return WebhookResponse(handled=False)

    obj = event.data.get("object") or {}
    metadata = obj.get("metadata") or {}
    session_id = metadata.get("sessionId")
    if not session_id and event.type == "checkout.session.completed":
        session_id = obj.get("id")
    user_id = metadata.get("userId")
    if not user_id or not session_id:
        raise HTTPException(status_code=400, detail="Event metadata must name userId and sessionId")

    state = registry.for_user(user_id)
    await state.cart.load(user_id)
    order = await state.orders.reconcile(user_id, session_id, raise_errors=True)
    log.info(f"[User: {user_id}] Webhook {event.type} reconciled to order {order.id}")
    return WebhookResponse(handled=True, order_id=order.id)
