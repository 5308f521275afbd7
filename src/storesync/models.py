"""Data models for storesync.

Entities are plain dataclasses. ``to_dict``/``from_dict`` convert to and from
the document schema, which uses camelCase keys.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
import uuid

TOTALS_TOLERANCE = 1e-6


def _utc_now() -> str:
    """Return current UTC time as ISO 8601 string."""
    return format_timestamp(datetime.now(timezone.utc))


def _generate_id() -> str:
    """Generate a new document ID."""
    return uuid.uuid4().hex


def format_timestamp(value: datetime) -> str:
    """Format an aware datetime as an ISO 8601 UTC string with a Z suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any) -> datetime | None:
    """
    Parse a stored timestamp into an aware datetime.

    Accepts ISO 8601 strings (with or without Z), datetimes, and epoch
    numbers in seconds or milliseconds. Returns None if unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        # Anything past year ~2286 in seconds is treated as milliseconds
        seconds = value / 1000 if value > 1e10 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


# Valid forward progressions; cancelled and refunded are terminal
STATUS_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset(
        {
            OrderStatus.PROCESSING,
            OrderStatus.SHIPPED,
            OrderStatus.CANCELLED,
            OrderStatus.REFUNDED,
        }
    ),
    OrderStatus.PROCESSING: frozenset(
        {OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
    ),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.REFUNDED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.REFUNDED: frozenset(),
}


class OrderSource(str, Enum):
    CHECKOUT = "checkout"  # reconciled from a checkout record
    LOCAL = "local"  # constructed locally for testing


@dataclass
class OrderItem:
    """A purchased product line."""

    product_id: str
    name: str
    price: float
    quantity: int
    image: str | None = None
    category: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "productId": self.product_id,
            "name": self.name,
            "price": self.price,
            "quantity": self.quantity,
        }
        if self.image is not None:
            result["image"] = self.image
        if self.category is not None:
            result["category"] = self.category
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderItem":
        """
        Build an item from a stored dict.

        Raises:
            KeyError, TypeError, ValueError: If required fields are missing
                or have the wrong shape.
        """
        price = float(data["price"])
        quantity = int(data["quantity"])
        if price < 0:
            raise ValueError(f"negative price: {price}")
        if quantity < 1:
            raise ValueError(f"quantity must be at least 1: {quantity}")
        return cls(
            product_id=str(data["productId"]),
            name=str(data["name"]),
            price=price,
            quantity=quantity,
            image=data.get("image"),
            category=data.get("category"),
        )


@dataclass
class OrderTotals:
    subtotal: float = 0.0
    shipping: float = 0.0
    tax: float = 0.0
    total: float = 0.0

    def is_consistent(self) -> bool:
        """True if no amount is negative and total == subtotal + shipping + tax."""
        amounts = (self.subtotal, self.shipping, self.tax, self.total)
        if any(a < 0 for a in amounts):
            return False
        return abs(self.total - (self.subtotal + self.shipping + self.tax)) <= TOTALS_TOLERANCE

    def to_dict(self) -> dict[str, Any]:
        return {
            "subtotal": self.subtotal,
            "shipping": self.shipping,
            "tax": self.tax,
            "total": self.total,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderTotals":
        return cls(
            subtotal=float(data.get("subtotal", 0)),
            shipping=float(data.get("shipping", 0)),
            tax=float(data.get("tax", 0)),
            total=float(data.get("total", 0)),
        )


@dataclass
class OrderAddress:
    """Shipping destination copied onto an order."""

    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str = ""
    address1: str = ""
    address2: str = ""
    city: str = ""
    state: str = ""
    zip_code: str = ""
    country: str = "US"

    def to_dict(self) -> dict[str, Any]:
        return {
            "firstName": self.first_name,
            "lastName": self.last_name,
            "email": self.email,
            "phone": self.phone,
            "address1": self.address1,
            "address2": self.address2,
            "city": self.city,
            "state": self.state,
            "zipCode": self.zip_code,
            "country": self.country,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "OrderAddress":
        return cls(
            first_name=data.get("firstName", ""),
            last_name=data.get("lastName", ""),
            email=data.get("email", ""),
            phone=data.get("phone", ""),
            address1=data.get("address1", ""),
            address2=data.get("address2", ""),
            city=data.get("city", ""),
            state=data.get("state", ""),
            zip_code=data.get("zipCode", ""),
            country=data.get("country", "US"),
        )


@dataclass
class StatusEntry:
    status: OrderStatus
    timestamp: str
    note: str | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"status": self.status.value, "timestamp": self.timestamp}
        if self.note is not None:
            result["note"] = self.note
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StatusEntry":
        return cls(
            status=OrderStatus(data["status"]),
            timestamp=data["timestamp"],
            note=data.get("note"),
        )


@dataclass
class Order:
    """A canonical, user-visible order."""

    id: str
    order_number: str
    confirmation_number: str
    customer_id: str
    customer_email: str
    customer_name: str
    items: list[OrderItem]
    totals: OrderTotals
    shipping_address: OrderAddress
    shipping_method: str
    estimated_delivery: str
    payment_method: str
    status: OrderStatus
    status_history: list[StatusEntry]
    payment_intent_id: str | None = None
    source: OrderSource = OrderSource.CHECKOUT
    tracking_number: str | None = None
    carrier: str | None = None
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    @property
    def is_local(self) -> bool:
        return self.source == OrderSource.LOCAL

    def with_status(self, status: OrderStatus, note: str | None = None) -> "Order":
        """
        Append a status history entry and move to ``status``.

        The new entry's timestamp is never earlier than the previous one, so
        the history stays non-decreasing even if the clock steps backwards.
        """
        now = datetime.now(timezone.utc)
        if self.status_history:
            last = parse_timestamp(self.status_history[-1].timestamp)
            if last is not None and last > now:
                now = last
        timestamp = format_timestamp(now)
        self.status = status
        self.status_history.append(
            StatusEntry(status=status, timestamp=timestamp, note=note or f"Order {status.value}")
        )
        self.updated_at = timestamp
        return self

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "id": self.id,
            "orderNumber": self.order_number,
            "confirmationNumber": self.confirmation_number,
            "customerId": self.customer_id,
            "customerEmail": self.customer_email,
            "customerName": self.customer_name,
            "items": [i.to_dict() for i in self.items],
            "totals": self.totals.to_dict(),
            "shippingAddress": self.shipping_address.to_dict(),
            "shippingMethod": self.shipping_method,
            "estimatedDelivery": self.estimated_delivery,
            "paymentMethod": self.payment_method,
            "status": self.status.value,
            "statusHistory": [e.to_dict() for e in self.status_history],
            "source": self.source.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.payment_intent_id is not None:
            result["paymentIntentId"] = self.payment_intent_id
        if self.tracking_number is not None:
            result["trackingNumber"] = self.tracking_number
        if self.carrier is not None:
            result["carrier"] = self.carrier
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Order":
        return cls(
            id=data["id"],
            order_number=data["orderNumber"],
            confirmation_number=data["confirmationNumber"],
            customer_id=data.get("customerId", ""),
            customer_email=data.get("customerEmail", ""),
            customer_name=data.get("customerName", ""),
            items=[OrderItem.from_dict(i) for i in data.get("items", [])],
            totals=OrderTotals.from_dict(data.get("totals", {})),
            shipping_address=OrderAddress.from_dict(data.get("shippingAddress", {})),
            shipping_method=data.get("shippingMethod", ""),
            estimated_delivery=data.get("estimatedDelivery", ""),
            payment_method=data.get("paymentMethod", ""),
            status=OrderStatus(data["status"]),
            status_history=[StatusEntry.from_dict(e) for e in data.get("statusHistory", [])],
            payment_intent_id=data.get("paymentIntentId"),
            source=OrderSource(data.get("source", OrderSource.CHECKOUT.value)),
            tracking_number=data.get("trackingNumber"),
            carrier=data.get("carrier"),
            created_at=data.get("createdAt", ""),
            updated_at=data.get("updatedAt", ""),
        )


ADDRESS_TYPES = ("home", "work", "other")


@dataclass
class Address:
    """A saved shipping address."""

    id: str
    first_name: str
    last_name: str
    address_line1: str
    city: str
    state: str
    zip_code: str
    type: str = "home"
    is_default: bool = False
    address_line2: str = ""
    country: str = "United States"
    phone: str = ""
    created_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Document body; the id lives in the document path, not the body."""
        return {
            "type": self.type,
            "isDefault": self.is_default,
            "firstName": self.first_name,
            "lastName": self.last_name,
            "addressLine1": self.address_line1,
            "addressLine2": self.address_line2,
            "city": self.city,
            "state": self.state,
            "zipCode": self.zip_code,
            "country": self.country,
            "phone": self.phone,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, doc_id: str, data: dict[str, Any]) -> "Address":
        return cls(
            id=doc_id,
            type=data.get("type", "home"),
            is_default=bool(data.get("isDefault", False)),
            first_name=data.get("firstName", ""),
            last_name=data.get("lastName", ""),
            address_line1=data.get("addressLine1", ""),
            address_line2=data.get("addressLine2") or "",
            city=data.get("city", ""),
            state=data.get("state", ""),
            zip_code=data.get("zipCode", ""),
            country=data.get("country", "United States"),
            phone=data.get("phone") or "",
            created_at=data.get("createdAt", ""),
            updated_at=data.get("updatedAt", ""),
        )


@dataclass
class CartItem:
    """A cart line; one per product."""

    id: str
    product_id: str
    name: str
    price: float
    quantity: int
    description: str = ""
    category: str = ""
    image: str = ""
    images: list[str] = field(default_factory=list)
    in_stock: bool = True
    added_at: str = field(default_factory=_utc_now)
    updated_at: str = field(default_factory=_utc_now)
    # Write fencing: sequence number and writer of the last write to this line
    write_seq: int = 0
    writer_id: str | None = None

    @property
    def line_total(self) -> float:
        return self.price * self.quantity

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "productId": self.product_id,
            "name": self.name,
            "price": self.price,
            "quantity": self.quantity,
            "description": self.description,
            "category": self.category,
            "image": self.image,
            "images": list(self.images),
            "inStock": self.in_stock,
            "addedAt": self.added_at,
            "updatedAt": self.updated_at,
            "writeSeq": self.write_seq,
        }
        if self.writer_id is not None:
            result["writerId"] = self.writer_id
        return result

    @classmethod
    def from_dict(cls, doc_id: str, data: dict[str, Any]) -> "CartItem":
        return cls(
            id=doc_id,
            product_id=str(data.get("productId") or doc_id),
            name=data.get("name", ""),
            price=float(data.get("price", 0)),
            quantity=int(data.get("quantity", 1)),
            description=data.get("description") or "",
            category=data.get("category") or "",
            image=data.get("image") or "",
            images=list(data.get("images") or []),
            in_stock=data.get("inStock", True) is not False,
            added_at=data.get("addedAt", ""),
            updated_at=data.get("updatedAt", ""),
            write_seq=int(data.get("writeSeq", 0)),
            writer_id=data.get("writerId"),
        )
