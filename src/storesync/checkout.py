"""Conversion of checkout records into orders.

A checkout record is written by the payment flow under
``users/{uid}/checkout_sessions/{id}``. The store enforces no schema, so
every field is read defensively here. Malformed item data degrades to an
empty item list; ``build_order`` then refuses to produce an order.
"""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from .config import DEFAULT_DELIVERY_DAYS, DEFAULT_STORE_PREFIX
from .errors import EmptyOrderError, InvalidOrderTotalsError
from .identifiers import (
    generate_confirmation_number,
    generate_order_number,
    safe_document_id,
)
from .models import (
    TOTALS_TOLERANCE,
    Order,
    OrderAddress,
    OrderItem,
    OrderSource,
    OrderStatus,
    OrderTotals,
    StatusEntry,
    format_timestamp,
    parse_timestamp,
)

log = logging.getLogger(__name__)

DEFAULT_SHIPPING_METHOD = "Standard Shipping"
CHECKOUT_PAYMENT_METHOD = "Stripe Checkout"
CONFIRMED_NOTE = "Payment confirmed via Stripe"


def correlation_id(record: dict[str, Any], fallback: str) -> str:
    """The immutable id tying a checkout record to its payment session."""
    return str(record.get("sessionId") or fallback)


def parse_order_items(record: dict[str, Any]) -> list[OrderItem]:
    """
    Extract order items from a checkout record.

    ``metadata.orderItems`` (a JSON array) wins; otherwise ``line_items`` in
    the payment processor's shape are used. Any malformed data yields [].
    """
    metadata = record.get("metadata") or {}
    try:
        if metadata.get("orderItems"):
            raw = json.loads(metadata["orderItems"])
            if not isinstance(raw, list):
                raise ValueError("orderItems is not an array")
            return [OrderItem.from_dict(item) for item in raw]
        if record.get("line_items"):
            return [_line_item_to_order_item(i, item) for i, item in enumerate(record["line_items"])]
    except (json.JSONDecodeError, KeyError, TypeError, ValueError, AttributeError) as e:
        log.warning(f"Could not parse order items: {e}")
    return []


def _line_item_to_order_item(index: int, item: dict[str, Any]) -> OrderItem:
    price_data = item.get("price_data") or {}
    product_data = price_data.get("product_data") or {}
    product_meta = product_data.get("metadata") or {}
    return OrderItem.from_dict(
        {
            "productId": product_meta.get("product_id") or f"item_{index}",
            "name": product_data.get("name") or f"Item {index + 1}",
            "price": (price_data.get("unit_amount") or 0) / 100,
            "quantity": item.get("quantity") or 1,
            "image": product_meta.get("image_url") or "",
            "category": "Handmade",
        }
    )


def parse_amount(value: Any) -> float:
    """Parse a decimal string amount; unparseable values count as 0."""
    if value is None or value == "":
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        log.warning(f"Unparseable amount {value!r}, using 0")
        return 0.0


def parse_totals(metadata: dict[str, Any]) -> OrderTotals:
    """
    Build order totals from checkout metadata.

    A missing total is derived from its parts.

    Raises:
        InvalidOrderTotalsError: If an amount is negative or the total
            doesn't equal subtotal + shipping + tax.
    """
    totals = OrderTotals(
        subtotal=parse_amount(metadata.get("subtotal")),
        shipping=parse_amount(metadata.get("originalShipping")),
        tax=parse_amount(metadata.get("originalTax")),
    )
    if metadata.get("originalTotal") in (None, ""):
        totals.total = totals.subtotal + totals.shipping + totals.tax
    else:
        totals.total = parse_amount(metadata.get("originalTotal"))

    for name, amount in totals.to_dict().items():
        if amount < 0:
            raise InvalidOrderTotalsError(f"{name} is negative ({amount})")
    expected = totals.subtotal + totals.shipping + totals.tax
    if abs(totals.total - expected) > TOTALS_TOLERANCE:
        raise InvalidOrderTotalsError(
            f"total {totals.total:.2f} != subtotal + shipping + tax ({expected:.2f})"
        )
    return totals


def parse_delivery_days(value: Any, default: int = DEFAULT_DELIVERY_DAYS) -> int:
    """
    Parse a "min-max" business-day window and return the max.

    "3-5" -> 5. Missing, single-valued or malformed windows fall back to
    ``default``.
    """
    if not value or not isinstance(value, str):
        return default
    parts = value.split("-")
    if len(parts) < 2:
        return default
    try:
        days = int(parts[1].strip())
    except ValueError:
        return default
    return days if days >= 0 else default


def parse_shipping_address(record: dict[str, Any]) -> OrderAddress:
    metadata = record.get("metadata") or {}
    return OrderAddress(
        first_name=metadata.get("shippingFirstName") or "Customer",
        last_name=metadata.get("shippingLastName") or "",
        email=metadata.get("customerEmail") or record.get("customer_email") or "",
        phone=metadata.get("shippingPhone") or "",
        address1=metadata.get("shippingAddress1") or "",
        address2=metadata.get("shippingAddress2") or "",
        city=metadata.get("shippingCity") or "",
        state=metadata.get("shippingState") or "",
        zip_code=metadata.get("shippingZip") or "",
        country=metadata.get("shippingCountry") or "US",
    )


def record_created_at(record: dict[str, Any]) -> datetime:
    """Creation time of the record; now if missing or unparseable."""
    return parse_timestamp(record.get("created")) or datetime.now(timezone.utc)


def build_order(
    record: dict[str, Any],
    user_id: str,
    session_id: str,
    store_prefix: str = DEFAULT_STORE_PREFIX,
    default_delivery_days: int = DEFAULT_DELIVERY_DAYS,
) -> Order:
    """
    Build the canonical order for a checkout record.

    Args:
        record: Checkout record document.
        user_id: Owner of the record.
        session_id: Document id of the record, used when it carries no
            ``sessionId``.

    Raises:
        EmptyOrderError: If the record yields no items.
        InvalidOrderTotalsError: If the totals are inconsistent.
    """
    metadata = record.get("metadata") or {}
    session = correlation_id(record, session_id)

    items = parse_order_items(record)
    if not items:
        raise EmptyOrderError(session)
    totals = parse_totals(metadata)

    created = record_created_at(record)
    created_ms = int(created.timestamp() * 1000)
    created_iso = format_timestamp(created)
    delivery_days = parse_delivery_days(metadata.get("estimatedDeliveryDays"), default_delivery_days)
    estimated_delivery = format_timestamp(created + timedelta(days=delivery_days))

    shipping_address = parse_shipping_address(record)
    customer_name = metadata.get("customerName") or (
        f"{shipping_address.first_name} {shipping_address.last_name}".strip()
    )

    return Order(
        id=safe_document_id(session),
        order_number=generate_order_number(created_ms, record.get("sessionId"), store_prefix),
        confirmation_number=record.get("confirmationNumber")
        or generate_confirmation_number(user_id),
        customer_id=user_id,
        customer_email=metadata.get("customerEmail") or record.get("customer_email") or "",
        customer_name=customer_name,
        items=items,
        totals=totals,
        shipping_address=shipping_address,
        shipping_method=metadata.get("shippingMethod") or DEFAULT_SHIPPING_METHOD,
        estimated_delivery=estimated_delivery,
        payment_method=CHECKOUT_PAYMENT_METHOD,
        payment_intent_id=session,
        status=OrderStatus.CONFIRMED,
        status_history=[
            StatusEntry(status=OrderStatus.CONFIRMED, timestamp=created_iso, note=CONFIRMED_NOTE)
        ],
        source=OrderSource.CHECKOUT,
        tracking_number=record.get("trackingNumber"),
        carrier=record.get("carrier"),
        created_at=created_iso,
        updated_at=created_iso,
    )
