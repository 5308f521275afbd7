"""Tests for checkout record parsing and order construction."""

import pytest

from storesync.checkout import (
    build_order,
    parse_delivery_days,
    parse_order_items,
    parse_totals,
    record_created_at,
)
from storesync.errors import EmptyOrderError, InvalidOrderTotalsError
from storesync.models import OrderSource, OrderStatus

from .conftest import USER, make_checkout_record


class TestParseOrderItems:
    def test_metadata_items(self, sample_checkout_record):
        items = parse_order_items(sample_checkout_record)

        assert len(items) == 1
        assert items[0].product_id == "p1"
        assert items[0].price == 25
        assert items[0].quantity == 2

    def test_malformed_json_yields_no_items(self):
        record = make_checkout_record()
        record["metadata"]["orderItems"] = "[{not json"
        assert parse_order_items(record) == []

    def test_invalid_item_yields_no_items(self):
        record = make_checkout_record(items=[{"productId": "p1", "name": "Vase", "price": 5, "quantity": 0}])
        assert parse_order_items(record) == []

    def test_line_items_fallback(self):
        record = make_checkout_record()
        del record["metadata"]["orderItems"]
        record["line_items"] = [
            {
                "quantity": 3,
                "price_data": {
                    "unit_amount": 1250,
                    "product_data": {"name": "Mug", "metadata": {"product_id": "m1"}},
                },
            }
        ]

        items = parse_order_items(record)

        assert len(items) == 1
        assert items[0].product_id == "m1"
        assert items[0].price == 12.5
        assert items[0].quantity == 3


class TestParseTotals:
    def test_consistent_totals(self):
        totals = parse_totals(
            {"subtotal": "50.00", "originalShipping": "5.00", "originalTax": "4.00", "originalTotal": "59.00"}
        )
        assert totals.total == pytest.approx(59.0)
        assert totals.is_consistent()

    def test_missing_total_is_derived(self):
        totals = parse_totals({"subtotal": "10.10", "originalShipping": "0.20", "originalTax": "0.30"})
        assert totals.total == pytest.approx(10.6)

    def test_inconsistent_total_raises(self):
        with pytest.raises(InvalidOrderTotalsError):
            parse_totals({"subtotal": "50.00", "originalShipping": "5.00", "originalTax": "4.00", "originalTotal": "60.00"})

    def test_negative_amount_raises(self):
        with pytest.raises(InvalidOrderTotalsError):
            parse_totals({"subtotal": "-1.00"})


class TestParseDeliveryDays:
    @pytest.mark.parametrize(
        "value,expected",
        [("3-5", 5), ("5-7", 7), ("5", 7), ("", 7), (None, 7), ("a-b", 7)],
    )
    def test_values(self, value, expected):
        assert parse_delivery_days(value, default=7) == expected


class TestRecordCreatedAt:
    def test_iso_and_epoch(self):
        iso = record_created_at({"created": "2024-03-01T12:00:00Z"})
        seconds = record_created_at({"created": 1709294400})
        millis = record_created_at({"created": 1709294400000})
        assert iso == seconds == millis


class TestBuildOrder:
    def test_example_record(self, sample_checkout_record):
        order = build_order(sample_checkout_record, USER, "cs_test_a1b2c3d4")

        assert len(order.items) == 1
        assert order.items[0].quantity == 2
        assert order.items[0].price == 25
        assert order.totals.total == pytest.approx(59.0)
        assert order.status == OrderStatus.CONFIRMED
        assert len(order.status_history) == 1
        assert order.status_history[0].status == OrderStatus.CONFIRMED
        assert order.source == OrderSource.CHECKOUT
        assert order.id == "cs_test_a1b2c3d4"
        assert order.payment_intent_id == "cs_test_a1b2c3d4"
        assert order.order_number.startswith("PBM")
        assert order.order_number.endswith("c3d4")
        assert len(order.confirmation_number) == 10
        assert order.customer_name == "Ada Lovelace"
        assert order.shipping_method == "Express"
        assert order.estimated_delivery == "2024-03-06T12:00:00Z"

    def test_keeps_recorded_confirmation_number(self):
        record = make_checkout_record(confirmationNumber="ABCD1234XY")
        order = build_order(record, USER, "cs_test_a1b2c3d4")
        assert order.confirmation_number == "ABCD1234XY"

    def test_default_delivery_window(self):
        record = make_checkout_record()
        del record["metadata"]["estimatedDeliveryDays"]
        order = build_order(record, USER, "cs_test_a1b2c3d4", default_delivery_days=7)
        assert order.estimated_delivery == "2024-03-08T12:00:00Z"

    def test_no_items_raises(self):
        record = make_checkout_record(items=[])
        with pytest.raises(EmptyOrderError):
            build_order(record, USER, "cs_test_a1b2c3d4")
