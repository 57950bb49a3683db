"""Unit tests for invoice aging buckets and line-item construction."""

import pytest

from app.business.errors import ValidationError
from app.services.invoice_manager import build_line_items, classify_aging
from app.storage.models import Order


def _order(**fields):
    return Order(id=1, contact_name="Jane", contact_email="jane@example.com", **fields)


@pytest.mark.unit
class TestAging:

    @pytest.mark.parametrize("age_days,bucket", [
        (0, "current"),
        (29, "current"),
        (30, "thirty_to_sixty"),
        (59, "thirty_to_sixty"),
        (60, "sixty_to_ninety"),
        (89, "sixty_to_ninety"),
        (90, "ninety_plus"),
        (400, "ninety_plus"),
    ])
    def test_buckets(self, age_days, bucket):
        assert classify_aging(age_days) == bucket


@pytest.mark.unit
class TestLineItems:

    def test_base_package_only(self):
        items = build_line_items(_order(package_name="Gold"), 10000)

        assert items == [{"description": "Gold", "quantity": 1, "unit_price": 10000, "total": 10000}]

    def test_add_ons_are_itemized_and_base_is_remainder(self):
        order = _order(
            package_name="Gold",
            add_ons=[{"name": "Rush delivery", "price": 1500, "quantity": 2}, {"name": "Gift wrap", "price": 500}],
        )

        items = build_line_items(order, 10000)

        assert [item["description"] for item in items] == ["Gold", "Rush delivery", "Gift wrap"]
        assert items[0]["total"] == 6500
        assert items[1] == {"description": "Rush delivery", "quantity": 2, "unit_price": 1500, "total": 3000}
        assert sum(item["total"] for item in items) == 10000

    def test_description_falls_back_to_service_type(self):
        items = build_line_items(_order(service_type="consulting"), 100)

        assert items[0]["description"] == "consulting"

    def test_add_ons_exceeding_subtotal(self):
        order = _order(add_ons=[{"name": "Extra", "price": 20000}])

        with pytest.raises(ValidationError):
            build_line_items(order, 10000)

    @pytest.mark.parametrize("add_on", [
        {"price": 100},
        {"name": "Extra", "price": "abc"},
        {"name": "Extra", "price": -1},
        {"name": "Extra", "price": 100, "quantity": 0},
    ])
    def test_malformed_add_on(self, add_on):
        with pytest.raises(ValidationError):
            build_line_items(_order(add_ons=[add_on]), 10000)
