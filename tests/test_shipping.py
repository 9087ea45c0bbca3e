from datetime import date
from decimal import Decimal

import pytest

from checkout.catalog import default_catalog
from checkout.errors import ShippingOptionNotFound
from checkout.shipping import (
    ShippingResolver,
    add_business_days,
    parse_business_days,
    shipping_cost,
    surcharge_blocks,
)

# 2024-01-05 は金曜日
FRIDAY = date(2024, 1, 5)


class TestSurcharge:
    @pytest.mark.parametrize(
        "item_count, blocks",
        [(0, 0), (1, 0), (5, 0), (6, 1), (10, 1), (11, 2), (15, 2), (16, 3)],
    )
    def test_blocks(self, item_count, blocks):
        assert surcharge_blocks(item_count) == blocks

    def test_cost_adds_two_dollars_per_block(self):
        assert shipping_cost(Decimal("5.99"), 5) == Decimal("5.99")
        assert shipping_cost(Decimal("5.99"), 6) == Decimal("7.99")
        assert shipping_cost(Decimal("5.99"), 11) == Decimal("9.99")


class TestBusinessDays:
    @pytest.mark.parametrize(
        "descriptor, days",
        [
            ("3-5 business days", 5),
            ("1-2 business days", 2),
            ("Next business day", 1),
            ("7 business days", 7),
            ("whenever", 3),
        ],
    )
    def test_parse(self, descriptor, days):
        assert parse_business_days(descriptor) == days

    def test_skips_weekend(self):
        assert add_business_days(FRIDAY, 1) == date(2024, 1, 8)
        assert add_business_days(FRIDAY, 5) == date(2024, 1, 12)


class TestResolver:
    def test_resolve_standard(self):
        quote = ShippingResolver(default_catalog()).resolve("standard", 3, today=FRIDAY)
        assert quote.cost == Decimal("5.99")
        assert quote.estimated_delivery_date == date(2024, 1, 12)

    def test_resolve_overnight_with_surcharge(self):
        quote = ShippingResolver(default_catalog()).resolve("overnight", 6, today=FRIDAY)
        assert quote.cost == Decimal("21.99")
        assert quote.estimated_delivery_date == date(2024, 1, 8)

    def test_unknown_option(self):
        with pytest.raises(ShippingOptionNotFound):
            ShippingResolver(default_catalog()).resolve("teleport", 1)

    def test_list_options(self):
        ids = [o.id for o in ShippingResolver(default_catalog()).list_options()]
        assert ids == ["standard", "express", "overnight"]
