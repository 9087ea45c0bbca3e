from decimal import Decimal

import pytest

from checkout.cart import CartAggregate, CartOwner, Pricing
from checkout.catalog import Catalog, default_catalog
from checkout.errors import (
    CouponNotFound,
    InvalidQuantity,
    ItemNotFound,
    ProductNotFound,
    ShippingOptionNotFound,
    ValidationError,
)


@pytest.fixture
def cart(owner, pricing):
    return CartAggregate(owner, pricing)


def _assert_totals_consistent(cart: CartAggregate) -> None:
    subtotal = sum((i.unit_price * i.quantity for i in cart.items), Decimal(0))
    assert cart.totals.subtotal == subtotal.quantize(Decimal("0.01"))
    assert all(i.quantity > 0 for i in cart.items)
    ids = [i.product_id for i in cart.items]
    assert len(ids) == len(set(ids))


class TestCartOwner:
    def test_requires_exactly_one_identity(self):
        with pytest.raises(ValidationError):
            CartOwner()
        with pytest.raises(ValidationError):
            CartOwner(user_id="u", session_id="s")

    def test_key_round_trip(self):
        assert CartOwner.from_key(CartOwner(user_id="42").key) == CartOwner(user_id="42")
        assert CartOwner(session_id="abc").key == "session:abc"


class TestAddItem:
    def test_add_new_item(self, cart):
        item = cart.add_item("classic-white-t-shirt", 2)

        assert item.quantity == 2
        assert item.unit_price == Decimal("29.99")
        assert cart.totals.subtotal == Decimal("59.98")
        assert cart.totals.tax == Decimal("5.10")
        _assert_totals_consistent(cart)

    def test_add_same_product_increments(self, cart):
        cart.add_item("canvas-tote-bag", 1)
        cart.add_item("canvas-tote-bag", 2)

        assert len(cart.items) == 1
        assert cart.items[0].quantity == 3
        _assert_totals_consistent(cart)

    def test_readd_refreshes_price_from_catalog(self, cart, pricing):
        from checkout.catalog import Product

        cart.add_item("smart-watch", 1)
        pricing.catalog.put_product(Product("smart-watch", "Smart Watch", Decimal("199.99")))
        cart.add_item("smart-watch", 1)

        assert cart.items[0].unit_price == Decimal("199.99")
        assert cart.totals.subtotal == Decimal("399.98")

    @pytest.mark.parametrize("quantity", [0, -1])
    def test_rejects_non_positive_quantity(self, cart, quantity):
        cart.add_item("smart-watch", 1)
        before = cart.snapshot

        with pytest.raises(InvalidQuantity):
            cart.add_item("smart-watch", quantity)
        assert cart.snapshot == before

    def test_unknown_product(self, cart):
        with pytest.raises(ProductNotFound):
            cart.add_item("does-not-exist", 1)
        assert cart.is_empty()


class TestUpdateAndRemove:
    def test_update_quantity(self, cart):
        cart.add_item("slim-fit-jeans", 1)
        cart.update_item_quantity("slim-fit-jeans", 4)

        assert cart.items[0].quantity == 4
        assert cart.totals.subtotal == Decimal("239.96")

    def test_update_to_zero_is_same_as_remove(self, owner, pricing):
        updated = CartAggregate(owner, pricing)
        removed = CartAggregate(owner, pricing)
        for c in (updated, removed):
            c.add_item("slim-fit-jeans", 1)
            c.add_item("canvas-tote-bag", 2)

        updated.update_item_quantity("slim-fit-jeans", 0)
        removed.remove_item("slim-fit-jeans")

        assert updated.snapshot == removed.snapshot

    def test_update_missing_item(self, cart):
        with pytest.raises(ItemNotFound):
            cart.update_item_quantity("smart-watch", 2)

    def test_update_negative_quantity(self, cart):
        cart.add_item("smart-watch", 1)
        with pytest.raises(InvalidQuantity):
            cart.update_item_quantity("smart-watch", -2)
        assert cart.items[0].quantity == 1

    def test_remove_missing_item(self, cart):
        with pytest.raises(ItemNotFound):
            cart.remove_item("smart-watch")

    def test_remove_last_item_zeroes_totals(self, cart):
        cart.add_item("smart-watch", 1)
        cart.select_shipping("express")
        cart.remove_item("smart-watch")

        assert cart.is_empty()
        assert cart.totals.total == Decimal("0.00")

    def test_clear(self, cart):
        cart.add_item("smart-watch", 1)
        cart.apply_coupon("WELCOME10")
        cart.clear()

        assert cart.is_empty()
        assert cart.coupon is None
        assert cart.totals.total == Decimal("0.00")


class TestShippingAndCoupon:
    def test_select_shipping_adds_cost(self, cart):
        cart.add_item("classic-white-t-shirt", 2)
        cart.add_item("canvas-tote-bag", 1)
        cart.select_shipping("standard")

        assert cart.totals.shipping_cost == Decimal("5.99")
        assert cart.totals.total == Decimal("125.31")

    def test_shipping_surcharge_follows_item_count(self, cart):
        cart.select_shipping("standard")
        cart.add_item("classic-black-t-shirt", 6)
        assert cart.totals.shipping_cost == Decimal("7.99")

    def test_unknown_shipping_option(self, cart):
        cart.add_item("smart-watch", 1)
        with pytest.raises(ShippingOptionNotFound):
            cart.select_shipping("teleport")
        assert cart.shipping_option_id is None

    def test_apply_coupon_is_case_insensitive(self, cart):
        cart.add_item("wireless-headphones", 1)
        coupon = cart.apply_coupon("welcome10")

        assert coupon.code == "WELCOME10"
        assert cart.totals.discount == Decimal("13.00")

    def test_remove_coupon(self, cart):
        cart.add_item("wireless-headphones", 1)
        cart.apply_coupon("FIVEOFF")
        cart.remove_coupon()
        assert cart.totals.discount == Decimal("0.00")

    def test_unknown_coupon(self, cart):
        with pytest.raises(CouponNotFound):
            cart.apply_coupon("FREESTUFF")


def test_document_round_trip(cart, pricing):
    cart.add_item("smart-watch", 2)
    cart.select_shipping("express")
    cart.apply_coupon("FIVEOFF")

    restored = CartAggregate.from_document(cart.to_document(), pricing, version=3)

    assert restored.snapshot == cart.snapshot
    assert restored.version == 3


def test_loading_recomputes_totals_with_current_pricing(cart):
    cart.add_item("smart-watch", 1)
    assert cart.totals.tax == Decimal("21.25")

    restored = CartAggregate.from_document(cart.to_document(), Pricing(default_catalog(), Decimal("0.10")))

    assert restored.totals.tax == Decimal("25.00")
    assert restored.totals.total == Decimal("274.99")


def test_loading_drops_shipping_option_that_no_longer_exists(cart, pricing):
    cart.add_item("smart-watch", 1)
    cart.select_shipping("express")
    standard_only = Catalog(
        [pricing.catalog.lookup_product("smart-watch")],
        [pricing.catalog.lookup_shipping_option("standard")],
    )

    restored = CartAggregate.from_document(cart.to_document(), Pricing(standard_only, Decimal("0.085")))

    assert restored.shipping_option_id is None
    assert restored.totals.shipping_cost == Decimal("0.00")
    assert restored.items == cart.items


def test_total_identity_holds_after_every_mutation(cart):
    steps = [
        lambda: cart.add_item("classic-white-t-shirt", 3),
        lambda: cart.select_shipping("express"),
        lambda: cart.add_item("smart-watch", 4),
        lambda: cart.apply_coupon("FIVEOFF"),
        lambda: cart.update_item_quantity("classic-white-t-shirt", 1),
        lambda: cart.remove_item("smart-watch"),
    ]
    for step in steps:
        step()
        t = cart.totals
        assert t.total == t.subtotal + t.shipping_cost + t.tax - t.discount
        _assert_totals_consistent(cart)
