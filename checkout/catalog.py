"""
Checkout Service — カタログ参照データ (Catalog Reference Data)

商品・配送オプション・クーポンの読み取り専用カタログ。
コアから見ると外部の協調者であり、参照 (lookup) しか行わない。
価格は Decimal で保持し、float の誤差を持ち込まない。
"""

from dataclasses import dataclass
from decimal import Decimal

from .errors import CouponNotFound, ProductNotFound, ShippingOptionNotFound


@dataclass(frozen=True)
class Product:
    id: str
    name: str
    unit_price: Decimal
    sku: str = ""
    image: str | None = None


@dataclass(frozen=True)
class ShippingOption:
    id: str
    name: str
    base_price: Decimal
    estimated_days: str


@dataclass(frozen=True)
class Coupon:
    code: str
    kind: str  # "percentage" | "fixed"
    value: Decimal


class Catalog:
    def __init__(
        self,
        products: list[Product],
        shipping_options: list[ShippingOption],
        coupons: list[Coupon] | None = None,
    ) -> None:
        self._products = {p.id: p for p in products}
        self._shipping = {o.id: o for o in shipping_options}
        self._coupons = {c.code.upper(): c for c in coupons or []}

    def lookup_product(self, product_id: str) -> Product:
        product = self._products.get(product_id)
        if product is None:
            raise ProductNotFound(product_id)
        return product

    def lookup_shipping_option(self, option_id: str) -> ShippingOption:
        option = self._shipping.get(option_id)
        if option is None:
            raise ShippingOptionNotFound(option_id)
        return option

    def lookup_coupon(self, code: str) -> Coupon:
        coupon = self._coupons.get(code.upper())
        if coupon is None:
            raise CouponNotFound(code)
        return coupon

    def list_products(self) -> list[Product]:
        return list(self._products.values())

    def list_shipping_options(self) -> list[ShippingOption]:
        return list(self._shipping.values())

    def put_product(self, product: Product) -> None:
        """商品を登録・更新する (価格改定などの管理操作用)。"""
        self._products[product.id] = product


# ── 既定カタログ ─────────────────────────────────

DEFAULT_PRODUCTS = [
    Product(
        id="classic-white-t-shirt",
        name="Classic White T-Shirt",
        unit_price=Decimal("29.99"),
        sku="TS-WHT-001",
        image="https://images.unsplash.com/photo-1521572163474-6864f9cf17ab",
    ),
    Product(
        id="classic-black-t-shirt",
        name="Classic Black T-Shirt",
        unit_price=Decimal("29.99"),
        sku="TS-BLK-001",
        image="https://images.unsplash.com/photo-1503341504253-dff4815485f1",
    ),
    Product(
        id="canvas-tote-bag",
        name="Canvas Tote Bag",
        unit_price=Decimal("49.99"),
        sku="BG-NAT-001",
    ),
    Product(
        id="slim-fit-jeans",
        name="Slim Fit Jeans",
        unit_price=Decimal("59.99"),
        sku="JN-BLU-001",
        image="https://images.unsplash.com/photo-1542272604-787c3835535d",
    ),
    Product(
        id="wireless-headphones",
        name="Wireless Headphones",
        unit_price=Decimal("129.99"),
        sku="HP-BLK-001",
        image="https://images.unsplash.com/photo-1505740420928-5e560c06d30e",
    ),
    Product(
        id="smart-watch",
        name="Smart Watch",
        unit_price=Decimal("249.99"),
        sku="SW-BLK-001",
        image="https://images.unsplash.com/photo-1523275335684-37898b6baf30",
    ),
]

DEFAULT_SHIPPING_OPTIONS = [
    ShippingOption("standard", "Standard Shipping", Decimal("5.99"), "3-5 business days"),
    ShippingOption("express", "Express Shipping", Decimal("12.99"), "1-2 business days"),
    ShippingOption("overnight", "Overnight Shipping", Decimal("19.99"), "Next business day"),
]

DEFAULT_COUPONS = [
    Coupon("WELCOME10", "percentage", Decimal("10")),
    Coupon("FIVEOFF", "fixed", Decimal("5.00")),
]


def default_catalog() -> Catalog:
    return Catalog(DEFAULT_PRODUCTS, DEFAULT_SHIPPING_OPTIONS, DEFAULT_COUPONS)
