"""
Checkout Service — 金額計算エンジン (Totals Engine)

明細から小計・税・送料・割引・合計を算出する純粋関数群。
副作用を持たないため、カートを変更するたびに何度呼んでも安全。

    subtotal = Σ (unit_price × quantity)      ← 丸めは最後に1回だけ
    tax      = round(subtotal × tax_rate)
    total    = subtotal + shipping + tax - discount   (0 未満にはしない)

丸めは通貨の最小単位 (セント) への ROUND_HALF_UP。
"""

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Protocol

from .catalog import Coupon

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


class PricedLine(Protocol):
    unit_price: Decimal
    quantity: int


def quantize(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    shipping_cost: Decimal
    tax: Decimal
    discount: Decimal
    total: Decimal

    @classmethod
    def zero(cls) -> "Totals":
        return cls(ZERO, ZERO, ZERO, ZERO, ZERO)

    def to_dict(self) -> dict:
        return {
            "subtotal": str(self.subtotal),
            "shipping_cost": str(self.shipping_cost),
            "tax": str(self.tax),
            "discount": str(self.discount),
            "total": str(self.total),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Totals":
        return cls(
            subtotal=Decimal(data["subtotal"]),
            shipping_cost=Decimal(data["shipping_cost"]),
            tax=Decimal(data["tax"]),
            discount=Decimal(data["discount"]),
            total=Decimal(data["total"]),
        )

    def formatted(self) -> dict:
        return {
            "subtotal": format_currency(self.subtotal),
            "shipping_cost": format_currency(self.shipping_cost),
            "tax": format_currency(self.tax),
            "discount": format_currency(self.discount) if self.discount else None,
            "total": format_currency(self.total),
        }


def subtotal_of(items: Iterable[PricedLine]) -> Decimal:
    return quantize(sum((Decimal(i.unit_price) * i.quantity for i in items), Decimal(0)))


def compute(
    items: Iterable[PricedLine],
    shipping_cost: Decimal = ZERO,
    tax_rate: Decimal = ZERO,
    discount: Decimal = ZERO,
) -> Totals:
    """明細と送料・税率・割引額から Totals を算出する。"""
    subtotal = subtotal_of(items)
    shipping_cost = quantize(shipping_cost)
    discount = quantize(discount)
    tax = quantize(subtotal * Decimal(tax_rate))

    total = subtotal + shipping_cost + tax - discount
    if total < 0:
        # 割引が合計を上回る場合はエラーにせず 0 に丸める
        logger.warning(
            "Discount %s exceeds order value %s; total clamped to 0",
            discount,
            subtotal + shipping_cost + tax,
        )
        total = ZERO

    return Totals(
        subtotal=subtotal,
        shipping_cost=shipping_cost,
        tax=tax,
        discount=discount,
        total=quantize(total),
    )


def coupon_discount(subtotal: Decimal, coupon: Coupon | None) -> Decimal:
    """
    クーポンの割引額を算出する。

    percentage: 小計 × 率 / 100 (半端は四捨五入)
    fixed:      額面。ただし小計を上限とする
    """
    if coupon is None:
        return ZERO
    if coupon.kind == "percentage":
        return quantize(subtotal * coupon.value / Decimal(100))
    if coupon.kind == "fixed":
        return quantize(min(coupon.value, subtotal))
    raise ValueError(f"Unknown coupon kind: {coupon.kind}")


def format_currency(amount: Decimal) -> str:
    """$1,234.56 形式に整形する。"""
    amount = quantize(amount)
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"
