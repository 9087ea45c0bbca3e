"""
Checkout Service — 配送料金リゾルバ (Shipping Resolver)

配送オプション ID と商品点数から、送料とお届け予定日を求める。
カタログ参照と日付計算だけを行う純粋なコンポーネント。

数量割増ルール:
  最初の 5 点を超えた分について、5 点ごとのブロック (端数も 1 ブロック) に
  $2.00 を加算する。
    5 点 → 割増なし / 6〜10 点 → 1 ブロック / 11〜15 点 → 2 ブロック
"""

import re
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal

from .catalog import Catalog, ShippingOption
from .totals import quantize

FREE_UNITS = 5
UNITS_PER_BLOCK = 5
SURCHARGE_PER_BLOCK = Decimal("2.00")
DEFAULT_BUSINESS_DAYS = 3

_RANGE = re.compile(r"(\d+)\s*-\s*(\d+)")
_SINGLE = re.compile(r"(\d+)")


@dataclass(frozen=True)
class ShippingQuote:
    option: ShippingOption
    item_count: int
    cost: Decimal
    estimated_delivery_date: date

    def to_dict(self) -> dict:
        return {
            "option_id": self.option.id,
            "name": self.option.name,
            "item_count": self.item_count,
            "cost": str(self.cost),
            "estimated_delivery_date": self.estimated_delivery_date.isoformat(),
        }


def surcharge_blocks(item_count: int) -> int:
    if item_count <= FREE_UNITS:
        return 0
    return (item_count - 1) // UNITS_PER_BLOCK


def shipping_cost(base_price: Decimal, item_count: int) -> Decimal:
    return quantize(base_price + SURCHARGE_PER_BLOCK * surcharge_blocks(item_count))


def parse_business_days(descriptor: str) -> int:
    """
    "3-5 business days" のような表記を営業日数に変換する。

    範囲表記は上限を採用する。"Next business day" は 1。
    解釈できない表記は既定値 (3 営業日) とする。
    """
    text = descriptor.strip().lower()
    if text.startswith("next"):
        return 1
    m = _RANGE.search(text)
    if m:
        return int(m.group(2))
    m = _SINGLE.search(text)
    if m and int(m.group(1)) > 0:
        return int(m.group(1))
    return DEFAULT_BUSINESS_DAYS


def add_business_days(start: date, days: int) -> date:
    """土日だけを飛ばして営業日を数える (祝日カレンダーは持たない)。"""
    current = start
    remaining = days
    while remaining > 0:
        current += timedelta(days=1)
        if current.weekday() < 5:
            remaining -= 1
    return current


class ShippingResolver:
    def __init__(self, catalog: Catalog) -> None:
        self.catalog = catalog

    def resolve(
        self,
        option_id: str,
        item_count: int,
        today: date | None = None,
    ) -> ShippingQuote:
        """
        送料とお届け予定日を求める。

        未知のオプション ID は ShippingOptionNotFound。
        """
        option = self.catalog.lookup_shipping_option(option_id)
        start = today or date.today()
        return ShippingQuote(
            option=option,
            item_count=item_count,
            cost=shipping_cost(option.base_price, item_count),
            estimated_delivery_date=add_business_days(
                start, parse_business_days(option.estimated_days)
            ),
        )

    def list_options(self) -> list[ShippingOption]:
        return self.catalog.list_shipping_options()
