"""
Checkout Service — カート集約 (Cart Aggregate)

セッションまたはログインユーザーに紐づく、購入予定明細の集合。

- 明細は product_id で一意。同じ商品を追加すると数量を加算する
- 数量 0 への変更は明細の削除として扱い、数量 0 の行は保持しない
- 変更操作のたびに Totals を必ず再計算する
- 明細リストと Totals は1つのスナップショットとして同時に差し替えるため、
  読み手が「新しい明細 + 古い合計」を観測することはない

永続化時の同時更新は version による楽観的ロックで検出する (store.py)。
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal

from .catalog import Catalog, Coupon
from .errors import InvalidQuantity, ItemNotFound, ShippingOptionNotFound, ValidationError
from .shipping import ShippingResolver
from .totals import ZERO, Totals, compute, coupon_discount, subtotal_of

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LineItem:
    product_id: str
    name: str
    unit_price: Decimal
    quantity: int
    image_ref: str | None = None

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "name": self.name,
            "unit_price": str(self.unit_price),
            "quantity": self.quantity,
            "image_ref": self.image_ref,
            "subtotal": str(self.subtotal),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LineItem":
        return cls(
            product_id=data["product_id"],
            name=data["name"],
            unit_price=Decimal(data["unit_price"]),
            quantity=int(data["quantity"]),
            image_ref=data.get("image_ref"),
        )


@dataclass(frozen=True)
class CartOwner:
    """カートの所有者。user_id と session_id のどちらか一方だけを持つ。"""

    user_id: str | None = None
    session_id: str | None = None

    def __post_init__(self) -> None:
        if bool(self.user_id) == bool(self.session_id):
            raise ValidationError("Exactly one of user id or session id is required")

    @property
    def key(self) -> str:
        if self.user_id:
            return f"user:{self.user_id}"
        return f"session:{self.session_id}"

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    @classmethod
    def from_key(cls, key: str) -> "CartOwner":
        kind, _, value = key.partition(":")
        if kind == "user":
            return cls(user_id=value)
        if kind == "session":
            return cls(session_id=value)
        raise ValueError(f"Invalid cart key: {key}")


@dataclass(frozen=True)
class Pricing:
    """カートの価格計算に必要な参照データと税率。"""

    catalog: Catalog
    tax_rate: Decimal

    @property
    def resolver(self) -> ShippingResolver:
        return ShippingResolver(self.catalog)

    def totals_for(
        self,
        items: tuple[LineItem, ...],
        shipping_option_id: str | None,
        coupon: Coupon | None,
    ) -> Totals:
        if not items:
            return Totals.zero()
        item_count = sum(i.quantity for i in items)
        shipping = ZERO
        if shipping_option_id:
            shipping = self.resolver.resolve(shipping_option_id, item_count).cost
        discount = coupon_discount(subtotal_of(items), coupon)
        return compute(items, shipping, self.tax_rate, discount)


@dataclass(frozen=True)
class CartSnapshot:
    items: tuple[LineItem, ...] = ()
    shipping_option_id: str | None = None
    coupon: Coupon | None = None
    totals: Totals = field(default_factory=Totals.zero)


class CartAggregate:
    def __init__(self, owner: CartOwner, pricing: Pricing) -> None:
        self.owner = owner
        self.pricing = pricing
        self._snapshot = CartSnapshot()
        self.version: int = 0
        self.expires_at: datetime | None = None
        self.updated_at: datetime | None = None

    # ── 読み取り ─────────────────────────────────

    @property
    def key(self) -> str:
        return self.owner.key

    @property
    def snapshot(self) -> CartSnapshot:
        return self._snapshot

    @property
    def items(self) -> tuple[LineItem, ...]:
        return self._snapshot.items

    @property
    def totals(self) -> Totals:
        return self._snapshot.totals

    @property
    def shipping_option_id(self) -> str | None:
        return self._snapshot.shipping_option_id

    @property
    def coupon(self) -> Coupon | None:
        return self._snapshot.coupon

    @property
    def item_count(self) -> int:
        return sum(i.quantity for i in self.items)

    def is_empty(self) -> bool:
        return not self.items

    def get_item(self, product_id: str) -> LineItem:
        for item in self.items:
            if item.product_id == product_id:
                return item
        raise ItemNotFound(product_id)

    # ── 変更操作 ─────────────────────────────────

    def add_item(self, product_id: str, quantity: int) -> LineItem:
        """
        商品を追加する。既に存在する場合は数量を加算し、
        単価と商品名はカタログの現在値で取り直す。
        """
        if quantity < 1:
            raise InvalidQuantity("Quantity must be at least 1")
        product = self.pricing.catalog.lookup_product(product_id)

        items = list(self.items)
        for idx, item in enumerate(items):
            if item.product_id == product_id:
                items[idx] = replace(
                    item,
                    name=product.name,
                    unit_price=product.unit_price,
                    quantity=item.quantity + quantity,
                    image_ref=product.image,
                )
                added = items[idx]
                break
        else:
            added = LineItem(
                product_id=product.id,
                name=product.name,
                unit_price=product.unit_price,
                quantity=quantity,
                image_ref=product.image,
            )
            items.append(added)

        self._commit(items=tuple(items))
        return added

    def update_item_quantity(self, product_id: str, quantity: int) -> None:
        """数量を変更する。0 は削除と同じ扱い。"""
        if quantity < 0:
            raise InvalidQuantity("Quantity cannot be negative")
        self.get_item(product_id)
        if quantity == 0:
            self.remove_item(product_id)
            return
        items = tuple(
            replace(i, quantity=quantity) if i.product_id == product_id else i
            for i in self.items
        )
        self._commit(items=items)

    def remove_item(self, product_id: str) -> None:
        """明細を削除する。存在しない場合は ItemNotFound (冪等ではない)。"""
        self.get_item(product_id)
        self._commit(items=tuple(i for i in self.items if i.product_id != product_id))

    def clear(self) -> None:
        self._snapshot = CartSnapshot()

    def select_shipping(self, option_id: str) -> None:
        self.pricing.catalog.lookup_shipping_option(option_id)
        self._commit(shipping_option_id=option_id)

    def apply_coupon(self, code: str) -> Coupon:
        coupon = self.pricing.catalog.lookup_coupon(code)
        self._commit(coupon=coupon)
        return coupon

    def remove_coupon(self) -> None:
        self._commit(coupon=None)

    def _commit(self, **changes) -> None:
        """変更後の状態から Totals を再計算し、スナップショットを一度に差し替える。"""
        draft = replace(self._snapshot, **changes)
        totals = self.pricing.totals_for(draft.items, draft.shipping_option_id, draft.coupon)
        self._snapshot = replace(draft, totals=totals)

    # ── 永続化 ───────────────────────────────────

    def to_document(self) -> dict:
        coupon = self.coupon
        return {
            "cart_key": self.key,
            "items": [i.to_dict() for i in self.items],
            "shipping_option_id": self.shipping_option_id,
            "coupon": (
                {"code": coupon.code, "kind": coupon.kind, "value": str(coupon.value)}
                if coupon
                else None
            ),
            "totals": self.totals.to_dict(),
        }

    @classmethod
    def from_document(
        cls,
        document: dict,
        pricing: Pricing,
        version: int = 0,
        expires_at: datetime | None = None,
        updated_at: datetime | None = None,
    ) -> "CartAggregate":
        cart = cls(CartOwner.from_key(document["cart_key"]), pricing)
        coupon_data = document.get("coupon")
        cart._snapshot = CartSnapshot(
            items=tuple(LineItem.from_dict(i) for i in document.get("items", [])),
            shipping_option_id=document.get("shipping_option_id"),
            coupon=(
                Coupon(coupon_data["code"], coupon_data["kind"], Decimal(coupon_data["value"]))
                if coupon_data
                else None
            ),
            totals=Totals.zero(),
        )
        # 保存済みの Totals は使わず、現在の税率・配送料金で計算し直す
        try:
            cart._commit()
        except ShippingOptionNotFound:
            logger.warning(
                "Shipping option %s no longer exists, cleared from cart %s",
                cart._snapshot.shipping_option_id,
                cart.key,
            )
            cart._commit(shipping_option_id=None)
        cart.version = version
        cart.expires_at = expires_at
        cart.updated_at = updated_at
        return cart
