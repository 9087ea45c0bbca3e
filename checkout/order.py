"""
Checkout Service — 注文集約 (Order Aggregate)

チェックアウト時点のカートを凍結したスナップショットに、
注文ステータスと決済ステータスの状態機械を重ねたもの。

明細・配送・請求先・金額 (Totals) は作成後に変更しない。
カタログ価格が後から変わっても再計算しない (顧客が同意した金額の監査性)。

注文ステータス:
    PENDING → PROCESSING → SHIPPED → DELIVERED
    PENDING / PROCESSING → CANCELLED

決済ステータス (注文ステータスとは独立):
    PENDING → PAID | FAILED
    FAILED  → PAID         (拒否後の再試行が成功した場合)
    PAID    → REFUNDED
"""

import random
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, EmailStr, Field, model_validator

from .cart import LineItem
from .errors import EmptyCartError, InvalidTransitionError
from .totals import Totals

US_POSTAL_CODE = re.compile(r"^\d{5}(-\d{4})?$")


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


ORDER_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.PAID, PaymentStatus.FAILED}),
    PaymentStatus.FAILED: frozenset({PaymentStatus.PAID}),
    PaymentStatus.PAID: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset(),
}


# ── 値オブジェクト ───────────────────────────────


class BillingInfo(BaseModel):
    """請求先情報。チェックアウト入力として検証する。"""

    first_name: str = Field(min_length=1)
    last_name: str = Field(min_length=1)
    email: EmailStr
    address1: str = Field(min_length=1)
    address2: str | None = None
    city: str = Field(min_length=1)
    state: str = Field(min_length=1)
    postal_code: str = Field(min_length=1)
    country: str = "US"

    @model_validator(mode="after")
    def check_postal_code(self) -> "BillingInfo":
        if self.country.upper() == "US" and not US_POSTAL_CODE.match(self.postal_code):
            raise ValueError("Invalid zip code format")
        return self


@dataclass(frozen=True)
class ShippingSelection:
    option_id: str
    name: str
    cost: Decimal
    estimated_delivery_date: date

    def to_dict(self) -> dict:
        return {
            "option_id": self.option_id,
            "name": self.name,
            "cost": str(self.cost),
            "estimated_delivery_date": self.estimated_delivery_date.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ShippingSelection":
        return cls(
            option_id=data["option_id"],
            name=data["name"],
            cost=Decimal(data["cost"]),
            estimated_delivery_date=date.fromisoformat(data["estimated_delivery_date"]),
        )


@dataclass(frozen=True)
class StatusChange:
    status: OrderStatus
    note: str
    timestamp: datetime

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "note": self.note,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StatusChange":
        return cls(
            status=OrderStatus(data["status"]),
            note=data["note"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


def generate_order_number(now: datetime | None = None) -> str:
    """ORD-<エポックミリ秒の下8桁>-<4桁の乱数> 形式の注文番号を生成する。"""
    now = now or datetime.now(timezone.utc)
    millis = str(int(now.timestamp() * 1000))[-8:]
    return f"ORD-{millis}-{random.randint(0, 9999):04d}"


# ── 集約 ─────────────────────────────────────────


class OrderAggregate:
    def __init__(
        self,
        *,
        id: UUID,
        order_number: str,
        owner_id: str,
        cart_key: str,
        items: tuple[LineItem, ...],
        shipping: ShippingSelection,
        billing_info: BillingInfo,
        totals: Totals,
        currency: str,
        created_at: datetime,
        order_status: OrderStatus = OrderStatus.PENDING,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        status_history: list[StatusChange] | None = None,
        payment_ref: str | None = None,
        payment_refs: list[str] | None = None,
        version: int = 0,
        updated_at: datetime | None = None,
        shipped_at: datetime | None = None,
        delivered_at: datetime | None = None,
    ) -> None:
        self.id = id
        self.order_number = order_number
        self.owner_id = owner_id
        self.cart_key = cart_key
        self._items = tuple(items)
        self._shipping = shipping
        self._billing_info = billing_info
        self._totals = totals
        self.currency = currency
        self.created_at = created_at
        self.order_status = order_status
        self.payment_status = payment_status
        self.status_history: list[StatusChange] = list(status_history or [])
        self.payment_ref = payment_ref
        self.payment_refs: list[str] = list(payment_refs or ([payment_ref] if payment_ref else []))
        self.version = version
        self.updated_at = updated_at or created_at
        self.shipped_at = shipped_at
        self.delivered_at = delivered_at

    @classmethod
    def create(
        cls,
        *,
        owner_id: str,
        cart_key: str,
        items: tuple[LineItem, ...],
        shipping: ShippingSelection,
        billing_info: BillingInfo,
        totals: Totals,
        currency: str,
        order_number: str | None = None,
        now: datetime | None = None,
    ) -> "OrderAggregate":
        """カートのスナップショットから注文を作成する。空のカートからは作れない。"""
        if not items:
            raise EmptyCartError()
        now = now or datetime.now(timezone.utc)
        return cls(
            id=uuid4(),
            order_number=order_number or generate_order_number(now),
            owner_id=owner_id,
            cart_key=cart_key,
            items=items,
            shipping=shipping,
            billing_info=billing_info,
            totals=totals,
            currency=currency,
            created_at=now,
            status_history=[StatusChange(OrderStatus.PENDING, "Order placed", now)],
        )

    # ── 凍結された値 ─────────────────────────────

    @property
    def items(self) -> tuple[LineItem, ...]:
        return self._items

    @property
    def shipping(self) -> ShippingSelection:
        return self._shipping

    @property
    def billing_info(self) -> BillingInfo:
        return self._billing_info

    @property
    def totals(self) -> Totals:
        return self._totals

    def formatted_order_number(self) -> str:
        return f"#{self.order_number}"

    # ── 状態遷移 ─────────────────────────────────

    def can_transition_to(self, status: OrderStatus) -> bool:
        return status in ORDER_TRANSITIONS[self.order_status]

    def transition_to(
        self,
        status: OrderStatus,
        note: str = "",
        now: datetime | None = None,
    ) -> None:
        status = OrderStatus(status)
        if not self.can_transition_to(status):
            raise InvalidTransitionError("order status", self.order_status.value, status.value)
        now = now or datetime.now(timezone.utc)
        self.order_status = status
        self.status_history.append(StatusChange(status, note, now))
        if status is OrderStatus.SHIPPED:
            self.shipped_at = now
        elif status is OrderStatus.DELIVERED:
            self.delivered_at = now
        self.updated_at = now

    def can_transition_payment_to(self, status: PaymentStatus) -> bool:
        return status in PAYMENT_TRANSITIONS[self.payment_status]

    def _transition_payment(self, status: PaymentStatus, now: datetime | None) -> None:
        if not self.can_transition_payment_to(status):
            raise InvalidTransitionError("payment status", self.payment_status.value, status.value)
        self.payment_status = status
        self.updated_at = now or datetime.now(timezone.utc)

    def mark_paid(self, now: datetime | None = None) -> None:
        """決済成功: 支払済みにし、保留中の注文は処理中へ進める。"""
        self._transition_payment(PaymentStatus.PAID, now)
        if self.order_status is OrderStatus.PENDING:
            self.transition_to(OrderStatus.PROCESSING, "Payment received", now)

    def mark_payment_failed(self, now: datetime | None = None) -> None:
        """決済失敗: 注文は PENDING のまま (キャンセルは業務判断に委ねる)。"""
        self._transition_payment(PaymentStatus.FAILED, now)

    def mark_refunded(self, now: datetime | None = None) -> None:
        self._transition_payment(PaymentStatus.REFUNDED, now)

    def attach_payment(self, payment_ref: str) -> None:
        """
        決済参照を紐づける。再試行で新しい参照が付いても過去の参照は保持し、
        古い PaymentIntent の Webhook もこの注文に届くようにする。
        """
        self.payment_ref = payment_ref
        if payment_ref not in self.payment_refs:
            self.payment_refs.append(payment_ref)

    # ── 永続化・表示 ─────────────────────────────

    def to_document(self) -> dict:
        return {
            "id": str(self.id),
            "order_number": self.order_number,
            "owner_id": self.owner_id,
            "cart_key": self.cart_key,
            "items": [i.to_dict() for i in self.items],
            "shipping": self.shipping.to_dict(),
            "billing_info": self.billing_info.model_dump(mode="json"),
            "totals": self.totals.to_dict(),
            "currency": self.currency,
            "order_status": self.order_status.value,
            "payment_status": self.payment_status.value,
            "status_history": [h.to_dict() for h in self.status_history],
            "payment_ref": self.payment_ref,
            "payment_refs": list(self.payment_refs),
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "shipped_at": self.shipped_at.isoformat() if self.shipped_at else None,
            "delivered_at": self.delivered_at.isoformat() if self.delivered_at else None,
        }

    @classmethod
    def from_document(cls, data: dict, version: int = 0) -> "OrderAggregate":
        return cls(
            id=UUID(data["id"]),
            order_number=data["order_number"],
            owner_id=data["owner_id"],
            cart_key=data["cart_key"],
            items=tuple(LineItem.from_dict(i) for i in data["items"]),
            shipping=ShippingSelection.from_dict(data["shipping"]),
            billing_info=BillingInfo.model_validate(data["billing_info"]),
            totals=Totals.from_dict(data["totals"]),
            currency=data["currency"],
            created_at=datetime.fromisoformat(data["created_at"]),
            order_status=OrderStatus(data["order_status"]),
            payment_status=PaymentStatus(data["payment_status"]),
            status_history=[StatusChange.from_dict(h) for h in data["status_history"]],
            payment_ref=data.get("payment_ref"),
            payment_refs=data.get("payment_refs"),
            version=version,
            updated_at=datetime.fromisoformat(data["updated_at"]),
            shipped_at=_parse_dt(data.get("shipped_at")),
            delivered_at=_parse_dt(data.get("delivered_at")),
        )

    def to_dict(self) -> dict:
        """API レスポンス用の表現。"""
        data = self.to_document()
        data["formatted_order_number"] = self.formatted_order_number()
        data["formatted_totals"] = self.totals.formatted()
        data.pop("cart_key")
        return data


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None
