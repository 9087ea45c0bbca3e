"""
Checkout Service — チェックアウト・コーディネーター

カートから注文を作り、決済を開始するまでの一連の手順を制御する。

  フロー:
  ┌─────────────────────────────────────────────────────────┐
  │  1. カートを読み込む (空なら EmptyCartError)              │
  │  2. 配送オプションを解決し、送料・お届け予定日を確定       │
  │  3. Totals を再計算して注文を作成 (PENDING / PENDING)     │
  │  4. 決済プロバイダに PaymentIntent を作成させる            │
  │     ├─ 成功 → 決済参照を注文に紐づけて保存               │
  │     └─ 失敗 → 注文は PENDING のまま残す (再試行できる)   │
  │  5. 注文と client_secret を返す                           │
  └─────────────────────────────────────────────────────────┘

カートはここでは消さない。支払いが確定 (Webhook で paid) した時点で
PaymentOrchestrator が破棄する。
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone

from pydantic import BaseModel, Field

from .cart import CartOwner, LineItem, Pricing
from .errors import (
    ConcurrencyConflict,
    DuplicateOrderNumber,
    EmptyCartError,
    InvalidAmountError,
    InvalidShippingOption,
    NotFoundError,
    OrderNotFound,
    PaymentProviderError,
    StateConflictError,
)
from .events import EventPublisher, OrderCreated
from .order import BillingInfo, OrderAggregate, OrderStatus, PaymentStatus, ShippingSelection
from .payments import PaymentOrchestrator
from .store import CartRepository, OrderRepository
from .totals import Totals, compute, coupon_discount, subtotal_of

logger = logging.getLogger(__name__)

ORDER_NUMBER_ATTEMPTS = 3
MAX_ATTEMPTS = 5


class CheckoutRequest(BaseModel):
    shipping_option_id: str = Field(min_length=1)
    billing_info: BillingInfo


@dataclass(frozen=True)
class CheckoutResult:
    order: OrderAggregate
    client_secret: str


class CheckoutCoordinator:
    """チェックアウトのオーケストレーター"""

    def __init__(
        self,
        carts: CartRepository,
        orders: OrderRepository,
        payments: PaymentOrchestrator,
        pricing: Pricing,
        currency: str = "usd",
        publisher: EventPublisher | None = None,
    ) -> None:
        self.carts = carts
        self.orders = orders
        self.payments = payments
        self.pricing = pricing
        self.currency = currency
        self.publisher = publisher

    async def place_order(
        self,
        owner: CartOwner,
        request: CheckoutRequest,
        today: date | None = None,
    ) -> CheckoutResult:
        # ── Step 1: カートを読み込む ────────────────
        cart = await self.carts.get(owner.key)
        if cart is None or cart.is_empty():
            raise EmptyCartError()
        items = cart.items

        # ── Step 2: 配送を確定 ──────────────────────
        try:
            quote = self.pricing.resolver.resolve(
                request.shipping_option_id, cart.item_count, today=today
            )
        except NotFoundError as e:
            raise InvalidShippingOption(
                f"Invalid shipping option: {request.shipping_option_id}"
            ) from e
        shipping = ShippingSelection(
            option_id=quote.option.id,
            name=quote.option.name,
            cost=quote.cost,
            estimated_delivery_date=quote.estimated_delivery_date,
        )

        # ── Step 3: 金額を確定して注文を作成 ────────
        discount = coupon_discount(subtotal_of(items), cart.coupon)
        totals = compute(items, quote.cost, self.pricing.tax_rate, discount)
        if totals.total <= 0:
            raise InvalidAmountError("Order total must be greater than 0")

        order = await self._create_order(owner, cart.key, items, shipping, request.billing_info, totals)

        # ── Step 4: 決済を開始 ──────────────────────
        order, client_secret = await self._start_payment(order)

        return CheckoutResult(order=order, client_secret=client_secret)

    async def retry_payment(self, owner: CartOwner, order_number: str) -> CheckoutResult:
        """
        決済に失敗した (または開始できなかった) 注文の決済をやり直す。

        注文が PENDING で、決済が PENDING か FAILED のときだけ受け付ける。
        """
        order = await self.orders.get_by_number(order_number)
        if order is None or order.owner_id != owner.key:
            raise OrderNotFound(order_number)
        if order.order_status is not OrderStatus.PENDING or order.payment_status not in (
            PaymentStatus.PENDING,
            PaymentStatus.FAILED,
        ):
            raise StateConflictError(
                f"Order {order_number} cannot accept a new payment "
                f"(order {order.order_status.value}, payment {order.payment_status.value})"
            )
        order, client_secret = await self._start_payment(order)
        return CheckoutResult(order=order, client_secret=client_secret)

    async def _create_order(
        self,
        owner: CartOwner,
        cart_key: str,
        items: tuple[LineItem, ...],
        shipping: ShippingSelection,
        billing_info: BillingInfo,
        totals: Totals,
    ) -> OrderAggregate:
        for attempt in range(ORDER_NUMBER_ATTEMPTS):
            order = OrderAggregate.create(
                owner_id=owner.key,
                cart_key=cart_key,
                items=items,
                shipping=shipping,
                billing_info=billing_info,
                totals=totals,
                currency=self.currency,
            )
            try:
                await self.orders.add(order)
                break
            except DuplicateOrderNumber:
                logger.warning("Order number %s collided (attempt %d)", order.order_number, attempt + 1)
        else:
            raise ConcurrencyConflict("Could not allocate an order number, please retry")

        logger.info(
            "Created order %s for %s: total %s",
            order.order_number,
            owner.key,
            totals.total,
        )
        if self.publisher is not None:
            try:
                await self.publisher.publish(
                    OrderCreated(
                        order_id=order.id,
                        order_number=order.order_number,
                        owner_id=order.owner_id,
                        total=totals.total,
                        currency=order.currency,
                        item_count=sum(i.quantity for i in items),
                        timestamp=order.created_at,
                    )
                )
            except Exception:
                logger.exception("Failed to publish OrderCreated for order %s", order.order_number)
        return order

    async def _start_payment(self, order: OrderAggregate) -> tuple[OrderAggregate, str]:
        # 冪等キーは注文の version 単位。同じ version での再送は同じ PaymentIntent になる
        try:
            intent = await self.payments.create_intent(
                order.order_number,
                order.totals.total,
                order.currency,
                idempotency_key=f"intent-{order.order_number}-v{order.version}",
            )
        except PaymentProviderError as e:
            # 注文は PENDING のまま残し、retry_payment で再開できるようにする
            logger.warning("Payment could not be started for order %s: %s", order.order_number, e.message)
            raise

        for _ in range(MAX_ATTEMPTS):
            order.attach_payment(intent.provider_ref)
            order.updated_at = datetime.now(timezone.utc)
            try:
                await self.orders.save(order)
                return order, intent.client_secret
            except ConcurrencyConflict:
                latest = await self.orders.get(str(order.id))
                if latest is None:
                    raise OrderNotFound(order.order_number)
                order = latest
        raise ConcurrencyConflict(f"Order {order.order_number} is busy, please retry")
