"""
Checkout Service — コマンドハンドラ (CQRS の Write 側)

カートと注文を変更する操作。どのコマンドも次の流れで動く:

  1. リポジトリから集約を読み込む (version 付き)
  2. 集約のメソッドで変更する (検証に失敗すれば何も保存しない)
  3. 読み込んだ version を条件に保存する
     └─ 競合したら 1 に戻る (最大 MAX_ATTEMPTS 回)

プロセス内のロックを I/O をまたいで保持しないため、
同じカートへの同時 add_item でも加算が失われることはない。
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, TypeVar

from .cart import CartAggregate, CartOwner, Pricing
from .errors import ConcurrencyConflict, OrderNotFound
from .events import EventPublisher, OrderStatusChanged
from .order import OrderAggregate, OrderStatus
from .store import CartRepository, OrderRepository

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5

T = TypeVar("T")


class CartCommands:
    def __init__(
        self,
        carts: CartRepository,
        pricing: Pricing,
        retention_days: int = 30,
    ) -> None:
        self.carts = carts
        self.pricing = pricing
        self.retention = timedelta(days=retention_days)

    async def _mutate(
        self,
        owner: CartOwner,
        mutate: Callable[[CartAggregate], T],
    ) -> tuple[CartAggregate, T]:
        for _ in range(MAX_ATTEMPTS):
            cart = await self.carts.get(owner.key)
            if cart is None:
                # 最初の変更操作でカートを作成する
                cart = CartAggregate(owner, self.pricing)
            result = mutate(cart)

            if not owner.is_authenticated:
                # 匿名カートは最後の変更から保持期間が過ぎると失効する
                cart.expires_at = datetime.now(timezone.utc) + self.retention
            try:
                await self.carts.save(cart)
                return cart, result
            except ConcurrencyConflict:
                logger.info("Cart %s changed concurrently, retrying", owner.key)
        raise ConcurrencyConflict(f"Cart {owner.key} is busy, please retry")

    async def add_item(self, owner: CartOwner, product_id: str, quantity: int) -> CartAggregate:
        cart, item = await self._mutate(owner, lambda c: c.add_item(product_id, quantity))
        logger.info("Added %s x %d to cart %s", item.product_id, quantity, owner.key)
        return cart

    async def update_item_quantity(self, owner: CartOwner, product_id: str, quantity: int) -> CartAggregate:
        cart, _ = await self._mutate(owner, lambda c: c.update_item_quantity(product_id, quantity))
        return cart

    async def remove_item(self, owner: CartOwner, product_id: str) -> CartAggregate:
        cart, _ = await self._mutate(owner, lambda c: c.remove_item(product_id))
        return cart

    async def clear(self, owner: CartOwner) -> CartAggregate:
        existing = await self.carts.get(owner.key)
        if existing is None:
            return CartAggregate(owner, self.pricing)
        cart, _ = await self._mutate(owner, lambda c: c.clear())
        return cart

    async def select_shipping(self, owner: CartOwner, option_id: str) -> CartAggregate:
        cart, _ = await self._mutate(owner, lambda c: c.select_shipping(option_id))
        return cart

    async def apply_coupon(self, owner: CartOwner, code: str) -> CartAggregate:
        cart, coupon = await self._mutate(owner, lambda c: c.apply_coupon(code))
        logger.info("Applied coupon %s to cart %s", coupon.code, owner.key)
        return cart

    async def remove_coupon(self, owner: CartOwner) -> CartAggregate:
        cart, _ = await self._mutate(owner, lambda c: c.remove_coupon())
        return cart


async def update_order_status(
    orders: OrderRepository,
    publisher: EventPublisher | None,
    order_number: str,
    status: OrderStatus,
    note: str = "",
) -> OrderAggregate:
    """
    注文ステータス変更コマンド (出荷・配達完了・キャンセル)

    不正な遷移は InvalidTransitionError となり、履歴は変わらない。
    """
    for _ in range(MAX_ATTEMPTS):
        order = await orders.get_by_number(order_number)
        if order is None:
            raise OrderNotFound(order_number)
        previous = order.order_status
        order.transition_to(status, note)
        try:
            await orders.save(order)
        except ConcurrencyConflict:
            continue

        logger.info("Order %s: %s -> %s", order.order_number, previous.value, order.order_status.value)
        if publisher is not None:
            try:
                await publisher.publish(
                    OrderStatusChanged(
                        order_id=order.id,
                        order_number=order.order_number,
                        previous_status=previous.value,
                        status=order.order_status.value,
                        note=note,
                        timestamp=order.updated_at,
                    )
                )
            except Exception:
                logger.exception("Failed to publish OrderStatusChanged for order %s", order.order_number)
        return order
    raise ConcurrencyConflict(f"Order {order_number} is busy, please retry")
