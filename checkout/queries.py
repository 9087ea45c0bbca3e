"""
Checkout Service — クエリハンドラ (CQRS の Read 側)

カートと注文を API レスポンス用の dict に変換して返す。
状態は変更しない。
"""

from .cart import CartAggregate, CartOwner, Pricing
from .errors import OrderNotFound
from .store import CartRepository, OrderRepository


async def get_cart(carts: CartRepository, pricing: Pricing, owner: CartOwner) -> CartAggregate:
    """カートを取得する。まだ存在しなければ空のカートを返す (保存はしない)。"""
    cart = await carts.get(owner.key)
    return cart if cart is not None else CartAggregate(owner, pricing)


def cart_to_dict(cart: CartAggregate) -> dict:
    return {
        "items": [i.to_dict() for i in cart.items],
        "item_count": cart.item_count,
        "shipping_option_id": cart.shipping_option_id,
        "coupon": cart.coupon.code if cart.coupon else None,
        "totals": cart.totals.to_dict(),
        "formatted_totals": cart.totals.formatted(),
        "expires_at": cart.expires_at.isoformat() if cart.expires_at else None,
    }


async def get_order(orders: OrderRepository, order_number: str, owner_id: str) -> dict:
    """注文を取得する。他人の注文は存在しないものとして扱う。"""
    order = await orders.get_by_number(order_number)
    if order is None or order.owner_id != owner_id:
        raise OrderNotFound(order_number)
    return order.to_dict()


async def list_orders(orders: OrderRepository, owner_id: str) -> list[dict]:
    return [o.to_dict() for o in await orders.list_by_owner(owner_id)]
