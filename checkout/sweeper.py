"""
Checkout Service — 期限切れカートの掃除

匿名カートは最後の変更から CART_RETENTION_DAYS 日で失効する。
読み込み時にも失効判定は行うが、一度も読まれないカートが溜まらないよう
一定間隔でまとめて削除する。
"""

import asyncio
import logging

from .store import CartRepository

logger = logging.getLogger(__name__)


async def run_cart_sweeper(
    carts: CartRepository,
    interval: float,
    shutdown_event: asyncio.Event,
) -> None:
    """shutdown_event がセットされるまで interval 秒ごとに期限切れカートを削除する。"""
    logger.info("Cart sweeper started (interval %.0fs)", interval)
    while not shutdown_event.is_set():
        try:
            removed = await carts.delete_expired()
            if removed:
                logger.info("Removed %d expired carts", removed)
        except Exception:
            logger.exception("Failed to remove expired carts")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("Cart sweeper stopped")
