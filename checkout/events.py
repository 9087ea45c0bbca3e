"""
Checkout Service — イベント定義 (Events)

1. 発行イベント: 注文の状態が確定 (コミット) した後に Redis Pub/Sub の
   order_events チャネルへ流す。イベントは過去形で命名し、不変として扱う。
2. 受信イベント: 決済プロバイダから Webhook で届く PaymentEvent。
   プロバイダは at-least-once で配信するため、重複は通常の出来事として扱う。
"""

import json
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol
from uuid import UUID

import redis.asyncio as aioredis
from pydantic import BaseModel, Field

ORDER_EVENTS_CHANNEL = "order_events"


# ── 発行イベント ─────────────────────────────────


class OrderCreated(BaseModel):
    """注文が作成された"""
    order_id: UUID
    order_number: str
    owner_id: str
    total: Decimal
    currency: str
    item_count: int
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """注文ステータスが変わった"""
    order_id: UUID
    order_number: str
    previous_status: str
    status: str
    note: str = ""
    timestamp: datetime


class PaymentStatusChanged(BaseModel):
    """決済ステータスが変わった (Webhook の適用結果)"""
    order_id: UUID
    order_number: str
    previous_status: str
    status: str
    payment_event_id: str
    timestamp: datetime


class EventPublisher(Protocol):
    async def publish(self, event: BaseModel) -> None: ...


class RedisEventPublisher:
    """Redis Pub/Sub でイベントを他サービスへ通知する。"""

    def __init__(self, redis: aioredis.Redis, channel: str = ORDER_EVENTS_CHANNEL) -> None:
        self.redis = redis
        self.channel = channel

    async def publish(self, event: BaseModel) -> None:
        await self.redis.publish(
            self.channel,
            json.dumps(
                {
                    "event_type": type(event).__name__,
                    "data": event.model_dump(mode="json"),
                },
                default=str,
            ),
        )


# ── 受信イベント ─────────────────────────────────


PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"
CHARGE_REFUNDED = "charge.refunded"


class PaymentEvent(BaseModel):
    """決済プロバイダからの非同期通知"""
    event_id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    payment_ref: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_provider(cls, body: dict) -> "PaymentEvent":
        """
        プロバイダの Webhook ボディ ({id, type, data: {object}}) から変換する。

        返金イベントの object は Charge なので、決済参照は payment_intent を使う。
        それ以外は object.id が PaymentIntent の ID。
        """
        obj = (body.get("data") or {}).get("object") or {}
        if body.get("type") == CHARGE_REFUNDED:
            payment_ref = obj.get("payment_intent")
        else:
            payment_ref = obj.get("id")
        return cls(
            event_id=body.get("id") or "",
            type=body.get("type") or "",
            payment_ref=payment_ref,
            payload=obj,
        )
