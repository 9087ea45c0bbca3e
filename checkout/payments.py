"""
Checkout Service — 決済オーケストレーター (Payment Orchestrator)

2つの責務を持つ:

1. create_intent: 外部の決済プロバイダに PaymentIntent を作成させ、
   クライアントが決済を完了するための client_secret を受け取る。
2. apply_event: プロバイダから非同期に届く PaymentEvent を、
   イベント ID ごとに「ちょうど1回」だけ注文の状態遷移へ反映する。

  ┌──────────┐  webhook (at-least-once)  ┌──────────────────────┐
  │ Provider │ ────────────────────────▶ │ PaymentOrchestrator  │
  └──────────┘                           │  1. 適用済み? → 何もしない
                                         │  2. 種別 → 遷移を決定
                                         │  3. 記録 + 遷移を原子的に保存
                                         └──────────────────────┘

未知のイベント種別はログに残して受理する (プロバイダに無駄な再送をさせない)。
"""

import hashlib
import hmac
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Callable, Protocol

import httpx

from .errors import (
    ConcurrencyConflict,
    InvalidAmountError,
    InvalidSignature,
    InvalidTransitionError,
    PaymentProviderError,
)
from .events import (
    CHARGE_REFUNDED,
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    EventPublisher,
    OrderStatusChanged,
    PaymentEvent,
    PaymentStatusChanged,
)
from .order import OrderAggregate, OrderStatus, PaymentStatus
from .store import CartRepository, OrderRepository
from .totals import quantize

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5
SIGNATURE_TOLERANCE_SECONDS = 300


@dataclass(frozen=True)
class PaymentIntent:
    provider_ref: str
    client_secret: str


class EventOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    ORPHANED = "orphaned"


# ── プロバイダ ───────────────────────────────────


class PaymentProvider(Protocol):
    async def create_payment_intent(
        self,
        amount_minor_units: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> PaymentIntent: ...


class StripePaymentProvider:
    """Stripe の PaymentIntents API を httpx で呼び出す。"""

    def __init__(
        self,
        secret_key: str,
        api_base: str = "https://api.stripe.com",
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.secret_key = secret_key
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def create_payment_intent(
        self,
        amount_minor_units: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> PaymentIntent:
        data = {
            "amount": str(amount_minor_units),
            "currency": currency,
            "automatic_payment_methods[enabled]": "true",
        }
        for key, value in metadata.items():
            data[f"metadata[{key}]"] = value
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            async with httpx.AsyncClient(
                base_url=self.api_base, timeout=self.timeout, transport=self.transport
            ) as client:
                resp = await client.post("/v1/payment_intents", data=data, headers=headers)
                resp.raise_for_status()
                body = resp.json()
        except httpx.TimeoutException as e:
            raise PaymentProviderError("Payment provider timed out") from e
        except httpx.HTTPStatusError as e:
            raise PaymentProviderError(_provider_message(e.response)) from e
        except httpx.HTTPError as e:
            raise PaymentProviderError(f"Payment provider unreachable: {e}") from e

        return PaymentIntent(provider_ref=body["id"], client_secret=body["client_secret"])


def _provider_message(response: httpx.Response) -> str:
    try:
        return response.json()["error"]["message"]
    except (ValueError, KeyError, TypeError):
        return f"Payment provider returned HTTP {response.status_code}"


class MockPaymentProvider:
    """秘密鍵が未設定のときに使う代替プロバイダ。外部通信は行わない。"""

    def __init__(self) -> None:
        self.intents: list[dict] = []

    async def create_payment_intent(
        self,
        amount_minor_units: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> PaymentIntent:
        ref = f"pi_mock_{uuid.uuid4().hex[:24]}"
        self.intents.append(
            {"id": ref, "amount": amount_minor_units, "currency": currency, "metadata": metadata}
        )
        return PaymentIntent(provider_ref=ref, client_secret=f"{ref}_secret_{uuid.uuid4().hex[:16]}")


# ── Webhook 署名 ─────────────────────────────────


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def verify_signature(
    payload: bytes,
    header: str | None,
    secret: str,
    tolerance: int = SIGNATURE_TOLERANCE_SECONDS,
    now: float | None = None,
) -> None:
    """
    Stripe-Signature ヘッダ (t=<ts>,v1=<hmac>,...) を検証する。

    改ざん・期限切れ (tolerance 秒超) の場合は InvalidSignature。
    """
    if not header:
        raise InvalidSignature("Missing webhook signature")
    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    if timestamp is None or not timestamp.isdigit() or not signatures:
        raise InvalidSignature("Malformed webhook signature")

    expected = compute_signature(payload, secret, int(timestamp))
    if not any(hmac.compare_digest(expected, s) for s in signatures):
        raise InvalidSignature("Webhook signature verification failed")
    now = time.time() if now is None else now
    if abs(now - int(timestamp)) > tolerance:
        raise InvalidSignature("Webhook signature has expired")


# ── オーケストレーター ───────────────────────────


class PaymentOrchestrator:
    def __init__(
        self,
        provider: PaymentProvider,
        orders: OrderRepository,
        carts: CartRepository,
        publisher: EventPublisher | None = None,
    ) -> None:
        self.provider = provider
        self.orders = orders
        self.carts = carts
        self.publisher = publisher
        self._handlers: dict[str, Callable[[OrderAggregate], None]] = {
            PAYMENT_SUCCEEDED: lambda order: order.mark_paid(),
            PAYMENT_FAILED: lambda order: order.mark_payment_failed(),
            CHARGE_REFUNDED: lambda order: order.mark_refunded(),
        }

    async def create_intent(
        self,
        order_ref: str,
        amount: Decimal,
        currency: str,
        idempotency_key: str | None = None,
    ) -> PaymentIntent:
        """
        PaymentIntent を作成する。

        金額が 0 以下なら外部呼び出しの前に InvalidAmountError。
        プロバイダの失敗・タイムアウトは PaymentProviderError。
        """
        if amount is None or quantize(Decimal(amount)) <= 0:
            raise InvalidAmountError("Payment amount must be greater than 0")
        amount_minor_units = int(quantize(Decimal(amount)) * 100)
        intent = await self.provider.create_payment_intent(
            amount_minor_units,
            currency,
            {"order_number": order_ref},
            idempotency_key=idempotency_key or f"intent-{order_ref}",
        )
        logger.info("Created payment intent %s for order %s", intent.provider_ref, order_ref)
        return intent

    async def apply_event(self, event: PaymentEvent) -> EventOutcome:
        """
        PaymentEvent を注文へ反映する。

        1. 適用済みのイベント ID → DUPLICATE (状態は変えない、エラーにもしない)
        2. 未知の種別 → IGNORED (記録しない)
        3. 対応する注文がない → ORPHANED (警告ログのみ、記録しない)
        4. 現在の状態では遷移できない → IGNORED (イベント ID だけ記録する)
        5. それ以外 → 遷移とイベント ID の記録を原子的に保存して APPLIED
        """
        # 冪等性の確認は何よりも先に行う
        if await self.orders.is_event_applied(event.event_id):
            logger.info("Payment event %s already applied", event.event_id)
            return EventOutcome.DUPLICATE

        handler = self._handlers.get(event.type)
        if handler is None:
            logger.info("Ignoring unhandled payment event type %s (%s)", event.type, event.event_id)
            return EventOutcome.IGNORED

        for _ in range(MAX_ATTEMPTS):
            order = (
                await self.orders.get_by_payment_ref(event.payment_ref)
                if event.payment_ref
                else None
            )
            if order is None:
                logger.warning(
                    "No order found for payment %s (event %s, %s)",
                    event.payment_ref,
                    event.event_id,
                    event.type,
                )
                return EventOutcome.ORPHANED

            previous_order_status = order.order_status
            previous_payment_status = order.payment_status
            outcome = EventOutcome.APPLIED
            try:
                handler(order)
            except InvalidTransitionError as e:
                logger.warning(
                    "Payment event %s not applicable to order %s: %s",
                    event.event_id,
                    order.order_number,
                    e.message,
                )
                outcome = EventOutcome.IGNORED

            try:
                recorded = await self.orders.save_transition(order, event)
            except ConcurrencyConflict:
                logger.info("Order %s changed concurrently, retrying event %s", order.order_number, event.event_id)
                continue
            if not recorded:
                return EventOutcome.DUPLICATE

            if outcome is EventOutcome.APPLIED:
                logger.info(
                    "Applied payment event %s to order %s: payment %s -> %s",
                    event.event_id,
                    order.order_number,
                    previous_payment_status.value,
                    order.payment_status.value,
                )
                await self._after_applied(order, event, previous_order_status, previous_payment_status)
            return outcome

        raise ConcurrencyConflict(f"Could not apply payment event {event.event_id}")

    async def _after_applied(
        self,
        order: OrderAggregate,
        event: PaymentEvent,
        previous_order_status: OrderStatus,
        previous_payment_status: PaymentStatus,
    ) -> None:
        # ここから先はコミット後の副作用。失敗しても結果 (APPLIED) は変えない
        # 支払いが確定して初めてカートを破棄する
        if order.payment_status is PaymentStatus.PAID:
            try:
                await self.carts.delete(order.cart_key)
            except Exception:
                logger.exception("Failed to delete cart %s for order %s", order.cart_key, order.order_number)

        if self.publisher is None:
            return
        try:
            await self._publish_changes(order, event, previous_order_status, previous_payment_status)
        except Exception:
            logger.exception("Failed to publish status change for order %s", order.order_number)

    async def _publish_changes(
        self,
        order: OrderAggregate,
        event: PaymentEvent,
        previous_order_status: OrderStatus,
        previous_payment_status: PaymentStatus,
    ) -> None:
        now = datetime.now(timezone.utc)
        await self.publisher.publish(
            PaymentStatusChanged(
                order_id=order.id,
                order_number=order.order_number,
                previous_status=previous_payment_status.value,
                status=order.payment_status.value,
                payment_event_id=event.event_id,
                timestamp=now,
            )
        )
        if order.order_status is not previous_order_status:
            await self.publisher.publish(
                OrderStatusChanged(
                    order_id=order.id,
                    order_number=order.order_number,
                    previous_status=previous_order_status.value,
                    status=order.order_status.value,
                    note=order.status_history[-1].note,
                    timestamp=now,
                )
            )
