"""
Checkout Service — FastAPI エントリーポイント

CQRS パターンに従い、カート・注文を変更するコマンドと
参照するクエリのエンドポイントを分離する。

  ┌──────────┐     ┌──────────────────┐     ┌──────────────┐
  │ Frontend │────▶│ Checkout Service │────▶│ Stripe       │
  └──────────┘     │                  │◀────│ (webhook)    │
                   │                  │────▶│ Redis Pub/Sub│
                   └──────────────────┘     └──────────────┘

カートの所有者はリクエストヘッダで識別する:
  X-User-Id (ログインユーザー) または X-Session-Id (匿名セッション)
"""

import asyncio
import hmac
import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import pydantic
import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncEngine

from . import commands, queries
from .cart import CartOwner, Pricing
from .catalog import Product, ShippingOption, default_catalog
from .commands import CartCommands
from .config import Settings, load_settings
from .errors import (
    CheckoutError,
    InternalError,
    PaymentProviderError,
    PermissionDenied,
    ValidationError,
)
from .events import EventPublisher, PaymentEvent, RedisEventPublisher
from .orchestrator import CheckoutCoordinator, CheckoutRequest
from .order import OrderStatus
from .payments import (
    MockPaymentProvider,
    PaymentOrchestrator,
    PaymentProvider,
    StripePaymentProvider,
    verify_signature,
)
from .store import (
    CartRepository,
    MemoryCartRepository,
    MemoryOrderRepository,
    OrderRepository,
    create_sql_repositories,
)
from .sweeper import run_cart_sweeper

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """1プロセス分の依存関係一式"""

    settings: Settings
    pricing: Pricing
    carts: CartRepository
    orders: OrderRepository
    cart_commands: CartCommands
    payments: PaymentOrchestrator
    checkout: CheckoutCoordinator
    publisher: EventPublisher | None = None
    redis: aioredis.Redis | None = None
    engine: AsyncEngine | None = None
    background: list[asyncio.Task] = field(default_factory=list)


def build_services(
    settings: Settings,
    pricing: Pricing,
    carts: CartRepository,
    orders: OrderRepository,
    provider: PaymentProvider,
    publisher: EventPublisher | None = None,
) -> Services:
    payments = PaymentOrchestrator(provider, orders, carts, publisher)
    return Services(
        settings=settings,
        pricing=pricing,
        carts=carts,
        orders=orders,
        cart_commands=CartCommands(carts, pricing, settings.cart_retention_days),
        payments=payments,
        checkout=CheckoutCoordinator(carts, orders, payments, pricing, settings.currency, publisher),
        publisher=publisher,
    )


async def connect_services(settings: Settings) -> Services:
    """
    設定に従って外部接続を作る。

    DATABASE_URL 未設定 → インメモリリポジトリ
    REDIS_URL 未設定    → イベントを発行しない
    STRIPE_SECRET_KEY 未設定 → モック決済プロバイダ
    """
    pricing = Pricing(default_catalog(), settings.tax_rate)

    engine = None
    if settings.database_url:
        carts, orders, engine = await create_sql_repositories(settings.database_url, pricing)
    else:
        logger.warning("DATABASE_URL is not set, using in-memory repositories")
        carts, orders = MemoryCartRepository(pricing), MemoryOrderRepository()

    redis = None
    publisher = None
    if settings.redis_url:
        redis = aioredis.from_url(settings.redis_url, decode_responses=True)
        publisher = RedisEventPublisher(redis)
    else:
        logger.warning("REDIS_URL is not set, order events will not be published")

    if settings.stripe_secret_key:
        provider = StripePaymentProvider(
            settings.stripe_secret_key,
            api_base=settings.stripe_api_base,
            timeout=settings.payment_timeout_seconds,
        )
    else:
        logger.warning("STRIPE_SECRET_KEY is not set, using mock payment provider")
        provider = MockPaymentProvider()

    services = build_services(settings, pricing, carts, orders, provider, publisher)
    services.redis = redis
    services.engine = engine
    return services


async def close_services(services: Services) -> None:
    if services.redis is not None:
        await services.redis.aclose()
    if services.engine is not None:
        await services.engine.dispose()


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    settings = settings or (services.settings if services else load_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        app.state.services = services or await connect_services(settings)
        shutdown_event = asyncio.Event()
        sweeper = asyncio.create_task(
            run_cart_sweeper(
                app.state.services.carts,
                settings.cart_sweep_interval_seconds,
                shutdown_event,
            )
        )
        yield
        shutdown_event.set()
        await sweeper
        if owned:
            await close_services(app.state.services)

    app = FastAPI(title="Checkout Service", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_error_handlers(app, settings)
    _register_routes(app)
    return app


# ── エラー応答 ───────────────────────────────────


def _register_error_handlers(app: FastAPI, settings: Settings) -> None:
    @app.exception_handler(CheckoutError)
    async def handle_checkout_error(request: Request, exc: CheckoutError):
        body = exc.to_dict()
        if isinstance(exc, (PaymentProviderError, InternalError)):
            # プロバイダ・内部の詳細は開発環境でのみ返す
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
            body["message"] = exc.public_message
            if settings.is_development:
                body["detail"] = exc.message
        return JSONResponse(status_code=exc.status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"kind": "validation", "message": _describe_errors(exc.errors())},
        )

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        body = {"kind": InternalError.kind, "message": InternalError.public_message}
        if settings.is_development:
            body["detail"] = repr(exc)
        return JSONResponse(status_code=500, content=body)


def _describe_errors(errors) -> str:
    parts = []
    for error in errors:
        loc = ".".join(str(p) for p in error.get("loc", ()) if p not in ("body", "query", "path"))
        parts.append(f"{loc}: {error.get('msg')}" if loc else str(error.get("msg")))
    return "; ".join(parts) or "Invalid request"


# ── Request Models ───────────────────────────────


class AddItemRequest(BaseModel):
    product_id: str = Field(min_length=1)
    quantity: int = 1


class UpdateQuantityRequest(BaseModel):
    quantity: int


class SelectShippingRequest(BaseModel):
    shipping_option_id: str = Field(min_length=1)


class ApplyCouponRequest(BaseModel):
    code: str = Field(min_length=1)


class UpdateStatusRequest(BaseModel):
    status: OrderStatus
    note: str = ""


# ── 依存関係 ─────────────────────────────────────


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_owner(
    x_user_id: str | None = Header(default=None),
    x_session_id: str | None = Header(default=None),
) -> CartOwner:
    """ログインしていれば user、していなければ session をカートの所有者とする。"""
    if x_user_id:
        return CartOwner(user_id=x_user_id)
    if x_session_id:
        return CartOwner(session_id=x_session_id)
    raise ValidationError("X-User-Id or X-Session-Id header is required")


def require_admin(
    x_admin_token: str | None = Header(default=None),
    svc: Services = Depends(get_services),
) -> None:
    """管理操作は ADMIN_TOKEN と一致するトークンを要求する。未設定なら常に拒否する。"""
    expected = svc.settings.admin_token
    if not expected or not x_admin_token or not hmac.compare_digest(x_admin_token, expected):
        raise PermissionDenied("A valid X-Admin-Token header is required")


def _product_dict(product: Product) -> dict:
    return {
        "id": product.id,
        "name": product.name,
        "unit_price": str(product.unit_price),
        "sku": product.sku,
        "image": product.image,
    }


def _shipping_option_dict(option: ShippingOption) -> dict:
    return {
        "id": option.id,
        "name": option.name,
        "base_price": str(option.base_price),
        "estimated_days": option.estimated_days,
    }


# ── Endpoints ────────────────────────────────────


def _register_routes(app: FastAPI) -> None:
    # ── Cart Commands (Write 側) ─────────────────

    @app.post("/cart/items")
    async def cmd_add_item(
        req: AddItemRequest,
        owner: CartOwner = Depends(get_owner),
        svc: Services = Depends(get_services),
    ):
        """商品をカートに追加する"""
        cart = await svc.cart_commands.add_item(owner, req.product_id, req.quantity)
        return queries.cart_to_dict(cart)

    @app.put("/cart/items/{product_id}")
    async def cmd_update_item(
        product_id: str,
        req: UpdateQuantityRequest,
        owner: CartOwner = Depends(get_owner),
        svc: Services = Depends(get_services),
    ):
        """数量を変更する (0 は削除)"""
        cart = await svc.cart_commands.update_item_quantity(owner, product_id, req.quantity)
        return queries.cart_to_dict(cart)

    @app.delete("/cart/items/{product_id}")
    async def cmd_remove_item(
        product_id: str,
        owner: CartOwner = Depends(get_owner),
        svc: Services = Depends(get_services),
    ):
        cart = await svc.cart_commands.remove_item(owner, product_id)
        return queries.cart_to_dict(cart)

    @app.delete("/cart")
    async def cmd_clear_cart(
        owner: CartOwner = Depends(get_owner),
        svc: Services = Depends(get_services),
    ):
        cart = await svc.cart_commands.clear(owner)
        return queries.cart_to_dict(cart)

    @app.put("/cart/shipping")
    async def cmd_select_shipping(
        req: SelectShippingRequest,
        owner: CartOwner = Depends(get_owner),
        svc: Services = Depends(get_services),
    ):
        cart = await svc.cart_commands.select_shipping(owner, req.shipping_option_id)
        return queries.cart_to_dict(cart)

    @app.post("/cart/coupon")
    async def cmd_apply_coupon(
        req: ApplyCouponRequest,
        owner: CartOwner = Depends(get_owner),
        svc: Services = Depends(get_services),
    ):
        cart = await svc.cart_commands.apply_coupon(owner, req.code)
        return queries.cart_to_dict(cart)

    @app.delete("/cart/coupon")
    async def cmd_remove_coupon(
        owner: CartOwner = Depends(get_owner),
        svc: Services = Depends(get_services),
    ):
        cart = await svc.cart_commands.remove_coupon(owner)
        return queries.cart_to_dict(cart)

    # ── Cart Query (Read 側) ─────────────────────

    @app.get("/cart")
    async def query_cart(
        owner: CartOwner = Depends(get_owner),
        svc: Services = Depends(get_services),
    ):
        cart = await queries.get_cart(svc.carts, svc.pricing, owner)
        return queries.cart_to_dict(cart)

    # ── Checkout / Orders ────────────────────────

    @app.post("/checkout", status_code=201)
    async def cmd_checkout(
        req: CheckoutRequest,
        owner: CartOwner = Depends(get_owner),
        svc: Services = Depends(get_services),
    ):
        """カートから注文を作成し、決済を開始する"""
        result = await svc.checkout.place_order(owner, req)
        return {"order": result.order.to_dict(), "client_secret": result.client_secret}

    @app.post("/orders/{order_number}/payment")
    async def cmd_retry_payment(
        order_number: str,
        owner: CartOwner = Depends(get_owner),
        svc: Services = Depends(get_services),
    ):
        """決済をやり直す"""
        result = await svc.checkout.retry_payment(owner, order_number)
        return {"order": result.order.to_dict(), "client_secret": result.client_secret}

    @app.post("/orders/{order_number}/status", dependencies=[Depends(require_admin)])
    async def cmd_update_order_status(
        order_number: str,
        req: UpdateStatusRequest,
        svc: Services = Depends(get_services),
    ):
        """注文ステータス変更 (出荷・配達完了・キャンセル)"""
        order = await commands.update_order_status(
            svc.orders, svc.publisher, order_number, req.status, req.note
        )
        return order.to_dict()

    @app.get("/orders")
    async def query_list_orders(
        owner: CartOwner = Depends(get_owner),
        svc: Services = Depends(get_services),
    ):
        return await queries.list_orders(svc.orders, owner.key)

    @app.get("/orders/{order_number}")
    async def query_get_order(
        order_number: str,
        owner: CartOwner = Depends(get_owner),
        svc: Services = Depends(get_services),
    ):
        return await queries.get_order(svc.orders, order_number, owner.key)

    # ── Payment Webhook ──────────────────────────

    @app.post("/payments/webhook")
    async def payment_webhook(request: Request, svc: Services = Depends(get_services)):
        """
        決済プロバイダからの通知を受け取る。

        重複・未知の種別・対応する注文のない通知も 200 で受理する
        (プロバイダの再送を止めるため)。署名不正は 400。
        """
        payload = await request.body()
        secret = svc.settings.stripe_webhook_secret
        if secret:
            verify_signature(payload, request.headers.get("Stripe-Signature"), secret)
        try:
            event = PaymentEvent.from_provider(json.loads(payload))
        except (ValueError, AttributeError, pydantic.ValidationError) as e:
            raise ValidationError("Invalid webhook payload") from e
        outcome = await svc.payments.apply_event(event)
        return {"received": True, "outcome": outcome.value}

    # ── Reference Data ───────────────────────────

    @app.get("/products")
    async def query_products(svc: Services = Depends(get_services)):
        return [_product_dict(p) for p in svc.pricing.catalog.list_products()]

    @app.get("/products/{product_id}")
    async def query_product(product_id: str, svc: Services = Depends(get_services)):
        return _product_dict(svc.pricing.catalog.lookup_product(product_id))

    @app.get("/shipping/options")
    async def query_shipping_options(svc: Services = Depends(get_services)):
        return [_shipping_option_dict(o) for o in svc.pricing.resolver.list_options()]

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "checkout-service"}


logging.basicConfig(
    level=load_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = create_app()
