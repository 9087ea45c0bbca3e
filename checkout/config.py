"""
Checkout Service — 設定 (Settings)

設定はすべて環境変数から読み込む。
外部サービスの URL が未設定の場合はプロセス内の代替実装に切り替わる
(インメモリリポジトリ、モック決済プロバイダ、イベント発行なし)。
"""

import os
from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True)
class Settings:
    database_url: str | None = None
    redis_url: str | None = None
    stripe_secret_key: str | None = None
    stripe_webhook_secret: str | None = None
    stripe_api_base: str = "https://api.stripe.com"
    admin_token: str | None = None
    payment_timeout_seconds: float = 10.0
    tax_rate: Decimal = Decimal("0.085")
    currency: str = "usd"
    cart_retention_days: int = 30
    cart_sweep_interval_seconds: float = 3600.0
    app_env: str = "production"
    log_level: str = "INFO"

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"


def load_settings() -> Settings:
    env = os.environ
    return Settings(
        database_url=env.get("DATABASE_URL") or None,
        redis_url=env.get("REDIS_URL") or None,
        stripe_secret_key=env.get("STRIPE_SECRET_KEY") or None,
        stripe_webhook_secret=env.get("STRIPE_WEBHOOK_SECRET") or None,
        stripe_api_base=env.get("STRIPE_API_BASE", "https://api.stripe.com"),
        admin_token=env.get("ADMIN_TOKEN") or None,
        payment_timeout_seconds=float(env.get("PAYMENT_TIMEOUT_SECONDS", "10")),
        tax_rate=Decimal(env.get("TAX_RATE", "0.085")),
        currency=env.get("CURRENCY", "usd").lower(),
        cart_retention_days=int(env.get("CART_RETENTION_DAYS", "30")),
        cart_sweep_interval_seconds=float(env.get("CART_SWEEP_INTERVAL_SECONDS", "3600")),
        app_env=env.get("APP_ENV", "production"),
        log_level=env.get("LOG_LEVEL", "INFO").upper(),
    )
