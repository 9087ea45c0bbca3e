"""共通フィクスチャ"""

from decimal import Decimal

import pytest

from checkout.cart import CartOwner, Pricing
from checkout.catalog import default_catalog
from checkout.commands import CartCommands
from checkout.orchestrator import CheckoutCoordinator
from checkout.payments import MockPaymentProvider, PaymentOrchestrator
from checkout.store import MemoryCartRepository, MemoryOrderRepository

TAX_RATE = Decimal("0.085")

BILLING_INFO = {
    "first_name": "Ada",
    "last_name": "Lovelace",
    "email": "ada@example.com",
    "address1": "1 Main St",
    "city": "Springfield",
    "state": "IL",
    "postal_code": "62701",
    "country": "US",
}


class RecordingPublisher:
    """発行されたイベントをメモリに記録する"""

    def __init__(self) -> None:
        self.events = []

    async def publish(self, event) -> None:
        self.events.append(event)

    def types(self) -> list[str]:
        return [type(e).__name__ for e in self.events]


class BrokenPublisher:
    """Redis に届かない発行者"""

    def __init__(self) -> None:
        self.attempts = 0

    async def publish(self, event) -> None:
        self.attempts += 1
        raise ConnectionError("redis down")


@pytest.fixture
def pricing():
    return Pricing(default_catalog(), TAX_RATE)


@pytest.fixture
def owner():
    return CartOwner(session_id="sess-1")


@pytest.fixture
def carts(pricing):
    return MemoryCartRepository(pricing)


@pytest.fixture
def orders():
    return MemoryOrderRepository()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def provider():
    return MockPaymentProvider()


@pytest.fixture
def cart_commands(carts, pricing):
    return CartCommands(carts, pricing)


@pytest.fixture
def payments(provider, orders, carts, publisher):
    return PaymentOrchestrator(provider, orders, carts, publisher)


@pytest.fixture
def coordinator(carts, orders, payments, pricing, publisher):
    return CheckoutCoordinator(carts, orders, payments, pricing, "usd", publisher)
