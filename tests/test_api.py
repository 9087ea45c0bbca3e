import json
import time

import pytest
from fastapi.testclient import TestClient

from checkout.config import Settings
from checkout.errors import PaymentProviderError
from checkout.main import build_services, create_app
from checkout.payments import compute_signature

from .conftest import BILLING_INFO

WEBHOOK_SECRET = "whsec_test"
SESSION = {"X-Session-Id": "sess-api"}
ADMIN_TOKEN = "admin-secret"
ADMIN = {"X-Admin-Token": ADMIN_TOKEN}


class DecliningProvider:
    async def create_payment_intent(self, amount_minor_units, currency, metadata, idempotency_key=None):
        raise PaymentProviderError("Your card was declined.")


def make_client(pricing, carts, orders, provider, publisher=None, **settings) -> TestClient:
    settings = Settings(stripe_webhook_secret=WEBHOOK_SECRET, **settings)
    services = build_services(settings, pricing, carts, orders, provider, publisher)
    return TestClient(create_app(services=services))


@pytest.fixture
def client(pricing, carts, orders, provider, publisher):
    with make_client(pricing, carts, orders, provider, publisher, admin_token=ADMIN_TOKEN) as c:
        yield c


def signed(body: dict) -> tuple[bytes, dict]:
    payload = json.dumps(body).encode()
    timestamp = int(time.time())
    signature = compute_signature(payload, WEBHOOK_SECRET, timestamp)
    return payload, {"Stripe-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"}


def succeeded_body(event_id: str, payment_ref: str) -> dict:
    return {"id": event_id, "type": "payment_intent.succeeded", "data": {"object": {"id": payment_ref}}}


def fill_cart(client: TestClient, headers=SESSION) -> None:
    client.post("/cart/items", json={"product_id": "classic-white-t-shirt", "quantity": 2}, headers=headers)
    client.post("/cart/items", json={"product_id": "canvas-tote-bag", "quantity": 1}, headers=headers)


class TestCartEndpoints:
    def test_empty_cart(self, client):
        resp = client.get("/cart", headers=SESSION)

        assert resp.status_code == 200
        assert resp.json()["items"] == []
        assert resp.json()["totals"]["total"] == "0.00"

    def test_owner_header_required(self, client):
        resp = client.get("/cart")

        assert resp.status_code == 400
        assert resp.json()["kind"] == "validation"

    def test_add_update_remove(self, client):
        fill_cart(client)
        resp = client.put("/cart/shipping", json={"shipping_option_id": "standard"}, headers=SESSION)
        assert resp.json()["totals"]["total"] == "125.31"
        assert resp.json()["formatted_totals"]["total"] == "$125.31"

        resp = client.put("/cart/items/canvas-tote-bag", json={"quantity": 0}, headers=SESSION)
        assert [i["product_id"] for i in resp.json()["items"]] == ["classic-white-t-shirt"]

        resp = client.delete("/cart/items/classic-white-t-shirt", headers=SESSION)
        assert resp.json()["item_count"] == 0

    def test_invalid_quantity(self, client):
        resp = client.post("/cart/items", json={"product_id": "smart-watch", "quantity": 0}, headers=SESSION)

        assert resp.status_code == 400
        assert resp.json() == {"kind": "validation", "message": "Quantity must be at least 1"}

    def test_unknown_product(self, client):
        resp = client.post("/cart/items", json={"product_id": "nope", "quantity": 1}, headers=SESSION)

        assert resp.status_code == 404
        assert resp.json()["kind"] == "not_found"

    def test_remove_missing_item(self, client):
        resp = client.delete("/cart/items/smart-watch", headers=SESSION)
        assert resp.status_code == 404

    def test_coupon(self, client):
        fill_cart(client)
        resp = client.post("/cart/coupon", json={"code": "welcome10"}, headers=SESSION)
        assert resp.json()["coupon"] == "WELCOME10"
        assert resp.json()["totals"]["discount"] == "11.00"

        resp = client.delete("/cart/coupon", headers=SESSION)
        assert resp.json()["coupon"] is None

    def test_carts_are_isolated_per_owner(self, client):
        fill_cart(client)
        resp = client.get("/cart", headers={"X-User-Id": "someone-else"})
        assert resp.json()["items"] == []

    def test_clear(self, client):
        fill_cart(client)
        resp = client.delete("/cart", headers=SESSION)
        assert resp.json()["items"] == []


class TestCheckoutFlow:
    def test_checkout_then_webhook(self, client, publisher):
        fill_cart(client)

        resp = client.post(
            "/checkout",
            json={"shipping_option_id": "standard", "billing_info": BILLING_INFO},
            headers=SESSION,
        )
        assert resp.status_code == 201
        order = resp.json()["order"]
        assert order["order_status"] == "pending"
        assert order["totals"]["total"] == "125.31"
        assert resp.json()["client_secret"]

        # 支払い確定前はカートが残る
        assert client.get("/cart", headers=SESSION).json()["item_count"] == 3

        payload, headers = signed(succeeded_body("evt_1", order["payment_ref"]))
        resp = client.post("/payments/webhook", content=payload, headers=headers)
        assert resp.json() == {"received": True, "outcome": "applied"}

        resp = client.post("/payments/webhook", content=payload, headers=headers)
        assert resp.json() == {"received": True, "outcome": "duplicate"}

        resp = client.get(f"/orders/{order['order_number']}", headers=SESSION)
        assert resp.json()["payment_status"] == "paid"
        assert resp.json()["order_status"] == "processing"
        assert client.get("/cart", headers=SESSION).json()["item_count"] == 0
        assert publisher.types() == ["OrderCreated", "PaymentStatusChanged", "OrderStatusChanged"]

    def test_checkout_empty_cart(self, client):
        resp = client.post(
            "/checkout",
            json={"shipping_option_id": "standard", "billing_info": BILLING_INFO},
            headers=SESSION,
        )
        assert resp.status_code == 409
        assert resp.json() == {"kind": "conflict", "message": "Cart is empty"}

    def test_checkout_invalid_shipping(self, client):
        fill_cart(client)
        resp = client.post(
            "/checkout",
            json={"shipping_option_id": "teleport", "billing_info": BILLING_INFO},
            headers=SESSION,
        )
        assert resp.status_code == 404

    def test_checkout_invalid_billing(self, client):
        fill_cart(client)
        resp = client.post(
            "/checkout",
            json={"shipping_option_id": "standard", "billing_info": {**BILLING_INFO, "postal_code": "x"}},
            headers=SESSION,
        )
        assert resp.status_code == 400
        assert resp.json()["kind"] == "validation"

    def test_provider_failure_hides_details(self, pricing, carts, orders):
        with make_client(pricing, carts, orders, DecliningProvider()) as client:
            fill_cart(client)
            resp = client.post(
                "/checkout",
                json={"shipping_option_id": "standard", "billing_info": BILLING_INFO},
                headers=SESSION,
            )

            assert resp.status_code == 502
            assert resp.json() == {
                "kind": "payment_provider",
                "message": "Payment processing failed, please retry",
            }
            [order] = client.get("/orders", headers=SESSION).json()
            assert order["order_status"] == "pending"

    def test_provider_failure_detail_in_development(self, pricing, carts, orders):
        with make_client(pricing, carts, orders, DecliningProvider(), app_env="development") as client:
            fill_cart(client)
            resp = client.post(
                "/checkout",
                json={"shipping_option_id": "standard", "billing_info": BILLING_INFO},
                headers=SESSION,
            )
            assert resp.json()["detail"] == "Your card was declined."


class TestOrderEndpoints:
    def _place(self, client) -> dict:
        fill_cart(client)
        resp = client.post(
            "/checkout",
            json={"shipping_option_id": "express", "billing_info": BILLING_INFO},
            headers=SESSION,
        )
        return resp.json()["order"]

    def test_other_owner_cannot_view(self, client):
        order = self._place(client)
        resp = client.get(f"/orders/{order['order_number']}", headers={"X-User-Id": "intruder"})
        assert resp.status_code == 404

    def test_list_orders(self, client):
        order = self._place(client)
        resp = client.get("/orders", headers=SESSION)
        assert [o["order_number"] for o in resp.json()] == [order["order_number"]]

    def test_invalid_status_transition(self, client):
        order = self._place(client)
        resp = client.post(
            f"/orders/{order['order_number']}/status", json={"status": "delivered"}, headers=ADMIN
        )

        assert resp.status_code == 409
        assert resp.json()["message"] == "Cannot change order status from pending to delivered"

    def test_cancel_pending_order(self, client):
        order = self._place(client)
        resp = client.post(
            f"/orders/{order['order_number']}/status",
            json={"status": "cancelled", "note": "Customer request"},
            headers=ADMIN,
        )
        assert resp.json()["order_status"] == "cancelled"
        assert resp.json()["status_history"][-1]["note"] == "Customer request"

    @pytest.mark.parametrize("headers", [{}, {"X-Admin-Token": "wrong"}, SESSION])
    def test_status_change_requires_admin_token(self, client, headers):
        order = self._place(client)
        resp = client.post(
            f"/orders/{order['order_number']}/status",
            json={"status": "cancelled"},
            headers=headers,
        )

        assert resp.status_code == 403
        assert resp.json()["kind"] == "forbidden"
        assert client.get(f"/orders/{order['order_number']}", headers=SESSION).json()["order_status"] == "pending"

    def test_status_change_disabled_without_configured_token(self, pricing, carts, orders, provider):
        with make_client(pricing, carts, orders, provider) as client:
            order = self._place(client)
            resp = client.post(
                f"/orders/{order['order_number']}/status",
                json={"status": "cancelled"},
                headers={"X-Admin-Token": ""},
            )
            assert resp.status_code == 403

    def test_retry_payment(self, client):
        order = self._place(client)
        resp = client.post(f"/orders/{order['order_number']}/payment", headers=SESSION)

        assert resp.status_code == 200
        assert resp.json()["order"]["payment_ref"] != order["payment_ref"]


class TestWebhook:
    def test_bad_signature(self, client):
        payload = json.dumps(succeeded_body("evt_x", "pi_x")).encode()
        resp = client.post(
            "/payments/webhook",
            content=payload,
            headers={"Stripe-Signature": "t=1,v1=deadbeef"},
        )
        assert resp.status_code == 400

    def test_orphan_is_acknowledged(self, client):
        payload, headers = signed(succeeded_body("evt_orphan", "pi_missing"))
        resp = client.post("/payments/webhook", content=payload, headers=headers)
        assert resp.json() == {"received": True, "outcome": "orphaned"}

    def test_unknown_type_is_acknowledged(self, client):
        payload, headers = signed({"id": "evt_u", "type": "customer.created", "data": {"object": {}}})
        resp = client.post("/payments/webhook", content=payload, headers=headers)
        assert resp.json()["outcome"] == "ignored"

    def test_malformed_payload(self, client):
        payload, headers = signed({"type": "payment_intent.succeeded"})
        resp = client.post("/payments/webhook", content=payload, headers=headers)
        assert resp.status_code == 400


class TestReferenceData:
    def test_products(self, client):
        products = client.get("/products").json()
        assert {"id": "smart-watch", "unit_price": "249.99"}.items() <= products[-1].items()

    def test_product_not_found(self, client):
        assert client.get("/products/nope").status_code == 404

    def test_shipping_options(self, client):
        options = client.get("/shipping/options").json()
        assert [o["id"] for o in options] == ["standard", "express", "overnight"]

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "ok"
