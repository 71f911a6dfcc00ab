"""HTTP tests for the storefront API."""

import asyncio
import json

import httpx

import main
from errors import GatewayError, errmsg
from fulfillment import ShiprocketClient

from conftest import TEST_KEY_SECRET, TEST_WEBHOOK_SECRET, sign

CUSTOMER = {
    "name": "Asha Verma",
    "email": "asha@example.com",
    "phone": "9876543210",
    "address": "12 Boring Road",
    "city": "Patna",
    "state": "Bihar",
    "pincode": "800001",
}


def _product(client, price=200):
    resp = client.post("/admin/products", json={"name": "Makhana – Cheese", "price": price, "stock": 100})
    assert resp.status_code == 201
    return resp.json()["id"]


def _checkout(client, product_id, **overrides):
    body = {
        "items": [{"product_id": product_id, "price": 1, "quantity": 3}],
        "customer": CUSTOMER,
        "shipping": {"courier_code": "12", "cost": 50},
        "payment_method": "cod",
    }
    body.update(overrides)
    return client.post("/checkout", json=body)


class FakeRazorpay:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def create_order(self, amount, currency, receipt=None, notes=None):
        self.calls.append((amount, currency, receipt, notes))
        if self.error is not None:
            raise self.error
        return {"id": "order_FN1", "amount": amount, "currency": currency, "receipt": receipt or "receipt_1"}


class TestProducts:
    def test_root(self, client):
        assert client.get("/").json() == {"message": "Natural Puff Backend Running"}

    def test_seed_once(self, client):
        assert client.post("/seed").json() == {"inserted": 6}
        assert client.post("/seed").json() == {"inserted": 0}
        assert len(client.get("/products").json()) == 6

    def test_product_crud(self, client):
        product_id = _product(client)
        assert client.get(f"/products/{product_id}").json()["price"] == 200
        assert client.put(f"/admin/products/{product_id}", json={"price": 179}).json()["price"] == 179
        assert client.delete(f"/admin/products/{product_id}").status_code == 204
        assert client.get(f"/products/{product_id}").status_code == 404


class TestCoupons:
    def test_create_normalizes_and_rejects_duplicates(self, client):
        resp = client.post("/admin/coupons", json={"code": " diwali20 ", "discount_percent": 20})
        assert resp.status_code == 201
        assert resp.json()["code"] == "DIWALI20"
        again = client.post("/admin/coupons", json={"code": "DIWALI20", "discount_percent": 10})
        assert again.status_code == 400
        assert again.json()["detail"] == errmsg.COUPON_EXISTS

    def test_percent_out_of_range(self, client):
        assert client.post("/admin/coupons", json={"code": "BIG", "discount_percent": 150}).status_code == 422

    def test_toggle_update_delete(self, client):
        coupon_id = client.post("/admin/coupons", json={"code": "SAVE10", "discount_percent": 10}).json()["id"]
        assert client.post(f"/admin/coupons/{coupon_id}/toggle").json()["is_active"] is False
        assert client.put(f"/admin/coupons/{coupon_id}", json={"discount_percent": 15}).json()["discount_percent"] == 15
        assert client.delete(f"/admin/coupons/{coupon_id}").status_code == 204
        assert client.delete(f"/admin/coupons/{coupon_id}").status_code == 404
        assert client.get("/admin/coupons").json() == []

    def test_apply(self, client):
        client.post("/admin/coupons", json={"code": "SAVE20", "discount_percent": 20})
        resp = client.post("/coupons/apply", json={"code": "save20", "subtotal": 500})
        assert resp.json() == {"code": "SAVE20", "discount_percent": 20, "discount_amount": 100}

    def test_apply_inactive(self, client):
        client.post("/admin/coupons", json={"code": "OLD", "discount_percent": 20, "is_active": False})
        resp = client.post("/coupons/apply", json={"code": "OLD", "subtotal": 500})
        assert resp.status_code == 400
        assert resp.json()["detail"] == errmsg.COUPON_INVALID

    def test_apply_expired(self, client):
        client.post("/admin/coupons", json={"code": "GONE", "discount_percent": 20, "expires_at": "2020-01-01T00:00:00Z"})
        resp = client.post("/coupons/apply", json={"code": "GONE", "subtotal": 500})
        assert resp.status_code == 400
        assert resp.json()["detail"] == errmsg.COUPON_EXPIRED

    def test_generate_code(self, client):
        assert len(client.get("/admin/coupons/generate-code").json()["code"]) == 8


class TestCheckout:
    def test_cod_order_uses_catalog_prices(self, client, store, fulfillment):
        product_id = _product(client, price=200)
        client.post("/admin/coupons", json={"code": "SAVE10", "discount_percent": 10})
        resp = _checkout(client, product_id, coupon_code="SAVE10")

        assert resp.status_code == 200
        body = resp.json()
        assert body["state"] == "succeeded"
        assert body["totals"] == {"subtotal": 600, "discount": 60, "shipping_cost": 50, "total": 590}
        assert body["checkout_options"] is None
        assert body["redirect"] == f"/order-success?id={body['order_id']}"
        assert len(fulfillment.payloads) == 1

        order = client.get(f"/orders/{body['order_id']}").json()
        assert order["status"] == "pending"
        assert order["total_amount"] == 590
        assert [(i["product_name"], i["quantity"], i["price"]) for i in order["items"]] == [("Makhana – Cheese", 3, 200)]

    def test_unknown_product(self, client, store):
        resp = _checkout(client, "nope")
        assert resp.status_code == 400
        assert store.orders() == []

    def test_no_courier(self, client, store):
        product_id = _product(client)
        resp = _checkout(client, product_id, shipping={"courier_code": "", "cost": 0})
        assert resp.status_code == 400
        assert resp.json()["detail"] == errmsg.SHIPPING_REQUIRED
        assert store.orders() == []

    def test_invalid_customer(self, client):
        product_id = _product(client)
        resp = _checkout(client, product_id, customer={**CUSTOMER, "pincode": "12"})
        assert resp.status_code == 400
        assert resp.json()["detail"] == errmsg.PINCODE_INVALID

    def test_bad_coupon(self, client, store):
        product_id = _product(client)
        resp = _checkout(client, product_id, coupon_code="NOPE")
        assert resp.status_code == 400
        assert store.orders() == []

    def test_store_failure(self, client, store):
        product_id = _product(client)
        store.fail_on.add("create_order")
        resp = _checkout(client, product_id)
        assert resp.status_code == 500
        assert resp.json()["detail"]["order_id"] is None

    def test_online_payment_flow(self, client, store):
        product_id = _product(client)
        body = _checkout(client, product_id, payment_method="online").json()
        assert body["checkout_options"]["order_id"] == "order_GW123"
        assert body["checkout_options"]["amount"] == 65000

        callback = {
            "order_id": body["order_id"],
            "razorpay_payment_id": "pay_1",
            "razorpay_order_id": "order_GW123",
            "razorpay_signature": sign(TEST_KEY_SECRET, b"order_GW123|pay_1"),
        }
        resp = client.post("/payments/callback", json=callback)
        assert resp.status_code == 200
        assert resp.json()["status"] == "paid"
        assert resp.json()["payment_details"]["razorpay_payment_id"] == "pay_1"

    def test_callback_with_bad_signature(self, client, store):
        product_id = _product(client)
        body = _checkout(client, product_id, payment_method="online").json()
        resp = client.post("/payments/callback", json={
            "order_id": body["order_id"],
            "razorpay_payment_id": "pay_1",
            "razorpay_order_id": "order_GW123",
            "razorpay_signature": "0" * 64,
        })
        assert resp.status_code == 400
        assert store.orders()[0]["status"] == "pending_payment"

    def test_callback_without_pending_handle(self, client, store):
        product_id = _product(client)
        body = _checkout(client, product_id, payment_method="online").json()
        client.post("/payments/failure", json={"razorpay_order_id": "order_GW123", "description": "closed"})

        resp = client.post("/payments/callback", json={
            "order_id": body["order_id"],
            "razorpay_payment_id": "pay_2",
            "razorpay_order_id": "order_GW123",
            "razorpay_signature": sign(TEST_KEY_SECRET, b"order_GW123|pay_2"),
        })
        assert resp.json()["status"] == "paid"

    def test_callback_refused_without_key_secret(self, client, store):
        product_id = _product(client)
        body = _checkout(client, product_id, payment_method="online").json()
        main.app.dependency_overrides[main.get_payment_secret] = lambda: ""

        resp = client.post("/payments/callback", json={
            "order_id": body["order_id"],
            "razorpay_payment_id": "pay_1",
            "razorpay_order_id": "order_GW123",
            "razorpay_signature": "forged",
        })
        assert resp.status_code == 500
        assert resp.json()["detail"] == errmsg.GATEWAY_NOT_CONFIGURED
        assert store.orders()[0]["status"] == "pending_payment"

    def test_proof_for_one_order_cannot_pay_another(self, client, store):
        product_id = _product(client)
        paid = _checkout(client, product_id, payment_method="online").json()
        proof = {
            "razorpay_payment_id": "pay_1",
            "razorpay_order_id": "order_GW123",
            "razorpay_signature": sign(TEST_KEY_SECRET, b"order_GW123|pay_1"),
        }
        assert client.post("/payments/callback", json={"order_id": paid["order_id"], **proof}).status_code == 200

        other = asyncio.run(store.create_order({
            "total_amount": 5000,
            "status": "pending_payment",
            "payment_details": {"payment_method": "online", "razorpay_order_id": "order_GW999"},
        }))
        resp = client.post("/payments/callback", json={"order_id": other["id"], **proof})
        assert resp.status_code == 400
        assert resp.json()["detail"] == errmsg.PAYMENT_ORDER_MISMATCH
        assert asyncio.run(store.get_order(other["id"]))["status"] == "pending_payment"

    def test_callback_for_unknown_gateway_order(self, client, store):
        product_id = _product(client)
        body = _checkout(client, product_id, payment_method="online").json()
        resp = client.post("/payments/callback", json={
            "order_id": body["order_id"],
            "razorpay_payment_id": "pay_1",
            "razorpay_order_id": "order_OTHER",
            "razorpay_signature": sign(TEST_KEY_SECRET, b"order_OTHER|pay_1"),
        })
        assert resp.status_code == 400
        assert store.orders()[0]["status"] == "pending_payment"

    def test_payment_failure_unknown_order(self, client):
        resp = client.post("/payments/failure", json={"razorpay_order_id": "order_unknown"})
        assert resp.json() == {"handled": False}

    def test_order_not_found(self, client):
        assert client.get("/orders/missing").status_code == 404


class TestShipping:
    def test_rates(self, client):
        def handler(request):
            assert request.url.params["delivery_postcode"] == "800001"
            return httpx.Response(200, json={"data": {"available_courier_companies": [
                {"courier_company_id": 12, "courier_name": "Delhivery Surface", "rate": 62.5, "etd": "Oct 24, 2026"},
            ]}})

        shiprocket = ShiprocketClient("https://shiprocket.test/v1/external", "token", "110001", transport=httpx.MockTransport(handler))
        main.app.dependency_overrides[main.get_fulfillment] = lambda: shiprocket
        resp = client.get("/shipping/rates", params={"pincode": "800001"})
        assert resp.json() == [{"courier_code": "12", "name": "Delhivery Surface", "cost": 62.5, "etd": "Oct 24, 2026"}]

    def test_bad_pincode(self, client):
        main.app.dependency_overrides[main.get_fulfillment] = lambda: ShiprocketClient()
        assert client.get("/shipping/rates", params={"pincode": "80"}).status_code == 400

    def test_collaborator_down(self, client):
        def handler(request):
            return httpx.Response(503)

        shiprocket = ShiprocketClient("https://shiprocket.test/v1/external", "token", "110001", transport=httpx.MockTransport(handler))
        main.app.dependency_overrides[main.get_fulfillment] = lambda: shiprocket
        assert client.get("/shipping/rates", params={"pincode": "800001"}).status_code == 502


class TestCreateOrderFunction:
    def test_options_and_method_not_allowed(self, client):
        assert client.options("/api/create-razorpay-order").status_code == 204
        resp = client.get("/api/create-razorpay-order")
        assert resp.status_code == 405
        assert resp.json() == {"error": "Method not allowed"}

    def test_missing_fields(self, client):
        main.app.dependency_overrides[main.get_razorpay] = lambda: FakeRazorpay()
        resp = client.post("/api/create-razorpay-order", json={"amount": 59000})
        assert resp.status_code == 400
        assert "amount and currency" in resp.json()["error"]

    def test_rejects_bad_amounts(self, client):
        razorpay = FakeRazorpay()
        main.app.dependency_overrides[main.get_razorpay] = lambda: razorpay
        for amount in ("abc", -500, 12.5, [100]):
            resp = client.post("/api/create-razorpay-order", json={"amount": amount, "currency": "INR"})
            assert resp.status_code == 400
            assert resp.json() == {"error": errmsg.AMOUNT_INVALID}
            assert resp.headers["access-control-allow-origin"] == "*"
        assert razorpay.calls == []

    def test_creates_order(self, client):
        razorpay = FakeRazorpay()
        main.app.dependency_overrides[main.get_razorpay] = lambda: razorpay
        resp = client.post("/api/create-razorpay-order", json={"amount": 59000, "currency": "INR", "receipt": "receipt_x"})
        assert resp.status_code == 200
        assert resp.json()["data"]["id"] == "order_FN1"
        assert razorpay.calls == [(59000, "INR", "receipt_x", None)]

    def test_gateway_error(self, client):
        main.app.dependency_overrides[main.get_razorpay] = lambda: FakeRazorpay(GatewayError("Failed to communicate with Razorpay"))
        resp = client.post("/api/create-razorpay-order", json={"amount": 59000, "currency": "INR"})
        assert resp.status_code == 500
        assert resp.json() == {"error": "Failed to communicate with Razorpay"}


class TestWebhook:
    def _pending(self, client, store):
        product_id = _product(client)
        return _checkout(client, product_id, payment_method="online").json()["order_id"]

    def _event(self, order_id):
        return json.dumps({
            "event": "payment.captured",
            "payload": {"payment": {"entity": {"id": "pay_9", "order_id": "order_GW123", "notes": {"order_id": order_id}}}},
        }).encode()

    def test_method_not_allowed(self, client):
        assert client.get("/webhooks/razorpay").status_code == 405
        assert client.options("/webhooks/razorpay").status_code == 204

    def test_missing_signature(self, client):
        resp = client.post("/webhooks/razorpay", content=b"{}")
        assert resp.status_code == 400
        assert resp.json() == {"error": errmsg.SIGNATURE_MISSING}

    def test_invalid_signature_changes_nothing(self, client, store):
        order_id = self._pending(client, store)
        raw = self._event(order_id)
        resp = client.post("/webhooks/razorpay", content=raw, headers={"x-razorpay-signature": sign("wrong", raw)})
        assert resp.status_code == 400
        assert resp.json() == {"error": errmsg.SIGNATURE_INVALID}
        assert store.orders()[0]["status"] == "pending_payment"

    def test_verified_capture_marks_paid(self, client, store):
        order_id = self._pending(client, store)
        raw = self._event(order_id)
        resp = client.post("/webhooks/razorpay", content=raw, headers={"x-razorpay-signature": sign(TEST_WEBHOOK_SECRET, raw)})
        assert resp.status_code == 200
        assert resp.json()["event"] == "payment.captured"
        order = client.get(f"/orders/{order_id}").json()
        assert order["status"] == "paid"
        assert order["payment_details"]["razorpay_payment_id"] == "pay_9"

    def test_signed_body_that_is_not_an_object(self, client):
        for raw in (b"[]", b"42", b"not json"):
            resp = client.post("/webhooks/razorpay", content=raw, headers={"x-razorpay-signature": sign(TEST_WEBHOOK_SECRET, raw)})
            assert resp.status_code == 400
            assert resp.json() == {"error": errmsg.PAYLOAD_INVALID}

    def test_secret_not_configured(self, client):
        main.app.dependency_overrides[main.get_webhook_secret] = lambda: ""
        resp = client.post("/webhooks/razorpay", content=b"{}", headers={"x-razorpay-signature": "abc"})
        assert resp.status_code == 500
