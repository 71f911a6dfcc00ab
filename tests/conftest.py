"""Shared fixtures: in-memory store, fake collaborators, wired app client."""

import copy
import hashlib
import hmac
import json
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from checkout import install_payment_handlers
from events import EventBus
from gateway import CheckoutScript, PaymentGatewayAdapter
from schemas import CartLineItem, CustomerInfo

TEST_KEY_ID = "rzp_test_key"
TEST_KEY_SECRET = "test_key_secret"
TEST_WEBHOOK_SECRET = "test_webhook_secret"
FUNCTION_URL = "https://functions.test/create-razorpay-order"


class MemoryStore:
    """Dict-backed stand-in for MongoStore.

    Set ``fail_on`` to a method name to make that method raise.
    """

    def __init__(self):
        self.collections: dict[str, dict[str, dict[str, Any]]] = defaultdict(dict)
        self.fail_on: set[str] = set()

    def _check(self, name: str) -> None:
        if name in self.fail_on:
            raise RuntimeError(f"{name} unavailable")

    def _insert(self, collection: str, data: dict[str, Any]) -> dict[str, Any]:
        now = datetime.now(timezone.utc)
        doc = {**copy.deepcopy(data), "id": uuid.uuid4().hex, "created_at": now, "updated_at": now}
        self.collections[collection][doc["id"]] = doc
        return copy.deepcopy(doc)

    def _get(self, collection: str, doc_id: str) -> Optional[dict[str, Any]]:
        doc = self.collections[collection].get(doc_id)
        return copy.deepcopy(doc) if doc else None

    def _update(self, collection: str, doc_id: str, changes: dict[str, Any]) -> Optional[dict[str, Any]]:
        doc = self.collections[collection].get(doc_id)
        if doc is None:
            return None
        doc.update(copy.deepcopy(changes))
        doc["updated_at"] = datetime.now(timezone.utc)
        return copy.deepcopy(doc)

    def _find(self, collection: str, **match) -> list[dict[str, Any]]:
        return [copy.deepcopy(d) for d in self.collections[collection].values()
                if all(d.get(k) == v for k, v in match.items())]

    # coupons

    async def find_active_coupon(self, code):
        self._check("find_active_coupon")
        docs = self._find("coupon", code=code, is_active=True)
        return docs[0] if len(docs) == 1 else None

    async def get_coupon_by_code(self, code):
        docs = self._find("coupon", code=code)
        return docs[0] if docs else None

    async def get_coupon(self, coupon_id):
        return self._get("coupon", coupon_id)

    async def list_coupons(self):
        return sorted(self._find("coupon"), key=lambda d: d["created_at"], reverse=True)

    async def create_coupon(self, data):
        return self._insert("coupon", data)

    async def update_coupon(self, coupon_id, changes):
        return self._update("coupon", coupon_id, changes)

    async def delete_coupon(self, coupon_id):
        return self.collections["coupon"].pop(coupon_id, None) is not None

    # orders

    async def create_order(self, data):
        self._check("create_order")
        return self._insert("order", data)

    async def create_order_items(self, items):
        self._check("create_order_items")
        return [self._insert("order_item", item) for item in items]

    async def get_order(self, order_id):
        return self._get("order", order_id)

    async def get_order_items(self, order_id):
        return self._find("order_item", order_id=order_id)

    async def update_order(self, order_id, changes):
        self._check("update_order")
        return self._update("order", order_id, changes)

    async def delete_order(self, order_id):
        return self.collections["order"].pop(order_id, None) is not None

    async def find_order_by_gateway_order(self, gateway_order_id):
        for doc in self.collections["order"].values():
            if (doc.get("payment_details") or {}).get("razorpay_order_id") == gateway_order_id:
                return copy.deepcopy(doc)
        return None

    async def list_orders(self, limit=100):
        return sorted(self._find("order"), key=lambda d: d["created_at"], reverse=True)[:limit]

    # products

    async def list_products(self):
        return self._find("product")

    async def get_product(self, product_id):
        return self._get("product", product_id)

    async def count_products(self):
        return len(self.collections["product"])

    async def create_product(self, data):
        return self._insert("product", data)

    async def update_product(self, product_id, changes):
        return self._update("product", product_id, changes)

    async def delete_product(self, product_id):
        return self.collections["product"].pop(product_id, None) is not None

    # test helpers

    def orders(self) -> list[dict[str, Any]]:
        return list(self.collections["order"].values())

    def order_items(self) -> list[dict[str, Any]]:
        return list(self.collections["order_item"].values())


class FakeFulfillment:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.payloads: list[dict[str, Any]] = []

    async def create_order(self, payload):
        self.payloads.append(payload)
        if self.error is not None:
            raise self.error
        return {"order_id": 1, "status": "NEW"}

    async def serviceability(self, pincode, weight=0.5, cod=True):
        return []


def gateway_function(status_code: int = 200, body: Optional[dict] = None, calls: Optional[list] = None):
    """MockTransport standing in for the server-side order function."""

    def handler(request: httpx.Request) -> httpx.Response:
        sent = json.loads(request.content)
        if calls is not None:
            calls.append(sent)
        if body is not None:
            return httpx.Response(status_code, json=body)
        return httpx.Response(200, json={"data": {
            "id": "order_GW123",
            "amount": sent["amount"],
            "currency": sent["currency"],
            "receipt": sent["receipt"],
        }})

    return httpx.MockTransport(handler)


async def _script_ok() -> bool:
    return True


async def _script_broken() -> bool:
    raise httpx.ConnectError("script host unreachable")


def make_gateway(transport=None, script_ok: bool = True, key_id: str = TEST_KEY_ID) -> PaymentGatewayAdapter:
    script = CheckoutScript("https://checkout.test/checkout.js", fetch=_script_ok if script_ok else _script_broken)
    return PaymentGatewayAdapter(
        script=script,
        function_url=FUNCTION_URL,
        key_id=key_id,
        transport=transport or gateway_function(),
    )


def sign(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def customer(**overrides) -> CustomerInfo:
    data = {
        "name": "Asha Verma",
        "email": "asha@example.com",
        "phone": "9876543210",
        "address": "12 Boring Road",
        "city": "Patna",
        "state": "Bihar",
        "pincode": "800001",
    }
    data.update(overrides)
    return CustomerInfo(**data)


def line(product_id: str = "p1", price: float = 150, quantity: int = 1, name: str = "Makhana – Peri Peri") -> CartLineItem:
    return CartLineItem(product_id=product_id, name=name, price=price, quantity=quantity)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def events(store):
    bus = EventBus()
    install_payment_handlers(bus, store)
    return bus


@pytest.fixture
def fulfillment():
    return FakeFulfillment()


@pytest.fixture
def gateway():
    return make_gateway()


@pytest.fixture
def client(store, events, gateway, fulfillment):
    import main

    main.app.dependency_overrides[main.get_store] = lambda: store
    main.app.dependency_overrides[main.get_events] = lambda: events
    main.app.dependency_overrides[main.get_gateway] = lambda: gateway
    main.app.dependency_overrides[main.get_fulfillment] = lambda: fulfillment
    main.app.dependency_overrides[main.get_payment_secret] = lambda: TEST_KEY_SECRET
    main.app.dependency_overrides[main.get_webhook_secret] = lambda: TEST_WEBHOOK_SECRET
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()
