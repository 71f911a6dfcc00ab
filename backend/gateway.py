"""Razorpay payment gateway adapter.

Three pieces live here:

* ``CheckoutScript`` - the process-wide loader for the hosted checkout client
  script. Concurrent ``initialize()`` calls share one in-flight download.
* ``PaymentGatewayAdapter`` - the storefront-side adapter. It asks the
  server-side order function for a gateway order, hands out the options the
  hosted widget is opened with, and relays the widget's success/error
  callbacks through a ``PaymentHandle``.
* ``RazorpayClient`` - the server-side order function. It is the only code
  that sees the key secret.
"""

from __future__ import annotations
import asyncio
import concurrent.futures
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog

from cart import round_half_up
from config import settings
from errors import GatewayError, errmsg
from schemas import CustomerInfo

logger = structlog.get_logger()

# seconds a hosted checkout may stay open before its handle is dropped
PENDING_TTL = 30 * 60


class ScriptState(Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class CheckoutScript:
    def __init__(self, url: str, fetch: Optional[Callable[[], Awaitable[bool]]] = None):
        self.url = url
        self.state = ScriptState.UNINITIALIZED
        self.attempts = 0
        self._fetch = fetch or self._download
        self._task: Optional[asyncio.Task] = None

    async def _download(self) -> bool:
        async with httpx.AsyncClient() as client:
            resp = await client.get(self.url)
        return resp.status_code == 200 and bool(resp.content)

    async def _load(self) -> bool:
        self.attempts += 1
        try:
            ok = await self._fetch()
        except Exception as e:
            logger.error("checkout_script_load_failed", url=self.url, error=str(e))
            ok = False
        self.state = ScriptState.READY if ok else ScriptState.FAILED
        logger.info("checkout_script_loaded", url=self.url, ready=ok)
        return ok

    async def initialize(self) -> bool:
        """Load the script once; report failure as ``False``."""
        if self.state is ScriptState.READY:
            return True
        if self.state is not ScriptState.LOADING:
            self.state = ScriptState.LOADING
            self._task = asyncio.ensure_future(self._load())
        return await asyncio.shield(self._task)

    @property
    def ready(self) -> bool:
        return self.state is ScriptState.READY

    def reset(self) -> None:
        self.state = ScriptState.UNINITIALIZED
        self._task = None


checkout_script = CheckoutScript(settings.RAZORPAY_CHECKOUT_SCRIPT_URL)


@dataclass(frozen=True)
class GatewayOrder:
    id: str
    amount: int
    currency: str
    receipt: Optional[str] = None


@dataclass(frozen=True)
class PaymentSuccess:
    payment_id: str
    gateway_order_id: str
    signature: str

    def as_metadata(self) -> dict[str, str]:
        return {
            "razorpay_payment_id": self.payment_id,
            "razorpay_order_id": self.gateway_order_id,
            "razorpay_signature": self.signature,
        }


SuccessCallback = Callable[[PaymentSuccess], Awaitable[None]]
ErrorCallback = Callable[[str], Awaitable[None]]


class PaymentHandle:
    """Pending hosted-checkout payment.

    Resolves once the widget reports success or failure, possibly long after
    the order was placed, or never if the customer walks away.
    """

    def __init__(
        self,
        gateway_order_id: str,
        options: dict[str, Any],
        on_success: Optional[SuccessCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        opened_at: float = 0.0,
    ):
        self.gateway_order_id = gateway_order_id
        self.options = options
        self.opened_at = opened_at
        self._on_success = on_success
        self._on_error = on_error
        # not bound to an event loop; callbacks may arrive on a later request
        self._future: concurrent.futures.Future = concurrent.futures.Future()

    def done(self) -> bool:
        return self._future.done()

    def succeeded(self) -> bool:
        return self.done() and isinstance(self._future.result(), PaymentSuccess)

    async def wait(self, timeout: Optional[float] = None) -> PaymentSuccess | str:
        """Result is a ``PaymentSuccess`` or the error description."""
        return await asyncio.wait_for(asyncio.wrap_future(self._future), timeout)

    async def resolve_success(self, success: PaymentSuccess) -> None:
        if self.done():
            return
        self._future.set_result(success)
        if self._on_success is not None:
            await self._on_success(success)

    async def resolve_error(self, description: str) -> None:
        if self.done():
            return
        self._future.set_result(description)
        if self._on_error is not None:
            await self._on_error(description)


class PaymentGatewayAdapter:
    def __init__(
        self,
        script: CheckoutScript = checkout_script,
        function_url: str = settings.CREATE_ORDER_FUNCTION_URL,
        key_id: str = settings.RAZORPAY_KEY_ID,
        store_name: str = settings.STORE_NAME,
        brand_color: str = settings.BRAND_COLOR,
        currency: str = settings.CURRENCY,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        pending_ttl: float = PENDING_TTL,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.script = script
        self.function_url = function_url
        self.key_id = key_id
        self.store_name = store_name
        self.brand_color = brand_color
        self.currency = currency
        self._transport = transport
        self.pending_ttl = pending_ttl
        self._clock = clock
        self._pending: dict[str, PaymentHandle] = {}

    def _prune(self) -> None:
        # abandoned checkouts never call back; the webhook still settles them
        cutoff = self._clock() - self.pending_ttl
        for gateway_order_id in [k for k, h in self._pending.items() if h.opened_at < cutoff]:
            del self._pending[gateway_order_id]
            logger.info("checkout_expired", gateway_order_id=gateway_order_id)

    async def initialize(self) -> bool:
        return await self.script.initialize()

    async def create_remote_order(
        self,
        amount: float,
        currency: Optional[str] = None,
        receipt: str = "",
        notes: Optional[dict[str, str]] = None,
    ) -> GatewayOrder:
        """Create the gateway-side order through the server function.

        ``amount`` is in rupees; the gateway takes paise.
        """
        body = {
            "amount": round_half_up(amount * 100),
            "currency": currency or self.currency,
            "receipt": receipt,
            "notes": notes or {},
        }
        logger.info("gateway_order_requested", amount=body["amount"], receipt=receipt)
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                resp = await client.post(self.function_url, json=body)
        except httpx.HTTPError as e:
            logger.error("gateway_order_request_failed", error=str(e))
            raise GatewayError(errmsg.GATEWAY_FAILED, str(e)) from e

        try:
            payload = resp.json()
        except ValueError:
            payload = {}

        if resp.status_code != 200 or payload.get("error"):
            description = payload.get("error") or errmsg.GATEWAY_FAILED
            logger.error("gateway_order_rejected", status=resp.status_code, error=description)
            raise GatewayError(errmsg.GATEWAY_FAILED, str(description))

        data = payload.get("data") or {}
        if not data.get("id"):
            raise GatewayError(errmsg.GATEWAY_FAILED)

        order = GatewayOrder(
            id=data["id"],
            amount=int(data.get("amount", body["amount"])),
            currency=data.get("currency", body["currency"]),
            receipt=data.get("receipt"),
        )
        logger.info("gateway_order_created", gateway_order_id=order.id)
        return order

    def checkout_options(self, gateway_order_id: str, amount: float, prefill: CustomerInfo) -> dict[str, Any]:
        return {
            "key": self.key_id,
            "amount": round_half_up(amount * 100),
            "currency": self.currency,
            "name": self.store_name,
            "description": "Payment for your order",
            "order_id": gateway_order_id,
            "prefill": {"name": prefill.name, "email": prefill.email, "contact": prefill.phone},
            "theme": {"color": self.brand_color},
        }

    def open_checkout(
        self,
        gateway_order_id: str,
        amount: float,
        prefill: CustomerInfo,
        on_success: Optional[SuccessCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> Optional[PaymentHandle]:
        """Prepare the hosted payment UI. Returns ``None`` when it cannot open."""
        if not self.script.ready:
            logger.error("checkout_open_failed", gateway_order_id=gateway_order_id, reason="script_not_loaded")
            return None
        if not self.key_id:
            logger.error("checkout_open_failed", gateway_order_id=gateway_order_id, reason="key_not_configured")
            return None

        handle = PaymentHandle(
            gateway_order_id,
            self.checkout_options(gateway_order_id, amount, prefill),
            on_success=on_success,
            on_error=on_error,
            opened_at=self._clock(),
        )
        self._prune()
        self._pending[gateway_order_id] = handle
        logger.info("checkout_opened", gateway_order_id=gateway_order_id)
        return handle

    def pending(self, gateway_order_id: str) -> Optional[PaymentHandle]:
        return self._pending.get(gateway_order_id)

    async def complete(self, success: PaymentSuccess) -> bool:
        handle = self._pending.pop(success.gateway_order_id, None)
        if handle is None:
            return False
        logger.info("payment_success_reported", gateway_order_id=success.gateway_order_id)
        await handle.resolve_success(success)
        return True

    async def fail(self, gateway_order_id: str, description: str) -> bool:
        handle = self._pending.pop(gateway_order_id, None)
        if handle is None:
            return False
        logger.warning("payment_error_reported", gateway_order_id=gateway_order_id, error=description)
        await handle.resolve_error(description)
        return True


class RazorpayClient:
    def __init__(
        self,
        key_id: str = settings.RAZORPAY_KEY_ID,
        key_secret: str = settings.RAZORPAY_KEY_SECRET,
        api_url: str = settings.RAZORPAY_API_URL,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.key_id = key_id
        self._key_secret = key_secret
        self.api_url = api_url.rstrip("/")
        self._transport = transport

    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: Optional[str] = None,
        notes: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        if not self.key_id or not self._key_secret:
            logger.error("razorpay_keys_missing")
            raise GatewayError(errmsg.GATEWAY_NOT_CONFIGURED)

        body = {
            "amount": amount,
            "currency": currency,
            "receipt": receipt or f"receipt_{int(time.time() * 1000)}",
            "notes": notes or {},
        }
        logger.info("razorpay_order_create", amount=amount, currency=currency, receipt=body["receipt"])
        try:
            async with httpx.AsyncClient(
                auth=(self.key_id, self._key_secret), transport=self._transport
            ) as client:
                resp = await client.post(f"{self.api_url}/orders", json=body)
        except httpx.HTTPError as e:
            raise GatewayError("Failed to communicate with Razorpay", str(e)) from e

        if resp.status_code >= 400:
            try:
                description = resp.json().get("error", {}).get("description")
            except ValueError:
                description = None
            logger.error("razorpay_order_rejected", status=resp.status_code, error=description)
            raise GatewayError("Failed to communicate with Razorpay", description)

        order = resp.json()
        logger.info("razorpay_order_created", gateway_order_id=order.get("id"))
        return order
