"""Order placement.

A ``CheckoutSession`` walks the customer through

    COLLECTING_INFO -> REVIEWING_SHIPPING -> SUBMITTING -> SUCCEEDED | FAILED

and, once submitted, runs the placement saga: an ordered list of
``SagaStep``s, each declaring what happens when it fails:

* ``ABORT``   - stop and fail the checkout, nothing was written yet
* ``SURFACE`` - stop and report the error; earlier steps stay as written
                unless they declare a compensation
* ``IGNORE``  - log it and carry on

Online payments complete later. The hosted checkout's success callback is
published on the ``EventBus`` as ``payment_confirmed``; the handler
installed by ``install_payment_handlers`` marks the order paid.
"""

from __future__ import annotations
import dataclasses
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import structlog

from cart import Cart, OrderTotals, calculate_totals
from coupons import CouponLookup, apply_coupon
from errors import CheckoutValidationError, InvalidTransitionError, StoreError, errmsg
from events import Event, EventBus, ORDER_PLACED, PAYMENT_CONFIRMED, PAYMENT_FAILED
from fulfillment import build_shipment_payload, valid_pincode
from gateway import PaymentGatewayAdapter, PaymentHandle, PaymentSuccess
from schemas import AppliedCoupon, CustomerInfo

logger = structlog.get_logger()

PAYMENT_METHODS = ("cod", "online")
REQUIRED_FIELDS = ("name", "email", "phone", "address", "city", "state", "pincode")


class CheckoutState(Enum):
    COLLECTING_INFO = "collecting_info"
    REVIEWING_SHIPPING = "reviewing_shipping"
    SUBMITTING = "submitting"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class OnFailure(Enum):
    ABORT = "abort"
    SURFACE = "surface"
    IGNORE = "ignore"


StepAction = Callable[[dict[str, Any]], Awaitable[Any]]


@dataclass
class SagaStep:
    name: str
    action: StepAction
    on_failure: OnFailure
    compensate: Optional[StepAction] = None


@dataclass
class StepOutcome:
    name: str
    ok: bool
    on_failure: OnFailure
    result: Any = None
    error: Optional[Exception] = None


async def run_saga(steps: list[SagaStep], ctx: dict[str, Any]) -> list[StepOutcome]:
    """Run ``steps`` in order, storing each result in ``ctx`` under its name."""
    outcomes: list[StepOutcome] = []
    completed: list[SagaStep] = []
    for step in steps:
        try:
            result = await step.action(ctx)
        except Exception as e:
            outcomes.append(StepOutcome(step.name, False, step.on_failure, error=e))
            if step.on_failure is OnFailure.IGNORE:
                logger.warning("saga_step_ignored", step=step.name, error=str(e))
                continue
            logger.error("saga_step_failed", step=step.name, policy=step.on_failure.value, error=str(e))
            await _compensate(completed, ctx)
            break
        ctx[step.name] = result
        completed.append(step)
        outcomes.append(StepOutcome(step.name, True, step.on_failure, result=result))
    return outcomes


async def _compensate(completed: list[SagaStep], ctx: dict[str, Any]) -> None:
    for step in reversed(completed):
        if step.compensate is None:
            continue
        try:
            await step.compensate(ctx)
            logger.info("saga_step_compensated", step=step.name)
        except Exception as e:
            logger.error("saga_compensation_failed", step=step.name, error=str(e))


@dataclass
class PlaceOrderResult:
    state: CheckoutState
    message: str
    totals: OrderTotals
    order_id: Optional[str] = None
    redirect: Optional[str] = None
    payment: Optional[PaymentHandle] = None
    payment_failed: bool = False
    outcomes: list[StepOutcome] = field(default_factory=list)


def validate_customer_info(info: CustomerInfo) -> None:
    for name in REQUIRED_FIELDS:
        if not getattr(info, name).strip():
            raise CheckoutValidationError(errmsg.FIELD_REQUIRED.format(field=name.capitalize()))
    if not valid_pincode(info.pincode.strip()):
        raise CheckoutValidationError(errmsg.PINCODE_INVALID)
    if "@" not in info.email or "." not in info.email:
        raise CheckoutValidationError(errmsg.EMAIL_INVALID)
    if len(re.sub(r"\D", "", info.phone)) < 10:
        raise CheckoutValidationError(errmsg.PHONE_INVALID)


async def record_payment(store, order_id: str, details: dict[str, Any]) -> dict[str, Any]:
    """Mark an order paid, merging ``details`` into its payment metadata."""
    try:
        order = await store.get_order(order_id)
        if order is None:
            raise StoreError(errmsg.ORDER_NOT_FOUND)
        payment_details = {
            **(order.get("payment_details") or {}),
            **details,
            "payment_status": "paid",
            "payment_date": datetime.now(timezone.utc).isoformat(),
        }
        updated = await store.update_order(order_id, {"status": "paid", "payment_details": payment_details})
    except StoreError:
        raise
    except Exception as e:
        logger.error("payment_record_failed", order_id=order_id, error=str(e))
        raise StoreError(str(e) or errmsg.PAYMENT_CONFIRM_FAILED) from e
    if updated is None:
        raise StoreError(errmsg.ORDER_NOT_FOUND)
    logger.info("order_paid", order_id=order_id)
    return updated


async def confirm_payment(store, order_id: str, success: PaymentSuccess) -> dict[str, Any]:
    return await record_payment(store, order_id, success.as_metadata())


async def report_payment_success(events: EventBus, order_id: str, success: PaymentSuccess) -> None:
    errors = await events.publish(Event(PAYMENT_CONFIRMED, order_id, dataclasses.asdict(success)))
    if errors:
        # the gateway has already taken the payment
        logger.error("payment_reconciliation_needed", order_id=order_id, gateway_order_id=success.gateway_order_id)
        raise StoreError(errmsg.PAYMENT_CONFIRM_FAILED) from errors[0]


def install_payment_handlers(events: EventBus, store) -> None:
    async def _confirm(event: Event) -> None:
        await confirm_payment(store, event.order_id, PaymentSuccess(**event.data))

    async def _failed(event: Event) -> None:
        logger.warning("order_payment_failed", order_id=event.order_id, error=event.data.get("error"))

    events.subscribe(PAYMENT_CONFIRMED, _confirm)
    events.subscribe(PAYMENT_FAILED, _failed)


class CheckoutSession:
    def __init__(
        self,
        cart: Cart,
        store,
        gateway: PaymentGatewayAdapter,
        fulfillment,
        events: EventBus,
        user_id: Optional[str] = None,
        rollback_on_item_failure: bool = False,
    ):
        self.cart = cart
        self.store = store
        self.gateway = gateway
        self.fulfillment = fulfillment
        self.events = events
        self.user_id = user_id
        self.rollback_on_item_failure = rollback_on_item_failure

        self.state = CheckoutState.COLLECTING_INFO
        self.customer: Optional[CustomerInfo] = None
        self.pincode = ""
        self.courier_code = ""
        self.shipping_cost: float = 0
        self.payment_method = "cod"
        self.coupon: Optional[AppliedCoupon] = None
        self.error: Optional[str] = None

    def _require(self, *states: CheckoutState) -> None:
        if self.state not in states:
            raise InvalidTransitionError(f"Not allowed while {self.state.value}")

    @property
    def totals(self) -> OrderTotals:
        return calculate_totals(self.cart.items, self.coupon, self.shipping_cost)

    def submit_customer_info(self, info: CustomerInfo) -> None:
        self._require(CheckoutState.COLLECTING_INFO)
        validate_customer_info(info)
        self.customer = info
        self.pincode = info.pincode.strip()
        self.state = CheckoutState.REVIEWING_SHIPPING
        logger.info("checkout_info_collected", pincode=self.pincode)

    def back_to_info(self) -> None:
        self._require(CheckoutState.REVIEWING_SHIPPING)
        self.state = CheckoutState.COLLECTING_INFO

    def select_shipping(self, courier_code: str, cost: float) -> None:
        self._require(CheckoutState.COLLECTING_INFO, CheckoutState.REVIEWING_SHIPPING)
        self.courier_code = courier_code
        self.shipping_cost = cost

    def set_payment_method(self, method: str) -> None:
        if method not in PAYMENT_METHODS:
            raise CheckoutValidationError(errmsg.PAYMENT_METHOD_INVALID)
        self.payment_method = method

    async def apply_coupon(self, code: str, lookup: Optional[CouponLookup] = None) -> AppliedCoupon:
        self._require(CheckoutState.COLLECTING_INFO, CheckoutState.REVIEWING_SHIPPING)
        self.coupon = await apply_coupon(lookup or self.store.find_active_coupon, code, self.cart.subtotal)
        return self.coupon

    def remove_coupon(self) -> None:
        self.coupon = None

    def retry(self) -> None:
        self._require(CheckoutState.FAILED)
        self.error = None
        self.state = CheckoutState.COLLECTING_INFO

    # placement

    async def place_order(self) -> PlaceOrderResult:
        if self.customer is None:
            self.state = CheckoutState.COLLECTING_INFO
            raise CheckoutValidationError(errmsg.CUSTOMER_INFO_MISSING)
        self._require(CheckoutState.REVIEWING_SHIPPING)
        if not self.courier_code or not self.shipping_cost:
            raise CheckoutValidationError(errmsg.SHIPPING_REQUIRED)
        if self.cart.is_empty:
            raise CheckoutValidationError(errmsg.CART_EMPTY)

        self.state = CheckoutState.SUBMITTING
        totals = self.totals
        ctx: dict[str, Any] = {}
        logger.info("checkout_submitting", payment_method=self.payment_method, total=totals.total)
        outcomes = await run_saga(self._steps(totals), ctx)
        return await self._finish(outcomes, ctx, totals)

    def _steps(self, totals: OrderTotals) -> list[SagaStep]:
        steps = [
            SagaStep(
                "create_order",
                lambda ctx: self._create_order(totals),
                OnFailure.ABORT,
                compensate=self._delete_order if self.rollback_on_item_failure else None,
            ),
            SagaStep("create_order_items", self._create_order_items, OnFailure.SURFACE),
        ]
        if self.payment_method == "online":
            steps += [
                SagaStep("create_gateway_order", lambda ctx: self._create_gateway_order(ctx, totals), OnFailure.SURFACE),
                SagaStep("record_gateway_order", self._record_gateway_order, OnFailure.IGNORE),
                SagaStep("open_checkout", lambda ctx: self._open_checkout(ctx, totals), OnFailure.IGNORE),
            ]
        else:
            steps.append(SagaStep("request_fulfillment", lambda ctx: self._request_fulfillment(ctx, totals), OnFailure.IGNORE))
        return steps

    async def _create_order(self, totals: OrderTotals) -> dict[str, Any]:
        payload = {
            "user_id": self.user_id,
            "total_amount": totals.total,
            "shipping_address": self.customer.model_dump(),
            "status": "pending_payment" if self.payment_method == "online" else "pending",
            "payment_details": {
                "payment_method": self.payment_method,
                "subtotal": totals.subtotal,
                "discount": totals.discount,
                "shipping_cost": totals.shipping_cost,
                "coupon_code": self.coupon.code if self.coupon else None,
                "courier_code": self.courier_code,
                "pincode": self.pincode,
                "delivery_method": self.courier_code,
            },
        }
        order = await self.store.create_order(payload)
        if not order or not order.get("id"):
            raise StoreError(errmsg.ORDER_CREATE_FAILED)
        logger.info("order_created", order_id=order["id"], status=payload["status"])
        return order

    async def _delete_order(self, ctx: dict[str, Any]) -> None:
        await self.store.delete_order(ctx["create_order"]["id"])

    async def _create_order_items(self, ctx: dict[str, Any]) -> list[dict[str, Any]]:
        order_id = ctx["create_order"]["id"]
        items = [
            {
                "order_id": order_id,
                "product_id": item.product_id,
                "quantity": item.quantity,
                "price": item.price,
                "product_name": item.name,
            }
            for item in self.cart.items
        ]
        saved = await self.store.create_order_items(items)
        logger.info("order_items_created", order_id=order_id, count=len(items))
        return saved

    async def _request_fulfillment(self, ctx: dict[str, Any], totals: OrderTotals) -> Any:
        payload = build_shipment_payload(
            ctx["create_order"]["id"], self.customer, self.cart.items, totals, self.courier_code
        )
        return await self.fulfillment.create_order(payload)

    async def _create_gateway_order(self, ctx: dict[str, Any], totals: OrderTotals):
        order_id = ctx["create_order"]["id"]
        return await self.gateway.create_remote_order(
            totals.total,
            receipt=f"receipt_{order_id}",
            notes={
                "order_id": order_id,
                "customer_name": self.customer.name,
                "customer_email": self.customer.email,
            },
        )

    async def _record_gateway_order(self, ctx: dict[str, Any]) -> Any:
        order = ctx["create_order"]
        details = {**(order.get("payment_details") or {}), "razorpay_order_id": ctx["create_gateway_order"].id}
        updated = await self.store.update_order(order["id"], {"payment_details": details})
        if updated is None:
            raise StoreError(errmsg.ORDER_NOT_FOUND)
        return updated

    async def _open_checkout(self, ctx: dict[str, Any], totals: OrderTotals) -> Optional[PaymentHandle]:
        order_id = ctx["create_order"]["id"]
        gateway_order = ctx["create_gateway_order"]
        if not await self.gateway.initialize():
            return None

        async def on_success(success: PaymentSuccess) -> None:
            await report_payment_success(self.events, order_id, success)

        async def on_error(description: str) -> None:
            await self.events.publish(Event(PAYMENT_FAILED, order_id, {"error": description}))

        return self.gateway.open_checkout(gateway_order.id, totals.total, self.customer, on_success, on_error)

    async def _finish(self, outcomes: list[StepOutcome], ctx: dict[str, Any], totals: OrderTotals) -> PlaceOrderResult:
        failed = {o.name: o for o in outcomes if not o.ok}
        order = ctx.get("create_order")
        order_id = order["id"] if order else None

        for name in ("create_order", "create_order_items"):
            if name in failed:
                self.state = CheckoutState.FAILED
                self.error = str(failed[name].error) or errmsg.ORDER_CREATE_FAILED
                if name == "create_order_items" and self.rollback_on_item_failure:
                    order_id = None
                logger.error("checkout_failed", step=name, order_id=order_id, error=self.error)
                return PlaceOrderResult(self.state, self.error, totals, order_id=order_id, outcomes=outcomes)

        payment = None
        payment_failed = False
        if self.payment_method == "online":
            if "create_gateway_order" in failed:
                payment_failed = True
                message = errmsg.ORDER_PLACED_GATEWAY_ISSUE
            else:
                payment = ctx.get("open_checkout")
                message = errmsg.ORDER_PLACED_AWAITING_PAYMENT if payment else errmsg.ORDER_PLACED_PAY_LATER
        elif "request_fulfillment" in failed:
            message = errmsg.ORDER_PLACED_COD_SHIPPING_ISSUE
        else:
            message = errmsg.ORDER_PLACED_COD

        redirect = f"/order-success?id={order_id}"
        if payment_failed:
            redirect += "&payment=failed"

        self.state = CheckoutState.SUCCEEDED
        self.cart.clear()
        await self.events.publish(Event(ORDER_PLACED, order_id, {"payment_method": self.payment_method}))
        logger.info("checkout_succeeded", order_id=order_id, payment_method=self.payment_method)
        return PlaceOrderResult(
            self.state,
            message,
            totals,
            order_id=order_id,
            redirect=redirect,
            payment=payment,
            payment_failed=payment_failed,
            outcomes=outcomes,
        )
