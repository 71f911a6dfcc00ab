from __future__ import annotations
import dataclasses
import json
import os
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
import structlog

from cart import Cart
from checkout import CheckoutSession, CheckoutState, install_payment_handlers, report_payment_success
from config import settings
from coupons import apply_coupon, generate_coupon_code, prepare_coupon
from database import MongoStore, get_store
from errors import (
    CheckoutValidationError,
    CouponRejectedError,
    FulfillmentError,
    GatewayError,
    InvalidTransitionError,
    StoreError,
    errmsg,
)
from events import EventBus
from fulfillment import ShiprocketClient
from gateway import PaymentGatewayAdapter, PaymentSuccess, RazorpayClient
from logging_config import configure_logging
from schemas import (
    AppliedCoupon,
    CartLineItem,
    CheckoutRequest,
    CheckoutResponse,
    Coupon,
    CouponApply,
    CouponUpdate,
    CourierOption,
    PaymentCallback,
    PaymentFailure,
    Product,
    ProductUpdate,
    TotalsOut,
)
from webhooks import process_webhook_event, verify_payment_signature, verify_webhook_signature

configure_logging()
logger = structlog.get_logger()

app = FastAPI(title="Natural Puff API")

# Allow all origins, the storefront is served from its own host
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

FUNCTION_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type, x-razorpay-signature",
}
ALL_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

# Seed data: the Natural Puff makhana range
SEED_PRODUCTS: list[dict] = [
    {"name": "Natural Puff Raw Makhana – Pure & Wholesome", "description": "Light, crunchy, and 100% natural. Handpicked and unflavored, perfect for healthy snacking or home-style roasting.", "price": 199, "stock": 100, "image_url": "https://res.cloudinary.com/dlvxjnycr/image/upload/v1745910080/5_tdxi1b.jpg"},
    {"name": "Natural Puff Makhana – Black Pepper & Salt", "description": "Crushed black pepper and Himalayan salt. Crunchy, savory and full of flavor.", "price": 149, "stock": 100, "image_url": "https://res.cloudinary.com/dlvxjnycr/image/upload/v1745910074/2_gnptev.jpg"},
    {"name": "Natural Puff Makhana – Cream & Onion", "description": "Indulgently creamy with a punch of onion zest.", "price": 149, "stock": 100, "image_url": "https://res.cloudinary.com/dlvxjnycr/image/upload/v1745910074/2_gnptev.jpg"},
    {"name": "Natural Puff Makhana – Peri Peri", "description": "Spicy, zesty, and seriously addictive.", "price": 149, "stock": 100, "image_url": "https://res.cloudinary.com/dlvxjnycr/image/upload/v1745910077/4_rrgvey.jpg"},
    {"name": "Natural Puff Makhana – Cheese", "description": "Melt-in-your-mouth cheese flavor meets crunchy roasted makhana.", "price": 149, "stock": 100, "image_url": "https://res.cloudinary.com/dlvxjnycr/image/upload/v1745910077/1_hgavbu.jpg"},
    {"name": "Natural Puff Makhana – Pudina", "description": "Refreshing mint meets crunchy goodness.", "price": 149, "stock": 100, "image_url": "https://res.cloudinary.com/dlvxjnycr/image/upload/v1745910080/5_tdxi1b.jpg"},
]


# Collaborators, overridable in tests

_gateway: Optional[PaymentGatewayAdapter] = None
_events: Optional[EventBus] = None


def get_gateway() -> PaymentGatewayAdapter:
    global _gateway
    if _gateway is None:
        _gateway = PaymentGatewayAdapter()
    return _gateway


def get_events(store: MongoStore = Depends(get_store)) -> EventBus:
    global _events
    if _events is None:
        _events = EventBus()
        install_payment_handlers(_events, store)
    return _events


def get_fulfillment() -> ShiprocketClient:
    return ShiprocketClient()


def get_razorpay() -> RazorpayClient:
    return RazorpayClient()


def get_payment_secret() -> str:
    return settings.RAZORPAY_KEY_SECRET


def get_webhook_secret() -> str:
    return settings.RAZORPAY_WEBHOOK_SECRET


@app.get("/")
async def root():
    return {"message": "Natural Puff Backend Running"}


@app.get("/test")
async def test():
    return {"ok": True}


# Products

class SeedResponse(BaseModel):
    inserted: int


@app.post("/seed", response_model=SeedResponse)
async def seed_products(store: MongoStore = Depends(get_store)):
    # Insert only if products collection is empty
    if await store.count_products() == 0:
        for p in SEED_PRODUCTS:
            await store.create_product(Product(**p).model_dump())
        return SeedResponse(inserted=len(SEED_PRODUCTS))
    return SeedResponse(inserted=0)


@app.get("/products")
async def list_products(store: MongoStore = Depends(get_store)):
    return await store.list_products()


@app.get("/products/{product_id}")
async def get_product(product_id: str, store: MongoStore = Depends(get_store)):
    product = await store.get_product(product_id)
    if product is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return product


@app.post("/admin/products", status_code=201)
async def create_product(product: Product, store: MongoStore = Depends(get_store)):
    return await store.create_product(product.model_dump())


@app.put("/admin/products/{product_id}")
async def update_product(product_id: str, changes: ProductUpdate, store: MongoStore = Depends(get_store)):
    updated = await store.update_product(product_id, changes.model_dump(exclude_unset=True))
    if updated is None:
        raise HTTPException(status_code=404, detail="Product not found")
    return updated


@app.delete("/admin/products/{product_id}", status_code=204)
async def delete_product(product_id: str, store: MongoStore = Depends(get_store)):
    if not await store.delete_product(product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    return Response(status_code=204)


# Coupons

@app.post("/coupons/apply", response_model=AppliedCoupon)
async def apply_coupon_code(payload: CouponApply, store: MongoStore = Depends(get_store)):
    try:
        return await apply_coupon(store.find_active_coupon, payload.code, payload.subtotal)
    except CouponRejectedError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/admin/coupons")
async def list_coupons(store: MongoStore = Depends(get_store)):
    return await store.list_coupons()


@app.get("/admin/coupons/generate-code")
async def new_coupon_code():
    return {"code": generate_coupon_code()}


@app.post("/admin/coupons", status_code=201)
async def create_coupon(coupon: Coupon, store: MongoStore = Depends(get_store)):
    try:
        data = prepare_coupon(coupon.model_dump())
    except CheckoutValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    if await store.get_coupon_by_code(data["code"]):
        raise HTTPException(status_code=400, detail=errmsg.COUPON_EXISTS)
    saved = await store.create_coupon(data)
    logger.info("coupon_created", code=data["code"], discount_percent=data["discount_percent"])
    return saved


@app.put("/admin/coupons/{coupon_id}")
async def update_coupon(coupon_id: str, changes: CouponUpdate, store: MongoStore = Depends(get_store)):
    try:
        data = prepare_coupon(changes.model_dump(exclude_unset=True))
    except CheckoutValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    updated = await store.update_coupon(coupon_id, data)
    if updated is None:
        raise HTTPException(status_code=404, detail="Coupon not found")
    logger.info("coupon_updated", coupon_id=coupon_id)
    return updated


@app.post("/admin/coupons/{coupon_id}/toggle")
async def toggle_coupon(coupon_id: str, store: MongoStore = Depends(get_store)):
    coupon = await store.get_coupon(coupon_id)
    if coupon is None:
        raise HTTPException(status_code=404, detail="Coupon not found")
    return await store.update_coupon(coupon_id, {"is_active": not coupon.get("is_active")})


@app.delete("/admin/coupons/{coupon_id}", status_code=204)
async def delete_coupon(coupon_id: str, store: MongoStore = Depends(get_store)):
    if not await store.delete_coupon(coupon_id):
        raise HTTPException(status_code=404, detail="Coupon not found")
    logger.info("coupon_deleted", coupon_id=coupon_id)
    return Response(status_code=204)


# Shipping

@app.get("/shipping/rates", response_model=list[CourierOption])
async def shipping_rates(pincode: str = Query(...), shiprocket: ShiprocketClient = Depends(get_fulfillment)):
    try:
        return await shiprocket.serviceability(pincode)
    except CheckoutValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except FulfillmentError:
        raise HTTPException(status_code=502, detail="Shipping service unavailable")


# Checkout

async def _priced_cart(items: list[CartLineItem], store: MongoStore) -> Cart:
    # Fetch item prices from DB to prevent tampering
    cart = Cart()
    for item in items:
        product = await store.get_product(item.product_id)
        if not product:
            raise HTTPException(status_code=400, detail=f"Invalid product {item.product_id}")
        cart.add(item.model_copy(update={
            "name": item.name or product.get("name", ""),
            "price": float(product.get("price", 0)),
            "image_url": item.image_url or product.get("image_url"),
        }))
    return cart


@app.post("/checkout", response_model=CheckoutResponse)
async def checkout(
    payload: CheckoutRequest,
    store: MongoStore = Depends(get_store),
    gateway: PaymentGatewayAdapter = Depends(get_gateway),
    fulfillment: ShiprocketClient = Depends(get_fulfillment),
    events: EventBus = Depends(get_events),
):
    cart = await _priced_cart(payload.items, store)
    session = CheckoutSession(cart, store, gateway, fulfillment, events, user_id=payload.user_id)
    try:
        if cart.is_empty:
            raise CheckoutValidationError(errmsg.CART_EMPTY)
        session.submit_customer_info(payload.customer)
        session.set_payment_method(payload.payment_method)
        if payload.coupon_code:
            await session.apply_coupon(payload.coupon_code)
        session.select_shipping(payload.shipping.courier_code, payload.shipping.cost)
        result = await session.place_order()
    except (CheckoutValidationError, CouponRejectedError, InvalidTransitionError) as e:
        raise HTTPException(status_code=400, detail=str(e))

    if result.state is CheckoutState.FAILED:
        raise HTTPException(status_code=500, detail={"message": result.message, "order_id": result.order_id})

    return CheckoutResponse(
        state=result.state.value,
        order_id=result.order_id,
        message=result.message,
        redirect=result.redirect,
        totals=TotalsOut(**dataclasses.asdict(result.totals)),
        checkout_options=result.payment.options if result.payment else None,
    )


@app.post("/payments/callback")
async def payment_callback(
    payload: PaymentCallback,
    store: MongoStore = Depends(get_store),
    gateway: PaymentGatewayAdapter = Depends(get_gateway),
    events: EventBus = Depends(get_events),
    key_secret: str = Depends(get_payment_secret),
):
    if not key_secret:
        logger.error("payment_secret_missing", order_id=payload.order_id)
        raise HTTPException(status_code=500, detail=errmsg.GATEWAY_NOT_CONFIGURED)
    if not verify_payment_signature(
        payload.razorpay_order_id, payload.razorpay_payment_id, payload.razorpay_signature, key_secret
    ):
        logger.warning("payment_signature_invalid", order_id=payload.order_id)
        raise HTTPException(status_code=400, detail=errmsg.SIGNATURE_INVALID)

    # the signature covers the gateway order only, so it decides which order is paid
    owner = await store.find_order_by_gateway_order(payload.razorpay_order_id)
    if owner is None or owner["id"] != payload.order_id:
        logger.warning(
            "payment_order_mismatch",
            order_id=payload.order_id,
            gateway_order_id=payload.razorpay_order_id,
        )
        raise HTTPException(status_code=400, detail=errmsg.PAYMENT_ORDER_MISMATCH)

    success = PaymentSuccess(
        payment_id=payload.razorpay_payment_id,
        gateway_order_id=payload.razorpay_order_id,
        signature=payload.razorpay_signature,
    )
    try:
        if not await gateway.complete(success):
            await report_payment_success(events, payload.order_id, success)
    except StoreError as e:
        raise HTTPException(status_code=500, detail=str(e))

    order = await store.get_order(payload.order_id)
    if order is None:
        raise HTTPException(status_code=404, detail=errmsg.ORDER_NOT_FOUND)
    return order


@app.post("/payments/failure")
async def payment_failure(payload: PaymentFailure, gateway: PaymentGatewayAdapter = Depends(get_gateway)):
    handled = await gateway.fail(payload.razorpay_order_id, payload.description or "Payment failed")
    return {"handled": handled}


# Orders

@app.get("/orders")
async def list_orders(limit: int = Query(100, ge=1, le=500), store: MongoStore = Depends(get_store)):
    return await store.list_orders(limit=limit)


@app.get("/orders/{order_id}")
async def get_order(order_id: str, store: MongoStore = Depends(get_store)):
    order = await store.get_order(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail=errmsg.ORDER_NOT_FOUND)
    return {**order, "items": await store.get_order_items(order_id)}


# Server-side functions

def _function_error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code, headers=FUNCTION_CORS_HEADERS)


def _paise(value) -> Optional[int]:
    if isinstance(value, bool):
        return None
    try:
        amount = int(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if amount <= 0 or (isinstance(value, float) and not value.is_integer()):
        return None
    return amount


@app.api_route("/api/create-razorpay-order", methods=ALL_METHODS)
async def create_razorpay_order(request: Request, razorpay: RazorpayClient = Depends(get_razorpay)):
    if request.method == "OPTIONS":
        return Response(status_code=204, headers=FUNCTION_CORS_HEADERS)
    if request.method != "POST":
        return _function_error("Method not allowed", 405)

    try:
        data = await request.json()
    except ValueError:
        data = {}
    if not isinstance(data, dict) or not data.get("amount") or not data.get("currency"):
        return _function_error("Missing required fields: amount and currency", 400)
    amount = _paise(data["amount"])
    if amount is None:
        return _function_error(errmsg.AMOUNT_INVALID, 400)

    try:
        order = await razorpay.create_order(amount, data["currency"], data.get("receipt"), data.get("notes"))
    except GatewayError as e:
        return _function_error(str(e), 500)
    return JSONResponse({"data": order}, headers=FUNCTION_CORS_HEADERS)


@app.api_route("/webhooks/razorpay", methods=ALL_METHODS)
async def razorpay_webhook(
    request: Request,
    store: MongoStore = Depends(get_store),
    webhook_secret: str = Depends(get_webhook_secret),
):
    if request.method == "OPTIONS":
        return Response(status_code=204, headers=FUNCTION_CORS_HEADERS)
    if request.method != "POST":
        return _function_error("Method not allowed", 405)

    raw = await request.body()
    signature = request.headers.get("x-razorpay-signature")
    if not signature:
        return _function_error(errmsg.SIGNATURE_MISSING, 400)
    if not webhook_secret:
        logger.error("webhook_secret_missing")
        return _function_error(errmsg.WEBHOOK_SECRET_MISSING, 500)
    if not verify_webhook_signature(raw, signature, webhook_secret):
        logger.warning("webhook_signature_invalid")
        return _function_error(errmsg.SIGNATURE_INVALID, 400)

    try:
        payload = json.loads(raw)
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        return _function_error(errmsg.PAYLOAD_INVALID, 400)

    logger.info("webhook_verified", webhook_event=payload.get("event"))
    try:
        await process_webhook_event(store, payload)
    except StoreError as e:
        return _function_error(str(e), 500)

    return JSONResponse(
        {"status": "success", "message": "Payment verification successful", "event": payload.get("event")},
        headers=FUNCTION_CORS_HEADERS,
    )


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
