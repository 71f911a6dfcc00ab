from __future__ import annotations
from datetime import datetime
from typing import Any, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field

# Natural Puff schemas
# Each stored class => one collection, lowercased name

PaymentMethod = Literal["cod", "online"]
OrderStatus = Literal["pending", "pending_payment", "paid"]


class Product(BaseModel):
    name: str
    description: Optional[str] = None
    details: Optional[str] = None
    nutritional_info: Optional[str] = None
    price: float = Field(ge=0)
    stock: int = 0
    image_url: Optional[str] = None


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    details: Optional[str] = None
    nutritional_info: Optional[str] = None
    price: Optional[float] = Field(default=None, ge=0)
    stock: Optional[int] = None
    image_url: Optional[str] = None


class CartLineItem(BaseModel):
    product_id: str
    name: str = ""
    price: float = Field(ge=0, default=0)
    quantity: int = Field(ge=1, default=1)
    image_url: Optional[str] = None


class CustomerInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    pincode: str = ""


class Coupon(BaseModel):
    code: str
    discount_percent: int = Field(ge=1, le=100)
    is_active: bool = True
    expires_at: Optional[datetime] = None
    created_by: Optional[str] = None


class CouponUpdate(BaseModel):
    code: Optional[str] = None
    discount_percent: Optional[int] = Field(default=None, ge=1, le=100)
    is_active: Optional[bool] = None
    expires_at: Optional[datetime] = None


class CouponApply(BaseModel):
    code: str
    subtotal: float = Field(ge=0)


class AppliedCoupon(BaseModel):
    code: str
    discount_percent: int
    discount_amount: int


class ShippingSelection(BaseModel):
    courier_code: str = ""
    cost: float = Field(ge=0, default=0)


class CourierOption(BaseModel):
    courier_code: str
    name: str
    cost: float
    etd: Optional[str] = None


class Order(BaseModel):
    user_id: Optional[str] = None
    total_amount: float = Field(ge=0)
    shipping_address: CustomerInfo
    status: OrderStatus
    payment_details: dict[str, Any] = Field(default_factory=dict)


class OrderItem(BaseModel):
    order_id: str
    product_id: str
    quantity: int = Field(ge=1)
    price: float = Field(ge=0)
    product_name: str


class CheckoutRequest(BaseModel):
    items: list[CartLineItem]
    customer: CustomerInfo
    shipping: ShippingSelection = Field(default_factory=ShippingSelection)
    payment_method: PaymentMethod = "cod"
    coupon_code: Optional[str] = None
    user_id: Optional[str] = None


class TotalsOut(BaseModel):
    subtotal: float
    discount: int
    shipping_cost: float
    total: float


class CheckoutResponse(BaseModel):
    state: str
    order_id: Optional[str] = None
    message: str
    redirect: Optional[str] = None
    totals: TotalsOut
    checkout_options: Optional[dict[str, Any]] = None


class PaymentCallback(BaseModel):
    order_id: str
    razorpay_payment_id: str
    razorpay_order_id: str
    razorpay_signature: str


class PaymentFailure(BaseModel):
    razorpay_order_id: str
    description: Optional[str] = None
