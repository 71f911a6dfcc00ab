"""Checkout errors and user-facing message constants."""


class errmsg:
    """Error message constants for the checkout workflow."""

    CART_EMPTY = "Your cart is empty. Add some products first."
    CUSTOMER_INFO_MISSING = "Customer information is missing. Please fill in your details."
    FIELD_REQUIRED = "{field} is required"
    PINCODE_INVALID = "Pincode must be 6 digits"
    EMAIL_INVALID = "Please enter a valid email address."
    PHONE_INVALID = "Please enter a valid phone number."
    SHIPPING_REQUIRED = "Please select a shipping method."
    PAYMENT_METHOD_INVALID = "Unsupported payment method"
    ITEM_NOT_IN_CART = "Item not in cart"

    COUPON_CODE_REQUIRED = "Please enter a coupon code."
    COUPON_INVALID = "The coupon code you entered is invalid or has expired."
    COUPON_EXPIRED = "This coupon has expired."
    COUPON_EXISTS = "A coupon with this code already exists"
    COUPON_PERCENT_RANGE = "Discount must be between 1 and 100 percent"

    ORDER_CREATE_FAILED = "Failed to create order"
    ORDER_NOT_FOUND = "Order not found"
    PAYMENT_CONFIRM_FAILED = "Failed to process payment confirmation."
    GATEWAY_FAILED = "Failed to create order"
    GATEWAY_NOT_CONFIGURED = "Razorpay API keys missing in environment variables"
    SIGNATURE_MISSING = "Missing Razorpay signature"
    SIGNATURE_INVALID = "Invalid signature"
    PAYMENT_ORDER_MISMATCH = "Payment does not belong to this order"
    AMOUNT_INVALID = "amount must be a positive integer in paise"
    PAYLOAD_INVALID = "Invalid payload"
    WEBHOOK_SECRET_MISSING = "Razorpay webhook secret is not configured"

    ORDER_PLACED_COD = "Your order has been placed. We'll ship it soon!"
    ORDER_PLACED_COD_SHIPPING_ISSUE = (
        "Your order has been placed, but there was an issue with the shipping system. "
        "We'll contact you soon."
    )
    ORDER_PLACED_AWAITING_PAYMENT = "Your order has been created. Complete the payment to confirm it."
    ORDER_PLACED_PAY_LATER = (
        "Your order has been created but payment couldn't be initialized. "
        "You can pay later from your order history."
    )
    ORDER_PLACED_GATEWAY_ISSUE = (
        "Your order has been created, but there was an issue with the payment system. You can pay later."
    )


class CheckoutError(Exception):
    """Base class for checkout workflow failures."""


class CheckoutValidationError(CheckoutError):
    """Input was rejected before any network call."""


class InvalidTransitionError(CheckoutError):
    """The checkout session is not in a state that allows the operation."""


class CouponRejectedError(CheckoutError):
    """Coupon code could not be applied."""


class StoreError(CheckoutError):
    """Persistence call failed."""


class GatewayError(CheckoutError):
    """Payment gateway or its server-side order function failed."""

    def __init__(self, message: str, description: str | None = None):
        super().__init__(description or message)
        self.description = description


class FulfillmentError(CheckoutError):
    """Shipping collaborator call failed."""
