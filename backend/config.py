from __future__ import annotations
import os
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
    DATABASE_NAME: str = os.getenv("DATABASE_NAME", "natural_puff")

    # Razorpay: key id is public (sent to the widget), the secrets never leave the server
    RAZORPAY_KEY_ID: str = os.getenv("RAZORPAY_KEY_ID", "")
    RAZORPAY_KEY_SECRET: str = os.getenv("RAZORPAY_KEY_SECRET", "")
    RAZORPAY_WEBHOOK_SECRET: str = os.getenv("RAZORPAY_WEBHOOK_SECRET", "")
    RAZORPAY_API_URL: str = os.getenv("RAZORPAY_API_URL", "https://api.razorpay.com/v1")
    RAZORPAY_CHECKOUT_SCRIPT_URL: str = os.getenv(
        "RAZORPAY_CHECKOUT_SCRIPT_URL", "https://checkout.razorpay.com/v1/checkout.js"
    )
    CREATE_ORDER_FUNCTION_URL: str = os.getenv(
        "CREATE_ORDER_FUNCTION_URL", "http://localhost:8000/api/create-razorpay-order"
    )

    SHIPROCKET_API_URL: str = os.getenv("SHIPROCKET_API_URL", "https://apiv2.shiprocket.in/v1/external")
    SHIPROCKET_TOKEN: str = os.getenv("SHIPROCKET_TOKEN", "")
    PICKUP_LOCATION: str = os.getenv("PICKUP_LOCATION", "Primary")
    PICKUP_PINCODE: str = os.getenv("PICKUP_PINCODE", "800001")

    STORE_NAME: str = os.getenv("STORE_NAME", "Natural Puff")
    BRAND_COLOR: str = os.getenv("BRAND_COLOR", "#167152")
    CURRENCY: str = os.getenv("CURRENCY", "INR")
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")


settings = Settings()
