"""Shiprocket shipping rates and cash-on-delivery fulfillment."""

from __future__ import annotations
import re
import time
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

import httpx
import structlog

from cart import OrderTotals
from config import settings
from errors import CheckoutValidationError, FulfillmentError, errmsg
from schemas import CartLineItem, CourierOption, CustomerInfo

logger = structlog.get_logger()

PINCODE_RE = re.compile(r"^\d{6}$")

# every shipment goes out in the same box
PACKAGE = {"length": 10, "breadth": 10, "height": 10, "weight": 0.5}


def valid_pincode(pincode: str) -> bool:
    return bool(PINCODE_RE.match(pincode or ""))


def build_shipment_payload(
    order_id: str,
    customer: CustomerInfo,
    items: Iterable[CartLineItem],
    totals: OrderTotals,
    courier_code: str,
    pickup_location: str = settings.PICKUP_LOCATION,
) -> dict[str, Any]:
    return {
        "order_db_id": order_id,
        "order_id": f"NP{int(time.time() * 1000)}",
        "order_date": datetime.now(timezone.utc).isoformat(),
        "pickup_location": pickup_location,
        "channel_id": "",
        "comment": f"{settings.STORE_NAME} Order",
        "billing_customer_name": customer.name,
        "billing_last_name": "",
        "billing_address": customer.address,
        "billing_address_2": "",
        "billing_city": customer.city,
        "billing_pincode": customer.pincode,
        "billing_state": customer.state,
        "billing_country": "India",
        "billing_email": customer.email,
        "billing_phone": customer.phone,
        "shipping_is_billing": True,
        "payment_method": "cod",
        "courier_code": courier_code,
        "shipping_charges": totals.shipping_cost,
        "total_discount": totals.discount,
        "sub_total": totals.subtotal,
        **PACKAGE,
        "order_items": [
            {
                "name": item.name,
                "sku": f"ITEM{item.product_id}",
                "units": item.quantity,
                "selling_price": item.price,
                "discount": 0,
                "tax": 0,
            }
            for item in items
        ],
    }


class ShiprocketClient:
    def __init__(
        self,
        api_url: str = settings.SHIPROCKET_API_URL,
        token: str = settings.SHIPROCKET_TOKEN,
        pickup_pincode: str = settings.PICKUP_PINCODE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_url = api_url.rstrip("/")
        self._token = token
        self.pickup_pincode = pickup_pincode
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Authorization": f"Bearer {self._token}"} if self._token else {}
        return httpx.AsyncClient(base_url=self.api_url, headers=headers, transport=self._transport)

    async def serviceability(self, pincode: str, weight: float = PACKAGE["weight"], cod: bool = True) -> list[CourierOption]:
        if not valid_pincode(pincode):
            raise CheckoutValidationError(errmsg.PINCODE_INVALID)
        params = {
            "pickup_postcode": self.pickup_pincode,
            "delivery_postcode": pincode,
            "weight": weight,
            "cod": 1 if cod else 0,
        }
        try:
            async with self._client() as client:
                resp = await client.get("/courier/serviceability/", params=params)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            logger.error("shipping_rates_failed", pincode=pincode, error=str(e))
            raise FulfillmentError(str(e)) from e

        companies = (resp.json().get("data") or {}).get("available_courier_companies") or []
        options = [
            CourierOption(
                courier_code=str(c.get("courier_company_id")),
                name=c.get("courier_name", ""),
                cost=float(c.get("rate") or c.get("freight_charge") or 0),
                etd=c.get("etd"),
            )
            for c in companies
        ]
        logger.info("shipping_rates_fetched", pincode=pincode, couriers=len(options))
        return options

    async def create_order(self, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            async with self._client() as client:
                resp = await client.post("/orders/create/adhoc", json=payload)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise FulfillmentError(str(e)) from e
        logger.info("shipment_created", order_id=payload.get("order_db_id"))
        return resp.json()
