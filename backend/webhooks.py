"""Gateway signature checks and webhook processing (server side only)."""

from __future__ import annotations
import hashlib
import hmac
from typing import Any, Optional

import structlog

from checkout import record_payment

logger = structlog.get_logger()

PAID_EVENTS = ("payment.captured", "order.paid")


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_webhook_signature(raw_payload: bytes, signature_header: Optional[str], shared_secret: str) -> bool:
    """Check ``signature_header`` against HMAC-SHA256 of the raw body."""
    if not signature_header or not shared_secret:
        return False
    expected = _hmac_hex(shared_secret, raw_payload)
    return hmac.compare_digest(expected.encode(), signature_header.strip().lower().encode())


def verify_payment_signature(gateway_order_id: str, payment_id: str, signature: str, key_secret: str) -> bool:
    """Check the signature the hosted checkout hands back on success."""
    if not signature or not key_secret:
        return False
    expected = _hmac_hex(key_secret, f"{gateway_order_id}|{payment_id}".encode())
    return hmac.compare_digest(expected.encode(), signature.strip().lower().encode())


def _entity(payload: dict[str, Any], name: str) -> dict[str, Any]:
    node: Any = payload
    for key in ("payload", name, "entity"):
        node = node.get(key) if isinstance(node, dict) else None
    return node if isinstance(node, dict) else {}


async def process_webhook_event(store, payload: dict[str, Any]) -> Optional[dict[str, Any]]:
    """Act on a verified webhook. Returns the updated order, if any."""
    event = payload.get("event")
    if event not in PAID_EVENTS:
        logger.info("webhook_ignored", webhook_event=event)
        return None

    payment = _entity(payload, "payment")
    gateway_order = _entity(payload, "order")
    gateway_order_id = payment.get("order_id") or gateway_order.get("id")
    notes = payment.get("notes") or gateway_order.get("notes") or {}
    if not isinstance(notes, dict):
        notes = {}

    order = None
    if notes.get("order_id"):
        order = await store.get_order(str(notes["order_id"]))
    if order is None and gateway_order_id:
        order = await store.find_order_by_gateway_order(gateway_order_id)
    if order is None:
        logger.warning("webhook_order_not_found", webhook_event=event, gateway_order_id=gateway_order_id)
        return None

    if order.get("status") == "paid":
        logger.info("webhook_order_already_paid", order_id=order["id"])
        return order

    extra = {"razorpay_order_id": gateway_order_id, "payment_source": "webhook"}
    if payment.get("id"):
        extra["razorpay_payment_id"] = payment["id"]
    updated = await record_payment(store, order["id"], extra)
    logger.info("webhook_order_paid", order_id=order["id"], webhook_event=event)
    return updated
