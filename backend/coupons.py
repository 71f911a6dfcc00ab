"""Coupon lookup, discount computation and admin helpers."""

from __future__ import annotations
import secrets
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog

from cart import percent_of
from errors import CheckoutValidationError, CouponRejectedError, errmsg
from schemas import AppliedCoupon

logger = structlog.get_logger()

# No 0/O, 1/I
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"

CouponLookup = Callable[[str], Awaitable[Optional[dict[str, Any]]]]


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_expired(coupon: dict[str, Any], now: Optional[datetime] = None) -> bool:
    expires_at = _aware(coupon.get("expires_at"))
    if expires_at is None:
        return False
    return expires_at < (now or datetime.now(timezone.utc))


async def apply_coupon(
    lookup: CouponLookup,
    code: Optional[str],
    subtotal: float,
    now: Optional[datetime] = None,
) -> AppliedCoupon:
    """Validate ``code`` against the active coupons and price it on ``subtotal``.

    A failed lookup is reported the same way as an unknown code.
    """
    code = normalize_code(code)
    if not code:
        raise CouponRejectedError(errmsg.COUPON_CODE_REQUIRED)

    try:
        coupon = await lookup(code)
    except Exception as e:
        logger.warning("coupon_lookup_failed", code=code, error=str(e))
        coupon = None

    if not coupon or not coupon.get("is_active"):
        logger.info("coupon_rejected", code=code, reason="invalid")
        raise CouponRejectedError(errmsg.COUPON_INVALID)

    if is_expired(coupon, now):
        logger.info("coupon_rejected", code=code, reason="expired")
        raise CouponRejectedError(errmsg.COUPON_EXPIRED)

    percent = int(coupon["discount_percent"])
    applied = AppliedCoupon(
        code=coupon["code"],
        discount_percent=percent,
        discount_amount=percent_of(subtotal, percent),
    )
    logger.info("coupon_applied", code=applied.code, discount_amount=applied.discount_amount)
    return applied


def remove_coupon() -> int:
    """Discount once no coupon is applied."""
    return 0


def generate_coupon_code(length: int = 8) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def prepare_coupon(data: dict[str, Any]) -> dict[str, Any]:
    """Normalize an admin coupon payload before it is stored."""
    prepared = dict(data)
    if "code" in prepared:
        prepared["code"] = normalize_code(prepared["code"])
        if not prepared["code"]:
            raise CheckoutValidationError(errmsg.FIELD_REQUIRED.format(field="Coupon code"))
    percent = prepared.get("discount_percent")
    if percent is not None and not 1 <= int(percent) <= 100:
        raise CheckoutValidationError(errmsg.COUPON_PERCENT_RANGE)
    if prepared.get("expires_at") is not None:
        prepared["expires_at"] = _aware(prepared["expires_at"])
    return prepared
