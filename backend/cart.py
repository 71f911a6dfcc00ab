"""Session cart and order totals."""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional

from errors import CheckoutValidationError, errmsg
from schemas import AppliedCoupon, CartLineItem


def round_half_up(value: float) -> int:
    """Round to the nearest whole currency unit, halves away from zero."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def percent_of(subtotal: float, percent: int) -> int:
    return round_half_up(subtotal * percent / 100)


class Cart:
    def __init__(self, items: Optional[Iterable[CartLineItem]] = None):
        self._items: dict[str, CartLineItem] = {}
        for item in items or []:
            self.add(item)

    @property
    def items(self) -> list[CartLineItem]:
        return list(self._items.values())

    @property
    def is_empty(self) -> bool:
        return not self._items

    @property
    def subtotal(self) -> float:
        return subtotal_of(self._items.values())

    def add(self, item: CartLineItem) -> None:
        existing = self._items.get(item.product_id)
        if existing is not None:
            item = existing.model_copy(update={"quantity": existing.quantity + item.quantity})
        self._items[item.product_id] = item

    def update_quantity(self, product_id: str, quantity: int) -> None:
        item = self._items.get(product_id)
        if item is None:
            raise CheckoutValidationError(errmsg.ITEM_NOT_IN_CART)
        self._items[product_id] = item.model_copy(update={"quantity": max(1, quantity)})

    def change_quantity(self, product_id: str, delta: int) -> None:
        item = self._items.get(product_id)
        if item is None:
            raise CheckoutValidationError(errmsg.ITEM_NOT_IN_CART)
        self.update_quantity(product_id, item.quantity + delta)

    def remove(self, product_id: str) -> None:
        self._items.pop(product_id, None)

    def clear(self) -> None:
        self._items.clear()


def subtotal_of(items: Iterable[CartLineItem]) -> float:
    return sum(item.price * item.quantity for item in items)


@dataclass(frozen=True)
class OrderTotals:
    subtotal: float
    discount: int
    shipping_cost: float
    total: float


def calculate_totals(
    items: Iterable[CartLineItem],
    coupon: Optional[AppliedCoupon] = None,
    shipping_cost: float = 0,
) -> OrderTotals:
    """Derive subtotal, discount, shipping and final total.

    The discount is recomputed from the coupon percentage against the current
    subtotal, so it can never exceed it and the total is never negative.
    """
    subtotal = subtotal_of(items)
    discount = percent_of(subtotal, coupon.discount_percent) if coupon else 0
    return OrderTotals(
        subtotal=subtotal,
        discount=discount,
        shipping_cost=shipping_cost,
        total=subtotal - discount + shipping_cost,
    )
