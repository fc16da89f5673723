"""Discount calculation for a coupon against a purchase subtotal.

All amounts are integers in minor currency units. Percentage discounts round
down so totals are reproducible.
"""

from typing import Protocol

from coupon_ledger.models.coupon import DiscountType


class DiscountTerms(Protocol):
    discount_type: str
    discount_value: int
    max_discount: int | None


def calculate_discount(coupon: DiscountTerms, amount: int) -> int:
    """Return the discount for ``amount``, never more than ``amount`` itself.

    Fixed coupons take ``min(discount_value, amount)``. Percentage coupons take
    ``floor(amount * discount_value / 100)``, clamped to ``max_discount`` when
    one is set.
    """
    if amount <= 0:
        return 0

    if DiscountType(coupon.discount_type) == DiscountType.FIXED:
        return min(int(coupon.discount_value), amount)

    discount = amount * int(coupon.discount_value) // 100
    if coupon.max_discount is not None:
        discount = min(discount, int(coupon.max_discount))
    return min(discount, amount)


def final_amount(amount: int, discount_amount: int) -> int:
    """Amount left to pay after a discount."""
    return max(0, amount - discount_amount)
