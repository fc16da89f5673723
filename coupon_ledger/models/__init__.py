from coupon_ledger.models.coupon import Coupon, DiscountType
from coupon_ledger.models.coupon_usage import CouponUsage

__all__ = [
    "Coupon",
    "CouponUsage",
    "DiscountType",
]
