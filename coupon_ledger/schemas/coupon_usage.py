"""CouponUsage schemas."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class CouponUsageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    coupon_id: UUID
    user_id: str
    purchase_id: str | None = None
    discount_amount: int
    created_at: datetime


class TopCouponResponse(BaseModel):
    coupon_id: UUID
    code: str | None = None
    description: str | None = None
    usage_count: int
    total_discount: int


class CouponUsageStatsResponse(BaseModel):
    """Aggregate redemption statistics across all coupons."""

    total_uses: int
    total_discount_amount: int
    unique_users: int
    unique_coupons: int
    top_coupons: list[TopCouponResponse]
