"""CouponUsage model: append-only ledger of coupon redemptions."""

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint, func

from coupon_ledger.core.database import Base
from coupon_ledger.models.shared import UUIDType, generate_uuid


class CouponUsage(Base):
    """One redemption of a coupon against a purchase.

    ``discount_amount`` is copied at redemption time and does not follow later
    edits of the coupon. ``(coupon_id, purchase_id)`` is the redemption's
    idempotency key.
    """

    __tablename__ = "coupon_usages"
    __table_args__ = (
        UniqueConstraint("coupon_id", "purchase_id", name="uq_coupon_usages_coupon_purchase"),
    )

    id = Column(UUIDType, primary_key=True, default=generate_uuid)
    coupon_id = Column(
        UUIDType, ForeignKey("coupons.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    user_id = Column(String(255), nullable=False, index=True)
    purchase_id = Column(String(255), nullable=True, index=True)
    discount_amount = Column(Integer, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
