"""CouponUsage repository: SQL implementation of ``UsageLedger``."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coupon_ledger.models.coupon import Coupon
from coupon_ledger.models.coupon_usage import CouponUsage
from coupon_ledger.models.shared import generate_uuid, utc_now
from coupon_ledger.repositories.base import UsageLedger, storage_errors


class CouponUsageRepository(UsageLedger):
    """Repository for CouponUsage model."""

    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, usage_id: UUID) -> CouponUsage | None:
        with storage_errors(self.db):
            return self.db.query(CouponUsage).filter(CouponUsage.id == usage_id).first()

    def get_by_coupon_and_purchase(self, coupon_id: UUID, purchase_id: str) -> CouponUsage | None:
        """Get the redemption recorded for a coupon and purchase."""
        with storage_errors(self.db):
            return (
                self.db.query(CouponUsage)
                .filter(
                    CouponUsage.coupon_id == coupon_id,
                    CouponUsage.purchase_id == purchase_id,
                )
                .first()
            )

    def record(
        self,
        coupon_id: UUID,
        user_id: str,
        purchase_id: str | None,
        discount_amount: int,
        redemption_id: UUID | None = None,
    ) -> CouponUsage:
        """Append a usage record, returning the existing one for a known key."""
        usage_id = redemption_id or generate_uuid()
        if purchase_id is not None:
            existing = self.get_by_coupon_and_purchase(coupon_id, purchase_id)
            if existing is not None:
                return existing

        usage = CouponUsage(
            id=usage_id,
            coupon_id=coupon_id,
            user_id=user_id,
            purchase_id=purchase_id,
            discount_amount=discount_amount,
            created_at=utc_now(),
        )
        with storage_errors(self.db):
            self.db.add(usage)
            try:
                self.db.commit()
            except IntegrityError:
                # Lost an insert race on the same key, or a retried write
                # whose first attempt did commit.
                self.db.rollback()
                existing = None
                if purchase_id is not None:
                    existing = self.get_by_coupon_and_purchase(coupon_id, purchase_id)
                if existing is None:
                    existing = self.get_by_id(usage_id)
                if existing is None:
                    raise
                return existing
            self.db.refresh(usage)
        return usage

    def has_redeemed(self, coupon_id: UUID, user_id: str) -> bool:
        """Check whether a user already has a committed redemption of a coupon."""
        with storage_errors(self.db):
            return (
                self.db.query(CouponUsage.id)
                .filter(
                    CouponUsage.coupon_id == coupon_id,
                    CouponUsage.user_id == user_id,
                    CouponUsage.purchase_id.isnot(None),
                )
                .first()
                is not None
            )

    def find_by_coupon(self, coupon_id: UUID, skip: int = 0, limit: int = 100) -> list[CouponUsage]:
        """Get usage records for a coupon, newest first."""
        with storage_errors(self.db):
            return (
                self.db.query(CouponUsage)
                .filter(CouponUsage.coupon_id == coupon_id)
                .order_by(CouponUsage.created_at.desc())
                .offset(skip)
                .limit(limit)
                .all()
            )

    def find_by_user(self, user_id: str, skip: int = 0, limit: int = 100) -> list[CouponUsage]:
        """Get usage records for a user, newest first."""
        with storage_errors(self.db):
            return (
                self.db.query(CouponUsage)
                .filter(CouponUsage.user_id == user_id)
                .order_by(CouponUsage.created_at.desc())
                .offset(skip)
                .limit(limit)
                .all()
            )

    def count_by_coupon(self, coupon_id: UUID) -> int:
        with storage_errors(self.db):
            return (
                self.db.query(func.count(CouponUsage.id))
                .filter(
                    CouponUsage.coupon_id == coupon_id,
                    CouponUsage.purchase_id.isnot(None),
                )
                .scalar()
                or 0
            )

    def count_redemptions_by_coupon(self) -> dict[UUID, int]:
        with storage_errors(self.db):
            rows = (
                self.db.query(CouponUsage.coupon_id, func.count(CouponUsage.id))
                .filter(CouponUsage.purchase_id.isnot(None))
                .group_by(CouponUsage.coupon_id)
                .all()
            )
        return {coupon_id: int(count) for coupon_id, count in rows}

    def get_stats(self, top: int = 10) -> dict[str, Any]:
        """Aggregate usage statistics plus the most redeemed coupons."""
        with storage_errors(self.db):
            total_uses, total_discount, unique_users, unique_coupons = self.db.query(
                func.count(CouponUsage.id),
                func.coalesce(func.sum(CouponUsage.discount_amount), 0),
                func.count(func.distinct(CouponUsage.user_id)),
                func.count(func.distinct(CouponUsage.coupon_id)),
            ).one()

            usage_count = func.count(CouponUsage.id).label("usage_count")
            top_rows = (
                self.db.query(
                    CouponUsage.coupon_id,
                    Coupon.code,
                    Coupon.description,
                    usage_count,
                    func.coalesce(func.sum(CouponUsage.discount_amount), 0),
                )
                .outerjoin(Coupon, Coupon.id == CouponUsage.coupon_id)
                .group_by(CouponUsage.coupon_id, Coupon.code, Coupon.description)
                .order_by(usage_count.desc(), Coupon.code.asc())
                .limit(top)
                .all()
            )

        return {
            "total_uses": int(total_uses),
            "total_discount_amount": int(total_discount),
            "unique_users": int(unique_users),
            "unique_coupons": int(unique_coupons),
            "top_coupons": [
                {
                    "coupon_id": coupon_id,
                    "code": code,
                    "description": description,
                    "usage_count": int(count),
                    "total_discount": int(discount),
                }
                for coupon_id, code, description, count, discount in top_rows
            ],
        }
