"""Coupon repository: SQL implementation of ``CouponStore``."""

from uuid import UUID

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from coupon_ledger.core.exceptions import CouponInUseError, DuplicateCodeError
from coupon_ledger.core.sorting import apply_order_by
from coupon_ledger.models.coupon import Coupon
from coupon_ledger.models.coupon_usage import CouponUsage
from coupon_ledger.models.shared import as_utc, utc_now
from coupon_ledger.repositories.base import CouponStore, storage_errors
from coupon_ledger.schemas.coupon import CouponCreate, CouponUpdate, normalize_code

# Columns that may not be cleared through an update
_NON_NULLABLE_FIELDS = ("code", "discount_type", "discount_value", "min_purchase", "is_active")


class CouponRepository(CouponStore):
    """Repository for Coupon model."""

    def __init__(self, db: Session):
        self.db = db

    def get_all(
        self,
        skip: int = 0,
        limit: int = 100,
        is_active: bool | None = None,
        order_by: str | None = None,
    ) -> list[Coupon]:
        """Get all coupons with optional filters."""
        query = self.db.query(Coupon)

        if is_active is not None:
            query = query.filter(Coupon.is_active == is_active)

        query = apply_order_by(query, Coupon, order_by)
        with storage_errors(self.db):
            return query.offset(skip).limit(limit).all()

    def count(self, is_active: bool | None = None) -> int:
        """Count coupons with optional active filter."""
        query = self.db.query(func.count(Coupon.id))
        if is_active is not None:
            query = query.filter(Coupon.is_active == is_active)
        with storage_errors(self.db):
            return query.scalar() or 0

    def get_by_id(self, coupon_id: UUID) -> Coupon | None:
        """Get a coupon by ID, refreshed from the current row."""
        with storage_errors(self.db):
            return (
                self.db.query(Coupon)
                .populate_existing()
                .filter(Coupon.id == coupon_id)
                .first()
            )

    def get_by_code(self, code: str) -> Coupon | None:
        """Get a coupon by code, active or not."""
        with storage_errors(self.db):
            return self.db.query(Coupon).filter(Coupon.code == normalize_code(code)).first()

    def find_active_by_code(self, code: str) -> Coupon | None:
        """Get an active coupon by code (case-insensitive)."""
        with storage_errors(self.db):
            return (
                self.db.query(Coupon)
                .filter(Coupon.code == normalize_code(code), Coupon.is_active.is_(True))
                .first()
            )

    def create(self, data: CouponCreate) -> Coupon:
        """Create a new coupon."""
        if self.get_by_code(data.code):
            raise DuplicateCodeError(data.code)

        now = utc_now()
        coupon = Coupon(
            code=data.code,
            description=data.description,
            discount_type=data.discount_type.value,
            discount_value=data.discount_value,
            min_purchase=data.min_purchase,
            max_discount=data.max_discount,
            usage_limit=data.usage_limit,
            used_count=0,
            is_active=data.is_active,
            valid_from=data.valid_from,
            valid_until=data.valid_until,
            created_at=now,
            updated_at=now,
        )
        with storage_errors(self.db):
            self.db.add(coupon)
            try:
                self.db.commit()
            except IntegrityError as exc:
                self.db.rollback()
                raise DuplicateCodeError(data.code) from exc
            self.db.refresh(coupon)
        return coupon

    def update(self, coupon_id: UUID, data: CouponUpdate) -> Coupon | None:
        """Update a coupon by ID.

        Raises:
            DuplicateCodeError: If the new code belongs to another coupon.
            ValueError: If the change would break the coupon's invariants.
        """
        coupon = self.get_by_id(coupon_id)
        if not coupon:
            return None

        update_data = data.model_dump(exclude_unset=True)
        for key in _NON_NULLABLE_FIELDS:
            if key in update_data and update_data[key] is None:
                del update_data[key]

        if "discount_type" in update_data:
            update_data["discount_type"] = update_data["discount_type"].value

        new_code = update_data.get("code")
        if new_code and new_code != coupon.code:
            other = self.get_by_code(new_code)
            if other is not None and other.id != coupon.id:
                raise DuplicateCodeError(new_code)

        usage_limit = update_data.get("usage_limit", coupon.usage_limit)
        if usage_limit is not None and usage_limit < coupon.used_count:
            raise ValueError(
                f"usage_limit ({usage_limit}) cannot be below used_count ({coupon.used_count})"
            )

        valid_from = update_data.get("valid_from", coupon.valid_from)
        valid_until = update_data.get("valid_until", coupon.valid_until)
        if valid_from and valid_until and as_utc(valid_from) > as_utc(valid_until):
            raise ValueError("valid_from must not be after valid_until")

        for key, value in update_data.items():
            setattr(coupon, key, value)
        coupon.updated_at = utc_now()  # type: ignore[assignment]

        with storage_errors(self.db):
            try:
                self.db.commit()
            except IntegrityError as exc:
                self.db.rollback()
                # Only a code taken since the pre-check is a duplicate
                if new_code:
                    holder = self.get_by_code(new_code)
                    if holder is not None and holder.id != coupon_id:
                        raise DuplicateCodeError(new_code) from exc
                if "ck_coupons_used_count_within_limit" in str(exc.orig):
                    raise ValueError(
                        "usage_limit cannot be below used_count; the coupon was redeemed meanwhile"
                    ) from exc
                raise ValueError(f"Update violates a coupon constraint: {exc.orig}") from exc
            self.db.refresh(coupon)
        return coupon

    def delete(self, coupon_id: UUID) -> bool:
        """Delete a coupon that has never been redeemed."""
        coupon = self.get_by_id(coupon_id)
        if not coupon:
            return False

        with storage_errors(self.db):
            usage_count = (
                self.db.query(func.count(CouponUsage.id))
                .filter(CouponUsage.coupon_id == coupon_id)
                .scalar()
                or 0
            )
            if usage_count:
                raise CouponInUseError(coupon_id, usage_count)

            self.db.delete(coupon)
            self.db.commit()
        return True

    def increment_usage(self, coupon_id: UUID) -> bool:
        """Guarded atomic increment, a single conditional UPDATE."""
        stmt = (
            update(Coupon)
            .where(
                Coupon.id == coupon_id,
                or_(Coupon.usage_limit.is_(None), Coupon.used_count < Coupon.usage_limit),
            )
            .values(used_count=Coupon.used_count + 1, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        with storage_errors(self.db):
            result = self.db.execute(stmt)
            self.db.commit()
        return result.rowcount == 1  # type: ignore[attr-defined]

    def release_usage(self, coupon_id: UUID) -> bool:
        """Atomic decrement, never below zero."""
        stmt = (
            update(Coupon)
            .where(Coupon.id == coupon_id, Coupon.used_count > 0)
            .values(used_count=Coupon.used_count - 1, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        with storage_errors(self.db):
            result = self.db.execute(stmt)
            self.db.commit()
        return result.rowcount == 1  # type: ignore[attr-defined]

    def set_used_count(self, coupon_id: UUID, used_count: int) -> Coupon | None:
        coupon = self.get_by_id(coupon_id)
        if not coupon:
            return None

        coupon.used_count = used_count  # type: ignore[assignment]
        coupon.updated_at = utc_now()  # type: ignore[assignment]
        with storage_errors(self.db):
            self.db.commit()
            self.db.refresh(coupon)
        return coupon
