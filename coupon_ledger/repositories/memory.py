"""In-process implementation of ``CouponStore`` and ``UsageLedger``.

A single lock per store makes the guarded increment atomic within one process.
Suitable for single-process deployments and tests; horizontally scaled
deployments need a shared backend such as ``CouponRepository``.
"""

from __future__ import annotations

from collections.abc import Callable
from threading import Lock
from uuid import UUID

from coupon_ledger.core.exceptions import CouponInUseError, DuplicateCodeError
from coupon_ledger.core.sorting import parse_order_by
from coupon_ledger.models.coupon import Coupon
from coupon_ledger.models.coupon_usage import CouponUsage
from coupon_ledger.models.shared import as_utc, generate_uuid, utc_now
from coupon_ledger.repositories.base import CouponStore, UsageLedger
from coupon_ledger.schemas.coupon import CouponCreate, CouponUpdate, normalize_code

_COUPON_FIELDS = tuple(Coupon.__table__.columns.keys())
_USAGE_FIELDS = tuple(CouponUsage.__table__.columns.keys())
_NON_NULLABLE_FIELDS = ("code", "discount_type", "discount_value", "min_purchase", "is_active")


def _copy_coupon(coupon: Coupon) -> Coupon:
    return Coupon(**{field: getattr(coupon, field) for field in _COUPON_FIELDS})


def _copy_usage(usage: CouponUsage) -> CouponUsage:
    return CouponUsage(**{field: getattr(usage, field) for field in _USAGE_FIELDS})


class InMemoryUsageLedger(UsageLedger):
    def __init__(self) -> None:
        self._records: dict[UUID, CouponUsage] = {}
        self._by_key: dict[tuple[UUID, str], UUID] = {}
        self._lock = Lock()

    def record(
        self,
        coupon_id: UUID,
        user_id: str,
        purchase_id: str | None,
        discount_amount: int,
        redemption_id: UUID | None = None,
    ) -> CouponUsage:
        usage_id = redemption_id or generate_uuid()
        with self._lock:
            if purchase_id is not None and (coupon_id, purchase_id) in self._by_key:
                return _copy_usage(self._records[self._by_key[(coupon_id, purchase_id)]])
            if usage_id in self._records:
                return _copy_usage(self._records[usage_id])

            usage = CouponUsage(
                id=usage_id,
                coupon_id=coupon_id,
                user_id=user_id,
                purchase_id=purchase_id,
                discount_amount=discount_amount,
                created_at=utc_now(),
            )
            self._records[usage_id] = usage
            if purchase_id is not None:
                self._by_key[(coupon_id, purchase_id)] = usage_id
            return _copy_usage(usage)

    def get_by_coupon_and_purchase(self, coupon_id: UUID, purchase_id: str) -> CouponUsage | None:
        with self._lock:
            usage_id = self._by_key.get((coupon_id, purchase_id))
            return _copy_usage(self._records[usage_id]) if usage_id else None

    def has_redeemed(self, coupon_id: UUID, user_id: str) -> bool:
        with self._lock:
            return any(
                u.coupon_id == coupon_id and u.user_id == user_id and u.purchase_id is not None
                for u in self._records.values()
            )

    def find_by_coupon(self, coupon_id: UUID, skip: int = 0, limit: int = 100) -> list[CouponUsage]:
        return self._select(lambda u: u.coupon_id == coupon_id)[skip : skip + limit]

    def find_by_user(self, user_id: str, skip: int = 0, limit: int = 100) -> list[CouponUsage]:
        return self._select(lambda u: u.user_id == user_id)[skip : skip + limit]

    def count_by_coupon(self, coupon_id: UUID) -> int:
        with self._lock:
            return sum(
                1
                for u in self._records.values()
                if u.coupon_id == coupon_id and u.purchase_id is not None
            )

    def count_redemptions_by_coupon(self) -> dict[UUID, int]:
        counts: dict[UUID, int] = {}
        with self._lock:
            for usage in self._records.values():
                if usage.purchase_id is not None:
                    counts[usage.coupon_id] = counts.get(usage.coupon_id, 0) + 1
        return counts

    def references(self, coupon_id: UUID) -> int:
        with self._lock:
            return sum(1 for u in self._records.values() if u.coupon_id == coupon_id)

    def _select(self, predicate: Callable[[CouponUsage], bool]) -> list[CouponUsage]:
        with self._lock:
            matches = [_copy_usage(u) for u in self._records.values() if predicate(u)]
        return sorted(matches, key=lambda u: u.created_at, reverse=True)


class InMemoryCouponStore(CouponStore):
    def __init__(self, ledger: InMemoryUsageLedger | None = None) -> None:
        self._coupons: dict[UUID, Coupon] = {}
        self._lock = Lock()
        # Used to refuse deleting coupons that still have usage records
        self._ledger = ledger

    def find_active_by_code(self, code: str) -> Coupon | None:
        coupon = self._find_by_code(normalize_code(code))
        if coupon is None or not coupon.is_active:
            return None
        return coupon

    def get_by_id(self, coupon_id: UUID) -> Coupon | None:
        with self._lock:
            coupon = self._coupons.get(coupon_id)
            return _copy_coupon(coupon) if coupon else None

    def increment_usage(self, coupon_id: UUID) -> bool:
        with self._lock:
            coupon = self._coupons.get(coupon_id)
            if coupon is None:
                return False
            if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
                return False
            coupon.used_count += 1
            coupon.updated_at = utc_now()
            return True

    def release_usage(self, coupon_id: UUID) -> bool:
        with self._lock:
            coupon = self._coupons.get(coupon_id)
            if coupon is None or coupon.used_count <= 0:
                return False
            coupon.used_count -= 1
            coupon.updated_at = utc_now()
            return True

    def set_used_count(self, coupon_id: UUID, used_count: int) -> Coupon | None:
        with self._lock:
            coupon = self._coupons.get(coupon_id)
            if coupon is None:
                return None
            coupon.used_count = used_count
            coupon.updated_at = utc_now()
            return _copy_coupon(coupon)

    def get_all(
        self,
        skip: int = 0,
        limit: int = 100,
        is_active: bool | None = None,
        order_by: str | None = None,
    ) -> list[Coupon]:
        field, direction = parse_order_by(order_by, _COUPON_FIELDS)
        with self._lock:
            coupons = [
                _copy_coupon(c)
                for c in self._coupons.values()
                if is_active is None or c.is_active == is_active
            ]
        present = [c for c in coupons if getattr(c, field) is not None]
        missing = [c for c in coupons if getattr(c, field) is None]
        present.sort(key=lambda c: getattr(c, field), reverse=direction == "desc")
        # NULLs first ascending, last descending
        ordered = missing + present if direction == "asc" else present + missing
        return ordered[skip : skip + limit]

    def count(self, is_active: bool | None = None) -> int:
        with self._lock:
            return sum(
                1 for c in self._coupons.values() if is_active is None or c.is_active == is_active
            )

    def create(self, data: CouponCreate) -> Coupon:
        now = utc_now()
        with self._lock:
            if any(c.code == data.code for c in self._coupons.values()):
                raise DuplicateCodeError(data.code)
            coupon = Coupon(
                id=generate_uuid(),
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
            self._coupons[coupon.id] = coupon
            return _copy_coupon(coupon)

    def update(self, coupon_id: UUID, data: CouponUpdate) -> Coupon | None:
        update_data = {
            key: value
            for key, value in data.model_dump(exclude_unset=True).items()
            if value is not None or key not in _NON_NULLABLE_FIELDS
        }
        if "discount_type" in update_data:
            update_data["discount_type"] = update_data["discount_type"].value

        with self._lock:
            coupon = self._coupons.get(coupon_id)
            if coupon is None:
                return None

            new_code = update_data.get("code")
            if new_code and any(
                c.code == new_code and c.id != coupon_id for c in self._coupons.values()
            ):
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
            coupon.updated_at = utc_now()
            return _copy_coupon(coupon)

    def delete(self, coupon_id: UUID) -> bool:
        references = self._ledger.references(coupon_id) if self._ledger else 0
        with self._lock:
            if coupon_id not in self._coupons:
                return False
            if references:
                raise CouponInUseError(coupon_id, references)
            del self._coupons[coupon_id]
            return True

    def _find_by_code(self, code: str) -> Coupon | None:
        with self._lock:
            for coupon in self._coupons.values():
                if coupon.code == code:
                    return _copy_coupon(coupon)
        return None
