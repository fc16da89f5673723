"""Storage contracts used by the redemption coordinator.

Each backend provides one ``CouponStore`` and one ``UsageLedger``. The only
operation that must be atomic in the backend itself is the guarded
``CouponStore.increment_usage``; everything else may read slightly stale data.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from uuid import UUID

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from coupon_ledger.core.exceptions import StorageUnavailableError
from coupon_ledger.models.coupon import Coupon
from coupon_ledger.models.coupon_usage import CouponUsage
from coupon_ledger.schemas.coupon import CouponCreate, CouponUpdate


@contextmanager
def storage_errors(db: Session) -> Iterator[None]:
    """Roll back and re-raise connectivity failures as ``StorageUnavailableError``."""
    try:
        yield
    except OperationalError as exc:
        db.rollback()
        raise StorageUnavailableError(str(exc.orig or exc)) from exc


class CouponStore(ABC):
    """Coupon definitions and their mutable usage counters."""

    @abstractmethod
    def find_active_by_code(self, code: str) -> Coupon | None:
        """Case-insensitive lookup restricted to active coupons."""

    @abstractmethod
    def get_by_id(self, coupon_id: UUID) -> Coupon | None:
        """Get a coupon by ID regardless of its active flag."""

    @abstractmethod
    def increment_usage(self, coupon_id: UUID) -> bool:
        """Atomically add one to ``used_count`` unless that would exceed ``usage_limit``.

        Returns False when the coupon does not exist or has no slot left.
        """

    @abstractmethod
    def release_usage(self, coupon_id: UUID) -> bool:
        """Atomically subtract one from ``used_count`` if it is positive."""

    @abstractmethod
    def set_used_count(self, coupon_id: UUID, used_count: int) -> Coupon | None:
        """Overwrite ``used_count``. Reserved for reconciliation."""

    @abstractmethod
    def get_all(
        self,
        skip: int = 0,
        limit: int = 100,
        is_active: bool | None = None,
        order_by: str | None = None,
    ) -> list[Coupon]: ...

    @abstractmethod
    def count(self, is_active: bool | None = None) -> int: ...

    @abstractmethod
    def create(self, data: CouponCreate) -> Coupon:
        """Create a coupon. Raises DuplicateCodeError if the code is taken."""

    @abstractmethod
    def update(self, coupon_id: UUID, data: CouponUpdate) -> Coupon | None:
        """Update a coupon. Raises DuplicateCodeError if the new code is taken."""

    @abstractmethod
    def delete(self, coupon_id: UUID) -> bool:
        """Delete a coupon. Raises CouponInUseError while usage records exist."""


class UsageLedger(ABC):
    """Append-only record of redemptions."""

    @abstractmethod
    def record(
        self,
        coupon_id: UUID,
        user_id: str,
        purchase_id: str | None,
        discount_amount: int,
        redemption_id: UUID | None = None,
    ) -> CouponUsage:
        """Append a redemption.

        Idempotent on ``(coupon_id, purchase_id)``: if a record with that key
        exists, it is returned unchanged. Callers compare the returned ``id``
        with ``redemption_id`` to tell their own write from an earlier one.
        """

    @abstractmethod
    def get_by_coupon_and_purchase(self, coupon_id: UUID, purchase_id: str) -> CouponUsage | None: ...

    @abstractmethod
    def has_redeemed(self, coupon_id: UUID, user_id: str) -> bool: ...

    @abstractmethod
    def find_by_coupon(
        self, coupon_id: UUID, skip: int = 0, limit: int = 100
    ) -> list[CouponUsage]: ...

    @abstractmethod
    def find_by_user(self, user_id: str, skip: int = 0, limit: int = 100) -> list[CouponUsage]: ...

    @abstractmethod
    def count_by_coupon(self, coupon_id: UUID) -> int:
        """Number of committed redemptions (non-null purchase) of one coupon."""

    @abstractmethod
    def count_redemptions_by_coupon(self) -> dict[UUID, int]:
        """Number of committed redemptions (non-null purchase) per coupon."""
