"""Audit and repair of coupon usage counters against the usage ledger."""

import logging
from dataclasses import dataclass
from uuid import UUID

from sqlalchemy.orm import Session

from coupon_ledger.repositories.base import CouponStore, UsageLedger
from coupon_ledger.repositories.coupon_repository import CouponRepository
from coupon_ledger.repositories.coupon_usage_repository import CouponUsageRepository

logger = logging.getLogger(__name__)

_PAGE_SIZE = 500


@dataclass(frozen=True)
class UsageDiscrepancy:
    """A coupon whose ``used_count`` differs from its committed ledger entries."""

    coupon_id: UUID
    code: str
    used_count: int
    recorded_count: int

    @property
    def drift(self) -> int:
        return self.used_count - self.recorded_count


class ReconciliationService:
    """Detect and repair ``used_count`` drift. The ledger is the source of truth."""

    def __init__(self, coupon_store: CouponStore, usage_ledger: UsageLedger):
        self.coupon_store = coupon_store
        self.usage_ledger = usage_ledger

    @classmethod
    def for_session(cls, db: Session) -> "ReconciliationService":
        return cls(CouponRepository(db), CouponUsageRepository(db))

    def find_inconsistencies(self) -> list[UsageDiscrepancy]:
        """Scan every coupon and report the ones whose counter has drifted."""
        recorded = self.usage_ledger.count_redemptions_by_coupon()
        discrepancies: list[UsageDiscrepancy] = []

        skip = 0
        while True:
            page = self.coupon_store.get_all(skip=skip, limit=_PAGE_SIZE, order_by="created_at:asc")
            for coupon in page:
                recorded_count = recorded.get(coupon.id, 0)
                if coupon.used_count != recorded_count:
                    discrepancies.append(
                        UsageDiscrepancy(
                            coupon_id=coupon.id,
                            code=coupon.code,
                            used_count=coupon.used_count,
                            recorded_count=recorded_count,
                        )
                    )
            if len(page) < _PAGE_SIZE:
                break
            skip += _PAGE_SIZE

        for discrepancy in discrepancies:
            logger.warning(
                "Coupon %s used_count=%d but ledger has %d redemption(s)",
                discrepancy.code,
                discrepancy.used_count,
                discrepancy.recorded_count,
            )
        return discrepancies

    def reconcile(self, coupon_id: UUID) -> UsageDiscrepancy | None:
        """Set a coupon's ``used_count`` to its ledger count.

        Returns:
            The discrepancy that was repaired, or None if the coupon was
            already consistent.

        Raises:
            ValueError: If the coupon does not exist, or the ledger holds more
                redemptions than the coupon's ``usage_limit`` allows.
        """
        coupon = self.coupon_store.get_by_id(coupon_id)
        if coupon is None:
            raise ValueError(f"Coupon {coupon_id} not found")

        recorded_count = self.usage_ledger.count_by_coupon(coupon_id)
        discrepancy = UsageDiscrepancy(
            coupon_id=coupon.id,
            code=coupon.code,
            used_count=coupon.used_count,
            recorded_count=recorded_count,
        )
        if discrepancy.drift == 0:
            return None

        if coupon.usage_limit is not None and recorded_count > coupon.usage_limit:
            raise ValueError(
                f"Ledger holds {recorded_count} redemption(s) but usage_limit is "
                f"{coupon.usage_limit}; raise the limit before reconciling"
            )

        self.coupon_store.set_used_count(coupon_id, recorded_count)
        logger.info(
            "Reconciled coupon %s used_count %d -> %d",
            discrepancy.code,
            discrepancy.used_count,
            recorded_count,
        )
        return discrepancy
