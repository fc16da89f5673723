"""Exceptions raised by coupon stores, usage ledgers and the redemption coordinator.

Expected business outcomes of a redemption attempt (expired code, limit hit,
and so on) are not exceptions; they come back from
``RedemptionCoordinator.evaluate`` as ``Rejected`` values.
"""

from uuid import UUID


class CouponLedgerError(Exception):
    """Base class for coupon ledger errors."""


class DuplicateCodeError(CouponLedgerError):
    """A coupon with the same code already exists."""

    def __init__(self, code: str):
        super().__init__(f"Coupon with code '{code}' already exists")
        self.code = code


class CouponInUseError(CouponLedgerError):
    """A coupon cannot be deleted while usage records reference it."""

    def __init__(self, coupon_id: UUID, usage_count: int):
        super().__init__(
            f"Coupon {coupon_id} has {usage_count} recorded usage(s); deactivate it instead"
        )
        self.coupon_id = coupon_id
        self.usage_count = usage_count


class StorageUnavailableError(CouponLedgerError):
    """The backing store could not be reached."""


class LedgerInconsistencyError(CouponLedgerError):
    """A usage counter was incremented but its ledger entry could not be settled.

    Requires manual reconciliation; see ``ReconciliationService``.
    """

    def __init__(self, coupon_id: UUID, purchase_id: str, reason: str):
        super().__init__(
            f"Usage counter for coupon {coupon_id} was incremented for purchase "
            f"'{purchase_id}' but the ledger entry could not be recorded: {reason}"
        )
        self.coupon_id = coupon_id
        self.purchase_id = purchase_id
