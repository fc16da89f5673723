"""Coupon redemption: validate a code against a purchase and commit it exactly once.

Checks run in a fixed order and the first failure wins: lookup, validity
window, usage limit, minimum purchase, and (when the per-user policy is on)
prior redemption by the same user. Everything before the commit is a read and
may be stale; the guarded ``CouponStore.increment_usage`` is the real
enforcement point for ``usage_limit``.

After the increment has committed, the ledger write must follow. It is retried
with exponential backoff on ``StorageUnavailableError`` and keyed by a
redemption id generated here, so a retry of a write that did land is
recognised. If it still cannot be recorded, ``LedgerInconsistencyError`` is
raised for manual reconciliation.

A committing request refused by the limit first waits for the counter and the
ledger to agree, since the missing slot may be its own purchase still being
written.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TypeVar
from uuid import UUID

from sqlalchemy.orm import Session

from coupon_ledger.core.config import settings
from coupon_ledger.core.exceptions import LedgerInconsistencyError, StorageUnavailableError
from coupon_ledger.models.coupon import Coupon
from coupon_ledger.models.coupon_usage import CouponUsage
from coupon_ledger.models.shared import as_utc, generate_uuid, utc_now
from coupon_ledger.repositories.base import CouponStore, UsageLedger
from coupon_ledger.repositories.coupon_repository import CouponRepository
from coupon_ledger.repositories.coupon_usage_repository import CouponUsageRepository
from coupon_ledger.services.discount import calculate_discount, final_amount

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RejectionReason(str, Enum):
    COUPON_NOT_FOUND = "coupon_not_found"
    NOT_YET_VALID = "not_yet_valid"
    EXPIRED = "expired"
    USAGE_LIMIT_REACHED = "usage_limit_reached"
    BELOW_MINIMUM_PURCHASE = "below_minimum_purchase"
    ALREADY_REDEEMED = "already_redeemed"
    REDEMPTION_IN_PROGRESS = "redemption_in_progress"
    STORAGE_UNAVAILABLE = "storage_unavailable"


@dataclass(frozen=True)
class EvaluationResult:
    """A coupon that applies to the purchase."""

    coupon_id: UUID
    code: str
    original_amount: int
    discount_amount: int
    final_amount: int
    usage_recorded: bool
    description: str | None = None
    usage_id: UUID | None = None
    valid: bool = True


@dataclass(frozen=True)
class Rejected:
    """A coupon that does not apply. Nothing was changed."""

    reason: RejectionReason
    message: str
    valid: bool = False


class RedemptionCoordinator:
    """Validate → compute → commit for coupon codes, over any storage backend."""

    def __init__(
        self,
        coupon_store: CouponStore,
        usage_ledger: UsageLedger,
        *,
        clock: Callable[[], datetime] = utc_now,
        id_factory: Callable[[], UUID] = generate_uuid,
        one_redemption_per_user: bool | None = None,
        max_ledger_attempts: int | None = None,
        backoff_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.coupon_store = coupon_store
        self.usage_ledger = usage_ledger
        self.clock = clock
        self.id_factory = id_factory
        self.one_redemption_per_user = (
            settings.ONE_REDEMPTION_PER_USER
            if one_redemption_per_user is None
            else one_redemption_per_user
        )
        self.max_ledger_attempts = max(
            1,
            settings.LEDGER_WRITE_MAX_ATTEMPTS if max_ledger_attempts is None else max_ledger_attempts,
        )
        self.backoff_seconds = (
            settings.LEDGER_WRITE_BACKOFF_SECONDS if backoff_seconds is None else backoff_seconds
        )
        self.sleep = sleep

    @classmethod
    def for_session(cls, db: Session, **kwargs: object) -> "RedemptionCoordinator":
        """Build a coordinator backed by the SQL repositories."""
        return cls(CouponRepository(db), CouponUsageRepository(db), **kwargs)  # type: ignore[arg-type]

    def evaluate(
        self,
        code: str,
        amount: int,
        user_id: str | None = None,
        purchase_id: str | None = None,
    ) -> EvaluationResult | Rejected:
        """Evaluate a coupon code for a purchase amount.

        Without ``purchase_id`` this is a preview and never mutates state. With
        ``purchase_id`` a successful evaluation is committed once; repeating the
        call for the same purchase returns the recorded result.

        Raises:
            ValueError: If ``amount`` is negative or ``purchase_id`` is given
                without ``user_id``.
            LedgerInconsistencyError: If the usage counter was incremented but
                the ledger entry could not be settled.
        """
        if amount < 0:
            raise ValueError("amount must be non-negative")
        if purchase_id is not None and not user_id:
            raise ValueError("user_id is required to commit a redemption")

        try:
            return self._evaluate(code, amount, user_id, purchase_id)
        except StorageUnavailableError as exc:
            logger.warning("Coupon store unavailable while evaluating '%s': %s", code, exc)
            return Rejected(
                RejectionReason.STORAGE_UNAVAILABLE,
                "Coupon service temporarily unavailable",
            )

    def _evaluate(
        self,
        code: str,
        amount: int,
        user_id: str | None,
        purchase_id: str | None,
    ) -> EvaluationResult | Rejected:
        coupon = self.coupon_store.find_active_by_code(code)
        if coupon is None:
            return Rejected(RejectionReason.COUPON_NOT_FOUND, "Invalid or expired coupon code")

        if purchase_id is not None:
            prior = self.usage_ledger.get_by_coupon_and_purchase(coupon.id, purchase_id)
            if prior is not None:
                return self._replay(coupon, amount, prior)

        rejection = self._check_eligibility(coupon, amount, user_id)
        if rejection is not None:
            if purchase_id is not None and rejection.reason is RejectionReason.USAGE_LIMIT_REACHED:
                return self._limit_reached(coupon, amount, purchase_id)
            return rejection

        discount = calculate_discount(coupon, amount)
        if purchase_id is None:
            return self._result(coupon, amount, discount, usage_recorded=False)

        return self._commit(coupon, amount, discount, user_id, purchase_id)  # type: ignore[arg-type]

    def _check_eligibility(
        self, coupon: Coupon, amount: int, user_id: str | None
    ) -> Rejected | None:
        now = self.clock()
        if coupon.valid_from is not None and now < as_utc(coupon.valid_from):
            return Rejected(RejectionReason.NOT_YET_VALID, "Coupon is not yet valid")
        if coupon.valid_until is not None and now > as_utc(coupon.valid_until):
            return Rejected(RejectionReason.EXPIRED, "Coupon has expired")

        # Fast path only; increment_usage enforces the limit
        if coupon.usage_limit is not None and coupon.used_count >= coupon.usage_limit:
            return Rejected(RejectionReason.USAGE_LIMIT_REACHED, "Coupon usage limit reached")

        if amount < coupon.min_purchase:
            return Rejected(
                RejectionReason.BELOW_MINIMUM_PURCHASE,
                f"Minimum purchase of {coupon.min_purchase} required",
            )

        if (
            self.one_redemption_per_user
            and user_id
            and self.usage_ledger.has_redeemed(coupon.id, user_id)
        ):
            return Rejected(
                RejectionReason.ALREADY_REDEEMED, "Coupon already redeemed by this user"
            )
        return None

    def _commit(
        self,
        coupon: Coupon,
        amount: int,
        discount: int,
        user_id: str,
        purchase_id: str,
    ) -> EvaluationResult | Rejected:
        # Committing expires ORM state; keep what the result needs
        ref = _CouponRef(coupon.id, coupon.code, coupon.description)

        if not self.coupon_store.increment_usage(ref.id):
            logger.warning(
                "Coupon %s has no redemption slot left for purchase %s", ref.code, purchase_id
            )
            return self._limit_reached(ref, amount, purchase_id)

        # From here on the counter is committed and the ledger must follow
        redemption_id = self.id_factory()
        usage = self._settle(
            lambda: self.usage_ledger.record(
                ref.id, user_id, purchase_id, discount, redemption_id=redemption_id
            ),
            ref,
            purchase_id,
            "ledger write",
        )

        if usage.id != redemption_id:
            # A concurrent request for the same purchase recorded first
            released = self._settle(
                lambda: self.coupon_store.release_usage(ref.id),
                ref,
                purchase_id,
                "counter release",
            )
            if not released:
                logger.error(
                    "Could not release duplicate increment on coupon %s for purchase %s",
                    ref.code,
                    purchase_id,
                )
                raise LedgerInconsistencyError(
                    ref.id, purchase_id, "duplicate increment could not be released"
                )
            return self._replay(ref, amount, usage)

        logger.info(
            "Redeemed coupon %s for purchase %s (user %s, discount %d)",
            ref.code,
            purchase_id,
            user_id,
            discount,
        )
        return self._result(ref, amount, discount, usage_recorded=True, usage_id=usage.id)

    def _limit_reached(
        self, coupon: "Coupon | _CouponRef", amount: int, purchase_id: str
    ) -> EvaluationResult | Rejected:
        """Decide a committing request that found no slot left.

        The slot may have been taken by a concurrent request for this same
        purchase whose ledger write has not landed yet. While the counter is
        ahead of the ledger that cannot be ruled out, so wait for it to settle
        and replay if the purchase shows up. A counter that stays ahead yields a
        retryable ``REDEMPTION_IN_PROGRESS`` instead of a terminal rejection.
        """
        coupon_id = coupon.id
        delay = self.backoff_seconds
        for attempt in range(1, self.max_ledger_attempts + 1):
            # Read the counts before the purchase key; the ledger is append-only
            current = self.coupon_store.get_by_id(coupon_id)
            if current is None:
                return Rejected(RejectionReason.COUPON_NOT_FOUND, "Invalid or expired coupon code")
            settled = current.used_count <= self.usage_ledger.count_by_coupon(coupon_id)

            prior = self.usage_ledger.get_by_coupon_and_purchase(coupon_id, purchase_id)
            if prior is not None:
                return self._replay(coupon, amount, prior)
            if settled:
                return Rejected(RejectionReason.USAGE_LIMIT_REACHED, "Coupon usage limit reached")

            if attempt < self.max_ledger_attempts:
                self.sleep(delay)
                delay *= 2

        logger.warning(
            "Coupon %s has unsettled redemptions; purchase %s must retry",
            coupon.code,
            purchase_id,
        )
        return Rejected(
            RejectionReason.REDEMPTION_IN_PROGRESS,
            "Coupon redemption in progress, retry shortly",
        )

    def _settle(
        self,
        operation: Callable[[], T],
        ref: "_CouponRef",
        purchase_id: str,
        step: str,
    ) -> T:
        """Run a post-increment step, retrying while the store is unavailable."""
        delay = self.backoff_seconds
        attempt = 1
        while True:
            try:
                return operation()
            except StorageUnavailableError as exc:
                if attempt >= self.max_ledger_attempts:
                    logger.exception(
                        "Giving up on %s for coupon %s purchase %s after %d attempts",
                        step,
                        ref.code,
                        purchase_id,
                        attempt,
                    )
                    raise LedgerInconsistencyError(ref.id, purchase_id, str(exc)) from exc
                logger.warning(
                    "%s for coupon %s purchase %s failed (attempt %d/%d), retrying in %.2fs",
                    step.capitalize(),
                    ref.code,
                    purchase_id,
                    attempt,
                    self.max_ledger_attempts,
                    delay,
                )
            except Exception as exc:
                logger.exception(
                    "Unexpected failure during %s for coupon %s purchase %s",
                    step,
                    ref.code,
                    purchase_id,
                )
                raise LedgerInconsistencyError(ref.id, purchase_id, repr(exc)) from exc
            self.sleep(delay)
            delay *= 2
            attempt += 1

    def _replay(
        self, coupon: "Coupon | _CouponRef", amount: int, usage: CouponUsage
    ) -> EvaluationResult:
        discount = int(usage.discount_amount)
        return self._result(coupon, amount, discount, usage_recorded=True, usage_id=usage.id)

    @staticmethod
    def _result(
        coupon: "Coupon | _CouponRef",
        amount: int,
        discount: int,
        *,
        usage_recorded: bool,
        usage_id: UUID | None = None,
    ) -> EvaluationResult:
        return EvaluationResult(
            coupon_id=coupon.id,
            code=coupon.code,
            original_amount=amount,
            discount_amount=discount,
            final_amount=final_amount(amount, discount),
            usage_recorded=usage_recorded,
            description=coupon.description,
            usage_id=usage_id,
        )


@dataclass(frozen=True)
class _CouponRef:
    id: UUID
    code: str
    description: str | None
