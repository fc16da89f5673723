"""Coupon API endpoints: admin CRUD plus validate/apply for checkout."""

import math
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sqlalchemy.orm import Session

from coupon_ledger.core.auth import require_admin
from coupon_ledger.core.config import settings
from coupon_ledger.core.database import get_db
from coupon_ledger.core.exceptions import (
    CouponInUseError,
    DuplicateCodeError,
    LedgerInconsistencyError,
)
from coupon_ledger.core.rate_limiter import RateLimiter
from coupon_ledger.models.coupon import Coupon
from coupon_ledger.models.coupon_usage import CouponUsage
from coupon_ledger.repositories.coupon_repository import CouponRepository
from coupon_ledger.repositories.coupon_usage_repository import CouponUsageRepository
from coupon_ledger.schemas.coupon import (
    ApplyCouponRequest,
    CouponCreate,
    CouponEvaluationResponse,
    CouponResponse,
    CouponUpdate,
    UsageDiscrepancyResponse,
    ValidateCouponRequest,
)
from coupon_ledger.schemas.coupon_usage import CouponUsageResponse
from coupon_ledger.services.reconciliation_service import ReconciliationService
from coupon_ledger.services.redemption_coordinator import (
    EvaluationResult,
    Rejected,
    RejectionReason,
    RedemptionCoordinator,
)

router = APIRouter()

# Module-level rate limiter for code checks, keyed by client address
coupon_check_rate_limiter = RateLimiter(
    max_requests=settings.RATE_LIMIT_COUPON_CHECKS_PER_MINUTE,
    window_seconds=60,
)

_REJECTION_STATUS = {
    RejectionReason.COUPON_NOT_FOUND: 404,
    RejectionReason.REDEMPTION_IN_PROGRESS: 409,
    RejectionReason.STORAGE_UNAVAILABLE: 503,
}


def _check_rate_limit(request: Request) -> None:
    """Dependency that limits validate/apply calls per client."""
    key = request.client.host if request.client else "anonymous"
    if not coupon_check_rate_limiter.is_allowed(key):
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded. Maximum "
            f"{coupon_check_rate_limiter.max_requests} coupon checks per minute.",
            headers={"Retry-After": str(math.ceil(coupon_check_rate_limiter.retry_after(key)))},
        )


def _to_response(outcome: EvaluationResult | Rejected) -> CouponEvaluationResponse:
    if isinstance(outcome, Rejected):
        raise HTTPException(
            status_code=_REJECTION_STATUS.get(outcome.reason, 400),
            detail=outcome.message,
            headers={"X-Rejection-Reason": outcome.reason.value},
        )
    return CouponEvaluationResponse(
        valid=True,
        coupon_id=outcome.coupon_id,
        code=outcome.code,
        description=outcome.description,
        original_amount=outcome.original_amount,
        discount_amount=outcome.discount_amount,
        final_amount=outcome.final_amount,
        usage_recorded=outcome.usage_recorded,
    )


@router.post(
    "/validate",
    response_model=CouponEvaluationResponse,
    summary="Validate coupon",
    dependencies=[Depends(_check_rate_limit)],
    responses={
        400: {"description": "Coupon does not apply to this purchase"},
        404: {"description": "Invalid or expired coupon code"},
        429: {"description": "Rate limit exceeded"},
        503: {"description": "Coupon store unavailable"},
    },
)
async def validate_coupon(
    data: ValidateCouponRequest,
    db: Session = Depends(get_db),
) -> CouponEvaluationResponse:
    """Preview the discount a code gives on an amount. Never records usage."""
    coordinator = RedemptionCoordinator.for_session(db)
    return _to_response(coordinator.evaluate(data.code, data.amount, user_id=data.user_id))


@router.post(
    "/apply",
    response_model=CouponEvaluationResponse,
    summary="Apply coupon to purchase",
    dependencies=[Depends(_check_rate_limit)],
    responses={
        400: {"description": "Coupon does not apply to this purchase"},
        404: {"description": "Invalid or expired coupon code"},
        429: {"description": "Rate limit exceeded"},
        409: {"description": "Redemption for this purchase still in progress, retry"},
        500: {"description": "Usage counter and ledger are inconsistent"},
        503: {"description": "Coupon store unavailable"},
    },
)
def apply_coupon(
    data: ApplyCouponRequest,
    db: Session = Depends(get_db),
) -> CouponEvaluationResponse:
    """Redeem a code for a purchase.

    With ``purchase_id`` the redemption is recorded once; repeating the call for
    the same purchase returns the recorded discount. Without it, this is a
    preview.

    Must stay sync: ledger retry backoff blocks the calling thread.
    """
    coordinator = RedemptionCoordinator.for_session(db)
    try:
        outcome = coordinator.evaluate(
            data.code, data.amount, user_id=data.user_id, purchase_id=data.purchase_id
        )
    except LedgerInconsistencyError as e:
        raise HTTPException(status_code=500, detail=str(e)) from e
    return _to_response(outcome)


@router.post(
    "/",
    response_model=CouponResponse,
    status_code=201,
    summary="Create coupon",
    dependencies=[Depends(require_admin)],
    responses={
        401: {"description": "Unauthorized"},
        409: {"description": "Coupon with this code already exists"},
        422: {"description": "Validation error"},
    },
)
async def create_coupon(
    data: CouponCreate,
    db: Session = Depends(get_db),
) -> Coupon:
    """Create a new coupon."""
    repo = CouponRepository(db)
    try:
        return repo.create(data)
    except DuplicateCodeError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None


@router.get(
    "/",
    response_model=list[CouponResponse],
    summary="List coupons",
    dependencies=[Depends(require_admin)],
    responses={401: {"description": "Unauthorized"}},
)
async def list_coupons(
    response: Response,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    order_by: str | None = Query(default=None),
    is_active: bool | None = None,
    db: Session = Depends(get_db),
) -> list[Coupon]:
    """List coupons with optional active filter."""
    repo = CouponRepository(db)
    response.headers["X-Total-Count"] = str(repo.count(is_active=is_active))
    return repo.get_all(skip=skip, limit=limit, is_active=is_active, order_by=order_by)


@router.get(
    "/{coupon_id}",
    response_model=CouponResponse,
    summary="Get coupon",
    dependencies=[Depends(require_admin)],
    responses={
        401: {"description": "Unauthorized"},
        404: {"description": "Coupon not found"},
    },
)
async def get_coupon(
    coupon_id: UUID,
    db: Session = Depends(get_db),
) -> Coupon:
    """Get a coupon by ID."""
    coupon = CouponRepository(db).get_by_id(coupon_id)
    if not coupon:
        raise HTTPException(status_code=404, detail="Coupon not found")
    return coupon


@router.put(
    "/{coupon_id}",
    response_model=CouponResponse,
    summary="Update coupon",
    dependencies=[Depends(require_admin)],
    responses={
        400: {"description": "Update would break coupon invariants"},
        401: {"description": "Unauthorized"},
        404: {"description": "Coupon not found"},
        409: {"description": "Coupon with this code already exists"},
        422: {"description": "Validation error"},
    },
)
async def update_coupon(
    coupon_id: UUID,
    data: CouponUpdate,
    db: Session = Depends(get_db),
) -> Coupon:
    """Update a coupon. ``used_count`` cannot be changed here."""
    repo = CouponRepository(db)
    try:
        coupon = repo.update(coupon_id, data)
    except DuplicateCodeError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from None
    if not coupon:
        raise HTTPException(status_code=404, detail="Coupon not found")
    return coupon


@router.delete(
    "/{coupon_id}",
    status_code=204,
    summary="Delete coupon",
    dependencies=[Depends(require_admin)],
    responses={
        401: {"description": "Unauthorized"},
        404: {"description": "Coupon not found"},
        409: {"description": "Coupon has recorded usage"},
    },
)
async def delete_coupon(
    coupon_id: UUID,
    db: Session = Depends(get_db),
) -> None:
    """Delete a coupon that has never been redeemed."""
    repo = CouponRepository(db)
    try:
        deleted = repo.delete(coupon_id)
    except CouponInUseError as e:
        raise HTTPException(status_code=409, detail=str(e)) from None
    if not deleted:
        raise HTTPException(status_code=404, detail="Coupon not found")


@router.get(
    "/{coupon_id}/usages",
    response_model=list[CouponUsageResponse],
    summary="List coupon usages",
    dependencies=[Depends(require_admin)],
    responses={
        401: {"description": "Unauthorized"},
        404: {"description": "Coupon not found"},
    },
)
async def list_coupon_usages(
    coupon_id: UUID,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[CouponUsage]:
    """Redemption history of one coupon, newest first."""
    if not CouponRepository(db).get_by_id(coupon_id):
        raise HTTPException(status_code=404, detail="Coupon not found")
    return CouponUsageRepository(db).find_by_coupon(coupon_id, skip=skip, limit=limit)


@router.post(
    "/{coupon_id}/reconcile",
    response_model=UsageDiscrepancyResponse | None,
    summary="Reconcile coupon usage counter",
    dependencies=[Depends(require_admin)],
    responses={
        400: {"description": "Ledger exceeds usage limit"},
        401: {"description": "Unauthorized"},
        404: {"description": "Coupon not found"},
    },
)
async def reconcile_coupon(
    coupon_id: UUID,
    db: Session = Depends(get_db),
) -> UsageDiscrepancyResponse | None:
    """Reset ``used_count`` to the number of recorded redemptions.

    Returns the repaired discrepancy, or ``null`` if the coupon was consistent.
    """
    service = ReconciliationService.for_session(db)
    try:
        discrepancy = service.reconcile(coupon_id)
    except ValueError as e:
        detail = str(e)
        if "not found" in detail:
            raise HTTPException(status_code=404, detail=detail) from None
        raise HTTPException(status_code=400, detail=detail) from None
    if discrepancy is None:
        return None
    return UsageDiscrepancyResponse(
        coupon_id=discrepancy.coupon_id,
        code=discrepancy.code,
        used_count=discrepancy.used_count,
        recorded_count=discrepancy.recorded_count,
    )
