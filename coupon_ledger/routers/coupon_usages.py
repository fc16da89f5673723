"""Coupon usage reporting endpoints."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from coupon_ledger.core.auth import require_admin
from coupon_ledger.core.database import get_db
from coupon_ledger.models.coupon_usage import CouponUsage
from coupon_ledger.repositories.coupon_usage_repository import CouponUsageRepository
from coupon_ledger.schemas.coupon import UsageDiscrepancyResponse
from coupon_ledger.schemas.coupon_usage import CouponUsageResponse, CouponUsageStatsResponse
from coupon_ledger.services.reconciliation_service import ReconciliationService

router = APIRouter()


@router.get(
    "/stats",
    response_model=CouponUsageStatsResponse,
    summary="Coupon usage statistics",
    dependencies=[Depends(require_admin)],
    responses={401: {"description": "Unauthorized"}},
)
async def get_usage_stats(
    top: int = Query(default=10, ge=1, le=100),
    db: Session = Depends(get_db),
) -> CouponUsageStatsResponse:
    """Totals across all redemptions plus the most used coupons."""
    stats = CouponUsageRepository(db).get_stats(top=top)
    return CouponUsageStatsResponse.model_validate(stats)


@router.get(
    "/users/{user_id}",
    response_model=list[CouponUsageResponse],
    summary="User coupon usage history",
)
async def list_user_usages(
    user_id: str,
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    db: Session = Depends(get_db),
) -> list[CouponUsage]:
    """Redemptions made by one user, newest first."""
    return CouponUsageRepository(db).find_by_user(user_id, skip=skip, limit=limit)


@router.get(
    "/inconsistencies",
    response_model=list[UsageDiscrepancyResponse],
    summary="Usage counter inconsistencies",
    dependencies=[Depends(require_admin)],
    responses={401: {"description": "Unauthorized"}},
)
async def list_inconsistencies(
    db: Session = Depends(get_db),
) -> list[UsageDiscrepancyResponse]:
    """Coupons whose ``used_count`` disagrees with the usage ledger."""
    discrepancies = ReconciliationService.for_session(db).find_inconsistencies()
    return [
        UsageDiscrepancyResponse(
            coupon_id=d.coupon_id,
            code=d.code,
            used_count=d.used_count,
            recorded_count=d.recorded_count,
        )
        for d in discrepancies
    ]
