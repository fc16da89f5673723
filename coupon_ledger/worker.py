import logging
from typing import Any
from uuid import UUID

from arq import cron

from coupon_ledger.core.database import SessionLocal
from coupon_ledger.services.reconciliation_service import ReconciliationService
from coupon_ledger.tasks import redis_settings

logger = logging.getLogger(__name__)


async def audit_coupon_usage_task(ctx: dict[str, Any]) -> int:
    """Background task: compare every coupon's used_count with its usage ledger.

    Runs hourly. Discrepancies are logged for an operator to reconcile; the
    task does not repair them.
    """
    db = SessionLocal()
    try:
        service = ReconciliationService.for_session(db)
        discrepancies = service.find_inconsistencies()
        if discrepancies:
            logger.warning("Found %d coupon(s) with inconsistent usage counters", len(discrepancies))
        return len(discrepancies)
    finally:
        db.close()


async def reconcile_coupon_task(ctx: dict[str, Any], coupon_id: str) -> bool:
    """Background task: reset one coupon's used_count to its ledger count.

    Args:
        ctx: ARQ worker context.
        coupon_id: UUID string of the coupon to repair.

    Returns:
        True if the counter was changed.
    """
    db = SessionLocal()
    try:
        service = ReconciliationService.for_session(db)
        try:
            discrepancy = service.reconcile(UUID(coupon_id))
        except ValueError as e:
            logger.warning("Cannot reconcile coupon %s: %s", coupon_id, e)
            return False
        return discrepancy is not None
    finally:
        db.close()


class WorkerSettings:
    functions = [
        audit_coupon_usage_task,
        reconcile_coupon_task,
    ]
    cron_jobs = [
        cron(audit_coupon_usage_task, minute={0}),  # hourly
    ]
    redis_settings = redis_settings
