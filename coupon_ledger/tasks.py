"""Enqueue helpers for the jobs registered in ``coupon_ledger.worker``."""

from typing import Any
from uuid import UUID

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.jobs import Job

from coupon_ledger.core.config import settings

redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)


async def get_redis_pool() -> ArqRedis:
    return await create_pool(redis_settings)


async def enqueue_task(task_name: str, *args: Any, **kwargs: Any) -> Job | None:
    """Enqueue ``task_name`` on a short-lived pool.

    Returns None when arq declines the job because one with the same
    ``_job_id`` is already queued.
    """
    pool = await get_redis_pool()
    try:
        return await pool.enqueue_job(task_name, *args, **kwargs)
    finally:
        await pool.close()


async def enqueue_usage_audit() -> Job | None:
    """Run the usage counter audit now instead of waiting for the hourly cron."""
    return await enqueue_task("audit_coupon_usage_task")


async def enqueue_reconcile_coupon(coupon_id: UUID | str) -> Job | None:
    """Queue a repair of one coupon's ``used_count`` from its ledger."""
    return await enqueue_task("reconcile_coupon_task", str(coupon_id))
