from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from finsight.core.config import get_settings
from finsight.core.logging import configure_logging
from finsight.persistence.db import SessionLocal, engine
from finsight.services.audit import ensure_system_actor
from finsight.services.maintenance import run_monthly_audit, run_quota_resets, run_retention_sweep
from finsight.services.notifications import get_notification_dispatcher

logger = logging.getLogger(__name__)


async def quota_reset_job(ctx) -> dict:
    report = await run_quota_resets()
    return report.as_dict()


async def retention_sweep_job(ctx) -> dict:
    report = await run_retention_sweep()
    return report.as_dict()


async def monthly_audit_job(ctx) -> dict:
    return await run_monthly_audit()


async def _startup(ctx) -> None:
    configure_logging()
    async with SessionLocal() as session:
        await ensure_system_actor(session)
        await session.commit()
    # Catch up on any cycles that ended while the worker was down.
    try:
        await run_quota_resets()
    except Exception:  # noqa: BLE001 - the cron run retries on the 1st regardless.
        logger.exception("quota_reset_catch_up_failed")


async def _shutdown(ctx) -> None:
    # Let in-flight notifications finish before the engine goes away.
    await get_notification_dispatcher().drain()
    await engine.dispose()


class WorkerSettings:
    # Keep worker settings as class attributes for ARQ CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.scheduler_queue_name
    functions = [quota_reset_job, retention_sweep_job, monthly_audit_job]
    cron_jobs = [
        cron(quota_reset_job, day=1, hour=0, minute=0, unique=True),
        cron(retention_sweep_job, hour=settings.scheduler_retention_hour, minute=0, unique=True),
        cron(monthly_audit_job, day=1, hour=settings.scheduler_retention_hour, minute=30, unique=True),
    ]
    on_startup = _startup
    on_shutdown = _shutdown
