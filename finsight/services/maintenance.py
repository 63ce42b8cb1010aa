from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Literal

from finsight.persistence.db import SessionLocal
from finsight.persistence.repos.clients import list_due_client_ids
from finsight.services.quota import QuotaService, ResetSummary, get_quota_service
from finsight.services.retention.sweep import RetentionSweeper, SweepReport, get_retention_sweeper


logger = logging.getLogger(__name__)

MaintenanceTask = Literal[
    "quota_reset",
    "retention_sweep",
    "monthly_audit",
]


@dataclass
class ResetRunReport:
    started_at: datetime
    due: int = 0
    reset: list[ResetSummary] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "due": self.due,
            "reset": [summary.client_id for summary in self.reset],
            "skipped": list(self.skipped),
            "failed": list(self.failed),
        }


async def run_quota_resets(
    *,
    now: datetime | None = None,
    service: QuotaService | None = None,
) -> ResetRunReport:
    # Each client resets in its own session so one failure cannot stall the rest.
    quota = service or get_quota_service()
    started_at = now or datetime.now(timezone.utc)
    async with SessionLocal() as session:
        due_ids = await list_due_client_ids(session, now=started_at)
    report = ResetRunReport(started_at=started_at, due=len(due_ids))
    for client_id in due_ids:
        async with SessionLocal() as session:
            try:
                summary = await quota.reset_cycle(session=session, client_id=client_id)
            except Exception as exc:  # noqa: BLE001 - keep resetting remaining clients.
                logger.error("quota_reset_failed client_id=%s", client_id, exc_info=exc)
                report.failed.append(client_id)
                continue
        if summary is None:
            # Another worker already advanced this cycle.
            report.skipped.append(client_id)
        else:
            report.reset.append(summary)
    logger.info(
        "quota_reset_run_completed due=%s reset=%s skipped=%s failed=%s",
        report.due,
        len(report.reset),
        len(report.skipped),
        len(report.failed),
    )
    return report


async def run_retention_sweep(
    *,
    dry_run: bool = False,
    sweeper: RetentionSweeper | None = None,
) -> SweepReport:
    return await (sweeper or get_retention_sweeper()).run(dry_run=dry_run)


async def run_monthly_audit(*, sweeper: RetentionSweeper | None = None) -> dict[str, Any]:
    # Recorded compliance snapshot; the ad-hoc admin audit stays read-only.
    async with SessionLocal() as session:
        return await (sweeper or get_retention_sweeper()).run_compliance_audit(session, record=True)


async def run_task(task: MaintenanceTask, *, dry_run: bool = False) -> dict[str, Any]:
    if task == "quota_reset":
        return (await run_quota_resets()).as_dict()
    if task == "retention_sweep":
        return (await run_retention_sweep(dry_run=dry_run)).as_dict()
    if task == "monthly_audit":
        return await run_monthly_audit()
    raise ValueError(f"Unknown maintenance task: {task}")
