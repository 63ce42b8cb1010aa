from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
from typing import Any, Callable

from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from finsight.core.errors import FinsightError
from finsight.domain.models import (
    AuthToken,
    InsightMetric,
    TOKEN_TYPE_ACCESS,
    TOKEN_TYPE_REFRESH,
    Transaction,
)
from finsight.persistence.db import SessionLocal, atomic
from finsight.persistence.repos.users import get_user, list_plaid_items, list_users_for_retention
from finsight.services.retention.deletion import DeletionOrchestrator, get_deletion_orchestrator
from finsight.services.retention.policy import (
    AuditReport,
    RetentionRules,
    RetentionState,
    audit_compliance,
    classify_user,
    last_activity_at,
)
from finsight.services.retention.preferences import effective_preferences


logger = logging.getLogger(__name__)

ACTION_INACTIVITY_WARNING = "inactivity_warning_sent"
ACTION_TOKENS_CLEANUP = "expired_tokens_cleanup"
ACTION_AGED_DATA_CLEANUP = "aged_data_cleanup"
ACTION_MONTHLY_AUDIT = "monthly_audit"
ACTION_SWEEP_COMPLETED = "retention_sweep_completed"

INACTIVITY_MARK_REASON = "inactivity"

SessionFactory = Callable[[], AsyncSession]


@dataclass
class SweepReport:
    started_at: datetime
    dry_run: bool
    audit: AuditReport
    warnings_sent: list[str] = field(default_factory=list)
    marked: list[str] = field(default_factory=list)
    purged: list[str] = field(default_factory=list)
    plaid_items_purged: list[str] = field(default_factory=list)
    tokens_deleted: int = 0
    transactions_deleted: int = 0
    insights_deleted: int = 0
    failures: list[dict[str, str]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "dry_run": self.dry_run,
            "audit": self.audit.as_dict(),
            "warnings_sent": list(self.warnings_sent),
            "marked": list(self.marked),
            "purged": list(self.purged),
            "plaid_items_purged": list(self.plaid_items_purged),
            "tokens_deleted": self.tokens_deleted,
            "transactions_deleted": self.transactions_deleted,
            "insights_deleted": self.insights_deleted,
            "failures": list(self.failures),
        }


def _failure_code(exc: Exception) -> str:
    return exc.code if isinstance(exc, FinsightError) else type(exc).__name__


class RetentionSweeper:
    """Apply retention rules to every user and bank connection.

    Entities are processed one at a time, each in its own session, so a
    failure on one account is logged and recorded in the report without
    blocking the rest of the sweep.
    """

    def __init__(
        self,
        *,
        orchestrator: DeletionOrchestrator | None = None,
        session_factory: SessionFactory | None = None,
    ) -> None:
        self._orchestrator = orchestrator or get_deletion_orchestrator()
        self._session_factory = session_factory or SessionLocal

    @property
    def rules(self) -> RetentionRules:
        return self._orchestrator.rules

    async def build_audit_report(self, session: AsyncSession, *, now: datetime) -> AuditReport:
        users = await list_users_for_retention(session)
        items = await list_plaid_items(session) if self._orchestrator.capabilities.has_plaid_integration else []
        return audit_compliance(users, items, now, self.rules)

    async def run_compliance_audit(self, session: AsyncSession, *, record: bool = False) -> dict[str, Any]:
        # Read-only unless record=True, which appends the report to the retention log.
        now = self._orchestrator.now()
        report = await self.build_audit_report(session, now=now)
        data_age = await self._data_age_counts(session, now=now)
        payload = {**report.as_dict(), "data_age": data_age, "rules": self.rules.as_dict()}
        if record:
            await self._orchestrator.audit.append_best_effort(
                action=ACTION_MONTHLY_AUDIT,
                details=payload,
                timestamp=now,
            )
        return payload

    async def run(self, *, dry_run: bool = False) -> SweepReport:
        now = self._orchestrator.now()
        async with self._session_factory() as session:
            audit = await self.build_audit_report(session, now=now)
        report = SweepReport(started_at=now, dry_run=dry_run, audit=audit)
        if dry_run:
            return report

        for user_id in audit.warning_due:
            await self._guarded(report, user_id, "inactivity_warning", self._warn, report.warnings_sent)
        for user_id in audit.grace_due:
            await self._guarded(report, user_id, "mark_for_deletion", self._mark, report.marked)
        for user_id in audit.deletion_due:
            await self._guarded(report, user_id, "purge", self._purge, report.purged)
        for item_id in audit.plaid_items_due:
            await self._guarded(report, item_id, "plaid_purge", self._purge_item, report.plaid_items_purged)

        try:
            async with self._session_factory() as session:
                report.tokens_deleted = await self.cleanup_expired_tokens(session, now=now)
            async with self._session_factory() as session:
                aged = await self.cleanup_aged_financial_data(session, now=now)
            report.transactions_deleted = aged["transactions"]
            report.insights_deleted = aged["insight_metrics"]
        except Exception as exc:  # noqa: BLE001 - cleanup failures are reported, not raised.
            logger.error("retention_cleanup_failed", exc_info=exc)
            report.failures.append({"subject": "*", "operation": "cleanup", "error": _failure_code(exc)})

        await self._orchestrator.audit.append_best_effort(
            action=ACTION_SWEEP_COMPLETED,
            details={
                "warnings_sent": len(report.warnings_sent),
                "marked": len(report.marked),
                "purged": len(report.purged),
                "plaid_items_purged": len(report.plaid_items_purged),
                "failures": len(report.failures),
            },
            timestamp=now,
        )
        logger.info(
            "retention_sweep_completed warned=%s marked=%s purged=%s plaid_purged=%s failures=%s",
            len(report.warnings_sent),
            len(report.marked),
            len(report.purged),
            len(report.plaid_items_purged),
            len(report.failures),
        )
        return report

    async def _guarded(
        self,
        report: SweepReport,
        subject_id: str,
        operation: str,
        handler: Callable[[AsyncSession, str], Any],
        succeeded: list[str],
    ) -> None:
        async with self._session_factory() as session:
            try:
                if await handler(session, subject_id):
                    succeeded.append(subject_id)
            except Exception as exc:  # noqa: BLE001 - one account must not block the sweep.
                logger.error(
                    "retention_sweep_item_failed operation=%s subject_id=%s",
                    operation,
                    subject_id,
                    exc_info=exc,
                )
                report.failures.append(
                    {"subject": subject_id, "operation": operation, "error": _failure_code(exc)}
                )

    async def _warn(self, session: AsyncSession, user_id: str) -> bool:
        return await self.send_inactivity_warning(session, user_id=user_id)

    async def _mark(self, session: AsyncSession, user_id: str) -> bool:
        await self._orchestrator.mark_for_deletion(
            session=session,
            user_id=user_id,
            reason=INACTIVITY_MARK_REASON,
            require_state=RetentionState.GRACE_DUE,
        )
        return True

    async def _purge(self, session: AsyncSession, user_id: str) -> bool:
        await self._orchestrator.purge(session=session, user_id=user_id)
        return True

    async def _purge_item(self, session: AsyncSession, item_id: str) -> bool:
        await self._orchestrator.purge_plaid_item(session=session, item_id=item_id)
        return True

    async def send_inactivity_warning(self, session: AsyncSession, *, user_id: str) -> bool:
        now = self._orchestrator.now()
        async with atomic(session):
            user = await get_user(session, user_id, for_update=True)
            if user is None or classify_user(user, now, self.rules) is not RetentionState.WARNING_DUE:
                return False
            user.inactivity_warning_date = now
            marks_at = now + timedelta(days=self.rules.grace_period_days)
            self._orchestrator.audit.append(
                session,
                action=ACTION_INACTIVITY_WARNING,
                user_id=user_id,
                details={"last_activity_at": last_activity_at(user), "marks_for_deletion_at": marks_at},
                timestamp=now,
            )
            email = user.email
            last_activity = last_activity_at(user)
            preferences = effective_preferences(user.data_retention_preferences, self.rules)

        if preferences.get("email_notifications", True):
            self._orchestrator.dispatcher.send_inactivity_warning(
                user_id=user_id,
                email=email,
                last_activity_at=last_activity,
                marks_for_deletion_at=marks_at,
            )
        return True

    async def cleanup_expired_tokens(self, session: AsyncSession, *, now: datetime) -> int:
        rules = self.rules
        async with atomic(session):
            result = await session.execute(delete(AuthToken).where(self._token_cleanup_clause(now)))
            deleted = int(result.rowcount or 0)
            if deleted:
                self._orchestrator.audit.append(
                    session,
                    action=ACTION_TOKENS_CLEANUP,
                    details={"deleted": deleted, "rules": rules.as_dict()["tokens"]},
                    timestamp=now,
                )
        return deleted

    def _token_cleanup_clause(self, now: datetime) -> Any:
        rules = self.rules
        return or_(
            and_(
                AuthToken.token_type == TOKEN_TYPE_ACCESS,
                AuthToken.expires_at < now - timedelta(days=rules.access_token_days),
            ),
            and_(
                AuthToken.token_type == TOKEN_TYPE_REFRESH,
                AuthToken.expires_at < now - timedelta(days=rules.refresh_token_days),
            ),
            AuthToken.revoked_at < now - timedelta(days=rules.revoked_token_days),
        )

    async def cleanup_aged_financial_data(self, session: AsyncSession, *, now: datetime) -> dict[str, int]:
        # Honour each user's own windows; defaults come from the rules.
        counts = {"transactions": 0, "insight_metrics": 0}
        users = await list_users_for_retention(session)
        async with atomic(session):
            for user in users:
                preferences = effective_preferences(user.data_retention_preferences, self.rules)
                tx_cutoff = now - timedelta(days=int(preferences["transaction_retention_days"]))
                insight_cutoff = now - timedelta(days=int(preferences["insight_retention_days"]))
                tx_result = await session.execute(
                    delete(Transaction).where(
                        Transaction.user_id == user.id, Transaction.posted_at < tx_cutoff
                    )
                )
                insight_result = await session.execute(
                    delete(InsightMetric).where(
                        InsightMetric.user_id == user.id, InsightMetric.generated_at < insight_cutoff
                    )
                )
                counts["transactions"] += int(tx_result.rowcount or 0)
                counts["insight_metrics"] += int(insight_result.rowcount or 0)
            if counts["transactions"] or counts["insight_metrics"]:
                self._orchestrator.audit.append(
                    session,
                    action=ACTION_AGED_DATA_CLEANUP,
                    details=counts,
                    timestamp=now,
                )
        return counts

    async def _data_age_counts(self, session: AsyncSession, *, now: datetime) -> dict[str, int]:
        rules = self.rules
        tokens = await session.execute(
            select(func.count(AuthToken.id)).where(self._token_cleanup_clause(now))
        )
        transactions = await session.execute(
            select(func.count(Transaction.id)).where(
                Transaction.posted_at < now - timedelta(days=rules.transaction_days)
            )
        )
        insights = await session.execute(
            select(func.count(InsightMetric.id)).where(
                InsightMetric.generated_at < now - timedelta(days=rules.insight_days)
            )
        )
        return {
            "tokens_due_for_cleanup": int(tokens.scalar_one()),
            "transactions_past_default_retention": int(transactions.scalar_one()),
            "insights_past_default_retention": int(insights.scalar_one()),
        }


_sweeper: RetentionSweeper | None = None


def get_retention_sweeper() -> RetentionSweeper:
    global _sweeper
    if _sweeper is None:
        _sweeper = RetentionSweeper()
    return _sweeper


def reset_retention_sweeper() -> None:
    global _sweeper
    _sweeper = None
