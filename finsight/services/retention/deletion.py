from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from finsight.core.config import SYSTEM_ACTOR_ID, Capabilities, get_capabilities, get_settings
from finsight.core.errors import (
    AlreadyMarked,
    CapabilityUnavailable,
    ConfirmationRequired,
    GracePeriodExpired,
    InvalidStatusTransition,
    NotMarked,
    NotPurgeable,
    PlaidItemNotFound,
    PurgeFailed,
    ReasonTooShort,
    TwoFactorRequired,
    UserNotFound,
)
from finsight.domain.models import (
    Account,
    AuthToken,
    Client,
    InsightMetric,
    PLAID_STATUS_DISCONNECTED,
    PlaidItem,
    SpendingPattern,
    Transaction,
    User,
    USER_STATUS_ACTIVE,
    USER_STATUS_MARKED,
)
from finsight.persistence.db import atomic
from finsight.persistence.repos.users import get_user
from finsight.services.audit import AuditLogSink, get_audit_sink
from finsight.services.notifications import (
    CLOSURE_STAGE_CANCELLED,
    CLOSURE_STAGE_DELETED,
    CLOSURE_STAGE_REQUESTED,
    NotificationDispatcher,
    get_notification_dispatcher,
)
from finsight.services.retention.policy import (
    PlaidItemState,
    RetentionRules,
    RetentionState,
    cancellation_deadline,
    classify_plaid_item,
    classify_user,
    compute_scheduled_deletion_date,
    plaid_purge_date,
)
from finsight.services.retention.preferences import (
    apply_retention_preferences,
    retention_view,
    validate_preference_updates,
)


logger = logging.getLogger(__name__)

CLOSURE_CONFIRMATION = "DELETE_MY_ACCOUNT"
FORCE_DELETE_CONFIRMATION = "CONFIRM_PERMANENT_DELETION"
MIN_FORCE_DELETE_REASON_LENGTH = 10

ACTION_CLOSURE_INITIATED = "account_closure_initiated"
ACTION_CLOSURE_CANCELLED = "account_closure_cancelled"
ACTION_MARKED_FOR_DELETION = "account_marked_for_deletion"
ACTION_ACCOUNT_RESTORED = "account_restored"
ACTION_ACCOUNT_DELETED = "account_deleted"
ACTION_FORCE_DELETE = "force_delete_user"
ACTION_PLAID_DISCONNECTED = "plaid_item_disconnected"
ACTION_PLAID_DELETED = "plaid_item_deleted"
ACTION_ADMIN_STATUS_CHANGED = "update_user_retention_status"

INITIATED_BY_SWEEP = "retention_sweep"
INITIATED_BY_ADMIN = "admin_force_delete"

PurgeStep = Callable[[AsyncSession, str], Awaitable[int]]


@dataclass(frozen=True)
class ClosureResult:
    user_id: str
    marked_for_deletion_at: datetime
    scheduled_deletion_date: datetime
    grace_period_days: int


@dataclass(frozen=True)
class CancelResult:
    user_id: str
    cancelled_at: datetime


@dataclass(frozen=True)
class AdminContext:
    # Who forced a deletion and why; written into the admin log before commit.
    admin_id: str
    reason: str
    ip_address: str | None = None


@dataclass(frozen=True)
class PurgeResult:
    user_id: str
    initiated_by: str
    purged_at: datetime
    deleted_counts: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class PlaidDisconnectResult:
    item_id: str
    disconnected_at: datetime
    deletion_scheduled_at: datetime


@dataclass(frozen=True)
class PlaidPurgeResult:
    item_id: str
    user_id: str
    deleted_counts: dict[str, int] = field(default_factory=dict)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _rowcount(result: Any) -> int:
    return int(result.rowcount or 0)


async def _delete_insight_metrics(session: AsyncSession, user_id: str) -> int:
    return _rowcount(await session.execute(delete(InsightMetric).where(InsightMetric.user_id == user_id)))


async def _delete_spending_patterns(session: AsyncSession, user_id: str) -> int:
    return _rowcount(
        await session.execute(delete(SpendingPattern).where(SpendingPattern.user_id == user_id))
    )


async def _delete_transactions(session: AsyncSession, user_id: str) -> int:
    return _rowcount(await session.execute(delete(Transaction).where(Transaction.user_id == user_id)))


async def _delete_accounts(session: AsyncSession, user_id: str) -> int:
    return _rowcount(await session.execute(delete(Account).where(Account.user_id == user_id)))


async def _delete_auth_tokens(session: AsyncSession, user_id: str) -> int:
    # Tokens issued to the user's clients go too, whoever they were issued for.
    owned_clients = select(Client.client_id).where(Client.user_id == user_id)
    return _rowcount(
        await session.execute(
            delete(AuthToken).where(
                or_(AuthToken.user_id == user_id, AuthToken.client_id.in_(owned_clients))
            )
        )
    )


async def _delete_plaid_items(session: AsyncSession, user_id: str) -> int:
    return _rowcount(await session.execute(delete(PlaidItem).where(PlaidItem.user_id == user_id)))


async def _delete_clients(session: AsyncSession, user_id: str) -> int:
    return _rowcount(await session.execute(delete(Client).where(Client.user_id == user_id)))


async def _delete_user_row(session: AsyncSession, user_id: str) -> int:
    return _rowcount(await session.execute(delete(User).where(User.id == user_id)))


def default_purge_steps(audit: AuditLogSink) -> list[tuple[str, PurgeStep]]:
    # Children before parents; the user row goes last.
    return [
        ("insight_metrics", _delete_insight_metrics),
        ("spending_patterns", _delete_spending_patterns),
        ("transactions", _delete_transactions),
        ("accounts", _delete_accounts),
        ("auth_tokens", _delete_auth_tokens),
        ("plaid_items", _delete_plaid_items),
        ("clients", _delete_clients),
        ("audit_actor_refs", audit.repoint_actor),
        ("user", _delete_user_row),
    ]


def _apply_mark(user: User, *, now: datetime, reason: str | None) -> None:
    # Status and timestamp always move together.
    user.status = USER_STATUS_MARKED
    user.marked_for_deletion_at = now
    user.deletion_reason = reason


def _clear_mark(user: User) -> None:
    user.status = USER_STATUS_ACTIVE
    user.marked_for_deletion_at = None
    user.deletion_reason = None
    user.inactivity_warning_date = None


class DeletionOrchestrator:
    def __init__(
        self,
        *,
        time_provider: Callable[[], datetime] | None = None,
        rules: RetentionRules | None = None,
        capabilities: Capabilities | None = None,
        audit: AuditLogSink | None = None,
        dispatcher: NotificationDispatcher | None = None,
        purge_steps: list[tuple[str, PurgeStep]] | None = None,
        require_two_factor: bool | None = None,
    ) -> None:
        settings = get_settings()
        self._time_provider = time_provider or _utc_now
        self._rules = rules or RetentionRules.from_settings(settings)
        self._capabilities = capabilities or get_capabilities()
        self._audit = audit or get_audit_sink()
        self._dispatcher = dispatcher
        self._purge_steps = purge_steps or default_purge_steps(self._audit)
        self._require_two_factor = (
            settings.closure_requires_two_factor if require_two_factor is None else require_two_factor
        )

    @property
    def rules(self) -> RetentionRules:
        return self._rules

    @property
    def capabilities(self) -> Capabilities:
        return self._capabilities

    @property
    def audit(self) -> AuditLogSink:
        return self._audit

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher or get_notification_dispatcher()

    def now(self) -> datetime:
        return self._time_provider()

    async def request_closure(
        self,
        *,
        session: AsyncSession,
        user_id: str,
        confirmation: str,
        reason: str | None = None,
        two_factor_verified: bool = False,
    ) -> ClosureResult:
        if confirmation != CLOSURE_CONFIRMATION:
            raise ConfirmationRequired(CLOSURE_CONFIRMATION)
        now = self._time_provider()
        async with atomic(session):
            user = await get_user(session, user_id, for_update=True)
            if user is None:
                raise UserNotFound(user_id)
            if self._require_two_factor and user.two_factor_enabled and not two_factor_verified:
                raise TwoFactorRequired()
            if user.marked_for_deletion_at is not None:
                raise AlreadyMarked(
                    compute_scheduled_deletion_date(
                        user.marked_for_deletion_at, self._rules.deletion_period_days
                    )
                )
            result = self._mark(
                session,
                user,
                now=now,
                reason=reason,
                actor_id=user.id,
                action=ACTION_CLOSURE_INITIATED,
            )
            email = user.email

        self.dispatcher.send_account_closure_notice(
            user_id=user_id,
            email=email,
            stage=CLOSURE_STAGE_REQUESTED,
            scheduled_deletion_date=result.scheduled_deletion_date,
            reason=reason,
        )
        logger.info(
            "account_closure_requested user_id=%s scheduled_deletion=%s",
            user_id,
            result.scheduled_deletion_date.isoformat(),
        )
        return result

    async def cancel_closure(self, *, session: AsyncSession, user_id: str) -> CancelResult:
        now = self._time_provider()
        async with atomic(session):
            user = await get_user(session, user_id, for_update=True)
            if user is None:
                raise UserNotFound(user_id)
            if user.marked_for_deletion_at is None:
                raise NotMarked()
            deadline = cancellation_deadline(user.marked_for_deletion_at, self._rules)
            if now >= deadline:
                raise GracePeriodExpired(deadline)
            marked_at = user.marked_for_deletion_at
            _clear_mark(user)
            self._audit.append(
                session,
                action=ACTION_CLOSURE_CANCELLED,
                user_id=user_id,
                actor_id=user_id,
                details={"marked_for_deletion_at": marked_at, "cancelled_before": deadline},
                timestamp=now,
            )
            email = user.email

        self.dispatcher.send_account_closure_notice(
            user_id=user_id, email=email, stage=CLOSURE_STAGE_CANCELLED
        )
        logger.info("account_closure_cancelled user_id=%s", user_id)
        return CancelResult(user_id=user_id, cancelled_at=now)

    async def mark_for_deletion(
        self,
        *,
        session: AsyncSession,
        user_id: str,
        reason: str,
        actor_id: str | None = None,
        require_state: RetentionState | None = None,
    ) -> ClosureResult:
        # System- or admin-initiated mark; the user may still cancel within the window.
        now = self._time_provider()
        async with atomic(session):
            user = await get_user(session, user_id, for_update=True)
            if user is None:
                raise UserNotFound(user_id)
            if require_state is not None:
                state = classify_user(user, now, self._rules)
                if state is not require_state:
                    raise InvalidStatusTransition(
                        f"User {user_id} is {state.value}, expected {require_state.value}"
                    )
            self._ensure_unmarked(user)
            return self._mark(
                session,
                user,
                now=now,
                reason=reason,
                actor_id=actor_id,
                action=ACTION_MARKED_FOR_DELETION,
            )

    async def restore(self, *, session: AsyncSession, user_id: str, actor_id: str) -> CancelResult:
        # Administrative unmark; unlike cancel_closure it ignores the grace deadline.
        now = self._time_provider()
        async with atomic(session):
            user = await get_user(session, user_id, for_update=True)
            if user is None:
                raise UserNotFound(user_id)
            if user.marked_for_deletion_at is None:
                raise NotMarked()
            self._restore(session, user, now=now, actor_id=actor_id)
        return CancelResult(user_id=user_id, cancelled_at=now)

    async def admin_update_retention(
        self,
        *,
        session: AsyncSession,
        user_id: str,
        admin_id: str,
        preference_updates: dict[str, Any],
        status: str | None = None,
        reason: str | None = None,
        ip_address: str | None = None,
    ) -> dict[str, Any]:
        """Apply an administrator's preference and status changes as one unit.

        The status precondition is checked under the row lock before anything
        is written, so a rejected status change leaves the stored preferences
        untouched.
        """
        cleaned = validate_preference_updates(preference_updates)
        now = self._time_provider()
        async with atomic(session):
            user = await get_user(session, user_id, for_update=True)
            if user is None:
                raise UserNotFound(user_id)
            if status == USER_STATUS_MARKED:
                self._ensure_unmarked(user)
            elif status == USER_STATUS_ACTIVE and user.marked_for_deletion_at is None:
                raise NotMarked()

            if cleaned:
                apply_retention_preferences(
                    session,
                    user,
                    cleaned=cleaned,
                    rules=self._rules,
                    actor_id=admin_id,
                    admin_ip=ip_address,
                    audit=self._audit,
                    timestamp=now,
                )
            if status == USER_STATUS_MARKED:
                self._mark(
                    session,
                    user,
                    now=now,
                    reason=reason or "admin",
                    actor_id=admin_id,
                    action=ACTION_MARKED_FOR_DELETION,
                )
            elif status == USER_STATUS_ACTIVE:
                self._restore(session, user, now=now, actor_id=admin_id)
            if status is not None:
                self._audit.append_admin(
                    session,
                    admin_id=admin_id,
                    action=ACTION_ADMIN_STATUS_CHANGED,
                    target_type="user",
                    target_id=user_id,
                    details={"status": status, "reason": reason},
                    ip_address=ip_address,
                    timestamp=now,
                )
            view = retention_view(user, self._rules)
        logger.info("admin_retention_updated user_id=%s admin_id=%s status=%s", user_id, admin_id, status)
        return view

    def _ensure_unmarked(self, user: User) -> None:
        if user.marked_for_deletion_at is not None:
            raise AlreadyMarked(
                compute_scheduled_deletion_date(user.marked_for_deletion_at, self._rules.deletion_period_days)
            )

    def _restore(self, session: AsyncSession, user: User, *, now: datetime, actor_id: str) -> None:
        marked_at = user.marked_for_deletion_at
        _clear_mark(user)
        self._audit.append(
            session,
            action=ACTION_ACCOUNT_RESTORED,
            user_id=user.id,
            actor_id=actor_id,
            details={"marked_for_deletion_at": marked_at},
            timestamp=now,
        )

    def _mark(
        self,
        session: AsyncSession,
        user: User,
        *,
        now: datetime,
        reason: str | None,
        actor_id: str | None,
        action: str,
    ) -> ClosureResult:
        _apply_mark(user, now=now, reason=reason)
        scheduled = compute_scheduled_deletion_date(now, self._rules.deletion_period_days)
        self._audit.append(
            session,
            action=action,
            user_id=user.id,
            actor_id=actor_id,
            details={
                "reason": reason,
                "scheduled_deletion_date": scheduled,
                "grace_period_days": self._rules.deletion_period_days,
            },
            timestamp=now,
        )
        return ClosureResult(
            user_id=user.id,
            marked_for_deletion_at=now,
            scheduled_deletion_date=scheduled,
            grace_period_days=self._rules.deletion_period_days,
        )

    async def purge(
        self,
        *,
        session: AsyncSession,
        user_id: str,
        initiated_by: str = INITIATED_BY_SWEEP,
        require_due: bool = True,
        admin: AdminContext | None = None,
    ) -> PurgeResult:
        """Irreversibly remove a user and every dependent row in one transaction.

        The purgeable state is re-checked under the row lock so concurrent
        attempts on the same user cannot both proceed. Any failing step raises
        ``PurgeFailed`` after the whole transaction has rolled back, leaving the
        user eligible for a retry.
        """
        if user_id == SYSTEM_ACTOR_ID:
            raise NotPurgeable(user_id, "system_actor")
        now = self._time_provider()
        counts: dict[str, int] = {}
        try:
            async with atomic(session):
                user = await get_user(session, user_id, for_update=True)
                if user is None:
                    raise UserNotFound(user_id)
                if require_due:
                    state = classify_user(user, now, self._rules)
                    if state is not RetentionState.DELETION_DUE:
                        raise NotPurgeable(user_id, state.value)
                email = user.email
                # Detach the row so the bulk deletes below do not fight the identity map.
                session.expunge(user)
                for step, run_step in self._purge_steps:
                    try:
                        counts[step] = await run_step(session, user_id)
                    except Exception as exc:  # noqa: BLE001 - any step failure aborts the purge.
                        raise PurgeFailed(user_id, step, str(exc)) from exc
                if counts.get("user") == 0:
                    # A concurrent purge won the race; roll back this attempt's no-op deletes.
                    raise UserNotFound(user_id)
                if admin is not None:
                    self._audit.append_admin(
                        session,
                        admin_id=admin.admin_id,
                        action=ACTION_FORCE_DELETE,
                        target_type="user",
                        target_id=user_id,
                        details={"reason": admin.reason, "deleted_counts": dict(counts)},
                        ip_address=admin.ip_address,
                        timestamp=now,
                    )
        except PurgeFailed as exc:
            logger.error(
                "purge_failed user_id=%s step=%s error=%s",
                user_id,
                exc.step,
                exc.cause,
                exc_info=exc.__cause__,
            )
            raise

        logger.info("user_purged user_id=%s initiated_by=%s counts=%s", user_id, initiated_by, counts)
        await self._after_purge(
            user_id=user_id,
            email=email,
            initiated_by=initiated_by,
            counts=counts,
            admin=admin,
            now=now,
        )
        return PurgeResult(user_id=user_id, initiated_by=initiated_by, purged_at=now, deleted_counts=counts)

    async def _after_purge(
        self,
        *,
        user_id: str,
        email: str | None,
        initiated_by: str,
        counts: dict[str, int],
        admin: AdminContext | None,
        now: datetime,
    ) -> None:
        # Post-commit bookkeeping is best-effort; the purge already happened.
        try:
            await self._audit.append_best_effort(
                action=ACTION_ACCOUNT_DELETED,
                user_id=user_id,
                actor_id=admin.admin_id if admin else None,
                details={"initiated_by": initiated_by, "deleted_counts": counts},
                timestamp=now,
            )
            self.dispatcher.send_account_closure_notice(
                user_id=user_id, email=email, stage=CLOSURE_STAGE_DELETED
            )
        except Exception as exc:  # noqa: BLE001 - never surface post-commit failures.
            logger.warning("purge_post_commit_failed user_id=%s", user_id, exc_info=exc)

    async def force_delete(
        self,
        *,
        session: AsyncSession,
        user_id: str,
        admin_id: str,
        confirmation: str,
        reason: str,
        ip_address: str | None = None,
    ) -> PurgeResult:
        if confirmation != FORCE_DELETE_CONFIRMATION:
            raise ConfirmationRequired(FORCE_DELETE_CONFIRMATION)
        cleaned_reason = (reason or "").strip()
        if len(cleaned_reason) < MIN_FORCE_DELETE_REASON_LENGTH:
            raise ReasonTooShort(MIN_FORCE_DELETE_REASON_LENGTH)
        if admin_id == user_id:
            raise InvalidStatusTransition("Administrators cannot force-delete their own account")
        return await self.purge(
            session=session,
            user_id=user_id,
            initiated_by=INITIATED_BY_ADMIN,
            require_due=False,
            admin=AdminContext(admin_id=admin_id, reason=cleaned_reason, ip_address=ip_address),
        )

    async def disconnect_plaid_item(
        self,
        *,
        session: AsyncSession,
        user_id: str,
        item_id: str,
    ) -> PlaidDisconnectResult:
        if not self._capabilities.has_plaid_integration:
            raise CapabilityUnavailable("Bank connections are not enabled")
        now = self._time_provider()
        async with atomic(session):
            item = (
                await session.execute(
                    select(PlaidItem)
                    .where(PlaidItem.item_id == item_id, PlaidItem.user_id == user_id)
                    .with_for_update()
                )
            ).scalar_one_or_none()
            if item is None:
                raise PlaidItemNotFound(item_id)
            if item.status == PLAID_STATUS_DISCONNECTED and item.disconnected_at is not None:
                # Repeat disconnects keep the original schedule.
                return PlaidDisconnectResult(
                    item_id=item.item_id,
                    disconnected_at=item.disconnected_at,
                    deletion_scheduled_at=item.deletion_scheduled_at or plaid_purge_date(item, self._rules),
                )
            item.status = PLAID_STATUS_DISCONNECTED
            item.disconnected_at = now
            item.deletion_scheduled_at = plaid_purge_date(item, self._rules)
            item.access_token_hash = None
            self._audit.append(
                session,
                action=ACTION_PLAID_DISCONNECTED,
                user_id=user_id,
                actor_id=user_id,
                details={
                    "item_id": item_id,
                    "institution_name": item.institution_name,
                    "deletion_scheduled_at": item.deletion_scheduled_at,
                },
                timestamp=now,
            )
            result = PlaidDisconnectResult(
                item_id=item.item_id,
                disconnected_at=now,
                deletion_scheduled_at=item.deletion_scheduled_at,
            )
        logger.info("plaid_item_disconnected user_id=%s item_id=%s", user_id, item_id)
        return result

    async def purge_plaid_item(
        self,
        *,
        session: AsyncSession,
        item_id: str,
        require_due: bool = True,
    ) -> PlaidPurgeResult:
        # Remove one bank connection and the data synced through it; the user stays.
        now = self._time_provider()
        async with atomic(session):
            item = (
                await session.execute(
                    select(PlaidItem).where(PlaidItem.item_id == item_id).with_for_update()
                )
            ).scalar_one_or_none()
            if item is None:
                raise PlaidItemNotFound(item_id)
            if require_due:
                state = classify_plaid_item(item, now, self._rules)
                if state is not PlaidItemState.DUE_FOR_PURGE:
                    raise NotPurgeable(item_id, state.value)
            user_id = item.user_id
            session.expunge(item)
            item_accounts = select(Account.id).where(Account.plaid_item_id == item_id)
            counts = {
                "transactions": _rowcount(
                    await session.execute(
                        delete(Transaction).where(Transaction.account_id.in_(item_accounts))
                    )
                ),
                "accounts": _rowcount(
                    await session.execute(delete(Account).where(Account.plaid_item_id == item_id))
                ),
                "plaid_items": _rowcount(
                    await session.execute(delete(PlaidItem).where(PlaidItem.item_id == item_id))
                ),
            }
            self._audit.append(
                session,
                action=ACTION_PLAID_DELETED,
                user_id=user_id,
                details={"item_id": item_id, "deleted_counts": counts},
                timestamp=now,
            )
        logger.info("plaid_item_purged item_id=%s counts=%s", item_id, counts)
        return PlaidPurgeResult(item_id=item_id, user_id=user_id, deleted_counts=counts)


_orchestrator: DeletionOrchestrator | None = None


def get_deletion_orchestrator() -> DeletionOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = DeletionOrchestrator()
    return _orchestrator


def reset_deletion_orchestrator() -> None:
    # Reset cached services for deterministic tests.
    global _orchestrator
    _orchestrator = None
