from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from finsight.core.errors import InvalidRetentionSetting, UserNotFound
from finsight.domain.models import Account, Client, InsightMetric, Transaction
from finsight.persistence.db import atomic
from finsight.persistence.repos.users import get_user, list_plaid_items
from finsight.services.audit import AuditLogSink, get_audit_sink
from finsight.services.retention.policy import RetentionRules, compute_scheduled_deletion_date


logger = logging.getLogger(__name__)

ACTION_PREFERENCES_UPDATED = "retention_preferences_updated"
ACTION_ADMIN_SETTINGS_UPDATED = "update_retention_settings"
ACTION_DATA_EXPORTED = "data_exported"

MIN_RETENTION_DAYS = 30
MAX_RETENTION_DAYS = 3650
_DAY_KEYS = ("transaction_retention_days", "insight_retention_days")
_FLAG_KEYS = ("email_notifications", "analytical_data_use")

EXPORT_INSIGHT_LIMIT = 100


def default_preferences(rules: RetentionRules) -> dict[str, Any]:
    return {
        "transaction_retention_days": rules.transaction_days,
        "insight_retention_days": rules.insight_days,
        "email_notifications": True,
        "analytical_data_use": True,
    }


def effective_preferences(stored: dict[str, Any] | None, rules: RetentionRules) -> dict[str, Any]:
    # Stored overrides win; unknown keys from older rows are dropped.
    merged = default_preferences(rules)
    for key, value in (stored or {}).items():
        if key in merged and value is not None:
            merged[key] = value
    return merged


def validate_preference_updates(updates: dict[str, Any]) -> dict[str, Any]:
    cleaned: dict[str, Any] = {}
    for key, value in updates.items():
        if value is None:
            continue
        if key in _DAY_KEYS:
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidRetentionSetting(f"{key} must be an integer number of days")
            if not MIN_RETENTION_DAYS <= value <= MAX_RETENTION_DAYS:
                raise InvalidRetentionSetting(
                    f"{key} must be between {MIN_RETENTION_DAYS} and {MAX_RETENTION_DAYS} days"
                )
            cleaned[key] = value
        elif key in _FLAG_KEYS:
            cleaned[key] = bool(value)
        else:
            raise InvalidRetentionSetting(f"Unknown retention preference: {key}")
    return cleaned


def retention_view(user: Any, rules: RetentionRules) -> dict[str, Any]:
    scheduled = None
    if user.marked_for_deletion_at is not None:
        scheduled = compute_scheduled_deletion_date(user.marked_for_deletion_at, rules.deletion_period_days)
    return {
        "user_id": user.id,
        "status": user.status,
        "preferences": effective_preferences(user.data_retention_preferences, rules),
        "marked_for_deletion_at": user.marked_for_deletion_at,
        "scheduled_deletion_date": scheduled,
        "inactivity_warning_date": user.inactivity_warning_date,
        "deletion_reason": user.deletion_reason,
    }


async def get_retention_settings(
    session: AsyncSession,
    *,
    user_id: str,
    rules: RetentionRules,
) -> dict[str, Any]:
    user = await get_user(session, user_id)
    if user is None:
        raise UserNotFound(user_id)
    return retention_view(user, rules)


async def update_retention_preferences(
    session: AsyncSession,
    *,
    user_id: str,
    updates: dict[str, Any],
    rules: RetentionRules,
    actor_id: str,
    admin_ip: str | None = None,
    audit: AuditLogSink | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Merge validated preference overrides into the user's stored settings.

    When ``actor_id`` differs from ``user_id`` the change is an administrative
    one and lands in the admin log; otherwise it is a retention log entry.
    """
    sink = audit or get_audit_sink()
    cleaned = validate_preference_updates(updates)
    timestamp = now or datetime.now(timezone.utc)
    async with atomic(session):
        user = await get_user(session, user_id, for_update=True)
        if user is None:
            raise UserNotFound(user_id)
        apply_retention_preferences(
            session,
            user,
            cleaned=cleaned,
            rules=rules,
            actor_id=actor_id,
            admin_ip=admin_ip,
            audit=sink,
            timestamp=timestamp,
        )
        view = retention_view(user, rules)
    logger.info("retention_preferences_updated user_id=%s actor_id=%s", user_id, actor_id)
    return view


def apply_retention_preferences(
    session: AsyncSession,
    user: Any,
    *,
    cleaned: dict[str, Any],
    rules: RetentionRules,
    actor_id: str,
    admin_ip: str | None,
    audit: AuditLogSink,
    timestamp: datetime,
) -> None:
    # Caller owns the transaction and holds the row lock on user.
    previous = effective_preferences(user.data_retention_preferences, rules)
    # Reassign so the JSON column is flagged dirty.
    user.data_retention_preferences = {**previous, **cleaned}
    if actor_id != user.id:
        audit.append_admin(
            session,
            admin_id=actor_id,
            action=ACTION_ADMIN_SETTINGS_UPDATED,
            target_type="user",
            target_id=user.id,
            details={"previous": previous, "updated": cleaned},
            ip_address=admin_ip,
            timestamp=timestamp,
        )
    else:
        audit.append(
            session,
            action=ACTION_PREFERENCES_UPDATED,
            user_id=user.id,
            actor_id=user.id,
            details={"updated": cleaned},
            timestamp=timestamp,
        )


def _row_dict(row: Any, fields: tuple[str, ...]) -> dict[str, Any]:
    return {name: getattr(row, name) for name in fields}


async def export_user_data(
    session: AsyncSession,
    *,
    user_id: str,
    rules: RetentionRules,
    audit: AuditLogSink | None = None,
) -> dict[str, Any]:
    # Read-only snapshot of everything held about the user.
    user = await get_user(session, user_id)
    if user is None:
        raise UserNotFound(user_id)
    clients = (await session.execute(select(Client).where(Client.user_id == user_id))).scalars().all()
    accounts = (await session.execute(select(Account).where(Account.user_id == user_id))).scalars().all()
    transactions = (
        await session.execute(
            select(Transaction).where(Transaction.user_id == user_id).order_by(Transaction.posted_at.desc())
        )
    ).scalars().all()
    insights = (
        await session.execute(
            select(InsightMetric)
            .where(InsightMetric.user_id == user_id)
            .order_by(InsightMetric.generated_at.desc())
            .limit(EXPORT_INSIGHT_LIMIT)
        )
    ).scalars().all()
    items = await list_plaid_items(session, user_id=user_id)

    package = {
        "profile": _row_dict(user, ("id", "email", "name", "status", "created_at", "last_login_at")),
        "retention": retention_view(user, rules),
        "clients": [
            _row_dict(row, ("client_id", "name", "status", "usage_count", "usage_quota", "last_used_at"))
            for row in clients
        ],
        "bank_connections": [
            _row_dict(row, ("item_id", "institution_name", "status", "disconnected_at", "deletion_scheduled_at"))
            for row in items
        ],
        "accounts": [
            _row_dict(row, ("id", "name", "account_type", "current_balance")) for row in accounts
        ],
        "transactions": [
            _row_dict(row, ("id", "account_id", "amount", "category", "description", "posted_at"))
            for row in transactions
        ],
        "insights": [
            _row_dict(row, ("id", "query_type", "generated_at")) for row in insights
        ],
    }
    await (audit or get_audit_sink()).append_best_effort(
        action=ACTION_DATA_EXPORTED,
        user_id=user_id,
        actor_id=user_id,
        details={"transactions": len(transactions), "accounts": len(accounts)},
    )
    return package
