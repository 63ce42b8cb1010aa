"""Retention classification rules.

Everything here is pure: callers pass ``now`` and a ``RetentionRules``
instance, and get back states, dates and aggregate reports. Persistence and
side effects live in ``deletion`` and ``sweep``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterable, Protocol

from finsight.core.config import Settings


class RetentionState(str, Enum):
    ACTIVE = "active"
    WARNING_DUE = "warning_due"
    GRACE_DUE = "grace_due"
    MARKED_FOR_DELETION = "marked_for_deletion"
    DELETION_DUE = "deletion_due"


class PlaidItemState(str, Enum):
    KEEP = "keep"
    DUE_FOR_PURGE = "due_for_purge"


class UserLike(Protocol):
    id: str
    status: str
    marked_for_deletion_at: datetime | None
    inactivity_warning_date: datetime | None
    last_login_at: datetime | None
    created_at: datetime | None


class PlaidItemLike(Protocol):
    item_id: str
    status: str
    disconnected_at: datetime | None


@dataclass(frozen=True)
class RetentionRules:
    warning_period_days: int = 365
    grace_period_days: int = 90
    # Authoritative closure window: cancellation deadline and scheduled deletion date.
    deletion_period_days: int = 30
    transaction_days: int = 730
    insight_days: int = 365
    plaid_disconnect_days: int = 30
    access_token_days: int = 7
    refresh_token_days: int = 30
    revoked_token_days: int = 90

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetentionRules":
        return cls(
            warning_period_days=settings.retention_warning_period_days,
            grace_period_days=settings.retention_grace_period_days,
            deletion_period_days=settings.deletion_grace_period_days,
            transaction_days=settings.retention_transaction_days,
            insight_days=settings.retention_insight_days,
            plaid_disconnect_days=settings.retention_plaid_disconnect_days,
            access_token_days=settings.retention_access_token_days,
            refresh_token_days=settings.retention_refresh_token_days,
            revoked_token_days=settings.retention_revoked_token_days,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "inactivity": {
                "warning_period_days": self.warning_period_days,
                "grace_period_days": self.grace_period_days,
                "deletion_period_days": self.deletion_period_days,
            },
            "transactions_days": self.transaction_days,
            "insights_days": self.insight_days,
            "plaid_disconnect_days": self.plaid_disconnect_days,
            "tokens": {
                "access_token_days": self.access_token_days,
                "refresh_token_days": self.refresh_token_days,
                "revoked_token_days": self.revoked_token_days,
            },
        }


@dataclass
class AuditReport:
    generated_at: datetime
    users_total: int = 0
    items_total: int = 0
    user_states: dict[str, int] = field(default_factory=dict)
    item_states: dict[str, int] = field(default_factory=dict)
    warning_due: list[str] = field(default_factory=list)
    grace_due: list[str] = field(default_factory=list)
    marked_for_deletion: list[str] = field(default_factory=list)
    deletion_due: list[str] = field(default_factory=list)
    plaid_items_due: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "generated_at": self.generated_at.isoformat(),
            "users_total": self.users_total,
            "items_total": self.items_total,
            "user_states": dict(self.user_states),
            "item_states": dict(self.item_states),
            "warning_due": list(self.warning_due),
            "grace_due": list(self.grace_due),
            "marked_for_deletion": list(self.marked_for_deletion),
            "deletion_due": list(self.deletion_due),
            "plaid_items_due": list(self.plaid_items_due),
        }


def compute_scheduled_deletion_date(marked_for_deletion_at: datetime, deletion_period_days: int) -> datetime:
    return marked_for_deletion_at + timedelta(days=deletion_period_days)


def cancellation_deadline(marked_for_deletion_at: datetime, rules: RetentionRules) -> datetime:
    # Cancellation is open on [marked, deadline); deletion is due from the deadline on.
    return compute_scheduled_deletion_date(marked_for_deletion_at, rules.deletion_period_days)


def can_cancel(marked_for_deletion_at: datetime, now: datetime, rules: RetentionRules) -> bool:
    return now < cancellation_deadline(marked_for_deletion_at, rules)


def last_activity_at(user: UserLike) -> datetime | None:
    return user.last_login_at or user.created_at


def classify_user(user: UserLike, now: datetime, rules: RetentionRules) -> RetentionState:
    if user.marked_for_deletion_at is not None:
        if now >= cancellation_deadline(user.marked_for_deletion_at, rules):
            return RetentionState.DELETION_DUE
        return RetentionState.MARKED_FOR_DELETION

    last_activity = last_activity_at(user)
    if last_activity is None:
        return RetentionState.ACTIVE
    if now - last_activity < timedelta(days=rules.warning_period_days):
        return RetentionState.ACTIVE
    if user.inactivity_warning_date is None:
        return RetentionState.WARNING_DUE
    # A login after the warning resets the ladder; treat the stale warning as unsent.
    if last_activity > user.inactivity_warning_date:
        return RetentionState.WARNING_DUE
    if now - user.inactivity_warning_date >= timedelta(days=rules.grace_period_days):
        return RetentionState.GRACE_DUE
    return RetentionState.ACTIVE


def plaid_purge_date(item: PlaidItemLike, rules: RetentionRules) -> datetime | None:
    if item.disconnected_at is None:
        return None
    return item.disconnected_at + timedelta(days=rules.plaid_disconnect_days)


def classify_plaid_item(item: PlaidItemLike, now: datetime, rules: RetentionRules) -> PlaidItemState:
    if item.status != "disconnected":
        return PlaidItemState.KEEP
    due_at = plaid_purge_date(item, rules)
    if due_at is None or now < due_at:
        return PlaidItemState.KEEP
    return PlaidItemState.DUE_FOR_PURGE


def audit_compliance(
    users: Iterable[UserLike],
    items: Iterable[PlaidItemLike],
    now: datetime,
    rules: RetentionRules,
) -> AuditReport:
    report = AuditReport(
        generated_at=now,
        user_states={state.value: 0 for state in RetentionState},
        item_states={state.value: 0 for state in PlaidItemState},
    )
    buckets = {
        RetentionState.WARNING_DUE: report.warning_due,
        RetentionState.GRACE_DUE: report.grace_due,
        RetentionState.MARKED_FOR_DELETION: report.marked_for_deletion,
        RetentionState.DELETION_DUE: report.deletion_due,
    }
    for user in users:
        state = classify_user(user, now, rules)
        report.users_total += 1
        report.user_states[state.value] += 1
        bucket = buckets.get(state)
        if bucket is not None:
            bucket.append(user.id)
    for item in items:
        item_state = classify_plaid_item(item, now, rules)
        report.items_total += 1
        report.item_states[item_state.value] += 1
        if item_state is PlaidItemState.DUE_FOR_PURGE:
            report.plaid_items_due.append(item.item_id)
    return report
