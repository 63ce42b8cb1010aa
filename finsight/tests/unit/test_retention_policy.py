from __future__ import annotations

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from finsight.core.config import Settings
from finsight.services.retention.policy import (
    PlaidItemState,
    RetentionRules,
    RetentionState,
    audit_compliance,
    can_cancel,
    cancellation_deadline,
    classify_plaid_item,
    classify_user,
    compute_scheduled_deletion_date,
)


NOW = datetime(2026, 6, 15, 12, 0, tzinfo=timezone.utc)
RULES = RetentionRules()


def _user(**overrides):
    values = {
        "id": "u1",
        "status": "active",
        "marked_for_deletion_at": None,
        "inactivity_warning_date": None,
        "last_login_at": NOW - timedelta(days=3),
        "created_at": NOW - timedelta(days=900),
    }
    values.update(overrides)
    return SimpleNamespace(**values)


def _item(**overrides):
    values = {"item_id": "i1", "status": "active", "disconnected_at": None}
    values.update(overrides)
    return SimpleNamespace(**values)


def test_recent_login_is_active() -> None:
    assert classify_user(_user(), NOW, RULES) is RetentionState.ACTIVE


def test_inactive_past_warning_period_is_warning_due() -> None:
    user = _user(last_login_at=NOW - timedelta(days=365))
    assert classify_user(user, NOW, RULES) is RetentionState.WARNING_DUE


def test_creation_date_stands_in_for_missing_login() -> None:
    assert classify_user(_user(last_login_at=None), NOW, RULES) is RetentionState.WARNING_DUE
    fresh = _user(last_login_at=None, created_at=NOW - timedelta(days=10))
    assert classify_user(fresh, NOW, RULES) is RetentionState.ACTIVE


def test_warned_user_waits_out_the_grace_period() -> None:
    login = NOW - timedelta(days=500)
    waiting = _user(last_login_at=login, inactivity_warning_date=NOW - timedelta(days=89))
    due = _user(last_login_at=login, inactivity_warning_date=NOW - timedelta(days=90))

    assert classify_user(waiting, NOW, RULES) is RetentionState.ACTIVE
    assert classify_user(due, NOW, RULES) is RetentionState.GRACE_DUE


def test_login_after_warning_restarts_the_ladder() -> None:
    warned_at = NOW - timedelta(days=400)
    user = _user(last_login_at=NOW - timedelta(days=370), inactivity_warning_date=warned_at)
    assert classify_user(user, NOW, RULES) is RetentionState.WARNING_DUE


def test_marked_user_becomes_due_exactly_at_deadline() -> None:
    marked_at = NOW - timedelta(days=30)
    assert classify_user(_user(marked_for_deletion_at=marked_at), NOW, RULES) is RetentionState.DELETION_DUE

    inside = _user(marked_for_deletion_at=marked_at + timedelta(seconds=1))
    assert classify_user(inside, NOW, RULES) is RetentionState.MARKED_FOR_DELETION


def test_mark_wins_over_recent_activity() -> None:
    user = _user(marked_for_deletion_at=NOW - timedelta(days=1), last_login_at=NOW)
    assert classify_user(user, NOW, RULES) is RetentionState.MARKED_FOR_DELETION


def test_cancellation_window_is_half_open() -> None:
    marked_at = NOW - timedelta(days=10)
    deadline = cancellation_deadline(marked_at, RULES)

    assert deadline == compute_scheduled_deletion_date(marked_at, RULES.deletion_period_days)
    assert can_cancel(marked_at, deadline - timedelta(microseconds=1), RULES)
    assert not can_cancel(marked_at, deadline, RULES)


def test_single_deletion_window_drives_schedule_and_deadline() -> None:
    rules = RetentionRules.from_settings(Settings(deletion_grace_period_days=14))
    marked_at = NOW
    assert rules.deletion_period_days == 14
    assert cancellation_deadline(marked_at, rules) == NOW + timedelta(days=14)
    assert compute_scheduled_deletion_date(marked_at, rules.deletion_period_days) == NOW + timedelta(days=14)


def test_plaid_item_due_after_disconnect_window() -> None:
    assert classify_plaid_item(_item(), NOW, RULES) is PlaidItemState.KEEP
    recent = _item(status="disconnected", disconnected_at=NOW - timedelta(days=29))
    old = _item(status="disconnected", disconnected_at=NOW - timedelta(days=30))

    assert classify_plaid_item(recent, NOW, RULES) is PlaidItemState.KEEP
    assert classify_plaid_item(old, NOW, RULES) is PlaidItemState.DUE_FOR_PURGE


def test_audit_compliance_buckets_users_and_items() -> None:
    users = [
        _user(id="active"),
        _user(id="warn", last_login_at=NOW - timedelta(days=400)),
        _user(
            id="grace",
            last_login_at=NOW - timedelta(days=600),
            inactivity_warning_date=NOW - timedelta(days=120),
        ),
        _user(id="marked", marked_for_deletion_at=NOW - timedelta(days=2)),
        _user(id="due", marked_for_deletion_at=NOW - timedelta(days=45)),
    ]
    items = [
        _item(item_id="keep"),
        _item(item_id="purge", status="disconnected", disconnected_at=NOW - timedelta(days=60)),
    ]

    report = audit_compliance(users, items, NOW, RULES)

    assert report.users_total == 5
    assert report.items_total == 2
    assert report.warning_due == ["warn"]
    assert report.grace_due == ["grace"]
    assert report.marked_for_deletion == ["marked"]
    assert report.deletion_due == ["due"]
    assert report.plaid_items_due == ["purge"]
    assert report.user_states[RetentionState.ACTIVE.value] == 1
    assert report.as_dict()["item_states"] == {"keep": 1, "due_for_purge": 1}
