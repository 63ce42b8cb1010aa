from __future__ import annotations

from datetime import datetime, timezone

from finsight.services.quota import (
    ClientSnapshot,
    first_of_next_month,
    highest_crossed_threshold,
    quota_headers,
    usage_percentage,
)


def _snapshot(usage_count: int, usage_quota: int) -> ClientSnapshot:
    return ClientSnapshot(
        client_id="c1",
        user_id="u1",
        status="active",
        usage_count=usage_count,
        usage_quota=usage_quota,
        reset_date=datetime(2026, 7, 1, tzinfo=timezone.utc),
        last_used_at=None,
        last_notified_threshold=0,
    )


def test_next_cycle_starts_on_first_of_next_month() -> None:
    assert first_of_next_month(datetime(2026, 3, 17, 15, 45, tzinfo=timezone.utc)) == datetime(
        2026, 4, 1, tzinfo=timezone.utc
    )
    assert first_of_next_month(datetime(2026, 12, 31, 23, 59, tzinfo=timezone.utc)) == datetime(
        2027, 1, 1, tzinfo=timezone.utc
    )
    # A reset running exactly at the boundary still moves a full month ahead.
    assert first_of_next_month(datetime(2026, 5, 1, tzinfo=timezone.utc)) == datetime(
        2026, 6, 1, tzinfo=timezone.utc
    )


def test_usage_percentage_floors() -> None:
    assert usage_percentage(74, 100) == 74
    assert usage_percentage(749, 1000) == 74
    assert usage_percentage(3, 4) == 75
    assert usage_percentage(0, 0) == 100


def test_only_highest_crossed_threshold_fires() -> None:
    assert highest_crossed_threshold(75, 50) == 75
    assert highest_crossed_threshold(96, 0) == 95
    assert highest_crossed_threshold(74, 50) is None
    assert highest_crossed_threshold(100, 95) is None
    assert highest_crossed_threshold(50, 50) is None


def test_snapshot_remaining_and_headers() -> None:
    snapshot = _snapshot(usage_count=40, usage_quota=100)
    assert snapshot.remaining == 60
    assert _snapshot(usage_count=12, usage_quota=10).remaining == 0

    headers = quota_headers(snapshot)
    assert headers["X-Quota-Limit"] == "100"
    assert headers["X-Quota-Used"] == "40"
    assert headers["X-Quota-Remaining"] == "60"
    assert headers["X-Quota-Reset"].startswith("2026-07-01T00:00:00")
