from __future__ import annotations

from datetime import datetime, timezone

from finsight.core.errors import (
    AlreadyMarked,
    CapabilityUnavailable,
    ClientInactive,
    ConfirmationRequired,
    ErrorKind,
    GracePeriodExpired,
    InvalidRetentionSetting,
    NotPurgeable,
    PurgeFailed,
    QuotaExceeded,
    TwoFactorRequired,
    UserNotFound,
)


RESET = datetime(2026, 8, 1, tzinfo=timezone.utc)


def test_kinds_map_to_http_status() -> None:
    assert QuotaExceeded("c1", 100, RESET).http_status == 429
    assert AlreadyMarked(RESET).http_status == 409
    assert GracePeriodExpired(RESET).http_status == 409
    assert NotPurgeable("u1", "active").http_status == 409
    assert InvalidRetentionSetting("bad").http_status == 400
    assert UserNotFound("u1").http_status == 404
    assert PurgeFailed("u1", "accounts", "boom").http_status == 500
    assert CapabilityUnavailable("off").http_status == 503


def test_pinned_statuses_override_kind_default() -> None:
    inactive = ClientInactive("c1", "suspended")
    assert inactive.kind is ErrorKind.STATE_CONFLICT
    assert inactive.http_status == 403
    assert inactive.message == "Client has been suspended"
    assert TwoFactorRequired().http_status == 403


def test_error_details_are_structured() -> None:
    assert ConfirmationRequired("DELETE_MY_ACCOUNT").details() == {"expected": "DELETE_MY_ACCOUNT"}
    assert QuotaExceeded("c1", 100, RESET).details() == {
        "client_id": "c1",
        "usage_quota": 100,
        "reset_date": RESET.isoformat(),
    }
    failed = PurgeFailed("u1", "transactions", "disk full")
    assert failed.details() == {"user_id": "u1", "step": "transactions", "retryable": True}
    assert "no data was removed" in failed.message


def test_unknown_client_status_message_falls_back() -> None:
    assert ClientInactive("c1", "archived").message == "Client is not active (status=archived)"
