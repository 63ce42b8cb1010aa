from __future__ import annotations

from datetime import datetime, timezone

from finsight.core.config import Capabilities
from finsight.services.audit import AuditLogSink, sanitize_metadata


def test_sanitize_metadata_redacts_nested_secrets() -> None:
    payload = {
        "reason": "user request",
        "Authorization": "Bearer abc",
        "nested": {"plaid_access_token": "secret-value", "count": 3},
        "items": [{"api_secret": "x"}, {"ok": True}],
    }

    sanitized = sanitize_metadata(payload)

    assert sanitized["reason"] == "user request"
    assert sanitized["Authorization"] == "[REDACTED]"
    assert sanitized["nested"] == {"plaid_access_token": "[REDACTED]", "count": 3}
    assert sanitized["items"] == [{"api_secret": "[REDACTED]"}, {"ok": True}]


def test_sanitize_metadata_keeps_counts_under_token_keys() -> None:
    sanitized = sanitize_metadata({"deleted_counts": {"auth_tokens": 4}, "tokens": {"access_token_days": 7}})
    assert sanitized == {"deleted_counts": {"auth_tokens": 4}, "tokens": {"access_token_days": 7}}


def test_sanitize_metadata_renders_datetimes() -> None:
    when = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert sanitize_metadata({"at": when}) == {"at": "2026-01-02T03:04:05+00:00"}


def test_disabled_sink_skips_writes() -> None:
    sink = AuditLogSink(capabilities=Capabilities(has_audit_log=False, has_plaid_integration=True))

    assert not sink.enabled
    # The session is never touched when the audit store is absent.
    assert sink.append(object(), action="account_deleted", user_id="u1") is None
    assert sink.append_admin(object(), admin_id="a1", action="force_delete_user") is None
