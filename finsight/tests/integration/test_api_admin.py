from __future__ import annotations

from datetime import datetime, timedelta, timezone

from finsight.domain.models import Client, User
from finsight.tests.utils.seed import (
    bearer,
    create_client,
    create_financial_data,
    create_token,
    create_user,
    load,
)


async def _admin_headers() -> tuple[str, dict[str, str]]:
    admin_id = await create_user(role="admin")
    return admin_id, bearer(await create_token(user_id=admin_id))


async def test_admin_routes_require_admin_role(api_client) -> None:
    user_id = await create_user()
    headers = bearer(await create_token(user_id=user_id))

    for method, path in (
        ("GET", "/v1/admin/retention/stats"),
        ("GET", "/v1/admin/logs"),
        ("GET", "/v1/admin/clients/stats"),
        ("POST", f"/v1/admin/retention/users/{user_id}/force-delete"),
    ):
        response = await api_client.request(method, path, headers=headers, json={"confirmation": "x"})
        assert response.status_code == 403, path
        assert response.json()["error"]["code"] == "AUTH_FORBIDDEN"


async def test_stats_and_marked_accounts_pagination(api_client) -> None:
    _, headers = await _admin_headers()
    now = datetime.now(timezone.utc)
    marked = [
        await create_user(marked_for_deletion_at=now - timedelta(days=days)) for days in (20, 10, 5)
    ]
    await create_user()

    stats = await api_client.get("/v1/admin/retention/stats", headers=headers)
    assert stats.status_code == 200
    assert stats.json()["data"]["marked_for_deletion"] == 3
    assert stats.json()["data"]["rules"]["inactivity"]["deletion_period_days"] == 30

    first_page = await api_client.get(
        "/v1/admin/retention/marked-accounts", headers=headers, params={"page": 1, "limit": 2}
    )
    assert first_page.status_code == 200
    body = first_page.json()
    assert [row["user_id"] for row in body["data"]] == marked[:2]
    assert body["data"][0]["days_remaining"] == 9
    assert body["meta"]["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}

    second_page = await api_client.get(
        "/v1/admin/retention/marked-accounts", headers=headers, params={"page": 2, "limit": 2}
    )
    assert [row["user_id"] for row in second_page.json()["data"]] == marked[2:]


async def test_retention_log_filters(api_client) -> None:
    _, headers = await _admin_headers()
    user_id = await create_user()
    user_headers = bearer(await create_token(user_id=user_id))
    await api_client.post(
        "/v1/account/closure", headers=user_headers, json={"confirmation": "DELETE_MY_ACCOUNT"}
    )
    await api_client.post("/v1/account/closure/cancel", headers=user_headers)

    everything = await api_client.get("/v1/admin/retention/logs", headers=headers, params={"userId": user_id})
    assert everything.status_code == 200
    assert [row["action"] for row in everything.json()["data"]] == [
        "account_closure_cancelled",
        "account_closure_initiated",
    ]

    filtered = await api_client.get(
        "/v1/admin/retention/logs",
        headers=headers,
        params={"action": "account_closure_initiated", "startDate": "2020-01-01", "endDate": "2999-01-01"},
    )
    assert [row["user_id"] for row in filtered.json()["data"]] == [user_id]

    inverted = await api_client.get(
        "/v1/admin/retention/logs",
        headers=headers,
        params={"startDate": "2026-05-01", "endDate": "2026-04-01"},
    )
    assert inverted.status_code == 400
    assert inverted.json()["error"]["code"] == "INVALID_DATE_RANGE"


async def test_force_delete_endpoint(api_client) -> None:
    admin_id, headers = await _admin_headers()
    user_id = await create_user()
    await create_financial_data(user_id=user_id, posted_at=[datetime.now(timezone.utc)])
    path = f"/v1/admin/retention/users/{user_id}/force-delete"

    short = await api_client.post(
        path, headers=headers, json={"confirmation": "CONFIRM_PERMANENT_DELETION", "reason": "spam"}
    )
    assert short.status_code == 400
    assert short.json()["error"]["code"] == "REASON_TOO_SHORT"

    deleted = await api_client.post(
        path,
        headers=headers,
        json={"confirmation": "CONFIRM_PERMANENT_DELETION", "reason": "confirmed fraud ring"},
    )
    assert deleted.status_code == 200
    assert deleted.json()["data"]["deleted_counts"]["transactions"] == 1
    assert await load(User, user_id) is None

    logs = await api_client.get("/v1/admin/logs", headers=headers, params={"action": "force_delete_user"})
    rows = logs.json()["data"]
    assert len(rows) == 1
    assert rows[0]["admin_id"] == admin_id
    assert rows[0]["target_id"] == user_id

    gone = await api_client.post(
        path,
        headers=headers,
        json={"confirmation": "CONFIRM_PERMANENT_DELETION", "reason": "confirmed fraud ring"},
    )
    assert gone.status_code == 404


async def test_admin_marks_and_restores_user(api_client) -> None:
    _, headers = await _admin_headers()
    user_id = await create_user()
    path = f"/v1/admin/retention/users/{user_id}"

    marked = await api_client.patch(
        path, headers=headers, json={"status": "marked_for_deletion", "reason": "policy review"}
    )
    assert marked.status_code == 200
    assert marked.json()["data"]["status"] == "marked_for_deletion"
    assert marked.json()["data"]["deletion_reason"] == "policy review"

    restored = await api_client.patch(
        path, headers=headers, json={"status": "active", "insight_retention_days": 180}
    )
    assert restored.status_code == 200
    data = restored.json()["data"]
    assert data["status"] == "active"
    assert data["preferences"]["insight_retention_days"] == 180

    logs = await api_client.get("/v1/admin/logs", headers=headers)
    actions = {row["action"] for row in logs.json()["data"]}
    assert {"update_user_retention_status", "update_retention_settings"} <= actions


async def test_rejected_status_change_leaves_preferences_untouched(api_client) -> None:
    _, headers = await _admin_headers()
    user_id = await create_user(marked_for_deletion_at=datetime.now(timezone.utc) - timedelta(days=2))

    response = await api_client.patch(
        f"/v1/admin/retention/users/{user_id}",
        headers=headers,
        json={"transaction_retention_days": 60, "status": "marked_for_deletion"},
    )

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "ALREADY_MARKED"
    assert (await load(User, user_id)).data_retention_preferences is None
    logs = await api_client.get("/v1/admin/logs", headers=headers)
    assert logs.json()["data"] == []


async def test_sweep_and_audit_endpoints(api_client) -> None:
    _, headers = await _admin_headers()
    await create_user(marked_for_deletion_at=datetime.now(timezone.utc) - timedelta(days=45))

    audit = await api_client.post("/v1/admin/retention/audit", headers=headers)
    assert audit.status_code == 200
    assert len(audit.json()["data"]["deletion_due"]) == 1

    dry = await api_client.post("/v1/admin/retention/sweep", headers=headers, params={"dry_run": "true"})
    assert dry.status_code == 200
    assert dry.json()["data"]["dry_run"] is True
    assert dry.json()["data"]["purged"] == []

    real = await api_client.post("/v1/admin/retention/sweep", headers=headers)
    assert real.status_code == 200
    assert len(real.json()["data"]["purged"]) == 1


async def test_client_admin_endpoints(api_client) -> None:
    _, headers = await _admin_headers()
    user_id = await create_user()
    client_id, _ = await create_client(user_id=user_id, usage_count=60, usage_quota=100)

    quota = await api_client.patch(
        f"/v1/admin/clients/{client_id}/quota", headers=headers, json={"usage_quota": 250}
    )
    assert quota.status_code == 200
    assert quota.json()["data"]["remaining"] == 190

    negative = await api_client.patch(
        f"/v1/admin/clients/{client_id}/quota", headers=headers, json={"usage_quota": -1}
    )
    assert negative.status_code == 422
    assert negative.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"

    reset = await api_client.post(f"/v1/admin/clients/{client_id}/reset-usage", headers=headers)
    assert reset.json()["data"]["usage_count"] == 0

    suspended = await api_client.post(
        f"/v1/admin/clients/{client_id}/status", headers=headers, json={"status": "suspended", "reason": "abuse"}
    )
    assert suspended.status_code == 200
    assert (await load(Client, client_id)).status == "suspended"

    invalid = await api_client.post(
        f"/v1/admin/clients/{client_id}/status", headers=headers, json={"status": "suspended"}
    )
    assert invalid.status_code == 409
    assert invalid.json()["error"]["code"] == "INVALID_STATUS_TRANSITION"

    missing = await api_client.post("/v1/admin/clients/unknown/reset-usage", headers=headers)
    assert missing.status_code == 404

    stats = await api_client.get("/v1/admin/clients/stats", headers=headers)
    assert stats.json()["data"]["by_status"] == {"suspended": 1}
