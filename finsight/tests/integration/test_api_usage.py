from __future__ import annotations

from datetime import datetime, timedelta, timezone

from finsight.domain.models import Client
from finsight.services.notifications import EVENT_QUOTA_EXCEEDED, EVENT_USAGE_THRESHOLD
from finsight.tests.utils.seed import bearer, create_client, create_token, create_user, load


async def test_health_reports_database_and_capabilities(api_client) -> None:
    response = await api_client.get("/v1/health", headers={"X-Request-Id": "req-health"})

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["data"]["database"] == "ok"
    assert body["data"]["capabilities"] == {"audit_log": True, "plaid_integration": True}
    assert body["meta"]["request_id"] == "req-health"
    assert response.headers["X-Request-Id"] == "req-health"


async def test_usage_is_metered_until_quota_runs_out(api_client, notifications) -> None:
    user_id = await create_user()
    client_id, api_key = await create_client(user_id=user_id, usage_quota=2)

    first = await api_client.get("/v1/usage", headers=bearer(api_key))
    assert first.status_code == 200
    assert first.json()["data"]["usage_count"] == 1
    assert first.json()["data"]["usage_percentage"] == 50
    assert first.headers["X-Quota-Remaining"] == "1"
    assert first.headers["X-Quota-Limit"] == "2"

    second = await api_client.get("/v1/usage", headers=bearer(api_key))
    assert second.status_code == 200
    assert second.headers["X-Quota-Remaining"] == "0"

    third = await api_client.get("/v1/usage", headers=bearer(api_key))
    assert third.status_code == 429
    body = third.json()
    assert body["success"] is False
    assert body["error"]["code"] == "QUOTA_EXCEEDED"
    assert body["error"]["kind"] == "capacity_exceeded"
    assert body["error"]["details"]["usage_quota"] == 2
    assert third.headers["X-Quota-Remaining"] == "0"

    assert (await load(Client, client_id)).usage_count == 2
    await notifications.drain()
    assert [n["threshold_pct"] for n in notifications.of_type(EVENT_USAGE_THRESHOLD)] == [50, 95]
    assert len(notifications.of_type(EVENT_QUOTA_EXCEEDED)) == 1


async def test_threshold_notice_after_seventy_five_percent(api_client, notifications) -> None:
    user_id = await create_user()
    _, api_key = await create_client(
        user_id=user_id, usage_count=74, usage_quota=100, last_notified_threshold=50
    )

    response = await api_client.get("/v1/usage", headers=bearer(api_key))

    assert response.status_code == 200
    assert response.json()["data"]["usage_count"] == 75
    await notifications.drain()
    notices = notifications.of_type(EVENT_USAGE_THRESHOLD)
    assert len(notices) == 1
    assert notices[0]["threshold_pct"] == 75
    assert notices[0]["remaining"] == 25


async def test_inactive_client_is_rejected_without_consuming(api_client) -> None:
    user_id = await create_user()
    client_id, api_key = await create_client(user_id=user_id, status="suspended", usage_count=3)

    response = await api_client.get("/v1/usage", headers=bearer(api_key))

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "CLIENT_INACTIVE"
    assert response.json()["message"] == "Client has been suspended"
    assert (await load(Client, client_id)).usage_count == 3


async def test_client_scoped_access_token_is_metered(api_client) -> None:
    user_id = await create_user()
    client_id, _ = await create_client(user_id=user_id)
    token = await create_token(user_id=user_id, client_id=client_id)

    response = await api_client.get("/v1/usage", headers=bearer(token))

    assert response.status_code == 200
    assert response.json()["data"]["client_id"] == client_id


async def test_user_token_without_client_cannot_meter(api_client) -> None:
    user_id = await create_user()
    token = await create_token(user_id=user_id)

    response = await api_client.get("/v1/usage", headers=bearer(token))

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "CLIENT_REQUIRED"


async def test_missing_revoked_and_expired_credentials(api_client) -> None:
    user_id = await create_user()
    revoked = await create_token(user_id=user_id, revoked_at=datetime.now(timezone.utc))
    expired = await create_token(user_id=user_id, ttl=timedelta(hours=-1))

    missing = await api_client.get("/v1/usage")
    assert missing.status_code == 401
    assert missing.json()["error"]["code"] == "AUTH_UNAUTHORIZED"

    for raw in (revoked, expired, "fsat_unknown_value"):
        response = await api_client.get("/v1/usage", headers=bearer(raw))
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTH_UNAUTHORIZED"
