from __future__ import annotations

from datetime import datetime, timedelta, timezone

from finsight.domain.models import PlaidItem, User
from finsight.services.notifications import EVENT_ACCOUNT_CLOSURE
from finsight.tests.utils.seed import (
    bearer,
    create_financial_data,
    create_plaid_item,
    create_token,
    create_user,
    load,
)


async def _user_headers(**user_kwargs) -> tuple[str, dict[str, str]]:
    user_id = await create_user(**user_kwargs)
    token = await create_token(user_id=user_id)
    return user_id, bearer(token)


async def test_retention_settings_defaults_and_update(api_client) -> None:
    user_id, headers = await _user_headers()

    current = await api_client.get("/v1/account/retention", headers=headers)
    assert current.status_code == 200
    assert current.json()["data"]["preferences"]["transaction_retention_days"] == 730
    assert current.json()["data"]["scheduled_deletion_date"] is None

    updated = await api_client.patch(
        "/v1/account/retention",
        headers=headers,
        json={"transaction_retention_days": 365, "email_notifications": False},
    )
    assert updated.status_code == 200
    preferences = updated.json()["data"]["preferences"]
    assert preferences["transaction_retention_days"] == 365
    assert preferences["email_notifications"] is False
    assert (await load(User, user_id)).data_retention_preferences["transaction_retention_days"] == 365


async def test_retention_setting_out_of_bounds(api_client) -> None:
    _, headers = await _user_headers()

    response = await api_client.patch(
        "/v1/account/retention", headers=headers, json={"insight_retention_days": 10}
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "INVALID_RETENTION_SETTING"


async def test_closure_round_trip(api_client, notifications) -> None:
    user_id, headers = await _user_headers()

    wrong = await api_client.post("/v1/account/closure", headers=headers, json={"confirmation": "yes"})
    assert wrong.status_code == 400
    assert wrong.json()["error"]["code"] == "CONFIRMATION_REQUIRED"
    assert wrong.json()["error"]["details"] == {"expected": "DELETE_MY_ACCOUNT"}

    closed = await api_client.post(
        "/v1/account/closure",
        headers=headers,
        json={"confirmation": "DELETE_MY_ACCOUNT", "reason": "switching apps"},
    )
    assert closed.status_code == 200
    data = closed.json()["data"]
    marked_at = datetime.fromisoformat(data["marked_for_deletion_at"])
    scheduled = datetime.fromisoformat(data["scheduled_deletion_date"])
    assert scheduled - marked_at == timedelta(days=30)
    assert data["grace_period_days"] == 30

    again = await api_client.post(
        "/v1/account/closure", headers=headers, json={"confirmation": "DELETE_MY_ACCOUNT"}
    )
    assert again.status_code == 409
    assert again.json()["error"]["code"] == "ALREADY_MARKED"

    cancelled = await api_client.post("/v1/account/closure/cancel", headers=headers)
    assert cancelled.status_code == 200
    assert (await load(User, user_id)).status == "active"

    not_marked = await api_client.post("/v1/account/closure/cancel", headers=headers)
    assert not_marked.status_code == 409
    assert not_marked.json()["error"]["code"] == "NOT_MARKED"

    await notifications.drain()
    assert [n["stage"] for n in notifications.of_type(EVENT_ACCOUNT_CLOSURE)] == ["requested", "cancelled"]


async def test_closure_needs_two_factor_session(api_client) -> None:
    user_id = await create_user(two_factor_enabled=True)
    plain = await create_token(user_id=user_id)
    verified = await create_token(user_id=user_id, two_factor_verified=True)
    payload = {"confirmation": "DELETE_MY_ACCOUNT"}

    denied = await api_client.post("/v1/account/closure", headers=bearer(plain), json=payload)
    assert denied.status_code == 403
    assert denied.json()["error"]["code"] == "TWO_FACTOR_REQUIRED"

    allowed = await api_client.post("/v1/account/closure", headers=bearer(verified), json=payload)
    assert allowed.status_code == 200


async def test_cancel_after_window_is_rejected(api_client) -> None:
    _, headers = await _user_headers(
        marked_for_deletion_at=datetime.now(timezone.utc) - timedelta(days=31)
    )

    response = await api_client.post("/v1/account/closure/cancel", headers=headers)

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "GRACE_PERIOD_EXPIRED"


async def test_disconnect_bank_connection(api_client) -> None:
    user_id, headers = await _user_headers()
    item_id = await create_plaid_item(user_id=user_id)

    response = await api_client.post(f"/v1/account/plaid-items/{item_id}/disconnect", headers=headers)
    assert response.status_code == 200
    data = response.json()["data"]
    gap = datetime.fromisoformat(data["deletion_scheduled_at"]) - datetime.fromisoformat(data["disconnected_at"])
    assert gap == timedelta(days=30)
    assert (await load(PlaidItem, item_id)).status == "disconnected"

    missing = await api_client.post("/v1/account/plaid-items/nope/disconnect", headers=headers)
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "PLAID_ITEM_NOT_FOUND"


async def test_export_contains_financial_data(api_client) -> None:
    user_id, headers = await _user_headers()
    now = datetime.now(timezone.utc)
    await create_financial_data(user_id=user_id, posted_at=[now - timedelta(days=1), now - timedelta(days=2)])

    response = await api_client.get("/v1/account/export", headers=headers)

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["profile"]["id"] == user_id
    assert len(data["accounts"]) == 1
    assert len(data["transactions"]) == 2
    assert data["retention"]["status"] == "active"
