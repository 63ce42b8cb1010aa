from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable
from uuid import uuid4

from sqlalchemy import func, select

from finsight.domain.models import (
    Account,
    AuthToken,
    CLIENT_STATUS_ACTIVE,
    Client,
    InsightMetric,
    PLAID_STATUS_ACTIVE,
    PlaidItem,
    SpendingPattern,
    Transaction,
    User,
    USER_STATUS_ACTIVE,
    USER_STATUS_MARKED,
)
from finsight.persistence.db import SessionLocal
from finsight.services.auth.api_keys import CLIENT_KEY_PREFIX, generate_secret, hash_token, issue_access_token


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class Clock:
    # Mutable time source injected as a service time_provider.
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


async def create_user(
    *,
    role: str = "user",
    email: str | None = None,
    last_login_at: datetime | None = None,
    created_at: datetime | None = None,
    marked_for_deletion_at: datetime | None = None,
    inactivity_warning_date: datetime | None = None,
    two_factor_enabled: bool = False,
    preferences: dict[str, Any] | None = None,
) -> str:
    user_id = uuid4().hex
    async with SessionLocal() as session:
        session.add(
            User(
                id=user_id,
                email=email or f"{user_id}@example.test",
                role=role,
                status=USER_STATUS_MARKED if marked_for_deletion_at else USER_STATUS_ACTIVE,
                marked_for_deletion_at=marked_for_deletion_at,
                deletion_reason="requested" if marked_for_deletion_at else None,
                inactivity_warning_date=inactivity_warning_date,
                two_factor_enabled=two_factor_enabled,
                data_retention_preferences=preferences,
                last_login_at=last_login_at,
                created_at=created_at or datetime.now(timezone.utc),
            )
        )
        await session.commit()
    return user_id


async def create_client(
    *,
    user_id: str,
    status: str = CLIENT_STATUS_ACTIVE,
    usage_count: int = 0,
    usage_quota: int = 100,
    reset_date: datetime | None = None,
    last_notified_threshold: int = 0,
) -> tuple[str, str]:
    # Returns (client_id, raw API key).
    client_id, raw_key, digest = generate_secret(CLIENT_KEY_PREFIX)
    async with SessionLocal() as session:
        session.add(
            Client(
                client_id=client_id,
                user_id=user_id,
                name="test-client",
                api_key_hash=digest,
                status=status,
                usage_count=usage_count,
                usage_quota=usage_quota,
                reset_date=reset_date or datetime.now(timezone.utc) + timedelta(days=20),
                last_notified_threshold=last_notified_threshold,
            )
        )
        await session.commit()
    return client_id, raw_key


async def create_token(
    *,
    user_id: str,
    client_id: str | None = None,
    two_factor_verified: bool = False,
    ttl: timedelta = timedelta(hours=1),
    revoked_at: datetime | None = None,
    now: datetime | None = None,
) -> str:
    async with SessionLocal() as session:
        raw = await issue_access_token(
            session,
            user_id=user_id,
            client_id=client_id,
            two_factor_verified=two_factor_verified,
            ttl=ttl,
            now=now,
        )
        await session.flush()
        if revoked_at is not None:
            token = (
                await session.execute(select(AuthToken).where(AuthToken.token_hash == hash_token(raw)))
            ).scalar_one()
            token.revoked_at = revoked_at
        await session.commit()
    return raw


def bearer(raw: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {raw}"}


async def create_plaid_item(
    *,
    user_id: str,
    status: str = PLAID_STATUS_ACTIVE,
    disconnected_at: datetime | None = None,
) -> str:
    item_id = f"item-{uuid4().hex[:12]}"
    async with SessionLocal() as session:
        session.add(
            PlaidItem(
                item_id=item_id,
                user_id=user_id,
                institution_name="Test Bank",
                status=status,
                access_token_hash="hashed-access-token",
                disconnected_at=disconnected_at,
                deletion_scheduled_at=disconnected_at + timedelta(days=30) if disconnected_at else None,
            )
        )
        await session.commit()
    return item_id


async def create_financial_data(
    *,
    user_id: str,
    plaid_item_id: str | None = None,
    posted_at: Iterable[datetime] = (),
    insights_at: Iterable[datetime] = (),
    with_pattern: bool = True,
) -> str:
    # One account with the given transactions, plus insight metrics and a spending pattern.
    account_id = uuid4().hex
    async with SessionLocal() as session:
        session.add(
            Account(
                id=account_id,
                user_id=user_id,
                plaid_item_id=plaid_item_id,
                name="Checking",
                account_type="depository",
                current_balance=Decimal("1250.00"),
            )
        )
        await session.flush()
        for when in posted_at:
            session.add(
                Transaction(
                    id=uuid4().hex,
                    user_id=user_id,
                    account_id=account_id,
                    amount=Decimal("-12.50"),
                    category="groceries",
                    posted_at=when,
                )
            )
        for when in insights_at:
            session.add(
                InsightMetric(
                    id=uuid4().hex,
                    user_id=user_id,
                    query_type="spending_summary",
                    response_time_ms=120,
                    generated_at=when,
                )
            )
        if with_pattern:
            session.add(
                SpendingPattern(
                    id=uuid4().hex,
                    user_id=user_id,
                    category="groceries",
                    monthly_average=Decimal("310.00"),
                    computed_at=datetime.now(timezone.utc),
                )
            )
        await session.commit()
    return account_id


async def count_rows(model: Any, **filters: Any) -> int:
    column = list(model.__table__.primary_key.columns)[0]
    stmt = select(func.count(column))
    for name, value in filters.items():
        stmt = stmt.where(getattr(model, name) == value)
    async with SessionLocal() as session:
        return int((await session.execute(stmt)).scalar_one())


async def load(model: Any, key: str) -> Any:
    async with SessionLocal() as session:
        return await session.get(model, key)
