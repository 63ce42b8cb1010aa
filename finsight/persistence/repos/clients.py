from __future__ import annotations

from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from finsight.domain.models import CLIENT_STATUS_ACTIVE, Client


async def get_client(session: AsyncSession, client_id: str, *, for_update: bool = False) -> Client | None:
    stmt = select(Client).where(Client.client_id == client_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_due_client_ids(session: AsyncSession, *, now: datetime) -> list[str]:
    # Active clients whose cycle has ended; the reset itself re-checks per client.
    result = await session.execute(
        select(Client.client_id)
        .where(Client.status == CLIENT_STATUS_ACTIVE, Client.reset_date <= now)
        .order_by(Client.reset_date.asc(), Client.client_id.asc())
    )
    return [row[0] for row in result.all()]


async def client_usage_stats(session: AsyncSession) -> dict[str, object]:
    status_rows = await session.execute(
        select(Client.status, func.count(Client.client_id)).group_by(Client.status)
    )
    totals = await session.execute(
        select(
            func.coalesce(func.sum(Client.usage_count), 0),
            func.coalesce(func.sum(Client.usage_quota), 0),
            func.count(Client.client_id).filter(Client.usage_count >= Client.usage_quota),
        ).where(Client.status == CLIENT_STATUS_ACTIVE)
    )
    usage_total, quota_total, exhausted = totals.one()
    return {
        "by_status": {status: int(count) for status, count in status_rows.all()},
        "active_usage_total": int(usage_total),
        "active_quota_total": int(quota_total),
        "active_clients_exhausted": int(exhausted or 0),
    }
