from __future__ import annotations

from datetime import datetime

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from finsight.domain.models import AdminLog, RetentionLog


def _retention_filters(
    stmt: Select,
    *,
    action: str | None,
    user_id: str | None,
    start_date: datetime | None,
    end_date: datetime | None,
) -> Select:
    if action:
        stmt = stmt.where(RetentionLog.action == action)
    if user_id:
        stmt = stmt.where(RetentionLog.user_id == user_id)
    if start_date:
        stmt = stmt.where(RetentionLog.timestamp >= start_date)
    if end_date:
        stmt = stmt.where(RetentionLog.timestamp <= end_date)
    return stmt


async def list_retention_logs(
    session: AsyncSession,
    *,
    action: str | None = None,
    user_id: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> tuple[list[RetentionLog], int]:
    # Return one page of entries, newest first, plus the total for pagination.
    filters = dict(action=action, user_id=user_id, start_date=start_date, end_date=end_date)
    count_stmt = _retention_filters(select(func.count(RetentionLog.id)), **filters)
    total = int((await session.execute(count_stmt)).scalar_one())

    stmt = _retention_filters(select(RetentionLog), **filters)
    stmt = stmt.order_by(RetentionLog.timestamp.desc(), RetentionLog.id.desc())
    stmt = stmt.offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all()), total


async def count_retention_actions_since(
    session: AsyncSession,
    *,
    since: datetime,
) -> dict[str, int]:
    # Aggregate recent activity by action for the admin stats view.
    result = await session.execute(
        select(RetentionLog.action, func.count(RetentionLog.id))
        .where(RetentionLog.timestamp >= since)
        .group_by(RetentionLog.action)
    )
    return {action: int(count) for action, count in result.all()}


async def list_admin_logs(
    session: AsyncSession,
    *,
    action: str | None = None,
    admin_id: str | None = None,
    offset: int = 0,
    limit: int = 50,
) -> tuple[list[AdminLog], int]:
    count_stmt = select(func.count(AdminLog.id))
    stmt = select(AdminLog)
    if action:
        count_stmt = count_stmt.where(AdminLog.action == action)
        stmt = stmt.where(AdminLog.action == action)
    if admin_id:
        count_stmt = count_stmt.where(AdminLog.admin_id == admin_id)
        stmt = stmt.where(AdminLog.admin_id == admin_id)
    total = int((await session.execute(count_stmt)).scalar_one())
    stmt = stmt.order_by(AdminLog.timestamp.desc(), AdminLog.id.desc()).offset(offset).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars().all()), total
