from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from finsight.core.config import SYSTEM_ACTOR_ID
from finsight.domain.models import PlaidItem, User, USER_STATUS_MARKED


async def get_user(session: AsyncSession, user_id: str, *, for_update: bool = False) -> User | None:
    stmt = select(User).where(User.id == user_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_users_for_retention(session: AsyncSession) -> list[User]:
    # The system actor never participates in retention classification.
    result = await session.execute(select(User).where(User.id != SYSTEM_ACTOR_ID).order_by(User.id))
    return list(result.scalars().all())


async def list_marked_users(
    session: AsyncSession,
    *,
    offset: int = 0,
    limit: int = 20,
) -> tuple[list[User], int]:
    # Oldest marks first so the soonest deletions lead the page.
    total = int(
        (
            await session.execute(
                select(func.count(User.id)).where(User.status == USER_STATUS_MARKED)
            )
        ).scalar_one()
    )
    result = await session.execute(
        select(User)
        .where(User.status == USER_STATUS_MARKED)
        .order_by(User.marked_for_deletion_at.asc(), User.id.asc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all()), total


async def count_users_by_status(session: AsyncSession) -> dict[str, int]:
    result = await session.execute(
        select(User.status, func.count(User.id))
        .where(User.id != SYSTEM_ACTOR_ID)
        .group_by(User.status)
    )
    return {status: int(count) for status, count in result.all()}


async def list_plaid_items(session: AsyncSession, *, user_id: str | None = None) -> list[PlaidItem]:
    stmt = select(PlaidItem)
    if user_id is not None:
        stmt = stmt.where(PlaidItem.user_id == user_id)
    result = await session.execute(stmt.order_by(PlaidItem.item_id))
    return list(result.scalars().all())


async def count_plaid_items_by_status(session: AsyncSession) -> dict[str, int]:
    result = await session.execute(
        select(PlaidItem.status, func.count(PlaidItem.item_id)).group_by(PlaidItem.status)
    )
    return {status: int(count) for status, count in result.all()}
