from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from finsight.core.errors import ClientInactive, ClientNotFound, QuotaExceeded
from finsight.domain.models import CLIENT_STATUS_ACTIVE, Client, User
from finsight.persistence.db import SessionLocal, atomic
from finsight.services.notifications import NotificationDispatcher, get_notification_dispatcher


logger = logging.getLogger(__name__)

# Usage percentages that trigger a proactive notice, ascending.
THRESHOLD_LADDER: tuple[int, ...] = (25, 50, 75, 90, 95)
# Stored in last_notified_threshold once the quota-exceeded notice went out.
QUOTA_EXCEEDED_MARKER = 100


@dataclass(frozen=True)
class ClientSnapshot:
    # Immutable view of a client row attached to the request after consumption.
    client_id: str
    user_id: str
    status: str
    usage_count: int
    usage_quota: int
    reset_date: datetime
    last_used_at: datetime | None
    last_notified_threshold: int

    @property
    def remaining(self) -> int:
        return max(self.usage_quota - self.usage_count, 0)

    @classmethod
    def from_row(cls, client: Client) -> "ClientSnapshot":
        return cls(
            client_id=client.client_id,
            user_id=client.user_id,
            status=client.status,
            usage_count=int(client.usage_count),
            usage_quota=int(client.usage_quota),
            reset_date=client.reset_date,
            last_used_at=client.last_used_at,
            last_notified_threshold=int(client.last_notified_threshold or 0),
        )


@dataclass(frozen=True)
class QuotaResult:
    allowed: bool
    client: ClientSnapshot


@dataclass(frozen=True)
class ResetSummary:
    client_id: str
    user_id: str
    previous_usage: int
    usage_quota: int
    usage_percentage: int
    previous_reset_date: datetime | None
    next_reset_date: datetime


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def first_of_next_month(now: datetime) -> datetime:
    # Cycles always roll over at 00:00 UTC on the 1st, whatever day the reset ran.
    current = now.astimezone(timezone.utc)
    if current.month == 12:
        return datetime(current.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(current.year, current.month + 1, 1, tzinfo=timezone.utc)


def usage_percentage(usage_count: int, usage_quota: int) -> int:
    # Integer floor of usage/quota*100; a zero quota counts as fully used.
    if usage_quota <= 0:
        return QUOTA_EXCEEDED_MARKER
    return (usage_count * 100) // usage_quota


def highest_crossed_threshold(
    pct: int,
    last_notified: int,
    ladder: tuple[int, ...] = THRESHOLD_LADDER,
) -> int | None:
    crossed = [threshold for threshold in ladder if pct >= threshold and last_notified < threshold]
    return max(crossed) if crossed else None


async def _load_client(session: AsyncSession, client_id: str) -> Client | None:
    # Bypass the identity map so values written by conditional UPDATEs are visible.
    result = await session.execute(
        select(Client)
        .where(Client.client_id == client_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


class QuotaService:
    def __init__(
        self,
        *,
        time_provider: Callable[[], datetime] | None = None,
        dispatcher: NotificationDispatcher | None = None,
    ) -> None:
        # Allow time injection for deterministic rollover tests.
        self._time_provider = time_provider or _utc_now
        self._dispatcher = dispatcher

    @property
    def dispatcher(self) -> NotificationDispatcher:
        return self._dispatcher or get_notification_dispatcher()

    async def check_and_consume(self, *, session: AsyncSession, client_id: str) -> QuotaResult:
        # One conditional UPDATE serializes concurrent requests for the same client.
        now = self._time_provider()
        async with atomic(session):
            result = await session.execute(
                update(Client)
                .where(
                    Client.client_id == client_id,
                    Client.status == CLIENT_STATUS_ACTIVE,
                    Client.usage_count < Client.usage_quota,
                )
                .values(usage_count=Client.usage_count + 1, last_used_at=now)
                .execution_options(synchronize_session=False)
            )
            consumed = result.rowcount == 1
            client = await _load_client(session, client_id)

        if client is None:
            raise ClientNotFound(client_id)
        if not consumed:
            if client.status != CLIENT_STATUS_ACTIVE:
                raise ClientInactive(client_id, client.status)
            raise QuotaExceeded(client_id, int(client.usage_quota), client.reset_date)
        return QuotaResult(allowed=True, client=ClientSnapshot.from_row(client))

    async def evaluate_thresholds(self, *, session: AsyncSession, client_id: str) -> int | None:
        # Record the crossing before notifying; losing the conditional update means another request owns it.
        async with atomic(session):
            client = await _load_client(session, client_id)
            if client is None:
                return None
            pct = usage_percentage(int(client.usage_count), int(client.usage_quota))
            threshold = highest_crossed_threshold(pct, int(client.last_notified_threshold or 0))
            if threshold is None:
                return None
            result = await session.execute(
                update(Client)
                .where(Client.client_id == client_id, Client.last_notified_threshold < threshold)
                .values(last_notified_threshold=threshold)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            owner = await session.get(User, client.user_id)

        self.dispatcher.send_usage_threshold_notice(
            user_id=client.user_id,
            email=owner.email if owner else None,
            client_id=client.client_id,
            threshold_pct=threshold,
            usage_count=int(client.usage_count),
            usage_quota=int(client.usage_quota),
            reset_date=client.reset_date,
        )
        logger.info("usage_threshold_crossed client_id=%s threshold=%s", client_id, threshold)
        return threshold

    async def evaluate_quota_exceeded(self, *, session: AsyncSession, client_id: str) -> bool:
        # Fire the exhausted notice once per cycle, independent of the ladder.
        async with atomic(session):
            result = await session.execute(
                update(Client)
                .where(
                    Client.client_id == client_id,
                    Client.usage_count >= Client.usage_quota,
                    Client.last_notified_threshold < QUOTA_EXCEEDED_MARKER,
                )
                .values(last_notified_threshold=QUOTA_EXCEEDED_MARKER)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return False
            client = await _load_client(session, client_id)
            if client is None:
                return False
            owner = await session.get(User, client.user_id)

        self.dispatcher.send_quota_exceeded_notice(
            user_id=client.user_id,
            email=owner.email if owner else None,
            client_id=client.client_id,
            usage_count=int(client.usage_count),
            usage_quota=int(client.usage_quota),
            reset_date=client.reset_date,
        )
        logger.info("usage_quota_exhausted client_id=%s", client_id)
        return True

    async def process_usage_notifications(self, client_id: str) -> None:
        # Post-response step; owns its session and never raises into the request.
        async with SessionLocal() as session:
            # Each check stands alone so a ladder failure cannot suppress the exceeded notice.
            for name, evaluate in (
                ("thresholds", self.evaluate_thresholds),
                ("quota_exceeded", self.evaluate_quota_exceeded),
            ):
                try:
                    await evaluate(session=session, client_id=client_id)
                except Exception as exc:  # noqa: BLE001 - notifications must not fail requests.
                    if session.in_transaction():
                        await session.rollback()
                    logger.warning(
                        "usage_notification_failed client_id=%s check=%s", client_id, name, exc_info=exc
                    )

    async def reset_cycle(self, *, session: AsyncSession, client_id: str) -> ResetSummary | None:
        # Guarded on reset_date so a cycle is reset exactly once even if the sweep repeats.
        now = self._time_provider()
        next_reset = first_of_next_month(now)
        async with atomic(session):
            result = await session.execute(
                update(Client)
                .where(
                    Client.client_id == client_id,
                    Client.status == CLIENT_STATUS_ACTIVE,
                    Client.reset_date <= now,
                )
                .values(
                    previous_usage=Client.usage_count,
                    last_reset_date=Client.reset_date,
                    usage_count=0,
                    last_notified_threshold=0,
                    reset_date=next_reset,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            client = await _load_client(session, client_id)
            if client is None:
                return None
            owner = await session.get(User, client.user_id)

        previous_usage = int(client.previous_usage or 0)
        summary = ResetSummary(
            client_id=client.client_id,
            user_id=client.user_id,
            previous_usage=previous_usage,
            usage_quota=int(client.usage_quota),
            usage_percentage=usage_percentage(previous_usage, int(client.usage_quota)),
            previous_reset_date=client.last_reset_date,
            next_reset_date=client.reset_date,
        )
        self.dispatcher.send_monthly_summary(
            user_id=summary.user_id,
            email=owner.email if owner else None,
            client_id=summary.client_id,
            previous_usage=summary.previous_usage,
            usage_quota=summary.usage_quota,
            usage_percentage=summary.usage_percentage,
            next_reset_date=summary.next_reset_date,
        )
        logger.info(
            "quota_cycle_reset client_id=%s previous_usage=%s next_reset=%s",
            client_id,
            previous_usage,
            next_reset.isoformat(),
        )
        return summary


_quota_service: QuotaService | None = None


def get_quota_service() -> QuotaService:
    # Cache the quota service for reuse across requests.
    global _quota_service
    if _quota_service is None:
        _quota_service = QuotaService()
    return _quota_service


def reset_quota_service() -> None:
    # Reset cached services for deterministic tests.
    global _quota_service
    _quota_service = None


def quota_headers(snapshot: ClientSnapshot) -> dict[str, str]:
    return {
        "X-Quota-Limit": str(snapshot.usage_quota),
        "X-Quota-Used": str(snapshot.usage_count),
        "X-Quota-Remaining": str(snapshot.remaining),
        "X-Quota-Reset": snapshot.reset_date.isoformat(),
    }
