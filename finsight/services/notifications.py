from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import json
import logging
from typing import Any, Awaitable, Callable

import httpx

from finsight.core.config import get_settings


logger = logging.getLogger(__name__)

EVENT_USAGE_THRESHOLD = "usage.threshold_reached"
EVENT_QUOTA_EXCEEDED = "usage.quota_exceeded"
EVENT_MONTHLY_SUMMARY = "usage.monthly_summary"
EVENT_ACCOUNT_CLOSURE = "account.closure"
EVENT_INACTIVITY_WARNING = "account.inactivity_warning"

CLOSURE_STAGE_REQUESTED = "requested"
CLOSURE_STAGE_CANCELLED = "cancelled"
CLOSURE_STAGE_DELETED = "deleted"

Transport = Callable[[str, dict[str, Any]], Awaitable[None]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


async def deliver_webhook(event_type: str, payload: dict[str, Any]) -> None:
    # Keep delivery small: noop for local/dev, a JSON webhook for live integrations.
    settings = get_settings()
    destination = settings.notify_webhook_url
    if destination.startswith("noop://"):
        return
    body = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    headers = {"Content-Type": "application/json", "X-Finsight-Event": event_type}
    timeout_s = max(0.2, settings.notify_timeout_ms / 1000.0)
    async with httpx.AsyncClient(timeout=timeout_s) as client:
        response = await client.post(destination, content=body, headers=headers)
        response.raise_for_status()


class NotificationDispatcher:
    """Fire-and-forget sender for usage and account lifecycle notices.

    Every ``send_*`` method returns immediately after scheduling delivery on
    the running loop. Delivery failures are logged and never reach the caller.
    """

    def __init__(self, *, transport: Transport | None = None) -> None:
        self._transport = transport or deliver_webhook
        self._pending: set[asyncio.Task[None]] = set()

    def send_usage_threshold_notice(
        self,
        *,
        user_id: str,
        email: str | None,
        client_id: str,
        threshold_pct: int,
        usage_count: int,
        usage_quota: int,
        reset_date: datetime | None,
    ) -> asyncio.Task[None] | None:
        return self._dispatch(
            EVENT_USAGE_THRESHOLD,
            {
                "user_id": user_id,
                "email": email,
                "client_id": client_id,
                "threshold_pct": threshold_pct,
                "usage_count": usage_count,
                "usage_quota": usage_quota,
                "remaining": max(usage_quota - usage_count, 0),
                "reset_date": _iso(reset_date),
            },
        )

    def send_quota_exceeded_notice(
        self,
        *,
        user_id: str,
        email: str | None,
        client_id: str,
        usage_count: int,
        usage_quota: int,
        reset_date: datetime | None,
    ) -> asyncio.Task[None] | None:
        return self._dispatch(
            EVENT_QUOTA_EXCEEDED,
            {
                "user_id": user_id,
                "email": email,
                "client_id": client_id,
                "usage_count": usage_count,
                "usage_quota": usage_quota,
                "reset_date": _iso(reset_date),
            },
        )

    def send_monthly_summary(
        self,
        *,
        user_id: str,
        email: str | None,
        client_id: str,
        previous_usage: int,
        usage_quota: int,
        usage_percentage: int,
        next_reset_date: datetime,
    ) -> asyncio.Task[None] | None:
        return self._dispatch(
            EVENT_MONTHLY_SUMMARY,
            {
                "user_id": user_id,
                "email": email,
                "client_id": client_id,
                "previous_usage": previous_usage,
                "usage_quota": usage_quota,
                "usage_percentage": usage_percentage,
                "next_reset_date": _iso(next_reset_date),
            },
        )

    def send_account_closure_notice(
        self,
        *,
        user_id: str,
        email: str | None,
        stage: str,
        scheduled_deletion_date: datetime | None = None,
        reason: str | None = None,
    ) -> asyncio.Task[None] | None:
        return self._dispatch(
            EVENT_ACCOUNT_CLOSURE,
            {
                "user_id": user_id,
                "email": email,
                "stage": stage,
                "scheduled_deletion_date": _iso(scheduled_deletion_date),
                "reason": reason,
            },
        )

    def send_inactivity_warning(
        self,
        *,
        user_id: str,
        email: str | None,
        last_activity_at: datetime | None,
        marks_for_deletion_at: datetime,
    ) -> asyncio.Task[None] | None:
        return self._dispatch(
            EVENT_INACTIVITY_WARNING,
            {
                "user_id": user_id,
                "email": email,
                "last_activity_at": _iso(last_activity_at),
                "marks_for_deletion_at": _iso(marks_for_deletion_at),
            },
        )

    async def drain(self) -> None:
        # Wait for in-flight deliveries, e.g. on worker shutdown.
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _dispatch(self, event_type: str, data: dict[str, Any]) -> asyncio.Task[None] | None:
        payload = {"event_type": event_type, "occurred_at": _utc_now().isoformat(), **data}
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("notification_dropped_no_loop event_type=%s", event_type)
            return None
        task = loop.create_task(self._deliver_safely(event_type, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _deliver_safely(self, event_type: str, payload: dict[str, Any]) -> None:
        try:
            await self._transport(event_type, payload)
        except Exception as exc:  # noqa: BLE001 - notification failures never reach the caller.
            logger.warning(
                "notification_delivery_failed event_type=%s user_id=%s",
                event_type,
                payload.get("user_id"),
                exc_info=exc,
            )


_dispatcher: NotificationDispatcher | None = None


def get_notification_dispatcher() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher()
    return _dispatcher


def reset_notification_dispatcher() -> None:
    # Reset cached services for deterministic tests.
    global _dispatcher
    _dispatcher = None
