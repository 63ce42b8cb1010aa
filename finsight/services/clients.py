from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Any, Callable

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from finsight.core.config import get_settings
from finsight.core.errors import ClientNotFound, InvalidStatusTransition, UserNotFound, ValidationError
from finsight.domain.models import (
    AuthToken,
    CLIENT_STATUS_ACTIVE,
    CLIENT_STATUS_PENDING,
    CLIENT_STATUS_REVOKED,
    CLIENT_STATUS_SUSPENDED,
    Client,
)
from finsight.persistence.db import atomic
from finsight.persistence.repos.clients import client_usage_stats, get_client
from finsight.persistence.repos.users import get_user
from finsight.services.audit import AuditLogSink, get_audit_sink
from finsight.services.auth.api_keys import CLIENT_KEY_PREFIX, generate_secret
from finsight.services.quota import ClientSnapshot, first_of_next_month


logger = logging.getLogger(__name__)

ACTION_CLIENT_REGISTERED = "client_registered"
ACTION_QUOTA_UPDATED = "update_client_quota"
ACTION_USAGE_RESET = "reset_client_usage"
ACTION_STATUS_CHANGED = "update_client_status"

# Allowed source states for each target status.
_TRANSITIONS: dict[str, frozenset[str]] = {
    CLIENT_STATUS_ACTIVE: frozenset({CLIENT_STATUS_PENDING, CLIENT_STATUS_SUSPENDED, CLIENT_STATUS_REVOKED}),
    CLIENT_STATUS_SUSPENDED: frozenset({CLIENT_STATUS_ACTIVE, CLIENT_STATUS_PENDING}),
    CLIENT_STATUS_REVOKED: frozenset({CLIENT_STATUS_PENDING, CLIENT_STATUS_ACTIVE, CLIENT_STATUS_SUSPENDED}),
}


@dataclass(frozen=True)
class RegisteredClient:
    client: ClientSnapshot
    api_key: str


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def validate_transition(current: str, target: str) -> None:
    allowed = _TRANSITIONS.get(target)
    if allowed is None:
        raise InvalidStatusTransition(f"Unsupported client status: {target}")
    if current not in allowed:
        raise InvalidStatusTransition(f"Cannot move client from {current} to {target}")


class ClientAdminService:
    def __init__(
        self,
        *,
        time_provider: Callable[[], datetime] | None = None,
        audit: AuditLogSink | None = None,
    ) -> None:
        self._time_provider = time_provider or _utc_now
        self._audit = audit or get_audit_sink()

    async def register_client(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        name: str | None = None,
        usage_quota: int | None = None,
    ) -> RegisteredClient:
        # New clients start pending with a cycle ending on the next 1st of the month.
        now = self._time_provider()
        quota = get_settings().quota_default_limit if usage_quota is None else usage_quota
        if quota < 0:
            raise ValidationError("usage_quota must be zero or greater")
        client_id, raw_key, digest = generate_secret(CLIENT_KEY_PREFIX)
        async with atomic(session):
            if await get_user(session, user_id) is None:
                raise UserNotFound(user_id)
            client = Client(
                client_id=client_id,
                user_id=user_id,
                name=name,
                api_key_hash=digest,
                status=CLIENT_STATUS_PENDING,
                usage_count=0,
                usage_quota=quota,
                reset_date=first_of_next_month(now),
                last_notified_threshold=0,
                created_at=now,
            )
            session.add(client)
            self._audit.append(
                session,
                action=ACTION_CLIENT_REGISTERED,
                user_id=user_id,
                actor_id=user_id,
                details={"client_id": client_id, "usage_quota": quota},
                timestamp=now,
            )
        logger.info("client_registered client_id=%s user_id=%s", client_id, user_id)
        return RegisteredClient(client=ClientSnapshot.from_row(client), api_key=raw_key)

    async def update_quota(
        self,
        session: AsyncSession,
        *,
        client_id: str,
        usage_quota: int,
        admin_id: str,
        ip_address: str | None = None,
    ) -> ClientSnapshot:
        # Notification progress is left alone so a raised quota never re-sends a notice.
        if usage_quota < 0:
            raise ValidationError("usage_quota must be zero or greater")
        now = self._time_provider()
        async with atomic(session):
            client = await get_client(session, client_id, for_update=True)
            if client is None:
                raise ClientNotFound(client_id)
            previous = int(client.usage_quota)
            client.usage_quota = usage_quota
            self._audit.append_admin(
                session,
                admin_id=admin_id,
                action=ACTION_QUOTA_UPDATED,
                target_type="client",
                target_id=client_id,
                details={"previous_quota": previous, "usage_quota": usage_quota},
                ip_address=ip_address,
                timestamp=now,
            )
            snapshot = ClientSnapshot.from_row(client)
        logger.info("client_quota_updated client_id=%s quota=%s", client_id, usage_quota)
        return snapshot

    async def reset_usage(
        self,
        session: AsyncSession,
        *,
        client_id: str,
        admin_id: str,
        ip_address: str | None = None,
    ) -> ClientSnapshot:
        # Manual reset clears the counter but keeps the current cycle boundary.
        now = self._time_provider()
        async with atomic(session):
            client = await get_client(session, client_id, for_update=True)
            if client is None:
                raise ClientNotFound(client_id)
            previous = int(client.usage_count)
            client.usage_count = 0
            client.last_notified_threshold = 0
            self._audit.append_admin(
                session,
                admin_id=admin_id,
                action=ACTION_USAGE_RESET,
                target_type="client",
                target_id=client_id,
                details={"previous_usage": previous, "reset_date": client.reset_date},
                ip_address=ip_address,
                timestamp=now,
            )
            snapshot = ClientSnapshot.from_row(client)
        logger.info("client_usage_reset client_id=%s previous_usage=%s", client_id, previous)
        return snapshot

    async def set_status(
        self,
        session: AsyncSession,
        *,
        client_id: str,
        status: str,
        admin_id: str,
        reason: str | None = None,
        ip_address: str | None = None,
    ) -> ClientSnapshot:
        now = self._time_provider()
        async with atomic(session):
            client = await get_client(session, client_id, for_update=True)
            if client is None:
                raise ClientNotFound(client_id)
            previous = client.status
            validate_transition(previous, status)
            client.status = status
            client.status_reason = reason
            client.status_changed_at = now
            revoked_tokens = 0
            if status in (CLIENT_STATUS_SUSPENDED, CLIENT_STATUS_REVOKED):
                result = await session.execute(
                    update(AuthToken)
                    .where(AuthToken.client_id == client_id, AuthToken.revoked_at.is_(None))
                    .values(revoked_at=now)
                    .execution_options(synchronize_session=False)
                )
                revoked_tokens = int(result.rowcount or 0)
            self._audit.append_admin(
                session,
                admin_id=admin_id,
                action=ACTION_STATUS_CHANGED,
                target_type="client",
                target_id=client_id,
                details={
                    "previous_status": previous,
                    "status": status,
                    "reason": reason,
                    "revoked_tokens": revoked_tokens,
                },
                ip_address=ip_address,
                timestamp=now,
            )
            snapshot = ClientSnapshot.from_row(client)
        logger.info(
            "client_status_changed client_id=%s from=%s to=%s revoked_tokens=%s",
            client_id,
            previous,
            status,
            revoked_tokens,
        )
        return snapshot

    async def usage_stats(self, session: AsyncSession) -> dict[str, Any]:
        return dict(await client_usage_stats(session))


_client_admin: ClientAdminService | None = None


def get_client_admin_service() -> ClientAdminService:
    global _client_admin
    if _client_admin is None:
        _client_admin = ClientAdminService()
    return _client_admin


def reset_client_admin_service() -> None:
    # Reset cached services for deterministic tests.
    global _client_admin
    _client_admin = None
