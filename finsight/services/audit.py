from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from finsight.core.config import SYSTEM_ACTOR_ID, Capabilities, get_capabilities
from finsight.domain.models import (
    AdminLog,
    RetentionLog,
    User,
    USER_ROLE_ADMIN,
    USER_STATUS_INACTIVE,
)
from finsight.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["authorization", "token", "secret", "password", "access_token"]
_REDACTED_VALUE = "[REDACTED]"

SYSTEM_ACTOR_EMAIL = "system@finsight.internal"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields and render datetimes as ISO strings.
    # Only string values are secrets; counts keyed like "auth_tokens" stay readable.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key) and isinstance(raw_value, (str, bytes)):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    # Extract request identifiers and client hints without persisting credentials.
    if request is None:
        return {"request_id": None, "ip_address": None, "user_agent": None}
    request_id = getattr(request.state, "request_id", None) or request.headers.get("X-Request-Id")
    ip_address = request.client.host if request.client else None
    user_agent = request.headers.get("user-agent")
    return {"request_id": request_id, "ip_address": ip_address, "user_agent": user_agent}


async def ensure_system_actor(session: AsyncSession) -> None:
    # Idempotently provision the sentinel actor that inherits orphaned audit rows.
    existing = await session.execute(select(User.id).where(User.id == SYSTEM_ACTOR_ID))
    if existing.scalar_one_or_none() is not None:
        return
    session.add(
        User(
            id=SYSTEM_ACTOR_ID,
            email=SYSTEM_ACTOR_EMAIL,
            name="System",
            role=USER_ROLE_ADMIN,
            status=USER_STATUS_INACTIVE,
        )
    )
    await session.flush()


class AuditLogSink:
    """Append-only writer for retention and admin log entries.

    ``append``/``append_admin`` join the caller's transaction so the entry
    commits or rolls back with the change it describes. The ``*_best_effort``
    variants run in their own session for post-commit bookkeeping and never
    raise.
    """

    def __init__(self, *, capabilities: Capabilities | None = None) -> None:
        self._capabilities = capabilities or get_capabilities()

    @property
    def enabled(self) -> bool:
        return self._capabilities.has_audit_log

    def append(
        self,
        session: AsyncSession,
        *,
        action: str,
        details: dict[str, Any] | None = None,
        actor_id: str | None = None,
        user_id: str | None = None,
        timestamp: datetime | None = None,
    ) -> RetentionLog | None:
        if not self.enabled:
            logger.warning("audit_log_unavailable action=%s user_id=%s", action, user_id)
            return None
        entry = RetentionLog(
            action=action,
            user_id=user_id,
            actor_id=actor_id or SYSTEM_ACTOR_ID,
            details=sanitize_metadata(details or {}),
            timestamp=timestamp or _utc_now(),
        )
        session.add(entry)
        return entry

    def append_admin(
        self,
        session: AsyncSession,
        *,
        admin_id: str,
        action: str,
        target_type: str | None = None,
        target_id: str | None = None,
        details: dict[str, Any] | None = None,
        ip_address: str | None = None,
        timestamp: datetime | None = None,
    ) -> AdminLog | None:
        if not self.enabled:
            logger.warning("admin_log_unavailable action=%s admin_id=%s", action, admin_id)
            return None
        entry = AdminLog(
            admin_id=admin_id,
            action=action,
            target_type=target_type,
            target_id=target_id,
            details=sanitize_metadata(details or {}),
            ip_address=ip_address,
            timestamp=timestamp or _utc_now(),
        )
        session.add(entry)
        return entry

    async def append_best_effort(
        self,
        *,
        action: str,
        details: dict[str, Any] | None = None,
        actor_id: str | None = None,
        user_id: str | None = None,
        timestamp: datetime | None = None,
    ) -> None:
        if not self.enabled:
            logger.warning("audit_log_unavailable action=%s user_id=%s", action, user_id)
            return
        async with SessionLocal() as audit_session:
            try:
                self.append(
                    audit_session,
                    action=action,
                    details=details,
                    actor_id=actor_id,
                    user_id=user_id,
                    timestamp=timestamp,
                )
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                logger.warning(
                    "retention_log_write_failed action=%s user_id=%s",
                    action,
                    user_id,
                    exc_info=exc,
                )

    async def append_admin_best_effort(self, **kwargs: Any) -> None:
        if not self.enabled:
            logger.warning("admin_log_unavailable action=%s", kwargs.get("action"))
            return
        async with SessionLocal() as audit_session:
            try:
                self.append_admin(audit_session, **kwargs)
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                logger.warning(
                    "admin_log_write_failed action=%s target_id=%s",
                    kwargs.get("action"),
                    kwargs.get("target_id"),
                    exc_info=exc,
                )

    async def repoint_actor(self, session: AsyncSession, actor_id: str) -> int:
        # Hand historical entries authored by actor_id over to the system actor.
        if not self.enabled:
            return 0
        await ensure_system_actor(session)
        admin_result = await session.execute(
            update(AdminLog).where(AdminLog.admin_id == actor_id).values(admin_id=SYSTEM_ACTOR_ID)
        )
        retention_result = await session.execute(
            update(RetentionLog)
            .where(RetentionLog.actor_id == actor_id)
            .values(actor_id=SYSTEM_ACTOR_ID)
        )
        return int(admin_result.rowcount or 0) + int(retention_result.rowcount or 0)


_audit_sink: AuditLogSink | None = None


def get_audit_sink() -> AuditLogSink:
    global _audit_sink
    if _audit_sink is None:
        _audit_sink = AuditLogSink()
    return _audit_sink


def reset_audit_sink() -> None:
    # Reset cached services for deterministic tests.
    global _audit_sink
    _audit_sink = None
