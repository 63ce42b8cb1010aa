from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import AsyncGenerator

from fastapi import BackgroundTasks, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from finsight.core.config import get_settings
from finsight.domain.models import AuthToken, Client, User
from finsight.persistence.db import get_session
from finsight.services.auth.api_keys import hash_token, normalize_role, role_allows
from finsight.services.quota import ClientSnapshot, get_quota_service, quota_headers


logger = logging.getLogger(__name__)

AUTH_METHOD_TOKEN = "token"
AUTH_METHOD_CLIENT_KEY = "client_key"


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


class Principal(BaseModel):
    # Authenticated identity used for ownership checks and RBAC.
    user_id: str
    role: str
    client_id: str | None = None
    token_id: str | None = None
    two_factor_verified: bool = False
    auth_method: str = AUTH_METHOD_TOKEN


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden_error(message: str, code: str = "AUTH_FORBIDDEN") -> HTTPException:
    # Use 403 for authenticated principals lacking permissions.
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": code, "message": message},
    )


def _parse_bearer_token(header_value: str | None) -> str:
    if not header_value:
        raise _auth_error("Missing bearer token")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


def _resolve_role(user: User) -> str:
    try:
        return normalize_role(user.role)
    except ValueError as exc:
        raise _forbidden_error(str(exc)) from exc


async def _principal_from_token(db: AsyncSession, digest: str) -> Principal | None:
    row = (
        await db.execute(
            select(AuthToken, User).join(User, AuthToken.user_id == User.id).where(AuthToken.token_hash == digest)
        )
    ).first()
    if row is None:
        return None
    token, user = row
    if token.revoked_at is not None:
        raise _auth_error("Token has been revoked")
    if token.expires_at is not None and token.expires_at <= datetime.now(timezone.utc):
        # Deny expired credentials explicitly so operators can distinguish expiry from revocation.
        raise _auth_error("Token expired")
    return Principal(
        user_id=user.id,
        role=_resolve_role(user),
        client_id=token.client_id,
        token_id=token.id,
        two_factor_verified=bool(token.two_factor_verified),
        auth_method=AUTH_METHOD_TOKEN,
    )


async def _principal_from_client_key(db: AsyncSession, digest: str) -> Principal | None:
    # Client status is enforced by the quota check, which reports it precisely.
    row = (
        await db.execute(
            select(Client, User).join(User, Client.user_id == User.id).where(Client.api_key_hash == digest)
        )
    ).first()
    if row is None:
        return None
    client, user = row
    return Principal(
        user_id=user.id,
        role=_resolve_role(user),
        client_id=client.client_id,
        auth_method=AUTH_METHOD_CLIENT_KEY,
    )


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    settings = get_settings()
    raw_token = _parse_bearer_token(request.headers.get(settings.auth_header))
    digest = hash_token(raw_token)
    try:
        principal = await _principal_from_token(db, digest)
        if principal is None:
            principal = await _principal_from_client_key(db, digest)
    except SQLAlchemyError as exc:
        logger.error("auth_lookup_failed path=%s", request.url.path, exc_info=exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "AUTH_UNAVAILABLE", "message": "Authentication unavailable"},
        ) from exc
    if principal is None:
        raise _auth_error("Invalid credentials")
    request.state.principal = principal
    return principal


def require_role(minimum_role: str):
    # Dependency factory to enforce RBAC at the route level.
    async def _dependency(principal: Principal = Depends(get_current_principal)) -> Principal:
        if not role_allows(role=principal.role, minimum_role=minimum_role):
            logger.warning(
                "rbac_forbidden user_id=%s role=%s required_role=%s",
                principal.user_id,
                principal.role,
                minimum_role,
            )
            raise _forbidden_error("Insufficient role for this operation")
        return principal

    return _dependency


async def get_client_principal(principal: Principal = Depends(get_current_principal)) -> Principal:
    if principal.client_id is None:
        raise _forbidden_error("A client credential is required for this endpoint", code="CLIENT_REQUIRED")
    return principal


async def enforce_client_quota(
    request: Request,
    response: Response,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(get_client_principal),
    db: AsyncSession = Depends(get_db),
) -> ClientSnapshot:
    # Consume one unit before the handler runs; threshold notices are evaluated after the response.
    service = get_quota_service()
    result = await service.check_and_consume(session=db, client_id=principal.client_id)
    for key, value in quota_headers(result.client).items():
        response.headers[key] = value
    request.state.quota = result.client
    background_tasks.add_task(service.process_usage_notifications, result.client.client_id)
    return result.client
