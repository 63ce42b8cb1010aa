from __future__ import annotations

from datetime import datetime, timedelta, timezone
import hashlib
import secrets
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from finsight.domain.models import AuthToken, TOKEN_TYPE_ACCESS, USER_ROLE_ADMIN, USER_ROLE_USER


ROLE_ORDER: dict[str, int] = {
    USER_ROLE_USER: 1,
    USER_ROLE_ADMIN: 2,
}

ACCESS_TOKEN_PREFIX = "fsat"
CLIENT_KEY_PREFIX = "fsck"
DEFAULT_ACCESS_TOKEN_TTL = timedelta(hours=12)


def normalize_role(role: str) -> str:
    # Enforce a stable, lowercased role vocabulary for RBAC checks.
    normalized = role.strip().lower()
    if normalized not in ROLE_ORDER:
        raise ValueError(f"Unsupported role: {role}")
    return normalized


def role_allows(*, role: str, minimum_role: str) -> bool:
    # Compare roles using numeric ordering for least-privilege enforcement.
    return ROLE_ORDER.get(role, 0) >= ROLE_ORDER.get(minimum_role, 0)


def hash_token(raw_token: str) -> str:
    # Use SHA-256 for deterministic, non-reversible secret storage.
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_secret(prefix: str, *, secret_id: str | None = None) -> tuple[str, str, str]:
    # Embed the id in the secret so operators can trace it without the raw value.
    resolved_id = secret_id or uuid4().hex
    raw = f"{prefix}_{resolved_id}_{secrets.token_urlsafe(32)}"
    return resolved_id, raw, hash_token(raw)


async def issue_access_token(
    session: AsyncSession,
    *,
    user_id: str,
    client_id: str | None = None,
    two_factor_verified: bool = False,
    ttl: timedelta = DEFAULT_ACCESS_TOKEN_TTL,
    now: datetime | None = None,
) -> str:
    # Adds the token row to the caller's transaction and returns the raw bearer value.
    issued_at = now or datetime.now(timezone.utc)
    token_id, raw, digest = generate_secret(ACCESS_TOKEN_PREFIX)
    session.add(
        AuthToken(
            id=token_id,
            user_id=user_id,
            client_id=client_id,
            token_hash=digest,
            token_type=TOKEN_TYPE_ACCESS,
            two_factor_verified=two_factor_verified,
            expires_at=issued_at + ttl,
        )
    )
    return raw
