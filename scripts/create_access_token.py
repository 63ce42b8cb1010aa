from __future__ import annotations

import argparse
import asyncio
import sys
from uuid import uuid4

from finsight.domain.models import User
from finsight.persistence.db import SessionLocal
from finsight.services.auth.api_keys import issue_access_token, normalize_role
from finsight.services.clients import get_client_admin_service


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI arguments explicit to avoid accidental credential misuse.
    parser = argparse.ArgumentParser(description="Provision a user token and optionally a client")
    parser.add_argument("--email", required=True, help="User email")
    parser.add_argument("--role", default="user", help="Role: user|admin")
    parser.add_argument("--user-id", default=None, help="Existing user id to attach")
    parser.add_argument("--client-name", default=None, help="Also register a client with this label")
    parser.add_argument("--quota", type=int, default=None, help="Monthly quota for the new client")
    return parser


async def _provision(args: argparse.Namespace) -> int:
    role = normalize_role(args.role)
    user_id = args.user_id or uuid4().hex

    async with SessionLocal() as session:
        user = await session.get(User, user_id)
        if user is None:
            user = User(id=user_id, email=args.email, role=role)
            session.add(user)
        elif user.role != role:
            user.role = role
        # Flush the user row before inserting tokens to satisfy FK constraints.
        await session.flush()
        raw_token = await issue_access_token(session, user_id=user.id)
        await session.commit()

        registered = None
        if args.client_name:
            registered = await get_client_admin_service().register_client(
                session,
                user_id=user.id,
                name=args.client_name,
                usage_quota=args.quota,
            )

    print("Access token created:")
    print(f"  user_id: {user_id}")
    print("  token: ")
    print(f"    {raw_token}")
    if registered is not None:
        print("Client registered (pending approval):")
        print(f"  client_id: {registered.client.client_id}")
        print("  api_key: ")
        print(f"    {registered.api_key}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_provision(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_access_token failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
