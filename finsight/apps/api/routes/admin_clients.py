from __future__ import annotations

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from finsight.apps.api.deps import Principal, get_db, require_role
from finsight.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from finsight.apps.api.response import SuccessEnvelope, success_response
from finsight.services.audit import get_request_context
from finsight.services.clients import get_client_admin_service
from finsight.services.quota import ClientSnapshot

router = APIRouter(prefix="/admin/clients", tags=["admin-clients"], responses=DEFAULT_ERROR_RESPONSES)


class ClientResponse(BaseModel):
    client_id: str
    user_id: str
    status: str
    usage_count: int
    usage_quota: int
    remaining: int
    reset_date: datetime
    last_used_at: datetime | None
    last_notified_threshold: int

    @classmethod
    def from_snapshot(cls, snapshot: ClientSnapshot) -> "ClientResponse":
        return cls(
            client_id=snapshot.client_id,
            user_id=snapshot.user_id,
            status=snapshot.status,
            usage_count=snapshot.usage_count,
            usage_quota=snapshot.usage_quota,
            remaining=snapshot.remaining,
            reset_date=snapshot.reset_date,
            last_used_at=snapshot.last_used_at,
            last_notified_threshold=snapshot.last_notified_threshold,
        )


class QuotaPatchRequest(BaseModel):
    usage_quota: int = Field(ge=0)


class StatusChangeRequest(BaseModel):
    status: Literal["active", "suspended", "revoked"]
    reason: str | None = Field(default=None, max_length=1000)


class ClientStatsResponse(BaseModel):
    by_status: dict[str, int]
    active_usage_total: int
    active_quota_total: int
    active_clients_exhausted: int


@router.get("/stats", response_model=SuccessEnvelope[ClientStatsResponse])
async def client_stats(
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    stats = await get_client_admin_service().usage_stats(db)
    return success_response(request=request, data=ClientStatsResponse(**stats))


@router.patch("/{client_id}/quota", response_model=SuccessEnvelope[ClientResponse])
async def update_quota(
    client_id: str,
    request: Request,
    payload: QuotaPatchRequest,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    snapshot = await get_client_admin_service().update_quota(
        db,
        client_id=client_id,
        usage_quota=payload.usage_quota,
        admin_id=principal.user_id,
        ip_address=get_request_context(request)["ip_address"],
    )
    return success_response(request=request, data=ClientResponse.from_snapshot(snapshot), message="Quota updated")


@router.post("/{client_id}/reset-usage", response_model=SuccessEnvelope[ClientResponse])
async def reset_usage(
    client_id: str,
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    snapshot = await get_client_admin_service().reset_usage(
        db,
        client_id=client_id,
        admin_id=principal.user_id,
        ip_address=get_request_context(request)["ip_address"],
    )
    return success_response(request=request, data=ClientResponse.from_snapshot(snapshot), message="Usage reset")


@router.post("/{client_id}/status", response_model=SuccessEnvelope[ClientResponse])
async def change_status(
    client_id: str,
    request: Request,
    payload: StatusChangeRequest,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    snapshot = await get_client_admin_service().set_status(
        db,
        client_id=client_id,
        status=payload.status,
        admin_id=principal.user_id,
        reason=payload.reason,
        ip_address=get_request_context(request)["ip_address"],
    )
    return success_response(
        request=request,
        data=ClientResponse.from_snapshot(snapshot),
        message=f"Client status set to {payload.status}",
    )
