from __future__ import annotations

from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from finsight.apps.api.deps import Principal, get_db, require_role
from finsight.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from finsight.apps.api.response import SuccessEnvelope, page_meta, success_response
from finsight.core.config import get_settings
from finsight.core.errors import InvalidDateRange
from finsight.domain.models import PLAID_STATUS_DISCONNECTED, USER_STATUS_MARKED
from finsight.persistence.repos.audit import (
    count_retention_actions_since,
    list_admin_logs,
    list_retention_logs,
)
from finsight.persistence.repos.users import (
    count_plaid_items_by_status,
    count_users_by_status,
    list_marked_users,
)
from finsight.services.audit import get_request_context
from finsight.services.retention.deletion import get_deletion_orchestrator
from finsight.services.retention.policy import compute_scheduled_deletion_date
from finsight.services.retention.sweep import get_retention_sweeper

router = APIRouter(prefix="/admin", tags=["admin-retention"], responses=DEFAULT_ERROR_RESPONSES)

STATS_ACTIVITY_WINDOW = timedelta(days=30)


class MarkedAccountResponse(BaseModel):
    user_id: str
    email: str
    marked_for_deletion_at: datetime
    scheduled_deletion_date: datetime
    days_remaining: int
    deletion_reason: str | None


class RetentionStatsResponse(BaseModel):
    users_by_status: dict[str, int]
    marked_for_deletion: int
    plaid_items_disconnected: int
    recent_actions: dict[str, int]
    rules: dict[str, Any]


class AdminRetentionPatch(BaseModel):
    transaction_retention_days: int | None = None
    insight_retention_days: int | None = None
    email_notifications: bool | None = None
    analytical_data_use: bool | None = None
    status: Literal["active", "marked_for_deletion"] | None = None
    reason: str | None = Field(default=None, max_length=1000)

    def preference_updates(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True, exclude={"status", "reason"})


class ForceDeleteRequest(BaseModel):
    confirmation: str
    reason: str = ""


class ForceDeleteResponse(BaseModel):
    user_id: str
    initiated_by: str
    purged_at: datetime
    deleted_counts: dict[str, int]


class RetentionLogResponse(BaseModel):
    id: int
    action: str
    user_id: str | None
    actor_id: str
    details: dict[str, Any] | None
    timestamp: datetime


class AdminLogResponse(BaseModel):
    id: int
    admin_id: str
    action: str
    target_type: str | None
    target_id: str | None
    details: dict[str, Any] | None
    ip_address: str | None
    timestamp: datetime


def _as_utc(value: datetime | None) -> datetime | None:
    # Date-only or naive query values are read as UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _page_bounds(page: int, limit: int | None) -> tuple[int, int, int]:
    # Clamp caller-supplied page sizes to the configured ceiling.
    settings = get_settings()
    resolved = min(limit or settings.admin_default_page_size, settings.admin_max_page_size)
    return page, resolved, (page - 1) * resolved


@router.get("/retention/stats", response_model=SuccessEnvelope[RetentionStatsResponse])
async def retention_stats(
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    orchestrator = get_deletion_orchestrator()
    users_by_status = await count_users_by_status(db)
    items_by_status = await count_plaid_items_by_status(db)
    recent_actions: dict[str, int] = {}
    if orchestrator.capabilities.has_audit_log:
        recent_actions = await count_retention_actions_since(
            db, since=orchestrator.now() - STATS_ACTIVITY_WINDOW
        )
    payload = RetentionStatsResponse(
        users_by_status=users_by_status,
        marked_for_deletion=users_by_status.get(USER_STATUS_MARKED, 0),
        plaid_items_disconnected=items_by_status.get(PLAID_STATUS_DISCONNECTED, 0),
        recent_actions=recent_actions,
        rules=orchestrator.rules.as_dict(),
    )
    return success_response(request=request, data=payload)


@router.get("/retention/marked-accounts")
async def marked_accounts(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    page, limit, offset = _page_bounds(page, limit)
    orchestrator = get_deletion_orchestrator()
    now = orchestrator.now()
    users, total = await list_marked_users(db, offset=offset, limit=limit)
    rows = []
    for user in users:
        scheduled = compute_scheduled_deletion_date(
            user.marked_for_deletion_at, orchestrator.rules.deletion_period_days
        )
        rows.append(
            MarkedAccountResponse(
                user_id=user.id,
                email=user.email,
                marked_for_deletion_at=user.marked_for_deletion_at,
                scheduled_deletion_date=scheduled,
                days_remaining=max((scheduled - now).days, 0),
                deletion_reason=user.deletion_reason,
            )
        )
    return success_response(
        request=request,
        data=rows,
        pagination=page_meta(page=page, limit=limit, total=total),
    )


@router.post("/retention/audit")
async def compliance_audit(
    request: Request,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Dry run only; nothing is written.
    report = await get_retention_sweeper().run_compliance_audit(db)
    return success_response(request=request, data=report)


@router.post("/retention/sweep")
async def run_sweep(
    request: Request,
    dry_run: bool = Query(default=False),
    principal: Principal = Depends(require_role("admin")),
) -> dict:
    report = await get_retention_sweeper().run(dry_run=dry_run)
    return success_response(
        request=request,
        data=report.as_dict(),
        message="Retention sweep simulated" if dry_run else "Retention sweep completed",
    )


@router.patch("/retention/users/{user_id}")
async def update_user_retention(
    user_id: str,
    request: Request,
    payload: AdminRetentionPatch,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    view = await get_deletion_orchestrator().admin_update_retention(
        session=db,
        user_id=user_id,
        admin_id=principal.user_id,
        preference_updates=payload.preference_updates(),
        status=payload.status,
        reason=payload.reason,
        ip_address=get_request_context(request)["ip_address"],
    )
    return success_response(request=request, data=view, message="Retention settings updated")


@router.post(
    "/retention/users/{user_id}/force-delete",
    response_model=SuccessEnvelope[ForceDeleteResponse],
)
async def force_delete_user(
    user_id: str,
    request: Request,
    payload: ForceDeleteRequest,
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await get_deletion_orchestrator().force_delete(
        session=db,
        user_id=user_id,
        admin_id=principal.user_id,
        confirmation=payload.confirmation,
        reason=payload.reason,
        ip_address=get_request_context(request)["ip_address"],
    )
    return success_response(
        request=request,
        data=ForceDeleteResponse(**asdict(result)),
        message="User permanently deleted",
    )


@router.get("/retention/logs")
async def retention_logs(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
    action: str | None = Query(default=None),
    user_id: str | None = Query(default=None, alias="userId"),
    start_date: datetime | None = Query(default=None, alias="startDate"),
    end_date: datetime | None = Query(default=None, alias="endDate"),
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    start_date, end_date = _as_utc(start_date), _as_utc(end_date)
    if start_date is not None and end_date is not None and start_date > end_date:
        raise InvalidDateRange(start_date, end_date)
    page, limit, offset = _page_bounds(page, limit)
    if not get_deletion_orchestrator().capabilities.has_audit_log:
        # Deployments without the audit store report an empty history.
        return success_response(request=request, data=[], pagination=page_meta(page=page, limit=limit, total=0))
    rows, total = await list_retention_logs(
        db,
        action=action,
        user_id=user_id,
        start_date=start_date,
        end_date=end_date,
        offset=offset,
        limit=limit,
    )
    return success_response(
        request=request,
        data=[RetentionLogResponse.model_validate(row, from_attributes=True) for row in rows],
        pagination=page_meta(page=page, limit=limit, total=total),
    )


@router.get("/logs")
async def admin_logs(
    request: Request,
    page: int = Query(default=1, ge=1),
    limit: int | None = Query(default=None, ge=1),
    action: str | None = Query(default=None),
    admin_id: str | None = Query(default=None, alias="adminId"),
    principal: Principal = Depends(require_role("admin")),
    db: AsyncSession = Depends(get_db),
) -> dict:
    page, limit, offset = _page_bounds(page, limit)
    if not get_deletion_orchestrator().capabilities.has_audit_log:
        return success_response(request=request, data=[], pagination=page_meta(page=page, limit=limit, total=0))
    rows, total = await list_admin_logs(db, action=action, admin_id=admin_id, offset=offset, limit=limit)
    return success_response(
        request=request,
        data=[AdminLogResponse.model_validate(row, from_attributes=True) for row in rows],
        pagination=page_meta(page=page, limit=limit, total=total),
    )
