from __future__ import annotations

from dataclasses import asdict
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from finsight.apps.api.deps import Principal, get_current_principal, get_db
from finsight.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from finsight.apps.api.response import SuccessEnvelope, success_response
from finsight.services.audit import get_audit_sink
from finsight.services.retention.deletion import get_deletion_orchestrator
from finsight.services.retention.preferences import (
    export_user_data,
    get_retention_settings,
    update_retention_preferences,
)

router = APIRouter(prefix="/account", tags=["account"], responses=DEFAULT_ERROR_RESPONSES)


class RetentionPreferencesPatch(BaseModel):
    # Bounds are enforced by the service so violations surface as INVALID_RETENTION_SETTING.
    transaction_retention_days: int | None = None
    insight_retention_days: int | None = None
    email_notifications: bool | None = None
    analytical_data_use: bool | None = None


class RetentionSettingsResponse(BaseModel):
    user_id: str
    status: str
    preferences: dict[str, Any]
    marked_for_deletion_at: datetime | None
    scheduled_deletion_date: datetime | None
    inactivity_warning_date: datetime | None
    deletion_reason: str | None


class ClosureRequest(BaseModel):
    confirmation: str
    reason: str | None = Field(default=None, max_length=1000)


class ClosureResponse(BaseModel):
    user_id: str
    marked_for_deletion_at: datetime
    scheduled_deletion_date: datetime
    grace_period_days: int


class CancelClosureResponse(BaseModel):
    user_id: str
    cancelled_at: datetime


class PlaidDisconnectResponse(BaseModel):
    item_id: str
    disconnected_at: datetime
    deletion_scheduled_at: datetime


@router.get("/retention", response_model=SuccessEnvelope[RetentionSettingsResponse])
async def get_retention(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    rules = get_deletion_orchestrator().rules
    view = await get_retention_settings(db, user_id=principal.user_id, rules=rules)
    return success_response(request=request, data=RetentionSettingsResponse(**view))


@router.patch("/retention", response_model=SuccessEnvelope[RetentionSettingsResponse])
async def patch_retention(
    request: Request,
    payload: RetentionPreferencesPatch,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    orchestrator = get_deletion_orchestrator()
    view = await update_retention_preferences(
        db,
        user_id=principal.user_id,
        updates=payload.model_dump(exclude_none=True),
        rules=orchestrator.rules,
        actor_id=principal.user_id,
        audit=orchestrator.audit,
        now=orchestrator.now(),
    )
    return success_response(
        request=request,
        data=RetentionSettingsResponse(**view),
        message="Retention preferences updated",
    )


@router.post("/closure", response_model=SuccessEnvelope[ClosureResponse])
async def request_closure(
    request: Request,
    payload: ClosureRequest,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await get_deletion_orchestrator().request_closure(
        session=db,
        user_id=principal.user_id,
        confirmation=payload.confirmation,
        reason=payload.reason,
        two_factor_verified=principal.two_factor_verified,
    )
    return success_response(
        request=request,
        data=ClosureResponse(**asdict(result)),
        message="Account scheduled for deletion",
    )


@router.post("/closure/cancel", response_model=SuccessEnvelope[CancelClosureResponse])
async def cancel_closure(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await get_deletion_orchestrator().cancel_closure(session=db, user_id=principal.user_id)
    return success_response(
        request=request,
        data=CancelClosureResponse(**asdict(result)),
        message="Account closure cancelled",
    )


@router.post(
    "/plaid-items/{item_id}/disconnect",
    response_model=SuccessEnvelope[PlaidDisconnectResponse],
)
async def disconnect_plaid_item(
    item_id: str,
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await get_deletion_orchestrator().disconnect_plaid_item(
        session=db, user_id=principal.user_id, item_id=item_id
    )
    return success_response(
        request=request,
        data=PlaidDisconnectResponse(**asdict(result)),
        message="Bank connection disconnected",
    )


@router.get("/export")
async def export_account(
    request: Request,
    principal: Principal = Depends(get_current_principal),
    db: AsyncSession = Depends(get_db),
) -> dict:
    package = await export_user_data(
        db,
        user_id=principal.user_id,
        rules=get_deletion_orchestrator().rules,
        audit=get_audit_sink(),
    )
    return success_response(request=request, data=package)
