from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from finsight.apps.api.deps import enforce_client_quota
from finsight.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from finsight.apps.api.response import SuccessEnvelope, success_response
from finsight.services.quota import ClientSnapshot, usage_percentage

router = APIRouter(tags=["usage"], responses=DEFAULT_ERROR_RESPONSES)


class UsageResponse(BaseModel):
    client_id: str
    usage_count: int
    usage_quota: int
    remaining: int
    usage_percentage: int
    reset_date: datetime
    last_used_at: datetime | None


@router.get("/usage", response_model=SuccessEnvelope[UsageResponse])
async def get_usage(
    request: Request,
    snapshot: ClientSnapshot = Depends(enforce_client_quota),
) -> dict:
    # Metered like any other client call; the snapshot reflects this request.
    payload = UsageResponse(
        client_id=snapshot.client_id,
        usage_count=snapshot.usage_count,
        usage_quota=snapshot.usage_quota,
        remaining=snapshot.remaining,
        usage_percentage=usage_percentage(snapshot.usage_count, snapshot.usage_quota),
        reset_date=snapshot.reset_date,
        last_used_at=snapshot.last_used_at,
    )
    return success_response(request=request, data=payload)
