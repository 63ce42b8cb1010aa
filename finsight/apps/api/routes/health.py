from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from finsight.apps.api.deps import get_db
from finsight.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from finsight.apps.api.response import SuccessEnvelope, success_response
from finsight.core.config import get_capabilities

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)
logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str
    database: str
    capabilities: dict[str, bool]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    database = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("health_database_unreachable", exc_info=exc)
        database = "unavailable"
    capabilities = get_capabilities()
    payload = HealthResponse(
        status="ok" if database == "ok" else "degraded",
        database=database,
        capabilities={
            "audit_log": capabilities.has_audit_log,
            "plaid_integration": capabilities.has_plaid_integration,
        },
    )
    return success_response(request=request, data=payload)
