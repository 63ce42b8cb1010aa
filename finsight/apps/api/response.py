from __future__ import annotations

from math import ceil
from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field


API_VERSION = "v1"

T = TypeVar("T")


class ResponseMeta(BaseModel):
    # Include request/version metadata for consistent client tracing.
    request_id: str
    api_version: str = Field(default=API_VERSION)


class PageMeta(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class ErrorDetail(BaseModel):
    # Standardize error codes/messages with optional structured details.
    code: str
    kind: str | None = None
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[T]):
    # Wrap successful responses in a consistent envelope.
    success: bool = True
    message: str | None = None
    data: T
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    # Wrap error responses in a consistent envelope.
    success: bool = False
    message: str
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    # Use existing request IDs when provided to preserve traceability.
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return request_id
    header_request_id = request.headers.get("X-Request-Id")
    if header_request_id:
        request.state.request_id = header_request_id
        return header_request_id
    generated = str(uuid4())
    request.state.request_id = generated
    return generated


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(f"/{API_VERSION}")


def page_meta(*, page: int, limit: int, total: int) -> dict[str, int]:
    return PageMeta(page=page, limit=limit, total=total, pages=ceil(total / limit) if limit else 0).model_dump()


def success_response(
    *,
    request: Request,
    data: Any,
    message: str | None = None,
    pagination: dict[str, int] | None = None,
) -> dict[str, Any]:
    meta: dict[str, Any] = ResponseMeta(request_id=get_request_id(request)).model_dump()
    if pagination is not None:
        meta["pagination"] = pagination
    payload: dict[str, Any] = {"success": True, "data": jsonable_encoder(data), "meta": meta}
    if message:
        payload["message"] = message
    return payload


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    kind: str | None = None,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    # Return the standard error envelope with request metadata.
    meta = ResponseMeta(request_id=get_request_id(request))
    error = ErrorDetail(code=code, kind=kind, message=message, details=details)
    return {
        "success": False,
        "message": message,
        "error": error.model_dump(exclude_none=True),
        "meta": meta.model_dump(),
    }
