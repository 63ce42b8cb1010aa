from __future__ import annotations

from typing import Any

from finsight.apps.api.response import ErrorEnvelope


def _error_example(
    *,
    code: str,
    kind: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "success": False,
        "message": message,
        "error": {"code": code, "kind": kind, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response(
        "Validation error",
        _error_example(
            code="CONFIRMATION_REQUIRED",
            kind="validation",
            message='Confirmation text must be exactly "DELETE_MY_ACCOUNT"',
            details={"expected": "DELETE_MY_ACCOUNT"},
        ),
    ),
    401: _response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", kind="validation", message="Missing or invalid bearer token"),
    ),
    403: _response(
        "Forbidden",
        _error_example(code="AUTH_FORBIDDEN", kind="validation", message="Insufficient role for this operation"),
    ),
    404: _response(
        "Not found",
        _error_example(code="USER_NOT_FOUND", kind="not_found", message="User usr_123 not found"),
    ),
    409: _response(
        "State conflict",
        _error_example(
            code="GRACE_PERIOD_EXPIRED",
            kind="state_conflict",
            message="Grace period for cancelling account deletion has expired",
            details={"expired_at": "2026-03-01T00:00:00+00:00"},
        ),
    ),
    429: _response(
        "Quota exceeded",
        _error_example(
            code="QUOTA_EXCEEDED",
            kind="capacity_exceeded",
            message="Monthly usage quota exceeded",
            details={"client_id": "cl_123", "usage_quota": 1000, "reset_date": "2026-03-01T00:00:00+00:00"},
        ),
    ),
    500: _response(
        "Transactional failure",
        _error_example(
            code="PURGE_FAILED",
            kind="transactional_failure",
            message="Deletion of user usr_123 failed at step transactions; no data was removed",
            details={"user_id": "usr_123", "step": "transactions", "retryable": True},
        ),
    ),
    503: _response(
        "Service unavailable",
        _error_example(code="CAPABILITY_UNAVAILABLE", kind="unavailable", message="Bank connections are not enabled"),
    ),
}
