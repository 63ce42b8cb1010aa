from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    STATE_CONFLICT = "state_conflict"
    CAPACITY_EXCEEDED = "capacity_exceeded"
    TRANSACTIONAL_FAILURE = "transactional_failure"
    NOT_FOUND = "not_found"
    UNAVAILABLE = "unavailable"


_KIND_STATUS: dict[ErrorKind, int] = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.STATE_CONFLICT: 409,
    ErrorKind.CAPACITY_EXCEEDED: 429,
    ErrorKind.TRANSACTIONAL_FAILURE: 500,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.UNAVAILABLE: 503,
}


class FinsightError(Exception):
    """Base error for finsight quota and retention operations."""

    kind: ErrorKind = ErrorKind.VALIDATION
    code: str = "FINSIGHT_ERROR"
    status_code: int | None = None

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def http_status(self) -> int:
        # Subclasses may pin a status that differs from their kind's default.
        return self.status_code or _KIND_STATUS[self.kind]

    def details(self) -> dict[str, Any]:
        return {}


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


class ValidationError(FinsightError):
    """Caller input rejected before any state change."""

    kind = ErrorKind.VALIDATION
    code = "VALIDATION_ERROR"


class ConfirmationRequired(ValidationError):
    """Confirmation text did not match the required literal."""

    code = "CONFIRMATION_REQUIRED"

    def __init__(self, expected: str) -> None:
        super().__init__(f'Confirmation text must be exactly "{expected}"')
        self.expected = expected

    def details(self) -> dict[str, Any]:
        return {"expected": self.expected}


class ReasonTooShort(ValidationError):
    """Deletion reason shorter than the required minimum."""

    code = "REASON_TOO_SHORT"

    def __init__(self, minimum: int) -> None:
        super().__init__(f"Deletion reason must be at least {minimum} characters")
        self.minimum = minimum

    def details(self) -> dict[str, Any]:
        return {"min_length": self.minimum}


class InvalidDateRange(ValidationError):
    """Start date falls after end date."""

    code = "INVALID_DATE_RANGE"

    def __init__(self, start: datetime, end: datetime) -> None:
        super().__init__("startDate must be on or before endDate")
        self.start = start
        self.end = end

    def details(self) -> dict[str, Any]:
        return {"start_date": _iso(self.start), "end_date": _iso(self.end)}


class InvalidRetentionSetting(ValidationError):
    """Retention preference outside the accepted bounds."""

    code = "INVALID_RETENTION_SETTING"


class TwoFactorRequired(ValidationError):
    """Closure requires a two-factor verified session."""

    code = "TWO_FACTOR_REQUIRED"
    status_code = 403

    def __init__(self) -> None:
        super().__init__("Two-factor verification is required to close this account")


class StateConflict(FinsightError):
    """Operation not allowed in the entity's current state."""

    kind = ErrorKind.STATE_CONFLICT
    code = "STATE_CONFLICT"


class AlreadyMarked(StateConflict):
    """User is already scheduled for deletion."""

    code = "ALREADY_MARKED"

    def __init__(self, scheduled_deletion_date: datetime) -> None:
        super().__init__("Account is already scheduled for deletion")
        self.scheduled_deletion_date = scheduled_deletion_date

    def details(self) -> dict[str, Any]:
        return {"scheduled_deletion_date": _iso(self.scheduled_deletion_date)}


class NotMarked(StateConflict):
    """User has no pending deletion to cancel."""

    code = "NOT_MARKED"

    def __init__(self) -> None:
        super().__init__("Account is not scheduled for deletion")


class GracePeriodExpired(StateConflict):
    """Cancellation window has closed."""

    code = "GRACE_PERIOD_EXPIRED"

    def __init__(self, expired_at: datetime) -> None:
        super().__init__("Grace period for cancelling account deletion has expired")
        self.expired_at = expired_at

    def details(self) -> dict[str, Any]:
        return {"expired_at": _iso(self.expired_at)}


class NotPurgeable(StateConflict):
    """Entity is not in a state that allows hard deletion."""

    code = "NOT_PURGEABLE"

    def __init__(self, subject_id: str, state: str) -> None:
        super().__init__(f"{subject_id} is not due for deletion (state={state})")
        self.subject_id = subject_id
        self.state = state

    def details(self) -> dict[str, Any]:
        return {"subject_id": self.subject_id, "state": self.state}


class InvalidStatusTransition(StateConflict):
    """Requested status change is not a valid transition."""

    code = "INVALID_STATUS_TRANSITION"


class ClientInactive(StateConflict):
    """Client credential is not active; no quota is consumed."""

    code = "CLIENT_INACTIVE"
    status_code = 403

    _MESSAGES = {
        "pending": "Client is pending approval",
        "suspended": "Client has been suspended",
        "revoked": "Client has been revoked",
    }

    def __init__(self, client_id: str, status: str) -> None:
        super().__init__(self._MESSAGES.get(status, f"Client is not active (status={status})"))
        self.client_id = client_id
        self.status = status

    def details(self) -> dict[str, Any]:
        return {"client_id": self.client_id, "status": self.status}


class QuotaExceeded(FinsightError):
    """Client has used its full quota for the current cycle."""

    kind = ErrorKind.CAPACITY_EXCEEDED
    code = "QUOTA_EXCEEDED"

    def __init__(self, client_id: str, usage_quota: int, reset_date: datetime) -> None:
        super().__init__("Monthly usage quota exceeded")
        self.client_id = client_id
        self.usage_quota = usage_quota
        self.reset_date = reset_date

    def details(self) -> dict[str, Any]:
        return {
            "client_id": self.client_id,
            "usage_quota": self.usage_quota,
            "reset_date": _iso(self.reset_date),
        }


class PurgeFailed(FinsightError):
    """Transactional purge aborted and rolled back; safe to retry."""

    kind = ErrorKind.TRANSACTIONAL_FAILURE
    code = "PURGE_FAILED"

    def __init__(self, user_id: str, step: str, cause: str) -> None:
        super().__init__(f"Deletion of user {user_id} failed at step {step}; no data was removed")
        self.user_id = user_id
        self.step = step
        self.cause = cause

    def details(self) -> dict[str, Any]:
        return {"user_id": self.user_id, "step": self.step, "retryable": True}


class NotFound(FinsightError):
    """Referenced entity does not exist."""

    kind = ErrorKind.NOT_FOUND
    code = "NOT_FOUND"


class UserNotFound(NotFound):
    code = "USER_NOT_FOUND"

    def __init__(self, user_id: str) -> None:
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class ClientNotFound(NotFound):
    code = "CLIENT_NOT_FOUND"

    def __init__(self, client_id: str) -> None:
        super().__init__(f"Client {client_id} not found")
        self.client_id = client_id


class PlaidItemNotFound(NotFound):
    code = "PLAID_ITEM_NOT_FOUND"

    def __init__(self, item_id: str) -> None:
        super().__init__(f"Bank connection {item_id} not found")
        self.item_id = item_id


class CapabilityUnavailable(FinsightError):
    """Optional subsystem is not provisioned in this deployment."""

    kind = ErrorKind.UNAVAILABLE
    code = "CAPABILITY_UNAVAILABLE"
