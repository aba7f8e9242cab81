"""Engine error taxonomy.

Codes are the stable contract that API consumers switch on. Messages are
human-readable and never parsed.
"""

from enum import Enum

from fastapi import HTTPException


class ErrorCode(str, Enum):
    # Business rules
    PAST_DATE = "PAST_DATE"
    EXCEEDS_MAX_ADVANCE = "EXCEEDS_MAX_ADVANCE"
    PAST_APPOINTMENT = "PAST_APPOINTMENT"
    INSUFFICIENT_CANCELLATION_TIME = "INSUFFICIENT_CANCELLATION_TIME"
    INSUFFICIENT_RESCHEDULE_TIME = "INSUFFICIENT_RESCHEDULE_TIME"
    TOO_LATE_TO_RESCHEDULE = "TOO_LATE_TO_RESCHEDULE"
    MAX_RESCHEDULES_EXCEEDED = "MAX_RESCHEDULES_EXCEEDED"
    ILLEGAL_STATE_TRANSITION = "ILLEGAL_STATE_TRANSITION"
    SERVICE_POINT_INCAPABLE = "SERVICE_POINT_INCAPABLE"
    SERVICE_POINT_INACTIVE = "SERVICE_POINT_INACTIVE"

    # Conflicts / lookups
    DUPLICATE_TICKET = "DUPLICATE_TICKET"
    SLOT_UNAVAILABLE = "SLOT_UNAVAILABLE"
    SERVICE_NOT_OFFERED = "SERVICE_NOT_OFFERED"
    INVALID_TRANSFER = "INVALID_TRANSFER"
    STALE_POLICY_VERSION = "STALE_POLICY_VERSION"
    INVALID_POLICY = "INVALID_POLICY"
    NOT_FOUND = "NOT_FOUND"

    # Persistence / transport faults
    INTERNAL_ERROR = "INTERNAL_ERROR"


class EngineError(Exception):
    """Base exception for engine errors carrying a stable code."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, code: ErrorCode | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_dict(self) -> dict:
        return {"code": self.code.value, "message": self.message}


class NotFoundError(EngineError):
    """Requested entity does not exist."""

    code = ErrorCode.NOT_FOUND


class BusinessRuleError(EngineError):
    """A validator rejected the request."""


class IllegalTransitionError(EngineError):
    """Requested status change is not in the transition graph."""

    code = ErrorCode.ILLEGAL_STATE_TRANSITION

    def __init__(self, from_status: str, to_status: str, message: str):
        super().__init__(message)
        self.from_status = from_status
        self.to_status = to_status

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["from_status"] = self.from_status
        data["to_status"] = self.to_status
        return data


class InternalEngineError(EngineError):
    """Unexpected persistence or transport failure."""

    code = ErrorCode.INTERNAL_ERROR


# =============================================================================
# HTTP translation
# =============================================================================

_HTTP_STATUS = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.ILLEGAL_STATE_TRANSITION: 409,
    ErrorCode.DUPLICATE_TICKET: 409,
    ErrorCode.SLOT_UNAVAILABLE: 409,
    ErrorCode.STALE_POLICY_VERSION: 409,
    ErrorCode.INVALID_TRANSFER: 409,
    ErrorCode.INTERNAL_ERROR: 500,
}


def http_status_for(code: ErrorCode) -> int:
    """Business-rule rejections are 422; conflicts 409; lookups 404."""
    return _HTTP_STATUS.get(code, 422)


def to_http_exception(exc: EngineError) -> HTTPException:
    return HTTPException(status_code=http_status_for(exc.code), detail=exc.to_dict())
