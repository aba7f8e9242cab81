"""Booking, cancellation and reschedule rules.

Pure functions over (now, policy, request). Nothing here touches the
database; callers pass in the policy and the reschedule count.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from branchflow.core.errors import ErrorCode
from branchflow.db.enums import ActorRole
from branchflow.services.policy_service import PolicyConfig

# Tolerance band around each reminder offset; the scheduler ticks hourly by
# default so a one-hour-wide window neither misses nor double-selects.
REMINDER_WINDOW = timedelta(minutes=30)


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    error_code: ErrorCode | None = None
    message: str | None = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(valid=True)

    @classmethod
    def fail(cls, code: ErrorCode, message: str) -> "ValidationResult":
        return cls(valid=False, error_code=code, message=message)


def _hours_until(when: datetime, now: datetime) -> float:
    return (when - now).total_seconds() / 3600


def _is_admin(actor_role: ActorRole | str | None) -> bool:
    return actor_role == ActorRole.ADMIN


def validate_booking(
    scheduled_at: datetime, policy: PolicyConfig, *, now: datetime
) -> ValidationResult:
    """Check a requested appointment time against the booking horizon."""
    if scheduled_at <= now:
        return ValidationResult.fail(
            ErrorCode.PAST_DATE, "Cannot book an appointment in the past"
        )

    max_date = now + timedelta(days=policy.max_advance_booking_days)
    if scheduled_at > max_date:
        return ValidationResult.fail(
            ErrorCode.EXCEEDS_MAX_ADVANCE,
            f"Appointments can be booked at most {policy.max_advance_booking_days} days in advance",
        )

    return ValidationResult.ok()


def validate_cancellation(
    scheduled_at: datetime,
    policy: PolicyConfig,
    actor_role: ActorRole | str | None,
    *,
    now: datetime,
) -> ValidationResult:
    """
    Check whether an appointment may be cancelled.

    Admins bypass every rule, including for appointments already in the past.
    """
    if _is_admin(actor_role):
        return ValidationResult.ok()

    if scheduled_at <= now:
        return ValidationResult.fail(
            ErrorCode.PAST_APPOINTMENT, "Cannot cancel an appointment that has already passed"
        )

    if _hours_until(scheduled_at, now) < policy.cancellation_hours:
        return ValidationResult.fail(
            ErrorCode.INSUFFICIENT_CANCELLATION_TIME,
            f"Appointments must be cancelled at least {policy.cancellation_hours} hours in advance",
        )

    return ValidationResult.ok()


def validate_reschedule(
    current_scheduled_at: datetime,
    new_scheduled_at: datetime,
    policy: PolicyConfig,
    reschedule_count: int,
    actor_role: ActorRole | str | None,
    *,
    now: datetime,
) -> ValidationResult:
    """
    Check whether an appointment may be moved to ``new_scheduled_at``.

    Rules for non-admins, in order:
    - the current appointment has not passed
    - the new time is at least ``reschedule_time_limit_hours`` away
    - the current time is at least ``reschedule_time_limit_hours`` away
    - fewer than ``max_reschedules`` reschedules so far
    - the new time passes ``validate_booking``

    Admins skip everything but the final booking check.
    """
    if _is_admin(actor_role):
        return validate_booking(new_scheduled_at, policy, now=now)

    if current_scheduled_at <= now:
        return ValidationResult.fail(
            ErrorCode.PAST_APPOINTMENT,
            "Cannot reschedule an appointment that has already passed",
        )

    limit = timedelta(hours=policy.reschedule_time_limit_hours)
    min_allowed_new_date = now + limit
    if new_scheduled_at < min_allowed_new_date:
        return ValidationResult.fail(
            ErrorCode.INSUFFICIENT_RESCHEDULE_TIME,
            f"The new time must be at least {policy.reschedule_time_limit_hours} hours from now",
        )

    if current_scheduled_at < now + limit:
        return ValidationResult.fail(
            ErrorCode.TOO_LATE_TO_RESCHEDULE,
            f"Appointments cannot be rescheduled within {policy.reschedule_time_limit_hours} hours of their start",
        )

    if reschedule_count >= policy.max_reschedules:
        return ValidationResult.fail(
            ErrorCode.MAX_RESCHEDULES_EXCEEDED,
            f"This appointment has reached the limit of {policy.max_reschedules} reschedules",
        )

    return validate_booking(new_scheduled_at, policy, now=now)


def reminder_window(offset_hours: int, *, now: datetime) -> tuple[datetime, datetime]:
    """Scheduled-at range selected for an offset at ``now`` (inclusive)."""
    target = now + timedelta(hours=offset_hours)
    return target - REMINDER_WINDOW, target + REMINDER_WINDOW


def is_eligible_for_reminder(
    scheduled_at: datetime, offset_hours: int, *, now: datetime
) -> bool:
    start, end = reminder_window(offset_hours, now=now)
    return start <= scheduled_at <= end
