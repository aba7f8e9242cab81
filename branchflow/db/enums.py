"""Enum definitions for application constants."""

from enum import Enum


class AppointmentStatus(str, Enum):
    """
    Appointment lifecycle status.

    Flow: scheduled → checked-in → completed (enqueued for service)
              ↘ cancelled      ↘ cancelled
              ↘ no-show
    """

    SCHEDULED = "scheduled"
    CHECKED_IN = "checked-in"
    COMPLETED = "completed"  # Bound to a service point with a queue ticket
    CANCELLED = "cancelled"
    NO_SHOW = "no-show"


class AppointmentType(str, Enum):
    BOOKING = "booking"
    WALK_IN = "walk-in"  # Created at the counter and enqueued immediately


class TicketStatus(str, Enum):
    """Queue ticket status: waiting → serving → complete."""

    WAITING = "waiting"
    SERVING = "serving"
    COMPLETE = "complete"


class ReminderStatus(str, Enum):
    PENDING = "pending"  # Claimed by a dispatcher run, send in flight
    SENT = "sent"
    FAILED = "failed"  # Resendable on a later tick
    CANCELLED = "cancelled"


class ActorRole(str, Enum):
    ADMIN = "admin"
    STAFF = "staff"
    USER = "user"
    ANONYMOUS = "anonymous"

    @classmethod
    def has_value(cls, value: str) -> bool:
        return value in cls._value2member_map_


DEFAULT_APPOINTMENT_STATUS = AppointmentStatus.SCHEDULED
TERMINAL_APPOINTMENT_STATUSES = frozenset(
    {AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW}
)
