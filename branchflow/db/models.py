"""SQLAlchemy ORM models."""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from branchflow.core.clock import utc_now
from branchflow.db.base import Base
from branchflow.db.enums import (
    DEFAULT_APPOINTMENT_STATUS,
    ActorRole,
    AppointmentType,
    ReminderStatus,
    TicketStatus,
)

ACTIVE_SLOT_WHERE = "status <> 'cancelled' AND appointment_type = 'booking'"


# =============================================================================
# Branch catalog
# =============================================================================


class Branch(Base):
    """
    Physical service location.

    The scoping unit for policy, queue numbering, and reminders. The timezone
    decides which calendar day a queue ticket belongs to.
    """

    __tablename__ = "branches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    timezone: Mapped[str] = mapped_column(String(50), default="UTC", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    # Relationships
    service_points: Mapped[list["ServicePoint"]] = relationship(back_populates="branch")


class Service(Base):
    __tablename__ = "services"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=30, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class ServicePoint(Base):
    """Counter or station within a branch that serves a subset of services."""

    __tablename__ = "service_points"
    __table_args__ = (Index("idx_service_points_branch", "branch_id", "is_active"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    branch_id: Mapped[int] = mapped_column(
        ForeignKey("branches.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    branch: Mapped["Branch"] = relationship(back_populates="service_points")


class ServicePointService(Base):
    """Capability row: service point X can serve service Y."""

    __tablename__ = "service_point_services"
    __table_args__ = (
        UniqueConstraint("service_point_id", "service_id", name="uq_service_point_service"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    service_point_id: Mapped[int] = mapped_column(
        ForeignKey("service_points.id", ondelete="CASCADE"), nullable=False
    )
    service_id: Mapped[int] = mapped_column(
        ForeignKey("services.id", ondelete="CASCADE"), nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(20), default=ActorRole.USER.value, nullable=False)
    branch_id: Mapped[int | None] = mapped_column(
        ForeignKey("branches.id", ondelete="SET NULL"), nullable=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


# =============================================================================
# Branch policy
# =============================================================================


class BranchPolicy(Base):
    """
    Per-branch business rules. Absence of a row means system defaults.

    ``version`` increments on every write and is used as a compare-and-set
    guard against concurrent edits.
    """

    __tablename__ = "branch_policies"
    __table_args__ = (
        UniqueConstraint("branch_id", name="uq_branch_policy_branch"),
        CheckConstraint("cancellation_hours >= 0", name="ck_policy_cancellation_hours"),
        CheckConstraint(
            "reschedule_time_limit_hours >= 0", name="ck_policy_reschedule_limit"
        ),
        CheckConstraint("max_reschedules >= 1", name="ck_policy_max_reschedules"),
        CheckConstraint("max_advance_booking_days >= 1", name="ck_policy_max_advance"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    branch_id: Mapped[int] = mapped_column(
        ForeignKey("branches.id", ondelete="CASCADE"), nullable=False
    )

    cancellation_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    reschedule_time_limit_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    max_reschedules: Mapped[int] = mapped_column(Integer, nullable=False)
    max_advance_booking_days: Mapped[int] = mapped_column(Integer, nullable=False)

    # Reminders
    reminders_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False)
    reminder_offsets_hours: Mapped[list[int]] = mapped_column(JSON, nullable=False)
    reminder_message_template: Mapped[str | None] = mapped_column(Text, nullable=True)

    emergency_mode: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    # Audit
    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)


# =============================================================================
# Appointments
# =============================================================================


class Appointment(Base):
    """
    Central booking entity.

    Status only moves along the graph in services.appointment_state. Rows
    are never deleted; cancelled and no-show are retained for reporting.
    """

    __tablename__ = "appointments"
    __table_args__ = (
        Index("idx_appointments_branch_status_time", "branch_id", "status", "scheduled_at"),
        # One live booking per (branch, service, time); cancelled rows free the slot.
        # Walk-ins share "now" and are not slot-bound.
        Index(
            "uq_appointments_active_slot",
            "branch_id",
            "service_id",
            "scheduled_at",
            unique=True,
            postgresql_where=text(ACTIVE_SLOT_WHERE),
            sqlite_where=text(ACTIVE_SLOT_WHERE),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    branch_id: Mapped[int] = mapped_column(
        ForeignKey("branches.id", ondelete="RESTRICT"), nullable=False
    )
    service_id: Mapped[int] = mapped_column(
        ForeignKey("services.id", ondelete="RESTRICT"), nullable=False
    )
    service_point_id: Mapped[int | None] = mapped_column(
        ForeignKey("service_points.id", ondelete="SET NULL"), nullable=True
    )
    user_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )

    # Guest booking
    guest_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    guest_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    appointment_type: Mapped[str] = mapped_column(
        String(20),
        default=AppointmentType.BOOKING.value,
        server_default=AppointmentType.BOOKING.value,
        nullable=False,
    )
    confirmation_code: Mapped[str] = mapped_column(String(16), unique=True, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=DEFAULT_APPOINTMENT_STATUS.value, nullable=False
    )
    scheduled_at: Mapped[datetime] = mapped_column(nullable=False)
    original_scheduled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Attendance
    attended_at: Mapped[datetime | None] = mapped_column(nullable=True)
    no_show_marked_at: Mapped[datetime | None] = mapped_column(nullable=True)
    auto_marked_as_no_show: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Last reschedule (history lives in appointment_reschedules)
    rescheduled_by_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    rescheduled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    reschedule_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancelled_by_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    # Relationships
    branch: Mapped["Branch"] = relationship()
    service: Mapped["Service"] = relationship()
    user: Mapped["User | None"] = relationship()

    @property
    def recipient_email(self) -> str | None:
        if self.user is not None and self.user.email:
            return self.user.email
        return self.guest_email


class AppointmentReschedule(Base):
    """Immutable audit row, one per successful reschedule."""

    __tablename__ = "appointment_reschedules"
    __table_args__ = (Index("idx_appointment_reschedules_appt", "appointment_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    appointment_id: Mapped[int] = mapped_column(
        ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False
    )
    previous_scheduled_at: Mapped[datetime] = mapped_column(nullable=False)
    new_scheduled_at: Mapped[datetime] = mapped_column(nullable=False)
    actor_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)


# =============================================================================
# Queue
# =============================================================================


class QueueTicket(Base):
    """
    Queue position for an appointment bound to a service point.

    Ticket numbers restart at 1 each calendar day (branch local time).
    """

    __tablename__ = "queue_tickets"
    __table_args__ = (
        UniqueConstraint("appointment_id", name="uq_queue_ticket_appointment"),
        UniqueConstraint(
            "branch_id", "service_day", "ticket_number", name="uq_queue_ticket_number"
        ),
        Index("idx_queue_tickets_branch_day", "branch_id", "service_day", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    appointment_id: Mapped[int] = mapped_column(
        ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False
    )
    branch_id: Mapped[int] = mapped_column(
        ForeignKey("branches.id", ondelete="CASCADE"), nullable=False
    )
    service_point_id: Mapped[int] = mapped_column(
        ForeignKey("service_points.id", ondelete="RESTRICT"), nullable=False
    )
    service_day: Mapped[date] = mapped_column(Date, nullable=False)
    ticket_number: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=TicketStatus.WAITING.value, nullable=False
    )
    called_at: Mapped[datetime | None] = mapped_column(nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    # Relationships
    appointment: Mapped["Appointment"] = relationship()


class TicketCounter(Base):
    """Per-branch, per-day ticket sequence (serialization point for numbering)."""

    __tablename__ = "ticket_counters"

    branch_id: Mapped[int] = mapped_column(
        ForeignKey("branches.id", ondelete="CASCADE"), primary_key=True
    )
    service_day: Mapped[date] = mapped_column(Date, primary_key=True)
    last_number: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


# =============================================================================
# Reminders
# =============================================================================


class AppointmentReminder(Base):
    """
    One row per reminder attempt for (appointment, offset, scheduled time).

    The unique key makes the claim atomic: two dispatcher runs cannot both
    insert the pending row. ``target_scheduled_at`` is part of the key so a
    rescheduled appointment gets a fresh reminder for its new time.
    """

    __tablename__ = "appointment_reminders"
    __table_args__ = (
        UniqueConstraint(
            "appointment_id",
            "offset_hours",
            "target_scheduled_at",
            name="uq_appointment_reminder_offset",
        ),
        Index("idx_appointment_reminders_status", "appointment_id", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    appointment_id: Mapped[int] = mapped_column(
        ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False
    )
    offset_hours: Mapped[int] = mapped_column(Integer, nullable=False)
    target_scheduled_at: Mapped[datetime] = mapped_column(nullable=False)
    scheduled_send_at: Mapped[datetime] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=ReminderStatus.PENDING.value, nullable=False
    )
    email_address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    claimed_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
