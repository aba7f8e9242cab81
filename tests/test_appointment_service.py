"""
Tests for appointment lifecycle operations.

Coverage:
- Booking (horizon, capability, slot uniqueness, confirmation codes)
- Cancellation window and admin bypass
- Check-in by id and by code
- Reschedule ceiling, history, and slot conflicts
- Manual and automatic no-show
"""

from datetime import timedelta

import pytest

from branchflow.db.enums import ActorRole, AppointmentStatus


# =============================================================================
# Booking
# =============================================================================


def test_book_appointment_defaults(db, branch_setup, clock):
    from branchflow.services import appointment_service

    scheduled_at = clock() + timedelta(days=2)
    appointment = appointment_service.book_appointment(
        db,
        branch_id=branch_setup.branch.id,
        service_id=branch_setup.service.id,
        scheduled_at=scheduled_at,
        now=clock(),
        guest_name="  Ada Lovelace ",
        guest_email="Ada@Example.com",
    )
    db.commit()

    assert appointment.id is not None
    assert appointment.status == AppointmentStatus.SCHEDULED.value
    assert appointment.scheduled_at == scheduled_at
    assert appointment.guest_name == "Ada Lovelace"
    assert appointment.guest_email == "ada@example.com"
    assert appointment.recipient_email == "ada@example.com"
    assert len(appointment.confirmation_code) == 8
    assert appointment.confirmation_code.isalnum()
    assert appointment.confirmation_code == appointment.confirmation_code.upper()


def test_confirmation_codes_are_unique(make_appointment):
    codes = {make_appointment().confirmation_code for _ in range(10)}

    assert len(codes) == 10


def test_registered_user_receives_reminders_at_account_email(make_appointment, customer):
    appointment = make_appointment(user=customer)

    assert appointment.guest_email is None
    assert appointment.recipient_email == "customer@example.com"


@pytest.mark.parametrize(
    "delta, code",
    [
        (timedelta(hours=-1), "PAST_DATE"),
        (timedelta(days=31), "EXCEEDS_MAX_ADVANCE"),
    ],
)
def test_booking_outside_horizon_rejected(db, branch_setup, clock, delta, code):
    from branchflow.core.errors import BusinessRuleError
    from branchflow.services import appointment_service

    with pytest.raises(BusinessRuleError) as exc_info:
        appointment_service.book_appointment(
            db,
            branch_id=branch_setup.branch.id,
            service_id=branch_setup.service.id,
            scheduled_at=clock() + delta,
            now=clock(),
            guest_name="Guest",
            guest_email="guest@example.com",
        )

    assert exc_info.value.code.value == code


def test_booking_service_without_capable_point_rejected(db, branch_setup, clock):
    from branchflow.db.models import Service
    from branchflow.services import appointment_service
    from branchflow.services.appointment_service import ServiceNotOfferedError

    unsupported = Service(name="Vehicle inspection")
    db.add(unsupported)
    db.commit()

    with pytest.raises(ServiceNotOfferedError):
        appointment_service.book_appointment(
            db,
            branch_id=branch_setup.branch.id,
            service_id=unsupported.id,
            scheduled_at=clock() + timedelta(days=1),
            now=clock(),
            guest_name="Guest",
            guest_email="guest@example.com",
        )


def test_booking_unknown_branch_not_found(db, branch_setup, clock):
    from branchflow.core.errors import NotFoundError
    from branchflow.services import appointment_service

    with pytest.raises(NotFoundError):
        appointment_service.book_appointment(
            db,
            branch_id=999,
            service_id=branch_setup.service.id,
            scheduled_at=clock() + timedelta(days=1),
            now=clock(),
        )


def test_double_booking_same_slot_rejected(db, make_appointment, clock):
    from branchflow.services.appointment_service import SlotUnavailableError

    slot = clock() + timedelta(days=3)
    make_appointment(at=slot)

    with pytest.raises(SlotUnavailableError):
        make_appointment(at=slot)


def test_cancelled_appointment_frees_slot(db, make_appointment, clock):
    from branchflow.services import appointment_service

    slot = clock() + timedelta(days=3)
    first = make_appointment(at=slot)
    appointment_service.cancel_appointment(
        db, first.id, actor_id=None, actor_role=ActorRole.ANONYMOUS, now=clock()
    )
    db.commit()

    second = make_appointment(at=slot)

    assert second.id != first.id
    assert second.status == AppointmentStatus.SCHEDULED.value


def test_list_appointments_filters(db, make_appointment, branch_setup, clock):
    from branchflow.services import appointment_service

    early = make_appointment(hours_ahead=30)
    late = make_appointment(hours_ahead=100)
    appointment_service.check_in(db, late, now=clock())
    db.commit()

    branch_id = branch_setup.branch.id
    everything = appointment_service.list_appointments(db, branch_id)
    scheduled = appointment_service.list_appointments(
        db, branch_id, status=AppointmentStatus.SCHEDULED
    )
    windowed = appointment_service.list_appointments(
        db, branch_id, date_start=clock() + timedelta(hours=50)
    )

    assert [a.id for a in everything] == [early.id, late.id]
    assert [a.id for a in scheduled] == [early.id]
    assert [a.id for a in windowed] == [late.id]


# =============================================================================
# Cancellation
# =============================================================================


def test_cancel_outside_window(db, make_appointment, clock):
    from branchflow.services import appointment_service

    appointment = make_appointment(hours_ahead=48)

    cancelled = appointment_service.cancel_appointment(
        db, appointment.id, actor_id=5, actor_role=ActorRole.USER, now=clock()
    )
    db.commit()

    assert cancelled.status == AppointmentStatus.CANCELLED.value
    assert cancelled.cancelled_at == clock()
    assert cancelled.cancelled_by_id == 5


def test_cancel_inside_window_rejected_for_user_allowed_for_admin(db, make_appointment, clock):
    from branchflow.core.errors import BusinessRuleError, ErrorCode
    from branchflow.services import appointment_service

    appointment = make_appointment(hours_ahead=3)

    with pytest.raises(BusinessRuleError) as exc_info:
        appointment_service.cancel_appointment(
            db, appointment.id, actor_id=5, actor_role=ActorRole.USER, now=clock()
        )
    assert exc_info.value.code == ErrorCode.INSUFFICIENT_CANCELLATION_TIME
    db.refresh(appointment)
    assert appointment.status == AppointmentStatus.SCHEDULED.value

    appointment_service.cancel_appointment(
        db, appointment.id, actor_id=1, actor_role=ActorRole.ADMIN, now=clock()
    )
    assert appointment.status == AppointmentStatus.CANCELLED.value


def test_cancel_terminal_appointment_is_illegal(db, make_appointment, clock):
    from branchflow.core.errors import IllegalTransitionError
    from branchflow.services import appointment_service

    appointment = make_appointment()
    appointment_service.mark_no_show(db, appointment.id, actor_id=1, now=clock())
    db.commit()

    with pytest.raises(IllegalTransitionError):
        appointment_service.cancel_appointment(
            db, appointment.id, actor_id=1, actor_role=ActorRole.ADMIN, now=clock()
        )


def test_cancel_unknown_appointment(db, branch_setup, clock):
    from branchflow.services import appointment_service
    from branchflow.services.appointment_service import AppointmentNotFoundError

    with pytest.raises(AppointmentNotFoundError):
        appointment_service.cancel_appointment(
            db, 12345, actor_id=1, actor_role=ActorRole.ADMIN, now=clock()
        )


def test_cancel_retires_pending_reminders(db, make_appointment, clock):
    from branchflow.db.enums import ReminderStatus
    from branchflow.services import appointment_service, reminder_service

    appointment = make_appointment(hours_ahead=48)
    reminder_id = reminder_service.claim_reminder(
        db, appointment, 24, appointment.recipient_email, now=clock()
    )

    appointment_service.cancel_appointment(
        db, appointment.id, actor_id=None, actor_role=ActorRole.USER, now=clock()
    )
    db.commit()

    reminders = reminder_service.list_reminders(db, appointment.id)
    assert [r.id for r in reminders] == [reminder_id]
    assert reminders[0].status == ReminderStatus.CANCELLED.value


# =============================================================================
# Check-in
# =============================================================================


def test_check_in_stamps_attendance(db, make_appointment, clock):
    from branchflow.services import appointment_service

    appointment = make_appointment()
    appointment_service.check_in(db, appointment, now=clock())

    assert appointment.status == AppointmentStatus.CHECKED_IN.value
    assert appointment.attended_at == clock()


def test_check_in_by_code_is_case_insensitive(db, make_appointment, clock):
    from branchflow.services import appointment_service

    appointment = make_appointment()

    found = appointment_service.check_in_by_code(
        db, f"  {appointment.confirmation_code.lower()} ", now=clock()
    )

    assert found.id == appointment.id
    assert found.status == AppointmentStatus.CHECKED_IN.value


def test_check_in_unknown_code(db, branch_setup, clock):
    from branchflow.services import appointment_service
    from branchflow.services.appointment_service import AppointmentNotFoundError

    with pytest.raises(AppointmentNotFoundError, match="confirmation code"):
        appointment_service.check_in_by_code(db, "NOPE0000", now=clock())


def test_check_in_twice_is_illegal(db, make_appointment, clock):
    from branchflow.core.errors import IllegalTransitionError
    from branchflow.services import appointment_service

    appointment = make_appointment()
    appointment_service.check_in(db, appointment, now=clock())

    with pytest.raises(IllegalTransitionError, match="already checked in"):
        appointment_service.check_in(db, appointment, now=clock())


# =============================================================================
# Reschedule
# =============================================================================


def test_reschedule_moves_time_and_records_history(db, make_appointment, clock):
    from branchflow.services import appointment_service

    appointment = make_appointment(hours_ahead=48)
    original = appointment.scheduled_at
    new_time = original + timedelta(days=1)

    appointment_service.reschedule_appointment(
        db,
        appointment.id,
        new_time,
        actor_id=3,
        actor_role=ActorRole.USER,
        now=clock(),
        reason="Train delayed",
    )
    db.commit()

    assert appointment.status == AppointmentStatus.SCHEDULED.value
    assert appointment.scheduled_at == new_time
    assert appointment.original_scheduled_at == original
    assert appointment.rescheduled_by_id == 3
    assert appointment.reschedule_reason == "Train delayed"

    history = appointment_service.list_reschedule_history(db, appointment.id)
    assert len(history) == 1
    assert history[0].previous_scheduled_at == original
    assert history[0].new_scheduled_at == new_time
    assert history[0].actor_id == 3


def test_original_time_survives_multiple_reschedules(db, make_appointment, clock):
    from branchflow.services import appointment_service

    appointment = make_appointment(hours_ahead=48)
    original = appointment.scheduled_at

    for day in (3, 4):
        appointment_service.reschedule_appointment(
            db,
            appointment.id,
            original + timedelta(days=day),
            actor_id=None,
            actor_role=ActorRole.USER,
            now=clock(),
        )
    db.commit()

    assert appointment.original_scheduled_at == original
    assert appointment_service.get_reschedule_count(db, appointment.id) == 2


def test_reschedule_ceiling(db, make_appointment, clock):
    """max_reschedules=3 allows exactly three; the fourth fails."""
    from branchflow.core.errors import BusinessRuleError, ErrorCode
    from branchflow.services import appointment_service

    appointment = make_appointment(hours_ahead=48)
    base = appointment.scheduled_at

    for step in range(1, 4):
        appointment_service.reschedule_appointment(
            db,
            appointment.id,
            base + timedelta(hours=step),
            actor_id=None,
            actor_role=ActorRole.USER,
            now=clock(),
        )
    db.commit()

    with pytest.raises(BusinessRuleError) as exc_info:
        appointment_service.reschedule_appointment(
            db,
            appointment.id,
            base + timedelta(hours=10),
            actor_id=None,
            actor_role=ActorRole.USER,
            now=clock(),
        )

    assert exc_info.value.code == ErrorCode.MAX_RESCHEDULES_EXCEEDED
    assert appointment_service.get_reschedule_count(db, appointment.id) == 3


def test_admin_reschedule_ignores_ceiling(db, make_appointment, clock):
    from branchflow.services import appointment_service

    appointment = make_appointment(hours_ahead=48)
    base = appointment.scheduled_at

    for step in range(1, 6):
        appointment_service.reschedule_appointment(
            db,
            appointment.id,
            base + timedelta(hours=step),
            actor_id=1,
            actor_role=ActorRole.ADMIN,
            now=clock(),
        )

    assert appointment_service.get_reschedule_count(db, appointment.id) == 5


def test_reschedule_into_taken_slot(db, make_appointment, clock):
    from branchflow.services import appointment_service
    from branchflow.services.appointment_service import SlotUnavailableError

    taken = make_appointment(hours_ahead=72)
    moving = make_appointment(hours_ahead=48)

    with pytest.raises(SlotUnavailableError):
        appointment_service.reschedule_appointment(
            db,
            moving.id,
            taken.scheduled_at,
            actor_id=None,
            actor_role=ActorRole.USER,
            now=clock(),
        )

    assert appointment_service.get_reschedule_count(db, moving.id) == 0


def test_reschedule_checked_in_is_illegal(db, make_appointment, clock):
    from branchflow.core.errors import IllegalTransitionError
    from branchflow.services import appointment_service

    appointment = make_appointment(hours_ahead=48)
    appointment_service.check_in(db, appointment, now=clock())

    with pytest.raises(IllegalTransitionError):
        appointment_service.reschedule_appointment(
            db,
            appointment.id,
            appointment.scheduled_at + timedelta(days=1),
            actor_id=None,
            actor_role=ActorRole.ADMIN,
            now=clock(),
        )


def test_reschedule_cancels_pending_reminders(db, make_appointment, clock):
    from branchflow.db.enums import ReminderStatus
    from branchflow.services import appointment_service, reminder_service

    appointment = make_appointment(hours_ahead=48)
    reminder_service.claim_reminder(db, appointment, 24, appointment.recipient_email, now=clock())

    appointment_service.reschedule_appointment(
        db,
        appointment.id,
        appointment.scheduled_at + timedelta(days=1),
        actor_id=None,
        actor_role=ActorRole.USER,
        now=clock(),
    )
    db.commit()

    statuses = [r.status for r in reminder_service.list_reminders(db, appointment.id)]
    assert statuses == [ReminderStatus.CANCELLED.value]


# =============================================================================
# No-show
# =============================================================================


def test_manual_no_show(db, make_appointment, clock):
    from branchflow.services import appointment_service

    appointment = make_appointment()
    appointment_service.mark_no_show(db, appointment.id, actor_id=2, now=clock())

    assert appointment.status == AppointmentStatus.NO_SHOW.value
    assert appointment.no_show_marked_at == clock()
    assert appointment.auto_marked_as_no_show is False


def test_no_show_after_check_in_is_illegal(db, make_appointment, clock):
    from branchflow.core.errors import IllegalTransitionError
    from branchflow.services import appointment_service

    appointment = make_appointment()
    appointment_service.check_in(db, appointment, now=clock())

    with pytest.raises(IllegalTransitionError, match="mark as no-show"):
        appointment_service.mark_no_show(db, appointment.id, actor_id=2, now=clock())


def test_overdue_sweep_marks_only_past_scheduled(db, make_appointment, clock):
    from branchflow.services import appointment_service

    overdue = make_appointment(hours_ahead=1)
    arrived = make_appointment(hours_ahead=1)
    upcoming = make_appointment(hours_ahead=5)
    appointment_service.check_in(db, arrived, now=clock())
    db.commit()

    clock.advance(hours=2)
    marked = appointment_service.mark_overdue_no_shows(db, now=clock(), grace_minutes=1)
    db.commit()
    db.expire_all()

    assert marked == 1
    assert overdue.status == AppointmentStatus.NO_SHOW.value
    assert overdue.auto_marked_as_no_show is True
    assert overdue.no_show_marked_at == clock()
    assert arrived.status == AppointmentStatus.CHECKED_IN.value
    assert upcoming.status == AppointmentStatus.SCHEDULED.value

    # Idempotent
    assert appointment_service.mark_overdue_no_shows(db, now=clock()) == 0


def test_overdue_sweep_respects_grace(db, make_appointment, clock):
    from branchflow.services import appointment_service

    appointment = make_appointment(at=clock() + timedelta(minutes=30))

    clock.advance(minutes=33)
    assert appointment_service.mark_overdue_no_shows(db, now=clock(), grace_minutes=5) == 0

    clock.advance(minutes=3)
    assert appointment_service.mark_overdue_no_shows(db, now=clock(), grace_minutes=5) == 1
    db.commit()
    db.refresh(appointment)
    assert appointment.status == AppointmentStatus.NO_SHOW.value
