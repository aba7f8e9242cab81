"""Appointment status graph and guarded transitions.

Every status change goes through ``transition``, which checks the graph and
then writes with a compare-and-set on the current status. Two racing
transitions on the same appointment cannot both succeed.
"""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from branchflow.core.errors import IllegalTransitionError
from branchflow.db.enums import AppointmentStatus
from branchflow.db.models import Appointment

logger = logging.getLogger(__name__)

S = AppointmentStatus

ALLOWED_TRANSITIONS: dict[AppointmentStatus, frozenset[AppointmentStatus]] = {
    S.SCHEDULED: frozenset({S.CHECKED_IN, S.CANCELLED, S.NO_SHOW}),
    S.CHECKED_IN: frozenset({S.COMPLETED, S.CANCELLED}),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
    S.NO_SHOW: frozenset(),
}

_ACTIONS = {
    S.SCHEDULED: "reschedule",
    S.CHECKED_IN: "check in",
    S.COMPLETED: "enqueue",
    S.CANCELLED: "cancel",
    S.NO_SHOW: "mark as no-show",
}

_REASONS = {
    S.SCHEDULED: "the appointment has not been checked in",
    S.CHECKED_IN: "the appointment is already checked in",
    S.COMPLETED: "the appointment is already completed",
    S.CANCELLED: "the appointment is already cancelled",
    S.NO_SHOW: "the appointment was already marked as no-show",
}


def can_transition(current: AppointmentStatus | str, target: AppointmentStatus | str) -> bool:
    return S(target) in ALLOWED_TRANSITIONS[S(current)]


def check_transition(
    current: AppointmentStatus | str, target: AppointmentStatus | str
) -> None:
    """Raise IllegalTransitionError unless current → target is in the graph."""
    current, target = S(current), S(target)
    if target in ALLOWED_TRANSITIONS[current]:
        return
    raise IllegalTransitionError(
        current.value,
        target.value,
        f"Cannot {_ACTIONS[target]}: {_REASONS[current]}",
    )


def require_status(
    appointment: Appointment,
    allowed: set[AppointmentStatus],
    action_target: AppointmentStatus,
) -> None:
    """Guard for mutations that are not transitions (e.g. reschedule)."""
    current = S(appointment.status)
    if current in allowed:
        return
    raise IllegalTransitionError(
        current.value,
        action_target.value,
        f"Cannot {_ACTIONS[action_target]}: {_REASONS[current]}",
    )


def _current_status(db: Session, appointment_id: int) -> str | None:
    return db.execute(
        select(Appointment.status).where(Appointment.id == appointment_id)
    ).scalar_one_or_none()


def transition(
    db: Session,
    appointment: Appointment,
    target: AppointmentStatus,
    *,
    now: datetime,
    **values,
) -> Appointment:
    """
    Move ``appointment`` to ``target`` with a compare-and-set write.

    Extra column values (timestamps, bindings) are written in the same
    statement. On a lost race the appointment is reloaded and the error
    reports the status it actually has.
    """
    expected = S(appointment.status)
    check_transition(expected, target)

    result = db.execute(
        update(Appointment)
        .where(
            Appointment.id == appointment.id,
            Appointment.status == expected.value,
        )
        .values(status=target.value, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        actual = _current_status(db, appointment.id) or expected.value
        db.refresh(appointment)
        logger.info(
            "Transition lost race appointment_id=%s expected=%s actual=%s target=%s",
            appointment.id,
            expected.value,
            actual,
            target.value,
        )
        check_transition(actual, target)
        raise IllegalTransitionError(
            actual,
            target.value,
            f"Appointment status changed concurrently to {actual}, please retry",
        )

    db.refresh(appointment)
    logger.info(
        "Appointment %s: %s -> %s", appointment.id, expected.value, target.value
    )
    return appointment


def bulk_transition(
    db: Session,
    source: AppointmentStatus,
    target: AppointmentStatus,
    *criteria,
    now: datetime,
    **values,
) -> int:
    """
    Move every ``source`` appointment matching ``criteria`` to ``target``.

    One UPDATE with the status predicate in its WHERE clause; rows that
    changed status concurrently are left alone. Returns the number moved.
    """
    check_transition(source, target)
    result = db.execute(
        update(Appointment)
        .where(Appointment.status == source.value, *criteria)
        .values(status=target.value, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    moved = result.rowcount or 0
    if moved:
        logger.info("Appointments %s -> %s: %s rows", source.value, target.value, moved)
    return moved
