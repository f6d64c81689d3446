"""Appointment lifecycle.

SCHEDULED is the initial state; COMPLETED, CANCELLED and NO_SHOW are terminal.
Every function here returns a new ``Appointment`` snapshot and leaves its
input untouched. A disallowed action raises ``InvalidTransition``.
"""

from datetime import datetime
from enum import Enum

from clinic_scheduler.scheduling.appointments import DEFAULT_APPOINTMENT_TYPE, Appointment, AppointmentStatus
from clinic_scheduler.scheduling.conflicts import BookingDecision, Conflict
from clinic_scheduler.scheduling.errors import InvalidTransition
from clinic_scheduler.scheduling.time_window import TimeWindow, align_instant


class LifecycleAction(str, Enum):
    CONFIRM = 'confirm'
    BEGIN = 'begin'
    COMPLETE = 'complete'
    CANCEL = 'cancel'
    MARK_NO_SHOW = 'mark_no_show'
    RESCHEDULE = 'reschedule'


_PENDING = frozenset({AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED})

TRANSITIONS: dict[LifecycleAction, tuple[frozenset[AppointmentStatus], AppointmentStatus]] = {
    LifecycleAction.CONFIRM: (frozenset({AppointmentStatus.SCHEDULED}), AppointmentStatus.CONFIRMED),
    # Confirmation may be skipped.
    LifecycleAction.BEGIN: (_PENDING, AppointmentStatus.IN_PROGRESS),
    LifecycleAction.COMPLETE: (_PENDING | {AppointmentStatus.IN_PROGRESS}, AppointmentStatus.COMPLETED),
    LifecycleAction.CANCEL: (_PENDING, AppointmentStatus.CANCELLED),
    LifecycleAction.MARK_NO_SHOW: (_PENDING, AppointmentStatus.NO_SHOW),
    LifecycleAction.RESCHEDULE: (_PENDING, AppointmentStatus.SCHEDULED),
}


def allowed_actions(status: AppointmentStatus) -> list[LifecycleAction]:
    return [action for action, (sources, _) in TRANSITIONS.items() if status in sources]


def _target_status(appointment: Appointment, action: LifecycleAction) -> AppointmentStatus:
    sources, target = TRANSITIONS[action]
    if appointment.status not in sources:
        raise InvalidTransition(action.value, appointment.status)
    return target


def _raise_if_conflict(decision: BookingDecision) -> None:
    if isinstance(decision, Conflict):
        raise decision.to_error()


def create(
    appointment_id: int,
    provider_id: str,
    client_id: str,
    window: TimeWindow,
    decision: BookingDecision,
    now: datetime,
    appointment_type: str = DEFAULT_APPOINTMENT_TYPE,
    notes: str | None = None,
    reason: str | None = None,
) -> Appointment:
    _raise_if_conflict(decision)
    return Appointment(
        id=appointment_id,
        provider_id=provider_id,
        client_id=client_id,
        window=window,
        status=AppointmentStatus.SCHEDULED,
        appointment_type=appointment_type,
        notes=notes,
        reason=reason,
        created_at=now,
        updated_at=now,
    )


def transition(appointment: Appointment, action: LifecycleAction, now: datetime) -> Appointment:
    """Apply a status-only action (everything except reschedule)."""
    if action is LifecycleAction.RESCHEDULE:
        raise ValueError('Use reschedule() to move an appointment.')

    target = _target_status(appointment, action)

    if action is LifecycleAction.MARK_NO_SHOW:
        if align_instant(now, appointment.window.end) < appointment.window.end:
            raise InvalidTransition(action.value, appointment.status, 'the appointment has not ended yet')

    return appointment.evolve(now, status=target)


def reschedule(
    appointment: Appointment,
    new_window: TimeWindow,
    decision: BookingDecision,
    now: datetime,
) -> Appointment:
    """Move ``appointment`` to ``new_window`` and reset it to SCHEDULED.

    ``decision`` must come from ``can_book`` run with this appointment excluded
    from the conflict set. On conflict the booking error is raised and no new
    snapshot is produced.
    """
    target = _target_status(appointment, LifecycleAction.RESCHEDULE)
    _raise_if_conflict(decision)
    return appointment.evolve(now, window=new_window, status=target)
