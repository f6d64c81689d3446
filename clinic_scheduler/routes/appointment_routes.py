from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator

from clinic_scheduler.auth.dependencies import Identity, get_current_identity
from clinic_scheduler.routes.availability_routes import APPOINTMENT_DURATIONS
from clinic_scheduler.routes.common import build_window, lock_timeout, to_http_exception
from clinic_scheduler.scheduling.appointments import Appointment, AppointmentStatus
from clinic_scheduler.scheduling.coordinator import SchedulingCoordinator
from clinic_scheduler.scheduling.errors import SchedulingError
from clinic_scheduler.scheduling.lifecycle import LifecycleAction, allowed_actions
from clinic_scheduler.scheduling.time_window import TimeWindow
from clinic_scheduler.services import get_coordinator

router = APIRouter(tags=['appointments'])

MAX_APPOINTMENT_NOTES_LENGTH = 2000
MAX_REASON_LENGTH = 1000

# Who may trigger each action, besides admins.
PROVIDER_ACTIONS = {
    LifecycleAction.CONFIRM,
    LifecycleAction.BEGIN,
    LifecycleAction.COMPLETE,
    LifecycleAction.CANCEL,
    LifecycleAction.MARK_NO_SHOW,
    LifecycleAction.RESCHEDULE,
}
CLIENT_ACTIONS = {
    LifecycleAction.CONFIRM,
    LifecycleAction.CANCEL,
    LifecycleAction.RESCHEDULE,
}


def _normalize_text(value: str | None, max_length: int, label: str) -> str | None:
    if value is None:
        return None

    normalized = value.strip()
    if not normalized:
        return None

    if len(normalized) > max_length:
        raise ValueError(f'{label} must be {max_length} characters or fewer.')

    return normalized


def _resolve_end_time(start_time: datetime, end_time: datetime | None, appointment_type: str) -> datetime:
    if end_time is not None:
        return end_time
    return start_time + timedelta(minutes=APPOINTMENT_DURATIONS[appointment_type])


class CreateAppointmentRequest(BaseModel):
    provider_id: str
    client_id: str | None = None
    appointment_type: str = 'consultation'
    start_time: datetime
    end_time: datetime | None = None
    notes: str | None = None
    reason: str | None = None

    @field_validator('provider_id')
    @classmethod
    def validate_provider_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError('Provider is required.')
        return normalized

    @field_validator('appointment_type')
    @classmethod
    def validate_appointment_type(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in APPOINTMENT_DURATIONS:
            raise ValueError('Invalid appointment type.')
        return normalized

    @field_validator('notes')
    @classmethod
    def validate_notes(cls, value: str | None) -> str | None:
        return _normalize_text(value, MAX_APPOINTMENT_NOTES_LENGTH, 'Notes')

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        return _normalize_text(value, MAX_REASON_LENGTH, 'Reason')

    def window(self) -> TimeWindow:
        return build_window(self.start_time, _resolve_end_time(self.start_time, self.end_time, self.appointment_type))


class RescheduleAppointmentRequest(BaseModel):
    start_time: datetime
    end_time: datetime | None = None


class AppointmentResponse(BaseModel):
    id: int
    provider_id: str
    client_id: str
    appointment_type: str
    start_time: datetime
    end_time: datetime
    duration_minutes: int
    status: AppointmentStatus
    notes: str | None = None
    reason: str | None = None
    version: int
    allowed_actions: list[LifecycleAction]

    @classmethod
    def from_appointment(cls, appointment: Appointment) -> 'AppointmentResponse':
        return cls(
            id=appointment.id,
            provider_id=appointment.provider_id,
            client_id=appointment.client_id,
            appointment_type=appointment.appointment_type,
            start_time=appointment.window.start,
            end_time=appointment.window.end,
            duration_minutes=int(appointment.window.duration.total_seconds() // 60),
            status=appointment.status,
            notes=appointment.notes,
            reason=appointment.reason,
            version=appointment.version,
            allowed_actions=allowed_actions(appointment.status),
        )


class StatusCountResponse(BaseModel):
    status: AppointmentStatus
    count: int


def resolve_client_id(identity: Identity, requested_client_id: str | None) -> str:
    if identity.is_admin:
        if not requested_client_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='client_id is required when acting as an admin.',
            )
        return requested_client_id

    if identity.role != 'client':
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='Only clients and admins can book appointments.',
        )

    if requested_client_id and requested_client_id != identity.subject:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='Clients can only book appointments for themselves.',
        )

    return identity.subject


def ensure_can_view(identity: Identity, appointment: Appointment) -> None:
    if identity.is_admin:
        return
    if identity.role == 'provider' and appointment.provider_id == identity.subject:
        return
    if identity.role == 'client' and appointment.client_id == identity.subject:
        return
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail='Only the provider or client on this appointment can access it.',
    )


def ensure_can_act(identity: Identity, appointment: Appointment, action: LifecycleAction) -> None:
    ensure_can_view(identity, appointment)
    if identity.is_admin:
        return

    permitted = PROVIDER_ACTIONS if identity.role == 'provider' else CLIENT_ACTIONS
    if action not in permitted:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f'A {identity.role} cannot {action.value} an appointment.',
        )


def _get_appointment(coordinator: SchedulingCoordinator, appointment_id: int) -> Appointment:
    try:
        return coordinator.get_appointment(appointment_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


def _apply_action(
    coordinator: SchedulingCoordinator,
    identity: Identity,
    appointment_id: int,
    action: LifecycleAction,
) -> AppointmentResponse:
    ensure_can_act(identity, _get_appointment(coordinator, appointment_id), action)

    operations = {
        LifecycleAction.CONFIRM: coordinator.confirm,
        LifecycleAction.BEGIN: coordinator.begin,
        LifecycleAction.COMPLETE: coordinator.complete,
        LifecycleAction.CANCEL: coordinator.cancel,
        LifecycleAction.MARK_NO_SHOW: coordinator.mark_no_show,
    }

    try:
        appointment = operations[action](appointment_id, timeout=lock_timeout())
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return AppointmentResponse.from_appointment(appointment)


@router.post('', response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
def create_appointment(
    data: CreateAppointmentRequest,
    identity: Identity = Depends(get_current_identity),
    coordinator: SchedulingCoordinator = Depends(get_coordinator),
):
    client_id = resolve_client_id(identity, data.client_id)

    try:
        appointment = coordinator.create_appointment(
            data.provider_id,
            client_id,
            data.window(),
            appointment_type=data.appointment_type,
            notes=data.notes,
            reason=data.reason,
            timeout=lock_timeout(),
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return AppointmentResponse.from_appointment(appointment)


@router.get('', response_model=list[AppointmentResponse])
def list_appointments(
    provider_id: str | None = Query(default=None),
    start_time: datetime | None = Query(default=None),
    end_time: datetime | None = Query(default=None),
    identity: Identity = Depends(get_current_identity),
    coordinator: SchedulingCoordinator = Depends(get_coordinator),
):
    if identity.role == 'client':
        appointments = coordinator.appointments_for_client(identity.subject)
        if provider_id:
            appointments = [appointment for appointment in appointments if appointment.provider_id == provider_id]
        return [AppointmentResponse.from_appointment(appointment) for appointment in appointments]

    if identity.role == 'provider':
        if provider_id and provider_id != identity.subject:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail='Providers can only view their own schedule.',
            )
        provider_id = identity.subject

    if not provider_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='provider_id is required.',
        )

    window = None
    if start_time is not None and end_time is not None:
        window = build_window(start_time, end_time)

    return [
        AppointmentResponse.from_appointment(appointment)
        for appointment in coordinator.appointments_for_provider(provider_id, window=window)
    ]


@router.get('/stats', response_model=list[StatusCountResponse])
def appointment_status_counts(
    provider_id: str | None = Query(default=None),
    identity: Identity = Depends(get_current_identity),
    coordinator: SchedulingCoordinator = Depends(get_coordinator),
):
    if not identity.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='Only admins can view appointment statistics.',
        )

    counts = coordinator.status_counts(provider_id)
    return [StatusCountResponse(status=appointment_status, count=count) for appointment_status, count in counts.items()]


@router.get('/{appointment_id}', response_model=AppointmentResponse)
def get_appointment(
    appointment_id: int,
    identity: Identity = Depends(get_current_identity),
    coordinator: SchedulingCoordinator = Depends(get_coordinator),
):
    appointment = _get_appointment(coordinator, appointment_id)
    ensure_can_view(identity, appointment)
    return AppointmentResponse.from_appointment(appointment)


@router.post('/{appointment_id}/confirm', response_model=AppointmentResponse)
def confirm_appointment(
    appointment_id: int,
    identity: Identity = Depends(get_current_identity),
    coordinator: SchedulingCoordinator = Depends(get_coordinator),
):
    return _apply_action(coordinator, identity, appointment_id, LifecycleAction.CONFIRM)


@router.post('/{appointment_id}/begin', response_model=AppointmentResponse)
def begin_appointment(
    appointment_id: int,
    identity: Identity = Depends(get_current_identity),
    coordinator: SchedulingCoordinator = Depends(get_coordinator),
):
    return _apply_action(coordinator, identity, appointment_id, LifecycleAction.BEGIN)


@router.post('/{appointment_id}/complete', response_model=AppointmentResponse)
def complete_appointment(
    appointment_id: int,
    identity: Identity = Depends(get_current_identity),
    coordinator: SchedulingCoordinator = Depends(get_coordinator),
):
    return _apply_action(coordinator, identity, appointment_id, LifecycleAction.COMPLETE)


@router.post('/{appointment_id}/cancel', response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: int,
    identity: Identity = Depends(get_current_identity),
    coordinator: SchedulingCoordinator = Depends(get_coordinator),
):
    return _apply_action(coordinator, identity, appointment_id, LifecycleAction.CANCEL)


@router.post('/{appointment_id}/no-show', response_model=AppointmentResponse)
def mark_appointment_no_show(
    appointment_id: int,
    identity: Identity = Depends(get_current_identity),
    coordinator: SchedulingCoordinator = Depends(get_coordinator),
):
    return _apply_action(coordinator, identity, appointment_id, LifecycleAction.MARK_NO_SHOW)


@router.post('/{appointment_id}/reschedule', response_model=AppointmentResponse)
def reschedule_appointment(
    appointment_id: int,
    data: RescheduleAppointmentRequest,
    identity: Identity = Depends(get_current_identity),
    coordinator: SchedulingCoordinator = Depends(get_coordinator),
):
    appointment = _get_appointment(coordinator, appointment_id)
    ensure_can_act(identity, appointment, LifecycleAction.RESCHEDULE)

    # Without an explicit end, keep the current duration.
    end_time = data.end_time or data.start_time + appointment.window.duration

    try:
        moved = coordinator.reschedule(
            appointment_id,
            build_window(data.start_time, end_time),
            timeout=lock_timeout(),
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return AppointmentResponse.from_appointment(moved)
