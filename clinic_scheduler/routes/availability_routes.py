from datetime import date, datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, field_validator, model_validator

from clinic_scheduler.auth.dependencies import Identity, get_current_identity
from clinic_scheduler.core import config
from clinic_scheduler.routes.common import WindowResponse, build_window, lock_timeout, to_http_exception
from clinic_scheduler.scheduling.availability import (
    AvailabilityEntry,
    AvailabilityKind,
    Recurrence,
    RecurrenceFrequency,
)
from clinic_scheduler.scheduling.coordinator import SchedulingCoordinator
from clinic_scheduler.scheduling.errors import SchedulingError
from clinic_scheduler.services import get_coordinator

router = APIRouter(tags=['availability'])

MAX_SLOT_RANGE_DAYS = 28
MAX_REASON_LENGTH = 200
APPOINTMENT_DURATIONS = {
    'consultation': config.DEFAULT_APPOINTMENT_DURATION_MINUTES,
    'immunization': 15,
    'testing': 30,
    'counseling': 60,
    'other': 60,
    'prescription': 15,
}


class DeclareAvailabilityRequest(BaseModel):
    provider_id: str | None = None
    start_time: datetime
    end_time: datetime
    kind: AvailabilityKind = AvailabilityKind.AVAILABLE
    recurrence_frequency: RecurrenceFrequency | None = None
    recurrence_until: date | None = None
    reason: str | None = None

    @field_validator('reason')
    @classmethod
    def validate_reason(cls, value: str | None) -> str | None:
        if value is None:
            return None

        normalized = value.strip()
        if not normalized:
            return None

        if len(normalized) > MAX_REASON_LENGTH:
            raise ValueError(f'Reason must be {MAX_REASON_LENGTH} characters or fewer.')

        return normalized

    @model_validator(mode='after')
    def validate_recurrence(self) -> 'DeclareAvailabilityRequest':
        if (self.recurrence_frequency is None) != (self.recurrence_until is None):
            raise ValueError('recurrence_frequency and recurrence_until must be given together.')
        return self

    def recurrence(self) -> Recurrence | None:
        if self.recurrence_frequency is None:
            return None
        return Recurrence(self.recurrence_frequency, self.recurrence_until)


class AvailabilityEntryResponse(BaseModel):
    id: int
    provider_id: str
    kind: AvailabilityKind
    start_time: datetime
    end_time: datetime
    recurrence_frequency: RecurrenceFrequency | None = None
    recurrence_until: date | None = None
    reason: str | None = None
    occurrence_count: int

    @classmethod
    def from_entry(cls, entry: AvailabilityEntry) -> 'AvailabilityEntryResponse':
        return cls(
            id=entry.id,
            provider_id=entry.provider_id,
            kind=entry.kind,
            start_time=entry.window.start,
            end_time=entry.window.end,
            recurrence_frequency=entry.recurrence.frequency if entry.recurrence else None,
            recurrence_until=entry.recurrence.until if entry.recurrence else None,
            reason=entry.reason,
            occurrence_count=len(entry.occurrences),
        )


class CalendarSlotResponse(WindowResponse):
    provider_id: str
    appointment_type: str


class AppointmentTypeOptionResponse(BaseModel):
    appointment_type: str
    duration_minutes: int


def resolve_provider_id(identity: Identity, requested_provider_id: str | None) -> str:
    if identity.is_admin:
        if not requested_provider_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail='provider_id is required when acting as an admin.',
            )
        return requested_provider_id

    if identity.role != 'provider':
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='Only providers and admins can manage availability.',
        )

    if requested_provider_id and requested_provider_id != identity.subject:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail='Providers can only manage their own availability.',
        )

    return identity.subject


def validate_slot_range(start_time: datetime, end_time: datetime):
    window = build_window(start_time, end_time)
    if window.duration > timedelta(days=MAX_SLOT_RANGE_DAYS):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f'Slot searches are limited to {MAX_SLOT_RANGE_DAYS} days.',
        )
    return window


@router.post('/entries', response_model=AvailabilityEntryResponse, status_code=status.HTTP_201_CREATED)
def declare_availability(
    data: DeclareAvailabilityRequest,
    identity: Identity = Depends(get_current_identity),
    coordinator: SchedulingCoordinator = Depends(get_coordinator),
):
    provider_id = resolve_provider_id(identity, data.provider_id)

    try:
        entry = coordinator.declare_availability(
            provider_id,
            build_window(data.start_time, data.end_time),
            data.kind,
            recurrence=data.recurrence(),
            reason=data.reason,
            timeout=lock_timeout(),
        )
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc

    return AvailabilityEntryResponse.from_entry(entry)


@router.delete('/entries/{entry_id}', status_code=status.HTTP_204_NO_CONTENT)
def revoke_availability(
    entry_id: int,
    identity: Identity = Depends(get_current_identity),
    coordinator: SchedulingCoordinator = Depends(get_coordinator),
):
    try:
        entry = coordinator.ledger.get(entry_id)
        resolve_provider_id(identity, entry.provider_id)
        coordinator.revoke_availability(entry_id, timeout=lock_timeout())
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.get('/entries', response_model=list[AvailabilityEntryResponse])
def list_availability_entries(
    provider_id: str = Query(...),
    coordinator: SchedulingCoordinator = Depends(get_coordinator),
):
    return [AvailabilityEntryResponse.from_entry(entry) for entry in coordinator.availability_entries(provider_id)]


@router.get('/slots', response_model=list[WindowResponse])
def list_available_slots(
    provider_id: str = Query(...),
    start_time: datetime = Query(...),
    end_time: datetime = Query(...),
    coordinator: SchedulingCoordinator = Depends(get_coordinator),
):
    date_range = validate_slot_range(start_time, end_time)
    return [WindowResponse.from_window(window) for window in coordinator.list_available_slots(provider_id, date_range)]


@router.get('/appointment-types', response_model=list[AppointmentTypeOptionResponse])
def list_appointment_types():
    return [
        AppointmentTypeOptionResponse(appointment_type=appointment_type, duration_minutes=duration_minutes)
        for appointment_type, duration_minutes in APPOINTMENT_DURATIONS.items()
    ]


@router.get('/calendar', response_model=list[CalendarSlotResponse])
def list_calendar_slots(
    provider_id: str = Query(...),
    appointment_type: str = Query(...),
    start_time: datetime = Query(...),
    end_time: datetime = Query(...),
    coordinator: SchedulingCoordinator = Depends(get_coordinator),
):
    normalized_appointment_type = appointment_type.strip().lower()
    if normalized_appointment_type not in APPOINTMENT_DURATIONS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Invalid appointment type.',
        )

    date_range = validate_slot_range(start_time, end_time)
    duration = timedelta(minutes=APPOINTMENT_DURATIONS[normalized_appointment_type])
    step = timedelta(minutes=config.SLOT_INCREMENT_MINUTES)

    return [
        CalendarSlotResponse(
            provider_id=provider_id,
            appointment_type=normalized_appointment_type,
            **WindowResponse.from_window(window).model_dump(),
        )
        for window in coordinator.open_slots(provider_id, date_range, duration, step)
    ]
