"""Appointment records and the per-provider appointment book."""

import threading
from bisect import insort
from collections.abc import Iterable
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum

from clinic_scheduler.scheduling.errors import NotFound
from clinic_scheduler.scheduling.time_window import TimeWindow

DEFAULT_APPOINTMENT_TYPE = 'consultation'


class AppointmentStatus(str, Enum):
    SCHEDULED = 'scheduled'
    CONFIRMED = 'confirmed'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    NO_SHOW = 'no_show'


TERMINAL_STATUSES = frozenset({
    AppointmentStatus.COMPLETED,
    AppointmentStatus.CANCELLED,
    AppointmentStatus.NO_SHOW,
})

# Appointments in these statuses no longer hold their window.
RELEASED_STATUSES = frozenset({
    AppointmentStatus.CANCELLED,
    AppointmentStatus.NO_SHOW,
})


@dataclass(frozen=True)
class Appointment:
    """Immutable snapshot of an appointment.

    Lifecycle transitions build a new snapshot and the book swaps it in whole,
    so readers never observe a half-applied transition.
    """

    id: int
    provider_id: str
    client_id: str
    window: TimeWindow
    status: AppointmentStatus = AppointmentStatus.SCHEDULED
    appointment_type: str = DEFAULT_APPOINTMENT_TYPE
    notes: str | None = None
    reason: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    version: int = 1

    @property
    def holds_window(self) -> bool:
        return self.status not in RELEASED_STATUSES

    @property
    def is_active(self) -> bool:
        return self.status not in TERMINAL_STATUSES

    def is_past(self, now: datetime) -> bool:
        return self.window.end <= now

    def is_upcoming(self, now: datetime) -> bool:
        return self.window.start > now

    def evolve(self, now: datetime, **changes) -> 'Appointment':
        return replace(self, updated_at=now, version=self.version + 1, **changes)


def _start_key(appointment: Appointment) -> datetime:
    return appointment.window.start


class AppointmentBook:
    """Appointments indexed by id and, per provider, sorted by start time.

    Cancelled and no-show appointments stay in the book; they are never deleted.
    Writers for a provider must hold that provider's scheduling lock. Readers
    get tuples that are never mutated afterwards.
    """

    def __init__(self):
        self._by_id: dict[int, Appointment] = {}
        self._by_provider: dict[str, tuple[Appointment, ...]] = {}
        self._last_id = 0
        self._index_lock = threading.Lock()

    def next_id(self) -> int:
        with self._index_lock:
            self._last_id += 1
            return self._last_id

    def get(self, appointment_id: int) -> Appointment:
        try:
            return self._by_id[appointment_id]
        except KeyError:
            raise NotFound(f'Appointment {appointment_id} not found.') from None

    def put(self, appointment: Appointment) -> None:
        """Insert a new appointment or swap in the next snapshot of an existing one."""
        with self._index_lock:
            current = [
                existing
                for existing in self._by_provider.get(appointment.provider_id, ())
                if existing.id != appointment.id
            ]
            insort(current, appointment, key=_start_key)
            self._by_provider[appointment.provider_id] = tuple(current)
            self._by_id[appointment.id] = appointment
            self._last_id = max(self._last_id, appointment.id)

    def for_provider(self, provider_id: str) -> tuple[Appointment, ...]:
        return self._by_provider.get(provider_id, ())

    def for_client(self, client_id: str) -> list[Appointment]:
        return [appointment for appointment in list(self._by_id.values()) if appointment.client_id == client_id]

    def all(self) -> list[Appointment]:
        return list(self._by_id.values())

    def overlapping(
        self,
        provider_id: str,
        window: TimeWindow,
        statuses: Iterable[AppointmentStatus] | None = None,
    ) -> list[Appointment]:
        wanted = frozenset(statuses) if statuses is not None else None
        matches = []
        for appointment in self.for_provider(provider_id):
            if appointment.window.start >= window.end:
                break
            if not appointment.window.overlaps(window):
                continue
            if wanted is None or appointment.status in wanted:
                matches.append(appointment)
        return matches

    def __len__(self) -> int:
        return len(self._by_id)
