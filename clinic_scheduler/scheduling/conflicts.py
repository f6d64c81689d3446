"""Booking conflict detection.

``can_book`` is a pure decision: it reads the appointments and ledger it is
given and never mutates anything. Only the coordinator acts on its verdict,
and only while holding the provider's lock.
"""

from collections.abc import Iterable
from dataclasses import dataclass

from clinic_scheduler.scheduling.appointments import Appointment
from clinic_scheduler.scheduling.availability import AvailabilityLedger
from clinic_scheduler.scheduling.errors import BOOKING_CONFLICTS, BookingConflict, ConflictReason
from clinic_scheduler.scheduling.time_window import TimeWindow


@dataclass(frozen=True)
class Admissible:
    def __bool__(self) -> bool:
        return True


@dataclass(frozen=True)
class Conflict:
    reason: ConflictReason
    message: str
    conflicting_appointment_ids: tuple[int, ...] = ()

    def __bool__(self) -> bool:
        return False

    def to_error(self) -> BookingConflict:
        return BOOKING_CONFLICTS[self.reason](self.message, self.conflicting_appointment_ids)


ADMISSIBLE = Admissible()

BookingDecision = Admissible | Conflict


def can_book(
    provider_id: str,
    window: TimeWindow,
    existing_appointments: Iterable[Appointment],
    ledger: AvailabilityLedger,
    exclude_appointment_id: int | None = None,
) -> BookingDecision:
    # Double booking is checked first; it is the more actionable error.
    clashes = tuple(
        appointment.id
        for appointment in existing_appointments
        if appointment.provider_id == provider_id
        and appointment.id != exclude_appointment_id
        and appointment.holds_window
        and appointment.window.overlaps(window)
    )
    if clashes:
        return Conflict(
            ConflictReason.DOUBLE_BOOKED,
            f'Provider {provider_id} is already booked during {window}.',
            clashes,
        )

    if not ledger.is_available(provider_id, window):
        return Conflict(
            ConflictReason.OUTSIDE_AVAILABILITY,
            f'Provider {provider_id} is not available during {window}.',
        )

    return ADMISSIBLE
