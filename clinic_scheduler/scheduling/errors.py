"""Errors raised by the scheduling engine.

Every error here is recoverable and reported synchronously to the caller.
The engine never retries on its own.
"""

from enum import Enum


class ConflictReason(str, Enum):
    DOUBLE_BOOKED = 'double_booked'
    OUTSIDE_AVAILABILITY = 'outside_availability'


class SchedulingError(Exception):
    """Base class for all scheduling engine errors."""


class InvalidWindow(SchedulingError):
    """Raised when a time range is malformed (end <= start)."""


class InvalidRecurrence(InvalidWindow):
    """Raised when a recurring declaration cannot be expanded."""


class OverlapConflict(SchedulingError):
    """Raised when an availability declaration overlaps an existing entry."""

    def __init__(self, message: str, conflicting_entry_ids: tuple[int, ...] = ()):
        super().__init__(message)
        self.conflicting_entry_ids = conflicting_entry_ids


class BookingConflict(SchedulingError):
    """Raised when the conflict detector rejects a booking window."""

    reason: ConflictReason

    def __init__(self, message: str, conflicting_appointment_ids: tuple[int, ...] = ()):
        super().__init__(message)
        self.conflicting_appointment_ids = conflicting_appointment_ids


class DoubleBooked(BookingConflict):
    reason = ConflictReason.DOUBLE_BOOKED


class OutsideAvailability(BookingConflict):
    reason = ConflictReason.OUTSIDE_AVAILABILITY


class InvalidTransition(SchedulingError):
    """Raised when a lifecycle action is not allowed from the current status."""

    def __init__(self, action: str, status, detail: str | None = None):
        message = f'Cannot {action} an appointment that is {status.value}.'
        if detail:
            message = f'{message[:-1]}: {detail}'
        super().__init__(message)
        self.action = action
        self.status = status


class NotFound(SchedulingError):
    """Raised when an appointment or availability entry id is unknown."""


class Busy(SchedulingError):
    """Raised when a provider lock is not acquired within the caller's budget."""

    def __init__(self, provider_id: str, timeout: float):
        super().__init__(f'Provider {provider_id} is busy; lock not acquired within {timeout:g}s.')
        self.provider_id = provider_id
        self.timeout = timeout


BOOKING_CONFLICTS = {
    ConflictReason.DOUBLE_BOOKED: DoubleBooked,
    ConflictReason.OUTSIDE_AVAILABILITY: OutsideAvailability,
}
