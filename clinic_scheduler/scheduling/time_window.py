from dataclasses import dataclass
from datetime import datetime, timedelta

from clinic_scheduler.scheduling.errors import InvalidWindow


@dataclass(frozen=True, order=True)
class TimeWindow:
    """Half-open interval [start, end)."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if not isinstance(self.start, datetime) or not isinstance(self.end, datetime):
            raise InvalidWindow('Window bounds must be datetimes.')

        if (self.start.tzinfo is None) != (self.end.tzinfo is None):
            raise InvalidWindow('Window bounds must both be naive or both be timezone-aware.')

        if self.end <= self.start:
            raise InvalidWindow(f'Window end {self.end.isoformat()} must be after start {self.start.isoformat()}.')

    @classmethod
    def from_duration(cls, start: datetime, minutes: int) -> 'TimeWindow':
        return cls(start, start + timedelta(minutes=minutes))

    def overlaps(self, other: 'TimeWindow') -> bool:
        return overlaps(self, other)

    def contains(self, instant: datetime) -> bool:
        return contains(self, instant)

    def covers(self, other: 'TimeWindow') -> bool:
        return self.start <= other.start and other.end <= self.end

    @property
    def duration(self) -> timedelta:
        return duration(self)

    def shift(self, delta: timedelta) -> 'TimeWindow':
        return TimeWindow(self.start + delta, self.end + delta)

    def clip(self, bounds: 'TimeWindow') -> 'TimeWindow | None':
        start = max(self.start, bounds.start)
        end = min(self.end, bounds.end)
        if end <= start:
            return None
        return TimeWindow(start, end)

    def __str__(self) -> str:
        return f'[{self.start.isoformat()}, {self.end.isoformat()})'


def overlaps(a: TimeWindow, b: TimeWindow) -> bool:
    # Back-to-back windows do not overlap.
    return a.start < b.end and b.start < a.end


def contains(window: TimeWindow, instant: datetime) -> bool:
    return window.start <= instant < window.end


def duration(window: TimeWindow) -> timedelta:
    return window.end - window.start


def align_instant(instant: datetime, reference: datetime) -> datetime:
    """Return ``instant`` expressed with the same naive/aware flavour as ``reference``.

    Naive datetimes are treated as local time.
    """
    if reference.tzinfo is not None and instant.tzinfo is None:
        return instant.astimezone(reference.tzinfo)
    if reference.tzinfo is None and instant.tzinfo is not None:
        return instant.astimezone().replace(tzinfo=None)
    return instant


def align_window(window: TimeWindow, reference: datetime | None) -> TimeWindow:
    if reference is None or (window.start.tzinfo is None) == (reference.tzinfo is None):
        return window
    return TimeWindow(align_instant(window.start, reference), align_instant(window.end, reference))
