"""Availability ledger.

Per-provider record of declared AVAILABLE / UNAVAILABLE / BREAK windows.
Each provider's occurrences are kept in one list sorted by start time. No two
occurrences in a provider's list overlap, whatever their kind, so the list is
sorted by end time as well and overlap queries are a bisect plus a short scan.

The ledger does no locking of provider state. Callers mutate a provider's
entries only while holding that provider's scheduling lock.
"""

import logging
import threading
from bisect import bisect_right, insort
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum

from clinic_scheduler.scheduling.errors import InvalidRecurrence, InvalidWindow, NotFound, OverlapConflict
from clinic_scheduler.scheduling.time_window import TimeWindow

logger = logging.getLogger(__name__)

DEFAULT_MAX_OCCURRENCES = 366


class AvailabilityKind(str, Enum):
    AVAILABLE = 'available'
    UNAVAILABLE = 'unavailable'
    BREAK = 'break'


class RecurrenceFrequency(str, Enum):
    DAILY = 'daily'
    WEEKDAYS = 'weekdays'
    WEEKLY = 'weekly'


@dataclass(frozen=True)
class Recurrence:
    frequency: RecurrenceFrequency
    until: date

    def expand(self, window: TimeWindow, max_occurrences: int = DEFAULT_MAX_OCCURRENCES) -> tuple[TimeWindow, ...]:
        """Return every occurrence of ``window`` up to and including ``until``."""
        if self.until < window.start.date():
            raise InvalidRecurrence(
                f'Recurrence ends on {self.until.isoformat()}, before the first occurrence on '
                f'{window.start.date().isoformat()}.'
            )

        occurrences = [window]
        current = window
        while True:
            current = current.shift(self._step_after(current.start))
            if current.start.date() > self.until:
                break
            occurrences.append(current)
            if len(occurrences) > max_occurrences:
                raise InvalidRecurrence(f'Recurrence expands to more than {max_occurrences} occurrences.')

        return tuple(occurrences)

    def _step_after(self, start: datetime) -> timedelta:
        if self.frequency is RecurrenceFrequency.WEEKLY:
            return timedelta(days=7)
        if self.frequency is RecurrenceFrequency.WEEKDAYS:
            # Friday -> Monday, Saturday -> Monday
            weekday = start.weekday()
            if weekday == 4:
                return timedelta(days=3)
            if weekday == 5:
                return timedelta(days=2)
        return timedelta(days=1)


@dataclass(frozen=True)
class AvailabilityEntry:
    id: int
    provider_id: str
    window: TimeWindow
    kind: AvailabilityKind
    recurrence: Recurrence | None = None
    reason: str | None = None
    created_at: datetime | None = None
    occurrences: tuple[TimeWindow, ...] = field(default=(), compare=False)

    def __post_init__(self) -> None:
        if not self.occurrences:
            object.__setattr__(self, 'occurrences', (self.window,))


@dataclass(frozen=True)
class _Occurrence:
    window: TimeWindow
    entry_id: int
    kind: AvailabilityKind


def _start_key(occurrence: _Occurrence) -> datetime:
    return occurrence.window.start


def _overlapping(occurrences: Sequence[_Occurrence], window: TimeWindow) -> Iterator[_Occurrence]:
    # Only the occurrence just before the bisect point can straddle window.start.
    index = max(bisect_right(occurrences, window.start, key=_start_key) - 1, 0)
    while index < len(occurrences) and occurrences[index].window.start < window.end:
        if occurrences[index].window.end > window.start:
            yield occurrences[index]
        index += 1


def _interval_subtract(interval: TimeWindow, block: TimeWindow) -> list[TimeWindow]:
    if not interval.overlaps(block):
        return [interval]

    remaining = []
    if block.start > interval.start:
        remaining.append(TimeWindow(interval.start, block.start))
    if block.end < interval.end:
        remaining.append(TimeWindow(block.end, interval.end))
    return remaining


def _subtract_all(interval: TimeWindow, blocks: Sequence[TimeWindow]) -> list[TimeWindow]:
    pieces = [interval]
    for block in blocks:
        pieces = [piece for current in pieces for piece in _interval_subtract(current, block)]
    return pieces


class AvailableSlots:
    """Ordered, lazy and restartable view of a provider's bookable windows.

    Each iteration works on a snapshot of the provider's ledger taken when the
    iteration starts. Iterating outside the provider lock may therefore observe
    a slightly stale ledger.
    """

    def __init__(self, ledger: 'AvailabilityLedger', provider_id: str, date_range: TimeWindow):
        self._ledger = ledger
        self.provider_id = provider_id
        self.date_range = date_range

    def __iter__(self) -> Iterator[TimeWindow]:
        in_range = list(_overlapping(self._ledger._snapshot(self.provider_id), self.date_range))
        blocks = [occurrence.window for occurrence in in_range if occurrence.kind is not AvailabilityKind.AVAILABLE]

        run: TimeWindow | None = None
        for occurrence in in_range:
            if occurrence.kind is not AvailabilityKind.AVAILABLE:
                continue

            clipped = occurrence.window.clip(self.date_range)
            if clipped is None:
                continue

            if run is not None and run.end == clipped.start:
                run = TimeWindow(run.start, clipped.end)
                continue

            if run is not None:
                yield from _subtract_all(run, blocks)
            run = clipped

        if run is not None:
            yield from _subtract_all(run, blocks)

    def __repr__(self) -> str:
        return f'AvailableSlots(provider_id={self.provider_id!r}, date_range={self.date_range})'


class AvailabilityLedger:
    """Source of truth for when each provider is willing and able to be booked."""

    def __init__(self, max_occurrences: int = DEFAULT_MAX_OCCURRENCES, clock=datetime.now):
        self.max_occurrences = max_occurrences
        self._clock = clock
        self._providers: dict[str, list[_Occurrence]] = {}
        self._entries: dict[int, AvailabilityEntry] = {}
        self._last_id = 0
        # Guards the cross-provider indexes only, never a provider's occurrences.
        self._index_lock = threading.Lock()

    def declare(
        self,
        provider_id: str,
        window: TimeWindow,
        kind: AvailabilityKind,
        recurrence: Recurrence | None = None,
        reason: str | None = None,
    ) -> int:
        occurrences = recurrence.expand(window, self.max_occurrences) if recurrence else (window,)

        for earlier, later in zip(occurrences, occurrences[1:]):
            if earlier.overlaps(later):
                raise OverlapConflict(f'Occurrences {earlier} and {later} of the same declaration overlap.')

        provider_occurrences = self._providers.get(provider_id, [])
        self._check_same_flavour(provider_occurrences, window)

        conflicting = sorted({
            existing.entry_id
            for occurrence in occurrences
            for existing in _overlapping(provider_occurrences, occurrence)
        })
        if conflicting:
            raise OverlapConflict(
                f'Window {window} overlaps availability entries {conflicting} for provider {provider_id}.',
                conflicting_entry_ids=tuple(conflicting),
            )

        with self._index_lock:
            self._last_id += 1
            entry_id = self._last_id

        entry = AvailabilityEntry(
            id=entry_id,
            provider_id=provider_id,
            window=window,
            kind=AvailabilityKind(kind),
            recurrence=recurrence,
            reason=reason,
            created_at=self._clock(),
            occurrences=occurrences,
        )
        self._insert(entry)
        logger.debug('Declared %s entry %s for provider %s at %s', entry.kind.value, entry_id, provider_id, window)
        return entry_id

    def revoke(self, entry_id: int) -> AvailabilityEntry:
        entry = self.get(entry_id)
        with self._index_lock:
            del self._entries[entry_id]
            provider_occurrences = self._providers.get(entry.provider_id, [])
            self._providers[entry.provider_id] = [
                occurrence for occurrence in provider_occurrences if occurrence.entry_id != entry_id
            ]
        return entry

    def restore(self, entry: AvailabilityEntry) -> None:
        """Re-insert an entry loaded from storage, keeping its id."""
        provider_occurrences = self._providers.get(entry.provider_id, [])
        self._check_same_flavour(provider_occurrences, entry.window)
        for occurrence in entry.occurrences:
            conflicting = [existing.entry_id for existing in _overlapping(provider_occurrences, occurrence)]
            if conflicting:
                raise OverlapConflict(
                    f'Stored entry {entry.id} overlaps entries {conflicting}.',
                    conflicting_entry_ids=tuple(conflicting),
                )

        with self._index_lock:
            if entry.id in self._entries:
                raise OverlapConflict(f'Availability entry {entry.id} is already loaded.')
            self._last_id = max(self._last_id, entry.id)

        self._insert(entry)

    def get(self, entry_id: int) -> AvailabilityEntry:
        try:
            return self._entries[entry_id]
        except KeyError:
            raise NotFound(f'Availability entry {entry_id} not found.') from None

    def entries(self, provider_id: str) -> list[AvailabilityEntry]:
        entries = [entry for entry in list(self._entries.values()) if entry.provider_id == provider_id]
        return sorted(entries, key=lambda entry: entry.window.start)

    def entries_covering(self, provider_id: str, instant: datetime) -> list[AvailabilityEntry]:
        moment = TimeWindow(instant, instant + timedelta(microseconds=1))
        entry_ids = [occurrence.entry_id for occurrence in _overlapping(self._snapshot(provider_id), moment)]
        return [self._entries[entry_id] for entry_id in entry_ids if entry_id in self._entries]

    def is_available(self, provider_id: str, window: TimeWindow) -> bool:
        """True iff ``window`` is covered by AVAILABLE time with no gap and no blocking entry."""
        cursor = window.start
        for occurrence in _overlapping(self._snapshot(provider_id), window):
            if occurrence.kind is not AvailabilityKind.AVAILABLE:
                return False
            if occurrence.window.start > cursor:
                return False
            cursor = occurrence.window.end
            if cursor >= window.end:
                return True
        return cursor >= window.end

    def reference_instant(self, provider_id: str) -> datetime | None:
        """Any instant from the provider's ledger, or None when it is empty."""
        occurrences = self._snapshot(provider_id)
        return occurrences[0].window.start if occurrences else None

    def list_available_slots(self, provider_id: str, date_range: TimeWindow) -> AvailableSlots:
        return AvailableSlots(self, provider_id, date_range)

    def _snapshot(self, provider_id: str) -> tuple[_Occurrence, ...]:
        return tuple(self._providers.get(provider_id, ()))

    def _insert(self, entry: AvailabilityEntry) -> None:
        with self._index_lock:
            self._entries[entry.id] = entry
            provider_occurrences = list(self._providers.get(entry.provider_id, []))
            for window in entry.occurrences:
                insort(provider_occurrences, _Occurrence(window, entry.id, entry.kind), key=_start_key)
            # Swap the whole list so unlocked readers never see a half-built one.
            self._providers[entry.provider_id] = provider_occurrences

    @staticmethod
    def _check_same_flavour(occurrences: Sequence[_Occurrence], window: TimeWindow) -> None:
        if occurrences and (occurrences[0].window.start.tzinfo is None) != (window.start.tzinfo is None):
            raise InvalidWindow('Cannot mix naive and timezone-aware windows for the same provider.')
