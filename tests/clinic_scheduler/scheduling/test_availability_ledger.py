import threading
from datetime import date, datetime

import pytest

from clinic_scheduler.scheduling.availability import (
    AvailabilityKind,
    AvailabilityLedger,
    Recurrence,
    RecurrenceFrequency,
)
from clinic_scheduler.scheduling.coordinator import SchedulingCoordinator
from clinic_scheduler.scheduling.errors import InvalidRecurrence, NotFound, OverlapConflict
from clinic_scheduler.scheduling.time_window import TimeWindow

PROVIDER = 'dr-d'


def at(hour: int, minute: int = 0, day: int = 5) -> datetime:
    return datetime(2026, 1, day, hour, minute)


def window(start: datetime, end: datetime) -> TimeWindow:
    return TimeWindow(start, end)


@pytest.fixture
def ledger() -> AvailabilityLedger:
    return AvailabilityLedger()


def test_declare_returns_distinct_ids(ledger: AvailabilityLedger) -> None:
    first = ledger.declare(PROVIDER, window(at(9), at(10)), AvailabilityKind.AVAILABLE)
    second = ledger.declare(PROVIDER, window(at(10), at(11)), AvailabilityKind.AVAILABLE)

    assert first != second
    assert [entry.id for entry in ledger.entries(PROVIDER)] == [first, second]


@pytest.mark.parametrize('kind', list(AvailabilityKind))
def test_declare_rejects_overlap_with_any_kind(ledger: AvailabilityLedger, kind: AvailabilityKind) -> None:
    existing = ledger.declare(PROVIDER, window(at(9), at(12)), AvailabilityKind.AVAILABLE)

    with pytest.raises(OverlapConflict) as exception_info:
        ledger.declare(PROVIDER, window(at(11), at(13)), kind)

    assert exception_info.value.conflicting_entry_ids == (existing,)
    assert len(ledger.entries(PROVIDER)) == 1


def test_declare_allows_same_window_for_other_provider(ledger: AvailabilityLedger) -> None:
    ledger.declare(PROVIDER, window(at(9), at(12)), AvailabilityKind.AVAILABLE)
    ledger.declare('dr-e', window(at(9), at(12)), AvailabilityKind.AVAILABLE)

    assert len(ledger.entries('dr-e')) == 1


def test_revoke_then_redeclare(ledger: AvailabilityLedger) -> None:
    entry_id = ledger.declare(PROVIDER, window(at(9), at(12)), AvailabilityKind.AVAILABLE)

    revoked = ledger.revoke(entry_id)
    ledger.declare(PROVIDER, window(at(10), at(11)), AvailabilityKind.BREAK)

    assert revoked.id == entry_id
    assert [entry.kind for entry in ledger.entries(PROVIDER)] == [AvailabilityKind.BREAK]


def test_revoke_unknown_entry_raises_not_found(ledger: AvailabilityLedger) -> None:
    with pytest.raises(NotFound):
        ledger.revoke(404)


def test_is_available_spans_adjacent_available_entries(ledger: AvailabilityLedger) -> None:
    ledger.declare(PROVIDER, window(at(9), at(10)), AvailabilityKind.AVAILABLE)
    ledger.declare(PROVIDER, window(at(10), at(11)), AvailabilityKind.AVAILABLE)

    assert ledger.is_available(PROVIDER, window(at(9, 30), at(10, 30)))
    assert ledger.is_available(PROVIDER, window(at(9), at(11)))


def test_is_available_rejects_gap(ledger: AvailabilityLedger) -> None:
    ledger.declare(PROVIDER, window(at(9), at(10)), AvailabilityKind.AVAILABLE)
    ledger.declare(PROVIDER, window(at(10, 15), at(11)), AvailabilityKind.AVAILABLE)

    assert not ledger.is_available(PROVIDER, window(at(9, 30), at(10, 30)))


def test_is_available_rejects_intervening_break(ledger: AvailabilityLedger) -> None:
    ledger.declare(PROVIDER, window(at(9), at(10)), AvailabilityKind.AVAILABLE)
    ledger.declare(PROVIDER, window(at(10), at(10, 15)), AvailabilityKind.BREAK)
    ledger.declare(PROVIDER, window(at(10, 15), at(11)), AvailabilityKind.AVAILABLE)

    assert not ledger.is_available(PROVIDER, window(at(9, 45), at(10, 30)))
    assert ledger.is_available(PROVIDER, window(at(10, 15), at(11)))


@pytest.mark.parametrize(
    ('start', 'end'),
    [
        (at(8, 30), at(9, 30)),
        (at(11, 30), at(12, 30)),
        (at(13), at(14)),
    ],
)
def test_is_available_rejects_windows_outside_declared_time(ledger: AvailabilityLedger, start, end) -> None:
    ledger.declare(PROVIDER, window(at(9), at(12)), AvailabilityKind.AVAILABLE)

    assert not ledger.is_available(PROVIDER, window(start, end))


def test_is_available_false_for_unknown_provider(ledger: AvailabilityLedger) -> None:
    assert not ledger.is_available('nobody', window(at(9), at(10)))


def test_list_available_slots_merges_adjacent_and_skips_breaks(ledger: AvailabilityLedger) -> None:
    ledger.declare(PROVIDER, window(at(11), at(11, 30)), AvailabilityKind.BREAK)
    ledger.declare(PROVIDER, window(at(10), at(11)), AvailabilityKind.AVAILABLE)
    ledger.declare(PROVIDER, window(at(9), at(10)), AvailabilityKind.AVAILABLE)
    ledger.declare(PROVIDER, window(at(11, 30), at(13)), AvailabilityKind.AVAILABLE)

    slots = list(ledger.list_available_slots(PROVIDER, window(at(0), at(23))))

    assert slots == [window(at(9), at(11)), window(at(11, 30), at(13))]


def test_list_available_slots_clips_to_range(ledger: AvailabilityLedger) -> None:
    ledger.declare(PROVIDER, window(at(9), at(11)), AvailabilityKind.AVAILABLE)
    ledger.declare(PROVIDER, window(at(11, 30), at(13)), AvailabilityKind.AVAILABLE)

    slots = list(ledger.list_available_slots(PROVIDER, window(at(9, 30), at(12))))

    assert slots == [window(at(9, 30), at(11)), window(at(11, 30), at(12))]


def test_list_available_slots_is_restartable_and_sees_later_declarations(ledger: AvailabilityLedger) -> None:
    ledger.declare(PROVIDER, window(at(9), at(10)), AvailabilityKind.AVAILABLE)
    slots = ledger.list_available_slots(PROVIDER, window(at(0), at(23)))

    assert list(slots) == list(slots) == [window(at(9), at(10))]

    ledger.declare(PROVIDER, window(at(14), at(15)), AvailabilityKind.AVAILABLE)

    assert list(slots) == [window(at(9), at(10)), window(at(14), at(15))]


def test_entries_covering_finds_entry_for_instant(ledger: AvailabilityLedger) -> None:
    entry_id = ledger.declare(PROVIDER, window(at(9), at(10)), AvailabilityKind.AVAILABLE)

    assert [entry.id for entry in ledger.entries_covering(PROVIDER, at(9, 59))] == [entry_id]
    assert ledger.entries_covering(PROVIDER, at(10)) == []


def test_weekly_recurrence_expands_until_inclusive(ledger: AvailabilityLedger) -> None:
    recurrence = Recurrence(RecurrenceFrequency.WEEKLY, date(2026, 1, 26))

    entry_id = ledger.declare(PROVIDER, window(at(9), at(12)), AvailabilityKind.AVAILABLE, recurrence=recurrence)

    entry = ledger.get(entry_id)
    assert [occurrence.start.day for occurrence in entry.occurrences] == [5, 12, 19, 26]
    assert ledger.is_available(PROVIDER, window(at(9, day=19), at(10, day=19)))
    assert not ledger.is_available(PROVIDER, window(at(9, day=20), at(10, day=20)))


def test_weekday_recurrence_skips_weekend(ledger: AvailabilityLedger) -> None:
    recurrence = Recurrence(RecurrenceFrequency.WEEKDAYS, date(2026, 1, 13))

    entry_id = ledger.declare(
        PROVIDER, window(at(9, day=9), at(12, day=9)), AvailabilityKind.AVAILABLE, recurrence=recurrence
    )

    assert [occurrence.start.day for occurrence in ledger.get(entry_id).occurrences] == [9, 12, 13]


def test_recurring_declaration_rejects_overlap_with_existing_occurrence(ledger: AvailabilityLedger) -> None:
    ledger.declare(PROVIDER, window(at(10, day=12), at(11, day=12)), AvailabilityKind.BREAK)

    with pytest.raises(OverlapConflict):
        ledger.declare(
            PROVIDER,
            window(at(9), at(12)),
            AvailabilityKind.AVAILABLE,
            recurrence=Recurrence(RecurrenceFrequency.DAILY, date(2026, 1, 16)),
        )

    assert len(ledger.entries(PROVIDER)) == 1


def test_recurring_occurrences_may_not_overlap_each_other(ledger: AvailabilityLedger) -> None:
    with pytest.raises(OverlapConflict):
        ledger.declare(
            PROVIDER,
            window(at(9), at(10, day=6)),
            AvailabilityKind.AVAILABLE,
            recurrence=Recurrence(RecurrenceFrequency.DAILY, date(2026, 1, 8)),
        )


def test_recurrence_limits(ledger: AvailabilityLedger) -> None:
    small_ledger = AvailabilityLedger(max_occurrences=3)

    with pytest.raises(InvalidRecurrence):
        small_ledger.declare(
            PROVIDER,
            window(at(9), at(10)),
            AvailabilityKind.AVAILABLE,
            recurrence=Recurrence(RecurrenceFrequency.DAILY, date(2026, 1, 10)),
        )

    with pytest.raises(InvalidRecurrence):
        ledger.declare(
            PROVIDER,
            window(at(9), at(10)),
            AvailabilityKind.AVAILABLE,
            recurrence=Recurrence(RecurrenceFrequency.DAILY, date(2026, 1, 1)),
        )


def test_revoke_removes_every_occurrence(ledger: AvailabilityLedger) -> None:
    entry_id = ledger.declare(
        PROVIDER,
        window(at(9), at(12)),
        AvailabilityKind.AVAILABLE,
        recurrence=Recurrence(RecurrenceFrequency.DAILY, date(2026, 1, 7)),
    )

    ledger.revoke(entry_id)

    assert list(ledger.list_available_slots(PROVIDER, window(at(0), at(23, day=7)))) == []


def test_concurrent_overlapping_declarations_admit_exactly_one() -> None:
    coordinator = SchedulingCoordinator()
    barrier = threading.Barrier(6)
    declared = []
    rejected = []

    def declare(offset_minutes: int) -> None:
        barrier.wait()
        try:
            entry = coordinator.declare_availability(
                PROVIDER, window(at(9, offset_minutes), at(11, offset_minutes)), timeout=5
            )
            declared.append(entry)
        except OverlapConflict as exc:
            rejected.append(exc)

    threads = [threading.Thread(target=declare, args=(offset,)) for offset in range(0, 30, 5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(declared) == 1
    assert len(rejected) == 5
    assert [entry.id for entry in coordinator.availability_entries(PROVIDER)] == [declared[0].id]
