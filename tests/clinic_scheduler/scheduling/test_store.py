from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from clinic_scheduler.database import Base
from clinic_scheduler.models.appointment import AppointmentRecord
from clinic_scheduler.models.availability import AvailabilityEntryRecord
from clinic_scheduler.scheduling.appointments import AppointmentStatus
from clinic_scheduler.scheduling.availability import AvailabilityEntry, AvailabilityKind, Recurrence, RecurrenceFrequency
from clinic_scheduler.scheduling.coordinator import SchedulingCoordinator
from clinic_scheduler.scheduling.errors import DoubleBooked
from clinic_scheduler.scheduling.store import SqlAlchemyStore
from clinic_scheduler.scheduling.time_window import TimeWindow
from clinic_scheduler.services import load_persisted_state

PROVIDER = 'dr-d'
NOW = datetime(2026, 1, 5, 8)


def at(hour: int, minute: int = 0, day: int = 5) -> datetime:
    return datetime(2026, 1, day, hour, minute)


@pytest.fixture
def store():
    engine = create_engine('sqlite:///:memory:')
    testing_session_local = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    tables = [AppointmentRecord.__table__, AvailabilityEntryRecord.__table__]
    Base.metadata.create_all(bind=engine, tables=tables)

    try:
        yield SqlAlchemyStore(testing_session_local)
    finally:
        Base.metadata.drop_all(bind=engine, tables=tables)
        engine.dispose()


@pytest.fixture
def coordinator(store: SqlAlchemyStore) -> SchedulingCoordinator:
    return SchedulingCoordinator(store=store, clock=lambda: NOW)


def test_committed_transitions_are_persisted(coordinator: SchedulingCoordinator, store: SqlAlchemyStore) -> None:
    coordinator.declare_availability(PROVIDER, TimeWindow(at(9), at(10)))
    appointment = coordinator.create_appointment(PROVIDER, 'client-1', TimeWindow(at(9), at(9, 30)), notes='fasting')
    coordinator.confirm(appointment.id)

    entries, appointments = store.load_all()

    assert len(entries) == 1
    assert entries[0].kind is AvailabilityKind.AVAILABLE
    assert len(appointments) == 1
    assert appointments[0].status is AppointmentStatus.CONFIRMED
    assert appointments[0].version == 2
    assert appointments[0].notes == 'fasting'
    assert appointments[0].window == TimeWindow(at(9), at(9, 30))


def test_stale_snapshot_is_not_written(coordinator: SchedulingCoordinator, store: SqlAlchemyStore) -> None:
    coordinator.declare_availability(PROVIDER, TimeWindow(at(9), at(10)))
    created = coordinator.create_appointment(PROVIDER, 'client-1', TimeWindow(at(9), at(9, 30)))
    coordinator.cancel(created.id)

    assert store.save_appointment(created) is False

    _, appointments = store.load_all()
    assert appointments[0].status is AppointmentStatus.CANCELLED


def test_revoked_entry_is_not_loaded_or_resaved(coordinator: SchedulingCoordinator, store: SqlAlchemyStore) -> None:
    entry = coordinator.declare_availability(PROVIDER, TimeWindow(at(9), at(10)))

    coordinator.revoke_availability(entry.id)

    assert store.save_entry(entry) is False
    entries, _ = store.load_all()
    assert entries == []


def test_recurring_entry_round_trip(coordinator: SchedulingCoordinator, store: SqlAlchemyStore) -> None:
    entry = coordinator.declare_availability(
        PROVIDER,
        TimeWindow(at(9), at(12)),
        recurrence=Recurrence(RecurrenceFrequency.WEEKLY, date(2026, 1, 19)),
        reason='morning clinic',
    )

    entries, _ = store.load_all()

    assert entries == [entry]
    assert entries[0].occurrences == entry.occurrences
    assert len(entries[0].occurrences) == 3


def test_restored_engine_matches_stored_state(coordinator: SchedulingCoordinator, store: SqlAlchemyStore) -> None:
    coordinator.declare_availability(PROVIDER, TimeWindow(at(9), at(10)))
    booked = coordinator.create_appointment(PROVIDER, 'client-1', TimeWindow(at(9), at(9, 30)))

    restored = SchedulingCoordinator(clock=lambda: NOW)
    restored.restore(*store.load_all())

    assert restored.get_appointment(booked.id) == coordinator.get_appointment(booked.id)
    assert restored.is_available(PROVIDER, TimeWindow(at(9, 30), at(10)))
    assert not restored.can_book(PROVIDER, TimeWindow(at(9), at(9, 30)))


def utc(hour: int, minute: int = 0, day: int = 5) -> datetime:
    return datetime(2026, 1, day, hour, minute, tzinfo=timezone.utc)


def entry(entry_id: int, start: datetime, end: datetime) -> AvailabilityEntry:
    return AvailabilityEntry(
        id=entry_id,
        provider_id=PROVIDER,
        window=TimeWindow(start, end),
        kind=AvailabilityKind.AVAILABLE,
        created_at=NOW,
    )


def test_aware_schedule_survives_restart(store: SqlAlchemyStore) -> None:
    coordinator = SchedulingCoordinator(store=store, clock=lambda: utc(8))
    declared = coordinator.declare_availability(PROVIDER, TimeWindow(utc(9), utc(10)))
    booked = coordinator.create_appointment(PROVIDER, 'client-1', TimeWindow(utc(9), utc(9, 30)))

    restored = SchedulingCoordinator(clock=lambda: utc(8))
    restored.restore(*store.load_all())

    assert restored.availability_entries(PROVIDER) == [declared]
    assert restored.availability_entries(PROVIDER)[0].window.start.tzinfo is not None
    assert restored.get_appointment(booked.id) == booked
    assert restored.create_appointment(PROVIDER, 'client-2', TimeWindow(utc(9, 30), utc(10))).id != booked.id
    with pytest.raises(DoubleBooked):
        restored.create_appointment(PROVIDER, 'client-3', TimeWindow(utc(9), utc(9, 30)))


def test_stored_offset_keeps_recurrence_dates(store: SqlAlchemyStore) -> None:
    plus_two = timezone(timedelta(hours=2))
    start = datetime(2026, 1, 6, 0, 30, tzinfo=plus_two)
    coordinator = SchedulingCoordinator(store=store, clock=lambda: utc(8))
    coordinator.declare_availability(
        PROVIDER,
        TimeWindow(start, start + timedelta(hours=1)),
        recurrence=Recurrence(RecurrenceFrequency.DAILY, date(2026, 1, 7)),
    )

    entries, _ = store.load_all()

    assert [occurrence.start.day for occurrence in entries[0].occurrences] == [6, 7]
    assert entries[0].window.start.utcoffset() == timedelta(hours=2)
    assert entries[0].window.start == start


def test_late_save_does_not_resurrect_revoked_entry(store: SqlAlchemyStore) -> None:
    revoked = entry(1, at(9), at(10))
    replacement = entry(2, at(9), at(11))

    store.delete_entry(revoked)

    assert store.save_entry(revoked) is False
    assert store.save_entry(replacement) is True
    entries, _ = store.load_all()
    assert [stored.id for stored in entries] == [2]


def test_startup_skips_clashing_stored_entries(store: SqlAlchemyStore, monkeypatch) -> None:
    monkeypatch.setattr('clinic_scheduler.services.ensure_schema', lambda: None)
    store.save_entry(entry(1, at(9), at(11)))
    store.save_entry(entry(2, at(10), at(12)))
    coordinator = SchedulingCoordinator(store=store, clock=lambda: NOW)

    load_persisted_state(coordinator)

    assert [loaded.id for loaded in coordinator.availability_entries(PROVIDER)] == [1]
    assert coordinator.can_book(PROVIDER, TimeWindow(at(10), at(10, 30)))
