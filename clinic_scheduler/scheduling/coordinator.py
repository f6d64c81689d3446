"""Scheduling coordinator.

Every write to a provider's appointments or availability runs as
"check, then commit" while holding that provider's lock, so two requests can
never both pass the conflict check against the same stale view. Requests for
different providers never wait on each other.

Storage and notification side effects run after the commit, outside the lock.
Their failures are logged and do not roll back the committed state.
"""

import logging
import threading
from collections import Counter
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Protocol, TypeVar

from clinic_scheduler.scheduling import lifecycle
from clinic_scheduler.scheduling.appointments import (
    DEFAULT_APPOINTMENT_TYPE,
    Appointment,
    AppointmentBook,
    AppointmentStatus,
)
from clinic_scheduler.scheduling.availability import (
    AvailabilityEntry,
    AvailabilityKind,
    AvailabilityLedger,
    AvailableSlots,
    Recurrence,
)
from clinic_scheduler.scheduling.conflicts import BookingDecision, can_book
from clinic_scheduler.scheduling.errors import Busy, InvalidWindow, SchedulingError
from clinic_scheduler.scheduling.lifecycle import LifecycleAction
from clinic_scheduler.scheduling.notifications import AppointmentEvent, AppointmentNotifier, LoggingNotifier
from clinic_scheduler.scheduling.time_window import TimeWindow, align_window

logger = logging.getLogger(__name__)

T = TypeVar('T')

ACTION_EVENTS = {
    LifecycleAction.CONFIRM: AppointmentEvent.CONFIRMED,
    LifecycleAction.BEGIN: AppointmentEvent.STARTED,
    LifecycleAction.COMPLETE: AppointmentEvent.COMPLETED,
    LifecycleAction.CANCEL: AppointmentEvent.CANCELLED,
    LifecycleAction.MARK_NO_SHOW: AppointmentEvent.NO_SHOW,
    LifecycleAction.RESCHEDULE: AppointmentEvent.RESCHEDULED,
}


class ScheduleStore(Protocol):
    """Post-commit persistence used by the coordinator; see ``store.SqlAlchemyStore``."""

    def save_entry(self, entry: AvailabilityEntry) -> object: ...

    def delete_entry(self, entry: AvailabilityEntry) -> object: ...

    def save_appointment(self, appointment: Appointment) -> object: ...

    def load_all(self) -> tuple[list[AvailabilityEntry], list[Appointment]]: ...


class ProviderLocks:
    """One mutex per provider, created on first use."""

    def __init__(self):
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, provider_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(provider_id)
            if lock is None:
                lock = self._locks[provider_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, provider_id: str, timeout: float | None = None) -> Iterator[None]:
        lock = self.lock_for(provider_id)
        acquired = lock.acquire() if timeout is None else lock.acquire(timeout=timeout)
        if not acquired:
            logger.warning('Timed out after %ss waiting for provider %s', timeout, provider_id)
            raise Busy(provider_id, timeout)
        try:
            yield
        finally:
            lock.release()


class SchedulingCoordinator:
    """Sole writer of appointments and availability.

    ``timeout`` on write operations is the caller's budget for acquiring the
    provider lock; ``None`` waits indefinitely. Read methods do not lock and
    may return a slightly stale snapshot.
    """

    def __init__(
        self,
        ledger: AvailabilityLedger | None = None,
        book: AppointmentBook | None = None,
        notifier: AppointmentNotifier | None = None,
        store: ScheduleStore | None = None,
        clock: Callable[[], datetime] = datetime.now,
        locks: ProviderLocks | None = None,
    ):
        self.ledger = ledger if ledger is not None else AvailabilityLedger(clock=clock)
        self.book = book if book is not None else AppointmentBook()
        self.notifier = notifier if notifier is not None else LoggingNotifier()
        self.store = store
        self.clock = clock
        self.locks = locks if locks is not None else ProviderLocks()

    def with_provider_lock(self, provider_id: str, fn: Callable[[], T], timeout: float | None = None) -> T:
        with self.locks.hold(provider_id, timeout):
            return fn()

    # ===== AVAILABILITY =====

    def declare_availability(
        self,
        provider_id: str,
        window: TimeWindow,
        kind: AvailabilityKind = AvailabilityKind.AVAILABLE,
        recurrence: Recurrence | None = None,
        reason: str | None = None,
        timeout: float | None = None,
    ) -> AvailabilityEntry:
        def commit() -> AvailabilityEntry:
            entry_id = self.ledger.declare(
                provider_id, self._align(provider_id, window), kind, recurrence=recurrence, reason=reason
            )
            return self.ledger.get(entry_id)

        entry = self._run_logged('declare availability', provider_id, commit, timeout)
        logger.info('Provider %s declared %s entry %s at %s', provider_id, entry.kind.value, entry.id, entry.window)
        self._persist('save_entry', entry)
        return entry

    def revoke_availability(self, entry_id: int, timeout: float | None = None) -> AvailabilityEntry:
        provider_id = self.ledger.get(entry_id).provider_id
        entry = self._run_logged(
            'revoke availability', provider_id, lambda: self.ledger.revoke(entry_id), timeout
        )
        logger.info('Provider %s revoked availability entry %s', provider_id, entry_id)
        self._persist('delete_entry', entry)
        return entry

    # ===== APPOINTMENTS =====

    def create_appointment(
        self,
        provider_id: str,
        client_id: str,
        window: TimeWindow,
        appointment_type: str = DEFAULT_APPOINTMENT_TYPE,
        notes: str | None = None,
        reason: str | None = None,
        timeout: float | None = None,
    ) -> Appointment:
        def commit() -> Appointment:
            aligned = self._align(provider_id, window)
            decision = self.can_book(provider_id, aligned)
            appointment = lifecycle.create(
                appointment_id=self.book.next_id(),
                provider_id=provider_id,
                client_id=client_id,
                window=aligned,
                decision=decision,
                now=self.clock(),
                appointment_type=appointment_type,
                notes=notes,
                reason=reason,
            )
            self.book.put(appointment)
            return appointment

        appointment = self._run_logged('book', provider_id, commit, timeout)
        logger.info(
            'Booked appointment %s for provider %s client %s at %s',
            appointment.id,
            provider_id,
            client_id,
            appointment.window,
        )
        self._after_commit(AppointmentEvent.CREATED, appointment)
        return appointment

    def confirm(self, appointment_id: int, timeout: float | None = None) -> Appointment:
        return self._transition(appointment_id, LifecycleAction.CONFIRM, timeout)

    def begin(self, appointment_id: int, timeout: float | None = None) -> Appointment:
        return self._transition(appointment_id, LifecycleAction.BEGIN, timeout)

    def complete(self, appointment_id: int, timeout: float | None = None) -> Appointment:
        return self._transition(appointment_id, LifecycleAction.COMPLETE, timeout)

    def cancel(self, appointment_id: int, timeout: float | None = None) -> Appointment:
        return self._transition(appointment_id, LifecycleAction.CANCEL, timeout)

    def mark_no_show(self, appointment_id: int, timeout: float | None = None) -> Appointment:
        return self._transition(appointment_id, LifecycleAction.MARK_NO_SHOW, timeout)

    def reschedule(self, appointment_id: int, new_window: TimeWindow, timeout: float | None = None) -> Appointment:
        provider_id = self.book.get(appointment_id).provider_id

        def commit() -> Appointment:
            current = self.book.get(appointment_id)
            aligned = self._align(provider_id, new_window)
            decision = self.can_book(provider_id, aligned, exclude_appointment_id=appointment_id)
            moved = lifecycle.reschedule(current, aligned, decision, self.clock())
            self.book.put(moved)
            return moved

        moved = self._run_logged(f'reschedule appointment {appointment_id}', provider_id, commit, timeout)
        logger.info('Rescheduled appointment %s to %s', appointment_id, moved.window)
        self._after_commit(AppointmentEvent.RESCHEDULED, moved)
        return moved

    # ===== READS =====

    def can_book(
        self,
        provider_id: str,
        window: TimeWindow,
        exclude_appointment_id: int | None = None,
    ) -> BookingDecision:
        """Advisory outside the lock; authoritative inside it."""
        window = self._align(provider_id, window)
        candidates = self.book.overlapping(provider_id, window)
        return can_book(provider_id, window, candidates, self.ledger, exclude_appointment_id)

    def get_appointment(self, appointment_id: int) -> Appointment:
        return self.book.get(appointment_id)

    def appointments_for_provider(
        self,
        provider_id: str,
        window: TimeWindow | None = None,
        statuses: Iterable[AppointmentStatus] | None = None,
    ) -> list[Appointment]:
        if window is not None:
            return self.book.overlapping(provider_id, self._align(provider_id, window), statuses)

        wanted = frozenset(statuses) if statuses is not None else None
        return [
            appointment
            for appointment in self.book.for_provider(provider_id)
            if wanted is None or appointment.status in wanted
        ]

    def appointments_for_client(self, client_id: str) -> list[Appointment]:
        return sorted(self.book.for_client(client_id), key=lambda appointment: appointment.window.start, reverse=True)

    def appointment_history(self, client_id: str, provider_id: str) -> list[Appointment]:
        return [
            appointment
            for appointment in self.appointments_for_client(client_id)
            if appointment.provider_id == provider_id
        ]

    def availability_entries(self, provider_id: str) -> list[AvailabilityEntry]:
        return self.ledger.entries(provider_id)

    def is_available(self, provider_id: str, window: TimeWindow) -> bool:
        return self.ledger.is_available(provider_id, self._align(provider_id, window))

    def list_available_slots(self, provider_id: str, date_range: TimeWindow) -> AvailableSlots:
        return self.ledger.list_available_slots(provider_id, self._align(provider_id, date_range))

    def open_slots(
        self,
        provider_id: str,
        date_range: TimeWindow,
        duration: timedelta,
        step: timedelta,
    ) -> Iterator[TimeWindow]:
        """Yield candidate windows of ``duration`` that could currently be booked.

        Starts fall on ``step`` boundaries counted from midnight.
        """
        if duration <= timedelta(0) or step <= timedelta(0):
            raise InvalidWindow('Slot duration and step must be positive.')

        for run in self.list_available_slots(provider_id, date_range):
            start = _align_to_step(run.start, step)
            while start + duration <= run.end:
                candidate = TimeWindow(start, start + duration)
                if self.can_book(provider_id, candidate):
                    yield candidate
                start += step

    def status_counts(self, provider_id: str | None = None) -> dict[AppointmentStatus, int]:
        appointments = self.book.for_provider(provider_id) if provider_id is not None else self.book.all()
        counts = Counter(appointment.status for appointment in appointments)
        return {status: counts.get(status, 0) for status in AppointmentStatus}

    def restore(self, entries: Iterable[AvailabilityEntry], appointments: Iterable[Appointment]) -> None:
        """Load stored state into an empty engine. Not safe to call while serving requests.

        An entry that clashes with one already loaded is skipped and logged.
        """
        entry_count = 0
        for entry in entries:
            try:
                self.ledger.restore(entry)
            except SchedulingError as exc:
                logger.warning('Skipped stored availability entry %s: %s', entry.id, exc)
                continue
            entry_count += 1

        appointment_count = 0
        for appointment in appointments:
            self.book.put(appointment)
            appointment_count += 1

        logger.info('Restored %s availability entries and %s appointments', entry_count, appointment_count)

    # ===== INTERNALS =====

    def _align(self, provider_id: str, window: TimeWindow) -> TimeWindow:
        # Express the window as naive or aware to match what the provider already holds.
        reference = self.ledger.reference_instant(provider_id)
        if reference is None:
            appointments = self.book.for_provider(provider_id)
            reference = appointments[0].window.start if appointments else None
        return align_window(window, reference)

    def _transition(self, appointment_id: int, action: LifecycleAction, timeout: float | None) -> Appointment:
        provider_id = self.book.get(appointment_id).provider_id

        def commit() -> Appointment:
            updated = lifecycle.transition(self.book.get(appointment_id), action, self.clock())
            self.book.put(updated)
            return updated

        updated = self._run_logged(f'{action.value} appointment {appointment_id}', provider_id, commit, timeout)
        logger.info('Appointment %s is now %s', appointment_id, updated.status.value)
        self._after_commit(ACTION_EVENTS[action], updated)
        return updated

    def _run_logged(self, description: str, provider_id: str, commit: Callable[[], T], timeout: float | None) -> T:
        try:
            return self.with_provider_lock(provider_id, commit, timeout)
        except Busy:
            raise
        except SchedulingError as exc:
            logger.info('Rejected %s for provider %s: %s', description, provider_id, exc)
            raise

    def _after_commit(self, event: AppointmentEvent, appointment: Appointment) -> None:
        self._persist('save_appointment', appointment)
        try:
            self.notifier.notify(event, appointment)
        except Exception:
            logger.exception('Notification %s failed for appointment %s', event.value, appointment.id)

    def _persist(self, method: str, record) -> None:
        if self.store is None:
            return
        try:
            getattr(self.store, method)(record)
        except Exception:
            logger.exception('Store %s failed for %s %s', method, type(record).__name__, record.id)


def _align_to_step(instant: datetime, step: timedelta) -> datetime:
    midnight = instant.replace(hour=0, minute=0, second=0, microsecond=0)
    offset = (instant - midnight) % step
    if not offset:
        return instant
    return instant + (step - offset)
