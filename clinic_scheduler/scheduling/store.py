"""SQLAlchemy-backed storage for engine records.

The store is a post-commit collaborator: the coordinator calls it after a
transition is committed in memory and the provider lock is released. Writes
can therefore arrive out of order. ``save_appointment`` only applies a
snapshot whose version is newer than the stored one, and a revoked
availability entry keeps a tombstone row that a late ``save_entry`` leaves
alone.

Timezone-aware instants are written in UTC together with the caller's UTC
offset, since some backends (SQLite) drop tzinfo. Naive instants are written
as they are.
"""

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from clinic_scheduler.models.appointment import AppointmentRecord
from clinic_scheduler.models.availability import AvailabilityEntryRecord
from clinic_scheduler.scheduling.appointments import Appointment, AppointmentStatus
from clinic_scheduler.scheduling.availability import (
    DEFAULT_MAX_OCCURRENCES,
    AvailabilityEntry,
    AvailabilityKind,
    Recurrence,
    RecurrenceFrequency,
)
from clinic_scheduler.scheduling.errors import SchedulingError
from clinic_scheduler.scheduling.time_window import TimeWindow, align_instant

logger = logging.getLogger(__name__)


def _offset_minutes(window: TimeWindow) -> int | None:
    offset = window.start.utcoffset()
    if offset is None:
        return None
    return int(offset.total_seconds() // 60)


def _to_column(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc)


def _stamp_to_column(value: datetime | None, window: TimeWindow) -> datetime | None:
    # Timestamps share the window's offset column, so they take its flavour first.
    if value is None:
        return None
    return _to_column(align_instant(value, window.start))


def _from_column(value: datetime | None, offset_minutes: int | None) -> datetime | None:
    if value is None or offset_minutes is None:
        return value
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone(timedelta(minutes=offset_minutes)))


def _entry_record(entry: AvailabilityEntry, revoked: bool = False) -> AvailabilityEntryRecord:
    return AvailabilityEntryRecord(
        id=entry.id,
        provider_id=entry.provider_id,
        start_time=_to_column(entry.window.start),
        end_time=_to_column(entry.window.end),
        kind=entry.kind.value,
        recurrence_frequency=entry.recurrence.frequency.value if entry.recurrence else None,
        recurrence_until=entry.recurrence.until if entry.recurrence else None,
        reason=entry.reason,
        created_at=_stamp_to_column(entry.created_at, entry.window),
        utc_offset_minutes=_offset_minutes(entry.window),
        revoked=revoked,
    )


def _appointment_values(appointment: Appointment) -> dict:
    return {
        "provider_id": appointment.provider_id,
        "client_id": appointment.client_id,
        "start_time": _to_column(appointment.window.start),
        "end_time": _to_column(appointment.window.end),
        "status": appointment.status.value,
        "appointment_type": appointment.appointment_type,
        "notes": appointment.notes,
        "reason": appointment.reason,
        "created_at": _stamp_to_column(appointment.created_at, appointment.window),
        "updated_at": _stamp_to_column(appointment.updated_at, appointment.window),
        "version": appointment.version,
        "utc_offset_minutes": _offset_minutes(appointment.window),
    }


def _to_appointment(row: AppointmentRecord) -> Appointment:
    offset = row.utc_offset_minutes
    return Appointment(
        id=row.id,
        provider_id=row.provider_id,
        client_id=row.client_id,
        window=TimeWindow(_from_column(row.start_time, offset), _from_column(row.end_time, offset)),
        status=AppointmentStatus(row.status),
        appointment_type=row.appointment_type,
        notes=row.notes,
        reason=row.reason,
        created_at=_from_column(row.created_at, offset),
        updated_at=_from_column(row.updated_at, offset),
        version=row.version,
    )


def _to_entry(row: AvailabilityEntryRecord, max_occurrences: int) -> AvailabilityEntry:
    offset = row.utc_offset_minutes
    window = TimeWindow(_from_column(row.start_time, offset), _from_column(row.end_time, offset))
    recurrence = None
    occurrences = (window,)
    if row.recurrence_frequency:
        recurrence = Recurrence(RecurrenceFrequency(row.recurrence_frequency), row.recurrence_until)
        occurrences = recurrence.expand(window, max_occurrences)

    return AvailabilityEntry(
        id=row.id,
        provider_id=row.provider_id,
        window=window,
        kind=AvailabilityKind(row.kind),
        recurrence=recurrence,
        reason=row.reason,
        created_at=_from_column(row.created_at, offset),
        occurrences=occurrences,
    )


class SqlAlchemyStore:
    def __init__(self, session_factory: sessionmaker, max_occurrences: int = DEFAULT_MAX_OCCURRENCES):
        self._session_factory = session_factory
        self.max_occurrences = max_occurrences

    def save_entry(self, entry: AvailabilityEntry) -> bool:
        """Insert ``entry``; return False when its row (live or revoked) already exists.

        Entries never change after they are declared, so an existing row is never overwritten.
        """
        db = self._session_factory()
        try:
            if db.get(AvailabilityEntryRecord, entry.id) is not None:
                db.rollback()
                logger.debug("Availability entry %s already stored; save skipped", entry.id)
                return False

            db.add(_entry_record(entry))
            db.commit()
            return True
        except IntegrityError:
            # A concurrent save or revoke wrote the row first.
            db.rollback()
            return False
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def delete_entry(self, entry: AvailabilityEntry) -> None:
        """Mark ``entry`` revoked, writing a tombstone if its save has not landed yet."""
        db = self._session_factory()
        try:
            record = db.get(AvailabilityEntryRecord, entry.id)
            if record is None:
                db.add(_entry_record(entry, revoked=True))
            else:
                record.revoked = True
            try:
                db.commit()
            except IntegrityError:
                # A late save inserted the live row first; revoke it instead.
                db.rollback()
                return self.delete_entry(entry)
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def save_appointment(self, appointment: Appointment) -> bool:
        """Upsert ``appointment``; return False when a newer version is already stored."""
        values = _appointment_values(appointment)
        db = self._session_factory()
        try:
            result = db.execute(
                update(AppointmentRecord)
                .where(
                    AppointmentRecord.id == appointment.id,
                    AppointmentRecord.version < appointment.version,
                )
                .values(**values)
            )
            if result.rowcount:
                db.commit()
                return True

            if db.get(AppointmentRecord, appointment.id) is not None:
                db.rollback()
                logger.debug("Skipped stale snapshot v%s of appointment %s", appointment.version, appointment.id)
                return False

            db.add(AppointmentRecord(id=appointment.id, **values))
            try:
                db.commit()
            except IntegrityError:
                # A concurrent writer inserted first; retry as a versioned update.
                db.rollback()
                return self.save_appointment(appointment)
            return True
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def load_all(self) -> tuple[list[AvailabilityEntry], list[Appointment]]:
        """Return live entries and all appointments. Rows that no longer load are logged and skipped."""
        db = self._session_factory()
        try:
            entry_rows = db.scalars(
                select(AvailabilityEntryRecord)
                .where(AvailabilityEntryRecord.revoked.is_(False))
                .order_by(AvailabilityEntryRecord.start_time.asc())
            ).all()
            appointment_rows = db.scalars(
                select(AppointmentRecord).order_by(AppointmentRecord.start_time.asc())
            ).all()

            entries = []
            for row in entry_rows:
                try:
                    entries.append(_to_entry(row, self.max_occurrences))
                except SchedulingError as exc:
                    logger.warning("Skipped stored availability entry %s: %s", row.id, exc)

            appointments = []
            for row in appointment_rows:
                try:
                    appointments.append(_to_appointment(row))
                except SchedulingError as exc:
                    logger.warning("Skipped stored appointment %s: %s", row.id, exc)
        finally:
            db.close()

        return entries, appointments
