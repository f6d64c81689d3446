import logging
from functools import lru_cache

from sqlalchemy.exc import SQLAlchemyError

from clinic_scheduler.core import config
from clinic_scheduler.database import SessionLocal, ensure_schema
from clinic_scheduler.scheduling.availability import AvailabilityLedger
from clinic_scheduler.scheduling.coordinator import SchedulingCoordinator
from clinic_scheduler.scheduling.notifications import LoggingNotifier
from clinic_scheduler.scheduling.store import SqlAlchemyStore

logger = logging.getLogger(__name__)


def build_coordinator(persistence_enabled: bool = config.PERSISTENCE_ENABLED) -> SchedulingCoordinator:
    store = SqlAlchemyStore(SessionLocal, max_occurrences=config.MAX_RECURRENCE_OCCURRENCES) if persistence_enabled else None
    return SchedulingCoordinator(
        ledger=AvailabilityLedger(max_occurrences=config.MAX_RECURRENCE_OCCURRENCES),
        notifier=LoggingNotifier(),
        store=store,
    )


@lru_cache
def get_coordinator() -> SchedulingCoordinator:
    return build_coordinator()


def load_persisted_state(coordinator: SchedulingCoordinator) -> None:
    if coordinator.store is None:
        return

    try:
        ensure_schema()
        entries, appointments = coordinator.store.load_all()
    except SQLAlchemyError:
        logger.exception('Loading stored schedule failed. Check DATABASE_URL; starting with an empty schedule.')
        return

    coordinator.restore(entries, appointments)
