"""Post-commit appointment notifications.

Notifiers are called by the coordinator after a transition has been committed
and the provider lock released. A failing notifier is logged and never undoes
the committed state.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from enum import Enum

from clinic_scheduler.scheduling.appointments import Appointment

logger = logging.getLogger(__name__)


class AppointmentEvent(str, Enum):
    CREATED = 'created'
    CONFIRMED = 'confirmed'
    STARTED = 'started'
    COMPLETED = 'completed'
    CANCELLED = 'cancelled'
    NO_SHOW = 'no_show'
    RESCHEDULED = 'rescheduled'


class AppointmentNotifier(ABC):
    """Interface every notification channel implements."""

    @abstractmethod
    def notify(self, event: AppointmentEvent, appointment: Appointment) -> None:
        pass


class LoggingNotifier(AppointmentNotifier):
    def notify(self, event: AppointmentEvent, appointment: Appointment) -> None:
        logger.info(
            'Appointment %s %s: provider=%s client=%s window=%s status=%s',
            appointment.id,
            event.value,
            appointment.provider_id,
            appointment.client_id,
            appointment.window,
            appointment.status.value,
        )


class CompositeNotifier(AppointmentNotifier):
    """Fans out to several notifiers; one failing does not stop the others."""

    def __init__(self, notifiers: Iterable[AppointmentNotifier]):
        self.notifiers = list(notifiers)

    def notify(self, event: AppointmentEvent, appointment: Appointment) -> None:
        for notifier in self.notifiers:
            try:
                notifier.notify(event, appointment)
            except Exception:
                logger.exception(
                    '%s failed to deliver %s for appointment %s',
                    type(notifier).__name__,
                    event.value,
                    appointment.id,
                )
