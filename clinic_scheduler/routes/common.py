from datetime import datetime

from fastapi import HTTPException, status
from pydantic import BaseModel

from clinic_scheduler.core import config
from clinic_scheduler.scheduling.errors import (
    BookingConflict,
    Busy,
    InvalidTransition,
    InvalidWindow,
    NotFound,
    OverlapConflict,
    SchedulingError,
)
from clinic_scheduler.scheduling.time_window import TimeWindow

ERROR_STATUS_CODES = (
    (InvalidWindow, status.HTTP_400_BAD_REQUEST),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (OverlapConflict, status.HTTP_409_CONFLICT),
    (BookingConflict, status.HTTP_409_CONFLICT),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (Busy, status.HTTP_503_SERVICE_UNAVAILABLE),
)


class WindowResponse(BaseModel):
    start_time: datetime
    end_time: datetime
    duration_minutes: int

    @classmethod
    def from_window(cls, window: TimeWindow) -> 'WindowResponse':
        return cls(
            start_time=window.start,
            end_time=window.end,
            duration_minutes=int(window.duration.total_seconds() // 60),
        )


def to_http_exception(exc: SchedulingError) -> HTTPException:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            detail: dict | str = str(exc)
            if isinstance(exc, BookingConflict):
                detail = {'reason': exc.reason.value, 'message': str(exc)}
            return HTTPException(status_code=status_code, detail=detail)

    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def lock_timeout() -> float | None:
    return config.SCHEDULER_LOCK_TIMEOUT_SECONDS


def build_window(start_time: datetime, end_time: datetime) -> TimeWindow:
    try:
        return TimeWindow(start_time, end_time)
    except InvalidWindow as exc:
        raise to_http_exception(exc) from exc
