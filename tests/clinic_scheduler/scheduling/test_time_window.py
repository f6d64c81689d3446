from datetime import datetime, timedelta, timezone

import pytest

from clinic_scheduler.scheduling.errors import InvalidWindow
from clinic_scheduler.scheduling.time_window import (
    TimeWindow,
    align_instant,
    align_window,
    contains,
    duration,
    overlaps,
)


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 1, 5, hour, minute)


def test_rejects_end_not_after_start() -> None:
    with pytest.raises(InvalidWindow):
        TimeWindow(at(10), at(10))

    with pytest.raises(InvalidWindow):
        TimeWindow(at(10), at(9))


def test_rejects_mixed_naive_and_aware_bounds() -> None:
    with pytest.raises(InvalidWindow):
        TimeWindow(at(9), datetime(2026, 1, 5, 10, tzinfo=timezone.utc))


@pytest.mark.parametrize(
    ('first', 'second', 'expected'),
    [
        (TimeWindow(at(9), at(10)), TimeWindow(at(9, 30), at(10, 30)), True),
        (TimeWindow(at(9), at(10)), TimeWindow(at(9, 15), at(9, 45)), True),
        (TimeWindow(at(9), at(10)), TimeWindow(at(10), at(11)), False),
        (TimeWindow(at(10), at(11)), TimeWindow(at(9), at(10)), False),
        (TimeWindow(at(9), at(10)), TimeWindow(at(11), at(12)), False),
    ],
)
def test_overlaps_uses_half_open_intervals(first: TimeWindow, second: TimeWindow, expected: bool) -> None:
    assert overlaps(first, second) is expected
    assert overlaps(second, first) is expected


def test_contains_includes_start_and_excludes_end() -> None:
    window = TimeWindow(at(9), at(10))

    assert contains(window, at(9))
    assert contains(window, at(9, 59))
    assert not contains(window, at(10))


def test_duration_and_from_duration_agree() -> None:
    window = TimeWindow.from_duration(at(9), 45)

    assert window.end == at(9, 45)
    assert duration(window) == timedelta(minutes=45)


def test_clip_returns_none_when_disjoint() -> None:
    window = TimeWindow(at(9), at(12))

    assert window.clip(TimeWindow(at(10), at(11))) == TimeWindow(at(10), at(11))
    assert window.clip(TimeWindow(at(12), at(13))) is None


def test_align_instant_converts_naive_to_aware() -> None:
    reference = datetime(2026, 1, 5, 10, tzinfo=timezone.utc)

    aligned = align_instant(datetime(2026, 1, 5, 10), reference)

    assert aligned.tzinfo is not None


def test_align_window_follows_reference_flavour() -> None:
    aware = TimeWindow(datetime(2026, 1, 5, 9, tzinfo=timezone.utc), datetime(2026, 1, 5, 10, tzinfo=timezone.utc))

    naive = align_window(aware, at(8))

    assert naive.start.tzinfo is None
    assert naive.start == aware.start.astimezone().replace(tzinfo=None)
    assert align_window(aware, None) is aware
    assert align_window(aware, aware.start) is aware
