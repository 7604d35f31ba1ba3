"""Unit tests for the interval helpers behind schedules and conflicts."""

from datetime import datetime, time
from types import SimpleNamespace

from app.services.schedule_service import (
    intersect_intervals,
    merge_intervals,
    subtract_intervals,
    windows_overlap,
)
from app.services.waitlist_service import fits_preferred_window


def t(hour: int, minute: int = 0) -> datetime:
    return datetime(2030, 3, 4, hour, minute)


def test_touching_windows_do_not_overlap():
    assert not windows_overlap(t(9), t(9, 30), t(9, 30), t(10))
    assert not windows_overlap(t(9, 30), t(10), t(9), t(9, 30))
    assert windows_overlap(t(9), t(9, 30), t(9, 15), t(9, 45))


def test_merge_coalesces_overlapping_and_touching():
    merged = merge_intervals([(t(11), t(12)), (t(9), t(10)), (t(10), t(10, 30)), (t(11, 30), t(13))])
    assert merged == [(t(9), t(10, 30)), (t(11), t(13))]


def test_intersect_shift_with_opening_hours():
    shifts = [(t(8), t(12)), (t(13), t(19))]
    opening = [(t(9), t(18))]
    assert intersect_intervals(shifts, opening) == [(t(9), t(12)), (t(13), t(18))]


def test_subtract_leaves_gaps():
    remaining = subtract_intervals([(t(9), t(17))], [(t(12), t(13)), (t(8), t(9, 30))])
    assert remaining == [(t(9, 30), t(12)), (t(13), t(17))]


def test_subtract_everything():
    assert subtract_intervals([(t(9), t(10))], [(t(8), t(11))]) == []


def test_preferred_window():
    entry = SimpleNamespace(preferred_time_start=time(10), preferred_time_end=time(12))
    assert fits_preferred_window(entry, t(10), t(10, 30))
    assert fits_preferred_window(entry, t(11, 30), t(12))
    assert not fits_preferred_window(entry, t(9, 45), t(10, 15))
    assert not fits_preferred_window(entry, t(11, 45), t(12, 15))

    open_entry = SimpleNamespace(preferred_time_start=None, preferred_time_end=None)
    assert fits_preferred_window(open_entry, t(7), t(7, 30))
