from datetime import date, time
from types import SimpleNamespace

import pytest

from app.availability import SlotRequest, evaluate, intervals_overlap, is_available

DAY = date(2030, 6, 1)


def _booking(id, start, end, status="confirmed", boat_id="boat-1", booking_date=DAY):
    return SimpleNamespace(id=id, boat_id=boat_id, booking_date=booking_date, start_time=start, end_time=end, status=status)


def _slot(id, start, end, boat_id="boat-1", blocked_date=DAY):
    return SimpleNamespace(id=id, boat_id=boat_id, blocked_date=blocked_date, start_time=start, end_time=end)


def _req(start, end, boat_id="boat-1", exclude=None):
    return SlotRequest(boat_id=boat_id, booking_date=DAY, start_time=start, end_time=end, exclude_booking_id=exclude)


def test_intervals_overlap_is_closed_open():
    assert intervals_overlap(time(10), time(14), time(13), time(16))
    assert intervals_overlap(time(10), time(14), time(11), time(12))
    # Touching intervals share no instant.
    assert not intervals_overlap(time(10), time(14), time(14), time(16))
    assert not intervals_overlap(time(14), time(16), time(10), time(14))


def test_overlapping_booking_makes_slot_unavailable():
    bookings = [_booking("b1", time(10), time(14))]
    result = evaluate(_req(time(12), time(15)), bookings)
    assert not result.available
    assert result.conflicting_bookings == ["b1"]


def test_slot_intersecting_two_bookings_reports_both():
    bookings = [_booking("b1", time(9), time(12)), _booking("b2", time(13), time(17))]
    result = evaluate(_req(time(11), time(14)), bookings)
    assert not result.available
    assert sorted(result.conflicting_bookings) == ["b1", "b2"]


def test_cancelled_and_no_show_bookings_do_not_block():
    bookings = [
        _booking("b1", time(10), time(14), status="cancelled"),
        _booking("b2", time(10), time(14), status="no_show"),
    ]
    assert is_available(_req(time(10), time(14)), bookings)


def test_pending_hold_blocks():
    bookings = [_booking("b1", time(10), time(14), status="pending_hold")]
    assert not is_available(_req(time(10), time(14)), bookings)


def test_other_boat_or_day_does_not_block():
    bookings = [
        _booking("b1", time(10), time(14), boat_id="boat-2"),
        _booking("b2", time(10), time(14), booking_date=date(2030, 6, 2)),
    ]
    assert is_available(_req(time(10), time(14)), bookings)


def test_excluded_booking_is_ignored_for_reschedule():
    bookings = [_booking("b1", time(10), time(14))]
    assert is_available(_req(time(11), time(15), exclude="b1"), bookings)


def test_blocked_slot_for_boat_blocks():
    result = evaluate(_req(time(15), time(18)), [], [_slot("s1", time(16), time(17))])
    assert not result.available
    assert result.conflicting_blocked_slots == ["s1"]


def test_company_wide_blocked_slot_blocks_every_boat():
    slots = [_slot("s1", time(8), time(20), boat_id=None)]
    assert not is_available(_req(time(10), time(12), boat_id="boat-7"), [], slots)


def test_blocked_slot_for_other_boat_does_not_block():
    slots = [_slot("s1", time(8), time(20), boat_id="boat-2")]
    assert is_available(_req(time(10), time(12)), [], slots)


def test_slot_request_rejects_empty_or_inverted_interval():
    with pytest.raises(ValueError):
        _req(time(14), time(10))
    with pytest.raises(ValueError):
        _req(time(10), time(10))
