"""
Boat availability.

The conflict rule is a pure function over plain values so it can be checked
without a database; `check_boat_availability` and `get_available_boats` only
load the relevant rows for a company and apply it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, time
from typing import Iterable, Protocol

from sqlalchemy.orm import Session

from .models import BlockedSlot, Boat, Booking

# Statuses that no longer occupy the boat.
NON_BLOCKING_STATUSES = frozenset({"cancelled", "no_show"})


class BookingLike(Protocol):
    id: str
    boat_id: str
    booking_date: date
    start_time: time
    end_time: time
    status: str


class BlockedSlotLike(Protocol):
    id: str
    boat_id: str | None
    blocked_date: date
    start_time: time
    end_time: time


@dataclass(frozen=True)
class SlotRequest:
    boat_id: str
    booking_date: date
    start_time: time
    end_time: time
    exclude_booking_id: str | None = None

    def __post_init__(self) -> None:
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")


@dataclass
class AvailabilityResult:
    available: bool
    conflicting_bookings: list[str] = field(default_factory=list)
    conflicting_blocked_slots: list[str] = field(default_factory=list)


def intervals_overlap(start_a: time, end_a: time, start_b: time, end_b: time) -> bool:
    """Closed-open overlap: [start_a, end_a) and [start_b, end_b) share at least one instant."""
    return start_a < end_b and end_a > start_b


def booking_blocks(req: SlotRequest, booking: BookingLike) -> bool:
    if booking.id == req.exclude_booking_id:
        return False
    if booking.status in NON_BLOCKING_STATUSES:
        return False
    if booking.boat_id != req.boat_id or booking.booking_date != req.booking_date:
        return False
    return intervals_overlap(req.start_time, req.end_time, booking.start_time, booking.end_time)


def blocked_slot_blocks(req: SlotRequest, slot: BlockedSlotLike) -> bool:
    if slot.boat_id is not None and slot.boat_id != req.boat_id:
        return False
    if slot.blocked_date != req.booking_date:
        return False
    return intervals_overlap(req.start_time, req.end_time, slot.start_time, slot.end_time)


def evaluate(
    req: SlotRequest,
    bookings: Iterable[BookingLike],
    blocked_slots: Iterable[BlockedSlotLike] = (),
) -> AvailabilityResult:
    clashes = [b.id for b in bookings if booking_blocks(req, b)]
    blocks = [s.id for s in blocked_slots if blocked_slot_blocks(req, s)]
    return AvailabilityResult(
        available=not clashes and not blocks,
        conflicting_bookings=clashes,
        conflicting_blocked_slots=blocks,
    )


def is_available(
    req: SlotRequest,
    bookings: Iterable[BookingLike],
    blocked_slots: Iterable[BlockedSlotLike] = (),
) -> bool:
    return evaluate(req, bookings, blocked_slots).available


def _day_rows(s: Session, company_id: str, booking_date: date, boat_ids: list[str] | None = None):
    bq = (
        s.query(Booking)
        .filter(Booking.company_id == company_id)
        .filter(Booking.booking_date == booking_date)
        .filter(Booking.status.notin_(NON_BLOCKING_STATUSES))
    )
    if boat_ids is not None:
        bq = bq.filter(Booking.boat_id.in_(boat_ids))

    sq = (
        s.query(BlockedSlot)
        .filter(BlockedSlot.company_id == company_id)
        .filter(BlockedSlot.blocked_date == booking_date)
    )
    return bq.all(), sq.all()


def check_boat_availability(s: Session, company_id: str, req: SlotRequest) -> AvailabilityResult:
    bookings, slots = _day_rows(s, company_id, req.booking_date, boat_ids=[req.boat_id])
    return evaluate(req, bookings, slots)


def get_available_boats(
    s: Session,
    company_id: str,
    booking_date: date,
    start_time: time,
    end_time: time,
    min_capacity: int = 1,
    boat_type: str | None = None,
) -> list[Boat]:
    q = (
        s.query(Boat)
        .filter(Boat.company_id == company_id)
        .filter(Boat.is_active.is_(True))
        .filter(Boat.capacity >= min_capacity)
    )
    if boat_type:
        q = q.filter(Boat.boat_type == boat_type)
    boats = q.order_by(Boat.name).all()
    if not boats:
        return []

    bookings, slots = _day_rows(s, company_id, booking_date, boat_ids=[b.id for b in boats])
    out: list[Boat] = []
    for boat in boats:
        req = SlotRequest(boat_id=boat.id, booking_date=booking_date, start_time=start_time, end_time=end_time)
        if is_available(req, bookings, slots):
            out.append(boat)
    return out


def lock_boat(s: Session, company_id: str, boat_id: str) -> Boat | None:
    """
    Load the boat row with a write lock for the rest of the transaction.

    Concurrent booking writes for the same boat queue on this lock, so the
    availability check and the insert/update that follows it cannot
    interleave. Backends without row locks (SQLite) serialise writers anyway.
    """
    return (
        s.query(Boat)
        .filter(Boat.company_id == company_id)
        .filter(Boat.id == boat_id)
        .with_for_update()
        .first()
    )
