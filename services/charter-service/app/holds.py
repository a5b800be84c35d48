"""
Booking hold lifecycle.

A booking starts as `pending_hold` with `hold_until = now + HOLD_MINUTES`.
Whether a hold has lapsed depends only on `hold_until` and the caller's
`now`; the sweep applies that to stored rows. It is not a background
scheduler: callers run it before reads and writes that depend on it.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.engine import Engine

from .db import session
from .models import Booking

HOLD_MINUTES = int(os.getenv("HOLD_MINUTES", "15"))

PENDING_HOLD = "pending_hold"
CONFIRMED = "confirmed"
COMPLETED = "completed"
CANCELLED = "cancelled"
NO_SHOW = "no_show"

STATUSES = (PENDING_HOLD, CONFIRMED, COMPLETED, CANCELLED, NO_SHOW)

TRANSITIONS: dict[str, frozenset[str]] = {
    PENDING_HOLD: frozenset({CONFIRMED, CANCELLED}),
    CONFIRMED: frozenset({CANCELLED, COMPLETED, NO_SHOW}),
    COMPLETED: frozenset(),
    CANCELLED: frozenset(),
    NO_SHOW: frozenset(),
}

HOLD_EXPIRED_REASON = "Hold expired"
SWEPT_FIELDS = ("status", "hold_until", "updated_at", "cancelled_at", "cancellation_reason")

logger = logging.getLogger(__name__)


class InvalidTransition(ValueError):
    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot change booking status from {current} to {target}")
        self.current = current
        self.target = target


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def hold_deadline(now: datetime, minutes: int = HOLD_MINUTES) -> datetime:
    return now + timedelta(minutes=minutes)


def is_hold_expired(status: str, hold_until: datetime | None, now: datetime) -> bool:
    if status != PENDING_HOLD or hold_until is None:
        return False
    return as_utc(hold_until) <= as_utc(now)


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def transition(booking: Booking, target: str, now: datetime, reason: str | None = None) -> None:
    """Move `booking` to `target`, keeping the hold/timestamp fields consistent."""
    if not can_transition(booking.status, target):
        raise InvalidTransition(booking.status, target)

    booking.status = target
    booking.updated_at = now
    booking.hold_until = None

    if target == CANCELLED:
        booking.cancelled_at = now
        booking.cancellation_reason = reason
    elif target in (COMPLETED, NO_SHOW):
        booking.completed_at = now


@dataclass(frozen=True)
class ExpiredHold:
    """A hold the sweep cancelled, with the fields it had before."""

    booking: Booking
    before: dict[str, Any]


def expire_holds(bookings: list[Booking], now: datetime) -> list[ExpiredHold]:
    """Cancel every lapsed hold in `bookings`; returns the ones changed."""
    expired: list[ExpiredHold] = []
    for b in bookings:
        if not is_hold_expired(b.status, b.hold_until, now):
            continue
        before = {f: getattr(b, f) for f in SWEPT_FIELDS}
        transition(b, CANCELLED, now, reason=HOLD_EXPIRED_REASON)
        expired.append(ExpiredHold(booking=b, before=before))
    return expired


def release_expired_holds(engine: Engine, company_id: str | None, now: datetime | None = None) -> list[ExpiredHold]:
    """
    Cancel lapsed holds for one company, or for every company when
    `company_id` is None.
    """
    now = as_utc(now or _now())
    with session(engine) as s:
        q = (
            s.query(Booking)
            .filter(Booking.status == PENDING_HOLD)
            .filter(Booking.hold_until.is_not(None))
            .filter(Booking.hold_until <= now)
        )
        if company_id is not None:
            q = q.filter(Booking.company_id == company_id)
        expired = expire_holds(q.all(), now)
        for e in expired:
            s.add(e.booking)
        s.commit()

    if expired:
        logger.info("Cancelled %d expired hold(s)", len(expired))
    return expired


def sweep_expired_holds(engine: Engine, company_id: str, now: datetime | None = None) -> list[ExpiredHold]:
    """Best-effort sweep run ahead of booking reads and writes: a failure is logged, never raised."""
    try:
        return release_expired_holds(engine, company_id, now)
    except Exception as e:
        logger.warning("Hold sweep failed (company_id=%s): %s", company_id, e)
        return []
