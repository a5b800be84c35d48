import sys
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from uuid import uuid4

import pytest
from sqlalchemy import create_engine

# Ensure `services/charter-service` is on sys.path so `import app` works when
# running tests from the repo root.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from app import events, holds
from app.db import session
from app.main import BookingCreate, create_booking
from app.models import Base, Boat, Booking

T0 = datetime(2030, 6, 1, 9, 0, tzinfo=timezone.utc)


def _booking(status="pending_hold", hold_until=None, company_id="company-1"):
    return Booking(
        id=str(uuid4()),
        company_id=company_id,
        status=status,
        created_at=T0,
        updated_at=T0,
        hold_until=hold_until,
        boat_id="boat-1",
        booking_date=date(2030, 6, 2),
        start_time=time(10),
        end_time=time(14),
        duration="4h",
        customer_name="Ana",
        customer_phone="+34600000000",
        passengers=2,
        package_type="charter_only",
        total_price=400.0,
    )


def test_hold_deadline_defaults_to_fifteen_minutes():
    assert holds.HOLD_MINUTES == 15
    assert holds.hold_deadline(T0) == T0 + timedelta(minutes=15)


def test_hold_expires_at_its_deadline():
    deadline = holds.hold_deadline(T0)
    assert not holds.is_hold_expired("pending_hold", deadline, T0 + timedelta(minutes=14))
    assert holds.is_hold_expired("pending_hold", deadline, deadline)
    assert holds.is_hold_expired("pending_hold", deadline, T0 + timedelta(minutes=16))


def test_only_pending_holds_expire():
    past = T0 - timedelta(hours=1)
    assert not holds.is_hold_expired("confirmed", past, T0)
    assert not holds.is_hold_expired("pending_hold", None, T0)


def test_naive_hold_until_is_read_as_utc():
    naive = (T0 + timedelta(minutes=15)).replace(tzinfo=None)
    assert not holds.is_hold_expired("pending_hold", naive, T0)
    assert holds.is_hold_expired("pending_hold", naive, T0 + timedelta(minutes=20))


def test_transition_table():
    assert holds.can_transition("pending_hold", "confirmed")
    assert holds.can_transition("pending_hold", "cancelled")
    assert holds.can_transition("confirmed", "completed")
    assert holds.can_transition("confirmed", "no_show")
    assert holds.can_transition("confirmed", "cancelled")
    assert not holds.can_transition("pending_hold", "completed")
    for terminal in ("completed", "cancelled", "no_show"):
        assert not holds.can_transition(terminal, "confirmed")


def test_confirm_clears_hold_until():
    b = _booking(hold_until=holds.hold_deadline(T0))
    holds.transition(b, "confirmed", T0)
    assert b.status == "confirmed"
    assert b.hold_until is None


def test_invalid_transition_raises():
    b = _booking(status="completed")
    with pytest.raises(holds.InvalidTransition):
        holds.transition(b, "confirmed", T0)


def test_expire_holds_cancels_lapsed_holds():
    lapsed = _booking(hold_until=T0 - timedelta(minutes=1))
    live = _booking(hold_until=T0 + timedelta(minutes=5))
    changed = holds.expire_holds([lapsed, live], T0)
    assert [e.booking for e in changed] == [lapsed]
    assert changed[0].before["status"] == "pending_hold"
    assert changed[0].before["hold_until"] == T0 - timedelta(minutes=1)
    assert lapsed.status == "cancelled"
    assert lapsed.cancellation_reason == holds.HOLD_EXPIRED_REASON
    assert lapsed.cancelled_at == T0
    assert lapsed.hold_until is None
    assert live.status == "pending_hold"


def test_release_expired_holds_is_scoped_to_company():
    eng = create_engine("sqlite+pysqlite:///:memory:", future=True)
    Base.metadata.create_all(eng)

    mine = _booking(hold_until=T0)
    theirs = _booking(hold_until=T0 - timedelta(minutes=1), company_id="company-2")
    with session(eng) as s:
        s.add_all([mine, theirs])
        s.commit()

    assert holds.release_expired_holds(eng, "company-1", now=T0 - timedelta(seconds=1)) == []
    # A hold lapses at its deadline, not after it.
    [released] = holds.release_expired_holds(eng, "company-1", now=T0)
    assert released.booking.id == mine.id
    with session(eng) as s:
        assert s.get(Booking, mine.id).status == "cancelled"
        assert s.get(Booking, theirs.id).status == "pending_hold"

    # Without a company the sweep covers every tenant.
    assert len(holds.release_expired_holds(eng, None, now=T0)) == 1


@pytest.mark.anyio
async def test_create_booking_succeeds_when_rabbitmq_down(monkeypatch):
    # Ensure default best-effort behavior.
    monkeypatch.delenv("EVENTS_STRICT", raising=False)
    monkeypatch.setattr(events, "EVENTS_STRICT", False)

    async def _boom(*args, **kwargs):
        raise RuntimeError("rabbitmq down")

    # Simulate RabbitMQ being unavailable.
    monkeypatch.setattr(events.aio_pika, "connect_robust", _boom)

    eng = create_engine("sqlite+pysqlite:///:memory:", future=True)
    Base.metadata.create_all(eng)
    with session(eng) as s:
        s.add(Boat(id="boat-1", company_id="company-1", created_at=T0, name="Sea Breeze", boat_type="motorboat", capacity=8, is_active=True))
        s.commit()

    payload = BookingCreate(
        boat_id="boat-1",
        booking_date=date(2030, 6, 2),
        start_time=time(10),
        end_time=time(14),
        customer_name="Ana",
        customer_phone="+34600000000",
        passengers=4,
        total_price=500.0,
    )

    out = await create_booking(payload=payload, company_id="company-1", engine=eng, principal={"sub": "user-1", "role": "admin"})
    assert out.status == "pending_hold"
    assert out.hold_until is not None
    assert out.duration == "4h"
    assert out.total_price == 500.0
