import json
import time
from datetime import datetime, timedelta, timezone

import pytest

from app import main, payments

T0 = datetime(2030, 6, 1, 9, 0, tzinfo=timezone.utc)
DAY = "2030-06-03"
WEBHOOK_SECRET = "whsec_test"


class _DummyResponse:
    def __init__(self, status_code: int, json_data: dict):
        self.status_code = status_code
        self._json = json_data
        self.text = json.dumps(json_data)

    def json(self):
        return self._json


class _DummyCheckoutClient:
    calls: list[dict] = []

    def __init__(self, *args, **kwargs):
        pass

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def post(self, url, data=None, auth=None):
        _DummyCheckoutClient.calls.append({"url": url, "data": data, "auth": auth})
        return _DummyResponse(200, {"id": "cs_test_1", "url": "https://checkout.stripe.com/c/pay/cs_test_1"})


def _setup_booking(client, auth, monkeypatch, **extra):
    monkeypatch.setattr(main, "_now", lambda: T0)
    r = client.post("/boats", json={"name": "Sea Breeze", "boat_type": "motorboat", "capacity": 8}, headers=auth())
    boat_id = r.json()["id"]
    body = {
        "boat_id": boat_id,
        "booking_date": DAY,
        "start_time": "10:00",
        "end_time": "14:00",
        "customer_name": "Ana Garcia",
        "customer_phone": "+34600000000",
        "customer_email": "ana@example.com",
        "passengers": 4,
        "total_price": 500.0,
    }
    body.update(extra)
    r = client.post("/bookings", json=body, headers=auth())
    assert r.status_code == 200, r.text
    return r.json()["id"]


def _signed(event: dict, secret: str = WEBHOOK_SECRET) -> tuple[bytes, dict]:
    body = json.dumps(event).encode("utf-8")
    ts = str(int(time.time()))
    sig = payments.sign_payload(body, ts, secret)
    return body, {"Stripe-Signature": f"t={ts},v1={sig}", "Content-Type": "application/json"}


def test_validate_payment_rules():
    payments.validate_payment("confirmed", 500, 0, 500, "full_payment")
    payments.validate_payment("confirmed", 500, 499.995, 0.01, "balance")
    payments.validate_payment("cancelled", 500, 500, -100, "refund")

    with pytest.raises(payments.PaymentError):
        payments.validate_payment("confirmed", 500, 400, 150, "balance")
    with pytest.raises(payments.PaymentError):
        payments.validate_payment("cancelled", 500, 0, 100, "deposit")
    with pytest.raises(payments.PaymentError):
        payments.validate_payment("no_show", 500, 0, 100, "deposit")
    with pytest.raises(payments.PaymentError):
        payments.validate_payment("confirmed", 500, 0, 0, "deposit")
    with pytest.raises(payments.PaymentError):
        payments.validate_payment("confirmed", 500, 100, 50, "refund")


def test_settles_hold():
    assert payments.settles_hold(500, 0, 500, "full_payment")
    assert payments.settles_hold(500, 150, 150, "deposit")
    assert not payments.settles_hold(500, 150, 100, "deposit")
    assert not payments.settles_hold(500, 0, 150, "deposit")
    assert not payments.settles_hold(500, 150, 150, "balance")


def test_link_amount():
    assert payments.link_amount("deposit", 500, 0, 0) == 150.0
    assert payments.link_amount("deposit", 500, 200, 0) == 200.0
    assert payments.link_amount("full", 500, 200, 100) == 500.0
    assert payments.link_amount("balance", 500, 200, 120.5) == 379.5


def test_to_cents_rounds_half_up():
    assert payments.to_cents(150) == 15000
    assert payments.to_cents(19.995) == 2000


def test_verify_webhook_accepts_valid_signature():
    body = b'{"type": "ping"}'
    sig = payments.sign_payload(body, "1700000000", WEBHOOK_SECRET)
    event = payments.verify_webhook(body, f"t=1700000000,v1={sig}", WEBHOOK_SECRET, now=1700000100)
    assert event == {"type": "ping"}


def test_verify_webhook_rejects_bad_or_stale_signature():
    body = b'{"type": "ping"}'
    sig = payments.sign_payload(body, "1700000000", WEBHOOK_SECRET)
    with pytest.raises(payments.WebhookSignatureError):
        payments.verify_webhook(body, f"t=1700000000,v1={sig}", WEBHOOK_SECRET, now=1700000000 + 301)
    with pytest.raises(payments.WebhookSignatureError):
        payments.verify_webhook(body, f"t=1700000000,v1={'0' * 64}", WEBHOOK_SECRET, now=1700000000)
    with pytest.raises(payments.WebhookSignatureError):
        payments.verify_webhook(body, None, WEBHOOK_SECRET)
    with pytest.raises(payments.WebhookSignatureError):
        payments.verify_webhook(body, "garbage", WEBHOOK_SECRET)


def test_deposit_payment_confirms_hold(client, auth, monkeypatch):
    booking_id = _setup_booking(client, auth, monkeypatch, deposit_amount=150)

    r = client.post(
        "/payments",
        json={"booking_id": booking_id, "amount": 150, "payment_type": "deposit", "payment_method": "cash"},
        headers=auth(role="accountant"),
    )
    assert r.status_code == 200, r.text
    out = r.json()
    assert out["booking_status"] == "confirmed"
    assert out["deposit_paid"] is True
    assert out["total_paid"] == 150.0
    assert out["outstanding"] == 350.0

    b = client.get(f"/bookings/{booking_id}", headers=auth()).json()
    assert b["status"] == "confirmed"
    assert b["hold_until"] is None


def test_partial_payment_keeps_hold(client, auth, monkeypatch):
    booking_id = _setup_booking(client, auth, monkeypatch, deposit_amount=150)
    r = client.post(
        "/payments",
        json={"booking_id": booking_id, "amount": 100, "payment_type": "deposit", "payment_method": "card"},
        headers=auth(),
    )
    assert r.status_code == 200, r.text
    assert r.json()["booking_status"] == "pending_hold"
    assert r.json()["deposit_paid"] is False


def test_overpayment_is_rejected(client, auth, monkeypatch):
    booking_id = _setup_booking(client, auth, monkeypatch)
    client.post(
        "/payments",
        json={"booking_id": booking_id, "amount": 150, "payment_type": "deposit", "payment_method": "cash"},
        headers=auth(),
    )
    r = client.post(
        "/payments",
        json={"booking_id": booking_id, "amount": 400, "payment_type": "balance", "payment_method": "cash"},
        headers=auth(),
    )
    assert r.status_code == 400
    assert r.json() == {"error": "Payment would exceed booking total. Outstanding: €350.00"}


def test_cancelled_booking_takes_refunds_only(client, auth, monkeypatch):
    booking_id = _setup_booking(client, auth, monkeypatch)
    client.post(
        "/payments",
        json={"booking_id": booking_id, "amount": 500, "payment_type": "full_payment", "payment_method": "card"},
        headers=auth(),
    )
    client.post(f"/bookings/{booking_id}/cancel", json={"reason": "Weather"}, headers=auth())

    r = client.post(
        "/payments",
        json={"booking_id": booking_id, "amount": 50, "payment_type": "balance", "payment_method": "cash"},
        headers=auth(),
    )
    assert r.status_code == 400

    r = client.post(
        "/payments",
        json={"booking_id": booking_id, "amount": -500, "payment_type": "refund", "payment_method": "card"},
        headers=auth(),
    )
    assert r.status_code == 200, r.text
    assert r.json()["total_paid"] == 0.0


def test_agents_cannot_record_payments(client, auth, monkeypatch):
    booking_id = _setup_booking(client, auth, monkeypatch)
    r = client.post(
        "/payments",
        json={"booking_id": booking_id, "amount": 100, "payment_type": "deposit", "payment_method": "cash"},
        headers=auth(role="regular_agent"),
    )
    assert r.status_code == 403


def test_payment_link_requires_provider(client, auth, monkeypatch):
    booking_id = _setup_booking(client, auth, monkeypatch)
    monkeypatch.setattr(payments, "STRIPE_SECRET_KEY", "")
    r = client.post("/payments/link", json={"booking_id": booking_id, "link_type": "deposit"}, headers=auth())
    assert r.status_code == 503


def test_payment_link_uses_default_deposit_and_is_noted(client, auth, monkeypatch):
    booking_id = _setup_booking(client, auth, monkeypatch)
    monkeypatch.setattr(payments, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(payments.httpx, "AsyncClient", _DummyCheckoutClient)
    _DummyCheckoutClient.calls = []

    r = client.post("/payments/link", json={"booking_id": booking_id, "link_type": "deposit"}, headers=auth())
    assert r.status_code == 200, r.text
    assert r.json()["amount"] == 150.0
    assert r.json()["url"] == "https://checkout.stripe.com/c/pay/cs_test_1"

    call = _DummyCheckoutClient.calls[0]
    assert call["url"].endswith("/v1/checkout/sessions")
    assert call["auth"] == ("sk_test_123", "")
    assert call["data"]["line_items[0][price_data][unit_amount]"] == "15000"
    assert call["data"]["metadata[booking_id]"] == booking_id
    assert call["data"]["metadata[payment_type]"] == "deposit"

    b = client.get(f"/bookings/{booking_id}", headers=auth()).json()
    assert "https://checkout.stripe.com/c/pay/cs_test_1" in b["notes"]


def test_webhook_checkout_completed_confirms_once(client, auth, monkeypatch):
    booking_id = _setup_booking(client, auth, monkeypatch)
    monkeypatch.setattr(payments, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)

    event = {
        "id": "evt_1",
        "type": "checkout.session.completed",
        "data": {
            "object": {
                "id": "cs_test_1",
                "amount_total": 50000,
                "payment_intent": "pi_1",
                "metadata": {"booking_id": booking_id, "payment_type": "full_payment"},
            }
        },
    }
    body, headers = _signed(event)
    r = client.post("/payments/webhook", content=body, headers=headers)
    assert r.status_code == 200, r.text
    assert r.json() == {"received": True}

    # Provider retries must not double-record.
    r = client.post("/payments/webhook", content=body, headers=headers)
    assert r.status_code == 200

    rows = client.get("/payments", params={"booking_id": booking_id}, headers=auth()).json()
    assert len(rows) == 1
    assert rows[0]["amount"] == 500.0
    assert rows[0]["payment_method"] == "stripe"
    assert rows[0]["transaction_reference"] == "pi_1"

    b = client.get(f"/bookings/{booking_id}", headers=auth()).json()
    assert b["status"] == "confirmed"
    assert b["deposit_paid"] is True


def test_webhook_refund_records_negative_amount(client, auth, monkeypatch):
    booking_id = _setup_booking(client, auth, monkeypatch)
    monkeypatch.setattr(payments, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    client.post(
        "/payments",
        json={"booking_id": booking_id, "amount": 500, "payment_type": "full_payment", "payment_method": "stripe"},
        headers=auth(),
    )

    body, headers = _signed(
        {"type": "charge.refunded", "data": {"object": {"id": "ch_1", "amount_refunded": 10000, "metadata": {"booking_id": booking_id}}}}
    )
    r = client.post("/payments/webhook", content=body, headers=headers)
    assert r.status_code == 200, r.text

    amounts = sorted(p["amount"] for p in client.get("/payments", params={"booking_id": booking_id}, headers=auth()).json())
    assert amounts == [-100.0, 500.0]


def test_webhook_rejects_bad_signature(client, monkeypatch):
    monkeypatch.setattr(payments, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    body, headers = _signed({"type": "checkout.session.completed", "data": {"object": {}}}, secret="whsec_other")
    r = client.post("/payments/webhook", content=body, headers=headers)
    assert r.status_code == 400
    assert "error" in r.json()


def test_webhook_after_hold_lapsed_still_records_payment(client, auth, monkeypatch):
    booking_id = _setup_booking(client, auth, monkeypatch, deposit_amount=150)
    monkeypatch.setattr(payments, "STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)

    monkeypatch.setattr(main, "_now", lambda: T0 + timedelta(minutes=20))
    assert client.get(f"/bookings/{booking_id}", headers=auth()).json()["status"] == "cancelled"

    body, headers = _signed(
        {
            "type": "checkout.session.completed",
            "data": {
                "object": {
                    "id": "cs_late",
                    "amount_total": 15000,
                    "payment_intent": "pi_late",
                    "metadata": {"booking_id": booking_id, "payment_type": "deposit"},
                }
            },
        }
    )
    r = client.post("/payments/webhook", content=body, headers=headers)
    assert r.status_code == 200, r.text

    [row] = client.get("/payments", params={"booking_id": booking_id}, headers=auth()).json()
    assert row["amount"] == 150.0
    assert row["transaction_reference"] == "pi_late"
    # Money arriving late does not revive the hold.
    assert client.get(f"/bookings/{booking_id}", headers=auth()).json()["status"] == "cancelled"


def test_provider_payment_checks_only_the_sign():
    payments.validate_provider_payment(150, "deposit")
    payments.validate_provider_payment(-50, "refund")
    with pytest.raises(payments.PaymentError):
        payments.validate_provider_payment(0, "deposit")
    with pytest.raises(payments.PaymentError):
        payments.validate_provider_payment(-50, "deposit")
    with pytest.raises(payments.PaymentError):
        payments.validate_provider_payment(50, "refund")
