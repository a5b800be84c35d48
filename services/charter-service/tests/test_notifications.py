from datetime import datetime, timezone

import pytest

from app import main, notifications

T0 = datetime(2030, 6, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def sent_emails(monkeypatch):
    sent: list[dict] = []

    def _send(params):
        sent.append(params)
        return {"id": f"email-{len(sent)}"}

    monkeypatch.setattr(notifications, "RESEND_API_KEY", "re_test_123")
    monkeypatch.setattr(notifications.resend.Emails, "send", _send)
    return sent


def _booking(client, auth, monkeypatch):
    monkeypatch.setattr(main, "_now", lambda: T0)
    boat_id = client.post("/boats", json={"name": "Sea Breeze", "boat_type": "motorboat", "capacity": 8}, headers=auth()).json()["id"]
    r = client.post(
        "/bookings",
        json={
            "boat_id": boat_id,
            "booking_date": "2030-06-03",
            "start_time": "10:00",
            "end_time": "14:00",
            "customer_name": "Ana Garcia",
            "customer_phone": "+34600000000",
            "customer_email": "ana@example.com",
            "passengers": 4,
            "total_price": 500.0,
        },
        headers=auth(),
    )
    assert r.status_code == 200, r.text
    return r.json()["id"]


def test_channels_enabled_defaults():
    assert notifications.channels_enabled(None, "booking_confirmation") == (True, False)
    assert notifications.channels_enabled(None, "payment_received") == (True, False)


def test_email_recipient_defaults_to_booking_customer(client, auth, monkeypatch, sent_emails):
    booking_id = _booking(client, auth, monkeypatch)
    r = client.post(
        "/notifications/send",
        json={
            "notification_type": "booking_confirmation",
            "subject": "Your charter is confirmed",
            "message": "See you on board.",
            "booking_id": booking_id,
        },
        headers=auth(),
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["status"] == "sent"
    assert body["recipient_email"] == "ana@example.com"
    assert body["recipient_name"] == "Ana Garcia"
    assert body["external_id"] == "email-1"

    assert sent_emails[0]["to"] == ["ana@example.com"]
    assert sent_emails[0]["html"] == "See you on board."

    rows = client.get("/notifications", params={"booking_id": booking_id}, headers=auth()).json()
    assert [n["id"] for n in rows] == [body["id"]]


def test_failed_delivery_is_logged_and_reported(client, auth, monkeypatch):
    def _down(params):
        raise RuntimeError("provider down")

    monkeypatch.setattr(notifications, "RESEND_API_KEY", "re_test_123")
    monkeypatch.setattr(notifications.resend.Emails, "send", _down)

    r = client.post(
        "/notifications/send",
        json={
            "notification_type": "payment_reminder",
            "subject": "Balance due",
            "message": "Please settle the balance.",
            "recipient_email": "ana@example.com",
        },
        headers=auth(),
    )
    assert r.status_code == 502
    assert r.json() == {"error": "provider down"}

    [row] = client.get("/notifications", params={"status": "failed"}, headers=auth()).json()
    assert row["error_message"] == "provider down"
    assert row["failed_at"] is not None


def test_missing_recipient_is_a_bad_request(client, auth, sent_emails):
    r = client.post(
        "/notifications/send",
        json={"notification_type": "booking_reminder", "subject": "Tomorrow", "message": "Reminder"},
        headers=auth(),
    )
    assert r.status_code == 400
    assert client.get("/notifications", headers=auth()).json() == []
    assert sent_emails == []


def test_sms_and_in_app_are_recorded(client, auth):
    r = client.post(
        "/notifications/send",
        json={
            "notification_type": "booking_reminder",
            "channel": "sms",
            "subject": "Tomorrow",
            "message": "Reminder",
            "recipient_phone": "+34600000000",
        },
        headers=auth(),
    )
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "sent"

    r = client.post(
        "/notifications/send",
        json={"notification_type": "agent_assignment", "channel": "in_app", "subject": "New booking", "message": "Assigned"},
        headers=auth(),
    )
    assert r.status_code == 200, r.text
    assert r.json()["status"] == "sent"


def test_agents_cannot_send_notifications(client, auth):
    r = client.post(
        "/notifications/send",
        json={"notification_type": "booking_reminder", "subject": "x", "message": "y", "recipient_email": "a@example.com"},
        headers=auth(role="regular_agent"),
    )
    assert r.status_code == 403


def test_preferences_default_and_update(client, auth):
    r = client.get("/notifications/preferences", headers=auth())
    assert r.status_code == 200, r.text
    assert r.json()["user_id"] == "user-1"
    assert r.json()["email_booking_confirmations"] is True
    assert r.json()["sms_booking_confirmations"] is False
    assert r.json()["updated_at"] is None

    r = client.put("/notifications/preferences", json={"email_booking_confirmations": False}, headers=auth())
    assert r.status_code == 200, r.text

    r = client.get("/notifications/preferences", headers=auth())
    assert r.json()["email_booking_confirmations"] is False
    assert r.json()["email_booking_changes"] is True
    assert r.json()["updated_at"] is not None

    # Another user in the same company keeps the defaults.
    assert client.get("/notifications/preferences", headers=auth(sub="user-2")).json()["email_booking_confirmations"] is True


def test_disabled_channel_is_not_sent(client, auth, sent_emails):
    client.put("/notifications/preferences", json={"email_booking_confirmations": False}, headers=auth())
    r = client.post(
        "/notifications/send",
        json={
            "notification_type": "booking_confirmation",
            "subject": "Confirmed",
            "message": "Confirmed",
            "recipient_email": "staff@example.com",
            "user_id": "user-1",
        },
        headers=auth(),
    )
    assert r.status_code == 409
    assert sent_emails == []
