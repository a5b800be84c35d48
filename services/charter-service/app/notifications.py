from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from typing import Literal
from uuid import uuid4

import resend
from sqlalchemy.engine import Engine

from .db import session
from .models import Notification, NotificationPreference

RESEND_API_KEY = os.getenv("RESEND_API_KEY", "")
EMAIL_FROM_ADDRESS = os.getenv("EMAIL_FROM_ADDRESS", "Charter Bookings <onboarding@resend.dev>")

NotificationType = Literal[
    "booking_confirmation",
    "booking_reminder",
    "booking_cancelled",
    "booking_rescheduled",
    "payment_received",
    "payment_reminder",
    "low_availability_alert",
    "agent_assignment",
]
Channel = Literal["email", "sms", "in_app"]

DEFAULT_HISTORY_LIMIT = 100

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    def __init__(self, message: str, notification_id: str | None = None):
        super().__init__(message)
        self.notification_id = notification_id


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def channels_enabled(prefs: NotificationPreference | None, notification_type: str) -> tuple[bool, bool]:
    """(email_enabled, sms_enabled) for a notification type; email on and SMS off without preferences."""
    if prefs is None:
        return True, False
    if notification_type == "booking_confirmation":
        return prefs.email_booking_confirmations, prefs.sms_booking_confirmations
    if notification_type == "booking_reminder":
        return prefs.email_booking_reminders, prefs.sms_booking_reminders
    if "booking" in notification_type:
        return prefs.email_booking_changes, False
    if "payment" in notification_type:
        return prefs.email_payment_notifications, False
    return True, False


def _send_email(to: str, subject: str, html: str) -> str | None:
    if not RESEND_API_KEY:
        raise NotificationError("Email provider is not configured")
    resend.api_key = RESEND_API_KEY
    sent = resend.Emails.send({"from": EMAIL_FROM_ADDRESS, "to": [to], "subject": subject, "html": html})
    return (sent or {}).get("id")


def send_notification(
    engine: Engine,
    company_id: str,
    notification_type: str,
    channel: str,
    subject: str,
    message: str,
    recipient_email: str | None = None,
    recipient_phone: str | None = None,
    recipient_name: str | None = None,
    user_id: str | None = None,
    booking_id: str | None = None,
    html: str | None = None,
    meta: dict | None = None,
) -> Notification:
    """
    Log a notification and deliver it on `channel`.

    The row is written as `pending` first so a delivery failure still leaves
    a `failed` record behind.
    """
    if channel == "email" and not recipient_email:
        raise NotificationError("recipient_email is required for email notifications")
    if channel == "sms" and not recipient_phone:
        raise NotificationError("recipient_phone is required for sms notifications")

    row = Notification(
        id=str(uuid4()),
        company_id=company_id,
        recipient_email=recipient_email,
        recipient_phone=recipient_phone,
        recipient_name=recipient_name,
        user_id=user_id,
        booking_id=booking_id,
        notification_type=notification_type,
        channel=channel,
        subject=subject,
        message=message,
        status="pending",
        meta=meta,
        created_at=_now(),
    )
    with session(engine) as s:
        s.add(row)
        s.commit()

    try:
        if channel == "email":
            row.external_id = _send_email(recipient_email, subject, html or message)
        elif channel == "sms":
            # No SMS provider yet; the row records what would have been sent.
            logger.info("SMS notification to %s not delivered: SMS is not configured", recipient_phone)
        row.status = "sent"
        row.sent_at = _now()
    except Exception as e:
        logger.error("Notification delivery failed (id=%s, channel=%s): %s", row.id, channel, e)
        row.status = "failed"
        row.failed_at = _now()
        row.error_message = str(e) or "Delivery failed"

    with session(engine) as s:
        s.merge(row)
        s.commit()

    if row.status == "failed":
        raise NotificationError(row.error_message or "Delivery failed", notification_id=row.id)
    return row


def notification_history(
    engine: Engine,
    company_id: str,
    booking_id: str | None = None,
    user_id: str | None = None,
    notification_type: str | None = None,
    status: str | None = None,
    limit: int | None = None,
) -> list[Notification]:
    with session(engine) as s:
        q = s.query(Notification).filter(Notification.company_id == company_id)
        if booking_id:
            q = q.filter(Notification.booking_id == booking_id)
        if user_id:
            q = q.filter(Notification.user_id == user_id)
        if notification_type:
            q = q.filter(Notification.notification_type == notification_type)
        if status:
            q = q.filter(Notification.status == status)
        return q.order_by(Notification.created_at.desc()).limit(limit or DEFAULT_HISTORY_LIMIT).all()
