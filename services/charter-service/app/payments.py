"""
Payment rules and the checkout-provider integration.

Amounts are euros as floats (the booking model's unit); the provider API
takes integer cents.
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
import time
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal

import httpx

STRIPE_API_URL = os.getenv("STRIPE_API_URL", "https://api.stripe.com")
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET", "")
PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "eur")
PAYMENT_SUCCESS_URL = os.getenv("PAYMENT_SUCCESS_URL", "http://localhost:3000/payments/success")
PAYMENT_CANCEL_URL = os.getenv("PAYMENT_CANCEL_URL", "http://localhost:3000/payments/cancelled")

DEFAULT_DEPOSIT_RATE = 0.30
OVERPAYMENT_TOLERANCE = 0.01
WEBHOOK_TOLERANCE_SECONDS = 300

LinkType = Literal["deposit", "full", "balance"]

logger = logging.getLogger(__name__)


class PaymentError(ValueError):
    """A payment request that breaks a business rule."""


class PaymentProviderError(Exception):
    """The checkout provider failed or is not configured."""


class WebhookSignatureError(Exception):
    pass


@dataclass(frozen=True)
class PaymentLink:
    id: str
    url: str
    amount: float


def to_cents(amount: float) -> int:
    return int((Decimal(str(amount)) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def total_paid(amounts: list[float]) -> float:
    return round(sum(amounts), 2)


def validate_payment(
    status: str,
    booking_total: float,
    already_paid: float,
    amount: float,
    payment_type: str,
) -> None:
    if amount == 0:
        raise PaymentError("Payment amount must not be zero")
    if "refund" in payment_type:
        if amount > 0:
            raise PaymentError("Refund amounts must be negative")
        return
    if status in ("cancelled", "no_show"):
        raise PaymentError("Cannot record payment for cancelled or no-show bookings")
    if amount < 0:
        raise PaymentError("Only refunds may have a negative amount")
    if already_paid + amount > booking_total + OVERPAYMENT_TOLERANCE:
        outstanding = booking_total - already_paid
        raise PaymentError(f"Payment would exceed booking total. Outstanding: €{outstanding:.2f}")


def validate_provider_payment(amount: float, payment_type: str) -> None:
    """
    Checks for a payment the provider has already captured.

    The money has moved, so booking status and the outstanding balance do
    not apply; only the sign has to match the payment type.
    """
    if amount == 0:
        raise PaymentError("Payment amount must not be zero")
    if "refund" in payment_type:
        if amount > 0:
            raise PaymentError("Refund amounts must be negative")
    elif amount < 0:
        raise PaymentError("Only refunds may have a negative amount")


def settles_hold(
    booking_total: float,
    deposit_amount: float,
    paid: float,
    payment_type: str,
) -> bool:
    """Whether a pending hold should be confirmed after a payment brings the total to `paid`."""
    if paid >= booking_total - OVERPAYMENT_TOLERANCE:
        return True
    return payment_type == "deposit" and deposit_amount > 0 and paid >= deposit_amount - OVERPAYMENT_TOLERANCE


def link_amount(link_type: str, booking_total: float, deposit_amount: float, paid: float) -> float:
    if link_type == "deposit":
        amount = deposit_amount or booking_total * DEFAULT_DEPOSIT_RATE
    elif link_type == "full":
        amount = booking_total
    else:
        amount = booking_total - paid
    return round(amount, 2)


async def create_checkout_link(
    booking_id: str,
    customer_name: str,
    customer_email: str | None,
    amount: float,
    description: str,
    metadata: dict[str, str] | None = None,
) -> PaymentLink:
    """Create a hosted checkout session for one booking payment."""
    if not STRIPE_SECRET_KEY:
        raise PaymentProviderError("Payment provider is not configured")

    form: dict[str, str] = {
        "mode": "payment",
        "success_url": PAYMENT_SUCCESS_URL,
        "cancel_url": PAYMENT_CANCEL_URL,
        "line_items[0][quantity]": "1",
        "line_items[0][price_data][currency]": PAYMENT_CURRENCY,
        "line_items[0][price_data][unit_amount]": str(to_cents(amount)),
        "line_items[0][price_data][product_data][name]": description,
        "line_items[0][price_data][product_data][description]": f"Booking ID: {booking_id}",
        "metadata[booking_id]": booking_id,
        "metadata[customer_name]": customer_name,
        # Copied onto the charge so refunds can be traced back to the booking.
        "payment_intent_data[metadata][booking_id]": booking_id,
    }
    if customer_email:
        form["customer_email"] = customer_email
        form["metadata[customer_email]"] = customer_email
    for k, v in (metadata or {}).items():
        form[f"metadata[{k}]"] = v

    try:
        async with httpx.AsyncClient(timeout=10.0, trust_env=False) as client:
            r = await client.post(
                f"{STRIPE_API_URL}/v1/checkout/sessions",
                data=form,
                auth=(STRIPE_SECRET_KEY, ""),
            )
    except httpx.HTTPError as e:
        raise PaymentProviderError(f"Payment provider unreachable: {e}") from e

    if r.status_code >= 400:
        logger.error("Checkout session creation failed (booking_id=%s): %s", booking_id, r.text)
        raise PaymentProviderError("Failed to create payment link")

    body = r.json()
    return PaymentLink(id=body["id"], url=body["url"], amount=amount)


def _parse_signature_header(header: str) -> tuple[str | None, list[str]]:
    timestamp = None
    signatures: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)
    return timestamp, signatures


def sign_payload(payload: bytes, timestamp: str, secret: str) -> str:
    signed = timestamp.encode("utf-8") + b"." + payload
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def verify_webhook(
    payload: bytes,
    signature_header: str | None,
    secret: str,
    now: float | None = None,
    tolerance: int = WEBHOOK_TOLERANCE_SECONDS,
) -> dict:
    """
    Check a `Stripe-Signature` header (`t=<unix>,v1=<hex hmac>`) and return the parsed event.

    The HMAC-SHA256 covers `"{t}.{raw body}"`; events older than `tolerance`
    seconds are rejected.
    """
    if not secret:
        raise WebhookSignatureError("Webhook secret is not configured")
    if not signature_header:
        raise WebhookSignatureError("No signature provided")

    timestamp, signatures = _parse_signature_header(signature_header)
    if not timestamp or not signatures:
        raise WebhookSignatureError("Malformed signature header")
    try:
        ts = int(timestamp)
    except ValueError:
        raise WebhookSignatureError("Malformed signature timestamp")

    now = time.time() if now is None else now
    if abs(now - ts) > tolerance:
        raise WebhookSignatureError("Signature timestamp outside tolerance")

    expected = sign_payload(payload, timestamp, secret)
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise WebhookSignatureError("Signature mismatch")

    try:
        return json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise WebhookSignatureError(f"Invalid payload: {e}") from e
