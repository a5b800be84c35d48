"""Field-level diffs of booking history entries, formatted for display."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any

FIELD_LABELS: dict[str, str] = {
    "customer_name": "Customer Name",
    "customer_phone": "Customer Phone",
    "customer_email": "Customer Email",
    "booking_date": "Booking Date",
    "start_time": "Start Time",
    "end_time": "End Time",
    "duration": "Duration",
    "passengers": "Number of Passengers",
    "package_type": "Package Type",
    "total_price": "Total Price",
    "deposit_amount": "Deposit Amount",
    "deposit_paid": "Deposit Paid",
    "captain_fee": "Captain Fee",
    "fuel_cost": "Fuel Cost",
    "package_addon_cost": "Package Add-on Cost",
    "status": "Status",
    "notes": "Notes",
    "boat_id": "Boat",
    "agent_id": "Agent",
    "source": "Source",
    "hold_until": "Hold Until",
    "completed_at": "Completed At",
    "cancelled_at": "Cancelled At",
    "cancellation_reason": "Cancellation Reason",
}

PACKAGE_LABELS: dict[str, str] = {
    "charter_only": "Charter Only",
    "charter_drinks": "Charter + Drinks",
    "charter_food": "Charter + Food",
    "charter_full": "Full Package",
}

STATUS_LABELS: dict[str, str] = {
    "pending_hold": "Pending Hold",
    "confirmed": "Confirmed",
    "completed": "Completed",
    "cancelled": "Cancelled",
    "no_show": "No Show",
}

CURRENCY_FIELDS = frozenset(
    {"total_price", "deposit_amount", "captain_fee", "fuel_cost", "package_addon_cost"}
)
DATETIME_FIELDS = frozenset({"hold_until", "completed_at", "cancelled_at"})
EXCLUDED_FIELDS = frozenset({"id", "company_id", "created_at", "updated_at", "booking_id"})


@dataclass(frozen=True)
class FieldChange:
    field: str
    field_label: str
    old_value: Any
    new_value: Any
    formatted_old: str
    formatted_new: str


def _parse_dt(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


def format_value(field: str, value: Any) -> str:
    if value is None:
        return "None"
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if field in CURRENCY_FIELDS:
        try:
            return f"€{float(value):.2f}"
        except (TypeError, ValueError):
            return str(value)
    if field == "package_type":
        return PACKAGE_LABELS.get(value, str(value))
    if field == "status":
        return STATUS_LABELS.get(value, str(value))
    if field == "booking_date":
        d = value if isinstance(value, date) else None
        if d is None and isinstance(value, str):
            try:
                d = date.fromisoformat(value[:10])
            except ValueError:
                d = None
        return d.strftime("%a, %d %b %Y") if d else str(value)
    if field in DATETIME_FIELDS:
        dt = _parse_dt(value)
        return dt.strftime("%d %b %Y, %H:%M") if dt else str(value)
    return str(value)


def _change(field: str, old: Any, new: Any) -> FieldChange:
    return FieldChange(
        field=field,
        field_label=FIELD_LABELS.get(field, field),
        old_value=old,
        new_value=new,
        formatted_old=format_value(field, old),
        formatted_new=format_value(field, new),
    )


def _same(a: Any, b: Any) -> bool:
    return json.dumps(a, sort_keys=True, default=str) == json.dumps(b, sort_keys=True, default=str)


def parse_booking_changes(old_data: dict | None, new_data: dict | None) -> list[FieldChange]:
    """
    Compare two snapshots of a booking.

    A missing `old_data` is a creation (every field is new); a missing
    `new_data` lists every field as removed.
    """
    if not old_data and new_data:
        return [_change(f, None, v) for f, v in new_data.items() if f not in EXCLUDED_FIELDS]
    if old_data and not new_data:
        return [_change(f, v, None) for f, v in old_data.items() if f not in EXCLUDED_FIELDS]
    if not old_data and not new_data:
        return []

    changes: list[FieldChange] = []
    fields = list(dict.fromkeys([*old_data.keys(), *new_data.keys()]))
    for f in fields:
        if f in EXCLUDED_FIELDS:
            continue
        old, new = old_data.get(f), new_data.get(f)
        if not _same(old, new):
            changes.append(_change(f, old, new))
    return changes


def change_summary(changes: list[FieldChange]) -> str:
    if not changes:
        return "No specific changes recorded"
    if len(changes) == 1:
        return f"Changed {changes[0].field_label}"
    if len(changes) == 2:
        return f"Changed {changes[0].field_label} and {changes[1].field_label}"
    return f"Changed {len(changes)} fields"
