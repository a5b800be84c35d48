from datetime import date

from app.history import change_summary, format_value, parse_booking_changes


def test_format_value():
    assert format_value("total_price", 12.5) == "€12.50"
    assert format_value("fuel_cost", "7") == "€7.00"
    assert format_value("deposit_paid", True) == "Yes"
    assert format_value("deposit_paid", False) == "No"
    assert format_value("package_type", "charter_full") == "Full Package"
    assert format_value("package_type", "sunset_special") == "sunset_special"
    assert format_value("status", "no_show") == "No Show"
    assert format_value("booking_date", "2030-06-03") == "Mon, 03 Jun 2030"
    assert format_value("booking_date", date(2030, 6, 3)) == "Mon, 03 Jun 2030"
    assert format_value("hold_until", "2030-06-01T09:15:00+00:00") == "01 Jun 2030, 09:15"
    assert format_value("notes", None) == "None"


def test_creation_lists_every_field_except_bookkeeping():
    changes = parse_booking_changes(None, {"id": "b-1", "company_id": "c-1", "customer_name": "Ana", "passengers": 4})
    assert [c.field for c in changes] == ["customer_name", "passengers"]
    assert changes[0].formatted_old == "None"
    assert changes[1].field_label == "Number of Passengers"


def test_update_reports_only_changed_fields():
    old = {"customer_name": "Ana", "total_price": 500.0, "updated_at": "2030-06-01T09:00:00"}
    new = {"customer_name": "Ana", "total_price": 550.0, "updated_at": "2030-06-01T10:00:00"}
    [change] = parse_booking_changes(old, new)
    assert change.field == "total_price"
    assert (change.formatted_old, change.formatted_new) == ("€500.00", "€550.00")


def test_deletion_and_empty_snapshots():
    assert [c.new_value for c in parse_booking_changes({"notes": "x"}, None)] == [None]
    assert parse_booking_changes(None, None) == []


def test_change_summary():
    assert change_summary([]) == "No specific changes recorded"

    one = parse_booking_changes({"status": "pending_hold"}, {"status": "confirmed"})
    assert change_summary(one) == "Changed Status"

    two = parse_booking_changes({"status": "confirmed", "notes": None}, {"status": "cancelled", "notes": "Weather"})
    assert change_summary(two) == "Changed Status and Notes"

    many = parse_booking_changes(None, {"status": "confirmed", "notes": "x", "passengers": 2})
    assert change_summary(many) == "Changed 3 fields"
