from __future__ import annotations

from datetime import date, datetime, time

from sqlalchemy import JSON, Boolean, Date, DateTime, Float, Integer, String, Text, Time, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class Company(Base):
    __tablename__ = "companies"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)

    name: Mapped[str | None] = mapped_column(String)

    # Weather location; defaults apply when unset.
    latitude: Mapped[float | None] = mapped_column(Float)
    longitude: Mapped[float | None] = mapped_column(Float)


class Boat(Base):
    __tablename__ = "boats"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    company_id: Mapped[str] = mapped_column(String, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)

    name: Mapped[str] = mapped_column(String)
    boat_type: Mapped[str] = mapped_column(String, index=True)  # sailboat|motorboat|catamaran|jetski|other
    capacity: Mapped[int] = mapped_column(Integer)

    description: Mapped[str | None] = mapped_column(Text)
    license_number: Mapped[str | None] = mapped_column(String)
    image_url: Mapped[str | None] = mapped_column(String)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)


class BoatFuelConfig(Base):
    __tablename__ = "boat_fuel_config"
    __table_args__ = (UniqueConstraint("boat_id", name="uq_boat_fuel_config_boat_id"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    boat_id: Mapped[str] = mapped_column(String, index=True)
    company_id: Mapped[str] = mapped_column(String, index=True)

    fuel_consumption_rate: Mapped[float] = mapped_column(Float)  # liters per hour
    fuel_price_per_liter: Mapped[float] = mapped_column(Float)
    notes: Mapped[str | None] = mapped_column(Text)

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class CompanyPackageConfig(Base):
    __tablename__ = "company_package_config"
    __table_args__ = (UniqueConstraint("company_id", name="uq_company_package_config_company_id"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    company_id: Mapped[str] = mapped_column(String, index=True)

    drinks_cost_per_person: Mapped[float] = mapped_column(Float, default=0.0)
    food_cost_per_person: Mapped[float] = mapped_column(Float, default=0.0)

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class Pricing(Base):
    __tablename__ = "pricing"
    __table_args__ = (
        UniqueConstraint("boat_id", "duration", "package_type", name="uq_pricing_boat_duration_package"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    company_id: Mapped[str] = mapped_column(String, index=True)
    boat_id: Mapped[str] = mapped_column(String, index=True)

    duration: Mapped[str] = mapped_column(String)  # e.g. 4h
    package_type: Mapped[str] = mapped_column(String)
    price: Mapped[float] = mapped_column(Float)


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    company_id: Mapped[str] = mapped_column(String, index=True)

    status: Mapped[str] = mapped_column(String, index=True)  # pending_hold|confirmed|completed|cancelled|no_show
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)

    hold_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), index=True)

    boat_id: Mapped[str] = mapped_column(String, index=True)
    agent_id: Mapped[str | None] = mapped_column(String, index=True)

    booking_date: Mapped[date] = mapped_column(Date, index=True)
    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)
    duration: Mapped[str] = mapped_column(String)

    customer_name: Mapped[str] = mapped_column(String)
    customer_phone: Mapped[str] = mapped_column(String, index=True)
    customer_email: Mapped[str | None] = mapped_column(String, index=True)

    passengers: Mapped[int] = mapped_column(Integer)
    package_type: Mapped[str] = mapped_column(String, default="charter_only")

    total_price: Mapped[float] = mapped_column(Float)
    deposit_amount: Mapped[float] = mapped_column(Float, default=0.0)
    deposit_paid: Mapped[bool] = mapped_column(Boolean, default=False)
    captain_fee: Mapped[float] = mapped_column(Float, default=0.0)
    fuel_cost: Mapped[float] = mapped_column(Float, default=0.0)
    package_addon_cost: Mapped[float] = mapped_column(Float, default=0.0)

    source: Mapped[str | None] = mapped_column(String)
    notes: Mapped[str | None] = mapped_column(Text)

    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancellation_reason: Mapped[str | None] = mapped_column(Text)


class BookingHistory(Base):
    __tablename__ = "booking_history"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    company_id: Mapped[str] = mapped_column(String, index=True)
    booking_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str | None] = mapped_column(String)

    action: Mapped[str] = mapped_column(String)  # created|updated|rescheduled|confirmed|cancelled|...
    old_data: Mapped[dict | None] = mapped_column(JSON)
    new_data: Mapped[dict | None] = mapped_column(JSON)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class BlockedSlot(Base):
    __tablename__ = "blocked_slots"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    company_id: Mapped[str] = mapped_column(String, index=True)

    # NULL blocks every boat of the company.
    boat_id: Mapped[str | None] = mapped_column(String, index=True)

    blocked_date: Mapped[date] = mapped_column(Date, index=True)
    start_time: Mapped[time] = mapped_column(Time)
    end_time: Mapped[time] = mapped_column(Time)

    reason: Mapped[str] = mapped_column(Text)
    block_type: Mapped[str] = mapped_column(String, default="maintenance")  # maintenance|weather|other

    created_by: Mapped[str | None] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    company_id: Mapped[str] = mapped_column(String, index=True)
    booking_id: Mapped[str] = mapped_column(String, index=True)

    amount: Mapped[float] = mapped_column(Float)  # negative for refunds
    payment_type: Mapped[str] = mapped_column(String)  # deposit|full_payment|balance|refund|...
    payment_method: Mapped[str] = mapped_column(String)  # cash|card|bank_transfer|stripe|...
    transaction_reference: Mapped[str | None] = mapped_column(String, index=True)
    notes: Mapped[str | None] = mapped_column(Text)

    payment_date: Mapped[date] = mapped_column(Date)
    recorded_by: Mapped[str | None] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class WaitlistEntry(Base):
    __tablename__ = "waitlist"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    company_id: Mapped[str] = mapped_column(String, index=True)

    customer_name: Mapped[str] = mapped_column(String)
    customer_email: Mapped[str | None] = mapped_column(String)
    customer_phone: Mapped[str] = mapped_column(String)

    preferred_date: Mapped[date] = mapped_column(Date, index=True)
    boat_id: Mapped[str | None] = mapped_column(String)
    passengers: Mapped[int] = mapped_column(Integer)
    notes: Mapped[str | None] = mapped_column(Text)

    status: Mapped[str] = mapped_column(String, default="active", index=True)  # active|contacted|converted|cancelled
    priority: Mapped[int] = mapped_column(Integer, default=0)
    booking_id: Mapped[str | None] = mapped_column(String)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class Notification(Base):
    __tablename__ = "notifications"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    company_id: Mapped[str] = mapped_column(String, index=True)

    recipient_email: Mapped[str | None] = mapped_column(String)
    recipient_phone: Mapped[str | None] = mapped_column(String)
    recipient_name: Mapped[str | None] = mapped_column(String)
    user_id: Mapped[str | None] = mapped_column(String, index=True)
    booking_id: Mapped[str | None] = mapped_column(String, index=True)

    notification_type: Mapped[str] = mapped_column(String, index=True)
    channel: Mapped[str] = mapped_column(String)  # email|sms|in_app
    subject: Mapped[str] = mapped_column(String)
    message: Mapped[str] = mapped_column(Text)

    status: Mapped[str] = mapped_column(String, default="pending", index=True)  # pending|sent|failed
    sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    error_message: Mapped[str | None] = mapped_column(Text)
    external_id: Mapped[str | None] = mapped_column(String)

    meta: Mapped[dict | None] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class NotificationPreference(Base):
    __tablename__ = "notification_preferences"
    __table_args__ = (UniqueConstraint("company_id", "user_id", name="uq_notification_preferences_company_user"),)

    id: Mapped[str] = mapped_column(String, primary_key=True)
    company_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)

    email_booking_confirmations: Mapped[bool] = mapped_column(Boolean, default=True)
    sms_booking_confirmations: Mapped[bool] = mapped_column(Boolean, default=False)
    email_booking_reminders: Mapped[bool] = mapped_column(Boolean, default=True)
    sms_booking_reminders: Mapped[bool] = mapped_column(Boolean, default=False)
    email_booking_changes: Mapped[bool] = mapped_column(Boolean, default=True)
    email_payment_notifications: Mapped[bool] = mapped_column(Boolean, default=True)

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
