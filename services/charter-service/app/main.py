from __future__ import annotations

import hmac
import logging
import os
from dataclasses import asdict
from datetime import date, datetime, time, timedelta, timezone
from typing import Annotated, Literal
from uuid import uuid4

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import events, holds, notifications, payments, weather
from .availability import SlotRequest, check_boat_availability, get_available_boats, lock_boat
from .costs import BookingCosts, FuelConfig, PackageConfig, booking_costs, duration_hours
from .db import session, transaction
from .history import change_summary, parse_booking_changes
from .models import (
    BlockedSlot,
    Boat,
    BoatFuelConfig,
    Booking,
    BookingHistory,
    Company,
    CompanyPackageConfig,
    NotificationPreference,
    PaymentTransaction,
    Pricing,
    WaitlistEntry,
)
from .security import (
    ALL_STAFF,
    BOAT_DELETERS,
    BOOKING_WRITERS,
    COMPANY_WIDE_READERS,
    COST_CONFIGURATORS,
    FLEET_MANAGERS,
    NOTIFICATION_SENDERS,
    PAYMENT_RECORDERS,
    SLOT_BLOCKERS,
    has_role,
    require_roles,
)
from .tenancy import get_company_id, get_engine

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
CRON_SECRET = os.getenv("CRON_SECRET", "")

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="Charter Booking Service",
    version="0.1.0",
    description="Multi-tenant boat charter administration: fleet, pricing, availability, booking holds, payments, waitlist, notifications and marine weather.",
)

AGENT_ROLES = ("power_agent", "regular_agent")
URGENT_HOLD_WINDOW = timedelta(hours=2)
DASHBOARD_LIMIT = 10
LINK_PAYMENT_TYPES = {"deposit": "deposit", "full": "full_payment", "balance": "balance"}

BoatType = Literal["sailboat", "motorboat", "catamaran", "jetski", "other"]
PackageType = Literal["charter_only", "charter_drinks", "charter_food", "charter_full"]
BlockType = Literal["maintenance", "weather", "other"]
PaymentType = Literal["deposit", "full_payment", "balance", "refund", "partial_refund"]
PaymentMethod = Literal["cash", "card", "bank_transfer", "stripe", "other"]
WaitlistStatus = Literal["active", "contacted", "converted", "cancelled"]
DurationStr = Annotated[str, Field(pattern=r"^\d+h$", description="Charter length, e.g. 4h")]


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail}, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path", "header"))
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return JSONResponse(status_code=400, content={"error": "; ".join(parts) or "Invalid request"})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _sees_all_bookings(principal: dict) -> bool:
    return has_role(principal, COMPANY_WIDE_READERS)


def _slot(boat_id: str, booking_date: date, start_time: time, end_time: time, exclude_booking_id: str | None = None) -> SlotRequest:
    try:
        return SlotRequest(
            boat_id=boat_id,
            booking_date=booking_date,
            start_time=start_time,
            end_time=end_time,
            exclude_booking_id=exclude_booking_id,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/health")
def health():
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Company settings
# ---------------------------------------------------------------------------


class PackageConfigIn(BaseModel):
    drinks_cost_per_person: float = Field(default=0.0, ge=0)
    food_cost_per_person: float = Field(default=0.0, ge=0)


class PackageConfigOut(PackageConfigIn):
    configured: bool
    updated_at: datetime | None = None


@app.get("/company/package-config", response_model=PackageConfigOut)
def get_package_config(
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*ALL_STAFF)),
):
    with session(engine) as s:
        row = s.query(CompanyPackageConfig).filter(CompanyPackageConfig.company_id == company_id).first()
    if row is None:
        return PackageConfigOut(configured=False)
    return PackageConfigOut(
        configured=True,
        drinks_cost_per_person=row.drinks_cost_per_person,
        food_cost_per_person=row.food_cost_per_person,
        updated_at=row.updated_at,
    )


@app.put("/company/package-config", response_model=PackageConfigOut)
def put_package_config(
    payload: PackageConfigIn,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*COST_CONFIGURATORS)),
):
    now = _now()
    with session(engine) as s:
        row = s.query(CompanyPackageConfig).filter(CompanyPackageConfig.company_id == company_id).first()
        if row is None:
            row = CompanyPackageConfig(id=str(uuid4()), company_id=company_id)
        row.drinks_cost_per_person = payload.drinks_cost_per_person
        row.food_cost_per_person = payload.food_cost_per_person
        row.updated_at = now
        s.add(row)
        s.commit()
    return PackageConfigOut(
        configured=True,
        drinks_cost_per_person=row.drinks_cost_per_person,
        food_cost_per_person=row.food_cost_per_person,
        updated_at=row.updated_at,
    )


@app.delete("/company/package-config")
def delete_package_config(
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*COST_CONFIGURATORS)),
):
    with session(engine) as s:
        s.query(CompanyPackageConfig).filter(CompanyPackageConfig.company_id == company_id).delete()
        s.commit()
    return {"status": "ok"}


class LocationIn(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class LocationOut(LocationIn):
    is_default: bool


@app.get("/company/location", response_model=LocationOut)
def get_location(
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*ALL_STAFF)),
):
    lat, lon = _company_location(engine, company_id)
    return LocationOut(
        latitude=lat if lat is not None else weather.DEFAULT_LATITUDE,
        longitude=lon if lon is not None else weather.DEFAULT_LONGITUDE,
        is_default=lat is None or lon is None,
    )


@app.put("/company/location", response_model=LocationOut)
def put_location(
    payload: LocationIn,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*COST_CONFIGURATORS)),
):
    with session(engine) as s:
        row = s.get(Company, company_id)
        if row is None:
            row = Company(id=company_id, created_at=_now())
        row.latitude = payload.latitude
        row.longitude = payload.longitude
        s.add(row)
        s.commit()
    return LocationOut(latitude=payload.latitude, longitude=payload.longitude, is_default=False)


def _company_location(engine, company_id: str) -> tuple[float | None, float | None]:
    with session(engine) as s:
        row = s.get(Company, company_id)
    if row is None:
        return None, None
    return row.latitude, row.longitude


# ---------------------------------------------------------------------------
# Boats
# ---------------------------------------------------------------------------


class BoatCreate(BaseModel):
    name: str = Field(min_length=1)
    boat_type: BoatType
    capacity: int = Field(ge=1)
    description: str | None = None
    license_number: str | None = None
    image_url: str | None = None
    is_active: bool = True


class BoatPatch(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    boat_type: BoatType | None = None
    capacity: int | None = Field(default=None, ge=1)
    description: str | None = None
    license_number: str | None = None
    image_url: str | None = None
    is_active: bool | None = None


class BoatOut(BoatCreate):
    id: str
    created_at: datetime


def _boat_out(row: Boat) -> BoatOut:
    return BoatOut(
        id=row.id,
        created_at=row.created_at,
        name=row.name,
        boat_type=row.boat_type,
        capacity=row.capacity,
        description=row.description,
        license_number=row.license_number,
        image_url=row.image_url,
        is_active=row.is_active,
    )


def _get_boat(s, company_id: str, boat_id: str) -> Boat:
    row = s.query(Boat).filter(Boat.company_id == company_id).filter(Boat.id == boat_id).first()
    if row is None:
        raise HTTPException(status_code=404, detail="Boat not found")
    return row


@app.get("/boats", response_model=list[BoatOut])
def list_boats(
    active_only: bool = False,
    boat_type: BoatType | None = None,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*ALL_STAFF)),
):
    with session(engine) as s:
        q = s.query(Boat).filter(Boat.company_id == company_id)
        if active_only:
            q = q.filter(Boat.is_active.is_(True))
        if boat_type:
            q = q.filter(Boat.boat_type == boat_type)
        rows = q.order_by(Boat.name.asc()).all()
    return [_boat_out(r) for r in rows]


@app.post("/boats", response_model=BoatOut)
def create_boat(
    payload: BoatCreate,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*FLEET_MANAGERS)),
):
    row = Boat(
        id=str(uuid4()),
        company_id=company_id,
        created_at=_now(),
        name=payload.name.strip(),
        boat_type=payload.boat_type,
        capacity=payload.capacity,
        description=payload.description,
        license_number=payload.license_number,
        image_url=payload.image_url,
        is_active=payload.is_active,
    )
    with session(engine) as s:
        s.add(row)
        s.commit()
    return _boat_out(row)


@app.patch("/boats/{boat_id}", response_model=BoatOut)
def patch_boat(
    boat_id: str,
    payload: BoatPatch,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*FLEET_MANAGERS)),
):
    data = payload.model_dump(exclude_unset=True)
    with session(engine) as s:
        row = _get_boat(s, company_id, boat_id)
        for k, v in data.items():
            if v is None and k in ("name", "boat_type", "capacity", "is_active"):
                continue
            setattr(row, k, v)
        s.add(row)
        s.commit()
    return _boat_out(row)


@app.post("/boats/{boat_id}/toggle-status", response_model=BoatOut)
def toggle_boat_status(
    boat_id: str,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*FLEET_MANAGERS)),
):
    with session(engine) as s:
        row = _get_boat(s, company_id, boat_id)
        row.is_active = not row.is_active
        s.add(row)
        s.commit()
    return _boat_out(row)


@app.delete("/boats/{boat_id}")
def delete_boat(
    boat_id: str,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*BOAT_DELETERS)),
):
    with session(engine) as s:
        row = _get_boat(s, company_id, boat_id)
        in_use = s.query(Booking.id).filter(Booking.company_id == company_id).filter(Booking.boat_id == boat_id).first()
        if in_use is not None:
            raise HTTPException(status_code=400, detail="Cannot delete a boat that has bookings; deactivate it instead")
        s.query(Pricing).filter(Pricing.boat_id == boat_id).delete()
        s.query(BoatFuelConfig).filter(BoatFuelConfig.boat_id == boat_id).delete()
        s.delete(row)
        s.commit()
    return {"status": "ok"}


class FuelConfigIn(BaseModel):
    fuel_consumption_rate: float = Field(gt=0, description="Liters per hour")
    fuel_price_per_liter: float = Field(gt=0)
    notes: str | None = None


class FuelConfigOut(FuelConfigIn):
    boat_id: str
    updated_at: datetime


@app.get("/boats/{boat_id}/fuel-config", response_model=FuelConfigOut)
def get_fuel_config(
    boat_id: str,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*ALL_STAFF)),
):
    with session(engine) as s:
        _get_boat(s, company_id, boat_id)
        row = s.query(BoatFuelConfig).filter(BoatFuelConfig.boat_id == boat_id).first()
    if row is None:
        raise HTTPException(status_code=404, detail="Fuel configuration not found")
    return FuelConfigOut(
        boat_id=row.boat_id,
        fuel_consumption_rate=row.fuel_consumption_rate,
        fuel_price_per_liter=row.fuel_price_per_liter,
        notes=row.notes,
        updated_at=row.updated_at,
    )


@app.put("/boats/{boat_id}/fuel-config", response_model=FuelConfigOut)
def put_fuel_config(
    boat_id: str,
    payload: FuelConfigIn,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*COST_CONFIGURATORS)),
):
    with session(engine) as s:
        _get_boat(s, company_id, boat_id)
        row = s.query(BoatFuelConfig).filter(BoatFuelConfig.boat_id == boat_id).first()
        if row is None:
            row = BoatFuelConfig(id=str(uuid4()), boat_id=boat_id, company_id=company_id)
        row.fuel_consumption_rate = payload.fuel_consumption_rate
        row.fuel_price_per_liter = payload.fuel_price_per_liter
        row.notes = payload.notes
        row.updated_at = _now()
        s.add(row)
        s.commit()
    return FuelConfigOut(
        boat_id=row.boat_id,
        fuel_consumption_rate=row.fuel_consumption_rate,
        fuel_price_per_liter=row.fuel_price_per_liter,
        notes=row.notes,
        updated_at=row.updated_at,
    )


@app.delete("/boats/{boat_id}/fuel-config")
def delete_fuel_config(
    boat_id: str,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*COST_CONFIGURATORS)),
):
    with session(engine) as s:
        _get_boat(s, company_id, boat_id)
        s.query(BoatFuelConfig).filter(BoatFuelConfig.boat_id == boat_id).delete()
        s.commit()
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------


class PricingCreate(BaseModel):
    boat_id: str
    duration: DurationStr
    package_type: PackageType
    price: float = Field(gt=0)


class PricingPatch(BaseModel):
    duration: DurationStr | None = None
    package_type: PackageType | None = None
    price: float | None = Field(default=None, gt=0)


class PricingOut(PricingCreate):
    id: str


class PricingCopyRequest(BaseModel):
    source_boat_id: str
    target_boat_id: str


def _pricing_out(row: Pricing) -> PricingOut:
    return PricingOut(id=row.id, boat_id=row.boat_id, duration=row.duration, package_type=row.package_type, price=row.price)


def _pricing_taken(s, boat_id: str, duration: str, package_type: str, exclude_id: str | None = None) -> bool:
    q = (
        s.query(Pricing.id)
        .filter(Pricing.boat_id == boat_id)
        .filter(Pricing.duration == duration)
        .filter(Pricing.package_type == package_type)
    )
    if exclude_id:
        q = q.filter(Pricing.id != exclude_id)
    return q.first() is not None


@app.get("/pricing", response_model=list[PricingOut])
def list_pricing(
    boat_id: str | None = None,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*ALL_STAFF)),
):
    with session(engine) as s:
        q = s.query(Pricing).filter(Pricing.company_id == company_id)
        if boat_id:
            q = q.filter(Pricing.boat_id == boat_id)
        rows = q.order_by(Pricing.boat_id, Pricing.duration, Pricing.package_type).all()
    return [_pricing_out(r) for r in rows]


@app.post("/pricing", response_model=PricingOut)
def create_pricing(
    payload: PricingCreate,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*FLEET_MANAGERS)),
):
    row = Pricing(
        id=str(uuid4()),
        company_id=company_id,
        boat_id=payload.boat_id,
        duration=payload.duration,
        package_type=payload.package_type,
        price=payload.price,
    )
    with session(engine) as s:
        _get_boat(s, company_id, payload.boat_id)
        if _pricing_taken(s, payload.boat_id, payload.duration, payload.package_type):
            raise HTTPException(status_code=409, detail="Pricing for this boat, duration and package already exists")
        s.add(row)
        try:
            s.commit()
        except IntegrityError:
            s.rollback()
            raise HTTPException(status_code=409, detail="Pricing for this boat, duration and package already exists")
    return _pricing_out(row)


@app.patch("/pricing/{pricing_id}", response_model=PricingOut)
def patch_pricing(
    pricing_id: str,
    payload: PricingPatch,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*FLEET_MANAGERS)),
):
    with session(engine) as s:
        row = s.query(Pricing).filter(Pricing.company_id == company_id).filter(Pricing.id == pricing_id).first()
        if row is None:
            raise HTTPException(status_code=404, detail="Pricing not found")
        duration = payload.duration or row.duration
        package_type = payload.package_type or row.package_type
        if _pricing_taken(s, row.boat_id, duration, package_type, exclude_id=row.id):
            raise HTTPException(status_code=409, detail="Pricing for this boat, duration and package already exists")
        row.duration = duration
        row.package_type = package_type
        if payload.price is not None:
            row.price = payload.price
        s.add(row)
        s.commit()
    return _pricing_out(row)


@app.delete("/pricing/{pricing_id}")
def delete_pricing(
    pricing_id: str,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*FLEET_MANAGERS)),
):
    with session(engine) as s:
        n = s.query(Pricing).filter(Pricing.company_id == company_id).filter(Pricing.id == pricing_id).delete()
        s.commit()
    if not n:
        raise HTTPException(status_code=404, detail="Pricing not found")
    return {"status": "ok"}


@app.post("/pricing/copy", response_model=list[PricingOut])
def copy_pricing(
    payload: PricingCopyRequest,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*FLEET_MANAGERS)),
):
    """Replace the target boat's price list with a copy of the source boat's."""
    if payload.source_boat_id == payload.target_boat_id:
        raise HTTPException(status_code=400, detail="Source and target boat must differ")

    with transaction(engine) as s:
        _get_boat(s, company_id, payload.source_boat_id)
        _get_boat(s, company_id, payload.target_boat_id)
        source = s.query(Pricing).filter(Pricing.company_id == company_id).filter(Pricing.boat_id == payload.source_boat_id).all()
        if not source:
            raise HTTPException(status_code=404, detail="Source boat has no pricing to copy")

        s.query(Pricing).filter(Pricing.boat_id == payload.target_boat_id).delete()
        copied = [
            Pricing(
                id=str(uuid4()),
                company_id=company_id,
                boat_id=payload.target_boat_id,
                duration=p.duration,
                package_type=p.package_type,
                price=p.price,
            )
            for p in source
        ]
        s.add_all(copied)

    logger.info("Copied %d pricing row(s) from boat %s to %s", len(copied), payload.source_boat_id, payload.target_boat_id)
    return [_pricing_out(p) for p in copied]


# ---------------------------------------------------------------------------
# Availability and blocked slots
# ---------------------------------------------------------------------------


class AvailabilityOut(BaseModel):
    boat_id: str
    booking_date: date
    start_time: time
    end_time: time
    available: bool
    conflicting_bookings: list[str]
    conflicting_blocked_slots: list[str]


@app.get("/availability/check", response_model=AvailabilityOut)
async def check_availability(
    boat_id: str,
    booking_date: date,
    start_time: time,
    end_time: time,
    exclude_booking_id: str | None = None,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*ALL_STAFF)),
):
    req = _slot(boat_id, booking_date, start_time, end_time, exclude_booking_id)
    await _sweep(engine, company_id, _now())
    with session(engine) as s:
        _get_boat(s, company_id, boat_id)
        result = check_boat_availability(s, company_id, req)
    return AvailabilityOut(
        boat_id=boat_id,
        booking_date=booking_date,
        start_time=start_time,
        end_time=end_time,
        available=result.available,
        conflicting_bookings=result.conflicting_bookings,
        conflicting_blocked_slots=result.conflicting_blocked_slots,
    )


@app.get("/availability/boats", response_model=list[BoatOut])
async def available_boats(
    booking_date: date,
    start_time: time,
    end_time: time,
    min_capacity: int = Query(default=1, ge=1),
    boat_type: BoatType | None = None,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*ALL_STAFF)),
):
    if end_time <= start_time:
        raise HTTPException(status_code=400, detail="end_time must be after start_time")
    await _sweep(engine, company_id, _now())
    with session(engine) as s:
        rows = get_available_boats(s, company_id, booking_date, start_time, end_time, min_capacity, boat_type)
    return [_boat_out(r) for r in rows]


class BlockedSlotCreate(BaseModel):
    boat_id: str | None = Field(default=None, description="Omit to block every boat")
    blocked_date: date
    start_time: time
    end_time: time
    reason: str = Field(min_length=1)
    block_type: BlockType = "maintenance"


class BlockedSlotOut(BlockedSlotCreate):
    id: str
    created_by: str | None
    created_at: datetime


def _blocked_slot_out(row: BlockedSlot) -> BlockedSlotOut:
    return BlockedSlotOut(
        id=row.id,
        boat_id=row.boat_id,
        blocked_date=row.blocked_date,
        start_time=row.start_time,
        end_time=row.end_time,
        reason=row.reason,
        block_type=row.block_type,
        created_by=row.created_by,
        created_at=row.created_at,
    )


@app.get("/blocked-slots", response_model=list[BlockedSlotOut])
def list_blocked_slots(
    boat_id: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*ALL_STAFF)),
):
    with session(engine) as s:
        q = s.query(BlockedSlot).filter(BlockedSlot.company_id == company_id)
        if boat_id:
            # Company-wide blocks apply to every boat.
            q = q.filter(or_(BlockedSlot.boat_id == boat_id, BlockedSlot.boat_id.is_(None)))
        if date_from:
            q = q.filter(BlockedSlot.blocked_date >= date_from)
        if date_to:
            q = q.filter(BlockedSlot.blocked_date <= date_to)
        rows = q.order_by(BlockedSlot.blocked_date, BlockedSlot.start_time).all()
    return [_blocked_slot_out(r) for r in rows]


@app.post("/blocked-slots", response_model=BlockedSlotOut)
def create_blocked_slot(
    payload: BlockedSlotCreate,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    principal=Depends(require_roles(*SLOT_BLOCKERS)),
):
    if payload.end_time <= payload.start_time:
        raise HTTPException(status_code=400, detail="end_time must be after start_time")
    row = BlockedSlot(
        id=str(uuid4()),
        company_id=company_id,
        boat_id=payload.boat_id,
        blocked_date=payload.blocked_date,
        start_time=payload.start_time,
        end_time=payload.end_time,
        reason=payload.reason,
        block_type=payload.block_type,
        created_by=principal.get("sub"),
        created_at=_now(),
    )
    with session(engine) as s:
        if payload.boat_id:
            _get_boat(s, company_id, payload.boat_id)
        s.add(row)
        s.commit()
    return _blocked_slot_out(row)


@app.delete("/blocked-slots/{slot_id}")
def delete_blocked_slot(
    slot_id: str,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*SLOT_BLOCKERS)),
):
    with session(engine) as s:
        n = s.query(BlockedSlot).filter(BlockedSlot.company_id == company_id).filter(BlockedSlot.id == slot_id).delete()
        s.commit()
    if not n:
        raise HTTPException(status_code=404, detail="Blocked slot not found")
    return {"status": "ok"}


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------


class BookingCreate(BaseModel):
    boat_id: str
    booking_date: date
    start_time: time
    end_time: time
    duration: DurationStr | None = Field(default=None, description="Defaults to the whole hours between start and end")
    customer_name: str = Field(min_length=1)
    customer_phone: str = Field(min_length=1)
    customer_email: str | None = None
    passengers: int = Field(ge=1)
    package_type: PackageType = "charter_only"
    total_price: float | None = Field(default=None, ge=0, description="Looked up from pricing when omitted")
    deposit_amount: float = Field(default=0.0, ge=0)
    captain_fee: float = Field(default=0.0, ge=0)
    agent_id: str | None = None
    source: str | None = None
    notes: str | None = None
    confirm: bool = Field(default=False, description="Create the booking confirmed instead of as a hold")


class BookingPatch(BaseModel):
    customer_name: str | None = Field(default=None, min_length=1)
    customer_phone: str | None = Field(default=None, min_length=1)
    customer_email: str | None = None
    passengers: int | None = Field(default=None, ge=1)
    package_type: PackageType | None = None
    total_price: float | None = Field(default=None, ge=0)
    deposit_amount: float | None = Field(default=None, ge=0)
    captain_fee: float | None = Field(default=None, ge=0)
    agent_id: str | None = None
    source: str | None = None
    notes: str | None = None


class ConfirmRequest(BaseModel):
    deposit_paid: bool = False


class CancelRequest(BaseModel):
    reason: str = Field(min_length=1)


class RescheduleRequest(BaseModel):
    booking_date: date
    start_time: time
    end_time: time
    boat_id: str | None = Field(default=None, description="Move to another boat; defaults to the current one")
    duration: DurationStr | None = None


class PaymentStatusRequest(BaseModel):
    deposit_paid: bool


class BookingOut(BaseModel):
    id: str
    status: str
    created_at: datetime
    updated_at: datetime
    hold_until: datetime | None
    boat_id: str
    agent_id: str | None
    booking_date: date
    start_time: time
    end_time: time
    duration: str
    customer_name: str
    customer_phone: str
    customer_email: str | None
    passengers: int
    package_type: str
    total_price: float
    deposit_amount: float
    deposit_paid: bool
    captain_fee: float
    fuel_cost: float
    package_addon_cost: float
    source: str | None
    notes: str | None
    completed_at: datetime | None
    cancelled_at: datetime | None
    cancellation_reason: str | None


def _booking_out(b: Booking) -> BookingOut:
    return BookingOut(
        id=b.id,
        status=b.status,
        created_at=b.created_at,
        updated_at=b.updated_at,
        hold_until=b.hold_until,
        boat_id=b.boat_id,
        agent_id=b.agent_id,
        booking_date=b.booking_date,
        start_time=b.start_time,
        end_time=b.end_time,
        duration=b.duration,
        customer_name=b.customer_name,
        customer_phone=b.customer_phone,
        customer_email=b.customer_email,
        passengers=b.passengers,
        package_type=b.package_type,
        total_price=b.total_price,
        deposit_amount=b.deposit_amount or 0.0,
        deposit_paid=bool(b.deposit_paid),
        captain_fee=b.captain_fee or 0.0,
        fuel_cost=b.fuel_cost or 0.0,
        package_addon_cost=b.package_addon_cost or 0.0,
        source=b.source,
        notes=b.notes,
        completed_at=b.completed_at,
        cancelled_at=b.cancelled_at,
        cancellation_reason=b.cancellation_reason,
    )


def _snapshot(b: Booking) -> dict:
    """JSON-safe copy of every booking column, for history rows."""
    out: dict = {}
    for col in Booking.__table__.columns:
        v = getattr(b, col.key)
        out[col.key] = v.isoformat() if isinstance(v, (date, time, datetime)) else v
    return out


def _write_history(engine, booking: Booking, action: str, user_id: str | None, old: dict | None, new: dict | None) -> None:
    """Best-effort: a failed history write never undoes the booking change."""
    try:
        with session(engine) as s:
            s.add(
                BookingHistory(
                    id=str(uuid4()),
                    company_id=booking.company_id,
                    booking_id=booking.id,
                    user_id=user_id,
                    action=action,
                    old_data=old,
                    new_data=new,
                    created_at=_now(),
                )
            )
            s.commit()
    except Exception as e:
        logger.warning("Booking history write failed (booking_id=%s, action=%s): %s", booking.id, action, e)


async def _record_expired(engine, expired: list[holds.ExpiredHold]) -> None:
    """History row and `booking.cancelled` event for each hold the sweep cancelled."""
    for e in expired:
        new = _snapshot(e.booking)
        old = {**new, **{k: v.isoformat() if isinstance(v, datetime) else v for k, v in e.before.items()}}
        _write_history(engine, e.booking, "cancelled", None, old, new)
        await events.publish("booking.cancelled", events.booking_payload(e.booking))


async def _sweep(engine, company_id: str, now: datetime) -> None:
    await _record_expired(engine, holds.sweep_expired_holds(engine, company_id, now))


def _visible_bookings(q, principal: dict):
    if _sees_all_bookings(principal):
        return q
    return q.filter(Booking.agent_id == principal.get("sub"))


def _load_booking(s, company_id: str, booking_id: str, principal: dict | None = None) -> Booking:
    b = s.query(Booking).filter(Booking.company_id == company_id).filter(Booking.id == booking_id).first()
    if b is None:
        raise HTTPException(status_code=404, detail="Booking not found")
    if principal is not None and not _sees_all_bookings(principal) and b.agent_id != principal.get("sub"):
        raise HTTPException(status_code=404, detail="Booking not found")
    return b


def _derived_duration(start_time: time, end_time: time) -> str:
    minutes = (end_time.hour * 60 + end_time.minute) - (start_time.hour * 60 + start_time.minute)
    return f"{max(1, minutes // 60)}h"


def _costs_for(s, company_id: str, boat_id: str, duration: str, package_type: str, passengers: int) -> BookingCosts:
    fuel_row = s.query(BoatFuelConfig).filter(BoatFuelConfig.company_id == company_id).filter(BoatFuelConfig.boat_id == boat_id).first()
    pkg_row = s.query(CompanyPackageConfig).filter(CompanyPackageConfig.company_id == company_id).first()
    fuel = FuelConfig(fuel_row.fuel_consumption_rate, fuel_row.fuel_price_per_liter) if fuel_row else None
    package = PackageConfig(pkg_row.drinks_cost_per_person, pkg_row.food_cost_per_person) if pkg_row else None
    return booking_costs(fuel, package, duration, package_type, passengers)


def _lookup_price(s, company_id: str, boat_id: str, duration: str, package_type: str) -> float | None:
    row = (
        s.query(Pricing)
        .filter(Pricing.company_id == company_id)
        .filter(Pricing.boat_id == boat_id)
        .filter(Pricing.duration == duration)
        .filter(Pricing.package_type == package_type)
        .first()
    )
    return row.price if row else None


def _ensure_slot_free(s, company_id: str, req: SlotRequest) -> None:
    result = check_boat_availability(s, company_id, req)
    if not result.available:
        raise HTTPException(status_code=409, detail="Boat is not available for the selected time slot")


def _transition(b: Booking, target: str, now: datetime, reason: str | None = None) -> None:
    try:
        holds.transition(b, target, now, reason=reason)
    except holds.InvalidTransition as e:
        raise HTTPException(status_code=409, detail=str(e))


async def _place_booking(engine, company_id: str, principal: dict, payload: BookingCreate) -> Booking:
    """
    Create a booking under the boat's row lock.

    The availability check and the insert share one transaction, so two
    requests for the same slot cannot both succeed.
    """
    req = _slot(payload.boat_id, payload.booking_date, payload.start_time, payload.end_time)
    now = _now()
    await _sweep(engine, company_id, now)

    duration = payload.duration or _derived_duration(payload.start_time, payload.end_time)
    # Agents always book for themselves.
    agent_id = payload.agent_id if _sees_all_bookings(principal) else principal.get("sub")

    with transaction(engine) as s:
        boat = lock_boat(s, company_id, payload.boat_id)
        if boat is None:
            raise HTTPException(status_code=404, detail="Boat not found")
        if not boat.is_active:
            raise HTTPException(status_code=400, detail="Boat is not active")
        if payload.passengers > boat.capacity:
            raise HTTPException(status_code=400, detail=f"Passengers exceed boat capacity ({boat.capacity})")

        _ensure_slot_free(s, company_id, req)

        total = payload.total_price
        if total is None:
            total = _lookup_price(s, company_id, boat.id, duration, payload.package_type)
            if total is None:
                raise HTTPException(status_code=400, detail=f"No pricing for this boat, duration {duration} and package {payload.package_type}")

        costs = _costs_for(s, company_id, boat.id, duration, payload.package_type, payload.passengers)
        booking = Booking(
            id=str(uuid4()),
            company_id=company_id,
            status=holds.CONFIRMED if payload.confirm else holds.PENDING_HOLD,
            created_at=now,
            updated_at=now,
            hold_until=None if payload.confirm else holds.hold_deadline(now, holds.HOLD_MINUTES),
            boat_id=boat.id,
            agent_id=agent_id,
            booking_date=payload.booking_date,
            start_time=payload.start_time,
            end_time=payload.end_time,
            duration=duration,
            customer_name=payload.customer_name.strip(),
            customer_phone=payload.customer_phone.strip(),
            customer_email=payload.customer_email,
            passengers=payload.passengers,
            package_type=payload.package_type,
            total_price=float(total),
            deposit_amount=payload.deposit_amount,
            deposit_paid=False,
            captain_fee=payload.captain_fee,
            fuel_cost=costs.fuel_cost,
            package_addon_cost=costs.package_addon_cost,
            source=payload.source or ("agent" if has_role(principal, AGENT_ROLES) else "admin"),
            notes=payload.notes,
        )
        s.add(booking)

    _write_history(engine, booking, "created", principal.get("sub"), None, _snapshot(booking))
    logger.info("Booking %s created (company_id=%s, status=%s)", booking.id, company_id, booking.status)
    return booking


@app.post("/bookings", response_model=BookingOut)
async def create_booking(
    payload: BookingCreate,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    principal=Depends(require_roles(*BOOKING_WRITERS)),
):
    booking = await _place_booking(engine, company_id, principal, payload)
    key = "booking.confirmed" if booking.status == holds.CONFIRMED else "booking.held"
    await events.publish(key, events.booking_payload(booking))
    return _booking_out(booking)


@app.get("/bookings", response_model=list[BookingOut])
async def list_bookings(
    status: str | None = None,
    boat_id: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    q: str | None = Query(default=None, description="Customer name, phone or email contains"),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    principal=Depends(require_roles(*ALL_STAFF)),
):
    await _sweep(engine, company_id, _now())
    with session(engine) as s:
        query = _visible_bookings(s.query(Booking).filter(Booking.company_id == company_id), principal)
        if status:
            query = query.filter(Booking.status == status)
        if boat_id:
            query = query.filter(Booking.boat_id == boat_id)
        if date_from:
            query = query.filter(Booking.booking_date >= date_from)
        if date_to:
            query = query.filter(Booking.booking_date <= date_to)
        if q and q.strip():
            like = f"%{q.strip()}%"
            query = query.filter(
                or_(
                    Booking.customer_name.ilike(like),
                    Booking.customer_phone.ilike(like),
                    Booking.customer_email.ilike(like),
                )
            )
        rows = (
            query.order_by(Booking.booking_date.desc(), Booking.start_time.asc())
            .offset(offset)
            .limit(limit)
            .all()
        )
    return [_booking_out(b) for b in rows]


class CalendarOut(BaseModel):
    date_from: date
    date_to: date
    bookings: list[BookingOut]
    blocked_slots: list[BlockedSlotOut]


@app.get("/bookings/calendar", response_model=CalendarOut)
async def booking_calendar(
    date_from: date,
    date_to: date,
    boat_id: str | None = None,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    principal=Depends(require_roles(*ALL_STAFF)),
):
    if date_to < date_from:
        raise HTTPException(status_code=400, detail="date_to must not be before date_from")
    await _sweep(engine, company_id, _now())
    with session(engine) as s:
        bq = (
            s.query(Booking)
            .filter(Booking.company_id == company_id)
            .filter(Booking.booking_date >= date_from)
            .filter(Booking.booking_date <= date_to)
            .filter(Booking.status != holds.CANCELLED)
        )
        bq = _visible_bookings(bq, principal)
        sq = (
            s.query(BlockedSlot)
            .filter(BlockedSlot.company_id == company_id)
            .filter(BlockedSlot.blocked_date >= date_from)
            .filter(BlockedSlot.blocked_date <= date_to)
        )
        if boat_id:
            bq = bq.filter(Booking.boat_id == boat_id)
            sq = sq.filter(or_(BlockedSlot.boat_id == boat_id, BlockedSlot.boat_id.is_(None)))
        bookings = bq.order_by(Booking.booking_date, Booking.start_time).all()
        slots = sq.order_by(BlockedSlot.blocked_date, BlockedSlot.start_time).all()
    return CalendarOut(
        date_from=date_from,
        date_to=date_to,
        bookings=[_booking_out(b) for b in bookings],
        blocked_slots=[_blocked_slot_out(x) for x in slots],
    )


class DashboardOut(BaseModel):
    today: date
    upcoming: list[BookingOut]
    latest: list[BookingOut]
    todays_bookings: list[BookingOut]
    urgent: list[BookingOut]


@app.get("/bookings/dashboard", response_model=DashboardOut)
async def booking_dashboard(
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    principal=Depends(require_roles(*ALL_STAFF)),
):
    now = _now()
    today = now.date()
    tomorrow = today + timedelta(days=1)
    await _sweep(engine, company_id, now)

    with session(engine) as s:
        base = _visible_bookings(s.query(Booking).filter(Booking.company_id == company_id), principal)
        upcoming = (
            base.filter(Booking.booking_date >= today)
            .filter(Booking.status.notin_((holds.CANCELLED, holds.NO_SHOW)))
            .order_by(Booking.booking_date, Booking.start_time)
            .limit(DASHBOARD_LIMIT)
            .all()
        )
        latest = base.order_by(Booking.created_at.desc()).limit(DASHBOARD_LIMIT).all()
        todays = (
            base.filter(Booking.booking_date == today)
            .filter(Booking.status.in_((holds.CONFIRMED, holds.PENDING_HOLD)))
            .order_by(Booking.start_time)
            .all()
        )
        pending = base.filter(Booking.status == holds.PENDING_HOLD).order_by(Booking.hold_until).all()

    # Holds about to lapse first, then holds for charters due today or tomorrow.
    urgent: list[Booking] = []
    seen: set[str] = set()
    for b in pending:
        if b.hold_until is not None and holds.as_utc(b.hold_until) <= now + URGENT_HOLD_WINDOW:
            urgent.append(b)
            seen.add(b.id)
    for b in pending:
        if b.id not in seen and b.booking_date in (today, tomorrow):
            urgent.append(b)
            seen.add(b.id)

    return DashboardOut(
        today=today,
        upcoming=[_booking_out(b) for b in upcoming],
        latest=[_booking_out(b) for b in latest],
        todays_bookings=[_booking_out(b) for b in todays],
        urgent=[_booking_out(b) for b in urgent],
    )


class CostsOut(BaseModel):
    boat_id: str
    duration: str
    package_type: str
    passengers: int
    hours: int
    fuel_cost: float
    package_addon_cost: float
    price: float | None


@app.get("/bookings/costs", response_model=CostsOut)
def booking_cost_estimate(
    boat_id: str,
    duration: str = Query(pattern=r"^\d+h$"),
    package_type: PackageType = "charter_only",
    passengers: int = Query(default=1, ge=1),
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*ALL_STAFF)),
):
    with session(engine) as s:
        _get_boat(s, company_id, boat_id)
        costs = _costs_for(s, company_id, boat_id, duration, package_type, passengers)
        price = _lookup_price(s, company_id, boat_id, duration, package_type)
    return CostsOut(
        boat_id=boat_id,
        duration=duration,
        package_type=package_type,
        passengers=passengers,
        hours=duration_hours(duration),
        fuel_cost=costs.fuel_cost,
        package_addon_cost=costs.package_addon_cost,
        price=price,
    )


@app.get("/bookings/{booking_id}", response_model=BookingOut)
async def get_booking(
    booking_id: str,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    principal=Depends(require_roles(*ALL_STAFF)),
):
    await _sweep(engine, company_id, _now())
    with session(engine) as s:
        b = _load_booking(s, company_id, booking_id, principal)
    return _booking_out(b)


@app.patch("/bookings/{booking_id}", response_model=BookingOut)
def patch_booking(
    booking_id: str,
    payload: BookingPatch,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    principal=Depends(require_roles(*BOOKING_WRITERS)),
):
    """Edit customer, party and money fields. Date, time and boat go through /reschedule."""
    data = payload.model_dump(exclude_unset=True)
    now = _now()
    with transaction(engine) as s:
        b = _load_booking(s, company_id, booking_id, principal)
        if "agent_id" in data and data["agent_id"] != b.agent_id and not _sees_all_bookings(principal):
            raise HTTPException(status_code=403, detail="Agents cannot reassign bookings")
        old = _snapshot(b)

        if data.get("passengers") is not None:
            boat = _get_boat(s, company_id, b.boat_id)
            if data["passengers"] > boat.capacity:
                raise HTTPException(status_code=400, detail=f"Passengers exceed boat capacity ({boat.capacity})")

        for k, v in data.items():
            if v is None and k in ("customer_name", "customer_phone", "passengers", "package_type", "total_price", "deposit_amount", "captain_fee"):
                continue
            setattr(b, k, v.strip() if isinstance(v, str) and k in ("customer_name", "customer_phone") else v)

        if "passengers" in data or "package_type" in data:
            costs = _costs_for(s, company_id, b.boat_id, b.duration, b.package_type, b.passengers)
            b.package_addon_cost = costs.package_addon_cost

        b.updated_at = now
        new = _snapshot(b)

    if parse_booking_changes(old, new):
        _write_history(engine, b, "updated", principal.get("sub"), old, new)
    return _booking_out(b)


@app.post("/bookings/{booking_id}/confirm", response_model=BookingOut)
async def confirm_booking(
    booking_id: str,
    payload: ConfirmRequest | None = None,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    principal=Depends(require_roles(*BOOKING_WRITERS)),
):
    now = _now()
    expired = False
    with transaction(engine) as s:
        b = _load_booking(s, company_id, booking_id, principal)
        old = _snapshot(b)
        if holds.is_hold_expired(b.status, b.hold_until, now):
            holds.transition(b, holds.CANCELLED, now, reason=holds.HOLD_EXPIRED_REASON)
            expired = True
        else:
            _transition(b, holds.CONFIRMED, now)
            if payload is not None and payload.deposit_paid:
                b.deposit_paid = True
        new = _snapshot(b)

    if expired:
        _write_history(engine, b, "cancelled", None, old, new)
        await events.publish("booking.cancelled", events.booking_payload(b))
        raise HTTPException(status_code=409, detail="Hold expired")

    _write_history(engine, b, "confirmed", principal.get("sub"), old, new)
    await events.publish("booking.confirmed", events.booking_payload(b))
    return _booking_out(b)


async def _status_change(engine, company_id: str, booking_id: str, principal: dict, target: str, reason: str | None = None) -> Booking:
    now = _now()
    with transaction(engine) as s:
        b = _load_booking(s, company_id, booking_id, principal)
        old = _snapshot(b)
        _transition(b, target, now, reason=reason)
        new = _snapshot(b)

    _write_history(engine, b, target, principal.get("sub"), old, new)
    await events.publish(f"booking.{target}", events.booking_payload(b))
    return b


@app.post("/bookings/{booking_id}/cancel", response_model=BookingOut)
async def cancel_booking(
    booking_id: str,
    payload: CancelRequest,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    principal=Depends(require_roles(*BOOKING_WRITERS)),
):
    b = await _status_change(engine, company_id, booking_id, principal, holds.CANCELLED, reason=payload.reason.strip())
    return _booking_out(b)


@app.post("/bookings/{booking_id}/complete", response_model=BookingOut)
async def complete_booking(
    booking_id: str,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    principal=Depends(require_roles(*BOOKING_WRITERS)),
):
    b = await _status_change(engine, company_id, booking_id, principal, holds.COMPLETED)
    return _booking_out(b)


@app.post("/bookings/{booking_id}/no-show", response_model=BookingOut)
async def no_show_booking(
    booking_id: str,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    principal=Depends(require_roles(*BOOKING_WRITERS)),
):
    b = await _status_change(engine, company_id, booking_id, principal, holds.NO_SHOW)
    return _booking_out(b)


@app.post("/bookings/{booking_id}/reschedule", response_model=BookingOut)
async def reschedule_booking(
    booking_id: str,
    payload: RescheduleRequest,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    principal=Depends(require_roles(*BOOKING_WRITERS)),
):
    now = _now()
    await _sweep(engine, company_id, now)

    with transaction(engine) as s:
        b = _load_booking(s, company_id, booking_id, principal)
        if b.status not in (holds.PENDING_HOLD, holds.CONFIRMED):
            raise HTTPException(status_code=409, detail=f"Cannot reschedule a booking with status {b.status}")

        boat_id = payload.boat_id or b.boat_id
        req = _slot(boat_id, payload.booking_date, payload.start_time, payload.end_time, exclude_booking_id=b.id)
        boat = lock_boat(s, company_id, boat_id)
        if boat is None:
            raise HTTPException(status_code=404, detail="Boat not found")
        if boat_id != b.boat_id:
            if not boat.is_active:
                raise HTTPException(status_code=400, detail="Boat is not active")
            if b.passengers > boat.capacity:
                raise HTTPException(status_code=400, detail=f"Passengers exceed boat capacity ({boat.capacity})")

        _ensure_slot_free(s, company_id, req)

        old = _snapshot(b)
        b.boat_id = boat_id
        b.booking_date = payload.booking_date
        b.start_time = payload.start_time
        b.end_time = payload.end_time
        b.duration = payload.duration or _derived_duration(payload.start_time, payload.end_time)
        b.fuel_cost = _costs_for(s, company_id, boat_id, b.duration, b.package_type, b.passengers).fuel_cost
        b.updated_at = now
        new = _snapshot(b)

    _write_history(engine, b, "rescheduled", principal.get("sub"), old, new)
    await events.publish("booking.rescheduled", events.booking_payload(b))
    return _booking_out(b)


@app.post("/bookings/{booking_id}/payment-status", response_model=BookingOut)
def set_payment_status(
    booking_id: str,
    payload: PaymentStatusRequest,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    principal=Depends(require_roles(*PAYMENT_RECORDERS)),
):
    with transaction(engine) as s:
        b = _load_booking(s, company_id, booking_id)
        old = _snapshot(b)
        b.deposit_paid = payload.deposit_paid
        b.updated_at = _now()
        new = _snapshot(b)

    if old["deposit_paid"] != new["deposit_paid"]:
        _write_history(engine, b, "payment_status_changed", principal.get("sub"), old, new)
    return _booking_out(b)


class FieldChangeOut(BaseModel):
    field: str
    field_label: str
    formatted_old: str
    formatted_new: str


class HistoryEntryOut(BaseModel):
    id: str
    action: str
    user_id: str | None
    created_at: datetime
    summary: str
    changes: list[FieldChangeOut]


@app.get("/bookings/{booking_id}/history", response_model=list[HistoryEntryOut])
def booking_history(
    booking_id: str,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    principal=Depends(require_roles(*ALL_STAFF)),
):
    with session(engine) as s:
        _load_booking(s, company_id, booking_id, principal)
        rows = (
            s.query(BookingHistory)
            .filter(BookingHistory.company_id == company_id)
            .filter(BookingHistory.booking_id == booking_id)
            .order_by(BookingHistory.created_at.desc())
            .all()
        )

    out: list[HistoryEntryOut] = []
    for r in rows:
        changes = parse_booking_changes(r.old_data, r.new_data)
        out.append(
            HistoryEntryOut(
                id=r.id,
                action=r.action,
                user_id=r.user_id,
                created_at=r.created_at,
                summary=change_summary(changes),
                changes=[
                    FieldChangeOut(
                        field=c.field,
                        field_label=c.field_label,
                        formatted_old=c.formatted_old,
                        formatted_new=c.formatted_new,
                    )
                    for c in changes
                ],
            )
        )
    return out


# ---------------------------------------------------------------------------
# Hold cleanup
# ---------------------------------------------------------------------------


@app.post("/holds/cleanup")
async def cleanup_holds(
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*BOOKING_WRITERS)),
):
    expired = holds.release_expired_holds(engine, company_id, _now())
    await _record_expired(engine, expired)
    return {"status": "ok", "cancelled": len(expired)}


@app.api_route("/cron/cleanup-holds", methods=["GET", "POST"])
async def cron_cleanup_holds(
    authorization: Annotated[str | None, Header()] = None,
    engine=Depends(get_engine),
):
    """Sweep every company. Requires `Authorization: Bearer $CRON_SECRET` when CRON_SECRET is set."""
    if CRON_SECRET:
        expected = f"Bearer {CRON_SECRET}"
        if not authorization or not hmac.compare_digest(authorization, expected):
            raise HTTPException(status_code=401, detail="Unauthorized")
    expired = holds.release_expired_holds(engine, None, _now())
    await _record_expired(engine, expired)
    return {"status": "ok", "cancelled": len(expired), "timestamp": _now().isoformat()}


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


class PaymentCreate(BaseModel):
    booking_id: str
    amount: float = Field(description="Negative for refunds")
    payment_type: PaymentType
    payment_method: PaymentMethod
    transaction_reference: str | None = None
    notes: str | None = None
    payment_date: date | None = None


class PaymentOut(BaseModel):
    id: str
    booking_id: str
    amount: float
    payment_type: str
    payment_method: str
    transaction_reference: str | None
    notes: str | None
    payment_date: date
    recorded_by: str | None
    created_at: datetime


class PaymentRecordedOut(BaseModel):
    payment: PaymentOut
    booking_status: str
    deposit_paid: bool
    total_paid: float
    outstanding: float


class PaymentLinkRequest(BaseModel):
    booking_id: str
    link_type: payments.LinkType = "deposit"


class PaymentLinkOut(BaseModel):
    booking_id: str
    link_type: str
    amount: float
    url: str
    session_id: str


def _payment_out(row: PaymentTransaction) -> PaymentOut:
    return PaymentOut(
        id=row.id,
        booking_id=row.booking_id,
        amount=row.amount,
        payment_type=row.payment_type,
        payment_method=row.payment_method,
        transaction_reference=row.transaction_reference,
        notes=row.notes,
        payment_date=row.payment_date,
        recorded_by=row.recorded_by,
        created_at=row.created_at,
    )


def _paid_so_far(s, booking_id: str) -> float:
    amounts = [a for (a,) in s.query(PaymentTransaction.amount).filter(PaymentTransaction.booking_id == booking_id).all()]
    return payments.total_paid(amounts)


def _apply_payment(
    s,
    b: Booking,
    amount: float,
    payment_type: str,
    payment_method: str,
    now: datetime,
    transaction_reference: str | None = None,
    notes: str | None = None,
    payment_date: date | None = None,
    recorded_by: str | None = None,
    provider_captured: bool = False,
) -> tuple[PaymentTransaction, float, bool]:
    """
    Record one payment against `b` inside the caller's transaction.

    Returns the row, the new amount paid and whether the payment confirmed
    a pending hold. `provider_captured` payments were already taken by the
    payment provider and are recorded whatever the booking status.
    """
    paid = _paid_so_far(s, b.id)
    if provider_captured:
        payments.validate_provider_payment(amount, payment_type)
    else:
        payments.validate_payment(b.status, b.total_price, paid, amount, payment_type)

    row = PaymentTransaction(
        id=str(uuid4()),
        company_id=b.company_id,
        booking_id=b.id,
        amount=amount,
        payment_type=payment_type,
        payment_method=payment_method,
        transaction_reference=transaction_reference,
        notes=notes,
        payment_date=payment_date or now.date(),
        recorded_by=recorded_by,
        created_at=now,
    )
    s.add(row)

    new_paid = round(paid + amount, 2)
    deposit = b.deposit_amount or 0.0
    covered = new_paid >= b.total_price - payments.OVERPAYMENT_TOLERANCE
    if covered or (deposit > 0 and new_paid >= deposit - payments.OVERPAYMENT_TOLERANCE):
        b.deposit_paid = True

    confirmed = False
    if b.status == holds.PENDING_HOLD and not holds.is_hold_expired(b.status, b.hold_until, now):
        if payments.settles_hold(b.total_price, deposit, new_paid, payment_type):
            holds.transition(b, holds.CONFIRMED, now)
            confirmed = True
    b.updated_at = now
    return row, new_paid, confirmed


@app.get("/payments", response_model=list[PaymentOut])
def list_payments(
    booking_id: str | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*COMPANY_WIDE_READERS)),
):
    with session(engine) as s:
        q = s.query(PaymentTransaction).filter(PaymentTransaction.company_id == company_id)
        if booking_id:
            q = q.filter(PaymentTransaction.booking_id == booking_id)
        if date_from:
            q = q.filter(PaymentTransaction.payment_date >= date_from)
        if date_to:
            q = q.filter(PaymentTransaction.payment_date <= date_to)
        rows = q.order_by(PaymentTransaction.created_at.desc()).all()
    return [_payment_out(r) for r in rows]


@app.post("/payments", response_model=PaymentRecordedOut)
async def record_payment(
    payload: PaymentCreate,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    principal=Depends(require_roles(*PAYMENT_RECORDERS)),
):
    now = _now()
    await _sweep(engine, company_id, now)

    with transaction(engine) as s:
        b = _load_booking(s, company_id, payload.booking_id)
        old = _snapshot(b)
        try:
            row, paid, confirmed = _apply_payment(
                s,
                b,
                payload.amount,
                payload.payment_type,
                payload.payment_method,
                now,
                transaction_reference=payload.transaction_reference,
                notes=payload.notes,
                payment_date=payload.payment_date,
                recorded_by=principal.get("sub"),
            )
        except payments.PaymentError as e:
            raise HTTPException(status_code=400, detail=str(e))
        new = _snapshot(b)

    if confirmed or old["deposit_paid"] != new["deposit_paid"]:
        _write_history(engine, b, "confirmed" if confirmed else "payment_status_changed", principal.get("sub"), old, new)

    await events.publish(
        "payment.recorded",
        {"company_id": company_id, "booking_id": b.id, "payment_id": row.id, "amount": row.amount, "payment_type": row.payment_type},
    )
    if confirmed:
        await events.publish("booking.confirmed", events.booking_payload(b))

    return PaymentRecordedOut(
        payment=_payment_out(row),
        booking_status=b.status,
        deposit_paid=bool(b.deposit_paid),
        total_paid=paid,
        outstanding=round(b.total_price - paid, 2),
    )


@app.post("/payments/link", response_model=PaymentLinkOut)
async def create_payment_link(
    payload: PaymentLinkRequest,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*PAYMENT_RECORDERS)),
):
    if not payments.STRIPE_SECRET_KEY:
        raise HTTPException(status_code=503, detail="Payment provider is not configured")

    with session(engine) as s:
        b = _load_booking(s, company_id, payload.booking_id)
        if b.status in (holds.CANCELLED, holds.NO_SHOW):
            raise HTTPException(status_code=400, detail="Cannot create a payment link for a cancelled or no-show booking")
        paid = _paid_so_far(s, b.id)

    amount = payments.link_amount(payload.link_type, b.total_price, b.deposit_amount or 0.0, paid)
    if amount <= 0:
        raise HTTPException(status_code=400, detail="Nothing left to pay for this booking")

    label = {"deposit": "Deposit", "full": "Full payment", "balance": "Balance"}[payload.link_type]
    description = f"{label} - Charter {b.booking_date.isoformat()} {b.start_time.strftime('%H:%M')}"
    try:
        link = await payments.create_checkout_link(
            booking_id=b.id,
            customer_name=b.customer_name,
            customer_email=b.customer_email,
            amount=amount,
            description=description,
            metadata={"payment_type": LINK_PAYMENT_TYPES[payload.link_type], "company_id": company_id},
        )
    except payments.PaymentProviderError as e:
        raise HTTPException(status_code=502, detail=str(e))

    with session(engine) as s:
        row = s.get(Booking, b.id)
        line = f"Payment link ({payload.link_type}, €{amount:.2f}): {link.url}"
        row.notes = f"{row.notes}\n\n{line}" if row.notes else line
        row.updated_at = _now()
        s.add(row)
        s.commit()

    return PaymentLinkOut(booking_id=b.id, link_type=payload.link_type, amount=amount, url=link.url, session_id=link.id)


def _webhook_payment(engine, booking_id: str | None, amount: float, payment_type: str, reference: str | None, notes: str) -> Booking | None:
    """Record a provider-reported payment once per reference. Returns the booking if it was confirmed."""
    if not booking_id:
        logger.warning("Webhook event without booking_id metadata (reference=%s)", reference)
        return None

    now = _now()
    with transaction(engine) as s:
        b = s.get(Booking, booking_id)
        if b is None:
            logger.warning("Webhook for unknown booking %s (reference=%s)", booking_id, reference)
            return None
        if reference:
            dup = (
                s.query(PaymentTransaction.id)
                .filter(PaymentTransaction.booking_id == booking_id)
                .filter(PaymentTransaction.transaction_reference == reference)
                .filter(PaymentTransaction.payment_type == payment_type)
                .first()
            )
            if dup is not None:
                logger.info("Webhook payment %s already recorded", reference)
                return None
        old = _snapshot(b)
        try:
            _, _, confirmed = _apply_payment(
                s, b, amount, payment_type, "stripe", now, transaction_reference=reference, notes=notes, provider_captured=True
            )
        except payments.PaymentError as e:
            logger.error("Webhook payment for booking %s not recorded: %s", booking_id, e)
            return None
        if amount > 0 and b.status in (holds.CANCELLED, holds.NO_SHOW):
            logger.warning("Payment %s recorded against %s booking %s; needs a refund or rebooking", reference, b.status, b.id)
        new = _snapshot(b)

    if confirmed:
        _write_history(engine, b, "confirmed", None, old, new)
        return b
    return None


@app.post("/payments/webhook")
async def payment_webhook(
    request: Request,
    stripe_signature: Annotated[str | None, Header(alias="Stripe-Signature")] = None,
    engine=Depends(get_engine),
):
    if not payments.STRIPE_WEBHOOK_SECRET:
        raise HTTPException(status_code=503, detail="Webhook secret is not configured")

    body = await request.body()
    try:
        event = payments.verify_webhook(body, stripe_signature, payments.STRIPE_WEBHOOK_SECRET)
    except payments.WebhookSignatureError as e:
        logger.warning("Rejected payment webhook: %s", e)
        raise HTTPException(status_code=400, detail=str(e))

    kind = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}

    confirmed = None
    if kind == "checkout.session.completed":
        confirmed = _webhook_payment(
            engine,
            metadata.get("booking_id"),
            round((obj.get("amount_total") or 0) / 100, 2),
            metadata.get("payment_type") or "full_payment",
            obj.get("payment_intent") or obj.get("id"),
            f"Online payment (session {obj.get('id')})",
        )
    elif kind == "charge.refunded":
        confirmed = _webhook_payment(
            engine,
            metadata.get("booking_id"),
            -round((obj.get("amount_refunded") or 0) / 100, 2),
            "refund",
            obj.get("id"),
            f"Refund via payment provider (charge {obj.get('id')})",
        )
    else:
        logger.info("Ignoring webhook event type %s", kind)

    if confirmed is not None:
        await events.publish("booking.confirmed", events.booking_payload(confirmed))
    return {"received": True}


# ---------------------------------------------------------------------------
# Waitlist
# ---------------------------------------------------------------------------


class WaitlistCreate(BaseModel):
    customer_name: str = Field(min_length=1)
    customer_phone: str = Field(min_length=1)
    customer_email: str | None = None
    preferred_date: date
    boat_id: str | None = None
    passengers: int = Field(ge=1)
    notes: str | None = None
    priority: int = 0


class WaitlistPatch(BaseModel):
    customer_name: str | None = Field(default=None, min_length=1)
    customer_phone: str | None = Field(default=None, min_length=1)
    customer_email: str | None = None
    preferred_date: date | None = None
    boat_id: str | None = None
    passengers: int | None = Field(default=None, ge=1)
    notes: str | None = None
    priority: int | None = None
    status: WaitlistStatus | None = None


class WaitlistOut(WaitlistCreate):
    id: str
    status: str
    booking_id: str | None
    created_at: datetime


class WaitlistConvertRequest(BaseModel):
    boat_id: str | None = Field(default=None, description="Defaults to the entry's preferred boat")
    booking_date: date | None = Field(default=None, description="Defaults to the entry's preferred date")
    start_time: time
    end_time: time
    duration: DurationStr | None = None
    package_type: PackageType = "charter_only"
    total_price: float | None = Field(default=None, ge=0)
    deposit_amount: float = Field(default=0.0, ge=0)


def _waitlist_out(row: WaitlistEntry) -> WaitlistOut:
    return WaitlistOut(
        id=row.id,
        customer_name=row.customer_name,
        customer_phone=row.customer_phone,
        customer_email=row.customer_email,
        preferred_date=row.preferred_date,
        boat_id=row.boat_id,
        passengers=row.passengers,
        notes=row.notes,
        priority=row.priority,
        status=row.status,
        booking_id=row.booking_id,
        created_at=row.created_at,
    )


def _get_waitlist_entry(s, company_id: str, entry_id: str) -> WaitlistEntry:
    row = s.query(WaitlistEntry).filter(WaitlistEntry.company_id == company_id).filter(WaitlistEntry.id == entry_id).first()
    if row is None:
        raise HTTPException(status_code=404, detail="Waitlist entry not found")
    return row


@app.get("/waitlist", response_model=list[WaitlistOut])
def list_waitlist(
    status: WaitlistStatus | None = None,
    preferred_date: date | None = None,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*ALL_STAFF)),
):
    with session(engine) as s:
        q = s.query(WaitlistEntry).filter(WaitlistEntry.company_id == company_id)
        if status:
            q = q.filter(WaitlistEntry.status == status)
        if preferred_date:
            q = q.filter(WaitlistEntry.preferred_date == preferred_date)
        rows = q.order_by(WaitlistEntry.priority.desc(), WaitlistEntry.created_at.asc()).all()
    return [_waitlist_out(r) for r in rows]


@app.post("/waitlist", response_model=WaitlistOut)
def create_waitlist_entry(
    payload: WaitlistCreate,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*BOOKING_WRITERS)),
):
    row = WaitlistEntry(
        id=str(uuid4()),
        company_id=company_id,
        customer_name=payload.customer_name.strip(),
        customer_phone=payload.customer_phone.strip(),
        customer_email=payload.customer_email,
        preferred_date=payload.preferred_date,
        boat_id=payload.boat_id,
        passengers=payload.passengers,
        notes=payload.notes,
        status="active",
        priority=payload.priority,
        created_at=_now(),
    )
    with session(engine) as s:
        if payload.boat_id:
            _get_boat(s, company_id, payload.boat_id)
        s.add(row)
        s.commit()
    return _waitlist_out(row)


@app.patch("/waitlist/{entry_id}", response_model=WaitlistOut)
def patch_waitlist_entry(
    entry_id: str,
    payload: WaitlistPatch,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*BOOKING_WRITERS)),
):
    data = payload.model_dump(exclude_unset=True)
    with session(engine) as s:
        row = _get_waitlist_entry(s, company_id, entry_id)
        if data.get("boat_id"):
            _get_boat(s, company_id, data["boat_id"])
        for k, v in data.items():
            if v is None and k in ("customer_name", "customer_phone", "preferred_date", "passengers", "priority", "status"):
                continue
            setattr(row, k, v)
        s.add(row)
        s.commit()
    return _waitlist_out(row)


@app.delete("/waitlist/{entry_id}")
def delete_waitlist_entry(
    entry_id: str,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*BOOKING_WRITERS)),
):
    with session(engine) as s:
        row = _get_waitlist_entry(s, company_id, entry_id)
        s.delete(row)
        s.commit()
    return {"status": "ok"}


@app.post("/waitlist/{entry_id}/convert", response_model=BookingOut)
async def convert_waitlist_entry(
    entry_id: str,
    payload: WaitlistConvertRequest,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    principal=Depends(require_roles(*BOOKING_WRITERS)),
):
    with session(engine) as s:
        entry = _get_waitlist_entry(s, company_id, entry_id)
    if entry.status not in ("active", "contacted"):
        raise HTTPException(status_code=409, detail=f"Waitlist entry is {entry.status}")

    boat_id = payload.boat_id or entry.boat_id
    if not boat_id:
        raise HTTPException(status_code=400, detail="boat_id is required: the entry has no preferred boat")

    booking = await _place_booking(
        engine,
        company_id,
        principal,
        BookingCreate(
            boat_id=boat_id,
            booking_date=payload.booking_date or entry.preferred_date,
            start_time=payload.start_time,
            end_time=payload.end_time,
            duration=payload.duration,
            customer_name=entry.customer_name,
            customer_phone=entry.customer_phone,
            customer_email=entry.customer_email,
            passengers=entry.passengers,
            package_type=payload.package_type,
            total_price=payload.total_price,
            deposit_amount=payload.deposit_amount,
            source="waitlist",
            notes=entry.notes,
        ),
    )

    with session(engine) as s:
        row = _get_waitlist_entry(s, company_id, entry_id)
        row.status = "converted"
        row.booking_id = booking.id
        s.add(row)
        s.commit()

    await events.publish("booking.held", events.booking_payload(booking))
    return _booking_out(booking)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class NotificationSendRequest(BaseModel):
    notification_type: notifications.NotificationType
    channel: notifications.Channel = "email"
    subject: str = Field(min_length=1)
    message: str = Field(min_length=1)
    recipient_email: str | None = None
    recipient_phone: str | None = None
    recipient_name: str | None = None
    user_id: str | None = Field(default=None, description="Staff recipient; their preferences apply")
    booking_id: str | None = Field(default=None, description="Recipient fields default to the booking's customer")
    html: str | None = None


class NotificationOut(BaseModel):
    id: str
    notification_type: str
    channel: str
    subject: str
    message: str
    status: str
    recipient_email: str | None
    recipient_phone: str | None
    recipient_name: str | None
    user_id: str | None
    booking_id: str | None
    sent_at: datetime | None
    failed_at: datetime | None
    error_message: str | None
    external_id: str | None
    created_at: datetime


class PreferencesIn(BaseModel):
    email_booking_confirmations: bool = True
    sms_booking_confirmations: bool = False
    email_booking_reminders: bool = True
    sms_booking_reminders: bool = False
    email_booking_changes: bool = True
    email_payment_notifications: bool = True


class PreferencesOut(PreferencesIn):
    user_id: str
    updated_at: datetime | None = None


def _notification_out(row) -> NotificationOut:
    return NotificationOut(
        id=row.id,
        notification_type=row.notification_type,
        channel=row.channel,
        subject=row.subject,
        message=row.message,
        status=row.status,
        recipient_email=row.recipient_email,
        recipient_phone=row.recipient_phone,
        recipient_name=row.recipient_name,
        user_id=row.user_id,
        booking_id=row.booking_id,
        sent_at=row.sent_at,
        failed_at=row.failed_at,
        error_message=row.error_message,
        external_id=row.external_id,
        created_at=row.created_at,
    )


@app.get("/notifications", response_model=list[NotificationOut])
def list_notifications(
    booking_id: str | None = None,
    user_id: str | None = None,
    notification_type: str | None = None,
    status: str | None = None,
    limit: int = Query(default=notifications.DEFAULT_HISTORY_LIMIT, ge=1, le=500),
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*NOTIFICATION_SENDERS)),
):
    rows = notifications.notification_history(
        engine,
        company_id,
        booking_id=booking_id,
        user_id=user_id,
        notification_type=notification_type,
        status=status,
        limit=limit,
    )
    return [_notification_out(r) for r in rows]


@app.post("/notifications/send", response_model=NotificationOut)
def send_notification(
    payload: NotificationSendRequest,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*NOTIFICATION_SENDERS)),
):
    email, phone, name = payload.recipient_email, payload.recipient_phone, payload.recipient_name
    if payload.booking_id:
        with session(engine) as s:
            b = _load_booking(s, company_id, payload.booking_id)
        email = email or b.customer_email
        phone = phone or b.customer_phone
        name = name or b.customer_name

    if payload.user_id and payload.channel in ("email", "sms"):
        with session(engine) as s:
            prefs = (
                s.query(NotificationPreference)
                .filter(NotificationPreference.company_id == company_id)
                .filter(NotificationPreference.user_id == payload.user_id)
                .first()
            )
        email_on, sms_on = notifications.channels_enabled(prefs, payload.notification_type)
        if (payload.channel == "email" and not email_on) or (payload.channel == "sms" and not sms_on):
            raise HTTPException(status_code=409, detail=f"Recipient has {payload.channel} notifications of this type turned off")

    try:
        row = notifications.send_notification(
            engine,
            company_id,
            payload.notification_type,
            payload.channel,
            payload.subject,
            payload.message,
            recipient_email=email,
            recipient_phone=phone,
            recipient_name=name,
            user_id=payload.user_id,
            booking_id=payload.booking_id,
            html=payload.html,
        )
    except notifications.NotificationError as e:
        # No row id means the request itself was incomplete.
        raise HTTPException(status_code=502 if e.notification_id else 400, detail=str(e))
    return _notification_out(row)


@app.get("/notifications/preferences", response_model=PreferencesOut)
def get_preferences(
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    principal=Depends(require_roles(*ALL_STAFF)),
):
    user_id = principal.get("sub")
    with session(engine) as s:
        row = (
            s.query(NotificationPreference)
            .filter(NotificationPreference.company_id == company_id)
            .filter(NotificationPreference.user_id == user_id)
            .first()
        )
    if row is None:
        return PreferencesOut(user_id=user_id)
    return PreferencesOut(
        user_id=user_id,
        email_booking_confirmations=row.email_booking_confirmations,
        sms_booking_confirmations=row.sms_booking_confirmations,
        email_booking_reminders=row.email_booking_reminders,
        sms_booking_reminders=row.sms_booking_reminders,
        email_booking_changes=row.email_booking_changes,
        email_payment_notifications=row.email_payment_notifications,
        updated_at=row.updated_at,
    )


@app.put("/notifications/preferences", response_model=PreferencesOut)
def put_preferences(
    payload: PreferencesIn,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    principal=Depends(require_roles(*ALL_STAFF)),
):
    user_id = principal.get("sub")
    with session(engine) as s:
        row = (
            s.query(NotificationPreference)
            .filter(NotificationPreference.company_id == company_id)
            .filter(NotificationPreference.user_id == user_id)
            .first()
        )
        if row is None:
            row = NotificationPreference(id=str(uuid4()), company_id=company_id, user_id=user_id)
        for k, v in payload.model_dump().items():
            setattr(row, k, v)
        row.updated_at = _now()
        s.add(row)
        s.commit()
    return PreferencesOut(user_id=user_id, updated_at=row.updated_at, **payload.model_dump())


# ---------------------------------------------------------------------------
# Weather
# ---------------------------------------------------------------------------


@app.get("/weather/forecast")
async def weather_forecast(
    days: int = Query(default=7, ge=1, le=weather.MAX_FORECAST_DAYS),
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    _principal=Depends(require_roles(*ALL_STAFF)),
):
    lat, lon = _company_location(engine, company_id)
    latitude = lat if lat is not None else weather.DEFAULT_LATITUDE
    longitude = lon if lon is not None else weather.DEFAULT_LONGITUDE
    try:
        forecasts = await weather.fetch_marine_weather(latitude, longitude, days)
    except weather.WeatherServiceError as e:
        logger.error("Weather forecast failed (company_id=%s): %s", company_id, e)
        raise HTTPException(status_code=502, detail=str(e))

    return {
        "location": {"latitude": latitude, "longitude": longitude, "is_default": lat is None or lon is None},
        "forecasts": [asdict(f) for f in forecasts],
        "daily_summaries": weather.daily_summary(forecasts),
    }


@app.get("/weather/bookings/{booking_id}")
async def booking_weather(
    booking_id: str,
    company_id=Depends(get_company_id),
    engine=Depends(get_engine),
    principal=Depends(require_roles(*ALL_STAFF)),
):
    with session(engine) as s:
        b = _load_booking(s, company_id, booking_id, principal)
        boat = s.query(Boat).filter(Boat.id == b.boat_id).first()
    boat_type = boat.boat_type if boat else "motorboat"

    days_ahead = (b.booking_date - _now().date()).days
    if days_ahead < 0 or days_ahead >= weather.MAX_FORECAST_DAYS:
        raise HTTPException(status_code=404, detail="No weather data available for this date")

    lat, lon = _company_location(engine, company_id)
    try:
        forecasts = await weather.fetch_marine_weather(
            lat if lat is not None else weather.DEFAULT_LATITUDE,
            lon if lon is not None else weather.DEFAULT_LONGITUDE,
            days_ahead + 1,
        )
    except weather.WeatherServiceError as e:
        logger.error("Booking weather failed (booking_id=%s): %s", booking_id, e)
        raise HTTPException(status_code=502, detail=str(e))

    hours = weather.forecasts_for_slot(forecasts, b.booking_date, b.start_time, b.end_time)
    overall = weather.assess_slot(hours, boat_type)
    if overall is None:
        raise HTTPException(status_code=404, detail="No weather data available for this date")

    return {
        "booking_id": b.id,
        "booking_date": b.booking_date.isoformat(),
        "start_time": b.start_time.strftime("%H:%M"),
        "end_time": b.end_time.strftime("%H:%M"),
        "boat_type": boat_type,
        "suitability": asdict(overall),
        "hourly": [
            {
                **asdict(f),
                "wind_knots": round(weather.kmh_to_knots(f.wind_speed), 1),
                "wind_direction_label": weather.wind_direction(f.wind_direction),
                "weather_description": weather.weather_code_description(f.weather_code),
                "suitability": asdict(weather.assess_suitability(f, boat_type)),
            }
            for f in hours
        ],
    }
