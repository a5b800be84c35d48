from __future__ import annotations

import re
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Literal

PackageType = Literal["charter_only", "charter_drinks", "charter_food", "charter_full"]

PACKAGE_TYPES: tuple[str, ...] = ("charter_only", "charter_drinks", "charter_food", "charter_full")

_DURATION_RE = re.compile(r"(\d+)h")


@dataclass(frozen=True)
class FuelConfig:
    consumption_rate: float  # liters per hour
    price_per_liter: float


@dataclass(frozen=True)
class PackageConfig:
    drinks_cost_per_person: float = 0.0
    food_cost_per_person: float = 0.0


@dataclass(frozen=True)
class BookingCosts:
    fuel_cost: float
    package_addon_cost: float


def _round2(value: Decimal) -> float:
    return float(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def duration_hours(duration: str | None) -> int:
    """'4h' -> 4. Anything else is 0 hours."""
    m = _DURATION_RE.search(duration or "")
    return int(m.group(1)) if m else 0


def fuel_cost(consumption_rate: float, hours: float, price_per_liter: float) -> float:
    return _round2(Decimal(str(consumption_rate)) * Decimal(str(hours)) * Decimal(str(price_per_liter)))


def package_addon_cost(package_type: str | None, passengers: int, drinks: float = 0.0, food: float = 0.0) -> float:
    if package_type == "charter_drinks":
        per_person = Decimal(str(drinks or 0))
    elif package_type == "charter_food":
        per_person = Decimal(str(food or 0))
    elif package_type == "charter_full":
        per_person = Decimal(str(drinks or 0)) + Decimal(str(food or 0))
    else:
        # charter_only, unknown or missing package
        return 0.0
    return _round2(per_person * int(passengers))


def booking_costs(
    fuel: FuelConfig | None,
    package: PackageConfig | None,
    duration: str,
    package_type: str | None,
    passengers: int,
) -> BookingCosts:
    """Both costs for one booking; missing configuration costs nothing."""
    fc = 0.0
    if fuel is not None:
        fc = fuel_cost(fuel.consumption_rate, duration_hours(duration), fuel.price_per_liter)

    pc = 0.0
    if package is not None:
        pc = package_addon_cost(package_type, passengers, package.drinks_cost_per_person, package.food_cost_per_person)

    return BookingCosts(fuel_cost=fc, package_addon_cost=pc)
