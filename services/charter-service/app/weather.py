"""
Marine weather from Open-Meteo and a boating-safety assessment.

Two public endpoints are combined: the marine API for wave height and the
forecast API for wind, temperature, precipitation and WMO weather codes.
Both return hourly series in the location's local time.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import date, time
from typing import Any

import httpx

MARINE_API_URL = os.getenv("MARINE_API_URL", "https://marine-api.open-meteo.com/v1/marine")
FORECAST_API_URL = os.getenv("FORECAST_API_URL", "https://api.open-meteo.com/v1/forecast")

DEFAULT_LATITUDE = 41.3851
DEFAULT_LONGITUDE = 2.1734
MAX_FORECAST_DAYS = 16

KMH_PER_KNOT = 1.852

DAYTIME_START_HOUR = 8
DAYTIME_END_HOUR = 18

# (caution, dangerous) wave heights in meters
WAVE_THRESHOLDS: dict[str, tuple[float, float]] = {
    "sailboat": (2.0, 2.0),
    "motorboat": (2.0, 2.0),
    "jetski": (1.0, 1.0),
}

THUNDERSTORM_CODES = frozenset({95, 96, 99})
HEAVY_RAIN_CODES = frozenset({61, 63, 65, 80, 81, 82})

WEATHER_CODES: dict[int, str] = {
    0: "Clear sky",
    1: "Mainly clear",
    2: "Partly cloudy",
    3: "Overcast",
    45: "Foggy",
    48: "Depositing rime fog",
    51: "Light drizzle",
    53: "Moderate drizzle",
    55: "Dense drizzle",
    61: "Slight rain",
    63: "Moderate rain",
    65: "Heavy rain",
    71: "Slight snow",
    73: "Moderate snow",
    75: "Heavy snow",
    77: "Snow grains",
    80: "Slight rain showers",
    81: "Moderate rain showers",
    82: "Violent rain showers",
    85: "Slight snow showers",
    86: "Heavy snow showers",
    95: "Thunderstorm",
    96: "Thunderstorm with slight hail",
    99: "Thunderstorm with heavy hail",
}

COMPASS_POINTS = (
    "N", "NNE", "NE", "ENE", "E", "ESE", "SE", "SSE",
    "S", "SSW", "SW", "WSW", "W", "WNW", "NW", "NNW",
)

logger = logging.getLogger(__name__)


class WeatherServiceError(Exception):
    pass


@dataclass(frozen=True)
class WeatherForecast:
    date: str  # YYYY-MM-DD, local to the location
    time: str  # HH:MM
    wave_height: float  # m
    wind_speed: float  # km/h
    wind_direction: float  # degrees
    temperature: float  # °C
    precipitation_probability: float  # %
    weather_code: int

    @property
    def hour(self) -> int:
        return int(self.time.split(":")[0])


@dataclass(frozen=True)
class WeatherSuitability:
    is_safe: bool
    safety_score: int
    warning_level: str  # green|yellow|red
    warning_message: str
    reasons: list[str] = field(default_factory=list)


def kmh_to_knots(kmh: float) -> float:
    return kmh / KMH_PER_KNOT


def wind_direction(degrees: float) -> str:
    return COMPASS_POINTS[round(degrees / 22.5) % 16]


def weather_code_description(code: int) -> str:
    return WEATHER_CODES.get(code, "Unknown")


def _series(data: dict, name: str) -> list:
    return (data.get("hourly") or {}).get(name) or []


def _at(values: list, i: int) -> Any:
    # Open-Meteo pads missing hours with null; they read as 0.
    if i < len(values) and values[i] is not None:
        return values[i]
    return 0


def merge_hourly(marine: dict, forecast: dict) -> list[WeatherForecast]:
    """Join the two APIs' hourly series by index, the forecast API's clock being authoritative."""
    times = _series(forecast, "time")
    waves = _series(marine, "wave_height")
    temps = _series(forecast, "temperature_2m")
    winds = _series(forecast, "wind_speed_10m")
    dirs = _series(forecast, "wind_direction_10m")
    precip = _series(forecast, "precipitation_probability")
    codes = _series(forecast, "weather_code")

    out: list[WeatherForecast] = []
    for i, stamp in enumerate(times):
        day, _, clock = stamp.partition("T")
        out.append(
            WeatherForecast(
                date=day,
                time=clock[:5] or "00:00",
                wave_height=float(_at(waves, i)),
                wind_speed=float(_at(winds, i)),
                wind_direction=float(_at(dirs, i)),
                temperature=float(_at(temps, i)),
                precipitation_probability=float(_at(precip, i)),
                weather_code=int(_at(codes, i)),
            )
        )
    return out


async def _get_json(client: httpx.AsyncClient, url: str, params: dict[str, str]) -> dict:
    try:
        r = await client.get(url, params=params)
    except httpx.HTTPError as e:
        raise WeatherServiceError(f"Weather API unreachable: {e}") from e
    if r.status_code >= 400:
        raise WeatherServiceError(f"Weather API error ({url}): HTTP {r.status_code}")
    return r.json()


async def fetch_marine_weather(
    latitude: float = DEFAULT_LATITUDE,
    longitude: float = DEFAULT_LONGITUDE,
    days: int = 7,
) -> list[WeatherForecast]:
    if not 1 <= days <= MAX_FORECAST_DAYS:
        raise ValueError(f"days must be between 1 and {MAX_FORECAST_DAYS}")

    common = {
        "latitude": str(latitude),
        "longitude": str(longitude),
        "forecast_days": str(days),
        "timezone": "auto",
    }
    marine_params = {**common, "hourly": "wave_height"}
    forecast_params = {
        **common,
        "hourly": ",".join(
            [
                "temperature_2m",
                "wind_speed_10m",
                "wind_direction_10m",
                "precipitation_probability",
                "weather_code",
            ]
        ),
    }

    async with httpx.AsyncClient(timeout=10.0, trust_env=False) as client:
        marine, forecast = await asyncio.gather(
            _get_json(client, MARINE_API_URL, marine_params),
            _get_json(client, FORECAST_API_URL, forecast_params),
        )

    forecasts = merge_hourly(marine, forecast)
    logger.info("Fetched %d hourly forecasts for (%s, %s)", len(forecasts), latitude, longitude)
    return forecasts


def assess_suitability(forecast: WeatherForecast, boat_type: str = "motorboat") -> WeatherSuitability:
    """
    Score one hour of weather for a boat type, starting from 100.

    Deductions stack across waves, wind, rain probability and the weather
    code. 70+ is green, 40+ yellow; anything lower is red and not safe.
    """
    reasons: list[str] = []
    score = 100

    caution, dangerous = WAVE_THRESHOLDS.get(boat_type, WAVE_THRESHOLDS["motorboat"])
    if forecast.wave_height > dangerous:
        score -= 50
        reasons.append(f"High waves: {forecast.wave_height:.1f}m")
    elif forecast.wave_height >= caution:
        score -= 25
        reasons.append(f"Moderate waves: {forecast.wave_height:.1f}m")

    knots = kmh_to_knots(forecast.wind_speed)
    if knots >= 19:
        score -= 40
        reasons.append(f"Strong winds: {knots:.1f} knots ({forecast.wind_speed:.0f} km/h)")
    elif knots >= 13.5:
        score -= 20
        reasons.append(f"Moderate winds: {knots:.1f} knots ({forecast.wind_speed:.0f} km/h)")

    if forecast.precipitation_probability >= 70:
        score -= 15
        reasons.append(f"High rain probability: {forecast.precipitation_probability:.0f}%")
    elif forecast.precipitation_probability >= 50:
        score -= 10
        reasons.append(f"Possible rain: {forecast.precipitation_probability:.0f}%")

    if forecast.weather_code in THUNDERSTORM_CODES:
        score -= 30
        reasons.append("Thunderstorm forecast")
    elif forecast.weather_code in HEAVY_RAIN_CODES:
        score -= 15
        reasons.append("Poor weather conditions")

    if score >= 70:
        level, message, safe = "green", "Good conditions for boating", True
    elif score >= 40:
        level, message, safe = "yellow", "Caution advised - monitor conditions", True
    else:
        level, message, safe = "red", "Not recommended for boating", False

    return WeatherSuitability(
        is_safe=safe,
        safety_score=max(0, score),
        warning_level=level,
        warning_message=message,
        reasons=reasons,
    )


def daily_summary(forecasts: list[WeatherForecast]) -> list[dict[str, Any]]:
    """Per-day aggregates over daytime hours (08-18), falling back to the full day."""
    by_day: dict[str, list[WeatherForecast]] = {}
    for f in forecasts:
        by_day.setdefault(f.date, []).append(f)

    out: list[dict[str, Any]] = []
    for day, hours in by_day.items():
        daytime = [h for h in hours if DAYTIME_START_HOUR <= h.hour <= DAYTIME_END_HOUR]
        rows = daytime or hours
        n = len(rows)
        code = Counter(h.weather_code for h in rows).most_common(1)[0][0]
        out.append(
            {
                "date": day,
                "avg_wave_height": sum(h.wave_height for h in rows) / n,
                "max_wave_height": max(h.wave_height for h in rows),
                "avg_wind_speed": sum(h.wind_speed for h in rows) / n,
                "max_wind_speed": max(h.wind_speed for h in rows),
                "avg_temperature": sum(h.temperature for h in rows) / n,
                "max_precipitation_probability": max(h.precipitation_probability for h in rows),
                "weather_code": code,
                "weather_description": weather_code_description(code),
                "hourly_forecasts": [asdict(h) for h in hours],
            }
        )
    return out


def forecasts_for_slot(
    forecasts: list[WeatherForecast], booking_date: date, start_time: time, end_time: time
) -> list[WeatherForecast]:
    """Hours of `booking_date` covering [start_time, end_time); the hour nearest the start if none fall inside."""
    day = [f for f in forecasts if f.date == booking_date.isoformat()]
    if not day:
        return []
    inside = [f for f in day if start_time.hour <= f.hour < max(end_time.hour, start_time.hour + 1)]
    if inside:
        return inside
    return [min(day, key=lambda f: abs(f.hour - start_time.hour))]


def assess_slot(forecasts: list[WeatherForecast], boat_type: str) -> WeatherSuitability | None:
    """Worst hour of a booking slot decides its assessment."""
    if not forecasts:
        return None
    return min((assess_suitability(f, boat_type) for f in forecasts), key=lambda a: a.safety_score)
