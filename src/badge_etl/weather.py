"""badge_etl.weather

Historical weather cache fed from the Open-Meteo archive API (no API key).
Days are upserted by date, so re-syncing a range refreshes it in place.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from typing import Any

import requests

from badge_etl.models import WeatherDay
from badge_etl.normalize import parse_iso_date
from badge_etl.orchestrator import RetryPolicy
from badge_etl.seasons import get_active_season
from badge_etl.storage import Storage

log = logging.getLogger(__name__)

ARCHIVE_URL = "https://archive-api.open-meteo.com/v1/archive"
SOURCE = "open-meteo"
DAILY_FIELDS = "temperature_2m_max,temperature_2m_min,snowfall_sum,weathercode"

# WMO weather interpretation codes
WEATHER_CODES = {
    0: "Clear",
    1: "Mainly clear",
    2: "Partly cloudy",
    3: "Overcast",
    45: "Foggy",
    48: "Foggy",
    51: "Light drizzle",
    53: "Drizzle",
    55: "Heavy drizzle",
    61: "Light rain",
    63: "Rain",
    65: "Heavy rain",
    71: "Light snow",
    73: "Snow",
    75: "Heavy snow",
    77: "Snow grains",
    80: "Light showers",
    81: "Showers",
    82: "Heavy showers",
    85: "Light snow showers",
    86: "Snow showers",
    95: "Thunderstorm",
    96: "Thunderstorm with hail",
    99: "Thunderstorm with hail",
}


def weather_code_to_condition(code: Any) -> str:
    if code is None:
        return "Unknown"
    return WEATHER_CODES.get(int(code), "Unknown")


@dataclass
class WeatherLocation:
    latitude: float
    longitude: float
    timezone: str

    @classmethod
    def from_settings(cls, settings) -> "WeatherLocation":
        return cls(settings.weather_latitude, settings.weather_longitude, settings.timezone)


def parse_archive_response(payload: dict[str, Any]) -> list[WeatherDay]:
    """Convert an Open-Meteo ``daily`` block into WeatherDay records."""
    daily = payload.get("daily") or {}
    times = daily.get("time") or []
    highs = daily.get("temperature_2m_max") or [None] * len(times)
    lows = daily.get("temperature_2m_min") or [None] * len(times)
    snow = daily.get("snowfall_sum") or [None] * len(times)
    codes = daily.get("weathercode") or [None] * len(times)

    days = []
    for i, raw_date in enumerate(times):
        d = parse_iso_date(raw_date)
        if d is None:
            log.warning("Skipping weather row with bad date %r", raw_date)
            continue
        days.append(
            WeatherDay(
                weather_date=d,
                temp_high=highs[i],
                temp_low=lows[i],
                snowfall=snow[i] or 0.0,
                conditions=weather_code_to_condition(codes[i]),
                source=SOURCE,
            )
        )
    return days


def fetch_historical_weather(
    session: requests.Session,
    location: WeatherLocation,
    start: date,
    end: date,
    timeout: int = 30,
) -> list[WeatherDay]:
    resp = session.get(
        ARCHIVE_URL,
        params={
            "latitude": location.latitude,
            "longitude": location.longitude,
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
            "daily": DAILY_FIELDS,
            "temperature_unit": "fahrenheit",
            "precipitation_unit": "inch",
            "timezone": location.timezone,
        },
        timeout=timeout,
    )
    resp.raise_for_status()
    return parse_archive_response(resp.json())


def sync_weather(
    storage: Storage,
    session: requests.Session,
    location: WeatherLocation,
    start: date,
    end: date,
    policy: RetryPolicy | None = None,
) -> int:
    """Fetch [start, end] and upsert every day. Returns the number of days stored."""
    if end < start:
        raise ValueError(f"end {end} is before start {start}")
    policy = policy or RetryPolicy()
    days, _ = policy.run(
        lambda _attempt: fetch_historical_weather(session, location, start, end),
        label="Weather fetch",
    )
    for day in days:
        storage.upsert_weather_day(day)
    log.info("Stored %d weather days for %s..%s", len(days), start, end)
    return len(days)


def sync_weather_for_season(
    storage: Storage,
    session: requests.Session,
    location: WeatherLocation,
    today: date,
    policy: RetryPolicy | None = None,
) -> int:
    """Backfill weather from the active season's start through today."""
    season = get_active_season(storage)
    end = min(today, season.actual_end_date) if season.is_frozen else today
    return sync_weather(storage, session, location, season.start_date, end, policy)
