"""badge_etl.models

Typed records constructed once at the storage boundary and passed between
layers. Status values are plain strings matching the database CHECK
constraints in migrations/0001_core.sql.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime

# ---------------------------------------------------------------------------
# Status vocabularies
# ---------------------------------------------------------------------------

SEASON_ACTIVE = "active"
SEASON_COMPLETED = "completed"
SEASON_UPCOMING = "upcoming"
SEASON_STATUSES = (SEASON_ACTIVE, SEASON_COMPLETED, SEASON_UPCOMING)

LOG_PENDING = "pending"
LOG_SUCCESS = "success"
LOG_FAILED = "failed"
LOG_PARTIAL = "partial"
LOG_STATUSES = (LOG_PENDING, LOG_SUCCESS, LOG_FAILED, LOG_PARTIAL)

DEFAULT_ACCOUNT_TYPE = "three_rivers_parks"
DEFAULT_SEASON_GOAL = 50


# ---------------------------------------------------------------------------
# Persisted entities
# ---------------------------------------------------------------------------

@dataclass
class Season:
    id: int | None
    name: str
    start_date: date
    status: str = SEASON_ACTIVE
    estimated_end_date: date | None = None
    actual_end_date: date | None = None
    goal: int = DEFAULT_SEASON_GOAL

    @property
    def is_frozen(self) -> bool:
        return self.actual_end_date is not None


@dataclass
class Visit:
    id: int | None
    season_id: int
    visit_date: date
    visit_time: str | None = None
    label: str | None = None
    is_manual: bool = False
    notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def key(self) -> tuple[int, date, str | None, bool]:
        """De-duplication key enforced by the storage layer."""
        return (self.season_id, self.visit_date, self.visit_time, self.is_manual)


@dataclass
class WeatherDay:
    weather_date: date
    temp_high: float | None = None
    temp_low: float | None = None
    snowfall: float | None = None
    conditions: str | None = None
    source: str = "open-meteo"


@dataclass
class ScrapingLog:
    id: int | None
    credential_id: int
    status: str = LOG_PENDING
    visits_found: int = 0
    visits_added: int = 0
    error_message: str | None = None
    created_at: datetime | None = None


@dataclass
class Credential:
    id: int | None
    owner_id: int
    encrypted_username: str
    encrypted_password: str
    account_type: str = DEFAULT_ACCOUNT_TYPE
    is_active: bool = True
    last_synced_at: datetime | None = None


# ---------------------------------------------------------------------------
# Extractor output
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RawVisit:
    """One history-table row as scraped, date already in ISO form."""

    date: str
    time: str | None = None
    label: str | None = None


@dataclass
class SeasonInfo:
    name: str
    start_date: date
    label_year: int
