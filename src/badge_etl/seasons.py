"""badge_etl.seasons

Season boundary computation and lookup-or-create.

A season runs from the boundary day (July 1 by default) to the day before the
next boundary and is named "{y}/{y+1} Season" after the year it starts in.
Seasons are looked up by name only: a completed season is still returned so
late-arriving visits land in the season they belong to.
"""

from __future__ import annotations

import logging
from datetime import date

from badge_etl.errors import ConfigurationError
from badge_etl.models import SEASON_ACTIVE, Season, SeasonInfo
from badge_etl.storage import Storage

log = logging.getLogger(__name__)

DEFAULT_BOUNDARY_MONTH = 7
DEFAULT_BOUNDARY_DAY = 1


def season_info_for_date(
    d: date,
    boundary_month: int = DEFAULT_BOUNDARY_MONTH,
    boundary_day: int = DEFAULT_BOUNDARY_DAY,
) -> SeasonInfo:
    """Return the name and start date of the season containing ``d``."""
    if (d.month, d.day) >= (boundary_month, boundary_day):
        label_year = d.year
    else:
        label_year = d.year - 1
    return SeasonInfo(
        name=f"{label_year}/{label_year + 1} Season",
        start_date=date(label_year, boundary_month, boundary_day),
        label_year=label_year,
    )


def resolve_season_id(
    storage: Storage,
    d: date,
    boundary_month: int = DEFAULT_BOUNDARY_MONTH,
    boundary_day: int = DEFAULT_BOUNDARY_DAY,
) -> int:
    """Return the id of the season containing ``d``, creating it if absent."""
    info = season_info_for_date(d, boundary_month, boundary_day)
    existing = storage.find_season_by_name(info.name)
    if existing is not None:
        return existing.id  # type: ignore[return-value]
    season_id = storage.insert_season(
        Season(id=None, name=info.name, start_date=info.start_date, status=SEASON_ACTIVE)
    )
    log.info("Created season %r (id=%s) starting %s", info.name, season_id, info.start_date)
    return season_id


class SeasonResolver:
    """Per-run cache in front of resolve_season_id.

    A batch of visits mostly falls in one season; the cache keeps routing to
    one storage lookup per season name rather than one per record.
    """

    def __init__(
        self,
        storage: Storage,
        boundary_month: int = DEFAULT_BOUNDARY_MONTH,
        boundary_day: int = DEFAULT_BOUNDARY_DAY,
    ) -> None:
        self._storage = storage
        self.boundary_month = boundary_month
        self.boundary_day = boundary_day
        self._cache: dict[str, int] = {}

    def resolve(self, d: date) -> int:
        info = season_info_for_date(d, self.boundary_month, self.boundary_day)
        cached = self._cache.get(info.name)
        if cached is not None:
            return cached
        season_id = resolve_season_id(
            self._storage, d, self.boundary_month, self.boundary_day
        )
        self._cache[info.name] = season_id
        return season_id


def get_active_season(storage: Storage) -> Season:
    """Return the active season or raise ConfigurationError."""
    season = storage.get_active_season()
    if season is None:
        raise ConfigurationError("no active season found")
    return season
