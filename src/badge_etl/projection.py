"""badge_etl.projection

Season projections and visit aggregates.

All functions are pure over their inputs except season_stats(), which reads
the active season and its visits from storage.
"""

from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Iterable

from badge_etl.models import Season, Visit, WeatherDay
from badge_etl.storage import Storage


# ---------------------------------------------------------------------------
# Projection scenario
# ---------------------------------------------------------------------------

@dataclass
class ProjectionScenario:
    conservative_total: int
    average_total: int
    optimistic_total: int
    remaining_days: int
    visit_rate: float
    custom_total: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def _days_until(end: date, today: date) -> int:
    return max(0, (end - today).days)


def project(
    current_total: int,
    days_elapsed: int,
    conservative_end: date,
    average_end: date,
    optimistic_end: date,
    today: date,
    custom_end: date | None = None,
) -> ProjectionScenario:
    """Linear-rate projection of the season total for each end-date scenario."""
    if current_total <= 0 or days_elapsed < 1:
        rate = 0.0
    else:
        rate = current_total / days_elapsed

    def total(end: date) -> int:
        return _round_half_up(current_total + rate * _days_until(end, today))

    average_remaining = _days_until(average_end, today)
    custom_total = None
    remaining = average_remaining
    if custom_end is not None:
        custom_total = total(custom_end)
        remaining = _days_until(custom_end, today)

    return ProjectionScenario(
        conservative_total=total(conservative_end),
        average_total=total(average_end),
        optimistic_total=total(optimistic_end),
        remaining_days=remaining,
        visit_rate=round(rate, 2),
        custom_total=custom_total,
    )


@dataclass(frozen=True)
class SeasonEndDates:
    conservative: date
    average: date
    optimistic: date


def estimate_season_end_dates(today: date) -> SeasonEndDates:
    """Typical closing dates for the hill: March 15, 20 and 26.

    Once today is past the latest of them the estimates move to next year.
    """
    year = today.year
    if today > date(year, 3, 26):
        year += 1
    return SeasonEndDates(
        conservative=date(year, 3, 15),
        average=date(year, 3, 20),
        optimistic=date(year, 3, 26),
    )


def days_elapsed(season_start: date, today: date) -> int:
    """Days since the season started, counting the start day itself."""
    return max(1, (today - season_start).days + 1)


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------

def week_start(d: date) -> date:
    """The Sunday on or before ``d``."""
    # date.weekday(): Monday=0 … Sunday=6
    return d - timedelta(days=(d.weekday() + 1) % 7)


def weekly_counts(dates: Iterable[date]) -> dict[date, int]:
    """Visit count per week (keyed by the week's Sunday), ascending, no empty weeks."""
    counts = Counter(week_start(d) for d in dates)
    return dict(sorted(counts.items()))


def daily_counts(dates: Iterable[date]) -> dict[date, int]:
    """Visit count per calendar day, ascending, no empty days."""
    return dict(sorted(Counter(dates).items()))


# ---------------------------------------------------------------------------
# Season summary
# ---------------------------------------------------------------------------

@dataclass
class SeasonStats:
    season: Season
    total_visits: int
    manual_visits: int
    days_elapsed: int
    visit_rate: float
    visit_rate_per_week: float
    projections: ProjectionScenario
    end_dates: SeasonEndDates
    goal: int
    goal_remaining: int
    goal_pct: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "season": {
                "id": self.season.id,
                "name": self.season.name,
                "start_date": self.season.start_date.isoformat(),
                "status": self.season.status,
            },
            "total_visits": self.total_visits,
            "manual_visits": self.manual_visits,
            "days_elapsed": self.days_elapsed,
            "visit_rate": self.visit_rate,
            "visit_rate_per_week": self.visit_rate_per_week,
            "projections": self.projections.to_dict(),
            "end_dates": {
                "conservative": self.end_dates.conservative.isoformat(),
                "average": self.end_dates.average.isoformat(),
                "optimistic": self.end_dates.optimistic.isoformat(),
            },
            "goal": self.goal,
            "goal_remaining": self.goal_remaining,
            "goal_pct": self.goal_pct,
        }


def season_stats(
    storage: Storage,
    today: date,
    custom_end: date | None = None,
) -> SeasonStats | None:
    """Dashboard summary for the active season, or None if there is none."""
    season = storage.get_active_season()
    if season is None:
        return None
    return stats_for_season(storage, season, today, custom_end)


def stats_for_season(
    storage: Storage,
    season: Season,
    today: date,
    custom_end: date | None = None,
) -> SeasonStats:
    """Summary for one season.

    A season with an actual end date is frozen there: days elapsed stop
    counting and every scenario ends on that date.
    """
    visits = storage.list_visits(season_id=season.id)
    as_of = min(today, season.actual_end_date) if season.is_frozen else today
    elapsed = days_elapsed(season.start_date, as_of)
    if season.is_frozen:
        end = season.actual_end_date
        ends = SeasonEndDates(conservative=end, average=end, optimistic=end)
    else:
        ends = estimate_season_end_dates(as_of)
    scenario = project(
        len(visits), elapsed, ends.conservative, ends.average, ends.optimistic,
        as_of, custom_end,
    )
    goal_remaining = max(0, season.goal - len(visits))
    goal_pct = round(100.0 * len(visits) / season.goal, 1) if season.goal > 0 else 0.0
    return SeasonStats(
        season=season,
        total_visits=len(visits),
        manual_visits=sum(1 for v in visits if v.is_manual),
        days_elapsed=elapsed,
        visit_rate=scenario.visit_rate,
        visit_rate_per_week=round(scenario.visit_rate * 7, 2),
        projections=scenario,
        end_dates=ends,
        goal=season.goal,
        goal_remaining=goal_remaining,
        goal_pct=goal_pct,
    )


def season_breakdown(storage: Storage, season: Season, today: date) -> dict[str, Any]:
    """Weekly and daily visit counts plus the temperature profile of a season.

    Weather is read from the cache only; days never synced simply do not
    count toward the temperature ranges.
    """
    visits = storage.list_visits(season_id=season.id)
    end = min(today, season.actual_end_date) if season.is_frozen else today
    weather = storage.weather_range(season.start_date, end)
    dates = [v.visit_date for v in visits]
    return {
        "weekly": {d.isoformat(): n for d, n in weekly_counts(dates).items()},
        "daily": {d.isoformat(): n for d, n in daily_counts(dates).items()},
        "temperature": temperature_analysis(visits, weather),
    }


# ---------------------------------------------------------------------------
# Temperature analysis
# ---------------------------------------------------------------------------

TEMPERATURE_RANGES = ("0-10°F", "10-20°F", "20-30°F", "30-40°F", "40+°F")


def temperature_range(avg_temp: float) -> str:
    if avg_temp < 10:
        return TEMPERATURE_RANGES[0]
    if avg_temp < 20:
        return TEMPERATURE_RANGES[1]
    if avg_temp < 30:
        return TEMPERATURE_RANGES[2]
    if avg_temp < 40:
        return TEMPERATURE_RANGES[3]
    return TEMPERATURE_RANGES[4]


@dataclass
class TemperatureBucket:
    range: str
    count: int = 0
    temps: list[float] = field(default_factory=list)
    snowfall: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        avg = _round_half_up(sum(self.temps) / len(self.temps)) if self.temps else 0
        return {
            "range": self.range,
            "count": self.count,
            "avg_temp": avg,
            "total_snowfall": round(self.snowfall, 1),
        }


def temperature_analysis(
    visits: Iterable[Visit],
    weather_days: Iterable[WeatherDay],
) -> dict[str, Any]:
    """Group visit days by average temperature and pick the most frequent range.

    Visits on days with no cached weather, or without both a high and a low,
    are counted in total_visits only. Ties for the sweet spot go to the
    coldest range.
    """
    weather = {w.weather_date: w for w in weather_days}
    buckets = {name: TemperatureBucket(name) for name in TEMPERATURE_RANGES}
    total = 0
    for v in visits:
        total += 1
        w = weather.get(v.visit_date)
        if w is None or w.temp_high is None or w.temp_low is None:
            continue
        avg = (w.temp_high + w.temp_low) / 2
        bucket = buckets[temperature_range(avg)]
        bucket.count += 1
        bucket.temps.append(avg)
        bucket.snowfall += w.snowfall or 0.0

    ranges = [buckets[name].to_dict() for name in TEMPERATURE_RANGES]
    sweet_spot = ranges[0]
    for r in ranges[1:]:
        if r["count"] > sweet_spot["count"]:
            sweet_spot = r
    return {
        "ranges": ranges,
        "sweet_spot": sweet_spot["range"],
        "total_visits": total,
        "with_weather_data": sum(r["count"] for r in ranges),
    }
