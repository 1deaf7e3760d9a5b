"""badge_etl.maintenance

Out-of-band admin operations on seasons and visits. None of these run as
part of ingestion; they are invoked from the CLI by an operator.

  merge_seasons    move every visit of a source season into a target season,
                   dropping moved rows whose key already exists there, then
                   delete the source season
  purge_before     delete a season's visits dated before a cutoff
  complete_season  mark a season completed with an actual end date
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any

from badge_etl.errors import DuplicateVisitError, NotFoundError
from badge_etl.models import SEASON_COMPLETED, Season
from badge_etl.storage import Storage

log = logging.getLogger(__name__)


@dataclass
class MaintenanceCounters:
    visits_examined: int = 0
    visits_moved: int = 0
    visits_deleted: int = 0
    seasons_deleted: int = 0

    def to_dict(self) -> dict[str, Any]:
        return dict(self.__dict__)


def _require_season(storage: Storage, season_id: int) -> Season:
    season = storage.get_season(season_id)
    if season is None:
        raise NotFoundError(f"season {season_id} not found")
    return season


def merge_seasons(
    storage: Storage,
    source_season_id: int,
    target_season_id: int,
    dry_run: bool = False,
) -> MaintenanceCounters:
    if source_season_id == target_season_id:
        raise ValueError("source and target season must differ")
    source = _require_season(storage, source_season_id)
    target = _require_season(storage, target_season_id)
    counters = MaintenanceCounters()

    existing_keys = {
        (v.visit_date, v.visit_time, v.is_manual)
        for v in storage.list_visits(season_id=target_season_id)
    }
    for visit in storage.list_visits(season_id=source_season_id):
        counters.visits_examined += 1
        collides = (visit.visit_date, visit.visit_time, visit.is_manual) in existing_keys
        if dry_run:
            if collides:
                counters.visits_deleted += 1
            else:
                counters.visits_moved += 1
            continue
        try:
            storage.reassign_visit(visit.id, target_season_id)  # type: ignore[arg-type]
            counters.visits_moved += 1
        except DuplicateVisitError:
            log.info(
                "Visit %s (%s) already present in %r; deleting",
                visit.id, visit.visit_date, target.name,
            )
            storage.delete_visit(visit.id)  # type: ignore[arg-type]
            counters.visits_deleted += 1

    if not dry_run:
        storage.delete_season(source_season_id)
        counters.seasons_deleted += 1
    log.info(
        "Merged %r into %r: moved=%d deleted=%d",
        source.name, target.name, counters.visits_moved, counters.visits_deleted,
    )
    return counters


def purge_before(
    storage: Storage,
    season_id: int,
    cutoff: date,
    dry_run: bool = False,
) -> MaintenanceCounters:
    _require_season(storage, season_id)
    counters = MaintenanceCounters()
    doomed = storage.list_visits(season_id=season_id, end=cutoff - timedelta(days=1))
    counters.visits_examined = len(doomed)
    for v in doomed:
        log.info(
            "  %s %s %s (manual=%s)", v.visit_date, v.visit_time or "", v.label or "", v.is_manual
        )
    if dry_run:
        counters.visits_deleted = len(doomed)
    else:
        counters.visits_deleted = storage.delete_visits_before(season_id, cutoff)
    return counters


def complete_season(
    storage: Storage,
    season_id: int,
    actual_end_date: date,
) -> Season:
    season = _require_season(storage, season_id)
    if actual_end_date < season.start_date:
        raise ValueError(
            f"end date {actual_end_date} is before season start {season.start_date}"
        )
    storage.update_season_status(season_id, SEASON_COMPLETED, actual_end_date)
    log.info("Season %r completed on %s", season.name, actual_end_date)
    return _require_season(storage, season_id)
