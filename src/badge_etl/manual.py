"""badge_etl.manual

User-entered visits. These share the visit table with scraped rows but carry
``is_manual=True``; scraped rows are never editable from here.
"""

from __future__ import annotations

import logging
from datetime import date

from badge_etl.errors import NotFoundError, VisitLockedError
from badge_etl.models import Visit
from badge_etl.normalize import normalize_space, normalize_time
from badge_etl.seasons import get_active_season
from badge_etl.storage import Storage

log = logging.getLogger(__name__)

_UNSET = object()


def add_manual_visit(
    storage: Storage,
    visit_date: date,
    visit_time: str | None = None,
    notes: str | None = None,
) -> int | None:
    """Record a manual visit in the active season.

    Returns the new visit id, or None when the same manual visit (date and
    time) is already recorded.
    """
    season = get_active_season(storage)
    new_id = storage.insert_visit_if_absent(
        Visit(
            id=None,
            season_id=season.id,  # type: ignore[arg-type]
            visit_date=visit_date,
            visit_time=normalize_time(visit_time),
            is_manual=True,
            notes=normalize_space(notes),
        )
    )
    if new_id is None:
        log.info("Manual visit on %s %s already recorded", visit_date, visit_time or "")
    return new_id


def list_manual_visits(storage: Storage, season_id: int | None = None) -> list[Visit]:
    """Manual visits for a season (the active season by default), oldest first."""
    if season_id is None:
        season_id = get_active_season(storage).id
    return storage.list_visits(season_id=season_id, manual=True)


def _manual_visit(storage: Storage, visit_id: int) -> Visit:
    visit = storage.get_visit(visit_id)
    if visit is None:
        raise NotFoundError(f"visit {visit_id} not found")
    if not visit.is_manual:
        raise VisitLockedError(f"visit {visit_id} was imported from the portal and cannot be changed")
    return visit


def update_manual_visit(
    storage: Storage,
    visit_id: int,
    visit_time=_UNSET,
    notes=_UNSET,
) -> Visit:
    """Change the time and/or notes of a manual visit.

    Pass None to clear a field; omit it to leave it unchanged. A time change
    that collides with another manual visit on the same day raises
    DuplicateVisitError.
    """
    _manual_visit(storage, visit_id)
    changes = {}
    if visit_time is not _UNSET:
        changes["visit_time"] = normalize_time(visit_time)
    if notes is not _UNSET:
        changes["notes"] = normalize_space(notes)
    if changes:
        storage.update_visit(visit_id, **changes)
    return storage.get_visit(visit_id)  # type: ignore[return-value]


def delete_manual_visit(storage: Storage, visit_id: int) -> None:
    _manual_visit(storage, visit_id)
    storage.delete_visit(visit_id)
    log.info("Deleted manual visit %s", visit_id)
