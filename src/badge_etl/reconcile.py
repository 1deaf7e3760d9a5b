"""badge_etl.reconcile

Ingestion reconciler: route each scraped visit to its season and persist it
if its key is not already stored.

Re-running over the same input is a no-op for storage: every record after the
first run lands in ``duplicates``. ``added`` counts only rows storage
confirmed as newly created.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from badge_etl.models import RawVisit, Visit
from badge_etl.normalize import parse_iso_date
from badge_etl.seasons import SeasonResolver
from badge_etl.storage import Storage

log = logging.getLogger(__name__)


@dataclass
class ReconcileCounters:
    found: int = 0
    added: int = 0
    duplicates: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


def reconcile(
    storage: Storage,
    raw_visits: Iterable[RawVisit],
    resolver: SeasonResolver,
) -> ReconcileCounters:
    """Persist automated visits, one season lookup per distinct season."""
    counters = ReconcileCounters()
    for raw in raw_visits:
        counters.found += 1
        visit_date = parse_iso_date(raw.date)
        if visit_date is None:
            counters.warnings.append(f"skipped visit with invalid date {raw.date!r}")
            continue

        season_id = resolver.resolve(visit_date)
        new_id = storage.insert_visit_if_absent(
            Visit(
                id=None,
                season_id=season_id,
                visit_date=visit_date,
                visit_time=raw.time,
                label=raw.label,
                is_manual=False,
            )
        )
        if new_id is None:
            counters.duplicates += 1
        else:
            counters.added += 1

    log.info(
        "Reconciled %d visits: %d added, %d already stored",
        counters.found, counters.added, counters.duplicates,
    )
    return counters
