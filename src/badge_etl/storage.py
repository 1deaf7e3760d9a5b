"""badge_etl.storage

Persistence boundary. The pipeline only talks to the ``Storage`` protocol;
two implementations exist:

  - PostgresStorage: psycopg connection in autocommit mode. Every write is a
    single-row statement, so a crash mid-batch leaves the rows written so far
    and a re-run is idempotent per visit key.
  - MemoryStorage: dict-backed, used when no DSN is configured and in
    unit tests. Enforces the same uniqueness rules as the SQL schema.

``open_storage(settings)`` picks one at process start. The handle is passed
explicitly into the orchestrator and closed by whoever opened it.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Any, Protocol

import psycopg

from badge_etl.config import Settings
from badge_etl.errors import DuplicateVisitError
from badge_etl.models import (
    DEFAULT_ACCOUNT_TYPE,
    LOG_STATUSES,
    SEASON_ACTIVE,
    SEASON_STATUSES,
    Credential,
    ScrapingLog,
    Season,
    Visit,
    WeatherDay,
)

log = logging.getLogger(__name__)

_LOG_PATCH_FIELDS = {"status", "visits_found", "visits_added", "error_message"}
_VISIT_PATCH_FIELDS = {"visit_time", "label", "notes"}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------

class Storage(Protocol):
    # Credentials
    def get_credential(self, credential_id: int) -> Credential | None: ...
    def get_credential_for_owner(
        self, owner_id: int, account_type: str = DEFAULT_ACCOUNT_TYPE
    ) -> Credential | None: ...
    def save_credential(self, credential: Credential) -> int: ...
    def update_credential_sync_time(self, credential_id: int, ts: datetime) -> None: ...

    # Seasons
    def find_season_by_name(self, name: str) -> Season | None: ...
    def get_season(self, season_id: int) -> Season | None: ...
    def get_active_season(self) -> Season | None: ...
    def list_seasons(self) -> list[Season]: ...
    def insert_season(self, season: Season) -> int: ...
    def update_season_status(
        self, season_id: int, status: str, actual_end_date: date | None = None
    ) -> None: ...
    def delete_season(self, season_id: int) -> None: ...

    # Visits
    def insert_visit_if_absent(self, visit: Visit) -> int | None: ...
    def get_visit(self, visit_id: int) -> Visit | None: ...
    def list_visits(
        self,
        season_id: int | None = None,
        start: date | None = None,
        end: date | None = None,
        manual: bool | None = None,
    ) -> list[Visit]: ...
    def update_visit(self, visit_id: int, **changes: Any) -> None: ...
    def reassign_visit(self, visit_id: int, season_id: int) -> None: ...
    def delete_visit(self, visit_id: int) -> bool: ...
    def delete_visits_before(self, season_id: int, cutoff: date) -> int: ...

    # Scraping audit log
    def insert_scraping_log(self, entry: ScrapingLog) -> int: ...
    def update_scraping_log(self, log_id: int, **patch: Any) -> None: ...
    def get_scraping_log(self, log_id: int) -> ScrapingLog | None: ...
    def list_scraping_logs(self, credential_id: int, limit: int = 50) -> list[ScrapingLog]: ...

    # Weather cache
    def upsert_weather_day(self, day: WeatherDay) -> None: ...
    def weather_range(self, start: date, end: date) -> list[WeatherDay]: ...

    def close(self) -> None: ...


def _check_patch(patch: dict[str, Any], allowed: set[str], what: str) -> None:
    unknown = set(patch) - allowed
    if unknown:
        raise ValueError(f"cannot update {what} fields: {sorted(unknown)}")


def _visit_sort_key(v: Visit) -> tuple[date, str, int]:
    return (v.visit_date, v.visit_time or "", v.id or 0)


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class MemoryStorage:
    """Dict-backed storage with the same key constraints as the SQL schema."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._credentials: dict[int, Credential] = {}
        self._seasons: dict[int, Season] = {}
        self._visits: dict[int, Visit] = {}
        self._logs: dict[int, ScrapingLog] = {}
        self._weather: dict[date, WeatherDay] = {}
        self._next_id = {"credential": 1, "season": 1, "visit": 1, "log": 1}

    def _allocate(self, kind: str) -> int:
        new_id = self._next_id[kind]
        self._next_id[kind] += 1
        return new_id

    # -- credentials --------------------------------------------------------

    def get_credential(self, credential_id: int) -> Credential | None:
        c = self._credentials.get(credential_id)
        return replace(c) if c else None

    def get_credential_for_owner(
        self, owner_id: int, account_type: str = DEFAULT_ACCOUNT_TYPE
    ) -> Credential | None:
        for c in self._credentials.values():
            if c.owner_id == owner_id and c.account_type == account_type:
                return replace(c)
        return None

    def save_credential(self, credential: Credential) -> int:
        with self._lock:
            for existing in self._credentials.values():
                if (existing.owner_id, existing.account_type) == (
                    credential.owner_id, credential.account_type
                ):
                    existing.encrypted_username = credential.encrypted_username
                    existing.encrypted_password = credential.encrypted_password
                    existing.is_active = credential.is_active
                    return existing.id  # type: ignore[return-value]
            new_id = self._allocate("credential")
            self._credentials[new_id] = replace(credential, id=new_id)
            return new_id

    def update_credential_sync_time(self, credential_id: int, ts: datetime) -> None:
        with self._lock:
            self._credentials[credential_id].last_synced_at = ts

    # -- seasons ------------------------------------------------------------

    def find_season_by_name(self, name: str) -> Season | None:
        for s in self._seasons.values():
            if s.name == name:
                return replace(s)
        return None

    def get_season(self, season_id: int) -> Season | None:
        s = self._seasons.get(season_id)
        return replace(s) if s else None

    def get_active_season(self) -> Season | None:
        active = [s for s in self._seasons.values() if s.status == SEASON_ACTIVE]
        if not active:
            return None
        return replace(max(active, key=lambda s: (s.start_date, s.id or 0)))

    def list_seasons(self) -> list[Season]:
        return [replace(s) for s in sorted(self._seasons.values(), key=lambda s: s.start_date)]

    def insert_season(self, season: Season) -> int:
        with self._lock:
            for s in self._seasons.values():
                if s.name == season.name:
                    return s.id  # type: ignore[return-value]
            new_id = self._allocate("season")
            self._seasons[new_id] = replace(season, id=new_id)
            return new_id

    def update_season_status(
        self, season_id: int, status: str, actual_end_date: date | None = None
    ) -> None:
        if status not in SEASON_STATUSES:
            raise ValueError(f"invalid season status {status!r}")
        with self._lock:
            s = self._seasons[season_id]
            s.status = status
            if actual_end_date is not None:
                s.actual_end_date = actual_end_date

    def delete_season(self, season_id: int) -> None:
        with self._lock:
            if any(v.season_id == season_id for v in self._visits.values()):
                raise ValueError(f"season {season_id} still has visits")
            self._seasons.pop(season_id, None)

    # -- visits -------------------------------------------------------------

    def _key_taken(self, key: tuple, exclude_id: int | None = None) -> bool:
        return any(v.key == key and v.id != exclude_id for v in self._visits.values())

    def insert_visit_if_absent(self, visit: Visit) -> int | None:
        with self._lock:
            if self._key_taken(visit.key):
                return None
            new_id = self._allocate("visit")
            now = utcnow()
            self._visits[new_id] = replace(visit, id=new_id, created_at=now, updated_at=now)
            return new_id

    def get_visit(self, visit_id: int) -> Visit | None:
        v = self._visits.get(visit_id)
        return replace(v) if v else None

    def list_visits(
        self,
        season_id: int | None = None,
        start: date | None = None,
        end: date | None = None,
        manual: bool | None = None,
    ) -> list[Visit]:
        out = []
        for v in self._visits.values():
            if season_id is not None and v.season_id != season_id:
                continue
            if start is not None and v.visit_date < start:
                continue
            if end is not None and v.visit_date > end:
                continue
            if manual is not None and v.is_manual != manual:
                continue
            out.append(replace(v))
        return sorted(out, key=_visit_sort_key)

    def update_visit(self, visit_id: int, **changes: Any) -> None:
        _check_patch(changes, _VISIT_PATCH_FIELDS, "visit")
        with self._lock:
            current = self._visits[visit_id]
            updated = replace(current, **changes, updated_at=utcnow())
            if self._key_taken(updated.key, exclude_id=visit_id):
                raise DuplicateVisitError(f"visit key {updated.key} already exists")
            self._visits[visit_id] = updated

    def reassign_visit(self, visit_id: int, season_id: int) -> None:
        with self._lock:
            current = self._visits[visit_id]
            updated = replace(current, season_id=season_id, updated_at=utcnow())
            if self._key_taken(updated.key, exclude_id=visit_id):
                raise DuplicateVisitError(f"visit key {updated.key} already exists")
            self._visits[visit_id] = updated

    def delete_visit(self, visit_id: int) -> bool:
        with self._lock:
            return self._visits.pop(visit_id, None) is not None

    def delete_visits_before(self, season_id: int, cutoff: date) -> int:
        with self._lock:
            doomed = [
                vid for vid, v in self._visits.items()
                if v.season_id == season_id and v.visit_date < cutoff
            ]
            for vid in doomed:
                del self._visits[vid]
            return len(doomed)

    # -- scraping log -------------------------------------------------------

    def insert_scraping_log(self, entry: ScrapingLog) -> int:
        if entry.status not in LOG_STATUSES:
            raise ValueError(f"invalid scraping log status {entry.status!r}")
        with self._lock:
            new_id = self._allocate("log")
            self._logs[new_id] = replace(entry, id=new_id, created_at=entry.created_at or utcnow())
            return new_id

    def update_scraping_log(self, log_id: int, **patch: Any) -> None:
        _check_patch(patch, _LOG_PATCH_FIELDS, "scraping_log")
        if "status" in patch and patch["status"] not in LOG_STATUSES:
            raise ValueError(f"invalid scraping log status {patch['status']!r}")
        with self._lock:
            self._logs[log_id] = replace(self._logs[log_id], **patch)

    def get_scraping_log(self, log_id: int) -> ScrapingLog | None:
        entry = self._logs.get(log_id)
        return replace(entry) if entry else None

    def list_scraping_logs(self, credential_id: int, limit: int = 50) -> list[ScrapingLog]:
        rows = [e for e in self._logs.values() if e.credential_id == credential_id]
        rows.sort(key=lambda e: (e.created_at, e.id), reverse=True)
        return [replace(e) for e in rows[:limit]]

    # -- weather ------------------------------------------------------------

    def upsert_weather_day(self, day: WeatherDay) -> None:
        with self._lock:
            self._weather[day.weather_date] = replace(day)

    def weather_range(self, start: date, end: date) -> list[WeatherDay]:
        return [
            replace(self._weather[d]) for d in sorted(self._weather)
            if start <= d <= end
        ]

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------

_SEASON_COLS = "id, name, start_date, status, estimated_end_date, actual_end_date, goal"
_VISIT_COLS = (
    "id, season_id, visit_date, visit_time, label, is_manual, notes, created_at, updated_at"
)
_CREDENTIAL_COLS = (
    "id, owner_id, encrypted_username, encrypted_password, account_type, "
    "is_active, last_synced_at"
)
_LOG_COLS = (
    "id, credential_id, status, visits_found, visits_added, error_message, created_at"
)


def _season(row: tuple) -> Season:
    return Season(
        id=row[0], name=row[1], start_date=row[2], status=row[3],
        estimated_end_date=row[4], actual_end_date=row[5], goal=row[6],
    )


def _visit(row: tuple) -> Visit:
    return Visit(
        id=row[0], season_id=row[1], visit_date=row[2], visit_time=row[3],
        label=row[4], is_manual=row[5], notes=row[6],
        created_at=row[7], updated_at=row[8],
    )


def _credential(row: tuple) -> Credential:
    return Credential(
        id=row[0], owner_id=row[1], encrypted_username=row[2],
        encrypted_password=row[3], account_type=row[4],
        is_active=row[5], last_synced_at=row[6],
    )


def _scraping_log(row: tuple) -> ScrapingLog:
    return ScrapingLog(
        id=row[0], credential_id=row[1], status=row[2], visits_found=row[3],
        visits_added=row[4], error_message=row[5], created_at=row[6],
    )


def _float_or_none(value: Any) -> float | None:
    return float(value) if value is not None else None


class PostgresStorage:
    """psycopg-backed storage. The connection runs in autocommit mode."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn
        self._conn.autocommit = True

    @classmethod
    def connect(cls, dsn: str) -> "PostgresStorage":
        return cls(psycopg.connect(dsn, autocommit=True))

    # -- credentials --------------------------------------------------------

    def get_credential(self, credential_id: int) -> Credential | None:
        row = self._conn.execute(
            f"SELECT {_CREDENTIAL_COLS} FROM portal_credential WHERE id = %s",
            (credential_id,),
        ).fetchone()
        return _credential(row) if row else None

    def get_credential_for_owner(
        self, owner_id: int, account_type: str = DEFAULT_ACCOUNT_TYPE
    ) -> Credential | None:
        row = self._conn.execute(
            f"""
            SELECT {_CREDENTIAL_COLS} FROM portal_credential
            WHERE owner_id = %s AND account_type = %s
            """,
            (owner_id, account_type),
        ).fetchone()
        return _credential(row) if row else None

    def save_credential(self, credential: Credential) -> int:
        row = self._conn.execute(
            """
            INSERT INTO portal_credential
              (owner_id, encrypted_username, encrypted_password, account_type, is_active)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (owner_id, account_type) DO UPDATE SET
              encrypted_username = EXCLUDED.encrypted_username,
              encrypted_password = EXCLUDED.encrypted_password,
              is_active = EXCLUDED.is_active,
              updated_at = now()
            RETURNING id
            """,
            (
                credential.owner_id,
                credential.encrypted_username,
                credential.encrypted_password,
                credential.account_type,
                credential.is_active,
            ),
        ).fetchone()
        return int(row[0])

    def update_credential_sync_time(self, credential_id: int, ts: datetime) -> None:
        self._conn.execute(
            """
            UPDATE portal_credential
            SET last_synced_at = %s, updated_at = now()
            WHERE id = %s
            """,
            (ts, credential_id),
        )

    # -- seasons ------------------------------------------------------------

    def find_season_by_name(self, name: str) -> Season | None:
        row = self._conn.execute(
            f"SELECT {_SEASON_COLS} FROM season WHERE name = %s", (name,)
        ).fetchone()
        return _season(row) if row else None

    def get_season(self, season_id: int) -> Season | None:
        row = self._conn.execute(
            f"SELECT {_SEASON_COLS} FROM season WHERE id = %s", (season_id,)
        ).fetchone()
        return _season(row) if row else None

    def get_active_season(self) -> Season | None:
        row = self._conn.execute(
            f"""
            SELECT {_SEASON_COLS} FROM season
            WHERE status = %s
            ORDER BY start_date DESC, id DESC
            LIMIT 1
            """,
            (SEASON_ACTIVE,),
        ).fetchone()
        return _season(row) if row else None

    def list_seasons(self) -> list[Season]:
        rows = self._conn.execute(
            f"SELECT {_SEASON_COLS} FROM season ORDER BY start_date ASC, id ASC"
        ).fetchall()
        return [_season(r) for r in rows]

    def insert_season(self, season: Season) -> int:
        """Insert a season; if the name already exists return the existing id."""
        row = self._conn.execute(
            """
            INSERT INTO season
              (name, start_date, status, estimated_end_date, actual_end_date, goal)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (name) DO NOTHING
            RETURNING id
            """,
            (
                season.name, season.start_date, season.status,
                season.estimated_end_date, season.actual_end_date, season.goal,
            ),
        ).fetchone()
        if row:
            return int(row[0])
        existing = self._conn.execute(
            "SELECT id FROM season WHERE name = %s", (season.name,)
        ).fetchone()
        return int(existing[0])

    def update_season_status(
        self, season_id: int, status: str, actual_end_date: date | None = None
    ) -> None:
        if status not in SEASON_STATUSES:
            raise ValueError(f"invalid season status {status!r}")
        self._conn.execute(
            """
            UPDATE season
            SET status = %s,
                actual_end_date = COALESCE(%s, actual_end_date),
                updated_at = now()
            WHERE id = %s
            """,
            (status, actual_end_date, season_id),
        )

    def delete_season(self, season_id: int) -> None:
        self._conn.execute("DELETE FROM season WHERE id = %s", (season_id,))

    # -- visits -------------------------------------------------------------

    def insert_visit_if_absent(self, visit: Visit) -> int | None:
        """Insert a visit. Returns the new id, or None when the key already exists."""
        row = self._conn.execute(
            """
            INSERT INTO visit
              (season_id, visit_date, visit_time, label, is_manual, notes)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT DO NOTHING
            RETURNING id
            """,
            (
                visit.season_id, visit.visit_date, visit.visit_time,
                visit.label, visit.is_manual, visit.notes,
            ),
        ).fetchone()
        return int(row[0]) if row else None

    def get_visit(self, visit_id: int) -> Visit | None:
        row = self._conn.execute(
            f"SELECT {_VISIT_COLS} FROM visit WHERE id = %s", (visit_id,)
        ).fetchone()
        return _visit(row) if row else None

    def list_visits(
        self,
        season_id: int | None = None,
        start: date | None = None,
        end: date | None = None,
        manual: bool | None = None,
    ) -> list[Visit]:
        clauses: list[str] = []
        params: list[Any] = []
        if season_id is not None:
            clauses.append("season_id = %s")
            params.append(season_id)
        if start is not None:
            clauses.append("visit_date >= %s")
            params.append(start)
        if end is not None:
            clauses.append("visit_date <= %s")
            params.append(end)
        if manual is not None:
            clauses.append("is_manual = %s")
            params.append(manual)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._conn.execute(
            f"""
            SELECT {_VISIT_COLS} FROM visit
            {where}
            ORDER BY visit_date ASC, COALESCE(visit_time, '') ASC, id ASC
            """,
            params,
        ).fetchall()
        return [_visit(r) for r in rows]

    def update_visit(self, visit_id: int, **changes: Any) -> None:
        _check_patch(changes, _VISIT_PATCH_FIELDS, "visit")
        if not changes:
            return
        assignments = ", ".join(f"{col} = %s" for col in changes)
        try:
            self._conn.execute(
                f"UPDATE visit SET {assignments}, updated_at = now() WHERE id = %s",
                [*changes.values(), visit_id],
            )
        except psycopg.errors.UniqueViolation as exc:
            raise DuplicateVisitError(str(exc)) from exc

    def reassign_visit(self, visit_id: int, season_id: int) -> None:
        try:
            self._conn.execute(
                "UPDATE visit SET season_id = %s, updated_at = now() WHERE id = %s",
                (season_id, visit_id),
            )
        except psycopg.errors.UniqueViolation as exc:
            raise DuplicateVisitError(str(exc)) from exc

    def delete_visit(self, visit_id: int) -> bool:
        cur = self._conn.execute("DELETE FROM visit WHERE id = %s", (visit_id,))
        return cur.rowcount > 0

    def delete_visits_before(self, season_id: int, cutoff: date) -> int:
        cur = self._conn.execute(
            "DELETE FROM visit WHERE season_id = %s AND visit_date < %s",
            (season_id, cutoff),
        )
        return cur.rowcount

    # -- scraping log -------------------------------------------------------

    def insert_scraping_log(self, entry: ScrapingLog) -> int:
        row = self._conn.execute(
            """
            INSERT INTO scraping_log
              (credential_id, status, visits_found, visits_added, error_message)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                entry.credential_id, entry.status, entry.visits_found,
                entry.visits_added, entry.error_message,
            ),
        ).fetchone()
        return int(row[0])

    def update_scraping_log(self, log_id: int, **patch: Any) -> None:
        _check_patch(patch, _LOG_PATCH_FIELDS, "scraping_log")
        if not patch:
            return
        assignments = ", ".join(f"{col} = %s" for col in patch)
        self._conn.execute(
            f"UPDATE scraping_log SET {assignments} WHERE id = %s",
            [*patch.values(), log_id],
        )

    def get_scraping_log(self, log_id: int) -> ScrapingLog | None:
        row = self._conn.execute(
            f"SELECT {_LOG_COLS} FROM scraping_log WHERE id = %s", (log_id,)
        ).fetchone()
        return _scraping_log(row) if row else None

    def list_scraping_logs(self, credential_id: int, limit: int = 50) -> list[ScrapingLog]:
        rows = self._conn.execute(
            f"""
            SELECT {_LOG_COLS} FROM scraping_log
            WHERE credential_id = %s
            ORDER BY created_at DESC, id DESC
            LIMIT %s
            """,
            (credential_id, limit),
        ).fetchall()
        return [_scraping_log(r) for r in rows]

    # -- weather ------------------------------------------------------------

    def upsert_weather_day(self, day: WeatherDay) -> None:
        self._conn.execute(
            """
            INSERT INTO weather_day
              (weather_date, temp_high, temp_low, snowfall, conditions, source)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (weather_date) DO UPDATE SET
              temp_high = EXCLUDED.temp_high,
              temp_low = EXCLUDED.temp_low,
              snowfall = EXCLUDED.snowfall,
              conditions = EXCLUDED.conditions,
              source = EXCLUDED.source,
              updated_at = now()
            """,
            (
                day.weather_date, day.temp_high, day.temp_low,
                day.snowfall, day.conditions, day.source,
            ),
        )

    def weather_range(self, start: date, end: date) -> list[WeatherDay]:
        rows = self._conn.execute(
            """
            SELECT weather_date, temp_high, temp_low, snowfall, conditions, source
            FROM weather_day
            WHERE weather_date BETWEEN %s AND %s
            ORDER BY weather_date ASC
            """,
            (start, end),
        ).fetchall()
        return [
            WeatherDay(
                weather_date=r[0],
                temp_high=_float_or_none(r[1]),
                temp_low=_float_or_none(r[2]),
                snowfall=_float_or_none(r[3]),
                conditions=r[4],
                source=r[5],
            )
            for r in rows
        ]

    def close(self) -> None:
        self._conn.close()


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def open_storage(settings: Settings) -> Storage:
    """Return PostgresStorage when a DSN is configured, else MemoryStorage."""
    if settings.db_dsn:
        log.info("Opening PostgreSQL storage")
        return PostgresStorage.connect(settings.db_dsn)
    log.warning("No database configured; using in-memory storage (data is not persisted)")
    return MemoryStorage()


__all__ = [
    "MemoryStorage",
    "PostgresStorage",
    "Storage",
    "open_storage",
    "utcnow",
]
