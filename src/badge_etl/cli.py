"""badge_etl.cli

Unified CLI entrypoint.

Modes (--mode):
  ingest            scrape the portal for one credential and store new visits
  daily_sync        same as ingest, skipped if the credential synced today
  save_credentials  encrypt and store portal credentials for an owner
  manual_add        record a manual visit in the active season
  manual_list       list manual visits of a season
  manual_update     change time/notes of a manual visit
  manual_delete     delete a manual visit
  stats             season summary and projections
  weather_sync      backfill the weather cache from Open-Meteo
  merge_seasons     move a season's visits into another season and drop it
  purge_before      delete a season's visits dated before a cutoff
  complete_season   mark a season completed with an actual end date
  logs              recent scraping-log rows for a credential

Secrets (DATABASE_URL, ENCRYPTION_KEY, portal username/password) are read
from the environment or the --config file, never from CLI arguments.

Usage:
    badge-etl --mode ingest --credential-id 1
    PORTAL_USERNAME=... PORTAL_PASSWORD=... badge-etl --mode save_credentials --owner-id 1
    badge-etl --mode manual_add --date 2026-01-31 --time 10:30 --notes "night skiing"
    badge-etl --mode stats --as-of 2026-01-31
"""

from __future__ import annotations

import logging
import os
import sys
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from zoneinfo import ZoneInfo

import click
import requests

from badge_etl.config import Settings, load_settings
from badge_etl.errors import BadgeEtlError, IngestionFailed
from badge_etl.extractor import PortalConfig
from badge_etl.maintenance import complete_season, merge_seasons, purge_before
from badge_etl.manual import (
    add_manual_visit,
    delete_manual_visit,
    list_manual_visits,
    update_manual_visit,
)
from badge_etl.models import DEFAULT_ACCOUNT_TYPE, Credential
from badge_etl.normalize import parse_iso_date
from badge_etl.orchestrator import (
    STATUS_SKIPPED,
    RetryPolicy,
    default_extractor,
    run_daily_sync,
    run_ingestion,
)
from badge_etl.projection import season_breakdown, season_stats
from badge_etl.seasons import SeasonResolver
from badge_etl.shared import build_ingestion_report, build_stats_report, write_run_report
from badge_etl.storage import Storage, open_storage
from badge_etl.vault import CredentialVault
from badge_etl.weather import WeatherLocation, sync_weather, sync_weather_for_season

log = logging.getLogger(__name__)

MODES = [
    "ingest", "daily_sync", "save_credentials",
    "manual_add", "manual_list", "manual_update", "manual_delete",
    "stats", "weather_sync",
    "merge_seasons", "purge_before", "complete_season",
    "logs",
]


@dataclass
class RunContext:
    run_id: str
    started_at: str
    mode: str
    dry_run: bool
    settings: Settings
    storage: Storage

    def echo(self, msg: str, err: bool = False) -> None:
        click.echo(f"[{self.run_id}] {msg}", err=err)

    def fail(self, msg: str) -> None:
        self.echo(f"FATAL: {msg}", err=True)
        sys.exit(1)

    def today(self) -> date:
        return datetime.now(ZoneInfo(self.settings.timezone)).date()


# ---------------------------------------------------------------------------
# Flag helpers
# ---------------------------------------------------------------------------

def _require(ctx: RunContext, value, flag: str):
    if value is None:
        ctx.fail(f"{flag} is required for --mode {ctx.mode}")
    return value


def _parse_date_flag(ctx: RunContext, value: str | None, flag: str) -> date | None:
    if value is None:
        return None
    d = parse_iso_date(value)
    if d is None:
        ctx.fail(f"{flag} must be YYYY-MM-DD, got {value!r}")
    return d


# ---------------------------------------------------------------------------
# Modes
# ---------------------------------------------------------------------------

def _run_ingest(ctx: RunContext, credential_id: int | None, headless: bool) -> None:
    credential_id = _require(ctx, credential_id, "--credential-id")
    settings = ctx.settings
    vault = CredentialVault(settings.encryption_key)
    kwargs = dict(
        extractor=default_extractor(PortalConfig.from_settings(settings), headless=headless),
        policy=RetryPolicy.from_settings(settings),
        resolver=SeasonResolver(
            ctx.storage, settings.season_boundary_month, settings.season_boundary_day
        ),
    )
    ctx.echo(f"{ctx.mode} credential_id={credential_id}")
    try:
        if ctx.mode == "daily_sync":
            result = run_daily_sync(
                ctx.storage, credential_id, vault, ZoneInfo(settings.timezone), **kwargs
            )
        else:
            result = run_ingestion(ctx.storage, credential_id, vault, **kwargs)
    except IngestionFailed as exc:
        write_run_report(
            ctx.run_id, ctx.started_at, ctx.mode, ctx.dry_run,
            {"credential_id": credential_id},
            {"status": "failed", "log_id": exc.log_id, "attempts": exc.attempts,
             "error": exc.last_error},
        )
        ctx.fail(str(exc))

    if result.status == STATUS_SKIPPED:
        ctx.echo("Already synced today; skipped.")
        return
    click.echo(build_ingestion_report(result.to_dict()))
    report_path = write_run_report(
        ctx.run_id, ctx.started_at, ctx.mode, ctx.dry_run,
        {"credential_id": credential_id}, result.to_dict(),
    )
    ctx.echo(f"Run report: {report_path}")


def _run_save_credentials(
    ctx: RunContext,
    owner_id: int | None,
    account_type: str,
    username_env: str,
    password_env: str,
) -> None:
    owner_id = _require(ctx, owner_id, "--owner-id")
    # Credentials come from the environment only, never from CLI args
    username = os.environ.get(username_env, "")
    password = os.environ.get(password_env, "")
    if not username or not password:
        ctx.fail(f"env vars {username_env} and {password_env} must be set")
    vault = CredentialVault(ctx.settings.encryption_key)
    credential_id = ctx.storage.save_credential(
        Credential(
            id=None,
            owner_id=owner_id,
            encrypted_username=vault.encrypt(username),
            encrypted_password=vault.encrypt(password),
            account_type=account_type,
        )
    )
    ctx.echo(f"Saved {account_type} credentials for owner {owner_id}: credential_id={credential_id}")


def _run_manual(
    ctx: RunContext,
    visit_date: str | None,
    visit_time: str | None,
    notes: str | None,
    visit_id: int | None,
    season_id: int | None,
    clear_time: bool,
    clear_notes: bool,
) -> None:
    storage = ctx.storage
    if ctx.mode == "manual_add":
        d = _parse_date_flag(ctx, _require(ctx, visit_date, "--date"), "--date")
        new_id = add_manual_visit(storage, d, visit_time, notes)
        if new_id is None:
            ctx.echo(f"Manual visit on {d} already recorded; nothing added.")
        else:
            ctx.echo(f"Added manual visit {new_id} on {d}")
    elif ctx.mode == "manual_list":
        visits = list_manual_visits(storage, season_id)
        for v in visits:
            click.echo(f"{v.id:>6}  {v.visit_date}  {v.visit_time or '-':<8}  {v.notes or ''}")
        ctx.echo(f"{len(visits)} manual visits")
    elif ctx.mode == "manual_update":
        visit_id = _require(ctx, visit_id, "--visit-id")
        changes = {}
        if visit_time is not None or clear_time:
            changes["visit_time"] = None if clear_time else visit_time
        if notes is not None or clear_notes:
            changes["notes"] = None if clear_notes else notes
        if not changes:
            ctx.fail("nothing to update: pass --time/--notes or --clear-time/--clear-notes")
        v = update_manual_visit(storage, visit_id, **changes)
        ctx.echo(f"Updated manual visit {v.id}: time={v.visit_time} notes={v.notes!r}")
    else:
        visit_id = _require(ctx, visit_id, "--visit-id")
        delete_manual_visit(storage, visit_id)
        ctx.echo(f"Deleted manual visit {visit_id}")


def _run_stats(ctx: RunContext, as_of: str | None, custom_end: str | None) -> None:
    today = _parse_date_flag(ctx, as_of, "--as-of") or ctx.today()
    custom = _parse_date_flag(ctx, custom_end, "--custom-end")
    stats = season_stats(ctx.storage, today, custom)
    if stats is None:
        ctx.echo("No active season.")
        return
    data = stats.to_dict()
    data["breakdown"] = season_breakdown(ctx.storage, stats.season, today)
    click.echo(build_stats_report(data))
    report_path = write_run_report(
        ctx.run_id, ctx.started_at, ctx.mode, ctx.dry_run, {"as_of": today.isoformat()}, data,
    )
    ctx.echo(f"Run report: {report_path}")


def _run_weather_sync(ctx: RunContext, start: str | None, end: str | None) -> None:
    settings = ctx.settings
    location = WeatherLocation.from_settings(settings)
    policy = RetryPolicy.from_settings(settings)
    start_d = _parse_date_flag(ctx, start, "--start")
    end_d = _parse_date_flag(ctx, end, "--end") or ctx.today()
    with requests.Session() as session:
        if start_d is None:
            stored = sync_weather_for_season(ctx.storage, session, location, end_d, policy)
        else:
            stored = sync_weather(ctx.storage, session, location, start_d, end_d, policy)
    ctx.echo(f"Stored {stored} weather days")


def _run_maintenance(
    ctx: RunContext,
    season_id: int | None,
    target_season_id: int | None,
    cutoff: str | None,
    end_date: str | None,
) -> None:
    season_id = _require(ctx, season_id, "--season-id")
    if ctx.mode == "complete_season":
        d = _parse_date_flag(ctx, _require(ctx, end_date, "--end-date"), "--end-date")
        season = complete_season(ctx.storage, season_id, d)
        ctx.echo(f"Season {season.name!r} completed on {season.actual_end_date}")
        return
    if ctx.mode == "merge_seasons":
        target = _require(ctx, target_season_id, "--target-season-id")
        counters = merge_seasons(ctx.storage, season_id, target, dry_run=ctx.dry_run)
        params = {"season_id": season_id, "target_season_id": target}
    else:
        d = _parse_date_flag(ctx, _require(ctx, cutoff, "--cutoff"), "--cutoff")
        counters = purge_before(ctx.storage, season_id, d, dry_run=ctx.dry_run)
        params = {"season_id": season_id, "cutoff": d.isoformat()}
    for k, v in counters.to_dict().items():
        click.echo(f"{k:<16}: {v}")
    if ctx.dry_run:
        ctx.echo("DRY RUN: no changes written.")
    report_path = write_run_report(
        ctx.run_id, ctx.started_at, ctx.mode, ctx.dry_run, params, counters.to_dict(),
    )
    ctx.echo(f"Run report: {report_path}")


def _run_logs(ctx: RunContext, credential_id: int | None, limit: int) -> None:
    credential_id = _require(ctx, credential_id, "--credential-id")
    for entry in ctx.storage.list_scraping_logs(credential_id, limit):
        click.echo(
            f"{entry.id:>6}  {entry.created_at}  {entry.status:<8} "
            f"found={entry.visits_found} added={entry.visits_added}"
            + (f"  error={entry.error_message}" if entry.error_message else "")
        )


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

@click.command()
@click.option("--mode", required=True, type=click.Choice(MODES), help="Operation to run")
@click.option("--config", "config_path", default=None, type=click.Path(), help="YAML settings file")
@click.option("--log-level", default=None, help="Override log level (DEBUG, INFO, ...)")
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--dry-run", is_flag=True, default=False, help="[merge_seasons|purge_before] Report only")
@click.option("--credential-id", default=None, type=int, help="[ingest|daily_sync|logs]")
@click.option("--headless/--headed", default=None, help="[ingest|daily_sync] Browser visibility")
@click.option("--owner-id", default=None, type=int, help="[save_credentials]")
@click.option("--account-type", default=DEFAULT_ACCOUNT_TYPE, show_default=True, help="[save_credentials]")
@click.option("--username-env", default="PORTAL_USERNAME", show_default=True, help="[save_credentials] Env var holding the portal username")
@click.option("--password-env", default="PORTAL_PASSWORD", show_default=True, help="[save_credentials] Env var holding the portal password")
@click.option("--date", "visit_date", default=None, help="[manual_add] Visit date YYYY-MM-DD")
@click.option("--time", "visit_time", default=None, help="[manual_add|manual_update] Visit time, e.g. 10:30")
@click.option("--notes", default=None, help="[manual_add|manual_update]")
@click.option("--clear-time", is_flag=True, default=False, help="[manual_update]")
@click.option("--clear-notes", is_flag=True, default=False, help="[manual_update]")
@click.option("--visit-id", default=None, type=int, help="[manual_update|manual_delete]")
@click.option("--season-id", default=None, type=int, help="[manual_list|merge_seasons|purge_before|complete_season]")
@click.option("--target-season-id", default=None, type=int, help="[merge_seasons] Season that receives the visits")
@click.option("--cutoff", default=None, help="[purge_before] Delete visits dated before YYYY-MM-DD")
@click.option("--end-date", default=None, help="[complete_season] Actual end date YYYY-MM-DD")
@click.option("--as-of", default=None, help="[stats] Compute as of YYYY-MM-DD (default: today)")
@click.option("--custom-end", default=None, help="[stats] Extra projection to YYYY-MM-DD")
@click.option("--start", default=None, help="[weather_sync] First day (default: active season start)")
@click.option("--end", default=None, help="[weather_sync] Last day (default: today)")
@click.option("--limit", default=20, type=int, show_default=True, help="[logs]")
def main(
    mode: str,
    config_path: str | None,
    log_level: str | None,
    run_id: str | None,
    dry_run: bool,
    credential_id: int | None,
    headless: bool | None,
    owner_id: int | None,
    account_type: str,
    username_env: str,
    password_env: str,
    visit_date: str | None,
    visit_time: str | None,
    notes: str | None,
    clear_time: bool,
    clear_notes: bool,
    visit_id: int | None,
    season_id: int | None,
    target_season_id: int | None,
    cutoff: str | None,
    end_date: str | None,
    as_of: str | None,
    custom_end: str | None,
    start: str | None,
    end: str | None,
    limit: int,
) -> None:
    """Ski-hill visit tracker: portal ingestion, manual visits and projections."""
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()

    try:
        settings = load_settings(Path(config_path) if config_path else None)
    except BadgeEtlError as exc:
        click.echo(f"[{run_id}] FATAL: {exc}", err=True)
        sys.exit(1)

    logging.basicConfig(
        level=(log_level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if headless is None:
        headless = settings.headless

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")
    storage = open_storage(settings)
    ctx = RunContext(run_id, started_at, mode, dry_run, settings, storage)
    try:
        if mode in ("ingest", "daily_sync"):
            _run_ingest(ctx, credential_id, headless)
        elif mode == "save_credentials":
            _run_save_credentials(ctx, owner_id, account_type, username_env, password_env)
        elif mode.startswith("manual_"):
            _run_manual(
                ctx, visit_date, visit_time, notes, visit_id, season_id,
                clear_time, clear_notes,
            )
        elif mode == "stats":
            _run_stats(ctx, as_of, custom_end)
        elif mode == "weather_sync":
            _run_weather_sync(ctx, start, end)
        elif mode in ("merge_seasons", "purge_before", "complete_season"):
            _run_maintenance(ctx, season_id, target_season_id, cutoff, end_date)
        elif mode == "logs":
            _run_logs(ctx, credential_id, limit)
    except (BadgeEtlError, ValueError, requests.RequestException) as exc:
        log.debug("Run failed", exc_info=True)
        ctx.fail(str(exc))
    finally:
        storage.close()


if __name__ == "__main__":
    main()
