"""badge_etl.orchestrator

Retry orchestration and scraping-log bookkeeping for one ingestion run.

Run lifecycle:
  1. Load the credential. Missing or inactive → ConfigurationError; no log row
     is written and nothing is retried.
  2. Write a ``pending`` scraping-log row.
  3. Attempt loop (RetryPolicy): decrypt → extract → reconcile. Any exception
     fails the attempt; the next attempt starts from a fresh browser session
     after a fixed delay.
  4. Success → log row ``success`` (or ``partial`` when records were skipped)
     with found/added counts, and the credential's last_synced_at is set.
  5. Exhaustion → log row ``failed`` with the last error; IngestionFailed.

Concurrent runs for one credential are not locked against each other; the
visit uniqueness key makes overlapping runs converge on the same rows.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, tzinfo
from typing import Callable, Iterable, TypeVar

from badge_etl.errors import ConfigurationError, IngestionFailed
from badge_etl.extractor import PortalConfig, extract_visits, playwright_session_factory
from badge_etl.models import LOG_FAILED, LOG_PARTIAL, LOG_PENDING, LOG_SUCCESS, RawVisit, ScrapingLog
from badge_etl.reconcile import ReconcileCounters, reconcile
from badge_etl.seasons import SeasonResolver
from badge_etl.storage import Storage, utcnow
from badge_etl.vault import CredentialVault

log = logging.getLogger(__name__)

T = TypeVar("T")

STATUS_SKIPPED = "skipped"

Extractor = Callable[[str, str], Iterable[RawVisit]]


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

@dataclass
class RetryPolicy:
    """Fixed-delay retry: up to max_attempts calls, delay_seconds between them."""

    max_attempts: int = 3
    delay_seconds: float = 10.0
    sleep: Callable[[float], None] = time.sleep

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            delay_seconds=settings.retry_delay_seconds,
        )

    def run(self, fn: Callable[[int], T], label: str = "operation") -> tuple[T, int]:
        """Call fn(attempt) until it returns. Returns (result, attempts used).

        Re-raises the last exception once every attempt has failed.
        """
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        for attempt in range(1, self.max_attempts + 1):
            try:
                return fn(attempt), attempt
            except Exception as exc:
                log.error(
                    "%s attempt %d/%d failed: %s",
                    label, attempt, self.max_attempts, error_message(exc),
                )
                if attempt >= self.max_attempts:
                    raise
                log.info("Waiting %.1fs before next attempt", self.delay_seconds)
                self.sleep(self.delay_seconds)
        raise RuntimeError("retry loop exited without a result")


def error_message(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

@dataclass
class IngestionResult:
    log_id: int | None
    status: str
    found: int = 0
    added: int = 0
    duplicates: int = 0
    attempts: int = 0

    def to_dict(self) -> dict:
        return dict(self.__dict__)


def default_extractor(config: PortalConfig | None = None, headless: bool = True) -> Extractor:
    """Extractor that drives a real Chromium session per attempt."""
    factory = playwright_session_factory(headless=headless)

    def extract(username: str, password: str) -> Iterable[RawVisit]:
        return extract_visits(factory, username, password, config)
    return extract


def run_ingestion(
    storage: Storage,
    credential_id: int,
    vault: CredentialVault,
    extractor: Extractor | None = None,
    policy: RetryPolicy | None = None,
    resolver: SeasonResolver | None = None,
    now: Callable[[], datetime] = utcnow,
) -> IngestionResult:
    credential = storage.get_credential(credential_id)
    if credential is None:
        raise ConfigurationError(f"credential {credential_id} not found")
    if not credential.is_active:
        raise ConfigurationError(f"credential {credential_id} is inactive")

    extractor = extractor or default_extractor()
    policy = policy or RetryPolicy()
    resolver = resolver or SeasonResolver(storage)

    log_id = storage.insert_scraping_log(
        ScrapingLog(id=None, credential_id=credential_id, status=LOG_PENDING)
    )

    def attempt(n: int) -> ReconcileCounters:
        log.info(
            "Starting ingestion attempt %d/%d for credential %s",
            n, policy.max_attempts, credential_id,
        )
        username = vault.decrypt(credential.encrypted_username)
        password = vault.decrypt(credential.encrypted_password)
        return reconcile(storage, extractor(username, password), resolver)

    try:
        counters, attempts = policy.run(attempt, label="Ingestion")
    except Exception as exc:
        failure = IngestionFailed(log_id, policy.max_attempts, error_message(exc))
        storage.update_scraping_log(log_id, status=LOG_FAILED, error_message=str(failure))
        raise failure from exc

    status = LOG_PARTIAL if counters.warnings else LOG_SUCCESS
    storage.update_scraping_log(
        log_id,
        status=status,
        visits_found=counters.found,
        visits_added=counters.added,
        error_message="; ".join(counters.warnings[:5]) or None,
    )
    storage.update_credential_sync_time(credential_id, now())
    log.info(
        "Ingestion succeeded on attempt %d: found=%d added=%d",
        attempts, counters.found, counters.added,
    )
    return IngestionResult(
        log_id=log_id,
        status=status,
        found=counters.found,
        added=counters.added,
        duplicates=counters.duplicates,
        attempts=attempts,
    )


def synced_today(last_synced_at: datetime | None, now: datetime, tz: tzinfo) -> bool:
    if last_synced_at is None:
        return False
    return last_synced_at.astimezone(tz).date() == now.astimezone(tz).date()


def run_daily_sync(
    storage: Storage,
    credential_id: int,
    vault: CredentialVault,
    tz: tzinfo,
    now: Callable[[], datetime] = utcnow,
    **kwargs,
) -> IngestionResult:
    """Run ingestion unless the credential already synced today (in ``tz``).

    A skipped run writes no scraping-log row.
    """
    credential = storage.get_credential(credential_id)
    if credential is None:
        raise ConfigurationError(f"credential {credential_id} not found")
    if synced_today(credential.last_synced_at, now(), tz):
        log.info("Credential %s already synced today; skipping", credential_id)
        return IngestionResult(log_id=None, status=STATUS_SKIPPED)
    return run_ingestion(storage, credential_id, vault, now=now, **kwargs)


# ---------------------------------------------------------------------------
# Background runner
# ---------------------------------------------------------------------------

class BackgroundIngestion:
    """Runs ingestion on one dedicated worker thread.

    For embedding services that trigger a sync from a request handler. Runs
    are queued and executed one at a time; each returned Future carries the
    IngestionResult or the raised exception.
    """

    def __init__(self, storage: Storage, vault: CredentialVault, **ingest_kwargs) -> None:
        self._storage = storage
        self._vault = vault
        self._kwargs = ingest_kwargs
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="badge-ingest")

    def submit(self, credential_id: int) -> Future:
        future = self._pool.submit(
            run_ingestion, self._storage, credential_id, self._vault, **self._kwargs
        )
        future.add_done_callback(_log_outcome)
        return future

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)

    def __enter__(self) -> "BackgroundIngestion":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown(wait=True)


def _log_outcome(future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        log.error("Background ingestion failed: %s", error_message(exc))
    else:
        log.info("Background ingestion finished: %s", future.result().to_dict())
