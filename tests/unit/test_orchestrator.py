"""Unit tests for badge_etl.orchestrator."""

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from badge_etl.errors import ConfigurationError, IngestionFailed, LoginError
from badge_etl.models import Credential, RawVisit
from badge_etl.orchestrator import (
    STATUS_SKIPPED,
    BackgroundIngestion,
    RetryPolicy,
    run_daily_sync,
    run_ingestion,
    synced_today,
)
from badge_etl.storage import MemoryStorage
from badge_etl.vault import CredentialVault

CHICAGO = ZoneInfo("America/Chicago")
FIXED_NOW = datetime(2026, 1, 31, 18, 0, tzinfo=timezone.utc)


class RecordingSleep:
    def __init__(self):
        self.calls = []

    def __call__(self, seconds):
        self.calls.append(seconds)


def _policy(max_attempts=3):
    sleep = RecordingSleep()
    return RetryPolicy(max_attempts=max_attempts, delay_seconds=0, sleep=sleep), sleep


@pytest.fixture
def vault():
    return CredentialVault("unit-test-key")


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def credential_id(storage, vault):
    return storage.save_credential(Credential(
        id=None,
        owner_id=1,
        encrypted_username=vault.encrypt("skier@example.com"),
        encrypted_password=vault.encrypt("hunter2"),
    ))


def _visits():
    return [
        RawVisit(date="2026-01-03", time="10:15", label="Season Pass"),
        RawVisit(date="2026-01-04", time="13:40", label="Season Pass"),
    ]


# ---------------------------------------------------------------------------
# RetryPolicy
# ---------------------------------------------------------------------------

class TestRetryPolicy:
    def test_first_attempt_succeeds(self):
        policy, sleep = _policy()
        assert policy.run(lambda n: "ok") == ("ok", 1)
        assert sleep.calls == []

    def test_succeeds_on_third_attempt(self):
        policy, sleep = _policy()

        def flaky(n):
            if n < 3:
                raise RuntimeError(f"boom {n}")
            return n

        assert policy.run(flaky) == (3, 3)
        assert sleep.calls == [0, 0]

    def test_reraises_last_error(self):
        policy, sleep = _policy()

        def always(n):
            raise RuntimeError(f"boom {n}")

        with pytest.raises(RuntimeError, match="boom 3"):
            policy.run(always)
        assert len(sleep.calls) == 2

    def test_invalid_attempts(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0).run(lambda n: n)


# ---------------------------------------------------------------------------
# run_ingestion
# ---------------------------------------------------------------------------

class TestRunIngestion:
    def test_success(self, storage, vault, credential_id):
        seen = []

        def extractor(username, password):
            seen.append((username, password))
            return _visits()

        policy, _ = _policy()
        result = run_ingestion(
            storage, credential_id, vault, extractor=extractor, policy=policy,
            now=lambda: FIXED_NOW,
        )
        assert seen == [("skier@example.com", "hunter2")]
        assert result.status == "success"
        assert (result.found, result.added, result.duplicates, result.attempts) == (2, 2, 0, 1)

        entry = storage.get_scraping_log(result.log_id)
        assert entry.status == "success"
        assert entry.visits_found == 2
        assert entry.visits_added == 2
        assert entry.error_message is None
        assert storage.get_credential(credential_id).last_synced_at == FIXED_NOW

    def test_empty_history_succeeds(self, storage, vault, credential_id):
        policy, sleep = _policy()
        result = run_ingestion(
            storage, credential_id, vault, extractor=lambda u, p: iter(()), policy=policy,
        )
        assert result.status == "success"
        assert (result.found, result.added, result.attempts) == (0, 0, 1)
        assert sleep.calls == []
        entry = storage.get_scraping_log(result.log_id)
        assert (entry.status, entry.visits_found) == ("success", 0)

    def test_rerun_adds_nothing(self, storage, vault, credential_id):
        policy, _ = _policy()
        run_ingestion(storage, credential_id, vault, extractor=lambda u, p: _visits(), policy=policy)
        second = run_ingestion(
            storage, credential_id, vault, extractor=lambda u, p: _visits(), policy=policy,
        )
        assert second.added == 0
        assert second.duplicates == 2
        assert len(storage.list_visits()) == 2

    def test_all_attempts_fail(self, storage, vault, credential_id):
        calls = []

        def extractor(username, password):
            calls.append(1)
            raise LoginError(f"Login failed: attempt {len(calls)}")

        policy, sleep = _policy()
        with pytest.raises(IngestionFailed) as info:
            run_ingestion(storage, credential_id, vault, extractor=extractor, policy=policy)

        assert len(calls) == 3
        assert len(sleep.calls) == 2
        failure = info.value
        assert failure.attempts == 3
        assert failure.last_error == "Login failed: attempt 3"
        entry = storage.get_scraping_log(failure.log_id)
        assert entry.status == "failed"
        assert entry.error_message == "Failed after 3 attempts. Last error: Login failed: attempt 3"
        assert storage.get_credential(credential_id).last_synced_at is None

    def test_recovers_after_failure(self, storage, vault, credential_id):
        calls = []

        def extractor(username, password):
            calls.append(1)
            if len(calls) == 1:
                raise TimeoutError("history table never appeared")
            return _visits()

        policy, sleep = _policy()
        result = run_ingestion(storage, credential_id, vault, extractor=extractor, policy=policy)
        assert result.attempts == 2
        assert result.status == "success"
        assert sleep.calls == [0]
        assert len(storage.list_scraping_logs(credential_id)) == 1

    def test_skipped_rows_make_partial(self, storage, vault, credential_id):
        policy, _ = _policy()
        result = run_ingestion(
            storage, credential_id, vault,
            extractor=lambda u, p: [RawVisit(date="bogus"), RawVisit(date="2026-01-03")],
            policy=policy,
        )
        assert result.status == "partial"
        entry = storage.get_scraping_log(result.log_id)
        assert entry.visits_found == 2
        assert entry.visits_added == 1
        assert "bogus" in entry.error_message

    def test_missing_credential_writes_no_log(self, storage, vault):
        with pytest.raises(ConfigurationError, match="not found"):
            run_ingestion(storage, 99, vault, extractor=lambda u, p: [])
        assert storage.list_scraping_logs(99) == []

    def test_inactive_credential(self, storage, vault):
        cred_id = storage.save_credential(Credential(
            id=None, owner_id=2,
            encrypted_username=vault.encrypt("u"),
            encrypted_password=vault.encrypt("p"),
            is_active=False,
        ))
        with pytest.raises(ConfigurationError, match="inactive"):
            run_ingestion(storage, cred_id, vault, extractor=lambda u, p: [])
        assert storage.list_scraping_logs(cred_id) == []

    def test_wrong_vault_key_fails_every_attempt(self, storage, credential_id):
        policy, _ = _policy()
        with pytest.raises(IngestionFailed, match="Decryption failed"):
            run_ingestion(
                storage, credential_id, CredentialVault("other-key"),
                extractor=lambda u, p: _visits(), policy=policy,
            )


# ---------------------------------------------------------------------------
# Daily sync
# ---------------------------------------------------------------------------

class TestSyncedToday:
    def test_never_synced(self):
        assert synced_today(None, FIXED_NOW, CHICAGO) is False

    def test_same_local_day(self):
        earlier = datetime(2026, 1, 31, 14, 0, tzinfo=timezone.utc)
        assert synced_today(earlier, FIXED_NOW, CHICAGO) is True

    def test_utc_same_day_but_local_previous_day(self):
        # 03:00 UTC on Jan 31 is still Jan 30 in Chicago.
        last = datetime(2026, 1, 31, 3, 0, tzinfo=timezone.utc)
        assert synced_today(last, FIXED_NOW, CHICAGO) is False


class TestRunDailySync:
    def test_skips_when_already_synced(self, storage, vault, credential_id):
        storage.update_credential_sync_time(credential_id, FIXED_NOW)

        def extractor(username, password):
            raise AssertionError("should not run")

        result = run_daily_sync(
            storage, credential_id, vault, CHICAGO,
            now=lambda: FIXED_NOW, extractor=extractor,
        )
        assert result.status == STATUS_SKIPPED
        assert result.log_id is None
        assert storage.list_scraping_logs(credential_id) == []

    def test_runs_when_not_synced(self, storage, vault, credential_id):
        policy, _ = _policy()
        result = run_daily_sync(
            storage, credential_id, vault, CHICAGO,
            now=lambda: FIXED_NOW, extractor=lambda u, p: _visits(), policy=policy,
        )
        assert result.status == "success"
        assert storage.get_credential(credential_id).last_synced_at == FIXED_NOW

    def test_missing_credential(self, storage, vault):
        with pytest.raises(ConfigurationError):
            run_daily_sync(storage, 42, vault, CHICAGO)


# ---------------------------------------------------------------------------
# BackgroundIngestion
# ---------------------------------------------------------------------------

class TestBackgroundIngestion:
    def test_future_carries_result(self, storage, vault, credential_id):
        policy, _ = _policy()
        with BackgroundIngestion(
            storage, vault, extractor=lambda u, p: _visits(), policy=policy,
        ) as runner:
            result = runner.submit(credential_id).result(timeout=10)
        assert result.added == 2

    def test_future_carries_exception(self, storage, vault, credential_id):
        def extractor(username, password):
            raise LoginError("Login failed: nope")

        policy, _ = _policy(max_attempts=1)
        with BackgroundIngestion(storage, vault, extractor=extractor, policy=policy) as runner:
            future = runner.submit(credential_id)
            with pytest.raises(IngestionFailed):
                future.result(timeout=10)

    def test_runs_are_serialised(self, storage, vault, credential_id):
        policy, _ = _policy()
        with BackgroundIngestion(
            storage, vault, extractor=lambda u, p: _visits(), policy=policy,
        ) as runner:
            first = runner.submit(credential_id)
            second = runner.submit(credential_id)
            results = [first.result(timeout=10), second.result(timeout=10)]
        assert [r.added for r in results] == [2, 0]
