"""End-to-end ingestion against PostgreSQL with a scripted extractor."""

from datetime import date
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from badge_etl.errors import ExtractionError, IngestionFailed
from badge_etl.models import Credential, RawVisit
from badge_etl.orchestrator import RetryPolicy, run_ingestion
from badge_etl.storage import PostgresStorage
from badge_etl.vault import CredentialVault

KEY = "integration-key"


@pytest.fixture
def conn(db_conn):
    c, _ = db_conn
    return c


@pytest.fixture
def dsn(db_conn):
    _, d = db_conn
    return d


@pytest.fixture
def storage(conn):
    return PostgresStorage(conn)


@pytest.fixture
def vault():
    return CredentialVault(KEY)


@pytest.fixture
def credential_id(storage, vault):
    return storage.save_credential(Credential(
        id=None, owner_id=1,
        encrypted_username=vault.encrypt("skier@example.com"),
        encrypted_password=vault.encrypt("hunter2"),
    ))


def _policy():
    return RetryPolicy(max_attempts=3, delay_seconds=0, sleep=lambda s: None)


BATCH = [
    RawVisit(date="2025-06-28", time="10:00", label="Season Pass"),
    RawVisit(date="2025-12-14", time="09:42", label="Season Pass"),
    RawVisit(date="2026-01-03", time=None, label="Season Pass"),
]


class TestRunIngestion:
    def test_routes_to_seasons_and_is_idempotent(self, storage, vault, credential_id, conn):
        first = run_ingestion(
            storage, credential_id, vault, extractor=lambda u, p: BATCH, policy=_policy(),
        )
        assert (first.found, first.added) == (3, 3)
        names = [s.name for s in storage.list_seasons()]
        assert names == ["2024/2025 Season", "2025/2026 Season"]

        second = run_ingestion(
            storage, credential_id, vault, extractor=lambda u, p: BATCH, policy=_policy(),
        )
        assert (second.added, second.duplicates) == (0, 3)
        count = conn.execute("SELECT count(*) FROM visit").fetchone()[0]
        assert count == 3
        logs = storage.list_scraping_logs(credential_id)
        assert [entry.status for entry in logs] == ["success", "success"]

    def test_failed_attempt_rows_count_as_duplicates_later(
        self, storage, vault, credential_id
    ):
        calls = []

        def extractor(u, p):
            calls.append(1)

            def rows():
                yield BATCH[0]
                if len(calls) == 1:
                    raise ExtractionError("browser crashed mid-parse")
                yield from BATCH[1:]
            return rows()

        result = run_ingestion(storage, credential_id, vault, extractor=extractor, policy=_policy())
        assert result.attempts == 2
        assert result.added == 2
        assert result.duplicates == 1

    def test_exhausted(self, storage, vault, credential_id):
        def extractor(u, p):
            raise ExtractionError("portal down")

        with pytest.raises(IngestionFailed) as info:
            run_ingestion(storage, credential_id, vault, extractor=extractor, policy=_policy())
        entry = storage.get_scraping_log(info.value.log_id)
        assert entry.status == "failed"
        assert entry.error_message == "Failed after 3 attempts. Last error: portal down"


class TestCli:
    def test_ingest_then_stats(self, dsn, storage, credential_id, tmp_path, monkeypatch):
        from badge_etl.cli import main

        monkeypatch.chdir(tmp_path)
        env = {
            "DATABASE_URL": dsn,
            "ENCRYPTION_KEY": KEY,
            "BADGE_ETL_RETRY_DELAY_SECONDS": "0",
        }
        runner = CliRunner()
        with patch("badge_etl.cli.default_extractor", return_value=lambda u, p: BATCH):
            result = runner.invoke(
                main, ["--mode", "ingest", "--credential-id", str(credential_id)], env=env,
            )
        assert result.exit_code == 0, f"CLI failed:\n{result.output}"

        result = runner.invoke(
            main, ["--mode", "stats", "--as-of", date(2026, 1, 31).isoformat()], env=env,
        )
        assert result.exit_code == 0, f"CLI failed:\n{result.output}"
        assert "2025/2026 Season" in result.output
        assert "total" in result.output
