"""Unit tests for badge_etl.storage.MemoryStorage and open_storage."""

from datetime import date, datetime, timedelta, timezone

import pytest

from badge_etl.config import Settings
from badge_etl.errors import DuplicateVisitError
from badge_etl.models import Credential, ScrapingLog, Season, Visit, WeatherDay
from badge_etl.storage import MemoryStorage, open_storage


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def season_id(storage):
    return storage.insert_season(
        Season(id=None, name="2025/2026 Season", start_date=date(2025, 7, 1))
    )


def _visit(season_id, d=date(2026, 1, 3), t="10:00", manual=False):
    return Visit(id=None, season_id=season_id, visit_date=d, visit_time=t, is_manual=manual)


class TestVisits:
    def test_key_includes_null_time(self, storage, season_id):
        assert storage.insert_visit_if_absent(_visit(season_id, t=None)) is not None
        assert storage.insert_visit_if_absent(_visit(season_id, t=None)) is None

    def test_manual_flag_is_part_of_key(self, storage, season_id):
        assert storage.insert_visit_if_absent(_visit(season_id)) is not None
        assert storage.insert_visit_if_absent(_visit(season_id, manual=True)) is not None

    def test_list_filters_and_order(self, storage, season_id):
        storage.insert_visit_if_absent(_visit(season_id, date(2026, 1, 5)))
        storage.insert_visit_if_absent(_visit(season_id, date(2026, 1, 3), "14:00"))
        storage.insert_visit_if_absent(_visit(season_id, date(2026, 1, 3), "09:00", manual=True))
        all_visits = storage.list_visits(season_id=season_id)
        assert [(v.visit_date, v.visit_time) for v in all_visits] == [
            (date(2026, 1, 3), "09:00"),
            (date(2026, 1, 3), "14:00"),
            (date(2026, 1, 5), "10:00"),
        ]
        assert len(storage.list_visits(manual=True)) == 1
        assert len(storage.list_visits(start=date(2026, 1, 4))) == 1
        assert len(storage.list_visits(end=date(2026, 1, 3))) == 2

    def test_returned_records_are_copies(self, storage, season_id):
        visit_id = storage.insert_visit_if_absent(_visit(season_id))
        storage.get_visit(visit_id).notes = "mutated"
        assert storage.get_visit(visit_id).notes is None

    def test_update_rejects_unknown_fields(self, storage, season_id):
        visit_id = storage.insert_visit_if_absent(_visit(season_id))
        with pytest.raises(ValueError):
            storage.update_visit(visit_id, season_id=2)

    def test_update_collision(self, storage, season_id):
        storage.insert_visit_if_absent(_visit(season_id, t="10:00"))
        other = storage.insert_visit_if_absent(_visit(season_id, t="11:00"))
        with pytest.raises(DuplicateVisitError):
            storage.update_visit(other, visit_time="10:00")

    def test_reassign_collision(self, storage, season_id):
        target = storage.insert_season(
            Season(id=None, name="other", start_date=date(2025, 11, 1))
        )
        storage.insert_visit_if_absent(_visit(target))
        moving = storage.insert_visit_if_absent(_visit(season_id))
        with pytest.raises(DuplicateVisitError):
            storage.reassign_visit(moving, target)
        assert storage.get_visit(moving).season_id == season_id

    def test_delete(self, storage, season_id):
        visit_id = storage.insert_visit_if_absent(_visit(season_id))
        assert storage.delete_visit(visit_id) is True
        assert storage.delete_visit(visit_id) is False

    def test_delete_before(self, storage, season_id):
        storage.insert_visit_if_absent(_visit(season_id, date(2025, 8, 1)))
        storage.insert_visit_if_absent(_visit(season_id, date(2026, 1, 3)))
        assert storage.delete_visits_before(season_id, date(2025, 12, 1)) == 1


class TestSeasons:
    def test_name_conflict_returns_existing(self, storage, season_id):
        again = storage.insert_season(
            Season(id=None, name="2025/2026 Season", start_date=date(2025, 7, 1))
        )
        assert again == season_id
        assert len(storage.list_seasons()) == 1

    def test_invalid_status(self, storage, season_id):
        with pytest.raises(ValueError):
            storage.update_season_status(season_id, "archived")

    def test_delete_with_visits_refused(self, storage, season_id):
        storage.insert_visit_if_absent(_visit(season_id))
        with pytest.raises(ValueError):
            storage.delete_season(season_id)


class TestCredentials:
    def test_save_is_upsert_per_owner_and_type(self, storage):
        first = storage.save_credential(
            Credential(id=None, owner_id=1, encrypted_username="a", encrypted_password="b")
        )
        second = storage.save_credential(
            Credential(id=None, owner_id=1, encrypted_username="c", encrypted_password="d")
        )
        assert first == second
        assert storage.get_credential(first).encrypted_username == "c"
        assert storage.get_credential_for_owner(1).id == first
        assert storage.get_credential_for_owner(2) is None


class TestScrapingLogs:
    def test_newest_first_and_limit(self, storage):
        base = datetime(2026, 1, 1, tzinfo=timezone.utc)
        for i in range(5):
            storage.insert_scraping_log(
                ScrapingLog(id=None, credential_id=1, created_at=base + timedelta(hours=i))
            )
        storage.insert_scraping_log(ScrapingLog(id=None, credential_id=2, created_at=base))
        rows = storage.list_scraping_logs(1, limit=3)
        assert [r.id for r in rows] == [5, 4, 3]

    def test_patch_validation(self, storage):
        log_id = storage.insert_scraping_log(ScrapingLog(id=None, credential_id=1))
        with pytest.raises(ValueError):
            storage.update_scraping_log(log_id, status="done")
        with pytest.raises(ValueError):
            storage.update_scraping_log(log_id, credential_id=3)
        storage.update_scraping_log(log_id, status="success", visits_found=4)
        entry = storage.get_scraping_log(log_id)
        assert (entry.status, entry.visits_found) == ("success", 4)


class TestWeather:
    def test_upsert_and_range(self, storage):
        storage.upsert_weather_day(WeatherDay(date(2026, 1, 4), temp_high=10))
        storage.upsert_weather_day(WeatherDay(date(2026, 1, 3), temp_high=5))
        storage.upsert_weather_day(WeatherDay(date(2026, 1, 3), temp_high=7))
        days = storage.weather_range(date(2026, 1, 1), date(2026, 1, 3))
        assert [(d.weather_date, d.temp_high) for d in days] == [(date(2026, 1, 3), 7)]


class TestOpenStorage:
    def test_no_dsn_gives_memory(self):
        assert isinstance(open_storage(Settings()), MemoryStorage)
