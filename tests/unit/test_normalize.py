"""Unit tests for badge_etl.normalize."""

from datetime import date

from badge_etl.normalize import (
    normalize_label,
    normalize_space,
    normalize_time,
    parse_iso_date,
    portal_date_to_iso,
    trim,
)


# ---------------------------------------------------------------------------
# trim
# ---------------------------------------------------------------------------

class TestTrim:
    def test_strips_whitespace(self):
        assert trim("  hello  ") == "hello"

    def test_empty_string_returns_none(self):
        assert trim("") is None

    def test_whitespace_only_returns_none(self):
        assert trim("   ") is None

    def test_none_returns_none(self):
        assert trim(None) is None


# ---------------------------------------------------------------------------
# normalize_space
# ---------------------------------------------------------------------------

class TestNormalizeSpace:
    def test_collapses_internal_spaces(self):
        assert normalize_space("Season   Pass") == "Season Pass"

    def test_collapses_newlines_and_tabs(self):
        assert normalize_space("Season\n\t Pass") == "Season Pass"

    def test_none(self):
        assert normalize_space(None) is None


# ---------------------------------------------------------------------------
# portal_date_to_iso
# ---------------------------------------------------------------------------

class TestPortalDateToIso:
    def test_zero_padded(self):
        assert portal_date_to_iso("01/31/2026") == "2026-01-31"

    def test_single_digit_month_and_day(self):
        assert portal_date_to_iso("1/5/2026") == "2026-01-05"

    def test_date_embedded_in_text(self):
        assert portal_date_to_iso(" 12/14/2025 Sun ") == "2025-12-14"

    def test_impossible_calendar_date(self):
        assert portal_date_to_iso("2/30/2026") is None

    def test_header_text(self):
        assert portal_date_to_iso("Date") is None

    def test_blank(self):
        assert portal_date_to_iso("") is None
        assert portal_date_to_iso(None) is None


# ---------------------------------------------------------------------------
# parse_iso_date
# ---------------------------------------------------------------------------

class TestParseIsoDate:
    def test_valid(self):
        assert parse_iso_date("2026-01-31") == date(2026, 1, 31)

    def test_portal_format_rejected(self):
        assert parse_iso_date("01/31/2026") is None

    def test_garbage(self):
        assert parse_iso_date("not-a-date") is None

    def test_none(self):
        assert parse_iso_date(None) is None


# ---------------------------------------------------------------------------
# normalize_time
# ---------------------------------------------------------------------------

class TestNormalizeTime:
    def test_morning(self):
        assert normalize_time("9:42 AM") == "09:42"

    def test_afternoon(self):
        assert normalize_time("1:15 pm") == "13:15"

    def test_noon(self):
        assert normalize_time("12:30 PM") == "12:30"

    def test_midnight(self):
        assert normalize_time("12:05 AM") == "00:05"

    def test_24_hour_passthrough(self):
        assert normalize_time("10:30") == "10:30"

    def test_seconds_dropped(self):
        assert normalize_time("18:07:59") == "18:07"

    def test_no_space_before_meridiem(self):
        assert normalize_time("7:05PM") == "19:05"

    def test_unrecognised_text_kept(self):
        assert normalize_time("evening") == "evening"

    def test_unrecognised_text_truncated(self):
        assert normalize_time("around lunchtime") == "around l"

    def test_out_of_range_kept_raw(self):
        assert normalize_time("25:00") == "25:00"

    def test_blank(self):
        assert normalize_time("  ") is None


# ---------------------------------------------------------------------------
# normalize_label
# ---------------------------------------------------------------------------

class TestNormalizeLabel:
    def test_collapses(self):
        assert normalize_label("  Adult   Season Pass ") == "Adult Season Pass"

    def test_capped_at_64(self):
        assert len(normalize_label("x" * 100)) == 64

    def test_none(self):
        assert normalize_label(None) is None
