"""Normalization functions for portal history rows and CLI input.

All functions accept str | None and return the appropriate type or None.
"""

from __future__ import annotations

import re
from datetime import date, datetime

_PORTAL_DATE_RE = re.compile(r"(\d{1,2})/(\d{1,2})/(\d{4})")
_ISO_DATE_FORMAT = "%Y-%m-%d"
_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?\s*([AaPp][Mm])?$")


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


# ---------------------------------------------------------------------------
# Rule 3: portal_date_to_iso
# ---------------------------------------------------------------------------

def portal_date_to_iso(value: str | None) -> str | None:
    """Reformat a portal 'MM/DD/YYYY' cell to 'YYYY-MM-DD'.

    Single-digit month/day are accepted ('1/5/2026' → '2026-01-05') and the
    date may be embedded in other text ('01/31/2026 Sat').
    Anything else, including impossible calendar dates, returns None so the
    caller can drop the row.
    """
    v = trim(value)
    if v is None:
        return None
    m = _PORTAL_DATE_RE.search(v)
    if not m:
        return None
    month, day, year = (int(g) for g in m.groups())
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Rule 4: parse_iso_date
# ---------------------------------------------------------------------------

def parse_iso_date(value: str | None) -> date | None:
    """Parse 'YYYY-MM-DD'. Returns None on blank or malformed input."""
    v = trim(value)
    if v is None:
        return None
    try:
        return datetime.strptime(v, _ISO_DATE_FORMAT).date()
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Rule 5: normalize_time
# ---------------------------------------------------------------------------

def normalize_time(value: str | None) -> str | None:
    """Return a visit time as 'HH:MM' (24h), or the trimmed raw text.

    The portal prints times like '9:42 AM'; manual entries arrive as '10:30'.
    Unrecognised text is kept as-is (trimmed, at most 8 chars) rather than
    dropped, since time is part of the de-duplication key.
    """
    v = normalize_space(value)
    if v is None:
        return None
    m = _TIME_RE.match(v)
    if not m:
        return v[:8]
    hour, minute = int(m.group(1)), int(m.group(2))
    meridiem = (m.group(4) or "").lower()
    if meridiem == "pm" and hour < 12:
        hour += 12
    elif meridiem == "am" and hour == 12:
        hour = 0
    if hour > 23 or minute > 59:
        return v[:8]
    return f"{hour:02d}:{minute:02d}"


# ---------------------------------------------------------------------------
# Rule 6: normalize_label
# ---------------------------------------------------------------------------

def normalize_label(value: str | None) -> str | None:
    """Collapse whitespace in a pass-type label and cap it at 64 chars."""
    v = normalize_space(value)
    if v is None:
        return None
    return v[:64]
