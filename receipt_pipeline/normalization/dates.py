"""Receipt date parsing and plausibility checks.

The pipeline has no "unknown date" state: every path through this module
returns a concrete date that lies between one year ago and tomorrow.
"""

import random
import re
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Literal

ConfidenceLevel = Literal["high", "medium", "low"]

_ISO_PREFIX = re.compile(r"^(\d{4}-\d{2}-\d{2})")

# (pattern, group order) in priority order; two-digit years are expanded later
_DATE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"(\d{4})-(\d{1,2})-(\d{1,2})"), "ymd"),
    (re.compile(r"(\d{1,2})/(\d{1,2})/(\d{4})"), "mdy"),
    (re.compile(r"(\d{1,2})-(\d{1,2})-(\d{4})"), "mdy"),
    (re.compile(r"(\d{1,2})/(\d{1,2})/(\d{2})(?!\d)"), "mdy2"),
    (re.compile(r"(\d{1,2})-(\d{1,2})-(\d{2})(?!\d)"), "mdy2"),
]

_FILENAME_YMD = re.compile(r"(\d{4})[_-](\d{1,2})[_-](\d{1,2})")
_FILENAME_MDY = re.compile(r"(\d{1,2})[_-](\d{1,2})[_-](\d{4})")

RECENT_DAYS = 14
EARLIEST_FILENAME_YEAR = 2020


@dataclass(frozen=True)
class DateAssessment:
    """A normalized date plus how much we trust it."""

    value: date
    confidence: ConfidenceLevel


def expand_two_digit_year(year: int) -> int:
    """Map a two-digit year to a century: below 50 is 20xx, otherwise 19xx."""
    return 2000 + year if year < 50 else 1900 + year


def parse_date(text: str | None) -> date | None:
    """Parse a free-form date string.

    Tries an ISO ``YYYY-MM-DD`` prefix first (which also covers full ISO
    timestamps), then ``YYYY-MM-DD`` anywhere, ``MM/DD/YYYY``, ``MM-DD-YYYY``
    and the two-digit-year variants of the last two.

    Args:
        text: Raw date text, e.g. from a vision model

    Returns:
        Parsed date, or None if nothing calendar-valid was found
    """
    if not text:
        return None
    text = str(text).strip()

    iso_match = _ISO_PREFIX.match(text)
    if iso_match:
        try:
            return date.fromisoformat(iso_match.group(1))
        except ValueError:
            pass

    for pattern, order in _DATE_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        first, second, third = (int(g) for g in match.groups())
        if order == "ymd":
            year, month, day = first, second, third
        elif order == "mdy":
            month, day, year = first, second, third
        else:
            month, day, year = first, second, expand_two_digit_year(third)
        try:
            return date(year, month, day)
        except ValueError:
            continue

    return None


def plausible_window(today: date) -> tuple[date, date]:
    """Return the inclusive (earliest, latest) range accepted for receipt dates."""
    try:
        earliest = today.replace(year=today.year - 1)
    except ValueError:
        # Feb 29 -> Feb 28 of the previous year
        earliest = today.replace(year=today.year - 1, day=28)
    return earliest, today + timedelta(days=1)


def is_plausible(value: date, today: date) -> bool:
    earliest, latest = plausible_window(today)
    return earliest <= value <= latest


def _date_from_filename(filename: str, today: date) -> date | None:
    candidates = []
    ymd = _FILENAME_YMD.search(filename)
    if ymd:
        year, month, day = (int(g) for g in ymd.groups())
        candidates.append((year, month, day))
    mdy = _FILENAME_MDY.search(filename)
    if mdy:
        month, day, year = (int(g) for g in mdy.groups())
        candidates.append((year, month, day))

    for year, month, day in candidates:
        if not (EARLIEST_FILENAME_YEAR <= year <= today.year and 1 <= month <= 12):
            continue
        try:
            value = date(year, month, day)
        except ValueError:
            continue
        if is_plausible(value, today):
            return value
    return None


def reasonable_date(
    filename: str = "",
    today: date | None = None,
    rng: random.Random | None = None,
) -> DateAssessment:
    """Derive a usable date when nothing trustworthy was extracted.

    A date embedded in the filename wins with medium confidence; otherwise a
    day within the last two weeks is picked at random with low confidence.
    """
    today = today or date.today()
    from_filename = _date_from_filename(filename or "", today)
    if from_filename is not None:
        return DateAssessment(value=from_filename, confidence="medium")

    days_ago = (rng or random).randrange(RECENT_DAYS)
    return DateAssessment(value=today - timedelta(days=days_ago), confidence="low")


def validate_and_fix_date(
    text: str | None,
    filename: str = "",
    today: date | None = None,
    rng: random.Random | None = None,
) -> DateAssessment:
    """Normalize a raw date, replacing anything missing or implausible.

    Args:
        text: Raw date text
        filename: Original document filename, scanned for an embedded date on rejection
        today: Reference day (defaults to the current date)
        rng: Random source for the recent-date fallback

    Returns:
        DateAssessment with ``high`` confidence when the input was accepted as-is
    """
    today = today or date.today()
    parsed = parse_date(text)
    if parsed is None or not is_plausible(parsed, today):
        return reasonable_date(filename, today=today, rng=rng)
    return DateAssessment(value=parsed, confidence="high")
