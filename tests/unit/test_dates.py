"""Unit tests for date parsing and plausibility.

Tests cover:
- Supported formats and two-digit years
- Plausible window edges
- Replacement of implausible dates (filename date, then recent random date)
"""

import random
from datetime import date, timedelta

import pytest

from receipt_pipeline.normalization.dates import (
    expand_two_digit_year,
    is_plausible,
    parse_date,
    plausible_window,
    reasonable_date,
    validate_and_fix_date,
)

TODAY = date(2024, 12, 16)


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("2024-12-15", date(2024, 12, 15)),
        ("2024-12-15T10:22:00Z", date(2024, 12, 15)),
        ("Date: 2024-3-5", date(2024, 3, 5)),
        ("12/15/2024", date(2024, 12, 15)),
        ("12-15-2024", date(2024, 12, 15)),
        ("12/15/24", date(2024, 12, 15)),
        ("01-02-99", date(1999, 1, 2)),
    ],
)
def test_parse_date_formats(text: str, expected: date) -> None:
    assert parse_date(text) == expected


@pytest.mark.parametrize("text", [None, "", "yesterday", "13/45/2024", "2024-02-30"])
def test_parse_date_rejects_garbage(text: str | None) -> None:
    assert parse_date(text) is None


def test_expand_two_digit_year() -> None:
    assert expand_two_digit_year(0) == 2000
    assert expand_two_digit_year(49) == 2049
    assert expand_two_digit_year(50) == 1950
    assert expand_two_digit_year(99) == 1999


def test_plausible_window_edges() -> None:
    earliest, latest = plausible_window(TODAY)

    assert earliest == date(2023, 12, 16)
    assert latest == date(2024, 12, 17)
    assert is_plausible(earliest, TODAY)
    assert is_plausible(latest, TODAY)
    assert not is_plausible(earliest - timedelta(days=1), TODAY)
    assert not is_plausible(latest + timedelta(days=1), TODAY)


def test_plausible_window_leap_day() -> None:
    earliest, _ = plausible_window(date(2024, 2, 29))
    assert earliest == date(2023, 2, 28)


def test_validate_accepts_plausible_date() -> None:
    assessment = validate_and_fix_date("2024-12-15", today=TODAY)

    assert assessment.value == date(2024, 12, 15)
    assert assessment.confidence == "high"


def test_validate_replaces_future_date_with_filename_date() -> None:
    assessment = validate_and_fix_date("2031-01-01", "receipt_2024-11-30.jpg", today=TODAY)

    assert assessment.value == date(2024, 11, 30)
    assert assessment.confidence == "medium"


def test_validate_uses_mdy_filename_date() -> None:
    assessment = validate_and_fix_date(None, "scan_11-30-2024.png", today=TODAY)

    assert assessment.value == date(2024, 11, 30)
    assert assessment.confidence == "medium"


def test_filename_date_outside_window_is_ignored() -> None:
    assessment = validate_and_fix_date(
        "1999-01-01", "receipt_2021-05-01.jpg", today=TODAY, rng=random.Random(1)
    )

    assert assessment.confidence == "low"
    assert TODAY - timedelta(days=13) <= assessment.value <= TODAY


def test_reasonable_date_without_hint_is_recent_and_low() -> None:
    rng = random.Random(42)
    for _ in range(50):
        assessment = reasonable_date("photo.jpg", today=TODAY, rng=rng)
        assert assessment.confidence == "low"
        assert TODAY - timedelta(days=13) <= assessment.value <= TODAY


@pytest.mark.parametrize(
    "text",
    ["2019-01-01", "2030-06-01", "01/01/1970", "12/18/2024", "garbage", None],
)
def test_date_safety(text: str | None) -> None:
    """Normalized dates always fall inside the plausible window."""
    assessment = validate_and_fix_date(text, "whatever.jpg", today=TODAY, rng=random.Random(7))
    assert is_plausible(assessment.value, TODAY)
