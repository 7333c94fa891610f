"""Tests for calendar anchors."""

from datetime import datetime

import pytest

from mailtriage.scheduler import anchors
from mailtriage.scheduler.anchors import period_key


def test_daily_fires_once_per_day():
    anchor = anchors.daily("evening", 17)
    first = datetime(2024, 1, 10, 17, 0, 5)

    assert anchor.due(first)
    anchor.mark_fired(first)
    assert not anchor.due(datetime(2024, 1, 10, 17, 0, 35))
    assert not anchor.due(datetime(2024, 1, 11, 16, 59))
    assert anchor.due(datetime(2024, 1, 11, 17, 0))


def test_minute_must_match_exactly():
    anchor = anchors.daily("morning", 8)
    assert not anchor.due(datetime(2024, 1, 10, 8, 1))
    assert not anchor.due(datetime(2024, 1, 10, 7, 59))


def test_weekly_requires_weekday():
    anchor = anchors.weekly("weekly", 5, 18)
    assert anchor.due(datetime(2024, 1, 13, 18, 0))  # Saturday
    assert not anchor.due(datetime(2024, 1, 12, 18, 0))  # Friday


def test_monthly_and_yearly():
    monthly = anchors.monthly("monthly", 1, 19)
    yearly = anchors.yearly("yearly", 1, 1, 20)

    assert monthly.due(datetime(2024, 3, 1, 19, 0))
    assert not monthly.due(datetime(2024, 3, 2, 19, 0))
    assert yearly.due(datetime(2025, 1, 1, 20, 0))
    assert not yearly.due(datetime(2025, 2, 1, 20, 0))


@pytest.mark.parametrize("period,now,expected", [
    ("day", datetime(2024, 1, 10, 9), datetime(2024, 1, 10).date()),
    ("week", datetime(2024, 1, 13, 9), (2024, 2)),
    ("month", datetime(2024, 1, 13, 9), (2024, 1)),
    ("year", datetime(2024, 1, 13, 9), 2024),
])
def test_period_keys(period, now, expected):
    assert period_key(period, now) == expected


def test_unknown_period():
    with pytest.raises(ValueError):
        period_key("fortnight", datetime(2024, 1, 1))
