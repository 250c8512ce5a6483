"""
Billing period keys and bounds.
"""
from datetime import datetime, timedelta, timezone

import pytest

from quotaledger.core.errors import ValidationError
from quotaledger.features.periods.service import (
    as_utc,
    current_period_key,
    next_period_start,
    parse_period_key,
    period_bounds,
    previous_period_key,
)


def test_current_period_key_uses_utc_month():
    assert current_period_key(datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc)) == "2026-10"
    # 23:30 on Oct 31 at UTC-5 is already November in UTC
    eastern = timezone(timedelta(hours=-5))
    assert current_period_key(datetime(2026, 10, 31, 23, 30, tzinfo=eastern)) == "2026-11"


def test_naive_datetimes_are_utc():
    naive = datetime(2026, 1, 1, 0, 0)
    assert as_utc(naive).tzinfo == timezone.utc
    assert current_period_key(naive) == "2026-01"


def test_next_period_start_rolls_over_year():
    assert next_period_start(datetime(2026, 12, 31, 23, 59, 59, tzinfo=timezone.utc)) == datetime(
        2027, 1, 1, tzinfo=timezone.utc
    )
    assert next_period_start(datetime(2026, 10, 1, tzinfo=timezone.utc)) == datetime(
        2026, 11, 1, tzinfo=timezone.utc
    )


def test_period_bounds_are_half_open():
    start, end = period_bounds("2024-02")
    assert start == datetime(2024, 2, 1, tzinfo=timezone.utc)
    assert end == datetime(2024, 3, 1, tzinfo=timezone.utc)
    last_instant = end - timedelta(microseconds=1)
    assert current_period_key(last_instant) == "2024-02"
    assert current_period_key(end) == "2024-03"


def test_previous_period_key():
    assert previous_period_key("2026-01") == "2025-12"
    assert previous_period_key(now=datetime(2026, 10, 18, tzinfo=timezone.utc)) == "2026-09"


@pytest.mark.parametrize("bad", ["2026-13", "2026-00", "26-10", "2026/10", "", "2026-1"])
def test_parse_period_key_rejects_malformed(bad):
    with pytest.raises(ValidationError):
        parse_period_key(bad)


def test_parse_period_key():
    assert parse_period_key("2026-10") == (2026, 10)
