"""
quotaledger/features/periods/service.py

Billing period keys (calendar month, UTC).

No persisted state: rollover is implicit. Once the month changes, usage
reads and writes address a new key and the previous record is left alone.
"""

import re
from datetime import datetime, timezone
from typing import Optional, Tuple

from quotaledger.core.errors import ValidationError

_PERIOD_RE = re.compile(r"^(\d{4})-(0[1-9]|1[0-2])$")


def as_utc(now: Optional[datetime] = None) -> datetime:
    """Wall clock when now is None; naive values are taken as UTC."""
    if now is None:
        return datetime.now(timezone.utc)
    if now.tzinfo is None:
        return now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc)


def _month_start(year: int, month: int) -> datetime:
    return datetime(year, month, 1, tzinfo=timezone.utc)


def _add_months(year: int, month: int, delta: int) -> Tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


def current_period_key(now: Optional[datetime] = None) -> str:
    """Period key for `now` (default: wall clock), e.g. "2026-10"."""
    ts = as_utc(now)
    return f"{ts.year:04d}-{ts.month:02d}"


def parse_period_key(period_key: str) -> Tuple[int, int]:
    """
    Parse "YYYY-MM" into (year, month).

    Raises:
        ValidationError: If the key is malformed.
    """
    match = _PERIOD_RE.match(period_key or "")
    if not match:
        raise ValidationError(f"Invalid period key '{period_key}': expected YYYY-MM")
    return int(match.group(1)), int(match.group(2))


def period_bounds(period_key: str) -> Tuple[datetime, datetime]:
    """[start, end) of a period in UTC."""
    year, month = parse_period_key(period_key)
    return _month_start(year, month), _month_start(*_add_months(year, month, 1))


def next_period_start(now: Optional[datetime] = None) -> datetime:
    """First instant of the next calendar month, UTC. This is the quota reset date."""
    ts = as_utc(now)
    return _month_start(*_add_months(ts.year, ts.month, 1))


def previous_period_key(period_key: Optional[str] = None, now: Optional[datetime] = None) -> str:
    key = period_key or current_period_key(now)
    year, month = _add_months(*parse_period_key(key), -1)
    return f"{year:04d}-{month:02d}"
