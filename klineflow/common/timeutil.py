"""
Window arithmetic for period-aligned bars.

Every timestamp is UTC epoch milliseconds. Windows are ``[start, end)`` and
aligned to multiples of the period duration from the Unix epoch, so 5m bars
always fall on :00/:05/:10 and 4h bars on 00:00/04:00/08:00 UTC.
"""
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Iterator, Optional

from klineflow.common.types import MS_1M, Period


def now_ms() -> int:
    return int(time.time() * 1000)


def _duration(period) -> int:
    return Period.parse(period).duration_ms


def window_start(instant_ms: int, period) -> int:
    """Start of the period-aligned window containing ``instant_ms``."""
    d = _duration(period)
    return (int(instant_ms) // d) * d


def window_end(start_ms: int, period) -> int:
    return int(start_ms) + _duration(period)


def align_to_minute(ts_ms: int) -> int:
    return (int(ts_ms) // MS_1M) * MS_1M


class TimestampGrid:
    """
    Lazy, restartable sequence of period-aligned close times in ``[start, end)``.

    Iterating twice yields the same values; ``len()`` is computed, not counted.
    """

    def __init__(self, start_ms: int, end_ms: int, period):
        self.period = Period.parse(period)
        self.start = int(start_ms)
        self.end = int(end_ms)
        d = self.period.duration_ms
        self._first = -(-self.start // d) * d  # ceil to grid

    def __iter__(self) -> Iterator[int]:
        d = self.period.duration_ms
        t = self._first
        while t < self.end:
            yield t
            t += d

    def __len__(self) -> int:
        if self._first >= self.end:
            return 0
        d = self.period.duration_ms
        return (self.end - self._first + d - 1) // d

    def __contains__(self, ts) -> bool:
        ts = int(ts)
        return self._first <= ts < self.end and ts % self.period.duration_ms == 0

    def __repr__(self) -> str:
        return f"TimestampGrid({fmt_ms(self.start)}, {fmt_ms(self.end)}, {self.period})"


def expected_timestamps(start_ms: int, end_ms: int, period) -> TimestampGrid:
    return TimestampGrid(start_ms, end_ms, period)


def to_ms(dt: datetime) -> int:
    # naive datetimes are taken as UTC
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def from_ms(ts_ms: int) -> datetime:
    return datetime.fromtimestamp(int(ts_ms) / 1000, tz=timezone.utc)


def parse_time(value: str) -> int:
    """Accept epoch ms or an ISO-8601 string (UTC if no offset)."""
    value = str(value).strip()
    if value.lstrip("-").isdigit():
        return int(value)
    return to_ms(datetime.fromisoformat(value.replace("Z", "+00:00")))


def fmt_ms(ts_ms: Optional[int]) -> str:
    if ts_ms is None:
        return "None"
    return from_ms(ts_ms).strftime("%Y-%m-%dT%H:%M:%SZ")


def is_today_utc(ts_ms: int, now: Optional[int] = None) -> bool:
    today = from_ms(now if now is not None else now_ms()).date()
    return from_ms(ts_ms).date() == today
