from __future__ import annotations

import threading
from decimal import Decimal
from typing import Optional, Set

from klineflow.common.timeutil import window_end
from klineflow.common.types import Bar, MinuteBarEvent, Period


class AggregationBucket:
    """
    Accumulates 1m bars into one period window ``[window_start, window_end)``.

    ``open`` comes from the first bar absorbed, ``close`` from the bar with the
    latest open time, whatever order the bars arrive in.
    """

    def __init__(self, symbol: str, period: Period, window_start: int):
        self.symbol = symbol
        self.period = period
        self.window_start = int(window_start)
        self.window_end = window_end(window_start, period)
        self.lock = threading.Lock()

        self.open: Optional[Decimal] = None
        self.high: Optional[Decimal] = None
        self.low: Optional[Decimal] = None
        self.close: Optional[Decimal] = None
        self.volume = Decimal(0)
        self.count = 0
        self.last_open_time: Optional[int] = None
        self.source_times: Set[int] = set()
        self.closed = False

    @property
    def expected_count(self) -> int:
        return self.period.minutes

    @property
    def complete(self) -> bool:
        return self.count >= self.expected_count

    def add(self, event: MinuteBarEvent) -> bool:
        """Merge one bar; returns False if already absorbed or the bucket is closed."""
        with self.lock:
            t = int(event.open_time)
            if self.closed or t in self.source_times:
                return False
            self.source_times.add(t)

            if self.count == 0:
                self.open = event.open
                self.high = event.high
                self.low = event.low
            else:
                self.high = max(self.high, event.high)
                self.low = min(self.low, event.low)
            if self.last_open_time is None or t > self.last_open_time:
                self.last_open_time = t
                self.close = event.close
            self.volume += event.volume
            self.count += 1
            return True

    def seal(self) -> Bar:
        with self.lock:
            self.closed = True
        return self.to_bar()

    def to_bar(self) -> Bar:
        with self.lock:
            if self.count == 0:
                raise ValueError(f"empty bucket {self.symbol} {self.period} {self.window_start}")
            return Bar(
                symbol=self.symbol,
                period=self.period,
                bar_time=self.window_end,
                open=self.open,
                high=self.high,
                low=self.low,
                close=self.close,
                volume=self.volume,
                source_count=self.count,
            )

    def __repr__(self) -> str:
        return (f"AggregationBucket({self.symbol} {self.period} start={self.window_start} "
                f"count={self.count}/{self.expected_count})")
