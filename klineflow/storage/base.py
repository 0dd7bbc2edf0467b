from __future__ import annotations

from typing import Iterable, List, Protocol, Set

from klineflow.common.types import Bar, Period


class BarStore(Protocol):
    """
    Persistent OHLCV store keyed by (symbol, period, bar_time).

    ``save`` is idempotent: it returns False when the row already exists and
    never raises on a duplicate. Range arguments are half-open ``[start, end)``.
    """

    def exists(self, symbol: str, period: Period, bar_time: int) -> bool: ...

    def save(self, bar: Bar) -> bool: ...

    def save_many(self, bars: Iterable[Bar]) -> int: ...

    def query(self, symbol: str, period: Period, start: int, end: int) -> List[Bar]: ...

    def query_latest(self, symbol: str, period: Period, limit: int) -> List[Bar]: ...

    def query_distinct_timestamps(self, symbol: str, start: int, end: int) -> Set[int]: ...
