import threading
from typing import Dict, Iterable, List, Set, Tuple

from klineflow.common.types import Bar, Period


class InMemoryBarStore:
    """Dict-backed BarStore for tests and ``--dry_run`` scripts."""

    def __init__(self, bars: Iterable[Bar] = ()):
        self._lock = threading.Lock()
        self._rows: Dict[Tuple[str, str, int], Bar] = {}
        for b in bars:
            self.save(b)

    @staticmethod
    def _key(symbol, period, bar_time) -> Tuple[str, str, int]:
        return symbol, Period.parse(period).code, int(bar_time)

    def exists(self, symbol: str, period: Period, bar_time: int) -> bool:
        with self._lock:
            return self._key(symbol, period, bar_time) in self._rows

    def save(self, bar: Bar) -> bool:
        key = self._key(bar.symbol, bar.period, bar.bar_time)
        with self._lock:
            if key in self._rows:
                return False
            self._rows[key] = bar
            return True

    def save_many(self, bars: Iterable[Bar]) -> int:
        return sum(1 for b in bars if self.save(b))

    def _select(self, symbol, period) -> List[Bar]:
        code = Period.parse(period).code
        with self._lock:
            rows = [b for (s, p, _), b in self._rows.items() if s == symbol and p == code]
        rows.sort(key=lambda b: b.bar_time)
        return rows

    def query(self, symbol: str, period: Period, start: int, end: int) -> List[Bar]:
        return [b for b in self._select(symbol, period) if start <= b.bar_time < end]

    def query_latest(self, symbol: str, period: Period, limit: int) -> List[Bar]:
        rows = self._select(symbol, period)
        return rows[-limit:] if limit > 0 else []

    def query_distinct_timestamps(self, symbol: str, start: int, end: int) -> Set[int]:
        return {b.bar_time for b in self.query(symbol, Period.M1, start, end)}

    def count(self, symbol: str, period: Period) -> int:
        return len(self._select(symbol, period))

    def __len__(self) -> int:
        with self._lock:
            return len(self._rows)
