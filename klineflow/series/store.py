from __future__ import annotations

import bisect
import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from klineflow.common.config import SubscriptionRegistry
from klineflow.common.types import AGGREGATED_PERIODS, Bar, Period
from klineflow.storage.base import BarStore

log = logging.getLogger(__name__)

DEFAULT_MAX_BARS = 365


@dataclass(frozen=True)
class BootstrapSummary:
    loaded: int = 0
    empty: int = 0
    skipped: int = 0
    failed: int = 0


class _Series:
    def __init__(self, symbol: str, period: Period, max_bars: int):
        self.symbol = symbol
        self.period = period
        self.max_bars = max_bars
        self.lock = threading.Lock()
        # readers take this tuple without locking; writers replace it
        self.snapshot: Tuple[Bar, ...] = ()

    def load(self, bars: Sequence[Bar]):
        # bars closed live while the history query ran win over stored copies
        with self.lock:
            self.snapshot = self._normalize(self.snapshot + tuple(bars))

    def add(self, bar: Bar) -> bool:
        with self.lock:
            cur = self.snapshot
            if any(b.bar_time == bar.bar_time for b in cur):
                return False
            merged = cur + (bar,)
            if cur and bar.bar_time < cur[-1].bar_time:
                merged = tuple(sorted(merged, key=lambda b: b.bar_time))
            self.snapshot = merged[-self.max_bars:]
            return True

    def _normalize(self, bars: Sequence[Bar]) -> Tuple[Bar, ...]:
        by_time: Dict[int, Bar] = {}
        for b in bars:
            by_time.setdefault(b.bar_time, b)
        ordered = [by_time[t] for t in sorted(by_time)]
        return tuple(ordered[-self.max_bars:])


class BarSeriesView:
    """Read-only view over one (symbol, period) series; always sees a consistent snapshot."""

    def __init__(self, series: _Series):
        self._series = series

    @property
    def symbol(self) -> str:
        return self._series.symbol

    @property
    def period(self) -> Period:
        return self._series.period

    def bars(self) -> List[Bar]:
        return list(self._series.snapshot)

    def __getitem__(self, index):
        return self._series.snapshot[index]

    def get(self, index: int) -> Optional[Bar]:
        snap = self._series.snapshot
        if -len(snap) <= index < len(snap):
            return snap[index]
        return None

    def size(self) -> int:
        return len(self._series.snapshot)

    def __len__(self) -> int:
        return self.size()

    def latest(self) -> Optional[Bar]:
        snap = self._series.snapshot
        return snap[-1] if snap else None

    def bars_before(self, t_ms: int) -> List[Bar]:
        """Bars with ``bar_time < t_ms``, oldest first."""
        snap = self._series.snapshot
        i = bisect.bisect_left([b.bar_time for b in snap], int(t_ms))
        return list(snap[:i])

    def __repr__(self) -> str:
        return f"BarSeriesView({self.symbol} {self.period} size={self.size()})"


class BarSeriesStore:
    """
    Bounded in-memory bar history per (symbol, period) for downstream readers.

    Seeded from the persistent store by ``bootstrap()`` and kept current by
    ``on_bar_closed``, which is meant to be subscribed to the Aggregator.
    """

    def __init__(
        self,
        store: BarStore,
        registry: SubscriptionRegistry,
        periods: Sequence[Period] = AGGREGATED_PERIODS,
        max_bars: int = DEFAULT_MAX_BARS,
    ):
        self.store = store
        self.registry = registry
        self.periods = tuple(Period.parse(p) for p in periods)
        self.max_bars = int(max_bars)
        self._lock = threading.Lock()
        self._series: Dict[Tuple[str, Period], _Series] = {}

    def _get_or_create(self, symbol: str, period: Period) -> Tuple[_Series, bool]:
        key = (symbol, period)
        with self._lock:
            s = self._series.get(key)
            if s is not None:
                return s, False
            s = _Series(symbol, period, self.max_bars)
            self._series[key] = s
            return s, True

    def _load(self, symbol: str, period: Period) -> str:
        s, created = self._get_or_create(symbol, period)
        if not created:
            return "skipped"
        try:
            bars = self.store.query_latest(symbol, period, self.max_bars)
        except Exception as e:
            log.error("[series] load failed symbol=%s period=%s err=%s: %s", symbol, period, type(e).__name__, e)
            # leave an empty series so live bars still land; refresh() will not retry it
            return "failed"
        s.load(bars)
        log.debug("[series] loaded symbol=%s period=%s bars=%d", symbol, period, len(s.snapshot))
        return "loaded" if bars else "empty"

    def bootstrap(self) -> BootstrapSummary:
        counts = {"loaded": 0, "empty": 0, "skipped": 0, "failed": 0}
        for symbol in self.registry.list_enabled():
            for period in self.periods:
                counts[self._load(symbol, period)] += 1
        summary = BootstrapSummary(**counts)
        log.info("[series] bootstrap loaded=%d empty=%d skipped=%d failed=%d",
                 summary.loaded, summary.empty, summary.skipped, summary.failed)
        return summary

    def refresh(self) -> BootstrapSummary:
        self.registry.refresh()
        return self.bootstrap()

    def on_bar_closed(self, bar: Bar):
        if bar.period not in self.periods:
            return
        s, created = self._get_or_create(bar.symbol, bar.period)
        if created:
            log.info("[series] new series symbol=%s period=%s", bar.symbol, bar.period)
        if not s.add(bar):
            log.debug("[series] duplicate bar_time=%d symbol=%s period=%s", bar.bar_time, bar.symbol, bar.period)

    def get_series(self, symbol: str, period) -> Optional[BarSeriesView]:
        with self._lock:
            s = self._series.get((symbol, Period.parse(period)))
        return BarSeriesView(s) if s is not None else None
