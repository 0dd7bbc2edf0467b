from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from klineflow.aggregation.bucket import AggregationBucket
from klineflow.aggregation.persistence import PersistenceWorker
from klineflow.common.timeutil import fmt_ms, now_ms, window_end, window_start
from klineflow.common.types import AGGREGATED_PERIODS, MS_1M, Bar, MinuteBarEvent, Period

log = logging.getLogger(__name__)

BarCallback = Callable[[Bar], None]
SeriesKey = Tuple[str, Period]
WindowKey = Tuple[str, Period, int]

DEFAULT_STALE_AFTER_MS = 120 * MS_1M


@dataclass(frozen=True)
class AggregationStats:
    active_buckets: int
    events: int
    closed_bars: int
    duplicate_ignored: int
    late_bars: int
    reaped: int
    errors: int
    write_ok: int
    write_skipped: int
    write_failed: int
    write_inline: int


class Aggregator:
    """
    Derives 5m/15m/30m/1h/4h bars from a stream of final 1m bars.

    A window closes when a bar for the same (symbol, period) arrives whose open
    time is at or past the window's end. Closed bars go to subscribers on the
    calling thread, then to the persistence pool if one is attached.

    Replays are dropped by (symbol, period, window_start, open_time). Bars for a
    window older than the newest one seen are still merged, with a warning.
    """

    def __init__(
        self,
        persistence: Optional[PersistenceWorker] = None,
        periods: Sequence[Period] = AGGREGATED_PERIODS,
        stale_after_ms: int = DEFAULT_STALE_AFTER_MS,
        max_dedup_keys: int = 200_000,
        clock=now_ms,
    ):
        self.persistence = persistence
        self.periods = tuple(Period.parse(p) for p in periods)
        if Period.M1 in self.periods:
            raise ValueError("1m is the input period and cannot be aggregated")
        self.stale_after_ms = int(stale_after_ms)
        self.max_dedup_keys = int(max_dedup_keys)
        self._clock = clock

        self._lock = threading.Lock()
        self._buckets: Dict[SeriesKey, Dict[int, AggregationBucket]] = {}
        self._seen: Dict[WindowKey, Set[int]] = {}
        self._newest: Dict[SeriesKey, int] = {}

        self._subs: List[BarCallback] = []
        self._subs_lock = threading.Lock()
        self._counters = Counter()
        self._counters_lock = threading.Lock()

    @classmethod
    def from_config(cls, agg_cfg, store=None) -> "Aggregator":
        persistence = None
        if store is not None:
            persistence = PersistenceWorker(store, workers=agg_cfg.persist_workers,
                                            queue_size=agg_cfg.persist_queue_size)
        return cls(
            persistence=persistence,
            stale_after_ms=agg_cfg.stale_after_minutes * MS_1M,
            max_dedup_keys=agg_cfg.max_dedup_keys,
        )

    # ---- subscribers ----

    def subscribe(self, callback: BarCallback):
        with self._subs_lock:
            if callback not in self._subs:
                self._subs.append(callback)

    def unsubscribe(self, callback: BarCallback):
        with self._subs_lock:
            if callback in self._subs:
                self._subs.remove(callback)

    # ---- ingest ----

    def _count(self, key: str, n: int = 1):
        with self._counters_lock:
            self._counters[key] += n

    def on_minute_bar(self, event: MinuteBarEvent):
        if not event.is_final or event.period != Period.M1.code:
            log.debug("[agg] skip symbol=%s period=%s final=%s open_time=%d",
                      event.symbol, event.period, event.is_final, event.open_time)
            return
        self._count("events")

        for period in self.periods:
            try:
                self._apply(event, period)
            except Exception:
                self._count("errors")
                log.exception("[agg] error symbol=%s period=%s open_time=%s",
                              event.symbol, period, fmt_ms(event.open_time))

    def _apply(self, event: MinuteBarEvent, period: Period):
        symbol = event.symbol
        start = window_start(event.open_time, period)
        skey = (symbol, period)

        with self._lock:
            seen = self._seen.setdefault((symbol, period, start), set())
            if event.open_time in seen:
                self._count("duplicate_ignored")
                log.debug("[agg] duplicate symbol=%s period=%s open_time=%d", symbol, period, event.open_time)
                return
            seen.add(event.open_time)
            newest = self._newest.get(skey)
            if newest is None or start > newest:
                self._newest[skey] = start
            bucket = self._get_or_create(skey, start)

        if newest is not None and start < newest:
            self._count("late_bars")
            log.warning("[agg] late bar symbol=%s period=%s window=%s newest=%s",
                        symbol, period, fmt_ms(start), fmt_ms(newest))

        if not bucket.add(event):
            # closed between lookup and merge; start a fresh window
            with self._lock:
                bucket = self._get_or_create(skey, start)
            bucket.add(event)

        for closed in self._take_closed(skey, event.open_time):
            self._emit(closed.seal())

    def _get_or_create(self, skey: SeriesKey, start: int) -> AggregationBucket:
        # caller holds self._lock
        live = self._buckets.setdefault(skey, {})
        bucket = live.get(start)
        if bucket is None or bucket.closed:
            bucket = AggregationBucket(skey[0], skey[1], start)
            live[start] = bucket
        return bucket

    def _take_closed(self, skey: SeriesKey, open_time: int) -> List[AggregationBucket]:
        with self._lock:
            live = self._buckets.get(skey)
            if not live:
                return []
            done = sorted(s for s, b in live.items() if b.window_end <= open_time)
            return [live.pop(s) for s in done]

    def _emit(self, bar: Bar):
        self._count("closed_bars")
        log.debug("[agg] closed symbol=%s period=%s bar_time=%s n=%d",
                  bar.symbol, bar.period, fmt_ms(bar.bar_time), bar.source_count)

        with self._subs_lock:
            subs = list(self._subs)
        for cb in subs:
            try:
                cb(bar)
            except Exception:
                log.exception("[agg] subscriber %r failed symbol=%s period=%s bar_time=%d",
                              cb, bar.symbol, bar.period, bar.bar_time)

        if self.persistence is not None:
            self.persistence.submit(bar)

    # ---- maintenance ----

    def reap_stale(self, now: Optional[int] = None) -> int:
        """
        Force-close buckets whose window ended more than ``stale_after_ms`` ago.

        Reaped bars are emitted even when partial. Also trims the dedup keys.
        """
        horizon = (now if now is not None else self._clock()) - self.stale_after_ms

        stale: List[AggregationBucket] = []
        with self._lock:
            for live in self._buckets.values():
                for s in [s for s, b in live.items() if b.window_end < horizon]:
                    stale.append(live.pop(s))
            trimmed = self._trim_seen(horizon)

        stale.sort(key=lambda b: (b.symbol, b.period.duration_ms, b.window_start))
        for b in stale:
            if b.count == 0:
                continue
            if not b.complete:
                log.warning("[agg] reaped partial symbol=%s period=%s window=%s count=%d/%d",
                            b.symbol, b.period, fmt_ms(b.window_start), b.count, b.expected_count)
            self._emit(b.seal())
        self._count("reaped", len(stale))

        if stale or trimmed:
            log.info("[agg] reap horizon=%s reaped=%d dedup_trimmed=%d", fmt_ms(horizon), len(stale), trimmed)
        return len(stale)

    def _trim_seen(self, horizon: int) -> int:
        # caller holds self._lock
        before = sum(len(v) for v in self._seen.values())
        for key in [k for k in self._seen if window_end(k[2], k[1]) < horizon]:
            del self._seen[key]

        total = sum(len(v) for v in self._seen.values())
        if total > self.max_dedup_keys:
            for key in sorted(self._seen, key=lambda k: k[2]):
                total -= len(self._seen.pop(key))
                if total <= self.max_dedup_keys:
                    break
        return before - total

    def flush(self, complete_only: bool = True) -> List[Bar]:
        """Close live buckets now (only full windows by default); returns the bars emitted."""
        with self._lock:
            picked: List[AggregationBucket] = []
            for live in self._buckets.values():
                for s in [s for s, b in live.items() if b.complete or not complete_only]:
                    picked.append(live.pop(s))

        out = []
        for b in sorted(picked, key=lambda b: (b.symbol, b.period.duration_ms, b.window_start)):
            if b.count:
                bar = b.seal()
                self._emit(bar)
                out.append(bar)
        return out

    def stats(self) -> AggregationStats:
        with self._lock:
            active = sum(len(v) for v in self._buckets.values())
        with self._counters_lock:
            c = dict(self._counters)
        if self.persistence is not None:
            c.update(self.persistence.snapshot())
        return AggregationStats(
            active_buckets=active,
            events=c.get("events", 0),
            closed_bars=c.get("closed_bars", 0),
            duplicate_ignored=c.get("duplicate_ignored", 0),
            late_bars=c.get("late_bars", 0),
            reaped=c.get("reaped", 0),
            errors=c.get("errors", 0),
            write_ok=c.get("write_ok", 0),
            write_skipped=c.get("write_skipped", 0),
            write_failed=c.get("write_failed", 0),
            write_inline=c.get("write_inline", 0),
        )

    def close(self, wait: bool = True):
        if self.persistence is not None:
            self.persistence.close(wait=wait)
