from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Dict, List, Optional, Set

from klineflow.calibration.filler import BackfillFiller
from klineflow.calibration.gap_detector import GapDetector, contiguous_ranges
from klineflow.common.config import SubscriptionRegistry
from klineflow.common.errors import KlineflowError
from klineflow.common.timeutil import align_to_minute, fmt_ms, now_ms
from klineflow.common.types import MS_1M
from klineflow.market.fetcher import HistoricalFetcher
from klineflow.storage.heartbeat_repo import HeartbeatRepository

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackfillResult:
    symbol: str
    start: int
    end: int
    missing: int = 0
    fetched: int = 0
    inserted: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BackfillService:
    """
    Keeps the 1m store complete: detect gaps, fetch them from the venue, insert.

    ``sweep`` covers every enabled instrument over a lookback window and is run
    periodically by ``run_forever``. ``trigger`` requests an on-demand sweep for
    one instrument; it is rate limited per instrument and never runs twice
    concurrently for the same instrument.
    """

    def __init__(
        self,
        detector: GapDetector,
        fetcher: HistoricalFetcher,
        filler: BackfillFiller,
        registry: SubscriptionRegistry,
        lookback_minutes: int = 1440,
        on_demand_minutes: int = 60,
        cooldown_s: float = 300.0,
        trigger_workers: int = 4,
        heartbeat: Optional[HeartbeatRepository] = None,
        stop_event: Optional[threading.Event] = None,
        clock=now_ms,
    ):
        self.detector = detector
        self.fetcher = fetcher
        self.filler = filler
        self.registry = registry
        self.lookback_minutes = lookback_minutes
        self.on_demand_minutes = on_demand_minutes
        self.cooldown_ms = int(cooldown_s * 1000)
        self.heartbeat = heartbeat
        self.stop_event = stop_event or fetcher.stop_event
        self._clock = clock

        self._pool = ThreadPoolExecutor(max_workers=trigger_workers, thread_name_prefix="backfill-trigger")
        self._lock = threading.Lock()
        self._in_flight: Set[str] = set()
        self._last_trigger: Dict[str, int] = {}

    def backfill_range(self, symbol: str, start: int, end: int) -> BackfillResult:
        try:
            missing = self.detector.detect_missing(symbol, start, end)
            if not missing:
                return BackfillResult(symbol, start, end)

            runs = contiguous_ranges(missing)
            log.info("[backfill] symbol=%s missing=%d runs=%d first=%s last=%s",
                     symbol, len(missing), len(runs), fmt_ms(missing[0]), fmt_ms(missing[-1]))

            bars = self.fetcher.fetch(symbol, missing)
            inserted = self.filler.fill(symbol, bars)
        except KlineflowError as e:
            log.error("[backfill] symbol=%s range=%s..%s err=%s: %s",
                      symbol, fmt_ms(start), fmt_ms(end), type(e).__name__, e)
            return BackfillResult(symbol, start, end, error=f"{type(e).__name__}: {e}")
        except Exception as e:
            log.exception("[backfill] symbol=%s range=%s..%s unexpected failure",
                          symbol, fmt_ms(start), fmt_ms(end))
            return BackfillResult(symbol, start, end, error=f"{type(e).__name__}: {e}")

        if inserted < len(missing):
            log.warning("[backfill] symbol=%s still missing=%d after fill (venue has no data or fetch stopped)",
                        symbol, len(missing) - inserted)
        return BackfillResult(symbol, start, end, missing=len(missing), fetched=len(bars), inserted=inserted)

    def backfill_last_minutes(self, symbol: str, minutes: int, end: Optional[int] = None) -> BackfillResult:
        end = align_to_minute(end if end is not None else self._clock())
        return self.backfill_range(symbol, end - minutes * MS_1M, end)

    def sweep(self, lookback_minutes: Optional[int] = None) -> List[BackfillResult]:
        minutes = lookback_minutes or self.lookback_minutes
        end = align_to_minute(self._clock())
        results = []
        for symbol in self.registry.list_enabled():
            if self.stop_event.is_set():
                log.info("[backfill] sweep stopped before symbol=%s", symbol)
                break
            results.append(self.backfill_last_minutes(symbol, minutes, end=end))

        inserted = sum(r.inserted for r in results)
        failed = [r.symbol for r in results if not r.ok]
        log.info("[backfill] sweep lookback_min=%d symbols=%d inserted=%d failed=%s",
                 minutes, len(results), inserted, failed)
        return results

    def trigger(self, symbol: str, reason: str, related_ms: Optional[int] = None) -> Optional[Future]:
        """Queue an on-demand backfill; returns None when cooled down or already running."""
        now = self._clock()
        with self._lock:
            if symbol in self._in_flight:
                log.debug("[backfill] trigger ignored symbol=%s reason=%s (in flight)", symbol, reason)
                return None
            last = self._last_trigger.get(symbol)
            if last is not None and now - last < self.cooldown_ms:
                log.debug("[backfill] trigger ignored symbol=%s reason=%s (cooldown)", symbol, reason)
                return None
            self._in_flight.add(symbol)
            self._last_trigger[symbol] = now

        log.info("[backfill] trigger symbol=%s reason=%s related=%s", symbol, reason, fmt_ms(related_ms))
        try:
            return self._pool.submit(self._run_trigger, symbol)
        except RuntimeError:
            with self._lock:
                self._in_flight.discard(symbol)
            raise

    def _run_trigger(self, symbol: str) -> BackfillResult:
        try:
            return self.backfill_last_minutes(symbol, self.on_demand_minutes)
        finally:
            with self._lock:
                self._in_flight.discard(symbol)

    def check_staleness(self, service_name: str, max_age_s: float) -> bool:
        """If the stream runner has not beaten within ``max_age_s``, backfill every instrument."""
        if self.heartbeat is None:
            return False
        last = self.heartbeat.last_seen(service_name)
        age_ms = None if last is None else self._clock() - last
        if age_ms is not None and age_ms <= max_age_s * 1000:
            return False

        log.warning("[backfill] stream heartbeat stale service=%s last_seen=%s", service_name, fmt_ms(last))
        for symbol in self.registry.list_enabled():
            if self.stop_event.is_set():
                break
            self.backfill_last_minutes(symbol, self.on_demand_minutes)
        return True

    def run_forever(self, interval_s: float, heartbeat_service: Optional[str] = None, stale_after_s: float = 180):
        log.info("[backfill] loop start interval_s=%s", interval_s)
        while not self.stop_event.is_set():
            try:
                self.registry.refresh()
                self.sweep()
                if heartbeat_service:
                    self.check_staleness(heartbeat_service, stale_after_s)
            except (KlineflowError, OSError):
                log.exception("[backfill] sweep round failed")
            self.stop_event.wait(interval_s)
        log.info("[backfill] loop stopped")

    def stop(self):
        self.stop_event.set()

    def close(self, wait: bool = True):
        self.stop()
        self._pool.shutdown(wait=wait)
