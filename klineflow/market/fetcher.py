from __future__ import annotations

import bisect
import logging
import threading
import time
from typing import Dict, Iterable, List, Optional

from klineflow.common.errors import FetchError, MalformedResponseError, TransientNetworkError
from klineflow.common.timeutil import TimestampGrid, fmt_ms, is_today_utc, now_ms
from klineflow.common.types import MS_1M, Bar, Period
from klineflow.market.client import OKXMarketClient
from klineflow.market.normalizer import OKXNormalizer

log = logging.getLogger(__name__)

MAX_PAGE_LIMIT = 300


class HistoricalFetcher:
    """
    Pages 1m candles out of OKX for a span of close times.

    Pages walk forward from the oldest wanted bar. Each page asks for the
    ``page_limit`` minutes starting at the cursor, from ``/market/candles`` when
    the cursor is on the current UTC day and ``/market/history-candles``
    otherwise. Results are keyed by ``bar_time`` so overlapping pages collapse.
    """

    def __init__(
        self,
        client: OKXMarketClient,
        normalizer: Optional[OKXNormalizer] = None,
        page_limit: int = MAX_PAGE_LIMIT,
        rate_limit_s: float = 0.2,
        max_pages: int = 500,
        stop_event: Optional[threading.Event] = None,
        sleep=time.sleep,
        clock=now_ms,
    ):
        self.client = client
        self.normalizer = normalizer or OKXNormalizer()
        self.page_limit = max(1, min(int(page_limit), MAX_PAGE_LIMIT))
        self.rate_limit_s = rate_limit_s
        self.max_pages = max_pages
        self.stop_event = stop_event or threading.Event()
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_config(cls, client, backfill_cfg, stop_event=None) -> "HistoricalFetcher":
        return cls(
            client,
            page_limit=backfill_cfg.page_limit,
            rate_limit_s=backfill_cfg.rate_limit_ms / 1000.0,
            max_pages=backfill_cfg.max_pages,
            stop_event=stop_event,
        )

    def fetch(self, symbol: str, missing_timestamps: Iterable[int]) -> List[Bar]:
        """Bars covering the span of ``missing_timestamps`` (1m close times), ascending."""
        missing = sorted({int(t) for t in missing_timestamps})
        if not missing:
            return []
        return self._walk(symbol, missing[0], missing[-1], missing)

    def fetch_range(self, symbol: str, start: int, end: int) -> List[Bar]:
        """Every venue bar with ``start <= bar_time < end``, ascending."""
        grid = TimestampGrid(start, end, Period.M1)
        if len(grid) == 0:
            return []
        first = next(iter(grid))
        last = first + (len(grid) - 1) * MS_1M
        return self._walk(symbol, first, last, None)

    def _walk(self, symbol: str, first: int, last: int, missing: Optional[List[int]]) -> List[Bar]:
        out: Dict[int, Bar] = {}
        cursor = first - MS_1M          # open time of the oldest wanted bar
        last_open = last - MS_1M
        pages = 0

        while True:
            if self.stop_event.is_set():
                log.info("[fetch] stop requested symbol=%s pages=%d", symbol, pages)
                break
            if pages >= self.max_pages:
                log.warning("[fetch] max_pages=%d reached symbol=%s cursor=%s", self.max_pages, symbol, fmt_ms(cursor))
                break
            if pages:
                self._sleep(self.rate_limit_s)

            history = not is_today_utc(cursor, self._clock())
            try:
                rows = self.client.fetch_candles(
                    inst_id=symbol,
                    bar=Period.M1.okx_bar,
                    limit=self.page_limit,
                    after=cursor + self.page_limit * MS_1M,
                    before=cursor - MS_1M,
                    history=history,
                )
            except TransientNetworkError as e:
                raise FetchError(f"{symbol} page at {fmt_ms(cursor)}: {e}") from e
            except MalformedResponseError as e:
                log.warning("[fetch] malformed page symbol=%s cursor=%s err=%s", symbol, fmt_ms(cursor), e)
                break
            pages += 1

            if not rows:
                log.debug("[fetch] empty page symbol=%s cursor=%s", symbol, fmt_ms(cursor))
                break

            newest = None
            for row in rows:
                try:
                    bar = self.normalizer.to_bar(symbol, row)
                except MalformedResponseError as e:
                    log.warning("[fetch] skip row symbol=%s err=%s", symbol, e)
                    continue
                if newest is None or bar.open_time > newest:
                    newest = bar.open_time
                if not self.normalizer.is_confirmed(row):
                    continue
                if first <= bar.bar_time <= last:
                    out[bar.bar_time] = bar

            log.debug("[fetch] page=%d symbol=%s history=%s rows=%d kept=%d",
                      pages, symbol, history, len(rows), len(out))

            if newest is None or newest < cursor:
                break
            nxt = newest + MS_1M
            if nxt > last_open:
                break
            if missing is not None:
                # skip ahead over runs that are already present
                i = bisect.bisect_left(missing, nxt + MS_1M)
                if i >= len(missing):
                    break
                nxt = max(nxt, missing[i] - MS_1M)
            cursor = nxt

        bars = sorted(out.values(), key=lambda b: b.bar_time)
        log.info("[fetch] symbol=%s span=%s..%s pages=%d bars=%d", symbol, fmt_ms(first), fmt_ms(last), pages, len(bars))
        return bars
