import logging
from typing import Iterable

from klineflow.common.errors import StoreError
from klineflow.common.types import Bar
from klineflow.storage.base import BarStore

log = logging.getLogger(__name__)


class BackfillFiller:
    def __init__(self, store: BarStore):
        self.store = store

    def fill(self, symbol: str, bars: Iterable[Bar]) -> int:
        """Insert bars not already stored; returns how many were inserted."""
        inserted = skipped = failed = 0
        for bar in bars:
            try:
                if self.store.exists(bar.symbol, bar.period, bar.bar_time):
                    skipped += 1
                    continue
                if self.store.save(bar):
                    inserted += 1
                else:
                    skipped += 1
            except StoreError as e:
                failed += 1
                log.error("[fill] save failed symbol=%s bar_time=%d err=%s", symbol, bar.bar_time, e)

        log.info("[fill] symbol=%s inserted=%d skipped=%d failed=%d", symbol, inserted, skipped, failed)
        return inserted
