from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Sequence, Tuple

from klineflow.common.timeutil import TimestampGrid, align_to_minute, fmt_ms
from klineflow.common.types import MS_1M, Period
from klineflow.storage.base import BarStore

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class GapReport:
    symbol: str
    start: int
    end: int
    expected: int
    present: int
    missing: List[int]

    @property
    def missing_ratio(self) -> float:
        return len(self.missing) / self.expected if self.expected else 0.0

    @property
    def ranges(self) -> List[Tuple[int, int]]:
        return contiguous_ranges(self.missing)


def contiguous_ranges(missing: Sequence[int], step_ms: int = MS_1M) -> List[Tuple[int, int]]:
    """Collapse sorted timestamps into inclusive ``(first, last)`` runs."""
    runs: List[Tuple[int, int]] = []
    for t in missing:
        if runs and t - runs[-1][1] == step_ms:
            runs[-1] = (runs[-1][0], t)
        else:
            runs.append((t, t))
    return runs


class GapDetector:
    """Finds 1m close times in ``[start, end)`` that the store does not hold."""

    def __init__(self, store: BarStore):
        self.store = store

    def detect_missing(self, symbol: str, start: int, end: int) -> List[int]:
        return self.detect(symbol, start, end).missing

    def detect(self, symbol: str, start: int, end: int) -> GapReport:
        grid = TimestampGrid(start, end, Period.M1)
        if len(grid) == 0:
            return GapReport(symbol, start, end, 0, 0, [])

        present = {align_to_minute(t) for t in self.store.query_distinct_timestamps(symbol, start, end)}
        missing = [t for t in grid if t not in present]
        report = GapReport(symbol, start, end, len(grid), len(grid) - len(missing), missing)

        if missing:
            runs = report.ranges
            log.info("[gaps] symbol=%s range=%s..%s expected=%d missing=%d runs=%d first=%s",
                     symbol, fmt_ms(start), fmt_ms(end), report.expected, len(missing), len(runs),
                     fmt_ms(missing[0]))
        else:
            log.debug("[gaps] symbol=%s range=%s..%s complete", symbol, fmt_ms(start), fmt_ms(end))
        return report
