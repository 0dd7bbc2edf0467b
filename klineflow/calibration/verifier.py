from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import List, Sequence, Tuple

import pandas as pd

from klineflow.common.timeutil import fmt_ms
from klineflow.common.types import Bar, Period
from klineflow.market.fetcher import HistoricalFetcher
from klineflow.storage.base import BarStore

log = logging.getLogger(__name__)

NEGATIVE_PRICE = "NEGATIVE_PRICE"
NEGATIVE_VOLUME = "NEGATIVE_VOLUME"
PRICE_TOO_HIGH = "PRICE_TOO_HIGH"
HIGH_LESS_THAN_LOW = "HIGH_LESS_THAN_LOW"
HIGH_INVALID = "HIGH_INVALID"
LOW_INVALID = "LOW_INVALID"

DEFAULT_PRICE_CEILING = 1_000_000.0

_PRICE_COLS = ["open", "high", "low", "close"]


@dataclass(frozen=True)
class Anomaly:
    bar_time: int
    kinds: Tuple[str, ...]
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal


@dataclass
class RowChecks:
    duplicates: List[Tuple[int, int]] = field(default_factory=list)
    out_of_order: List[Tuple[int, int]] = field(default_factory=list)
    anomalies: List[Anomaly] = field(default_factory=list)


@dataclass
class VerifyReport:
    symbol: str
    start: int
    end: int
    local_count: int = 0
    venue_count: int = 0
    duplicates: List[Tuple[int, int]] = field(default_factory=list)
    out_of_order: List[Tuple[int, int]] = field(default_factory=list)
    anomalies: List[Anomaly] = field(default_factory=list)
    missing: List[int] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (self.duplicates or self.out_of_order or self.anomalies or self.missing)

    def to_frame(self) -> pd.DataFrame:
        """One row per finding: kind, bar_time, time and the OHLCV where known."""
        rows = []
        for t, n in self.duplicates:
            rows.append({"kind": "DUPLICATE", "bar_time": t, "detail": f"count={n}"})
        for prev, curr in self.out_of_order:
            rows.append({"kind": "OUT_OF_ORDER", "bar_time": curr, "detail": f"prev={prev}"})
        for a in self.anomalies:
            rows.append({"kind": "|".join(a.kinds), "bar_time": a.bar_time, "detail": "",
                         "open": a.open, "high": a.high, "low": a.low, "close": a.close, "volume": a.volume})
        for t in self.missing:
            rows.append({"kind": "MISSING", "bar_time": t, "detail": "absent locally"})

        cols = ["symbol", "kind", "bar_time", "time", "detail", "open", "high", "low", "close", "volume"]
        df = pd.DataFrame(rows, columns=[c for c in cols if c not in ("symbol", "time")])
        df.insert(0, "symbol", self.symbol)
        df.insert(3, "time", [fmt_ms(t) for t in df["bar_time"]])
        return df.sort_values(["bar_time", "kind"], kind="stable").reset_index(drop=True)


def _frame(rows: Sequence[Bar]) -> pd.DataFrame:
    df = pd.DataFrame(
        [(b.bar_time, b.open, b.high, b.low, b.close, b.volume) for b in rows],
        columns=["bar_time", "open", "high", "low", "close", "volume"],
    )
    for c in _PRICE_COLS + ["volume"]:
        df[c] = df[c].astype(float)
    df["bar_time"] = df["bar_time"].astype("int64")
    return df


def check_rows(rows: Sequence[Bar], price_ceiling: float = DEFAULT_PRICE_CEILING) -> RowChecks:
    """Duplicate, ordering and OHLC checks on rows in the order given."""
    out = RowChecks()
    if not rows:
        return out
    df = _frame(rows)

    vc = df["bar_time"].value_counts()
    out.duplicates = sorted((int(t), int(n)) for t, n in vc[vc > 1].items())

    prev = df["bar_time"].shift(1)
    bad_order = df["bar_time"] < prev
    out.out_of_order = [(int(p), int(c)) for p, c in zip(prev[bad_order], df["bar_time"][bad_order])]

    prices = df[_PRICE_COLS]
    masks = {
        NEGATIVE_PRICE: (prices < 0).any(axis=1),
        NEGATIVE_VOLUME: df["volume"] < 0,
        PRICE_TOO_HIGH: (prices > price_ceiling).any(axis=1),
        HIGH_LESS_THAN_LOW: df["high"] < df["low"],
        HIGH_INVALID: (df["high"] < df["open"]) | (df["high"] < df["close"]),
        LOW_INVALID: (df["low"] > df["open"]) | (df["low"] > df["close"]),
    }
    flags = pd.DataFrame(masks)
    for i in flags.index[flags.any(axis=1)]:
        b = rows[i]
        kinds = tuple(k for k in masks if flags.at[i, k])
        out.anomalies.append(Anomaly(b.bar_time, kinds, b.open, b.high, b.low, b.close, b.volume))
    return out


class Verifier:
    """Compares stored 1m bars with the venue over a range. Reads only."""

    def __init__(self, store: BarStore, fetcher: HistoricalFetcher, price_ceiling: float = DEFAULT_PRICE_CEILING):
        self.store = store
        self.fetcher = fetcher
        self.price_ceiling = price_ceiling

    def check_rows(self, rows: Sequence[Bar]) -> RowChecks:
        return check_rows(rows, self.price_ceiling)

    def verify(self, symbol: str, start: int, end: int) -> VerifyReport:
        local = self.store.query(symbol, Period.M1, start, end)
        venue = self.fetcher.fetch_range(symbol, start, end)

        checks = self.check_rows(local)
        local_times = pd.Index([b.bar_time for b in local], dtype="int64")
        venue_times = pd.Index([b.bar_time for b in venue], dtype="int64")
        missing = sorted(int(t) for t in venue_times.difference(local_times))

        report = VerifyReport(
            symbol=symbol,
            start=start,
            end=end,
            local_count=len(local),
            venue_count=len(venue),
            duplicates=checks.duplicates,
            out_of_order=checks.out_of_order,
            anomalies=checks.anomalies,
            missing=missing,
        )
        log.info("[verify] symbol=%s range=%s..%s local=%d venue=%d dup=%d order=%d anomalies=%d missing=%d",
                 symbol, fmt_ms(start), fmt_ms(end), report.local_count, report.venue_count,
                 len(report.duplicates), len(report.out_of_order), len(report.anomalies), len(report.missing))
        return report
