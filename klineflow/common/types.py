# klineflow/common/types.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from klineflow.common.errors import UnknownPeriodError

MS_1M = 60_000


class Period(Enum):
    """Supported bar periods: (code, unit, multiplier, okx bar code)."""

    M1 = ("1m", "m", 1, "1m")
    M5 = ("5m", "m", 5, "5m")
    M15 = ("15m", "m", 15, "15m")
    M30 = ("30m", "m", 30, "30m")
    H1 = ("1h", "h", 1, "1H")
    H4 = ("4h", "h", 4, "4H")

    def __init__(self, code: str, unit: str, multiplier: int, okx_bar: str):
        self.code = code
        self.unit = unit
        self.multiplier = multiplier
        self.okx_bar = okx_bar
        self.duration_ms = multiplier * (MS_1M if unit == "m" else 60 * MS_1M)

    @property
    def minutes(self) -> int:
        return self.duration_ms // MS_1M

    @classmethod
    def parse(cls, code) -> "Period":
        if isinstance(code, Period):
            return code
        key = str(code).strip()
        # OKX writes hours as "1H"; minutes stay lower-case
        if key[-1:] == "H":
            key = key[:-1] + "h"
        found = _BY_CODE.get(key)
        if found is None:
            raise UnknownPeriodError(f"unsupported period: {code!r}")
        return found

    def __str__(self) -> str:
        return self.code


_BY_CODE = {p.code: p for p in Period}

# periods derived from the 1m stream
AGGREGATED_PERIODS = (Period.M5, Period.M15, Period.M30, Period.H1, Period.H4)


@dataclass(frozen=True)
class Bar:
    symbol: str
    period: Period
    bar_time: int      # close time, epoch ms UTC
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    source_count: int = 1

    @property
    def open_time(self) -> int:
        return self.bar_time - self.period.duration_ms


@dataclass(frozen=True)
class MinuteBarEvent:
    """One 1m candle as delivered by the venue stream."""

    symbol: str
    exchange: str
    open_time: int
    close_time: int
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal
    is_final: bool = True
    event_time: int = 0
    period: str = "1m"

    @classmethod
    def from_bar(cls, bar: Bar, exchange: str = "okx") -> "MinuteBarEvent":
        """Replay a stored 1m bar as a final stream event."""
        if bar.period is not Period.M1:
            raise ValueError(f"expected a 1m bar, got {bar.period}")
        return cls(
            symbol=bar.symbol,
            exchange=exchange,
            open_time=bar.open_time,
            close_time=bar.bar_time,
            open=bar.open,
            high=bar.high,
            low=bar.low,
            close=bar.close,
            volume=bar.volume,
            event_time=bar.bar_time,
        )

    def to_bar(self) -> Bar:
        return Bar(
            symbol=self.symbol,
            period=Period.M1,
            bar_time=self.open_time - self.open_time % MS_1M + MS_1M,
            open=self.open,
            high=self.high,
            low=self.low,
            close=self.close,
            volume=self.volume,
            source_count=1,
        )
