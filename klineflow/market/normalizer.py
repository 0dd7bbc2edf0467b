from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Optional

from klineflow.common.errors import MalformedResponseError
from klineflow.common.timeutil import align_to_minute, now_ms
from klineflow.common.types import MS_1M, Bar, MinuteBarEvent, Period


class OKXNormalizer:
    def __init__(self, ts_unit: str = "ms"):
        if ts_unit not in ("ms",):
            raise ValueError("Only ms is supported for now.")
        self.ts_unit = ts_unit

    def is_confirmed(self, row: list) -> bool:
        # row: [ts,o,h,l,c,vol,volCcy,volCcyQuote,confirm]
        # rows without the confirm field come from history endpoints and are final
        if len(row) < 9:
            return True
        return str(row[8]) == "1"

    def _parse(self, row):
        try:
            ts = align_to_minute(int(row[0]))
            o, h, l, c, v = (Decimal(str(x)) for x in row[1:6])
        except (IndexError, TypeError, ValueError, InvalidOperation) as e:
            raise MalformedResponseError(f"bad candle row: {row!r}") from e
        return ts, o, h, l, c, v

    def to_bar(self, symbol: str, row: list) -> Bar:
        ts, o, h, l, c, v = self._parse(row)
        return Bar(
            symbol=symbol,
            period=Period.M1,
            bar_time=ts + MS_1M,
            open=o,
            high=h,
            low=l,
            close=c,
            volume=v,
        )

    def to_event(self, symbol: str, row: list, exchange: str = "okx", recv_ms: Optional[int] = None) -> MinuteBarEvent:
        ts, o, h, l, c, v = self._parse(row)
        return MinuteBarEvent(
            symbol=symbol,
            exchange=exchange,
            open_time=ts,
            close_time=ts + MS_1M,
            open=o,
            high=h,
            low=l,
            close=c,
            volume=v,
            is_final=self.is_confirmed(row),
            event_time=recv_ms if recv_ms is not None else now_ms(),
        )
