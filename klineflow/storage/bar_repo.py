import logging
from decimal import Decimal
from typing import Iterable, List, Set

import psycopg2
from psycopg2.extras import execute_values

from klineflow.common.errors import StoreError
from klineflow.common.types import Bar, Period
from klineflow.storage.db import load_config, make_conn

log = logging.getLogger(__name__)

_COLUMNS = "symbol, timeframe, ts, open, high, low, close, volume, source_count"


def _row_to_bar(row) -> Bar:
    symbol, timeframe, ts, o, h, l, c, v, n = row
    return Bar(
        symbol=symbol,
        period=Period.parse(timeframe),
        bar_time=int(ts),
        open=Decimal(o),
        high=Decimal(h),
        low=Decimal(l),
        close=Decimal(c),
        volume=Decimal(v),
        source_count=int(n),
    )


class BarRepository:
    """
    PostgreSQL bar store.

    Opens one connection per call, so a single instance can be shared by the
    persistence pool, backfill workers and the verifier without locking.
    """

    def __init__(self, cfg=None, source: str = "okx", connect=None):
        self.cfg = cfg or load_config()
        self.source = source
        self._connect = connect or make_conn

    def _run(self, fn, write: bool = False):
        try:
            conn = self._connect(self.cfg)
        except psycopg2.Error as e:
            raise StoreError(f"connect failed: {e}") from e
        try:
            with conn.cursor() as cur:
                out = fn(cur)
            if write:
                conn.commit()
            return out
        except psycopg2.Error as e:
            conn.rollback()
            raise StoreError(str(e)) from e
        finally:
            conn.close()

    def _values(self, bar: Bar):
        return (bar.symbol, bar.period.code, int(bar.bar_time), bar.open, bar.high, bar.low,
                bar.close, bar.volume, int(bar.source_count), self.source)

    def exists(self, symbol: str, period: Period, bar_time: int) -> bool:
        sql = "SELECT 1 FROM bars WHERE symbol=%s AND timeframe=%s AND ts=%s LIMIT 1;"

        def q(cur):
            cur.execute(sql, (symbol, Period.parse(period).code, int(bar_time)))
            return cur.fetchone() is not None

        return self._run(q)

    def save(self, bar: Bar) -> bool:
        sql = f"""
        INSERT INTO bars({_COLUMNS}, source)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (symbol, timeframe, ts) DO NOTHING
        """

        def q(cur):
            cur.execute(sql, self._values(bar))
            return cur.rowcount == 1

        return self._run(q, write=True)

    def save_many(self, bars: Iterable[Bar]) -> int:
        """Insert-if-absent in pages of 500; returns rows actually inserted."""
        rows = [self._values(b) for b in bars]
        if not rows:
            return 0

        sql = f"""
        INSERT INTO bars({_COLUMNS}, source)
        VALUES %s
        ON CONFLICT (symbol, timeframe, ts) DO NOTHING
        RETURNING ts
        """

        def q(cur):
            inserted = execute_values(cur, sql, rows, page_size=500, fetch=True)
            return len(inserted)

        return self._run(q, write=True)

    def query(self, symbol: str, period: Period, start: int, end: int) -> List[Bar]:
        sql = f"""
        SELECT {_COLUMNS}
        FROM bars
        WHERE symbol=%s AND timeframe=%s AND ts >= %s AND ts < %s
        ORDER BY ts ASC;
        """

        def q(cur):
            cur.execute(sql, (symbol, Period.parse(period).code, int(start), int(end)))
            return [_row_to_bar(r) for r in cur.fetchall()]

        return self._run(q)

    def query_latest(self, symbol: str, period: Period, limit: int) -> List[Bar]:
        sql = f"""
        SELECT {_COLUMNS}
        FROM bars
        WHERE symbol=%s AND timeframe=%s
        ORDER BY ts DESC
        LIMIT %s;
        """

        def q(cur):
            cur.execute(sql, (symbol, Period.parse(period).code, int(limit)))
            return [_row_to_bar(r) for r in cur.fetchall()]

        bars = self._run(q)
        bars.reverse()
        return bars

    def query_distinct_timestamps(self, symbol: str, start: int, end: int) -> Set[int]:
        sql = """
        SELECT DISTINCT ts
        FROM bars
        WHERE symbol=%s AND timeframe='1m' AND ts >= %s AND ts < %s;
        """

        def q(cur):
            cur.execute(sql, (symbol, int(start), int(end)))
            return {int(r[0]) for r in cur.fetchall()}

        return self._run(q)

    def count(self, symbol: str, period: Period) -> int:
        def q(cur):
            cur.execute("SELECT COUNT(*) FROM bars WHERE symbol=%s AND timeframe=%s;",
                        (symbol, Period.parse(period).code))
            return int(cur.fetchone()[0])

        return self._run(q)
