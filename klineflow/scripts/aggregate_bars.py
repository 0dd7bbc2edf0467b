import argparse

import pandas as pd

from klineflow.aggregation.aggregator import Aggregator
from klineflow.aggregation.persistence import PersistenceWorker
from klineflow.common.config import load_pipeline_config
from klineflow.common.logs import setup_logging
from klineflow.common.timeutil import fmt_ms, parse_time
from klineflow.common.types import AGGREGATED_PERIODS, MinuteBarEvent, Period
from klineflow.storage.bar_repo import BarRepository
from klineflow.storage.db import load_config
from klineflow.storage.memory import InMemoryBarStore


def bars_to_df(bars) -> pd.DataFrame:
    df = pd.DataFrame(
        [(b.period.code, b.bar_time, fmt_ms(b.bar_time), b.open, b.high, b.low, b.close, b.volume, b.source_count)
         for b in bars],
        columns=["timeframe", "ts", "time", "open", "high", "low", "close", "volume", "n"],
    )
    return df.sort_values(["timeframe", "ts"]).reset_index(drop=True)


def rebuild(source, target, symbol: str, start: int, end: int, periods=AGGREGATED_PERIODS):
    """
    Replay stored 1m bars of ``[start, end)`` through the Aggregator, writing
    closed bars to ``target``. Windows left open at ``end`` are emitted only if
    they are complete.
    """
    minute_bars = source.query(symbol, Period.M1, start, end)
    agg = Aggregator(persistence=PersistenceWorker(target, workers=1), periods=periods)
    closed = []
    agg.subscribe(closed.append)
    try:
        for b in minute_bars:
            agg.on_minute_bar(MinuteBarEvent.from_bar(b))
        agg.flush(complete_only=True)
    finally:
        agg.close(wait=True)
    return minute_bars, closed, agg.stats()


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--config", default=None)
    ap.add_argument("--symbol", default="BTC-USDT-SWAP")
    ap.add_argument("--start", required=True, help="epoch ms or ISO time, inclusive")
    ap.add_argument("--end", required=True, help="epoch ms or ISO time, exclusive")
    ap.add_argument("--period", action="append", help="repeatable; default: all derived periods")
    ap.add_argument("--dry_run", action="store_true", help="do not write to DB")
    args = ap.parse_args()

    cfg = load_config(args.config)
    pcfg = load_pipeline_config(cfg)
    setup_logging(pcfg.logs.level, pcfg.logs.file)

    repo = BarRepository(cfg)
    target = InMemoryBarStore() if args.dry_run else repo
    periods = [Period.parse(p) for p in args.period] if args.period else AGGREGATED_PERIODS

    minute_bars, closed, stats = rebuild(repo, target, args.symbol, parse_time(args.start), parse_time(args.end), periods)
    if not minute_bars:
        raise RuntimeError("no 1m bars loaded")

    df = bars_to_df(closed)
    print(f"[agg] symbol={args.symbol} 1m_rows={len(minute_bars)} -> bars={len(df)} "
          f"inserted={stats.write_ok} existing={stats.write_skipped} failed={stats.write_failed}")
    print(df.head(3).to_string(index=False))
    print(df.tail(3).to_string(index=False))

    if args.dry_run:
        print("[agg] dry_run=True, not writing to DB")


if __name__ == "__main__":
    main()
