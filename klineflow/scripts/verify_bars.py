from __future__ import annotations

import argparse
import sys

import pandas as pd

from klineflow.calibration.verifier import Verifier
from klineflow.common.config import load_pipeline_config
from klineflow.common.logs import setup_logging
from klineflow.common.timeutil import align_to_minute, fmt_ms, now_ms, parse_time
from klineflow.common.types import MS_1M
from klineflow.market.client import OKXMarketClient
from klineflow.market.fetcher import HistoricalFetcher
from klineflow.storage.bar_repo import BarRepository
from klineflow.storage.db import load_config


def main() -> int:
    ap = argparse.ArgumentParser(description="Compare stored 1m bars against OKX for a range.")
    ap.add_argument("--config", default=None)
    ap.add_argument("--symbol", action="append", help="repeatable; default: enabled subscriptions")
    ap.add_argument("--start", default=None, help="epoch ms or ISO time, inclusive")
    ap.add_argument("--end", default=None, help="epoch ms or ISO time, exclusive (default: now)")
    ap.add_argument("--lookback_minutes", type=int, default=60)
    ap.add_argument("--csv", default=None, help="write all findings to this CSV file")
    args = ap.parse_args()

    cfg = load_config(args.config)
    pcfg = load_pipeline_config(cfg)
    setup_logging(pcfg.logs.level, pcfg.logs.file)

    end = parse_time(args.end) if args.end else align_to_minute(now_ms())
    start = parse_time(args.start) if args.start else end - args.lookback_minutes * MS_1M
    symbols = args.symbol or pcfg.enabled_symbols

    fetcher = HistoricalFetcher.from_config(OKXMarketClient.from_config(pcfg.market), pcfg.backfill)
    verifier = Verifier(BarRepository(cfg), fetcher, price_ceiling=pcfg.verify.price_ceiling)

    frames = []
    bad = 0
    for symbol in symbols:
        r = verifier.verify(symbol, start, end)
        print(f"[verify] symbol={symbol} range={fmt_ms(start)}..{fmt_ms(end)} local={r.local_count} "
              f"venue={r.venue_count} duplicates={len(r.duplicates)} out_of_order={len(r.out_of_order)} "
              f"anomalies={len(r.anomalies)} missing={len(r.missing)} ok={r.ok}")
        for a in r.anomalies[:10]:
            print(f"  ANOMALY {fmt_ms(a.bar_time)} {','.join(a.kinds)} o={a.open} h={a.high} l={a.low} c={a.close}")
        frames.append(r.to_frame())
        bad += 0 if r.ok else 1

    if args.csv and frames:
        df = pd.concat(frames, ignore_index=True)
        df.to_csv(args.csv, index=False)
        print(f"[verify] wrote {len(df)} rows to {args.csv}")

    return 1 if bad else 0


if __name__ == "__main__":
    sys.exit(main())
