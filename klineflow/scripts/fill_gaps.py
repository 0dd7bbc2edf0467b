from __future__ import annotations

import argparse
import sys

from klineflow.calibration.backfill import BackfillService
from klineflow.calibration.filler import BackfillFiller
from klineflow.calibration.gap_detector import GapDetector
from klineflow.common.config import SubscriptionRegistry, load_pipeline_config
from klineflow.common.logs import setup_logging
from klineflow.common.timeutil import align_to_minute, fmt_ms, now_ms, parse_time
from klineflow.common.types import MS_1M
from klineflow.market.client import OKXMarketClient
from klineflow.market.fetcher import HistoricalFetcher
from klineflow.storage.bar_repo import BarRepository
from klineflow.storage.db import load_config


def main() -> int:
    ap = argparse.ArgumentParser(description="Fetch and insert missing 1m bars for a range.")
    ap.add_argument("--config", default=None)
    ap.add_argument("--symbol", action="append", help="repeatable; default: enabled subscriptions")
    ap.add_argument("--start", default=None, help="epoch ms or ISO time, inclusive")
    ap.add_argument("--end", default=None, help="epoch ms or ISO time, exclusive (default: now)")
    ap.add_argument("--lookback_minutes", type=int, default=1440)
    args = ap.parse_args()

    cfg = load_config(args.config)
    pcfg = load_pipeline_config(cfg)
    setup_logging(pcfg.logs.level, pcfg.logs.file)

    end = parse_time(args.end) if args.end else align_to_minute(now_ms())
    start = parse_time(args.start) if args.start else end - args.lookback_minutes * MS_1M
    symbols = args.symbol or pcfg.enabled_symbols

    repo = BarRepository(cfg)
    fetcher = HistoricalFetcher.from_config(OKXMarketClient.from_config(pcfg.market), pcfg.backfill)
    svc = BackfillService(GapDetector(repo), fetcher, BackfillFiller(repo), SubscriptionRegistry(pcfg.subscriptions),
                          trigger_workers=1)

    failed = 0
    try:
        for symbol in symbols:
            r = svc.backfill_range(symbol, start, end)
            print(f"[fill] symbol={symbol} range={fmt_ms(start)}..{fmt_ms(end)} missing={r.missing} "
                  f"fetched={r.fetched} inserted={r.inserted} error={r.error}")
            failed += 0 if r.ok else 1
    finally:
        svc.close(wait=False)

    print("[fill] done; run check_gaps to verify.")
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main())
