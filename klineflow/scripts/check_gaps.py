from __future__ import annotations

import argparse
import sys

from klineflow.calibration.gap_detector import GapDetector
from klineflow.common.config import load_pipeline_config
from klineflow.common.logs import setup_logging
from klineflow.common.timeutil import align_to_minute, fmt_ms, now_ms, parse_time
from klineflow.common.types import MS_1M
from klineflow.storage.bar_repo import BarRepository
from klineflow.storage.db import load_config


def main() -> int:
    ap = argparse.ArgumentParser(description="Report 1m close times missing from the store.")
    ap.add_argument("--config", default=None)
    ap.add_argument("--symbol", action="append", help="repeatable; default: enabled subscriptions")
    ap.add_argument("--start", default=None, help="epoch ms or ISO time, inclusive")
    ap.add_argument("--end", default=None, help="epoch ms or ISO time, exclusive (default: now)")
    ap.add_argument("--lookback_minutes", type=int, default=1440)
    ap.add_argument("--show", type=int, default=20, help="print at most N missing runs per symbol")
    args = ap.parse_args()

    cfg = load_config(args.config)
    pcfg = load_pipeline_config(cfg)
    setup_logging(pcfg.logs.level, pcfg.logs.file)

    end = parse_time(args.end) if args.end else align_to_minute(now_ms())
    start = parse_time(args.start) if args.start else end - args.lookback_minutes * MS_1M
    symbols = args.symbol or pcfg.enabled_symbols

    detector = GapDetector(BarRepository(cfg))
    any_missing = False
    for symbol in symbols:
        report = detector.detect(symbol, start, end)
        print(f"[gaps] symbol={symbol} range={fmt_ms(start)}..{fmt_ms(end)} expected={report.expected} "
              f"present={report.present} missing={len(report.missing)} ratio={report.missing_ratio:.4f}")

        runs = report.ranges
        for i, (a, b) in enumerate(runs[:args.show], 1):
            n = (b - a) // MS_1M + 1
            print(f"  {i:02d}. MISSING first={fmt_ms(a)} last={fmt_ms(b)} bars={n}")
        if len(runs) > args.show:
            print(f"  ... {len(runs) - args.show} more runs")
        any_missing = any_missing or bool(report.missing)

    # any gap => exit code 1
    return 1 if any_missing else 0


if __name__ == "__main__":
    sys.exit(main())
