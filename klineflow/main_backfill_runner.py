import argparse
import logging
import signal

from klineflow.calibration.backfill import BackfillService
from klineflow.calibration.filler import BackfillFiller
from klineflow.calibration.gap_detector import GapDetector
from klineflow.common.config import SubscriptionRegistry, load_pipeline_config
from klineflow.common.logs import setup_logging
from klineflow.main_ws_runner import SERVICE_NAME
from klineflow.market.client import OKXMarketClient
from klineflow.market.fetcher import HistoricalFetcher
from klineflow.storage.bar_repo import BarRepository
from klineflow.storage.db import load_config
from klineflow.storage.heartbeat_repo import HeartbeatRepository

log = logging.getLogger("klineflow.backfill_runner")


def build_service(cfg, config_path=None) -> BackfillService:
    pcfg = load_pipeline_config(cfg)
    repo = BarRepository(cfg)
    registry = SubscriptionRegistry.from_config_file(config_path)
    fetcher = HistoricalFetcher.from_config(OKXMarketClient.from_config(pcfg.market), pcfg.backfill)
    return BackfillService(
        GapDetector(repo), fetcher, BackfillFiller(repo), registry,
        lookback_minutes=pcfg.backfill.lookback_minutes,
        on_demand_minutes=pcfg.backfill.on_demand_minutes,
        cooldown_s=pcfg.backfill.cooldown_seconds,
        trigger_workers=pcfg.backfill.trigger_workers,
        heartbeat=HeartbeatRepository(cfg),
    )


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--config", default=None, help="path to local.yaml")
    ap.add_argument("--once", action="store_true", help="run a single sweep and exit")
    ap.add_argument("--lookback_minutes", type=int, default=None)
    args = ap.parse_args()

    cfg = load_config(args.config)
    pcfg = load_pipeline_config(cfg)
    setup_logging(pcfg.logs.level, pcfg.logs.file)

    svc = build_service(cfg, args.config)
    signal.signal(signal.SIGTERM, lambda *_: svc.stop())

    try:
        if args.once:
            results = svc.sweep(args.lookback_minutes)
            return 1 if any(not r.ok for r in results) else 0
        svc.run_forever(
            pcfg.backfill.interval_seconds,
            heartbeat_service=SERVICE_NAME,
            stale_after_s=pcfg.backfill.stale_heartbeat_seconds,
        )
    except KeyboardInterrupt:
        log.info("[backfill_runner] KeyboardInterrupt, exiting.")
    finally:
        svc.close(wait=False)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
