import argparse
import asyncio
import logging
from typing import Dict

from klineflow.aggregation.aggregator import Aggregator
from klineflow.calibration.backfill import BackfillService
from klineflow.calibration.filler import BackfillFiller
from klineflow.calibration.gap_detector import GapDetector
from klineflow.common.config import SubscriptionRegistry, load_pipeline_config
from klineflow.common.logs import setup_logging
from klineflow.common.timeutil import fmt_ms
from klineflow.common.types import MS_1M, MinuteBarEvent
from klineflow.market.client import OKXMarketClient
from klineflow.market.fetcher import HistoricalFetcher
from klineflow.market.ws_client import OKXWSClient
from klineflow.series.store import BarSeriesStore
from klineflow.storage.bar_repo import BarRepository
from klineflow.storage.db import load_config
from klineflow.storage.heartbeat_repo import HeartbeatRepository

log = logging.getLogger("klineflow.ws_runner")

SERVICE_NAME = "main_ws_runner"
HEARTBEAT_EVERY_S = 30


class StreamPipeline:
    """
    Wires the live path: WS candle1m -> Aggregator -> series + persistence.

    A hole in a symbol's 1m stream (next final bar more than a minute after the
    previous one) requests an on-demand backfill for that symbol.
    """

    def __init__(self, aggregator: Aggregator, backfill: BackfillService = None, save_minute_bars: bool = True):
        self.aggregator = aggregator
        self.backfill = backfill
        self.save_minute_bars = save_minute_bars
        self.last_open: Dict[str, int] = {}
        self.last_event_ms = 0

    def on_event(self, event: MinuteBarEvent):
        self.last_event_ms = event.event_time
        if not event.is_final:
            return

        prev = self.last_open.get(event.symbol)
        if prev is not None and event.open_time > prev + MS_1M:
            log.warning("[ws_runner] stream gap symbol=%s prev=%s next=%s",
                        event.symbol, fmt_ms(prev), fmt_ms(event.open_time))
            if self.backfill is not None:
                self.backfill.trigger(event.symbol, "stream_gap", related_ms=prev + MS_1M)
        if prev is None or event.open_time > prev:
            self.last_open[event.symbol] = event.open_time

        if self.save_minute_bars and self.aggregator.persistence is not None:
            self.aggregator.persistence.submit(event.to_bar())
        self.aggregator.on_minute_bar(event)


async def heartbeat_loop(hb: HeartbeatRepository, pipeline: StreamPipeline):
    while True:
        await asyncio.sleep(HEARTBEAT_EVERY_S)
        if not pipeline.last_event_ms:
            continue
        try:
            await asyncio.to_thread(hb.beat, SERVICE_NAME, pipeline.last_event_ms)
        except Exception as e:
            log.error("[ws_runner] heartbeat failed err=%s: %s", type(e).__name__, e)


async def reap_loop(aggregator: Aggregator, interval_s: float):
    while True:
        await asyncio.sleep(interval_s)
        try:
            aggregator.reap_stale()
        except Exception:
            log.exception("[ws_runner] reap failed")
        log.info("[ws_runner] stats %s", aggregator.stats())


async def runner(config_path=None):
    cfg = load_config(config_path)
    pcfg = load_pipeline_config(cfg)
    setup_logging(pcfg.logs.level, pcfg.logs.file)

    repo = BarRepository(cfg)
    hb = HeartbeatRepository(cfg)
    registry = SubscriptionRegistry(pcfg.subscriptions)
    symbols = registry.list_enabled()
    if not symbols:
        raise SystemExit("[ws_runner] no enabled subscriptions in config")

    aggregator = Aggregator.from_config(pcfg.aggregation, store=repo)
    series = BarSeriesStore(repo, registry, max_bars=pcfg.series.max_bars)
    series.bootstrap()
    aggregator.subscribe(series.on_bar_closed)

    client = OKXMarketClient.from_config(pcfg.market)
    fetcher = HistoricalFetcher.from_config(client, pcfg.backfill)
    backfill = BackfillService(
        GapDetector(repo), fetcher, BackfillFiller(repo), registry,
        lookback_minutes=pcfg.backfill.lookback_minutes,
        on_demand_minutes=pcfg.backfill.on_demand_minutes,
        cooldown_s=pcfg.backfill.cooldown_seconds,
        trigger_workers=pcfg.backfill.trigger_workers,
    )

    pipeline = StreamPipeline(aggregator, backfill, save_minute_bars=pcfg.aggregation.save_minute_bars)
    ws = OKXWSClient(symbols, on_event=pipeline.on_event, url=pcfg.market.ws_url)

    tasks = [
        asyncio.create_task(heartbeat_loop(hb, pipeline)),
        asyncio.create_task(reap_loop(aggregator, pcfg.aggregation.reap_interval_seconds)),
    ]
    try:
        await ws.run()
    finally:
        ws.stop()
        for t in tasks:
            t.cancel()
        backfill.close(wait=False)
        aggregator.close(wait=True)
        log.info("[ws_runner] final stats %s", aggregator.stats())


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--config", default=None, help="path to local.yaml")
    args = ap.parse_args()
    try:
        asyncio.run(runner(args.config))
    except KeyboardInterrupt:
        log.info("[ws_runner] KeyboardInterrupt, exiting.")


if __name__ == "__main__":
    main()
