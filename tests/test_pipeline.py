import logging
import threading
from decimal import Decimal

from klineflow.aggregation.aggregator import Aggregator
from klineflow.aggregation.persistence import PersistenceWorker
from klineflow.common.logs import setup_logging
from klineflow.common.types import MS_1M, MinuteBarEvent, Period
from klineflow.main_ws_runner import StreamPipeline
from klineflow.scripts.aggregate_bars import bars_to_df, rebuild
from klineflow.series.store import BarSeriesStore
from klineflow.storage.memory import InMemoryBarStore


class SlowStore(InMemoryBarStore):
    """First save blocks until released; later saves go straight through."""

    def __init__(self):
        super().__init__()
        self.release = threading.Event()
        self.entered = threading.Event()
        self.threads = []

    def save(self, bar):
        self.threads.append(threading.current_thread().name)
        if not self.entered.is_set():
            self.entered.set()
            self.release.wait(5)
        return super().save(bar)


def test_full_queue_writes_inline(make_bar, t0):
    store = SlowStore()
    worker = PersistenceWorker(store, workers=1, queue_size=1)
    worker.submit(make_bar(t0 + MS_1M))
    assert store.entered.wait(5)

    worker.submit(make_bar(t0 + 2 * MS_1M))
    store.release.set()
    worker.close()

    assert worker.snapshot()["write_inline"] == 1
    assert worker.snapshot()["write_ok"] == 2
    assert store.threads[1] == threading.current_thread().name
    assert len(store) == 2


def test_stream_to_series_end_to_end(make_event, t0, registry):
    store = InMemoryBarStore()
    agg = Aggregator(persistence=PersistenceWorker(store))
    series = BarSeriesStore(store, registry)
    series.bootstrap()
    agg.subscribe(series.on_bar_closed)

    triggered = []

    class Trigger:
        def trigger(self, symbol, reason, related_ms=None):
            triggered.append((symbol, reason, related_ms))

    pipe = StreamPipeline(agg, Trigger())
    for i in list(range(0, 8)) + list(range(10, 16)):
        pipe.on_event(make_event(t0 + i * MS_1M, v=2))
    pipe.on_event(make_event(t0 + 16 * MS_1M, is_final=False))
    agg.close()

    assert triggered == [("BTC-USDT", "stream_gap", t0 + 8 * MS_1M)]
    m5 = series.get_series("BTC-USDT", Period.M5)
    assert [b.bar_time for b in m5.bars()] == [t0 + 5 * MS_1M, t0 + 10 * MS_1M, t0 + 15 * MS_1M]
    assert m5[1].source_count == 3
    assert series.get_series("BTC-USDT", Period.M15).latest().volume == Decimal("26")
    # raw minutes are persisted too, the unconfirmed one is not
    assert store.count("BTC-USDT", Period.M1) == 14
    assert store.count("BTC-USDT", Period.M5) == 3


def test_rebuild_replays_minutes(make_bar, t0):
    source = InMemoryBarStore(make_bar(t0 + k * MS_1M, v=1) for k in range(1, 21))
    target = InMemoryBarStore()

    minutes, closed, stats = rebuild(source, target, "BTC-USDT", t0, t0 + 21 * MS_1M, periods=[Period.M5, Period.M15])

    assert len(minutes) == 20
    assert [(b.period, b.bar_time) for b in closed if b.period is Period.M5] == [
        (Period.M5, t0 + k * 5 * MS_1M) for k in (1, 2, 3, 4)
    ]
    assert [b.bar_time for b in closed if b.period is Period.M15] == [t0 + 15 * MS_1M]
    assert stats.write_ok == 5
    assert target.count("BTC-USDT", Period.M5) == 4

    df = bars_to_df(closed)
    assert list(df["timeframe"].unique()) == ["15m", "5m"]
    assert (df["n"] == [15, 5, 5, 5, 5]).all()


def test_event_from_bar_round_trip(make_bar, t0):
    bar = make_bar(t0 + MS_1M, o=1, c=2)
    ev = MinuteBarEvent.from_bar(bar)
    assert ev.open_time == t0
    assert ev.to_bar() == bar


def test_setup_logging_is_idempotent():
    root = setup_logging("debug")
    handlers = list(root.handlers)
    again = setup_logging("warning")
    assert again.handlers == handlers
    assert again.level == logging.WARNING
