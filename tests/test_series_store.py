from klineflow.common.config import Subscription, SubscriptionRegistry
from klineflow.common.errors import StoreError
from klineflow.common.types import MS_1M, AGGREGATED_PERIODS, Period
from klineflow.series.store import BarSeriesStore
from klineflow.storage.memory import InMemoryBarStore

M5 = 5 * MS_1M


def test_bootstrap_loads_latest_and_creates_empty(make_bar, t0, registry):
    store = InMemoryBarStore(make_bar(t0 + k * M5, period=Period.M5) for k in range(1, 11))
    series = BarSeriesStore(store, registry, max_bars=4)

    summary = series.bootstrap()
    assert summary.loaded == 1
    assert summary.empty == 2 * len(AGGREGATED_PERIODS) - 1
    assert summary.failed == 0

    view = series.get_series("BTC-USDT", Period.M5)
    assert [b.bar_time for b in view.bars()] == [t0 + k * M5 for k in range(7, 11)]
    assert series.get_series("ETH-USDT", "1h").size() == 0
    # disabled symbols are not bootstrapped
    assert series.get_series("XRP-USDT", Period.M5) is None


def test_bootstrap_twice_skips_existing(registry, store):
    series = BarSeriesStore(store, registry)
    series.bootstrap()
    again = series.bootstrap()
    assert again.skipped == 2 * len(AGGREGATED_PERIODS)
    assert again.loaded == again.empty == 0


class BrokenStore(InMemoryBarStore):
    def query_latest(self, symbol, period, limit):
        if symbol == "ETH-USDT":
            raise StoreError("timeout")
        return super().query_latest(symbol, period, limit)


def test_bootstrap_failure_is_isolated(registry):
    series = BarSeriesStore(BrokenStore(), registry, periods=[Period.M5])
    summary = series.bootstrap()
    assert summary.failed == 1
    assert summary.empty == 1
    assert series.get_series("ETH-USDT", Period.M5).size() == 0


def test_on_bar_closed_bounded_and_unique(make_bar, t0, registry, store):
    series = BarSeriesStore(store, registry, max_bars=3)
    for k in range(1, 6):
        series.on_bar_closed(make_bar(t0 + k * M5, period=Period.M5))
    series.on_bar_closed(make_bar(t0 + 5 * M5, o=999, period=Period.M5))

    view = series.get_series("BTC-USDT", Period.M5)
    times = [b.bar_time for b in view.bars()]
    assert times == [t0 + 3 * M5, t0 + 4 * M5, t0 + 5 * M5]
    assert len(view) == 3
    assert view.latest().open != 999


def test_out_of_order_insert_keeps_order(make_bar, t0, registry, store):
    series = BarSeriesStore(store, registry)
    for k in (3, 1, 2):
        series.on_bar_closed(make_bar(t0 + k * M5, period=Period.M5))
    view = series.get_series("BTC-USDT", Period.M5)
    assert [b.bar_time for b in view.bars()] == [t0 + M5, t0 + 2 * M5, t0 + 3 * M5]


def test_minute_bars_ignored(make_bar, t0, registry, store):
    series = BarSeriesStore(store, registry)
    series.on_bar_closed(make_bar(t0 + MS_1M))
    assert series.get_series("BTC-USDT", Period.M1) is None


def test_view_accessors(make_bar, t0, registry, store):
    series = BarSeriesStore(store, registry)
    for k in range(1, 5):
        series.on_bar_closed(make_bar(t0 + k * M5, period=Period.M5, symbol="SOL-USDT"))
    view = series.get_series("SOL-USDT", Period.M5)

    assert view.symbol == "SOL-USDT"
    assert view.period is Period.M5
    assert view[0].bar_time == t0 + M5
    assert view[-1].bar_time == t0 + 4 * M5
    assert view.get(10) is None
    assert view.size() == 4
    assert [b.bar_time for b in view.bars_before(t0 + 3 * M5)] == [t0 + M5, t0 + 2 * M5]
    assert view.bars_before(t0) == []


def test_view_sees_updates_and_copies_are_detached(make_bar, t0, registry, store):
    series = BarSeriesStore(store, registry)
    series.on_bar_closed(make_bar(t0 + M5, period=Period.M5))
    view = series.get_series("BTC-USDT", Period.M5)
    snapshot = view.bars()
    series.on_bar_closed(make_bar(t0 + 2 * M5, period=Period.M5))

    assert len(snapshot) == 1
    assert view.size() == 2


def test_refresh_loads_new_symbols_only(make_bar, t0):
    subs = [[Subscription("BTC-USDT")]]
    registry = SubscriptionRegistry(loader=lambda: subs[0])
    registry.refresh()
    store = InMemoryBarStore([make_bar(t0 + M5, symbol="SOL-USDT", period=Period.M5)])
    series = BarSeriesStore(store, registry, periods=[Period.M5])
    series.bootstrap()
    assert series.get_series("SOL-USDT", Period.M5) is None

    subs[0] = [Subscription("BTC-USDT"), Subscription("SOL-USDT")]
    summary = series.refresh()

    assert (summary.loaded, summary.skipped) == (1, 1)
    assert series.get_series("SOL-USDT", Period.M5).latest().bar_time == t0 + M5


class RacingStore(InMemoryBarStore):
    """A live bar closes while the history query is still running."""

    def __init__(self, bars, live_bar):
        super().__init__(bars)
        self.live_bar = live_bar
        self.series = None

    def query_latest(self, symbol, period, limit):
        rows = super().query_latest(symbol, period, limit)
        self.series.on_bar_closed(self.live_bar)
        return rows


def test_bar_closed_during_load_is_kept(make_bar, t0):
    registry = SubscriptionRegistry([Subscription("BTC-USDT")])
    live = make_bar(t0 + 100 * M5, period=Period.M5)
    store = RacingStore([make_bar(t0 + M5, period=Period.M5)], live)
    series = BarSeriesStore(store, registry, periods=[Period.M5])
    store.series = series

    series.refresh()

    times = [b.bar_time for b in series.get_series("BTC-USDT", Period.M5).bars()]
    assert times == [t0 + M5, t0 + 100 * M5]
