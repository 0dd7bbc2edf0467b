from klineflow.calibration.filler import BackfillFiller
from klineflow.common.errors import StoreError
from klineflow.common.types import MS_1M
from klineflow.storage.memory import InMemoryBarStore


def test_fill_is_idempotent(make_bar, t0, store):
    bars = [make_bar(t0 + k * MS_1M) for k in range(1, 6)]
    filler = BackfillFiller(store)

    assert filler.fill("BTC-USDT", bars) == 5
    assert filler.fill("BTC-USDT", bars) == 0
    assert len(store) == 5


def test_fill_skips_existing(make_bar, t0, store):
    store.save(make_bar(t0 + 2 * MS_1M, o=1))
    inserted = BackfillFiller(store).fill("BTC-USDT", [make_bar(t0 + k * MS_1M, o=2) for k in (1, 2, 3)])
    assert inserted == 2
    # existing row untouched
    assert store.query("BTC-USDT", "1m", t0 + 2 * MS_1M, t0 + 3 * MS_1M)[0].open == 1


class FlakyStore(InMemoryBarStore):
    def save(self, bar):
        if bar.bar_time % (2 * MS_1M) == 0:
            raise StoreError("deadlock detected")
        return super().save(bar)


def test_store_errors_do_not_stop_the_batch(make_bar, t0):
    store = FlakyStore()
    inserted = BackfillFiller(store).fill("BTC-USDT", [make_bar(t0 + k * MS_1M) for k in range(1, 7)])
    assert inserted == 3
    assert len(store) == 3
