from decimal import Decimal

from klineflow.calibration.verifier import (
    HIGH_INVALID,
    HIGH_LESS_THAN_LOW,
    LOW_INVALID,
    NEGATIVE_PRICE,
    NEGATIVE_VOLUME,
    PRICE_TOO_HIGH,
    Verifier,
    check_rows,
)
from klineflow.common.types import MS_1M, Bar, Period


class StubFetcher:
    def __init__(self, bars):
        self.bars = bars
        self.calls = []

    def fetch_range(self, symbol, start, end):
        self.calls.append((symbol, start, end))
        return list(self.bars)


def _raw(t, o, h, l, c, v=1):
    return Bar("BTC-USDT", Period.M1, t, Decimal(str(o)), Decimal(str(h)), Decimal(str(l)), Decimal(str(c)), Decimal(str(v)))


def test_clean_rows(make_bar, t0):
    checks = check_rows([make_bar(t0 + k * MS_1M) for k in range(1, 5)])
    assert checks.duplicates == []
    assert checks.out_of_order == []
    assert checks.anomalies == []


def test_duplicates_and_ordering(make_bar, t0):
    rows = [make_bar(t0 + MS_1M), make_bar(t0 + 3 * MS_1M), make_bar(t0 + 2 * MS_1M), make_bar(t0 + 3 * MS_1M)]
    checks = check_rows(rows)
    assert checks.duplicates == [(t0 + 3 * MS_1M, 2)]
    assert checks.out_of_order == [(t0 + 3 * MS_1M, t0 + 2 * MS_1M)]


def test_anomaly_kinds(t0):
    rows = [
        _raw(t0 + 1 * MS_1M, -1, 10, -2, 5),
        _raw(t0 + 2 * MS_1M, 10, 11, 9, 10, v=-5),
        _raw(t0 + 3 * MS_1M, 2_000_000, 2_000_001, 1_999_999, 2_000_000),
        _raw(t0 + 4 * MS_1M, 10, 9, 11, 10),
        _raw(t0 + 5 * MS_1M, 10, 10.5, 9, 11),
        _raw(t0 + 6 * MS_1M, 10, 12, 10.5, 11),
    ]
    checks = check_rows(rows)
    kinds = {a.bar_time: set(a.kinds) for a in checks.anomalies}

    assert kinds[t0 + 1 * MS_1M] == {NEGATIVE_PRICE}
    assert kinds[t0 + 2 * MS_1M] == {NEGATIVE_VOLUME}
    assert kinds[t0 + 3 * MS_1M] == {PRICE_TOO_HIGH}
    assert {HIGH_LESS_THAN_LOW, HIGH_INVALID, LOW_INVALID} <= kinds[t0 + 4 * MS_1M]
    assert kinds[t0 + 5 * MS_1M] == {HIGH_INVALID}
    assert kinds[t0 + 6 * MS_1M] == {LOW_INVALID}


def test_custom_price_ceiling(t0):
    checks = check_rows([_raw(t0 + MS_1M, 150, 150, 150, 150)], price_ceiling=100)
    assert checks.anomalies[0].kinds == (PRICE_TOO_HIGH,)


def test_verify_reports_missing_and_is_read_only(make_bar, t0, store):
    for k in (1, 2, 4):
        store.save(make_bar(t0 + k * MS_1M))
    venue = [make_bar(t0 + k * MS_1M) for k in range(1, 6)]
    fetcher = StubFetcher(venue)

    report = Verifier(store, fetcher).verify("BTC-USDT", t0 + MS_1M, t0 + 6 * MS_1M)

    assert report.local_count == 3
    assert report.venue_count == 5
    assert report.missing == [t0 + 3 * MS_1M, t0 + 5 * MS_1M]
    assert not report.ok
    assert len(store) == 3
    assert fetcher.calls == [("BTC-USDT", t0 + MS_1M, t0 + 6 * MS_1M)]


def test_report_to_frame(make_bar, t0, store):
    store.save(_raw(t0 + MS_1M, 10, 9, 11, 10))
    report = Verifier(store, StubFetcher([make_bar(t0 + MS_1M), make_bar(t0 + 2 * MS_1M)])).verify(
        "BTC-USDT", t0, t0 + 3 * MS_1M)

    df = report.to_frame()
    assert list(df.columns[:5]) == ["symbol", "kind", "bar_time", "time", "detail"]
    assert len(df) == 2
    assert df.iloc[1]["kind"] == "MISSING"
    assert df.iloc[1]["time"] == "2024-01-02T10:02:00Z"
    assert (df["symbol"] == "BTC-USDT").all()


def test_empty_report_frame(store, t0):
    report = Verifier(store, StubFetcher([])).verify("BTC-USDT", t0, t0 + MS_1M)
    assert report.ok
    assert report.to_frame().empty
