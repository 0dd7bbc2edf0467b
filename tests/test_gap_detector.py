from klineflow.calibration.gap_detector import GapDetector, contiguous_ranges
from klineflow.common.types import MS_1M


def test_detects_the_missing_minutes(make_bar, t0, store):
    for m in (1, 5):
        store.save(make_bar(t0 + m * MS_1M))

    missing = GapDetector(store).detect_missing("BTC-USDT", t0 + MS_1M, t0 + 6 * MS_1M)
    assert missing == [t0 + 2 * MS_1M, t0 + 3 * MS_1M, t0 + 4 * MS_1M]


def test_ten_minute_window_with_three_missing(make_bar, t0, store):
    # t0 is 10:00; 10:00, 10:01 and 10:05..10:09 are stored
    for m in (0, 1, 5, 6, 7, 8, 9):
        store.save(make_bar(t0 + m * MS_1M))

    missing = GapDetector(store).detect_missing("BTC-USDT", t0, t0 + 10 * MS_1M)
    assert missing == [t0 + 2 * MS_1M, t0 + 3 * MS_1M, t0 + 4 * MS_1M]


def test_empty_store_reports_full_grid(store, t0):
    missing = GapDetector(store).detect_missing("BTC-USDT", t0, t0 + 10 * MS_1M)
    assert missing == [t0 + k * MS_1M for k in range(10)]


def test_full_store_reports_nothing(make_bar, t0, store):
    for k in range(10):
        store.save(make_bar(t0 + k * MS_1M))
    report = GapDetector(store).detect("BTC-USDT", t0, t0 + 10 * MS_1M)
    assert report.missing == []
    assert report.expected == report.present == 10
    assert report.missing_ratio == 0.0


def test_other_symbols_do_not_count(make_bar, t0, store):
    store.save(make_bar(t0, symbol="ETH-USDT"))
    assert GapDetector(store).detect_missing("BTC-USDT", t0, t0 + MS_1M) == [t0]


def test_empty_range(store, t0):
    report = GapDetector(store).detect("BTC-USDT", t0, t0)
    assert report.missing == []
    assert report.missing_ratio == 0.0


def test_contiguous_ranges(t0):
    ts = [t0, t0 + MS_1M, t0 + 2 * MS_1M, t0 + 5 * MS_1M, t0 + 7 * MS_1M, t0 + 8 * MS_1M]
    assert contiguous_ranges(ts) == [(t0, t0 + 2 * MS_1M), (t0 + 5 * MS_1M, t0 + 5 * MS_1M), (t0 + 7 * MS_1M, t0 + 8 * MS_1M)]
    assert contiguous_ranges([]) == []
