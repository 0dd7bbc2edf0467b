import json
from decimal import Decimal

import pytest

from klineflow.common.errors import MalformedResponseError
from klineflow.common.types import MS_1M, Period
from klineflow.market.normalizer import OKXNormalizer
from klineflow.market.ws_client import OKXWSClient


def test_to_bar_keys_by_close_time(row, t0):
    bar = OKXNormalizer().to_bar("BTC-USDT", row(t0 + 15_000, o="42000.1", c="42010.5", v="3.25"))
    assert bar.period is Period.M1
    assert bar.bar_time == t0 + MS_1M
    assert bar.open == Decimal("42000.1")
    assert bar.close == Decimal("42010.5")
    assert bar.volume == Decimal("3.25")


def test_to_event(row, t0):
    ev = OKXNormalizer().to_event("ETH-USDT", row(t0, confirm="0"), recv_ms=t0 + 5)
    assert ev.open_time == t0
    assert ev.close_time == t0 + MS_1M
    assert ev.is_final is False
    assert ev.event_time == t0 + 5
    assert ev.to_bar().bar_time == t0 + MS_1M


def test_is_confirmed():
    n = OKXNormalizer()
    assert n.is_confirmed(["1", "1", "1", "1", "1", "1", "0", "0", "1"])
    assert not n.is_confirmed(["1", "1", "1", "1", "1", "1", "0", "0", "0"])
    assert n.is_confirmed(["1", "1", "1", "1", "1", "1"])


@pytest.mark.parametrize("bad", [[], ["x", "1", "1", "1", "1", "1"], ["1", "a", "1", "1", "1", "1"]])
def test_malformed_rows(bad):
    with pytest.raises(MalformedResponseError):
        OKXNormalizer().to_bar("BTC-USDT", bad)


def test_ws_subscribes_every_instrument():
    ws = OKXWSClient(["BTC-USDT", "ETH-USDT"], on_event=lambda e: None)
    msg = json.loads(ws.subscribe_message())
    assert msg["op"] == "subscribe"
    assert msg["args"] == [{"channel": "candle1m", "instId": "BTC-USDT"},
                           {"channel": "candle1m", "instId": "ETH-USDT"}]


def test_ws_handle_message_dispatches_rows(row, t0):
    got = []
    ws = OKXWSClient(["BTC-USDT"], on_event=got.append)
    frame = {"arg": {"channel": "candle1m", "instId": "BTC-USDT"},
             "data": [row(t0, confirm="1"), row(t0 + MS_1M, confirm="0"), ["bad"]]}

    assert ws.handle_message(json.dumps(frame)) == 2
    assert [(e.symbol, e.open_time, e.is_final) for e in got] == [
        ("BTC-USDT", t0, True),
        ("BTC-USDT", t0 + MS_1M, False),
    ]


@pytest.mark.parametrize("raw", [
    "not json",
    json.dumps({"event": "subscribe", "arg": {"channel": "candle1m", "instId": "BTC-USDT"}}),
    json.dumps({"event": "error", "code": "60012", "msg": "bad request"}),
    json.dumps({"arg": {"channel": "candle1m"}, "data": []}),
    json.dumps([1, 2, 3]),
])
def test_ws_ignores_control_frames(raw):
    got = []
    ws = OKXWSClient(["BTC-USDT"], on_event=got.append)
    assert ws.handle_message(raw) == 0
    assert got == []
