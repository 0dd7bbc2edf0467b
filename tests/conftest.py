"""Shared fixtures: bar builders, in-memory store, fake OKX session, fake psycopg2 connection."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal

import pytest
import requests

from klineflow.common.config import Subscription, SubscriptionRegistry
from klineflow.common.timeutil import to_ms
from klineflow.common.types import MS_1M, Bar, MinuteBarEvent, Period
from klineflow.storage.memory import InMemoryBarStore

# 2024-01-02 10:00:00 UTC
T0 = to_ms(datetime(2024, 1, 2, 10, 0))


def D(x) -> Decimal:
    return Decimal(str(x))


@pytest.fixture
def t0() -> int:
    return T0


@pytest.fixture
def make_event():
    def _make(open_time, o=100, h=None, l=None, c=None, v=1, symbol="BTC-USDT", is_final=True, period="1m"):
        c = o if c is None else c
        h = max(o, c) if h is None else h
        l = min(o, c) if l is None else l
        return MinuteBarEvent(
            symbol=symbol,
            exchange="okx",
            open_time=open_time,
            close_time=open_time + MS_1M,
            open=D(o),
            high=D(h),
            low=D(l),
            close=D(c),
            volume=D(v),
            is_final=is_final,
            event_time=open_time + MS_1M,
            period=period,
        )

    return _make


@pytest.fixture
def make_bar():
    def _make(bar_time, o=100, h=None, l=None, c=None, v=1, symbol="BTC-USDT", period=Period.M1, n=1):
        c = o if c is None else c
        h = max(o, c) if h is None else h
        l = min(o, c) if l is None else l
        return Bar(symbol, Period.parse(period), bar_time, D(o), D(h), D(l), D(c), D(v), n)

    return _make


@pytest.fixture
def store():
    return InMemoryBarStore()


@pytest.fixture
def registry():
    return SubscriptionRegistry([Subscription("BTC-USDT"), Subscription("ETH-USDT"), Subscription("XRP-USDT", enabled=False)])


def okx_row(open_time, o=100, h=101, l=99, c=100.5, v=10, confirm="1"):
    return [str(open_time), str(o), str(h), str(l), str(c), str(v), "0", "0", confirm]


@pytest.fixture
def row():
    return okx_row


class FakeResponse:
    def __init__(self, payload=None, status=200, text=None):
        self._payload = payload
        self.status_code = status
        self.text = text

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)

    def json(self):
        if self.text is not None:
            raise ValueError("not json")
        return self._payload


class FakeSession:
    """Plays back scripted responses (or raises scripted exceptions) in order."""

    def __init__(self, script=()):
        self.script = list(script)
        self.calls = []
        self.headers = {}

    def get(self, url, params=None, timeout=None):
        self.calls.append({"url": url, "params": dict(params or {}), "timeout": timeout})
        if not self.script:
            return FakeResponse({"code": "0", "data": []})
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        if isinstance(item, FakeResponse):
            return item
        return FakeResponse({"code": "0", "msg": "", "data": item})


@pytest.fixture
def fake_session():
    return FakeSession


@pytest.fixture
def fake_response():
    return FakeResponse


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.rowcount = 0
        self._results = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.conn.executed.append((" ".join(sql.split()), params))
        if self.conn.fail_with is not None:
            raise self.conn.fail_with
        result = self.conn.results.pop(0) if self.conn.results else []
        self._results = result
        self.rowcount = self.conn.rowcount

    def fetchone(self):
        return self._results[0] if self._results else None

    def fetchall(self):
        return list(self._results)


class FakeConn:
    def __init__(self, results=(), rowcount=1, fail_with=None):
        self.results = list(results)
        self.rowcount = rowcount
        self.fail_with = fail_with
        self.executed = []
        self.committed = 0
        self.rolled_back = 0
        self.closed = False

    def cursor(self):
        return FakeCursor(self)

    def commit(self):
        self.committed += 1

    def rollback(self):
        self.rolled_back += 1

    def close(self):
        self.closed = True


@pytest.fixture
def fake_conn():
    return FakeConn
