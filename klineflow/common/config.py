from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from klineflow.storage.db import load_config

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AggregationConfig:
    persist_workers: int = 2
    persist_queue_size: int = 1000
    stale_after_minutes: int = 120
    max_dedup_keys: int = 200_000
    reap_interval_seconds: int = 300
    save_minute_bars: bool = True


@dataclass(frozen=True)
class SeriesConfig:
    max_bars: int = 365


@dataclass(frozen=True)
class BackfillConfig:
    interval_seconds: int = 600
    lookback_minutes: int = 1440
    on_demand_minutes: int = 60
    cooldown_seconds: int = 300
    trigger_workers: int = 4
    page_limit: int = 300
    rate_limit_ms: int = 200
    max_pages: int = 500
    stale_heartbeat_seconds: int = 180


@dataclass(frozen=True)
class VerifyConfig:
    price_ceiling: float = 1_000_000.0


@dataclass(frozen=True)
class MarketConfig:
    base_url: str = "https://www.okx.com"
    ws_url: str = "wss://ws.okx.com:8443/ws/v5/business"
    connect_timeout: float = 5.0
    read_timeout: float = 10.0
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0


@dataclass(frozen=True)
class LoggingConfig:
    level: str = "info"
    file: Optional[str] = None


@dataclass(frozen=True)
class Subscription:
    symbol: str
    enabled: bool = True


@dataclass(frozen=True)
class PipelineConfig:
    subscriptions: Tuple[Subscription, ...] = ()
    aggregation: AggregationConfig = field(default_factory=AggregationConfig)
    series: SeriesConfig = field(default_factory=SeriesConfig)
    backfill: BackfillConfig = field(default_factory=BackfillConfig)
    verify: VerifyConfig = field(default_factory=VerifyConfig)
    market: MarketConfig = field(default_factory=MarketConfig)
    logs: LoggingConfig = field(default_factory=LoggingConfig)

    @property
    def enabled_symbols(self) -> List[str]:
        return [s.symbol for s in self.subscriptions if s.enabled]


def _section(raw: Dict[str, Any], name: str, cls):
    data = raw.get(name) or {}
    if not isinstance(data, dict):
        raise TypeError(f"config section '{name}' must be a mapping, got {type(data)}")
    known = set(cls.__dataclass_fields__)
    unknown = sorted(set(data) - known)
    if unknown:
        log.warning("[config] ignoring unknown keys in '%s': %s", name, unknown)
    return cls(**{k: v for k, v in data.items() if k in known})


def _subscriptions(raw: Dict[str, Any]) -> Tuple[Subscription, ...]:
    out = []
    for item in raw.get("subscriptions") or []:
        # allow bare "BTC-USDT-SWAP" entries as shorthand for enabled
        if isinstance(item, str):
            out.append(Subscription(symbol=item))
        elif isinstance(item, dict) and item.get("symbol"):
            out.append(Subscription(symbol=str(item["symbol"]), enabled=bool(item.get("enabled", True))))
        else:
            raise ValueError(f"bad subscription entry: {item!r}")
    return tuple(out)


def load_pipeline_config(cfg: Optional[Dict[str, Any]] = None) -> PipelineConfig:
    raw = cfg if cfg is not None else load_config()
    return PipelineConfig(
        subscriptions=_subscriptions(raw),
        aggregation=_section(raw, "aggregation", AggregationConfig),
        series=_section(raw, "series", SeriesConfig),
        backfill=_section(raw, "backfill", BackfillConfig),
        verify=_section(raw, "verify", VerifyConfig),
        market=_section(raw, "market", MarketConfig),
        logs=_section(raw, "logging", LoggingConfig),
    )


class SubscriptionRegistry:
    """Which instruments are maintained live. Re-read on ``refresh()``."""

    def __init__(self, subscriptions=(), loader=None):
        self._loader = loader
        self._lock = threading.Lock()
        self._subs: Tuple[Subscription, ...] = tuple(subscriptions)

    @classmethod
    def from_config_file(cls, path: Optional[str] = None) -> "SubscriptionRegistry":
        def loader():
            return _subscriptions(load_config(path))

        reg = cls(loader=loader)
        reg.refresh()
        return reg

    def refresh(self) -> List[str]:
        if self._loader is not None:
            subs = tuple(self._loader())
            with self._lock:
                self._subs = subs
        enabled = self.list_enabled()
        log.info("[subscriptions] enabled=%d symbols=%s", len(enabled), enabled)
        return enabled

    def list_enabled(self) -> List[str]:
        with self._lock:
            return [s.symbol for s in self._subs if s.enabled]
