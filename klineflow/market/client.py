import logging
import time
from typing import List, Optional, Tuple, Union

import requests

from klineflow.common.errors import MalformedResponseError, TransientNetworkError
from klineflow.common.types import Period

log = logging.getLogger(__name__)

Timeout = Union[float, Tuple[float, float]]


class OKXMarketClient:
    """
    OKX public market REST client.

    fetch_candles(...) -> list[list]:
        raw venue rows, newest-first: [ts, o, h, l, c, vol, volCcy, volCcyQuote, confirm]

    Refused connections, DNS failures, timeouts, truncated bodies, HTTP 429 and
    5xx answers are retried ``max_retries`` times with linear backoff and then
    raised as TransientNetworkError, as is any other transport failure. Anything
    else the venue answers that we cannot use is a MalformedResponseError, raised
    without retry.
    """

    BASE_URL = "https://www.okx.com"
    CANDLES_PATH = "/api/v5/market/candles"
    HISTORY_PATH = "/api/v5/market/history-candles"
    RETRYABLE_EXC = (requests.ConnectionError, requests.Timeout, requests.exceptions.ChunkedEncodingError)

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Timeout = (5.0, 10.0),
        max_retries: int = 3,
        backoff_s: float = 1.0,
        session: Optional[requests.Session] = None,
        sleep=time.sleep,
    ):
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))
        self.backoff_s = backoff_s
        self._sleep = sleep
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": "klineflow/1.0"})

    @classmethod
    def from_config(cls, market_cfg, session=None) -> "OKXMarketClient":
        return cls(
            base_url=market_cfg.base_url,
            timeout=(market_cfg.connect_timeout, market_cfg.read_timeout),
            max_retries=market_cfg.max_retries,
            backoff_s=market_cfg.retry_backoff_seconds,
            session=session,
        )

    def _get(self, path: str, params: dict) -> list:
        url = f"{self.base_url}{path}"
        last_err = None
        for attempt in range(1, self.max_retries + 1):
            try:
                r = self.session.get(url, params=params, timeout=self.timeout)
            except self.RETRYABLE_EXC as e:
                last_err = f"{type(e).__name__}: {e}"
                cause = e
            except requests.RequestException as e:
                raise TransientNetworkError(f"{path} request failed: {type(e).__name__}: {e}") from e
            else:
                if r.status_code != 429 and r.status_code < 500:
                    break
                last_err = f"http status {r.status_code}"
                cause = None
            log.warning("[okx] retryable failure attempt=%d/%d path=%s err=%s",
                        attempt, self.max_retries, path, last_err)
            if attempt < self.max_retries:
                self._sleep(self.backoff_s * attempt)
        else:
            raise TransientNetworkError(
                f"{path} failed after {self.max_retries} attempts: {last_err}") from cause

        try:
            r.raise_for_status()
        except requests.HTTPError as e:
            raise MalformedResponseError(f"{path} http status {r.status_code}") from e

        try:
            payload = r.json()
        except ValueError as e:
            raise MalformedResponseError(f"{path} returned non-JSON body") from e

        if not isinstance(payload, dict):
            raise MalformedResponseError(f"{path} returned {type(payload).__name__}, expected object")
        if payload.get("code") not in (None, "0", 0):
            raise MalformedResponseError(f"OKX error: code={payload.get('code')} msg={payload.get('msg')}")
        data = payload.get("data")
        if not isinstance(data, list):
            raise MalformedResponseError(f"{path} response has no data array")
        return data

    def fetch_candles(
        self,
        inst_id: str,
        bar: str = "1m",
        limit: int = 300,
        after: Optional[int] = None,
        before: Optional[int] = None,
        history: bool = False,
    ) -> List[list]:
        """
        One page of candles. OKX cursors are exclusive: ``after`` returns rows
        older than the value, ``before`` rows newer than it.
        """
        params = {"instId": inst_id, "bar": Period.parse(bar).okx_bar, "limit": str(int(limit))}
        if after is not None:
            params["after"] = str(int(after))
        if before is not None:
            params["before"] = str(int(before))
        path = self.HISTORY_PATH if history else self.CANDLES_PATH
        return self._get(path, params)
