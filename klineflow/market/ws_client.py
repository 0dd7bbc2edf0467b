import asyncio
import json
import logging
from typing import Callable, Iterable, List, Optional

import websockets

from klineflow.common.errors import MalformedResponseError
from klineflow.common.timeutil import now_ms
from klineflow.common.types import MinuteBarEvent
from klineflow.market.normalizer import OKXNormalizer

log = logging.getLogger(__name__)

OKX_BUSINESS_WS = "wss://ws.okx.com:8443/ws/v5/business"


class OKXWSClient:
    """
    OKX public websocket client.
    Subscribes candle1m for every instrument and calls on_event(MinuteBarEvent)
    for each candle row pushed, confirmed or not.
    """

    def __init__(
        self,
        inst_ids: Iterable[str],
        on_event: Callable[[MinuteBarEvent], None],
        url: str = OKX_BUSINESS_WS,
        normalizer: Optional[OKXNormalizer] = None,
        reconnect_delay_s: float = 3.0,
    ):
        self.inst_ids: List[str] = list(inst_ids)
        self.on_event = on_event
        self.url = url
        self.normalizer = normalizer or OKXNormalizer()
        self.reconnect_delay_s = reconnect_delay_s

        self._stop = False

    def stop(self):
        self._stop = True

    def subscribe_message(self) -> str:
        return json.dumps({
            "op": "subscribe",
            "args": [{"channel": "candle1m", "instId": i} for i in self.inst_ids],
        })

    async def run(self):
        while not self._stop:
            try:
                await self._run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error("[ws] ERROR %s: %s", type(e).__name__, e)
                # backoff
                await asyncio.sleep(self.reconnect_delay_s)

    async def _run_once(self):
        async with websockets.connect(self.url, ping_interval=20, ping_timeout=10, close_timeout=5) as ws:
            log.info("[ws] connected %s", self.url)

            await ws.send(self.subscribe_message())
            log.info("[ws] subscribed candle1m instIds=%s", self.inst_ids)

            while not self._stop:
                raw = await ws.recv()
                self.handle_message(raw)

    def handle_message(self, raw) -> int:
        """Dispatch one raw frame; returns the number of events delivered."""
        try:
            msg = json.loads(raw)
        except ValueError:
            log.warning("[ws] non-JSON frame dropped: %.200s", raw)
            return 0

        if not isinstance(msg, dict):
            return 0

        # subscribe acks and errors
        if msg.get("event"):
            level = logging.ERROR if msg.get("event") == "error" else logging.INFO
            log.log(level, "[ws] event=%s full=%s", msg.get("event"), msg)
            return 0

        arg = msg.get("arg") or {}
        inst_id = arg.get("instId")
        data = msg.get("data")
        if not inst_id or not data:
            return 0

        # candle rows: [[ts, o, h, l, c, vol, volCcy, volCcyQuote, confirm], ...]
        recv = now_ms()
        delivered = 0
        for row in data:
            try:
                event = self.normalizer.to_event(inst_id, row, recv_ms=recv)
            except MalformedResponseError as e:
                log.warning("[ws] skip row instId=%s err=%s", inst_id, e)
                continue
            self.on_event(event)
            delivered += 1
        return delivered
