import asyncio
import json
import threading
import time
from typing import Callable, Optional

import websockets

from polymarket_updown.engine.feed import PriceFeedAggregator

TOPIC = "crypto_prices_chainlink"


class ChainlinkRtdsHook:
    """Polymarket RTDS Chainlink price stream feeding a PriceFeedAggregator.

    Runs its own event loop on a daemon thread and reconnects after
    `reconnect_seconds` whenever the socket drops.
    """

    def __init__(
        self,
        feed: PriceFeedAggregator,
        symbol: str = "btc/usd",
        url: str = "wss://ws-live-data.polymarket.com",
        reconnect_seconds: float = 3.0,
        clock: Callable[[], float] = time.time,
    ):
        self.feed = feed
        self.symbol = symbol.lower()
        self.url = url
        self.reconnect_seconds = float(reconnect_seconds)
        self._clock = clock
        self._running = False
        self._connected = False
        self._thread: Optional[threading.Thread] = None
        self._on_tick: Optional[Callable[[dict], None]] = None

    def start(self):
        if self._running:
            return
        self._running = True
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self):
        self._running = False

    @property
    def connected(self) -> bool:
        return self._connected

    def set_on_tick(self, cb: Optional[Callable[[dict], None]]):
        self._on_tick = cb

    def subscribe_message(self) -> str:
        return json.dumps({
            "action": "subscribe",
            "subscriptions": [
                {
                    "topic": TOPIC,
                    "type": "*",
                    "filters": json.dumps({"symbol": self.symbol}),
                },
            ],
        })

    def _run(self):
        asyncio.run(self._run_async())

    async def _run_async(self):
        while self._running:
            try:
                async with websockets.connect(self.url, ping_interval=5, ping_timeout=20) as ws:
                    self._connected = True
                    await ws.send(self.subscribe_message())
                    while self._running:
                        msg = await ws.recv()
                        self._on_msg(msg)
            except Exception:
                self._connected = False
                await asyncio.sleep(self.reconnect_seconds)
        self._connected = False

    def _on_msg(self, raw) -> Optional[float]:
        try:
            obj = json.loads(raw)
        except (TypeError, ValueError):
            return None
        if not isinstance(obj, dict) or obj.get("topic") != TOPIC:
            return None
        payload = obj.get("payload")
        if not isinstance(payload, dict):
            return None

        # Snapshot message may come as payload.data list without symbol; ignore.
        if isinstance(payload.get("data"), list):
            return None
        sym = str(payload.get("symbol", self.symbol)).lower()
        if sym != self.symbol:
            return None
        try:
            px = float(payload.get("value"))
        except (TypeError, ValueError):
            return None

        now = float(self._clock())
        if not self.feed.ingest(px, now):
            return None
        if self._on_tick:
            try:
                self._on_tick({"symbol": sym, "price": px, "ts": now})
            except Exception:
                pass
        return px
