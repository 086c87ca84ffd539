from __future__ import annotations

import math
import threading
import time
from collections import deque
from typing import Callable, List, Optional

from polymarket_updown.models import (
    FeedSnapshot,
    HistoricalVolatility,
    PriceSample,
    SessionVolatilityRecord,
    Side,
)


class PriceFeedAggregator:
    """Sliding-window statistics over a real-time reference price stream.

    Every statistic is recomputed from the raw buffer on each call. `ingest` may
    run on the stream thread; reads take the same lock so nothing ever sees a
    half-pruned buffer.
    """

    def __init__(
        self,
        lookback_seconds: float = 120.0,
        stale_seconds: float = 5.0,
        history_capacity: int = 20,
        min_volatility_samples: int = 10,
        clock: Callable[[], float] = time.time,
    ):
        self.lookback_seconds = float(lookback_seconds)
        self.stale_seconds = float(stale_seconds)
        self.min_volatility_samples = int(min_volatility_samples)
        self._clock = clock
        self._samples: deque[PriceSample] = deque()
        self._history: deque[SessionVolatilityRecord] = deque(maxlen=int(history_capacity))
        self._peg: Optional[float] = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, feed_cfg, clock: Callable[[], float] = time.time) -> "PriceFeedAggregator":
        return cls(
            lookback_seconds=feed_cfg.lookback_seconds,
            stale_seconds=feed_cfg.stale_seconds,
            history_capacity=feed_cfg.history_capacity,
            min_volatility_samples=feed_cfg.min_volatility_samples,
            clock=clock,
        )

    # -- ingestion -----------------------------------------------------------

    def ingest(self, price: float, at: Optional[float] = None) -> bool:
        try:
            px = float(price)
        except (TypeError, ValueError):
            return False
        if not math.isfinite(px) or px <= 0:
            return False
        t = float(self._clock() if at is None else at)
        with self._lock:
            newest = max(t, self._samples[-1].time) if self._samples else t
            cutoff = newest - self.lookback_seconds
            if t < cutoff:
                return False
            self._samples.append(PriceSample(price=px, time=t))
            while self._samples and self._samples[0].time < cutoff:
                self._samples.popleft()
        return True

    def set_session_peg(self, price: Optional[float]) -> bool:
        if price is None:
            return False
        try:
            px = float(price)
        except (TypeError, ValueError):
            return False
        if not math.isfinite(px) or px <= 0:
            return False
        with self._lock:
            self._peg = px
        return True

    @property
    def session_peg(self) -> Optional[float]:
        return self._peg

    @property
    def latest_price(self) -> Optional[float]:
        with self._lock:
            return self._samples[-1].price if self._samples else None

    def samples(self) -> List[PriceSample]:
        with self._lock:
            return list(self._samples)

    # -- derived statistics --------------------------------------------------

    def is_ready(self) -> bool:
        with self._lock:
            return self._is_ready()

    def momentum(self, window_secs: float = 30) -> Optional[float]:
        with self._lock:
            return self._momentum(window_secs)

    def velocity(self, window_secs: float = 10) -> Optional[float]:
        with self._lock:
            return self._velocity(window_secs)

    def session_bias(self) -> Optional[float]:
        with self._lock:
            return self._bias()

    def snapshot(self) -> FeedSnapshot:
        with self._lock:
            return FeedSnapshot(
                price=self._samples[-1].price if self._samples else None,
                session_peg=self._peg,
                momentum_30=self._momentum(30),
                momentum_60=self._momentum(60),
                velocity_10=self._velocity(10),
                session_bias=self._bias(),
                ready=self._is_ready(),
            )

    def momentum_alignment(self, losing_side: Side, window_secs: float = 30, threshold: float = 0.0) -> dict:
        if not self.is_ready():
            return {"aligned": False, "momentum": None, "reason": "feed_not_ready"}
        mom = self.momentum(window_secs)
        if mom is None:
            return {"aligned": False, "momentum": None, "reason": "insufficient_data"}
        aligned = mom >= threshold if losing_side == Side.UP else mom <= -threshold
        direction = "up" if mom >= 0 else "down"
        verdict = "favours" if aligned else "against"
        return {
            "aligned": aligned,
            "momentum": mom,
            "reason": f"{direction} {mom:+.3f}%/{window_secs:g}s {verdict} {losing_side.value} reversal",
        }

    # -- session volatility history -------------------------------------------

    def close_session_volatility(self, epoch_id) -> Optional[SessionVolatilityRecord]:
        """Summarise the last look-back window of the closing session and store it.

        Call right before rolling to the next session. Returns None when fewer
        than `min_volatility_samples` samples fall inside the window.
        """
        with self._lock:
            buf = self._recent(self.lookback_seconds)
            bias = self._bias()
        if len(buf) < self.min_volatility_samples:
            return None

        prices = [s.price for s in buf]
        open_px = prices[0]
        high, low = max(prices), min(prices)
        rng = high - low

        max_move = 0.0
        j = 0
        for i, start in enumerate(buf):
            j = max(j, i)
            while j + 1 < len(buf) and buf[j + 1].time <= start.time + 30.0:
                j += 1
            if j - i < 1:
                continue
            window = prices[i:j + 1]
            max_move = max(max_move, max(window) - min(window))

        mean = sum(prices) / len(prices)
        std_dev = math.sqrt(sum((p - mean) ** 2 for p in prices) / len(prices))

        rec = SessionVolatilityRecord(
            epoch_id=str(epoch_id),
            timestamp=float(self._clock()),
            ticks=len(buf),
            open=open_px,
            close=prices[-1],
            high=high,
            low=low,
            range=rng,
            range_pct=rng / open_px * 100.0,
            max_move_30s=max_move,
            max_move_30s_pct=max_move / open_px * 100.0,
            std_dev=std_dev,
            session_bias_at_end=bias,
        )
        with self._lock:
            self._history.append(rec)
        return rec

    def history(self) -> List[SessionVolatilityRecord]:
        with self._lock:
            return list(self._history)

    def historical_volatility(self) -> Optional[HistoricalVolatility]:
        hist = self.history()
        if not hist:
            return None
        n = len(hist)
        ranges = [h.range_pct for h in hist]
        return HistoricalVolatility(
            count=n,
            avg_range_pct=sum(ranges) / n,
            avg_max_move_30s_pct=sum(h.max_move_30s_pct for h in hist) / n,
            avg_std_dev=sum(h.std_dev for h in hist) / n,
            max_range_pct=max(ranges),
            min_range_pct=min(ranges),
        )

    # -- internals (caller holds the lock) ------------------------------------

    def _recent(self, window_secs: float) -> List[PriceSample]:
        cutoff = float(self._clock()) - float(window_secs)
        return [s for s in self._samples if s.time >= cutoff]

    def _is_ready(self) -> bool:
        if not self._samples:
            return False
        return (float(self._clock()) - self._samples[-1].time) < self.stale_seconds

    def _momentum(self, window_secs: float) -> Optional[float]:
        recent = self._recent(window_secs)
        if len(recent) < 2:
            return None
        first, last = recent[0].price, recent[-1].price
        return (last - first) / first * 100.0

    def _velocity(self, window_secs: float) -> Optional[float]:
        recent = self._recent(window_secs)
        if len(recent) < 2:
            return None
        elapsed = recent[-1].time - recent[0].time
        if elapsed == 0:
            return None
        return (recent[-1].price - recent[0].price) / elapsed

    def _bias(self) -> Optional[float]:
        if not self._peg or not self._samples:
            return None
        return (self._samples[-1].price - self._peg) / self._peg * 100.0
