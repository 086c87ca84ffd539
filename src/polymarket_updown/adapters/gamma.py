from __future__ import annotations
import json
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional
import httpx

from polymarket_updown.engine.clock import current_epoch, time_remaining
from polymarket_updown.models import MarketEpoch, SessionTiming, Side


@dataclass
class GammaMarketRef:
    market_id: str
    question: str
    up_token: str
    down_token: str
    active: bool
    accepting_orders: bool
    end_date: str = ""
    slug: str = ""
    event_start_time: str = ""


def _iso_to_ts(s: str) -> Optional[float]:
    if not s:
        return None
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00")).timestamp()
    except ValueError:
        return None


class GammaAdapter:
    def __init__(self, base_url: str, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.call_count = 0
        self._transport = transport

    @staticmethod
    def _to_ref(m: dict) -> GammaMarketRef | None:
        try:
            token_ids = m.get("clobTokenIds")
            if isinstance(token_ids, str):
                token_ids = json.loads(token_ids)
            if not token_ids or len(token_ids) < 2:
                return None

            ev0 = {}
            if isinstance(m.get("events"), list) and m.get("events"):
                ev0 = m.get("events")[0] or {}

            return GammaMarketRef(
                market_id=str(m.get("id")),
                question=str(m.get("question", "")),
                up_token=str(token_ids[0]),
                down_token=str(token_ids[1]),
                active=bool(m.get("active", False)),
                accepting_orders=bool(m.get("acceptingOrders", True)),
                end_date=str(m.get("endDate") or ev0.get("endDate") or ""),
                slug=str(m.get("slug") or ev0.get("slug") or ""),
                event_start_time=str(ev0.get("startTime") or m.get("eventStartTime") or ""),
            )
        except (TypeError, ValueError, AttributeError):
            return None

    def fetch_market_by_slug(self, slug: str) -> Optional[GammaMarketRef]:
        with httpx.Client(timeout=15.0, transport=self._transport) as client:
            self.call_count += 1
            r = client.get(f"{self.base_url}/markets", params={"slug": slug})
            if r.status_code != 200:
                return None
            data = r.json()
        m = data[0] if isinstance(data, list) and data else data
        if not isinstance(m, dict) or not m:
            return None
        return self._to_ref(m)


@dataclass
class SyncResult:
    new_session: bool
    previous: Optional[MarketEpoch] = None
    epoch: Optional[MarketEpoch] = None
    error: Optional[str] = None


class MarketSession:
    """Tracks the active up/down epoch market and reports epoch changes."""

    def __init__(
        self,
        gamma: GammaAdapter,
        epoch_seconds: int = 300,
        slug_prefix: str = "btc-updown-5m-",
        clock: Callable[[], float] = time.time,
    ):
        self.gamma = gamma
        self.epoch_seconds = int(epoch_seconds)
        self.slug_prefix = slug_prefix
        self._clock = clock
        self._epoch: Optional[MarketEpoch] = None

    def sync(self) -> SyncResult:
        guess = current_epoch(self._clock(), self.epoch_seconds, self.slug_prefix)
        try:
            ref = self.gamma.fetch_market_by_slug(guess.slug)
        except (httpx.HTTPError, ValueError) as e:
            return SyncResult(new_session=False, epoch=self._epoch, error=f"market_sync_error: {e}")

        if ref is None or not ref.active:
            return SyncResult(new_session=False, epoch=self._epoch)

        cur = self._epoch
        if cur is not None and (cur.up_token, cur.down_token) == (ref.up_token, ref.down_token):
            return SyncResult(new_session=False, epoch=cur)

        end_ts = _iso_to_ts(ref.end_date) or guess.end_time
        start_ts = _iso_to_ts(ref.event_start_time) or (end_ts - self.epoch_seconds)
        self._epoch = MarketEpoch(
            epoch_id=guess.epoch_id,
            start_time=start_ts,
            end_time=end_ts,
            slug=ref.slug or guess.slug,
            question=ref.question,
            up_token=ref.up_token,
            down_token=ref.down_token,
        )
        return SyncResult(new_session=True, previous=cur, epoch=self._epoch)

    def current_epoch(self) -> Optional[MarketEpoch]:
        return self._epoch

    def is_ready(self) -> bool:
        return self._epoch is not None and bool(self._epoch.up_token and self._epoch.down_token)

    def token_for(self, side: Side) -> str:
        if self._epoch is None:
            return ""
        return self._epoch.up_token if side == Side.UP else self._epoch.down_token

    def time_remaining(self) -> SessionTiming:
        end = self._epoch.end_time if self._epoch else self._clock()
        return time_remaining(self._clock(), end, self.epoch_seconds)
