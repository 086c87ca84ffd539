from __future__ import annotations
from typing import Optional, Tuple
import httpx


def _f(x) -> float:
    try:
        return float(x)
    except (TypeError, ValueError):
        return 0.0


class ClobAdapter:
    """Two-sided price source for the current up/down market."""

    def __init__(self, base_url: str, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.call_count = 0
        self._transport = transport

    def _fetch_price(self, client: httpx.Client, token_id: str, side: str) -> float:
        self.call_count += 1
        try:
            r = client.get(f"{self.base_url}/price", params={"token_id": token_id, "side": side})
            if r.status_code != 200:
                return 0.0
            return _f((r.json() or {}).get("price"))
        except (httpx.HTTPError, ValueError):
            return 0.0

    def get_prices(self, up_token: str, down_token: str, side: str = "BUY") -> Optional[Tuple[float, float]]:
        if not up_token or not down_token:
            return None
        with httpx.Client(timeout=5.0, transport=self._transport) as client:
            up = self._fetch_price(client, up_token, side)
            down = self._fetch_price(client, down_token, side)
        if up <= 0 or down <= 0:
            return None
        return up, down
