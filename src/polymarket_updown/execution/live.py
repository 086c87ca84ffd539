from __future__ import annotations

import os
import time
from typing import Callable, Optional, Tuple

from polymarket_updown.config import BotConfig
from polymarket_updown.models import OrderResult, Side

USDC_DECIMALS = 6
_NO_LIQUIDITY_MARKERS = ("no liquidity", "no orders found to match", "not enough liquidity")


def _classify_error(err: str) -> str:
    low = (err or "").lower()
    if any(m in low for m in _NO_LIQUIDITY_MARKERS):
        return "no_liquidity"
    return err or "order_failed"


class LiveExecutor:
    """Live Polymarket CLOB executor.

    Uses py-clob-client, imported on first use so paper mode works without
    wallet/signing dependencies installed. Orders are slippage-bounded limit
    orders, retried up to `max_retries` times, then polled until matched.
    """

    mock = False

    def __init__(
        self,
        cfg: BotConfig,
        token_for: Callable[[Side], str],
        client=None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cfg = cfg
        self.ex = cfg.execution
        self.host = cfg.live.clob_host
        self.chain_id = int(cfg.live.chain_id)
        self.signature_type = int(cfg.live.signature_type)
        self.default_order_type = str(cfg.live.order_type).upper()
        self._token_for = token_for
        self._client = client
        self._sleep = sleep

    def set_token_resolver(self, token_for: Callable[[Side], str]) -> None:
        self._token_for = token_for

    def _ensure_client(self) -> Tuple[bool, Optional[str]]:
        if self._client is not None:
            return True, None

        try:
            from py_clob_client.client import ClobClient
        except Exception as e:
            return False, f"py_clob_client_missing: {e}"

        key = os.getenv("POLYMARKET_PRIVATE_KEY", "").strip()
        funder = os.getenv("POLYMARKET_FUNDER", "").strip()
        api_key = os.getenv("POLYMARKET_API_KEY", "").strip()
        api_secret = os.getenv("POLYMARKET_API_SECRET", "").strip()
        api_passphrase = os.getenv("POLYMARKET_API_PASSPHRASE", "").strip()
        if not key:
            return False, "POLYMARKET_PRIVATE_KEY is missing"

        try:
            from py_clob_client.clob_types import ApiCreds

            c = ClobClient(
                self.host,
                key=key,
                chain_id=self.chain_id,
                signature_type=self.signature_type,
                funder=funder or None,
            )
            # Prefer provided API creds; fallback to derive/create.
            if api_key and api_secret and api_passphrase:
                c.set_api_creds(ApiCreds(api_key=api_key, api_secret=api_secret, api_passphrase=api_passphrase))
            else:
                c.set_api_creds(c.create_or_derive_api_creds())
            self._client = c
            return True, None
        except Exception as e:
            return False, f"clob_init_failed: {e}"

    def fetch_balance(self) -> Optional[float]:
        ok, _ = self._ensure_client()
        if not ok:
            return None
        try:
            from py_clob_client.clob_types import AssetType, BalanceAllowanceParams

            resp = self._client.get_balance_allowance(
                params=BalanceAllowanceParams(asset_type=AssetType.COLLATERAL, signature_type=self.signature_type)
            )
            raw = float((resp or {}).get("balance") or 0.0)
            return raw / (10 ** USDC_DECIMALS)
        except Exception:
            return None

    def _post(self, token_id: str, side: str, price: float, size: float) -> dict:
        from py_clob_client.clob_types import OrderArgs, OrderType

        order_type = getattr(OrderType, self.default_order_type, getattr(OrderType, "GTC"))
        args = OrderArgs(token_id=token_id, price=round(float(price), 4), size=round(float(size), 2), side=side)
        signed = self._client.create_order(args)
        resp = self._client.post_order(signed, order_type)
        return resp if isinstance(resp, dict) else {"resp": str(resp)}

    @staticmethod
    def _matched(order: dict) -> Tuple[float, float]:
        status = str(order.get("status", "")).upper()
        size = order.get("size_matched")
        if status == "MATCHED" and not size:
            size = order.get("original_size")
        return float(size or 0.0), float(order.get("price") or 0.0)

    def _cancel(self, order_id: str) -> None:
        try:
            self._client.cancel(order_id=order_id)
        except Exception:
            pass

    def _wait_for_fill(self, order_id: str) -> Tuple[float, float, bool]:
        """Poll until the order is done, cancelling whatever is still resting.

        Returns (matched shares, price, known). `known` is False when the final
        matched size could not be read back, so nothing more may be posted.
        """
        matched, price = 0.0, 0.0
        waited = 0.0
        while waited < self.ex.fill_timeout_seconds:
            try:
                order = self._client.get_order(order_id) or {}
            except Exception:
                break
            matched, price = self._matched(order)
            status = str(order.get("status", "")).upper()
            if status in ("MATCHED", "CANCELED", "CANCELLED", "EXPIRED"):
                return matched, price, True
            self._sleep(self.ex.fill_poll_seconds)
            waited += self.ex.fill_poll_seconds

        self._cancel(order_id)
        try:
            order = self._client.get_order(order_id) or {}
        except Exception:
            return matched, price, False
        final, final_price = self._matched(order)
        return max(matched, final), final_price or price, True

    def _place(self, side: Side, action: str, limit_price: float, shares: float) -> OrderResult:
        token_id = self._token_for(side)
        if not token_id:
            return OrderResult(success=False, reason="token_id_missing")
        if limit_price <= 0 or shares <= 0:
            return OrderResult(success=False, reason="invalid_price_or_size")

        ok, err = self._ensure_client()
        if not ok:
            return OrderResult(success=False, reason=err)

        filled = 0.0
        value = 0.0
        oid = None
        last_err = "order_failed"
        attempts = 0
        for attempts in range(1, int(self.ex.max_retries) + 1):
            remaining = shares - filled
            try:
                resp = self._post(token_id, action, limit_price, remaining)
            except Exception as e:
                last_err = _classify_error(f"post_order_failed: {e}")
                if last_err == "no_liquidity":
                    break
                continue
            posted_id = resp.get("orderID") or resp.get("id")
            if not posted_id:
                last_err = _classify_error(str(resp.get("errorMsg") or "order_rejected"))
                if last_err == "no_liquidity":
                    break
                continue
            oid = posted_id
            matched, px, known = self._wait_for_fill(oid)
            filled += matched
            value += matched * (px or limit_price)
            if not known:
                last_err = "order_status_unknown"
                break
            left = shares - filled
            # the unfilled rest is re-posted only while it is still a valid order
            if left <= 1e-9 or left * limit_price < self.ex.min_order_size_usd:
                break
            last_err = "order_timeout_or_cancelled"

        if filled <= 0:
            return OrderResult(success=False, reason=last_err, order_id=oid, attempts=attempts)
        avg_px = value / filled
        return OrderResult(
            success=True,
            reason=None if filled >= shares - 1e-9 else "partial_fill",
            order_id=oid,
            filled_shares=filled,
            filled_price=avg_px,
            spent_usd=value if action == "BUY" else 0.0,
            proceeds_usd=value if action == "SELL" else 0.0,
            attempts=attempts,
        )

    def place_entry(self, side: Side, price: float, amount_usd: float) -> OrderResult:
        if price <= 0:
            return OrderResult(success=False, reason="invalid_price_or_size")
        max_price = min(0.99, float(price) * (1.0 + self.ex.slippage))
        return self._place(side, "BUY", max_price, float(amount_usd) / float(price))

    def place_exit(self, side: Side, price: float, shares: float) -> OrderResult:
        min_price = max(0.001, float(price) * (1.0 - self.ex.slippage))
        return self._place(side, "SELL", min_price, shares)


class LiveLedger:
    """On-chain USDC balance, cached between refreshes."""

    def __init__(self, executor: LiveExecutor):
        self.executor = executor
        self.cash_usd = 0.0
        self.realized_pnl_usd = 0.0

    def balance(self) -> float:
        return self.cash_usd

    def refresh(self) -> float:
        bal = self.executor.fetch_balance()
        if bal is not None:
            self.cash_usd = bal
        return self.cash_usd


def init_live(cfg: BotConfig, token_for: Callable[[Side], str], client=None):
    executor = LiveExecutor(cfg, token_for, client=client)
    return LiveLedger(executor), executor
