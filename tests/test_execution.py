import pytest

from polymarket_updown.config import BotConfig, ExecutionConfig
from polymarket_updown.execution.live import LiveExecutor, LiveLedger, _classify_error
from polymarket_updown.models import BuySignal, Side
from polymarket_updown.risk.guards import approve, stake_for
from polymarket_updown.sim.paper import PaperLedger, init_paper


def signal(price=0.015, fraction=0.4):
    return BuySignal(
        side=Side.UP,
        price=price,
        position_size_fraction=fraction,
        max_hold_time_seconds=120,
        up_price=price,
        down_price=1 - price,
        seconds_left=60,
    )


class TestGuards:
    def test_fixed_stake_wins_over_fraction(self):
        assert stake_for(signal(), 10.0, ExecutionConfig(stake_usd=1.0)) == 1.0
        assert stake_for(signal(), 10.0, ExecutionConfig()) == pytest.approx(4.0)

    def test_approve(self):
        d = approve(signal(), 10.0, ExecutionConfig(stake_usd=1.0))
        assert d.approved and d.reason == "ok" and d.stake_usd == 1.0

    @pytest.mark.parametrize(
        "price,balance,stake,reason",
        [
            (0.0, 10.0, 1.0, "invalid_price"),
            (0.015, 10.0, 0.05, "below_min_order_size"),
            (0.015, 0.5, 1.0, "insufficient_balance"),
        ],
    )
    def test_rejections(self, price, balance, stake, reason):
        d = approve(signal(price), balance, ExecutionConfig(stake_usd=stake))
        assert not d.approved
        assert d.reason == reason


class TestPaper:
    def test_round_trip_moves_cash(self):
        ledger, ex = init_paper(BotConfig())
        assert ledger.balance() == 10.0
        buy = ex.place_entry(Side.UP, 0.015, 1.0)
        assert buy.success and buy.mock
        assert buy.filled_shares == pytest.approx(1.0 / 0.015)
        assert ledger.balance() == pytest.approx(9.0)
        sell = ex.place_exit(Side.UP, 0.99, buy.filled_shares)
        assert sell.proceeds_usd == pytest.approx(66.0)
        assert ledger.refresh() == pytest.approx(75.0)

    def test_entry_capped_at_cash(self):
        ledger, ex = init_paper(BotConfig())
        ledger.cash_usd = 0.5
        res = ex.place_entry(Side.DOWN, 0.01, 1.0)
        assert res.spent_usd == pytest.approx(0.5)
        assert ledger.balance() == 0.0

    def test_invalid_orders(self):
        _, ex = init_paper(BotConfig())
        assert ex.place_entry(Side.UP, 0.0, 1.0).reason == "invalid_open"
        assert ex.place_exit(Side.UP, 0.5, 0.0).reason == "invalid_close"
        assert PaperLedger(3).balance() == 3.0


class TestClassifyError:
    @pytest.mark.parametrize(
        "err,expected",
        [
            ("post_order_failed: No orders found to match with FOK order", "no_liquidity"),
            ("Not enough liquidity", "no_liquidity"),
            ("invalid signature", "invalid signature"),
            ("", "order_failed"),
        ],
    )
    def test_markers(self, err, expected):
        assert _classify_error(err) == expected


class TestLiveGuards:
    def test_missing_token(self):
        ex = LiveExecutor(BotConfig(), token_for=lambda side: "", client=object())
        res = ex.place_entry(Side.UP, 0.015, 1.0)
        assert not res.success and res.reason == "token_id_missing"

    def test_invalid_price(self):
        ex = LiveExecutor(BotConfig(), token_for=lambda side: "tok", client=object())
        assert ex.place_entry(Side.UP, 0.0, 1.0).reason == "invalid_price_or_size"
        assert ex.place_exit(Side.UP, 0.5, 0.0).reason == "invalid_price_or_size"

    def test_missing_private_key(self, monkeypatch):
        pytest.importorskip("py_clob_client")
        monkeypatch.delenv("POLYMARKET_PRIVATE_KEY", raising=False)
        ex = LiveExecutor(BotConfig(), token_for=lambda side: "tok")
        res = ex.place_entry(Side.UP, 0.015, 1.0)
        assert res.reason == "POLYMARKET_PRIVATE_KEY is missing"
        assert ex.fetch_balance() is None


class FakeClobClient:
    def __init__(self, statuses=None, post_error=None, balance="12500000"):
        self.statuses = list(statuses or [{"status": "MATCHED", "size_matched": "66", "price": "0.015"}])
        self.post_error = post_error
        self.balance = balance
        self.posted = []
        self.cancelled = []

    def create_order(self, args):
        return args

    def post_order(self, signed, order_type):
        if self.post_error:
            raise RuntimeError(self.post_error)
        self.posted.append(signed)
        return {"orderID": f"o{len(self.posted)}"}

    def get_order(self, order_id):
        item = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(item, Exception):
            raise item
        return item

    def cancel(self, order_id):
        self.cancelled.append(order_id)

    def get_balance_allowance(self, params):
        return {"balance": self.balance}


class TestLiveFills:
    @pytest.fixture(autouse=True)
    def _needs_client(self):
        pytest.importorskip("py_clob_client")

    def executor(self, client, **ex_kw):
        cfg = BotConfig.model_validate({"execution": ex_kw})
        sleeps = []
        ex = LiveExecutor(cfg, token_for=lambda side: f"tok-{side.value}", client=client, sleep=sleeps.append)
        return ex, sleeps

    def test_buy_is_slippage_bounded_and_filled(self):
        client = FakeClobClient(statuses=[{"status": "LIVE"}, {"status": "MATCHED", "size_matched": "66", "price": "0.015"}])
        ex, sleeps = self.executor(client)
        res = ex.place_entry(Side.UP, 0.015, 1.0)
        assert res.success and res.order_id == "o1"
        assert res.filled_shares == 66.0
        assert res.spent_usd == pytest.approx(0.99)
        args = client.posted[0]
        assert args.token_id == "tok-UP"
        assert args.side == "BUY"
        assert args.price == pytest.approx(0.0153)
        assert sleeps == [1.0]

    def test_sell_limit_below_market(self):
        client = FakeClobClient(statuses=[{"status": "MATCHED", "size_matched": "66", "price": "0.97"}])
        ex, _ = self.executor(client)
        res = ex.place_exit(Side.DOWN, 0.99, 66.0)
        assert res.success
        assert res.proceeds_usd == pytest.approx(66 * 0.97)
        assert client.posted[0].side == "SELL"
        assert client.posted[0].price == pytest.approx(0.9702)

    def test_no_liquidity_stops_retrying(self):
        client = FakeClobClient(post_error="no orders found to match")
        ex, _ = self.executor(client)
        res = ex.place_exit(Side.UP, 0.01, 10.0)
        assert res.reason == "no_liquidity"
        assert res.attempts == 1

    def test_unfilled_orders_are_cancelled_and_retried(self):
        client = FakeClobClient(statuses=[{"status": "LIVE"}])
        ex, sleeps = self.executor(client, fill_timeout_seconds=3, max_retries=2)
        res = ex.place_entry(Side.UP, 0.015, 1.0)
        assert not res.success
        assert res.reason == "order_timeout_or_cancelled"
        assert res.attempts == 2
        assert client.cancelled == ["o1", "o2"]
        assert len(sleeps) == 6

    def test_balance_in_usdc_units(self):
        ex, _ = self.executor(FakeClobClient(balance="12500000"))
        ledger = LiveLedger(ex)
        assert ledger.refresh() == pytest.approx(12.5)
        assert ledger.balance() == pytest.approx(12.5)

    def test_partial_fill_is_kept_and_only_the_rest_reposted(self):
        live = {"status": "LIVE", "size_matched": "30", "price": "0.015"}
        client = FakeClobClient(statuses=[
            live, live, live,
            {"status": "CANCELED", "size_matched": "30", "price": "0.015"},
            {"status": "MATCHED", "size_matched": "36.67", "price": "0.015"},
        ])
        ex, _ = self.executor(client, fill_timeout_seconds=3)
        res = ex.place_entry(Side.UP, 0.015, 1.0)
        assert res.success
        assert [a.size for a in client.posted] == [66.67, 36.67]
        assert client.cancelled == ["o1"]
        assert res.filled_shares == pytest.approx(66.67)
        assert res.filled_price == pytest.approx(0.015)
        assert res.spent_usd == pytest.approx(66.67 * 0.015)

    def test_partial_sell_reports_only_sold_shares(self):
        client = FakeClobClient(statuses=[
            {"status": "LIVE", "size_matched": "40"},
            {"status": "CANCELED", "size_matched": "40", "price": "0.97"},
        ])
        ex, _ = self.executor(client, fill_timeout_seconds=1, max_retries=1)
        res = ex.place_exit(Side.UP, 0.99, 66.0)
        assert res.success and res.reason == "partial_fill"
        assert res.filled_shares == 40.0
        assert res.proceeds_usd == pytest.approx(40 * 0.97)

    def test_status_error_cancels_and_never_doubles_the_order(self):
        client = FakeClobClient(statuses=[RuntimeError("503")])
        ex, _ = self.executor(client)
        res = ex.place_entry(Side.UP, 0.015, 1.0)
        assert not res.success
        assert res.reason == "order_status_unknown"
        assert len(client.posted) == 1
        assert client.cancelled == ["o1"]

    def test_status_error_then_fill_found_after_cancel(self):
        client = FakeClobClient(statuses=[
            RuntimeError("503"),
            {"status": "MATCHED", "size_matched": "66.67", "price": "0.015"},
        ])
        ex, _ = self.executor(client)
        res = ex.place_entry(Side.UP, 0.015, 1.0)
        assert res.success
        assert res.filled_shares == pytest.approx(66.67)
        assert len(client.posted) == 1
        assert client.cancelled == ["o1"]
