from polymarket_updown.config import BotConfig
from polymarket_updown.models import OrderResult, Side


class PaperLedger:
    """Mock USDC balance. Fills from PaperExecutor move cash in and out."""

    def __init__(self, starting_cash_usd: float):
        self.cash_usd = float(starting_cash_usd)
        self.realized_pnl_usd = 0.0

    def balance(self) -> float:
        return self.cash_usd

    def refresh(self) -> float:
        return self.cash_usd


class PaperExecutor:
    mock = True

    def __init__(self, ledger: PaperLedger):
        self.ledger = ledger

    def place_entry(self, side: Side, price: float, amount_usd: float) -> OrderResult:
        size = min(float(amount_usd), float(self.ledger.cash_usd))
        if size <= 0 or price <= 0:
            return OrderResult(success=False, reason="invalid_open", mock=True)
        qty = size / float(price)
        self.ledger.cash_usd -= size
        return OrderResult(
            success=True,
            order_id="paper",
            filled_shares=qty,
            filled_price=float(price),
            spent_usd=size,
            mock=True,
        )

    def place_exit(self, side: Side, price: float, shares: float) -> OrderResult:
        if price <= 0 or shares <= 0:
            return OrderResult(success=False, reason="invalid_close", mock=True)
        proceeds = float(shares) * float(price)
        self.ledger.cash_usd += proceeds
        return OrderResult(
            success=True,
            order_id="paper",
            filled_shares=float(shares),
            filled_price=float(price),
            proceeds_usd=proceeds,
            mock=True,
        )


def init_paper(cfg: BotConfig):
    ledger = PaperLedger(cfg.paper.starting_cash_usd)
    return ledger, PaperExecutor(ledger)
