from polymarket_updown.config import ExecutionConfig
from polymarket_updown.models import BuySignal, Decision


def stake_for(signal: BuySignal, balance_usd: float, cfg: ExecutionConfig) -> float:
    if cfg.stake_usd is not None:
        return float(cfg.stake_usd)
    return float(balance_usd) * float(signal.position_size_fraction)


def approve(signal: BuySignal, balance_usd: float, cfg: ExecutionConfig) -> Decision:
    stake = stake_for(signal, balance_usd, cfg)
    if signal.price <= 0:
        return Decision(approved=False, reason="invalid_price", stake_usd=stake)
    if stake < cfg.min_order_size_usd:
        return Decision(approved=False, reason="below_min_order_size", stake_usd=stake)
    if balance_usd < stake:
        return Decision(approved=False, reason="insufficient_balance", stake_usd=stake)
    return Decision(approved=True, reason="ok", stake_usd=stake)
