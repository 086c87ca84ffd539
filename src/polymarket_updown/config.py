from enum import Enum
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator


class ExitPolicy(str, Enum):
    TRAILING_STOP = "trailing_stop"
    PROFIT_TARGET = "profit_target"


class EntryTier(BaseModel):
    name: str
    min_seconds: float
    max_seconds: float
    min_price: float = 0.01
    max_price: float = 0.10
    position_size: float = 0.40
    max_hold_seconds: float = 120.0

    @model_validator(mode="after")
    def _check_bands(self):
        if self.min_seconds > self.max_seconds:
            raise ValueError(f"tier {self.name}: min_seconds > max_seconds")
        if self.min_price > self.max_price:
            raise ValueError(f"tier {self.name}: min_price > max_price")
        return self


class TradingWindow(BaseModel):
    start: str  # "HH:MM", inclusive
    end: str  # "HH:MM", exclusive; end < start wraps past midnight

    @field_validator("start", "end")
    @classmethod
    def _hhmm(cls, v: str) -> str:
        hh, _, mm = str(v).partition(":")
        h, m = int(hh), int(mm or 0)
        if not (0 <= h <= 24 and 0 <= m < 60) or (h == 24 and m != 0):
            raise ValueError(f"bad time of day: {v}")
        return f"{h:02d}:{m:02d}"

    def minutes(self) -> tuple[int, int]:
        def _m(s: str) -> int:
            h, m = s.split(":")
            return int(h) * 60 + int(m)

        return _m(self.start), _m(self.end)


def _default_tiers() -> List[EntryTier]:
    return [
        EntryTier(name="LATE_REVERSAL", min_seconds=120, max_seconds=180, max_price=0.10),
        EntryTier(name="MID_LATE_SELECTIVE", min_seconds=180, max_seconds=270, max_price=0.15),
        EntryTier(name="MID_CONSERVATIVE", min_seconds=270, max_seconds=450, max_price=0.20),
        EntryTier(name="EARLY_OPPORTUNISTIC", min_seconds=450, max_seconds=800, max_price=0.25, max_hold_seconds=150),
    ]


class SessionConfig(BaseModel):
    epoch_seconds: int = 300
    slug_prefix: str = "btc-updown-5m-"


class FeedConfig(BaseModel):
    rtds_url: str = "wss://ws-live-data.polymarket.com"
    symbol: str = "btc/usd"
    enabled: bool = True
    lookback_seconds: float = 120.0
    stale_seconds: float = 5.0
    history_capacity: int = 20
    min_volatility_samples: int = 10
    reconnect_seconds: float = 3.0


class PredictorConfig(BaseModel):
    enabled: bool = False
    threshold: int = Field(default=80, ge=0, le=100)
    min_confidence: int = Field(default=80, ge=0, le=100)
    projection_cap_seconds: float = 60.0


class StrategyConfig(BaseModel):
    tiers: List[EntryTier] = Field(default_factory=_default_tiers)
    trading_windows: List[TradingWindow] = Field(default_factory=list)
    utc_offset_hours: float = 2.0
    max_entries_per_session: int = Field(default=2, ge=0)
    exit_policy: ExitPolicy = ExitPolicy.TRAILING_STOP
    trailing_stop_fraction: float = 0.92
    min_profit_lock: float = 1.08
    min_profit_for_trailing: float = 1.10
    trailing_ticks: int = Field(default=1, ge=1)
    force_exit_seconds: float = 10.0
    profit_target: float = 0.99
    stop_loss_price: Optional[float] = None
    min_sell_price: float = 0.0


class ExecutionConfig(BaseModel):
    stake_usd: Optional[float] = None  # fixed stake; falls back to balance * tier position_size
    slippage: float = 0.02
    min_order_size_usd: float = 0.1
    max_retries: int = 3
    fill_timeout_seconds: float = 30.0
    fill_poll_seconds: float = 1.0
    write_off_on_no_liquidity: bool = True


class PaperConfig(BaseModel):
    starting_cash_usd: float = 10.0


class LiveConfig(BaseModel):
    clob_host: str = "https://clob.polymarket.com"
    chain_id: int = 137
    signature_type: int = 0
    order_type: str = "GTC"


class StorageConfig(BaseModel):
    events_path: str = "data/events.jsonl"


class DataConfig(BaseModel):
    gamma_base: str = "https://gamma-api.polymarket.com"
    clob_rest_base: str = "https://clob.polymarket.com"


class AppConfig(BaseModel):
    mode: str = "paper"  # paper / live
    tick_seconds: float = 0.333
    sync_seconds: float = 15.0

    @field_validator("mode")
    @classmethod
    def _mode(cls, v: str) -> str:
        v = str(v).lower()
        if v not in ("paper", "live"):
            raise ValueError(f"unknown mode: {v}")
        return v


class BotConfig(BaseModel):
    app: AppConfig = Field(default_factory=AppConfig)
    data: DataConfig = Field(default_factory=DataConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    predictor: PredictorConfig = Field(default_factory=PredictorConfig)
    strategy: StrategyConfig = Field(default_factory=StrategyConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    paper: PaperConfig = Field(default_factory=PaperConfig)
    live: LiveConfig = Field(default_factory=LiveConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)


def load_config(path: str) -> BotConfig:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(path)
    return BotConfig.model_validate(yaml.safe_load(p.read_text()) or {})
