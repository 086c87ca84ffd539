from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Side(str, Enum):
    NONE = "NONE"
    UP = "UP"
    DOWN = "DOWN"


class MarketEpoch(BaseModel):
    model_config = ConfigDict(frozen=True)

    epoch_id: int  # bucket start, unix seconds
    start_time: float
    end_time: float
    slug: str = ""
    question: str = ""
    up_token: str = ""
    down_token: str = ""


class SessionTiming(BaseModel):
    seconds_left: int
    session_progress_pct: float


class PriceSample(BaseModel):
    model_config = ConfigDict(frozen=True)

    price: float
    time: float


class FeedSnapshot(BaseModel):
    price: Optional[float] = None
    session_peg: Optional[float] = None
    momentum_30: Optional[float] = None
    momentum_60: Optional[float] = None
    velocity_10: Optional[float] = None
    session_bias: Optional[float] = None
    ready: bool = False


class SessionVolatilityRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    epoch_id: str
    timestamp: float
    ticks: int
    open: float
    close: float
    high: float
    low: float
    range: float
    range_pct: float
    max_move_30s: float
    max_move_30s_pct: float
    std_dev: float
    session_bias_at_end: Optional[float] = None


class HistoricalVolatility(BaseModel):
    count: int
    avg_range_pct: float
    avg_max_move_30s_pct: float
    avg_std_dev: float
    max_range_pct: float
    min_range_pct: float


class VolatilityCheck(BaseModel):
    distance_to_target_pct: float
    avg_range_pct: float
    avg_max_move_30s_pct: float
    within_historical_range: bool
    within_max_move_30s: bool
    sessions_analysed: int


class ConfidenceDetails(BaseModel):
    bias: Optional[float] = None
    distance_to_target: float = 0.0
    distance_to_target_pct: float = 0.0
    projection_window: float = 0.0
    projected_move: float = 0.0
    projected_move_pct: float = 0.0
    projected_covers: bool = False
    velocity: Optional[float] = None
    velocity_aligned: bool = False
    momentum: Optional[float] = None
    momentum_aligned: bool = False
    volatility_score: int = 50
    volatility_check: Optional[VolatilityCheck] = None


class ConfidenceResult(BaseModel):
    plausible: bool
    confidence: int = Field(ge=0, le=100)
    reason: str = ""
    details: Optional[ConfidenceDetails] = None


class Position(BaseModel):
    side: Side = Side.NONE
    entry_price: float = 0.0
    entry_time: float = 0.0
    shares: float = 0.0
    peak_price: float = 0.0
    max_hold_time_seconds: float = 0.0
    tier: str = ""

    @property
    def is_open(self) -> bool:
        return self.side != Side.NONE


class BuySignal(BaseModel):
    side: Side
    price: float
    tier: str = ""
    position_size_fraction: float
    max_hold_time_seconds: float
    up_price: float
    down_price: float
    seconds_left: int
    confidence: Optional[int] = None


class ExitReason(str, Enum):
    PROFIT_TARGET = "profit_target"
    TRAILING_STOP = "trailing_stop"
    PROFIT_LOCK = "profit_lock"
    STOP_LOSS = "stop_loss"
    SESSION_END = "session_end"
    MAX_HOLD = "max_hold"


class ExitSignal(BaseModel):
    reason: ExitReason
    is_trailing_stop: bool = False
    is_force_sell: bool = False
    current_price: float
    effective_stop: Optional[float] = None
    current_multiple: float
    peak_multiple: float
    hold_time_seconds: float
    has_liquidity: bool = True
    is_emergency_exit: bool = False


class EntryFill(BaseModel):
    side: Side
    entry_price: float
    shares: float
    invested_usd: float


class ExitResult(BaseModel):
    side: Side
    shares: float
    exit_price: float
    sale_proceeds: float
    invested_usd: float
    profit_loss: float
    profit_loss_pct: float
    reason: Optional[ExitReason] = None
    stopped_out: bool = False
    remaining_shares: float = 0.0


class Decision(BaseModel):
    approved: bool
    reason: str
    stake_usd: float = 0.0


class OrderResult(BaseModel):
    success: bool
    reason: Optional[str] = None
    order_id: Optional[str] = None
    filled_shares: float = 0.0
    filled_price: float = 0.0
    spent_usd: float = 0.0
    proceeds_usd: float = 0.0
    attempts: int = 1
    mock: bool = False
