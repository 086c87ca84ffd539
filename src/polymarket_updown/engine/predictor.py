import math
from typing import Callable, Optional

from polymarket_updown.engine.feed import PriceFeedAggregator
from polymarket_updown.models import (
    ConfidenceDetails,
    ConfidenceResult,
    Side,
    VolatilityCheck,
)

VELOCITY_POINTS = 30
PROJECTION_POINTS = 25
MOMENTUM_POINTS = 20
VOLATILITY_WEIGHT = 0.25


def volatility_score(within_range: bool, within_move_30s: bool) -> int:
    if within_range and within_move_30s:
        return 75
    if within_range:
        return 55
    if within_move_30s:
        return 45
    return 20


class ReversalPredictor:
    """Scores how plausible a late reversal toward the session peg is for the losing side.

    Score = 30 velocity aligned + 25 projected move covers the gap
          + 20 momentum aligned + round(0.25 * historical volatility sub-score).
    """

    def __init__(
        self,
        feed: PriceFeedAggregator,
        threshold: int = 80,
        projection_cap_seconds: float = 60.0,
        trace: Optional[Callable[[dict], None]] = None,
    ):
        self.feed = feed
        self.threshold = int(threshold)
        self.projection_cap_seconds = float(projection_cap_seconds)
        self.trace = trace

    @classmethod
    def from_config(cls, feed: PriceFeedAggregator, predictor_cfg, trace=None) -> "ReversalPredictor":
        return cls(
            feed,
            threshold=predictor_cfg.threshold,
            projection_cap_seconds=predictor_cfg.projection_cap_seconds,
            trace=trace,
        )

    def predict(self, losing_side: Side, seconds_left: float) -> ConfidenceResult:
        snap = self.feed.snapshot()
        if not snap.ready or not snap.session_peg or not snap.price:
            return ConfidenceResult(plausible=False, confidence=0, reason="feed_not_ready")

        price = snap.price
        peg = snap.session_peg
        bias = snap.session_bias
        wants_up = losing_side == Side.UP

        distance = abs(peg - price)
        distance_pct = abs(bias) if bias is not None else distance / peg * 100.0

        vel = snap.velocity_10
        window = max(0.0, min(float(seconds_left), self.projection_cap_seconds))
        projected = abs(vel * window) if vel is not None else 0.0
        projected_pct = projected / price * 100.0 if price > 0 else 0.0
        vel_aligned = vel is not None and (vel >= 0 if wants_up else vel <= 0)
        covers = vel is not None and projected >= distance

        mom = snap.momentum_30
        mom_aligned = mom is not None and (mom >= 0 if wants_up else mom <= 0)

        vol = self.feed.historical_volatility()
        vol_check = None
        vol_score = 50
        if vol is not None:
            within_range = distance_pct <= vol.avg_range_pct
            within_move = distance_pct <= vol.avg_max_move_30s_pct * (float(seconds_left) / 30.0)
            vol_score = volatility_score(within_range, within_move)
            vol_check = VolatilityCheck(
                distance_to_target_pct=distance_pct,
                avg_range_pct=vol.avg_range_pct,
                avg_max_move_30s_pct=vol.avg_max_move_30s_pct,
                within_historical_range=within_range,
                within_max_move_30s=within_move,
                sessions_analysed=vol.count,
            )

        confidence = 0
        if vel_aligned:
            confidence += VELOCITY_POINTS
        if covers:
            confidence += PROJECTION_POINTS
        if mom_aligned:
            confidence += MOMENTUM_POINTS
        confidence += int(math.floor(vol_score * VOLATILITY_WEIGHT + 0.5))
        confidence = max(0, min(100, confidence))

        plausible = confidence >= self.threshold
        details = ConfidenceDetails(
            bias=bias,
            distance_to_target=distance,
            distance_to_target_pct=distance_pct,
            projection_window=window,
            projected_move=projected,
            projected_move_pct=projected_pct,
            projected_covers=covers,
            velocity=vel,
            velocity_aligned=vel_aligned,
            momentum=mom,
            momentum_aligned=mom_aligned,
            volatility_score=vol_score,
            volatility_check=vol_check,
        )
        result = ConfidenceResult(
            plausible=plausible,
            confidence=confidence,
            reason="plausible" if plausible else "unlikely",
            details=details,
        )
        if self.trace:
            self.trace({
                "type": "reversal_prediction",
                "losing_side": losing_side.value,
                "seconds_left": seconds_left,
                "price": price,
                "peg": peg,
                **result.model_dump(mode="json"),
            })
        return result
