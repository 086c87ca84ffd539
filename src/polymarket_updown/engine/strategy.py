from __future__ import annotations

import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from polymarket_updown.config import EntryTier, ExitPolicy, StrategyConfig
from polymarket_updown.engine.predictor import ReversalPredictor
from polymarket_updown.models import (
    BuySignal,
    EntryFill,
    ExitReason,
    ExitResult,
    ExitSignal,
    Position,
    Side,
)

# float slack for boundary comparisons such as 1.15 * 0.92 vs 1.058
_EPS = 1e-9


class StrategyStateError(RuntimeError):
    """The caller broke the single-position contract."""


class StrategyStateMachine:
    """Single-position entry/exit policy for one up/down session at a time.

    The machine only proposes. The caller executes a BuySignal / ExitSignal and
    reports a fill back through `commit_entry` / `commit_exit`; a failed order
    leaves every field untouched.
    """

    def __init__(self, cfg: StrategyConfig, clock: Callable[[], float] = time.time):
        self.cfg = cfg
        self._clock = clock
        self.position = Position()
        self.left_entries_this_session = cfg.max_entries_per_session
        self.stopped_out_this_session = False
        self.ticks_below_trailing = 0
        self.consecutive_sell_signals = 0
        self.consecutive_buy_ticks = 0
        self._last_exit: Optional[ExitSignal] = None

    @property
    def state(self) -> str:
        if self.position.is_open:
            return "OPEN"
        return "STOPPED_OUT" if self.stopped_out_this_session else "IDLE"

    @property
    def is_open(self) -> bool:
        return self.position.is_open

    # -- entry ---------------------------------------------------------------

    def tier_for(self, seconds_left: float) -> Optional[EntryTier]:
        for tier in self.cfg.tiers:
            if tier.min_seconds <= seconds_left <= tier.max_seconds:
                return tier
        return None

    def is_in_trading_window(self, now: Optional[float] = None) -> bool:
        windows = self.cfg.trading_windows
        if not windows:
            return True
        ts = self._clock() if now is None else now
        local = datetime.fromtimestamp(ts, tz=timezone(timedelta(hours=self.cfg.utc_offset_hours)))
        minute = local.hour * 60 + local.minute
        for w in windows:
            start, end = w.minutes()
            if start <= end:
                if start <= minute < end:
                    return True
            elif minute >= start or minute < end:
                return True
        return False

    def evaluate_entry(
        self,
        up_price: float,
        down_price: float,
        seconds_left: float,
        predictor: Optional[ReversalPredictor] = None,
        min_confidence: Optional[int] = None,
    ) -> Optional[BuySignal]:
        if self.position.is_open or self.left_entries_this_session <= 0 or self.stopped_out_this_session:
            return None

        if not self.is_in_trading_window():
            self.consecutive_buy_ticks = 0
            return None

        tier = self.tier_for(seconds_left)
        if tier is None:
            self.consecutive_buy_ticks = 0
            return None

        up, down = float(up_price), float(down_price)
        losing_side = Side.UP if up < down else Side.DOWN
        losing_price = min(up, down)
        if not (tier.min_price - _EPS <= losing_price <= tier.max_price + _EPS):
            self.consecutive_buy_ticks = 0
            return None

        confidence = None
        if predictor is not None:
            res = predictor.predict(losing_side, seconds_left)
            floor = predictor.threshold if min_confidence is None else int(min_confidence)
            if not res.plausible or res.confidence < floor:
                self.consecutive_buy_ticks = 0
                return None
            confidence = res.confidence

        self.consecutive_buy_ticks += 1
        return BuySignal(
            side=losing_side,
            price=losing_price,
            tier=tier.name,
            position_size_fraction=tier.position_size,
            max_hold_time_seconds=tier.max_hold_seconds,
            up_price=up,
            down_price=down,
            seconds_left=int(seconds_left),
            confidence=confidence,
        )

    def commit_entry(self, signal: BuySignal, shares: float, fill_price: Optional[float] = None) -> EntryFill:
        if self.position.is_open:
            raise StrategyStateError(f"commit_entry while {self.position.side.value} is open")
        if self.left_entries_this_session <= 0 or self.stopped_out_this_session:
            raise StrategyStateError("commit_entry with no entry budget left this session")
        if shares <= 0:
            raise StrategyStateError("commit_entry needs a positive share count")

        price = float(fill_price) if fill_price else float(signal.price)
        self.position = Position(
            side=signal.side,
            entry_price=price,
            entry_time=float(self._clock()),
            shares=float(shares),
            peak_price=price,
            max_hold_time_seconds=float(signal.max_hold_time_seconds),
            tier=signal.tier,
        )
        self.left_entries_this_session -= 1
        self.ticks_below_trailing = 0
        self.consecutive_sell_signals = 0
        self.consecutive_buy_ticks = 0
        self._last_exit = None
        return EntryFill(side=signal.side, entry_price=price, shares=float(shares), invested_usd=price * float(shares))

    execute_buy = commit_entry

    # -- exit ----------------------------------------------------------------

    def effective_stop(self) -> tuple[float, bool]:
        """(stop price, trailing active) for the open position."""
        pos = self.position
        trailing_active = pos.peak_price >= pos.entry_price * self.cfg.min_profit_for_trailing - _EPS
        if trailing_active:
            return pos.peak_price * self.cfg.trailing_stop_fraction, True
        return pos.entry_price * self.cfg.min_profit_lock, False

    def evaluate_exit(self, current_price: float, seconds_left: float) -> Optional[ExitSignal]:
        if not self.position.is_open:
            raise StrategyStateError("evaluate_exit with no open position")

        pos = self.position
        px = float(current_price)
        if px > pos.peak_price:
            pos.peak_price = px

        hold_time = max(0.0, float(self._clock()) - pos.entry_time)
        stop = None
        reason = None

        if self.cfg.exit_policy == ExitPolicy.PROFIT_TARGET:
            if px >= self.cfg.profit_target - _EPS:
                reason = ExitReason.PROFIT_TARGET
        else:
            stop, trailing_active = self.effective_stop()
            # profit lock arms once the peak has traded above the lock price
            armed = trailing_active or pos.peak_price > stop + _EPS
            if armed and px <= stop + _EPS:
                self.ticks_below_trailing += 1
                if self.ticks_below_trailing >= self.cfg.trailing_ticks:
                    reason = ExitReason.TRAILING_STOP if trailing_active else ExitReason.PROFIT_LOCK
            else:
                self.ticks_below_trailing = 0

        forced = None
        if seconds_left <= self.cfg.force_exit_seconds:
            forced = ExitReason.SESSION_END
        elif pos.max_hold_time_seconds > 0 and hold_time >= pos.max_hold_time_seconds:
            forced = ExitReason.MAX_HOLD
        elif self.cfg.stop_loss_price is not None and px <= self.cfg.stop_loss_price + _EPS:
            forced = ExitReason.STOP_LOSS

        if reason is None and forced is None:
            self.consecutive_sell_signals = 0
            return None

        self.consecutive_sell_signals += 1
        is_stop = reason == ExitReason.TRAILING_STOP
        has_liquidity = px >= self.cfg.min_sell_price
        signal = ExitSignal(
            reason=reason if reason is not None else forced,
            is_trailing_stop=is_stop,
            is_force_sell=forced is not None,
            current_price=px,
            effective_stop=stop,
            current_multiple=px / pos.entry_price,
            peak_multiple=pos.peak_price / pos.entry_price,
            hold_time_seconds=hold_time,
            has_liquidity=has_liquidity,
            is_emergency_exit=forced == ExitReason.SESSION_END and not has_liquidity,
        )
        self._last_exit = signal
        return signal

    def register_exit_failure(self) -> None:
        """Re-arm the stop after a failed sell so the next breaching tick retries at once."""
        if not self.position.is_open:
            raise StrategyStateError("register_exit_failure with no open position")
        self.consecutive_sell_signals = 0
        self.ticks_below_trailing = self.cfg.trailing_ticks

    def commit_exit(self, current_price: float, shares: Optional[float] = None) -> ExitResult:
        """Book a sell fill. `shares` below the held size is a partial exit: the
        remainder stays open and the stop is re-armed so the next tick sells it.
        """
        if not self.position.is_open:
            raise StrategyStateError("commit_exit with no open position")

        pos = self.position
        px = float(current_price)
        sold = pos.shares if shares is None else min(float(shares), pos.shares)
        if sold <= 0:
            raise StrategyStateError("commit_exit needs a positive share count")
        proceeds = sold * px
        invested = sold * pos.entry_price
        pnl = proceeds - invested
        last = self._last_exit

        if sold < pos.shares - _EPS:
            pos.shares -= sold
            self.register_exit_failure()
            return ExitResult(
                side=pos.side,
                shares=sold,
                exit_price=px,
                sale_proceeds=proceeds,
                invested_usd=invested,
                profit_loss=pnl,
                profit_loss_pct=(pnl / invested * 100.0) if invested > 0 else 0.0,
                reason=last.reason if last else None,
                remaining_shares=pos.shares,
            )

        stopped = bool(last and last.is_trailing_stop)

        result = ExitResult(
            side=pos.side,
            shares=pos.shares,
            exit_price=px,
            sale_proceeds=proceeds,
            invested_usd=invested,
            profit_loss=pnl,
            profit_loss_pct=(pnl / invested * 100.0) if invested > 0 else 0.0,
            reason=last.reason if last else None,
            stopped_out=stopped,
        )

        self.position = Position()
        self.ticks_below_trailing = 0
        self.consecutive_sell_signals = 0
        self._last_exit = None
        if stopped:
            self.set_stopped_out()
        return result

    execute_sell = commit_exit

    def set_stopped_out(self) -> None:
        self.stopped_out_this_session = True

    def reset_for_new_session(self) -> None:
        if self.position.is_open:
            raise StrategyStateError("reset_for_new_session with an open position")
        self.left_entries_this_session = self.cfg.max_entries_per_session
        self.stopped_out_this_session = False
        self.ticks_below_trailing = 0
        self.consecutive_sell_signals = 0
        self.consecutive_buy_ticks = 0
        self._last_exit = None
