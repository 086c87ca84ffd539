import time
from typing import Callable, Optional

from rich import print

from polymarket_updown.adapters.clob import ClobAdapter
from polymarket_updown.adapters.gamma import GammaAdapter, MarketSession, SyncResult
from polymarket_updown.config import BotConfig
from polymarket_updown.engine.clock import time_remaining
from polymarket_updown.engine.feed import PriceFeedAggregator
from polymarket_updown.engine.predictor import ReversalPredictor
from polymarket_updown.engine.strategy import StrategyStateError, StrategyStateMachine
from polymarket_updown.execution.live import init_live
from polymarket_updown.models import BuySignal, ExitSignal, Side
from polymarket_updown.risk.guards import approve
from polymarket_updown.rtds_hook import ChainlinkRtdsHook
from polymarket_updown.sim.paper import init_paper
from polymarket_updown.utils.storage import append_event


class Bot:
    """Glue between the decision engine and its collaborators.

    `tick` and `sync` are never run concurrently; `run_forever` serializes them
    on one thread.
    """

    def __init__(
        self,
        cfg: BotConfig,
        market: MarketSession,
        prices: ClobAdapter,
        feed: PriceFeedAggregator,
        strategy: StrategyStateMachine,
        ledger,
        executor,
        predictor: Optional[ReversalPredictor] = None,
        rtds: Optional[ChainlinkRtdsHook] = None,
        echo: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        self.cfg = cfg
        self._clock = clock
        self.market = market
        self.prices = prices
        self.feed = feed
        self.strategy = strategy
        self.ledger = ledger
        self.executor = executor
        self.predictor = predictor
        self.rtds = rtds
        self.echo = echo
        self.pending_reset = False
        self.position_epoch = None
        self.held_price = 0.0

    @classmethod
    def build(cls, cfg: BotConfig, echo: bool = True) -> "Bot":
        feed = PriceFeedAggregator.from_config(cfg.feed)
        market = MarketSession(
            GammaAdapter(cfg.data.gamma_base),
            epoch_seconds=cfg.session.epoch_seconds,
            slug_prefix=cfg.session.slug_prefix,
        )
        if cfg.app.mode == "live":
            ledger, executor = init_live(cfg, market.token_for)
        else:
            ledger, executor = init_paper(cfg)
        rtds = None
        if cfg.feed.enabled:
            rtds = ChainlinkRtdsHook(feed, cfg.feed.symbol, cfg.feed.rtds_url, cfg.feed.reconnect_seconds)
        bot = cls(
            cfg,
            market=market,
            prices=ClobAdapter(cfg.data.clob_rest_base),
            feed=feed,
            strategy=StrategyStateMachine(cfg.strategy),
            ledger=ledger,
            executor=executor,
            rtds=rtds,
            echo=echo,
        )
        if cfg.app.mode == "live":
            executor.set_token_resolver(bot.token_for)
        if cfg.predictor.enabled:
            bot.predictor = ReversalPredictor.from_config(feed, cfg.predictor, trace=bot._event)
        return bot

    def token_for(self, side: Side) -> str:
        epoch = self.position_epoch if self.strategy.is_open and self.position_epoch else self.market.current_epoch()
        if epoch is None:
            return ""
        return epoch.up_token if side == Side.UP else epoch.down_token

    def _event(self, event: dict) -> None:
        append_event(self.cfg.storage.events_path, event)

    def _say(self, msg: str) -> None:
        if self.echo:
            print(msg)

    # -- session sync --------------------------------------------------------

    def sync(self) -> SyncResult:
        res = self.market.sync()
        if res.error:
            self._event({"type": "sync_error", "error": res.error})
            self._say(f"[red]Market sync error[/red] {res.error}")
        if not res.new_session:
            return res

        if res.previous is not None:
            rec = self.feed.close_session_volatility(res.previous.slug or res.previous.epoch_id)
            if rec is None:
                self._event({"type": "volatility_skipped", "epoch": res.previous.slug, "ticks": len(self.feed.samples())})
            else:
                self._event({"type": "volatility_record", **rec.model_dump()})

        self._say(f"[bold]New session[/bold] {res.epoch.question or res.epoch.slug}")
        # the peg belongs to the new session even when its reset has to wait
        self.feed.set_session_peg(self.feed.latest_price)
        if self.strategy.is_open:
            self.pending_reset = True
            self._say(
                f"[yellow]Position {self.strategy.position.side.value} still open; "
                f"waiting for exit before switching session[/yellow]"
            )
            self._event({"type": "session_reset_deferred", "epoch": res.epoch.slug})
        else:
            self._start_session()
        return res

    def _start_session(self) -> None:
        self.strategy.reset_for_new_session()
        self.pending_reset = False
        balance = self.ledger.refresh()
        epoch = self.market.current_epoch()
        self._event({
            "type": "session_start",
            "epoch": epoch.slug if epoch else None,
            "session_peg": self.feed.session_peg,
            "balance_usd": round(balance, 4),
        })
        self._say(f"Session balance ${balance:.2f} | peg {self.feed.session_peg}")

    # -- fast tick -----------------------------------------------------------

    def tick(self) -> None:
        if not self.market.is_ready():
            return
        # an open position keeps trading on the epoch it was bought in
        epoch = self.position_epoch if self.strategy.is_open and self.position_epoch else self.market.current_epoch()
        quote = self.prices.get_prices(epoch.up_token, epoch.down_token)
        timing = time_remaining(self._clock(), epoch.end_time, self.cfg.session.epoch_seconds)
        if quote is None:
            # a finished market stops quoting; settle on the last price seen
            if self.strategy.is_open and timing.seconds_left == 0:
                exit_signal = self.strategy.evaluate_exit(self.held_price, 0)
                if exit_signal:
                    self._exit(exit_signal, self.held_price, unquoted=True)
            return
        up, down = quote
        in_window = self.strategy.is_in_trading_window()
        self._event({
            "type": "tick",
            "epoch": epoch.slug,
            "up": up,
            "down": down,
            "seconds_left": timing.seconds_left,
            "progress_pct": round(timing.session_progress_pct, 2),
            "position": self.strategy.position.side.value,
            "balance_usd": round(self.ledger.balance(), 4),
            "in_window": in_window,
        })

        if not self.strategy.is_open:
            signal = self.strategy.evaluate_entry(
                up,
                down,
                timing.seconds_left,
                predictor=self.predictor,
                min_confidence=self.cfg.predictor.min_confidence if self.predictor else None,
            )
            if signal:
                self._enter(signal)
            return

        side = self.strategy.position.side
        current = up if side == Side.UP else down
        self.held_price = current
        exit_signal = self.strategy.evaluate_exit(current, timing.seconds_left)
        if exit_signal:
            self._exit(exit_signal, current)

    def _enter(self, signal: BuySignal) -> None:
        balance = self.ledger.balance()
        decision = approve(signal, balance, self.cfg.execution)
        if not decision.approved:
            self._event({"type": "entry_rejected", "reason": decision.reason, "stake_usd": decision.stake_usd, "balance_usd": balance})
            self._say(f"[yellow]Skip entry[/yellow] {decision.reason} stake=${decision.stake_usd:.2f} bal=${balance:.2f}")
            return

        res = self.executor.place_entry(signal.side, signal.price, decision.stake_usd)
        if not res.success:
            self._event({"type": "entry_failed", "side": signal.side.value, "price": signal.price, "reason": res.reason, "attempts": res.attempts})
            self._say(f"[red]BUY FAILED[/red] {signal.side.value} err={res.reason}")
            return

        fill = self.strategy.commit_entry(signal, shares=res.filled_shares, fill_price=res.filled_price or signal.price)
        self.position_epoch = self.market.current_epoch()
        self.held_price = fill.entry_price
        self.ledger.refresh()
        self._event({
            "type": "trade",
            "action": "BUY",
            "tier": signal.tier,
            "side": fill.side.value,
            "price": fill.entry_price,
            "shares": fill.shares,
            "invested_usd": round(fill.invested_usd, 4),
            "seconds_left": signal.seconds_left,
            "confidence": signal.confidence,
            "mock": res.mock,
            "order_id": res.order_id,
        })
        self._say(
            f"[green]BUY[/green] [{signal.tier}] {fill.side.value} @ {fill.entry_price:.3f} "
            f"shares={fill.shares:.2f} invested=${fill.invested_usd:.2f} t-{signal.seconds_left}s"
        )

    def _exit(self, signal: ExitSignal, current: float, unquoted: bool = False) -> None:
        pos = self.strategy.position
        if signal.is_emergency_exit:
            self._say(f"[yellow]Emergency exit below liquidity threshold @ {current:.3f}[/yellow]")

        res = self.executor.place_exit(pos.side, current, pos.shares)
        write_off = self.cfg.execution.write_off_on_no_liquidity and (res.reason == "no_liquidity" or unquoted)
        if res.success:
            result = self.strategy.commit_exit(res.filled_price or current, shares=res.filled_shares or None)
            action = "SELL" if not self.strategy.is_open else "PARTIAL_SELL"
        elif write_off:
            result = self.strategy.commit_exit(current)
            action = "WRITE_OFF"
        else:
            self.strategy.register_exit_failure()
            self._event({
                "type": "exit_failed",
                "side": pos.side.value,
                "price": current,
                "shares": pos.shares,
                "reason": res.reason,
                "exit_reason": signal.reason.value,
                "attempts": res.attempts,
            })
            self._say(f"[red]SELL FAILED[/red] {pos.side.value} err={res.reason}; position stays open")
            return

        self.ledger.realized_pnl_usd += result.profit_loss
        self.ledger.refresh()
        self._event({
            "type": "trade",
            "action": action,
            "side": result.side.value,
            "price": result.exit_price,
            "shares": result.shares,
            "remaining_shares": result.remaining_shares,
            "reason": signal.reason.value,
            "current_multiple": round(signal.current_multiple, 4),
            "peak_multiple": round(signal.peak_multiple, 4),
            "hold_seconds": round(signal.hold_time_seconds, 2),
            "pnl_usd": round(result.profit_loss, 4),
            "pnl_pct": round(result.profit_loss_pct, 2),
            "stopped_out": result.stopped_out,
            "mock": res.mock,
        })
        self._say(
            f"[magenta]{action}[/magenta] {result.side.value} @ {result.exit_price:.3f} reason={signal.reason.value} "
            f"x{signal.current_multiple:.2f} (peak x{signal.peak_multiple:.2f}) pnl=${result.profit_loss:.2f}"
        )
        if self.strategy.is_open:
            return
        self.position_epoch = None
        if self.pending_reset:
            self._start_session()

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        if self.rtds is not None:
            self.rtds.start()
        self.ledger.refresh()
        self.sync()

    def stop(self) -> None:
        if self.rtds is not None:
            self.rtds.stop()


def run_forever(bot: Bot, sleep: Callable[[float], None] = time.sleep, max_cycles: Optional[int] = None):
    tick_s = float(bot.cfg.app.tick_seconds)
    sync_s = float(bot.cfg.app.sync_seconds)
    bot.start()
    next_tick = next_sync = time.monotonic()
    next_sync += sync_s
    cycles = 0
    try:
        while max_cycles is None or cycles < max_cycles:
            now = time.monotonic()
            try:
                if now >= next_sync:
                    bot.sync()
                    next_sync = now + sync_s
                if now >= next_tick:
                    bot.tick()
                    next_tick = now + tick_s
            except StrategyStateError:
                raise
            except Exception as e:
                append_event(bot.cfg.storage.events_path, {"type": "loop_error", "error": str(e)})
            cycles += 1
            sleep(max(0.0, min(next_tick, next_sync) - time.monotonic()))
    finally:
        bot.stop()
