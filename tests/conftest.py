import pytest

from polymarket_updown.config import EntryTier, ExitPolicy, StrategyConfig


class FakeClock:
    def __init__(self, t: float = 1000.0):
        self.t = float(t)

    def __call__(self) -> float:
        return self.t

    def advance(self, dt: float) -> float:
        self.t += float(dt)
        return self.t


def late_tier(**kw) -> EntryTier:
    base = dict(
        name="LATE",
        min_seconds=5,
        max_seconds=120,
        min_price=0.01,
        max_price=0.02,
        position_size=0.40,
        max_hold_seconds=120,
    )
    base.update(kw)
    return EntryTier(**base)


def strategy_cfg(**kw) -> StrategyConfig:
    base = dict(
        tiers=[late_tier()],
        max_entries_per_session=1,
        exit_policy=ExitPolicy.TRAILING_STOP,
    )
    base.update(kw)
    return StrategyConfig(**base)


@pytest.fixture
def clock():
    return FakeClock()
