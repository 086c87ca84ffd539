import math

from polymarket_updown.models import MarketEpoch, SessionTiming


def epoch_start(now: float, epoch_seconds: int) -> int:
    return (int(now) // int(epoch_seconds)) * int(epoch_seconds)


def current_epoch(now: float, epoch_seconds: int, slug_prefix: str = "") -> MarketEpoch:
    """Epoch containing `now`. Boundaries depend on wall-clock time only."""
    start = epoch_start(now, epoch_seconds)
    return MarketEpoch(
        epoch_id=start,
        start_time=float(start),
        end_time=float(start + int(epoch_seconds)),
        slug=f"{slug_prefix}{start}" if slug_prefix else "",
    )


def time_remaining(now: float, end_time: float, epoch_seconds: int) -> SessionTiming:
    seconds_left = max(0, math.floor(float(end_time) - float(now)))
    progress = 100.0 * (1.0 - seconds_left / float(epoch_seconds))
    return SessionTiming(seconds_left=seconds_left, session_progress_pct=progress)
