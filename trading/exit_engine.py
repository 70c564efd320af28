"""Exit ladder evaluated for one open position per monitoring tick.

Pure computation: given a position, a fresh price and the clock, return the
position's next price state and at most one exit decision. Nothing here
mutates the position; the caller persists the outcome only after execution
has definitely succeeded (or when no exit fired).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

import config
from trading.models import (
    EXIT_FLASH_CRASH,
    EXIT_STOP_LOSS,
    EXIT_TAKE_PROFIT,
    EXIT_TIMEOUT,
    EXIT_TRAILING_STOP,
    Position,
)


@dataclass(frozen=True)
class ExitRules:
    flash_crash_percent: float = 5.0
    stop_loss_percent: float = -15.0
    take_profit_ladder: List[Tuple[float, float]] = field(
        default_factory=lambda: [(20.0, 50.0), (40.0, 30.0), (100.0, 20.0)]
    )
    trailing_stop_percent: float = 12.0
    max_hold: timedelta = timedelta(minutes=10)
    min_profit_to_hold_percent: float = 5.0

    def __post_init__(self) -> None:
        thresholds = [rung[0] for rung in self.take_profit_ladder]
        if thresholds != sorted(thresholds) or len(set(thresholds)) != len(thresholds):
            raise ValueError(f"take-profit ladder must be strictly ascending: {self.take_profit_ladder}")
        if self.stop_loss_percent > 0:
            raise ValueError(f"stop loss must be negative: {self.stop_loss_percent}")

    @classmethod
    def from_config(cls) -> "ExitRules":
        return cls(
            flash_crash_percent=config.FLASH_CRASH_PERCENT,
            stop_loss_percent=config.STOP_LOSS_PERCENT,
            take_profit_ladder=list(config.TAKE_PROFIT_LADDER),
            trailing_stop_percent=config.TRAILING_STOP_PERCENT,
            max_hold=timedelta(minutes=config.MAX_HOLD_MINUTES),
            min_profit_to_hold_percent=config.MIN_PROFIT_TO_HOLD_PERCENT,
        )


@dataclass(frozen=True)
class ExitDecision:
    reason: str
    sell_percent: float
    rung: Optional[float] = None

    @property
    def is_full(self) -> bool:
        return self.sell_percent >= 100.0


@dataclass(frozen=True)
class TickOutcome:
    price: float
    highest_price: float
    pnl_percent: float
    tick_change_percent: float
    drop_from_high_percent: float
    decision: Optional[ExitDecision] = None


def pct_change(new: float, old: float) -> float:
    return (new - old) / old * 100.0 if old > 0 else 0.0


def evaluate_tick(position: Position, price: float, now: datetime, rules: ExitRules) -> TickOutcome:
    """Run the ladder in priority order; the first matching trigger wins.

    The flash-crash drop is measured from `position.last_price`, the last accepted
    tick. A tick with no usable price is not an observation, so after one the window
    reaches back to the previous accepted tick. A failed sell leaves `last_price`
    alone, so the same crash fires again on the retry.
    """
    highest = max(position.highest_price, price)
    pnl = pct_change(price, position.entry_price)
    tick_change = pct_change(price, position.last_price)
    drop_from_high = pct_change(price, highest)

    def outcome(decision: Optional[ExitDecision]) -> TickOutcome:
        return TickOutcome(price, highest, pnl, tick_change, drop_from_high, decision)

    if rules.flash_crash_percent > 0 and tick_change <= -rules.flash_crash_percent:
        return outcome(ExitDecision(EXIT_FLASH_CRASH, 100.0))

    if pnl <= rules.stop_loss_percent:
        return outcome(ExitDecision(EXIT_STOP_LOSS, 100.0))

    for threshold, sell_percent in rules.take_profit_ladder:
        if threshold in position.take_profit_hits:
            continue
        if pnl >= threshold:
            return outcome(ExitDecision(EXIT_TAKE_PROFIT, min(100.0, sell_percent), rung=threshold))
        # Rungs are ascending, so nothing above an unmet rung can be met.
        break

    if (
        position.take_profit_hits
        and rules.trailing_stop_percent > 0
        and drop_from_high <= -rules.trailing_stop_percent
    ):
        return outcome(ExitDecision(EXIT_TRAILING_STOP, 100.0))

    if (
        rules.max_hold > timedelta(0)
        and now - position.entry_time >= rules.max_hold
        and pnl < rules.min_profit_to_hold_percent
    ):
        return outcome(ExitDecision(EXIT_TIMEOUT, 100.0))

    return outcome(None)
