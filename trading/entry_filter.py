"""Ordered entry predicates. Every failing predicate is collected for the decision log."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple

import config
from trading.models import FRESH_LAUNCH_TAGS, Candidate


@dataclass(frozen=True)
class EntryRules:
    min_signals: int = 1
    strong_trend_1h: float = 50.0
    strong_pump_5m: float = 8.0
    min_buy_sell_ratio: float = 1.0
    min_change_5m: float = 5.0
    max_change_5m: float = 40.0
    min_liquidity_usd: float = 8000.0
    liquidity_floor_by_tag: Dict[str, float] = field(default_factory=dict)
    max_age_hours: float = 4.0
    dump_floor_5m: float = -5.0
    topped_bypass_tags: FrozenSet[str] = FRESH_LAUNCH_TAGS

    @classmethod
    def from_config(cls) -> "EntryRules":
        return cls(
            min_signals=config.MIN_SIGNALS,
            strong_trend_1h=config.STRONG_TREND_1H_CHANGE,
            strong_pump_5m=config.STRONG_PUMP_5M_CHANGE,
            min_buy_sell_ratio=config.MIN_BUY_SELL_RATIO,
            min_change_5m=config.MIN_5M_CHANGE,
            max_change_5m=config.MAX_5M_CHANGE,
            min_liquidity_usd=config.MIN_LIQUIDITY_USD,
            liquidity_floor_by_tag=dict(config.MIN_LIQUIDITY_BY_TAG),
            max_age_hours=config.MAX_AGE_HOURS,
            dump_floor_5m=config.DUMP_FLOOR_5M_CHANGE,
        )

    def liquidity_floor(self, tags: FrozenSet[str]) -> float:
        """Lowest floor among the candidate's tags, falling back to the default minimum."""
        floors = [self.liquidity_floor_by_tag[tag] for tag in tags if tag in self.liquidity_floor_by_tag]
        return min(floors) if floors else self.min_liquidity_usd


@dataclass(frozen=True)
class FilterResult:
    passed: bool
    failed: Tuple[str, ...] = ()
    signals: int = 0
    buy_sell_ratio: Optional[float] = None


def buy_sell_ratio(buys: Optional[int], sells: Optional[int]) -> Optional[float]:
    """Buys per sell. With no sells yet: 2.0 if anything was bought, else a neutral 1.0."""
    if buys is None or sells is None:
        return None
    if sells > 0:
        return buys / sells
    return 2.0 if buys > 0 else 1.0


def effective_signals(candidate: Candidate, rules: EntryRules) -> int:
    snap = candidate.snapshot
    count = len(candidate.tags)
    if snap.change_1h is not None and snap.change_1h > rules.strong_trend_1h:
        count += 1
    if snap.change_5m is not None and snap.change_5m >= rules.strong_pump_5m:
        count += 1
    return count


def _has_signals(c: Candidate, rules: EntryRules) -> bool:
    return effective_signals(c, rules) >= rules.min_signals


def _good_ratio(c: Candidate, rules: EntryRules) -> bool:
    ratio = buy_sell_ratio(c.snapshot.buys, c.snapshot.sells)
    return ratio is not None and ratio >= rules.min_buy_sell_ratio


def _is_pumping(c: Candidate, rules: EntryRules) -> bool:
    return c.snapshot.change_5m is not None and c.snapshot.change_5m >= rules.min_change_5m


def _not_topped(c: Candidate, rules: EntryRules) -> bool:
    if c.tags & rules.topped_bypass_tags:
        return True
    return c.snapshot.change_5m is not None and c.snapshot.change_5m <= rules.max_change_5m


def _has_liquidity(c: Candidate, rules: EntryRules) -> bool:
    liquidity = c.snapshot.liquidity_usd
    return liquidity is not None and liquidity >= rules.liquidity_floor(c.tags)


def _not_too_old(c: Candidate, rules: EntryRules) -> bool:
    return c.snapshot.age_hours is not None and c.snapshot.age_hours <= rules.max_age_hours


def _not_dumping(c: Candidate, rules: EntryRules) -> bool:
    return c.snapshot.change_5m is not None and c.snapshot.change_5m > rules.dump_floor_5m


# Evaluation order after `not_on_cooldown`, which depends on store state rather than the candidate.
PREDICATES: List[Tuple[str, Callable[[Candidate, EntryRules], bool]]] = [
    ("has_signals", _has_signals),
    ("good_ratio", _good_ratio),
    ("is_pumping", _is_pumping),
    ("not_topped", _not_topped),
    ("has_liquidity", _has_liquidity),
    ("not_too_old", _not_too_old),
    ("not_dumping", _not_dumping),
]


def evaluate(candidate: Candidate, rules: EntryRules, *, on_cooldown: bool) -> FilterResult:
    failed: List[str] = []
    if on_cooldown:
        failed.append("not_on_cooldown")
    for name, predicate in PREDICATES:
        if not predicate(candidate, rules):
            failed.append(name)
    return FilterResult(
        passed=not failed,
        failed=tuple(failed),
        signals=effective_signals(candidate, rules),
        buy_sell_ratio=buy_sell_ratio(candidate.snapshot.buys, candidate.snapshot.sells),
    )
