"""Domain records shared by the discovery loop, the monitoring loop and the state store."""

from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from typing import Any, FrozenSet, List, Optional, Tuple

# Provenance tags emitted by candidate source adapters.
TAG_PUMP_FUN = "PUMP_FUN"
TAG_GECKO_NEW = "GECKO_NEW"
TAG_GECKO_TREND = "GECKO_TREND"
TAG_TREND = "TREND"
TAG_BOOST = "BOOST"
TAG_GAINER = "GAINER"
TAG_PROFILE = "PROFILE"
TAG_SEARCH = "SEARCH"
TAG_NEW = "NEW"
TAG_WHALE = "WHALE"
TAG_VOLUME_SPIKE = "VOLUME_SPIKE"

# Tier ranks: lower sorts first.
TIER_FRESH = 0
TIER_SOCIAL = 1
TIER_GENERIC = 2
TIER_NAMES = {TIER_FRESH: "FRESH", TIER_SOCIAL: "SOCIAL", TIER_GENERIC: "GENERIC"}

TAG_TIERS = {
    TAG_PUMP_FUN: TIER_FRESH,
    TAG_GECKO_NEW: TIER_FRESH,
    TAG_GECKO_TREND: TIER_SOCIAL,
    TAG_TREND: TIER_SOCIAL,
    TAG_BOOST: TIER_SOCIAL,
    TAG_GAINER: TIER_SOCIAL,
    TAG_WHALE: TIER_SOCIAL,
    TAG_VOLUME_SPIKE: TIER_SOCIAL,
    TAG_PROFILE: TIER_GENERIC,
    TAG_SEARCH: TIER_GENERIC,
    TAG_NEW: TIER_GENERIC,
}

# The only tag family allowed to skip the 5m "already topped" ceiling.
FRESH_LAUNCH_TAGS: FrozenSet[str] = frozenset({TAG_PUMP_FUN, TAG_GECKO_NEW})

EXIT_FLASH_CRASH = "flash crash"
EXIT_STOP_LOSS = "stop loss"
EXIT_TAKE_PROFIT = "take profit"
EXIT_TRAILING_STOP = "trailing stop"
EXIT_TIMEOUT = "timeout"
EXIT_ADVISOR = "advisor"
EXIT_REASONS = (
    EXIT_FLASH_CRASH,
    EXIT_STOP_LOSS,
    EXIT_TAKE_PROFIT,
    EXIT_TRAILING_STOP,
    EXIT_TIMEOUT,
    EXIT_ADVISOR,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_ts(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def tier_for_tags(tags: FrozenSet[str]) -> int:
    """Best (lowest) tier among the tags; unknown tags count as generic."""
    return min((TAG_TIERS.get(tag, TIER_GENERIC) for tag in tags), default=TIER_GENERIC)


@dataclass(frozen=True)
class MarketSnapshot:
    """Numeric market view of one token. `None` means unknown and is never coerced to zero."""

    symbol: Optional[str] = None
    price_usd: Optional[float] = None
    change_5m: Optional[float] = None
    change_1h: Optional[float] = None
    change_24h: Optional[float] = None
    liquidity_usd: Optional[float] = None
    buys: Optional[int] = None
    sells: Optional[int] = None
    age_hours: Optional[float] = None
    score: Optional[float] = None
    fetched_at: Optional[datetime] = None

    def merged_with(self, newer: "MarketSnapshot") -> "MarketSnapshot":
        """Overlay the known fields of a later fetch; unknown fields never erase known ones."""
        updates = {f.name: getattr(newer, f.name) for f in fields(newer) if getattr(newer, f.name) is not None}
        return replace(self, **updates)

    def known_field_count(self) -> int:
        return sum(1 for f in fields(self) if getattr(self, f.name) is not None)


@dataclass(frozen=True)
class Candidate:
    token_id: str
    tags: FrozenSet[str]
    snapshot: MarketSnapshot
    tier: int

    @property
    def symbol(self) -> str:
        return self.snapshot.symbol or self.token_id[:6]


@dataclass
class Position:
    token_id: str
    symbol: str
    entry_price: float
    entry_time: datetime
    size: float
    initial_size: float
    highest_price: float = 0.0
    last_price: float = 0.0
    take_profit_hits: List[float] = field(default_factory=list)
    pnl_percent: float = 0.0
    realized_pnl: float = 0.0
    tags: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.highest_price:
            self.highest_price = self.entry_price
        if not self.last_price:
            self.last_price = self.entry_price

    def hold_seconds(self, now: datetime) -> float:
        return max(0.0, (now - self.entry_time).total_seconds())


@dataclass(frozen=True)
class ClosedTrade:
    """One executed exit fill. Append-only; partial take-profit fills carry `partial=True`."""

    token_id: str
    symbol: str
    entry_price: float
    entry_time: datetime
    initial_size: float
    exit_price: float
    exit_reason: str
    exit_time: datetime
    sell_percent: float
    notional_sold: float
    pnl: float
    pnl_percent: float
    hold_seconds: float
    partial: bool = False
    tags: Tuple[str, ...] = ()
    tx_id: str = ""


@dataclass(frozen=True)
class CooldownEntry:
    exited_at: datetime
    was_profitable: bool


@dataclass
class SessionState:
    cumulative_pnl: float = 0.0
    peak_pnl: float = 0.0
    halted: bool = False
    halt_reason: str = ""
    halted_at: Optional[datetime] = None
    day_id: str = ""
    day_realized_pnl: float = 0.0
    trades: int = 0
    wins: int = 0
    losses: int = 0
    started_at: Optional[datetime] = None

    @property
    def drawdown(self) -> float:
        return self.peak_pnl - self.cumulative_pnl
