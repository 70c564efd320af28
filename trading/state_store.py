"""Single-writer state store shared by the discovery and monitoring loops.

Every public operation runs as one load -> mutate -> persist unit under a single
`asyncio.Lock` inside one backend transaction, which also excludes writers in
other processes. Critical sections never await anything but that lock, so network
calls (feeds, prices, swaps) always happen outside of it.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, ContextManager, Dict, Iterator, List, Optional, Sequence, Tuple

import config
from trading.auto_trader_state import (
    StoreState,
    deserialize_trade,
    serialize_trade,
    state_from_payload,
    state_to_payload,
)
from trading.circuit_breaker import BreakerLimits, SessionCircuitBreaker
from trading.cooldown import CooldownPolicy, CooldownTracker
from trading.exit_engine import pct_change
from trading.models import ClosedTrade, Position, SessionState, utc_now
from utils.state_file import append_jsonl, atomic_write_json, read_json, read_jsonl, state_file_lock

logger = logging.getLogger(__name__)

E_STATE_STORE = "E_STATE_STORE"


class StateStoreError(RuntimeError):
    """An operation would violate a store invariant; state was left untouched."""

    code = E_STATE_STORE


class DuplicatePositionError(StateStoreError):
    code = "E_POSITION_DUPLICATE"


class PositionNotFoundError(StateStoreError):
    code = "E_POSITION_NOT_FOUND"


class InvalidPositionError(StateStoreError):
    code = "E_POSITION_INVALID"


class StateTransaction(ABC):
    """Load and commit handle valid only inside `StateBackend.transaction()`."""

    @abstractmethod
    def load(self) -> StoreState:
        """Return a fresh copy the caller may mutate freely."""

    @abstractmethod
    def commit(self, state: StoreState, new_trades: Sequence[ClosedTrade] = ()) -> None:
        """Persist `state` and append `new_trades` to the history."""


class StateBackend(ABC):
    """Durable home of a `StoreState` plus the append-only trade history.

    `transaction()` holds the backend's cross-process lock from the first load to
    the last commit, so a writer in another process (e.g. `main.py resume` while
    the bot runs) cannot slip a commit between them and have it overwritten.
    """

    @abstractmethod
    def transaction(self) -> ContextManager[StateTransaction]:
        """Exclusive load -> mutate -> commit unit."""

    @abstractmethod
    def load_trades(self, limit: Optional[int] = None) -> List[ClosedTrade]:
        """Return the history oldest first, optionally only the last `limit` rows."""

    def load(self) -> StoreState:
        with self.transaction() as txn:
            return txn.load()

    def commit(self, state: StoreState, new_trades: Sequence[ClosedTrade] = ()) -> None:
        with self.transaction() as txn:
            txn.commit(state, new_trades)

    def close(self) -> None:
        return None


class _MemoryTransaction(StateTransaction):
    def __init__(self, backend: "MemoryBackend") -> None:
        self._backend = backend

    def load(self) -> StoreState:
        return self._backend._state.clone()

    def commit(self, state: StoreState, new_trades: Sequence[ClosedTrade] = ()) -> None:
        self._backend._state = state.clone()
        self._backend._trades.extend(new_trades)
        self._backend.commits += 1


class MemoryBackend(StateBackend):
    def __init__(self, state: Optional[StoreState] = None) -> None:
        self._state = state.clone() if state is not None else StoreState()
        self._trades: List[ClosedTrade] = []
        self.commits = 0

    @contextmanager
    def transaction(self) -> Iterator[StateTransaction]:
        yield _MemoryTransaction(self)

    def load_trades(self, limit: Optional[int] = None) -> List[ClosedTrade]:
        return list(self._trades[-limit:] if limit else self._trades)


class _JsonTransaction(StateTransaction):
    def __init__(self, backend: "JsonFileBackend") -> None:
        self._backend = backend

    def load(self) -> StoreState:
        return state_from_payload(read_json(self._backend.state_path, default=None))

    def commit(self, state: StoreState, new_trades: Sequence[ClosedTrade] = ()) -> None:
        for trade in new_trades:
            append_jsonl(self._backend.history_path, serialize_trade(trade))
        atomic_write_json(
            self._backend.state_path, state_to_payload(state), replace_retries=self._backend.replace_retries
        )


class JsonFileBackend(StateBackend):
    """State as one JSON document replaced atomically; history as append-only JSONL.

    A transaction holds the `<state>.lock` sidecar from load through commit.
    History rows are appended before the document is replaced: a crash in between
    leaves a recorded fill whose position is still open, never the reverse.
    """

    def __init__(
        self,
        state_path: str,
        history_path: str,
        *,
        lock_timeout_seconds: float = 2.0,
        lock_poll_seconds: float = 0.05,
        replace_retries: int = 8,
    ) -> None:
        self.state_path = state_path
        self.history_path = history_path
        self.lock_timeout = lock_timeout_seconds
        self.lock_poll = lock_poll_seconds
        self.replace_retries = replace_retries

    @classmethod
    def from_config(cls) -> "JsonFileBackend":
        return cls(
            config.STATE_FILE,
            config.TRADE_HISTORY_FILE,
            lock_timeout_seconds=config.STATE_FILE_LOCK_TIMEOUT_SECONDS,
            lock_poll_seconds=config.STATE_FILE_LOCK_RETRY_SECONDS,
            replace_retries=config.STATE_ATOMIC_REPLACE_RETRIES,
        )

    @contextmanager
    def transaction(self) -> Iterator[StateTransaction]:
        # flock belongs to the open file description: nothing inside may re-lock the sidecar.
        with state_file_lock(self.state_path, timeout_seconds=self.lock_timeout, poll_seconds=self.lock_poll):
            yield _JsonTransaction(self)

    def load_trades(self, limit: Optional[int] = None) -> List[ClosedTrade]:
        trades: List[ClosedTrade] = []
        for row in read_jsonl(self.history_path):
            try:
                trades.append(deserialize_trade(row))
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("STATE_LOAD skip_trade err=%s", exc)
        return trades[-limit:] if limit else trades


@dataclass(frozen=True)
class ExitRecord:
    """Result of a persisted exit fill."""

    trade: ClosedTrade
    position: Optional[Position]
    halt_reason: Optional[str] = None


def build_backend(kind: Optional[str] = None) -> StateBackend:
    kind = (kind or config.STATE_BACKEND).strip().lower()
    if kind == "json":
        return JsonFileBackend.from_config()
    if kind == "sql":
        from database.db import SqlBackend

        return SqlBackend(config.DATABASE_URL)
    if kind == "memory":
        return MemoryBackend()
    raise ValueError(f"Unknown STATE_BACKEND={kind!r} (expected json, sql or memory)")


class StateStore:
    def __init__(
        self,
        backend: StateBackend,
        *,
        cooldown_policy: Optional[CooldownPolicy] = None,
        breaker_limits: Optional[BreakerLimits] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._backend = backend
        self._lock = asyncio.Lock()
        self.cooldown_policy = cooldown_policy or CooldownPolicy.from_config()
        self.breaker_limits = breaker_limits or BreakerLimits.from_config()
        self._clock = clock

    def _breaker(self, state: StoreState) -> SessionCircuitBreaker:
        return SessionCircuitBreaker(self.breaker_limits, state.session)

    def _cooldowns(self, state: StoreState) -> CooldownTracker:
        return CooldownTracker(self.cooldown_policy, state.cooldowns)

    def _snapshot(self) -> StoreState:
        with self._backend.transaction() as txn:
            return txn.load()

    @staticmethod
    def _require(state: StoreState, token_id: str) -> Position:
        pos = state.positions.get(token_id)
        if pos is None:
            raise PositionNotFoundError(f"no open position token={token_id}")
        return pos

    async def add_position(self, position: Position) -> Position:
        if position.entry_price <= 0:
            raise InvalidPositionError(f"entry price must be > 0 token={position.token_id} price={position.entry_price}")
        if position.size <= 0:
            raise InvalidPositionError(f"size must be > 0 token={position.token_id} size={position.size}")
        async with self._lock:
            with self._backend.transaction() as txn:
                state = txn.load()
                if position.token_id in state.positions:
                    raise DuplicatePositionError(f"position already open token={position.token_id}")
                state.positions[position.token_id] = replace(position, take_profit_hits=list(position.take_profit_hits))
                if state.session.started_at is None:
                    state.session.started_at = position.entry_time
                txn.commit(state)
            return replace(state.positions[position.token_id])

    async def update_position_price(self, token_id: str, price: float) -> Position:
        """Record an accepted tick: last price, running high and unrealized P&L."""
        if price <= 0:
            raise InvalidPositionError(f"price must be > 0 token={token_id} price={price}")
        async with self._lock:
            with self._backend.transaction() as txn:
                state = txn.load()
                pos = self._require(state, token_id)
                self._apply_price(pos, price)
                txn.commit(state)
            return replace(pos)

    @staticmethod
    def _apply_price(pos: Position, price: float) -> None:
        pos.last_price = price
        pos.highest_price = max(pos.highest_price, price)
        pos.pnl_percent = pct_change(price, pos.entry_price)

    def _fill(
        self,
        pos: Position,
        *,
        exit_price: float,
        sell_percent: float,
        reason: str,
        now: datetime,
        partial: bool,
        tx_id: str,
    ) -> ClosedTrade:
        notional = pos.size * min(100.0, sell_percent) / 100.0
        pnl_percent = pct_change(exit_price, pos.entry_price)
        return ClosedTrade(
            token_id=pos.token_id,
            symbol=pos.symbol,
            entry_price=pos.entry_price,
            entry_time=pos.entry_time,
            initial_size=pos.initial_size,
            exit_price=exit_price,
            exit_reason=reason,
            exit_time=now,
            sell_percent=sell_percent,
            notional_sold=notional,
            pnl=notional * pnl_percent / 100.0,
            pnl_percent=pnl_percent,
            hold_seconds=pos.hold_seconds(now),
            partial=partial,
            tags=tuple(pos.tags),
            tx_id=tx_id,
        )

    async def apply_partial_exit(
        self,
        token_id: str,
        *,
        sell_percent: float,
        exit_price: float,
        reason: str,
        rung: Optional[float] = None,
        now: Optional[datetime] = None,
        tx_id: str = "",
    ) -> ExitRecord:
        """Book an executed partial sell. The position stays open and no cooldown starts."""
        if not (0 < sell_percent < 100):
            raise InvalidPositionError(f"partial sell percent must be in (0, 100) got={sell_percent}")
        if exit_price <= 0:
            raise InvalidPositionError(f"exit price must be > 0 token={token_id} price={exit_price}")
        now = now or self._clock()
        async with self._lock:
            with self._backend.transaction() as txn:
                state = txn.load()
                pos = self._require(state, token_id)
                if rung is not None and rung in pos.take_profit_hits:
                    raise StateStoreError(f"take-profit rung {rung} already triggered token={token_id}")
                trade = self._fill(
                    pos, exit_price=exit_price, sell_percent=sell_percent, reason=reason, now=now, partial=True, tx_id=tx_id
                )
                self._apply_price(pos, exit_price)
                pos.size -= trade.notional_sold
                pos.realized_pnl += trade.pnl
                if rung is not None:
                    pos.take_profit_hits = sorted(pos.take_profit_hits + [rung])
                halt_reason = self._breaker(state).on_realized_pnl(trade.pnl, now)
                txn.commit(state, [trade])
            return ExitRecord(trade=trade, position=replace(pos), halt_reason=halt_reason)

    async def close_position(
        self,
        token_id: str,
        *,
        exit_price: float,
        reason: str,
        now: Optional[datetime] = None,
        tx_id: str = "",
    ) -> ExitRecord:
        """Book an executed full exit: trade appended, slot freed, cooldown marked, breaker fed."""
        if exit_price <= 0:
            raise InvalidPositionError(f"exit price must be > 0 token={token_id} price={exit_price}")
        now = now or self._clock()
        async with self._lock:
            with self._backend.transaction() as txn:
                state = txn.load()
                pos = self._require(state, token_id)
                trade = self._fill(
                    pos, exit_price=exit_price, sell_percent=100.0, reason=reason, now=now, partial=False, tx_id=tx_id
                )
                del state.positions[token_id]

                tracker = self._cooldowns(state)
                tracker.prune(now)
                tracker.mark_exited(token_id, trade.pnl_percent >= 0, now)
                state.cooldowns = tracker.entries

                session = state.session
                session.trades += 1
                if pos.realized_pnl + trade.pnl >= 0:
                    session.wins += 1
                else:
                    session.losses += 1
                halt_reason = self._breaker(state).on_realized_pnl(trade.pnl, now)
                txn.commit(state, [trade])
            return ExitRecord(trade=trade, position=None, halt_reason=halt_reason)

    async def get_position(self, token_id: str) -> Optional[Position]:
        async with self._lock:
            return self._snapshot().positions.get(token_id)

    async def get_positions(self) -> List[Position]:
        async with self._lock:
            return list(self._snapshot().positions.values())

    async def can_open_position(self, now: Optional[datetime] = None) -> Tuple[bool, str]:
        now = now or self._clock()
        async with self._lock:
            state = self._snapshot()
            return self._breaker(state).can_open_position(len(state.positions), now)

    async def is_on_cooldown(self, token_id: str, now: Optional[datetime] = None) -> bool:
        now = now or self._clock()
        async with self._lock:
            return self._cooldowns(self._snapshot()).is_on_cooldown(token_id, now)

    async def cooldown_remaining(self, token_id: str, now: Optional[datetime] = None) -> timedelta:
        now = now or self._clock()
        async with self._lock:
            return self._cooldowns(self._snapshot()).remaining(token_id, now)

    async def append_trade(self, trade: ClosedTrade) -> None:
        """Record a fill that happened outside the exit ladder (e.g. manual sell)."""
        async with self._lock:
            with self._backend.transaction() as txn:
                txn.commit(txn.load(), [trade])

    async def trade_history(self, limit: Optional[int] = None) -> List[ClosedTrade]:
        async with self._lock:
            return self._backend.load_trades(limit)

    async def session(self) -> SessionState:
        async with self._lock:
            return self._snapshot().session

    async def resume(self, note: str = "") -> bool:
        async with self._lock:
            with self._backend.transaction() as txn:
                state = txn.load()
                cleared = self._breaker(state).resume(note)
                if cleared:
                    txn.commit(state)
            return cleared

    async def summary(self) -> Dict[str, Any]:
        now = self._clock()
        async with self._lock:
            state = self._snapshot()
        s = state.session
        allowed, gate = self._breaker(state).can_open_position(len(state.positions), now)
        active_cooldowns = self._cooldowns(state)
        return {
            "open_positions": len(state.positions),
            "max_positions": self.breaker_limits.max_positions,
            "cumulative_pnl": round(s.cumulative_pnl, 4),
            "peak_pnl": round(s.peak_pnl, 4),
            "drawdown": round(s.drawdown, 4),
            "day_id": s.day_id,
            "day_realized_pnl": round(s.day_realized_pnl, 4),
            "halted": s.halted,
            "halt_reason": s.halt_reason,
            "trades": s.trades,
            "wins": s.wins,
            "losses": s.losses,
            "win_rate": round(s.wins / s.trades * 100.0, 1) if s.trades else 0.0,
            "can_open": allowed,
            "gate": gate,
            "cooldowns_active": sum(
                1 for token_id in state.cooldowns if active_cooldowns.is_on_cooldown(token_id, now)
            ),
        }

    def close(self) -> None:
        self._backend.close()
