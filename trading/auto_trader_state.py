"""Persisted state layout and its JSON codec, shared by every storage backend."""

from __future__ import annotations

import copy
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict

from trading.models import ClosedTrade, CooldownEntry, Position, SessionState, parse_ts

logger = logging.getLogger(__name__)

STATE_SCHEMA_VERSION = 1


@dataclass
class StoreState:
    """Everything that must survive a restart, apart from the append-only trade history."""

    positions: Dict[str, Position] = field(default_factory=dict)
    session: SessionState = field(default_factory=SessionState)
    cooldowns: Dict[str, CooldownEntry] = field(default_factory=dict)

    def clone(self) -> "StoreState":
        return copy.deepcopy(self)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _float(row: Dict[str, Any], key: str, default: float = 0.0) -> float:
    value = row.get(key, default)
    return float(value if value is not None else default)


def serialize_position(pos: Position) -> Dict[str, Any]:
    return {
        "token_id": pos.token_id,
        "symbol": pos.symbol,
        "entry_price": pos.entry_price,
        "entry_time": _iso(pos.entry_time),
        "size": pos.size,
        "initial_size": pos.initial_size,
        "highest_price": pos.highest_price,
        "last_price": pos.last_price,
        "take_profit_hits": list(pos.take_profit_hits),
        "pnl_percent": pos.pnl_percent,
        "realized_pnl": pos.realized_pnl,
        "tags": list(pos.tags),
    }


def deserialize_position(row: Dict[str, Any]) -> Position:
    entry_time = parse_ts(row["entry_time"])
    if entry_time is None:
        raise ValueError("position row has no entry_time")
    return Position(
        token_id=str(row["token_id"]),
        symbol=str(row.get("symbol") or ""),
        entry_price=float(row["entry_price"]),
        entry_time=entry_time,
        size=_float(row, "size"),
        initial_size=_float(row, "initial_size", _float(row, "size")),
        highest_price=_float(row, "highest_price"),
        last_price=_float(row, "last_price"),
        take_profit_hits=[float(x) for x in row.get("take_profit_hits") or []],
        pnl_percent=_float(row, "pnl_percent"),
        realized_pnl=_float(row, "realized_pnl"),
        tags=[str(t) for t in row.get("tags") or []],
    )


def serialize_trade(trade: ClosedTrade) -> Dict[str, Any]:
    row = asdict(trade)
    row["entry_time"] = _iso(trade.entry_time)
    row["exit_time"] = _iso(trade.exit_time)
    row["tags"] = list(trade.tags)
    return row


def deserialize_trade(row: Dict[str, Any]) -> ClosedTrade:
    return ClosedTrade(
        token_id=str(row["token_id"]),
        symbol=str(row.get("symbol") or ""),
        entry_price=float(row["entry_price"]),
        entry_time=parse_ts(row["entry_time"]),
        initial_size=_float(row, "initial_size"),
        exit_price=float(row["exit_price"]),
        exit_reason=str(row["exit_reason"]),
        exit_time=parse_ts(row["exit_time"]),
        sell_percent=_float(row, "sell_percent", 100.0),
        notional_sold=_float(row, "notional_sold"),
        pnl=_float(row, "pnl"),
        pnl_percent=_float(row, "pnl_percent"),
        hold_seconds=_float(row, "hold_seconds"),
        partial=bool(row.get("partial", False)),
        tags=tuple(str(t) for t in row.get("tags") or []),
        tx_id=str(row.get("tx_id") or ""),
    )


def serialize_session(session: SessionState) -> Dict[str, Any]:
    row = asdict(session)
    row["halted_at"] = _iso(session.halted_at)
    row["started_at"] = _iso(session.started_at)
    return row


def deserialize_session(row: Dict[str, Any]) -> SessionState:
    return SessionState(
        cumulative_pnl=_float(row, "cumulative_pnl"),
        peak_pnl=_float(row, "peak_pnl"),
        halted=bool(row.get("halted", False)),
        halt_reason=str(row.get("halt_reason") or ""),
        halted_at=parse_ts(row.get("halted_at")),
        day_id=str(row.get("day_id") or ""),
        day_realized_pnl=_float(row, "day_realized_pnl"),
        trades=int(row.get("trades", 0) or 0),
        wins=int(row.get("wins", 0) or 0),
        losses=int(row.get("losses", 0) or 0),
        started_at=parse_ts(row.get("started_at")),
    )


def state_to_payload(state: StoreState) -> Dict[str, Any]:
    return {
        "schema_version": STATE_SCHEMA_VERSION,
        "positions": [serialize_position(p) for p in state.positions.values()],
        "session": serialize_session(state.session),
        "cooldowns": {
            token_id: {"exited_at": _iso(entry.exited_at), "was_profitable": entry.was_profitable}
            for token_id, entry in state.cooldowns.items()
        },
    }


def state_from_payload(payload: Dict[str, Any] | None) -> StoreState:
    """Decode a state document. Malformed position or cooldown rows are dropped with a warning."""
    state = StoreState()
    if not payload:
        return state
    version = int(payload.get("schema_version", STATE_SCHEMA_VERSION) or STATE_SCHEMA_VERSION)
    if version > STATE_SCHEMA_VERSION:
        raise ValueError(f"state schema_version={version} is newer than supported {STATE_SCHEMA_VERSION}")

    for row in payload.get("positions") or []:
        try:
            pos = deserialize_position(row)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("STATE_LOAD skip_position row=%s err=%s", row, exc)
            continue
        state.positions[pos.token_id] = pos

    state.session = deserialize_session(payload.get("session") or {})

    for token_id, row in (payload.get("cooldowns") or {}).items():
        try:
            exited_at = parse_ts(row["exited_at"])
            if exited_at is None:
                raise ValueError("cooldown row has no exited_at")
            state.cooldowns[str(token_id)] = CooldownEntry(
                exited_at=exited_at,
                was_profitable=bool(row.get("was_profitable", False)),
            )
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("STATE_LOAD skip_cooldown token=%s err=%s", token_id, exc)
    return state
