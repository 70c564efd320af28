"""Session circuit breaker: sticky halt on drawdown from peak, plus entry gates."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Tuple

import config
from trading.models import SessionState

logger = logging.getLogger(__name__)

GATE_OK = ""
GATE_HALTED = "halted"
GATE_MAX_POSITIONS = "max_positions"
GATE_DAILY_LOSS = "daily_loss_limit"

HALT_DRAWDOWN = "drawdown"
HALT_SESSION_LOSS = "session_loss"


def day_id_for(now: datetime) -> str:
    return now.strftime("%Y-%m-%d")


@dataclass(frozen=True)
class BreakerLimits:
    """Zero disables the corresponding limit (except max_positions, which is at least 1)."""

    max_drawdown: float
    max_session_loss: float
    max_loss_per_day: float
    max_positions: int

    @classmethod
    def from_config(cls) -> "BreakerLimits":
        return cls(
            max_drawdown=config.MAX_DRAWDOWN,
            max_session_loss=config.MAX_SESSION_LOSS,
            max_loss_per_day=config.MAX_LOSS_PER_DAY,
            max_positions=config.MAX_POSITIONS,
        )


class SessionCircuitBreaker:
    """Operates in place on a `SessionState` owned by the state store."""

    def __init__(self, limits: BreakerLimits, session: SessionState) -> None:
        self.limits = limits
        self.session = session

    def _roll_day(self, now: datetime) -> None:
        today = day_id_for(now)
        if self.session.day_id != today:
            if self.session.day_id:
                logger.info(
                    "CIRCUIT_BREAKER day_rollover prev=%s day_pnl=%.2f",
                    self.session.day_id,
                    self.session.day_realized_pnl,
                )
            self.session.day_id = today
            self.session.day_realized_pnl = 0.0

    def on_realized_pnl(self, delta: float, now: datetime) -> Optional[str]:
        """Book a realized P&L delta. Returns the halt reason when this call trips the breaker."""
        s = self.session
        self._roll_day(now)
        s.cumulative_pnl += float(delta)
        s.day_realized_pnl += float(delta)
        s.peak_pnl = max(s.peak_pnl, s.cumulative_pnl)
        if s.halted:
            return None

        reason = ""
        drawdown = s.peak_pnl - s.cumulative_pnl
        if self.limits.max_drawdown > 0 and drawdown >= self.limits.max_drawdown:
            reason = (
                f"{HALT_DRAWDOWN}: {drawdown:.2f} from peak {s.peak_pnl:.2f} "
                f"reached limit {self.limits.max_drawdown:.2f}"
            )
        elif self.limits.max_session_loss > 0 and s.cumulative_pnl <= -self.limits.max_session_loss:
            reason = (
                f"{HALT_SESSION_LOSS}: cumulative {s.cumulative_pnl:.2f} "
                f"reached limit -{self.limits.max_session_loss:.2f}"
            )
        if not reason:
            return None
        s.halted = True
        s.halt_reason = reason
        s.halted_at = now
        logger.error("CIRCUIT_BREAKER halted reason=%s", reason)
        return reason

    def can_open_position(self, open_count: int, now: datetime) -> Tuple[bool, str]:
        s = self.session
        if s.halted:
            return False, GATE_HALTED
        if open_count >= self.limits.max_positions:
            return False, GATE_MAX_POSITIONS
        self._roll_day(now)
        if self.limits.max_loss_per_day > 0 and s.day_realized_pnl <= -self.limits.max_loss_per_day:
            return False, GATE_DAILY_LOSS
        return True, GATE_OK

    def resume(self, note: str = "") -> bool:
        """Clear a halt. Returns False when the session was not halted."""
        s = self.session
        if not s.halted:
            return False
        logger.warning("CIRCUIT_BREAKER resumed prev_reason=%s note=%s", s.halt_reason, note)
        s.halted = False
        s.halt_reason = ""
        s.halted_at = None
        # Peak is kept: if drawdown is still over the limit, the next realized fill halts again.
        return True
