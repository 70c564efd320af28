from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from trading.circuit_breaker import (
    GATE_DAILY_LOSS,
    GATE_HALTED,
    GATE_MAX_POSITIONS,
    GATE_OK,
    BreakerLimits,
    SessionCircuitBreaker,
)
from trading.models import SessionState

T0 = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


def _breaker(**limits: float) -> SessionCircuitBreaker:
    base = dict(max_drawdown=15.0, max_session_loss=0.0, max_loss_per_day=0.0, max_positions=1)
    base.update(limits)
    return SessionCircuitBreaker(BreakerLimits(**base), SessionState())


class CircuitBreakerTests(unittest.TestCase):
    def test_peak_is_monotonic_and_drawdown_halts(self) -> None:
        breaker = _breaker()
        self.assertIsNone(breaker.on_realized_pnl(10.0, T0))
        self.assertIsNone(breaker.on_realized_pnl(-5.0, T0))
        self.assertEqual(breaker.session.peak_pnl, 10.0)
        reason = breaker.on_realized_pnl(-10.0, T0)
        self.assertIsNotNone(reason)
        self.assertTrue(reason.startswith("drawdown"))
        self.assertTrue(breaker.session.halted)
        self.assertEqual(breaker.session.drawdown, 15.0)

    def test_halt_is_sticky_through_recovery(self) -> None:
        breaker = _breaker()
        breaker.on_realized_pnl(-15.0, T0)
        self.assertIsNone(breaker.on_realized_pnl(30.0, T0))
        self.assertTrue(breaker.session.halted)
        self.assertEqual(breaker.can_open_position(0, T0), (False, GATE_HALTED))

    def test_resume_keeps_peak(self) -> None:
        breaker = _breaker()
        breaker.on_realized_pnl(20.0, T0)
        breaker.on_realized_pnl(-16.0, T0)
        self.assertTrue(breaker.resume("checked"))
        self.assertFalse(breaker.session.halted)
        self.assertEqual(breaker.session.peak_pnl, 20.0)
        self.assertEqual(breaker.can_open_position(0, T0), (True, GATE_OK))
        self.assertIsNotNone(breaker.on_realized_pnl(-0.5, T0))
        self.assertFalse(_breaker().resume())

    def test_fixed_budget_variant(self) -> None:
        breaker = _breaker(max_drawdown=0.0, max_session_loss=8.0)
        self.assertIsNone(breaker.on_realized_pnl(-7.5, T0))
        reason = breaker.on_realized_pnl(-0.5, T0)
        self.assertTrue(reason.startswith("session_loss"))

    def test_slot_gate(self) -> None:
        breaker = _breaker(max_positions=2)
        self.assertEqual(breaker.can_open_position(1, T0), (True, GATE_OK))
        self.assertEqual(breaker.can_open_position(2, T0), (False, GATE_MAX_POSITIONS))

    def test_daily_loss_gate_rolls_at_utc_midnight(self) -> None:
        breaker = _breaker(max_drawdown=0.0, max_loss_per_day=5.0)
        breaker.on_realized_pnl(-5.0, T0)
        self.assertFalse(breaker.session.halted)
        self.assertEqual(breaker.can_open_position(0, T0 + timedelta(hours=1)), (False, GATE_DAILY_LOSS))
        next_day = datetime(2026, 10, 2, 0, 0, 1, tzinfo=timezone.utc)
        self.assertEqual(breaker.can_open_position(0, next_day), (True, GATE_OK))
        self.assertEqual(breaker.session.day_realized_pnl, 0.0)
        self.assertEqual(breaker.session.cumulative_pnl, -5.0)


if __name__ == "__main__":
    unittest.main()
