from __future__ import annotations

import asyncio
import multiprocessing
import os
import tempfile
import time
import unittest
from datetime import datetime, timedelta, timezone

from trading.auto_trader_state import StoreState, state_from_payload
from trading.circuit_breaker import GATE_HALTED, GATE_MAX_POSITIONS, BreakerLimits
from trading.cooldown import CooldownPolicy
from trading.models import EXIT_STOP_LOSS, EXIT_TAKE_PROFIT, EXIT_TRAILING_STOP, ClosedTrade, Position, SessionState
from trading.state_store import (
    DuplicatePositionError,
    InvalidPositionError,
    JsonFileBackend,
    MemoryBackend,
    PositionNotFoundError,
    StateBackend,
    StateStore,
    StateStoreError,
)

T0 = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)
POLICY = CooldownPolicy(loss_duration=timedelta(minutes=10), profit_duration=timedelta(minutes=30))
LIMITS = BreakerLimits(max_drawdown=15.0, max_session_loss=0.0, max_loss_per_day=0.0, max_positions=1)


def _store(backend: StateBackend, limits: BreakerLimits = LIMITS) -> StateStore:
    return StateStore(backend, cooldown_policy=POLICY, breaker_limits=limits, clock=lambda: T0)


def _resume_worker(state_path: str, history_path: str, ready: multiprocessing.Event) -> None:
    store = StateStore(JsonFileBackend(state_path, history_path, lock_timeout_seconds=5.0, lock_poll_seconds=0.01))
    ready.set()
    cleared = asyncio.run(store.resume("operator"))
    raise SystemExit(0 if cleared else 3)


def _position(token_id: str = "MintAAA", entry_price: float = 1.0, size: float = 5.0) -> Position:
    return Position(
        token_id=token_id,
        symbol=token_id[-3:],
        entry_price=entry_price,
        entry_time=T0,
        size=size,
        initial_size=size,
        tags=["PUMP_FUN"],
    )


async def _run_ladder(store: StateStore) -> None:
    await store.add_position(_position())
    await store.apply_partial_exit(
        "MintAAA",
        sell_percent=50.0,
        exit_price=1.25,
        reason=EXIT_TAKE_PROFIT,
        rung=20.0,
        now=T0 + timedelta(seconds=2),
    )
    await store.update_position_price("MintAAA", 1.30)
    await store.close_position("MintAAA", exit_price=1.14, reason=EXIT_TRAILING_STOP, now=T0 + timedelta(seconds=6))


class StateStoreInvariantTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.backend = MemoryBackend()
        self.store = _store(self.backend)

    async def test_duplicate_position_is_rejected_without_commit(self) -> None:
        await self.store.add_position(_position())
        commits = self.backend.commits
        with self.assertRaises(DuplicatePositionError):
            await self.store.add_position(_position())
        self.assertEqual(self.backend.commits, commits)
        self.assertEqual(len(await self.store.get_positions()), 1)

    async def test_invalid_entry_price_and_size(self) -> None:
        with self.assertRaises(InvalidPositionError):
            await self.store.add_position(_position(entry_price=0.0))
        with self.assertRaises(InvalidPositionError):
            await self.store.add_position(_position(size=0.0))
        self.assertEqual(await self.store.get_positions(), [])

    async def test_unknown_position_operations(self) -> None:
        with self.assertRaises(PositionNotFoundError):
            await self.store.close_position("nope", exit_price=1.0, reason=EXIT_STOP_LOSS)
        with self.assertRaises(PositionNotFoundError):
            await self.store.update_position_price("nope", 1.0)
        self.assertEqual(self.backend.commits, 0)

    async def test_price_update_tracks_running_high(self) -> None:
        await self.store.add_position(_position())
        await self.store.update_position_price("MintAAA", 1.4)
        pos = await self.store.update_position_price("MintAAA", 1.2)
        self.assertEqual(pos.highest_price, 1.4)
        self.assertEqual(pos.last_price, 1.2)
        self.assertAlmostEqual(pos.pnl_percent, 20.0)

    async def test_returned_positions_are_copies(self) -> None:
        await self.store.add_position(_position())
        pos = await self.store.get_position("MintAAA")
        pos.size = 999.0
        self.assertEqual((await self.store.get_position("MintAAA")).size, 5.0)

    async def test_partial_exit_books_pnl_without_cooldown(self) -> None:
        await self.store.add_position(_position())
        record = await self.store.apply_partial_exit(
            "MintAAA", sell_percent=50.0, exit_price=1.25, reason=EXIT_TAKE_PROFIT, rung=20.0, now=T0
        )
        self.assertTrue(record.trade.partial)
        self.assertAlmostEqual(record.trade.notional_sold, 2.5)
        self.assertAlmostEqual(record.trade.pnl, 0.625)
        self.assertAlmostEqual(record.position.size, 2.5)
        self.assertEqual(record.position.take_profit_hits, [20.0])
        self.assertFalse(await self.store.is_on_cooldown("MintAAA", T0))
        self.assertAlmostEqual((await self.store.session()).cumulative_pnl, 0.625)

        with self.assertRaises(StateStoreError):
            await self.store.apply_partial_exit(
                "MintAAA", sell_percent=50.0, exit_price=1.3, reason=EXIT_TAKE_PROFIT, rung=20.0, now=T0
            )
        with self.assertRaises(InvalidPositionError):
            await self.store.apply_partial_exit("MintAAA", sell_percent=100.0, exit_price=1.3, reason=EXIT_TAKE_PROFIT)

    async def test_ladder_scenario_books_two_trades_and_profit_cooldown(self) -> None:
        await _run_ladder(self.store)
        trades = await self.store.trade_history()
        self.assertEqual([t.partial for t in trades], [True, False])
        self.assertEqual(trades[1].exit_reason, EXIT_TRAILING_STOP)
        self.assertAlmostEqual(trades[1].pnl, 2.5 * 0.14)
        self.assertEqual(await self.store.get_positions(), [])

        session = await self.store.session()
        self.assertEqual((session.trades, session.wins, session.losses), (1, 1, 0))
        self.assertAlmostEqual(session.cumulative_pnl, 0.625 + 0.35)

        self.assertTrue(await self.store.is_on_cooldown("MintAAA", T0 + timedelta(minutes=29)))
        self.assertFalse(await self.store.is_on_cooldown("MintAAA", T0 + timedelta(minutes=31)))

    async def test_loss_close_uses_short_cooldown(self) -> None:
        await self.store.add_position(_position())
        await self.store.close_position("MintAAA", exit_price=0.85, reason=EXIT_STOP_LOSS, now=T0)
        self.assertTrue(await self.store.is_on_cooldown("MintAAA", T0 + timedelta(minutes=9)))
        self.assertFalse(await self.store.is_on_cooldown("MintAAA", T0 + timedelta(minutes=10)))
        self.assertEqual((await self.store.session()).losses, 1)

    async def test_slot_gate_and_breaker_halt(self) -> None:
        await self.store.add_position(_position(size=100.0))
        self.assertEqual(await self.store.can_open_position(T0), (False, GATE_MAX_POSITIONS))
        record = await self.store.close_position("MintAAA", exit_price=0.8, reason=EXIT_STOP_LOSS, now=T0)
        self.assertTrue(record.halt_reason.startswith("drawdown"))
        self.assertEqual(await self.store.can_open_position(T0), (False, GATE_HALTED))
        summary = await self.store.summary()
        self.assertTrue(summary["halted"])
        self.assertEqual(summary["gate"], GATE_HALTED)

        self.assertTrue(await self.store.resume("operator checked"))
        self.assertEqual((await self.store.can_open_position(T0))[0], True)
        self.assertFalse(await self.store.resume())

    async def test_cooldown_remaining_counts_down_from_exit(self) -> None:
        await self.store.add_position(_position())
        await self.store.close_position("MintAAA", exit_price=0.85, reason=EXIT_STOP_LOSS, now=T0)
        self.assertEqual(await self.store.cooldown_remaining("MintAAA", T0 + timedelta(minutes=4)), timedelta(minutes=6))
        self.assertEqual(await self.store.cooldown_remaining("MintAAA", T0 + timedelta(minutes=11)), timedelta(0))
        self.assertEqual(await self.store.cooldown_remaining("MintZZZ", T0), timedelta(0))

    async def test_append_trade_records_history_without_touching_session(self) -> None:
        await self.store.add_position(_position())
        trade = ClosedTrade(
            token_id="MintZZZ",
            symbol="ZZZ",
            entry_price=1.0,
            entry_time=T0,
            initial_size=1.0,
            exit_price=1.1,
            exit_reason="manual",
            exit_time=T0 + timedelta(seconds=30),
            sell_percent=100.0,
            notional_sold=1.0,
            pnl=0.1,
            pnl_percent=10.0,
            hold_seconds=30.0,
            tx_id="manual-1",
        )
        await self.store.append_trade(trade)
        self.assertEqual(await self.store.trade_history(), [trade])
        session = await self.store.session()
        self.assertEqual((session.trades, session.cumulative_pnl), (0, 0.0))
        self.assertEqual([p.token_id for p in await self.store.get_positions()], ["MintAAA"])
        self.assertFalse(await self.store.is_on_cooldown("MintZZZ", T0))

    async def test_concurrent_operations_lose_no_update(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            backend = JsonFileBackend(os.path.join(tmp_dir, "state.json"), os.path.join(tmp_dir, "trades.jsonl"))
            store = _store(backend, BreakerLimits(100.0, 0.0, 0.0, 5))
            await store.add_position(_position("MintAAA"))
            await store.add_position(_position("MintBBB", entry_price=2.0))

            await asyncio.gather(
                store.update_position_price("MintAAA", 1.3),
                store.close_position("MintBBB", exit_price=1.8, reason=EXIT_STOP_LOSS, now=T0),
                store.add_position(_position("MintCCC")),
                store.apply_partial_exit(
                    "MintAAA", sell_percent=50.0, exit_price=1.25, reason=EXIT_TAKE_PROFIT, rung=20.0, now=T0
                ),
                store.update_position_price("MintCCC", 1.1),
            )

            state = backend.load()
            self.assertEqual(sorted(state.positions), ["MintAAA", "MintCCC"])
            pos = state.positions["MintAAA"]
            self.assertEqual(pos.highest_price, 1.3)
            self.assertEqual(pos.take_profit_hits, [20.0])
            self.assertAlmostEqual(pos.size, 2.5)
            self.assertEqual(state.positions["MintCCC"].last_price, 1.1)
            self.assertEqual((state.session.trades, state.session.losses), (1, 1))
            self.assertAlmostEqual(state.session.cumulative_pnl, -0.5 + 0.625)
            self.assertIn("MintBBB", state.cooldowns)
            self.assertEqual(len(backend.load_trades()), 2)


class StateStorePersistenceTests(unittest.IsolatedAsyncioTestCase):
    async def test_json_backend_recovers_positions_session_and_cooldowns(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            state_path = os.path.join(tmp_dir, "state.json")
            history_path = os.path.join(tmp_dir, "trade-history.jsonl")
            store = _store(JsonFileBackend(state_path, history_path), BreakerLimits(100.0, 0.0, 0.0, 2))
            await _run_ladder(store)
            await store.add_position(_position("MintBBB", entry_price=2.0))
            await store.update_position_price("MintBBB", 2.5)
            await store.apply_partial_exit(
                "MintBBB", sell_percent=50.0, exit_price=2.5, reason=EXIT_TAKE_PROFIT, rung=20.0, now=T0
            )
            store.close()

            restarted = _store(JsonFileBackend(state_path, history_path), BreakerLimits(100.0, 0.0, 0.0, 2))
            trades = await restarted.trade_history()
            self.assertEqual([t.partial for t in trades], [True, False, True])
            pos = await restarted.get_position("MintBBB")
            self.assertEqual(pos.take_profit_hits, [20.0])
            self.assertEqual(pos.highest_price, 2.5)
            self.assertAlmostEqual(pos.size, 2.5)
            self.assertEqual(pos.entry_time, T0)
            session = await restarted.session()
            self.assertEqual(session.trades, 1)
            self.assertTrue(await restarted.is_on_cooldown("MintAAA", T0 + timedelta(minutes=20)))

    async def test_sql_backend_survives_restart(self) -> None:
        from database.db import SqlBackend

        with tempfile.TemporaryDirectory() as tmp_dir:
            url = f"sqlite:///{os.path.join(tmp_dir, 'scalper.db')}"
            limits = BreakerLimits(100.0, 0.0, 0.0, 2)
            store = _store(SqlBackend(url), limits)
            await _run_ladder(store)
            await store.add_position(_position("MintBBB", entry_price=2.0))
            await store.apply_partial_exit(
                "MintBBB", sell_percent=50.0, exit_price=2.5, reason=EXIT_TAKE_PROFIT, rung=20.0, now=T0
            )
            store.close()

            restarted = _store(SqlBackend(url), limits)
            try:
                trades = await restarted.trade_history()
                self.assertEqual([t.partial for t in trades], [True, False, True])
                self.assertEqual(trades[0].entry_time, T0)
                self.assertEqual(trades[1].tags, ("PUMP_FUN",))
                self.assertEqual(len(await restarted.trade_history(limit=1)), 1)
                pos = await restarted.get_position("MintBBB")
                self.assertEqual(pos.take_profit_hits, [20.0])
                self.assertEqual(pos.entry_time, T0)
                session = await restarted.session()
                self.assertEqual(session.trades, 1)
                self.assertAlmostEqual(session.cumulative_pnl, 0.625 + 0.35 + 0.625)
                self.assertTrue(await restarted.is_on_cooldown("MintAAA", T0 + timedelta(minutes=20)))
            finally:
                restarted.close()


class StateBackendLockingTests(unittest.TestCase):
    def test_json_transaction_blocks_other_process_until_commit(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            state_path = os.path.join(tmp_dir, "state.json")
            history_path = os.path.join(tmp_dir, "trade-history.jsonl")
            backend = JsonFileBackend(state_path, history_path, lock_poll_seconds=0.01)
            backend.commit(StoreState(session=SessionState(halted=True, halt_reason="drawdown: 15.00 >= 15.00")))

            ctx = multiprocessing.get_context("spawn")
            ready = ctx.Event()
            proc = ctx.Process(target=_resume_worker, args=(state_path, history_path, ready))
            try:
                with backend.transaction() as txn:
                    state = txn.load()
                    proc.start()
                    self.assertTrue(ready.wait(10.0), "worker did not start in time")
                    time.sleep(0.3)
                    self.assertTrue(proc.is_alive(), "resume committed while the transaction was open")
                    state.positions["MintAAA"] = _position()
                    txn.commit(state)
                proc.join(10.0)
            finally:
                if proc.is_alive():
                    proc.terminate()
                    proc.join(1.0)
            self.assertEqual(proc.exitcode, 0)

            final = backend.load()
            self.assertFalse(final.session.halted)
            self.assertIn("MintAAA", final.positions)

    def test_sql_transaction_holds_write_lock(self) -> None:
        from sqlalchemy.exc import OperationalError

        from database.db import SqlBackend

        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "scalper.db")
            holder = SqlBackend(f"sqlite:///{path}")
            other = SqlBackend(f"sqlite:///{path}?timeout=0.1")
            try:
                with holder.transaction() as txn:
                    state = txn.load()
                    with self.assertRaises(OperationalError):
                        with other.transaction() as blocked:
                            blocked.load()
                    state.session.trades = 7
                    txn.commit(state)
                self.assertEqual(other.load().session.trades, 7)
            finally:
                holder.close()
                other.close()

    def test_cooldown_row_without_timestamp_is_dropped(self) -> None:
        payload = {
            "positions": [],
            "session": {},
            "cooldowns": {
                "MintAAA": {"exited_at": None, "was_profitable": True},
                "MintBBB": {"exited_at": T0.isoformat(), "was_profitable": False},
            },
        }
        with self.assertLogs("trading.auto_trader_state", level="WARNING"):
            state = state_from_payload(payload)
        self.assertEqual(list(state.cooldowns), ["MintBBB"])
        self.assertEqual(state.cooldowns["MintBBB"].exited_at, T0)


if __name__ == "__main__":
    unittest.main()
