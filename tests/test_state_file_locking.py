from __future__ import annotations

import json
import multiprocessing
import os
import tempfile
import unittest

from utils.state_file import (
    StateFileCorruptError,
    StateFileLockError,
    append_jsonl,
    atomic_write_json,
    read_json,
    read_jsonl,
    state_file_lock,
)


def _hold_lock_worker(path: str, ready: multiprocessing.Event, release: multiprocessing.Event) -> None:
    with state_file_lock(path, timeout_seconds=2.0, poll_seconds=0.01):
        ready.set()
        release.wait(2.0)


class StateFileLockingTests(unittest.TestCase):
    def test_atomic_locked_write_roundtrip(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            state_path = os.path.join(tmp_dir, "state.json")
            payload = {
                "positions": [{"token_id": "MintAAA", "symbol": "\u732b", "size": 2.5, "take_profit_hits": [20.0]}],
                "session": {"cumulative_pnl": 0.625, "peak_pnl": 0.625, "halted": False},
                "cooldowns": [],
            }
            with state_file_lock(state_path, timeout_seconds=0.5, poll_seconds=0.01):
                atomic_write_json(state_path, payload)
            with open(state_path, "r", encoding="utf-8") as f:
                loaded = json.load(f)
            self.assertEqual(loaded, payload)
            self.assertEqual(read_json(state_path), payload)
            self.assertFalse([name for name in os.listdir(tmp_dir) if name.endswith(".tmp")])

    def test_missing_and_corrupt_documents(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            state_path = os.path.join(tmp_dir, "state.json")
            self.assertEqual(read_json(state_path, default={}), {})
            with open(state_path, "w", encoding="utf-8") as f:
                f.write("{\"positions\": [")
            with self.assertRaises(StateFileCorruptError):
                read_json(state_path)

    def test_jsonl_skips_torn_trailing_line(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "history", "trades.jsonl")
            append_jsonl(path, {"token_id": "MintAAA", "pnl": 0.625, "partial": True})
            append_jsonl(path, {"token_id": "MintAAA", "pnl": 0.35, "partial": False})
            with open(path, "a", encoding="utf-8") as f:
                f.write("{\"token_id\": \"Mint")
            rows = read_jsonl(path)
        self.assertEqual([row["partial"] for row in rows], [True, False])
        self.assertEqual(read_jsonl(os.path.join(tmp_dir, "absent.jsonl")), [])

    def test_state_lock_is_exclusive(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            state_path = os.path.join(tmp_dir, "state.json")
            ctx = multiprocessing.get_context("spawn")
            ready = ctx.Event()
            release = ctx.Event()
            proc = ctx.Process(target=_hold_lock_worker, args=(state_path, ready, release))
            proc.start()
            try:
                self.assertTrue(ready.wait(2.0), "worker did not acquire state lock in time")
                with self.assertRaises(StateFileLockError):
                    with state_file_lock(state_path, timeout_seconds=0.08, poll_seconds=0.01):
                        pass
            finally:
                release.set()
                proc.join(2.0)
                if proc.is_alive():
                    proc.terminate()
                    proc.join(1.0)
            self.assertEqual(proc.exitcode, 0)
