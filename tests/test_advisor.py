from __future__ import annotations

import unittest

from trading.advisor import (
    ACTION_BUY,
    ACTION_HOLD,
    ACTION_SELL,
    ACTION_SKIP,
    AdvisorDecision,
    CommandAdvisor,
    NullAdvisor,
    build_advisor,
    build_prompt,
    entry_size,
    parse_advisor_response,
)


class ParseAdvisorResponseTests(unittest.TestCase):
    def test_fenced_json_block_wins(self) -> None:
        text = (
            "Volume looks organic.\n"
            "```json\n"
            '{"action": "buy", "confidence": 82, "size": 3.5, "reasoning": "fresh launch"}\n'
            "```\n"
            "Trailing note {not json}"
        )
        decision = parse_advisor_response(text)
        self.assertEqual(decision.action, ACTION_BUY)
        self.assertEqual(decision.confidence, 82.0)
        self.assertEqual(decision.size, 3.5)
        self.assertEqual(decision.reasoning, "fresh launch")

    def test_raw_object_and_aliases(self) -> None:
        decision = parse_advisor_response('Sure: {"action": "SELL", "confidence": 140, "sellPercent": 60}')
        self.assertEqual(decision.action, ACTION_SELL)
        self.assertEqual(decision.confidence, 100.0)
        self.assertEqual(decision.sell_percent, 60.0)

    def test_garbage_is_skip(self) -> None:
        self.assertEqual(parse_advisor_response("no idea").action, ACTION_SKIP)
        self.assertEqual(parse_advisor_response("{broken").action, ACTION_SKIP)
        self.assertEqual(parse_advisor_response('{"action": "MOON"}').action, ACTION_SKIP)
        self.assertEqual(parse_advisor_response("[1, 2]").action, ACTION_SKIP)


class EntrySizeTests(unittest.TestCase):
    def _size(self, decision: AdvisorDecision | None) -> float | None:
        return entry_size(decision, default_size=5.0, max_size=8.0, min_confidence=70.0)

    def test_no_advisor_keeps_fixed_size(self) -> None:
        self.assertEqual(self._size(None), 5.0)

    def test_skip_vetoes(self) -> None:
        self.assertIsNone(self._size(AdvisorDecision(action=ACTION_SKIP, confidence=99)))

    def test_confident_buy_sets_size_up_to_cap(self) -> None:
        self.assertEqual(self._size(AdvisorDecision(action=ACTION_BUY, confidence=75, size=6.0)), 6.0)
        self.assertEqual(self._size(AdvisorDecision(action=ACTION_BUY, confidence=75, size=60.0)), 8.0)

    def test_weak_or_sizeless_buy_uses_default(self) -> None:
        self.assertEqual(self._size(AdvisorDecision(action=ACTION_BUY, confidence=50, size=6.0)), 5.0)
        self.assertEqual(self._size(AdvisorDecision(action=ACTION_BUY, confidence=90)), 5.0)
        self.assertEqual(self._size(AdvisorDecision(action=ACTION_HOLD, confidence=90, size=6.0)), 5.0)


class CommandAdvisorTests(unittest.IsolatedAsyncioTestCase):
    async def test_entry_reads_stdout_decision(self) -> None:
        advisor = CommandAdvisor(
            "cat >/dev/null; echo '{\"action\": \"BUY\", \"confidence\": 90, \"size\": 2}'",
            timeout_seconds=10,
            strategy_file="/nonexistent/strategy.md",
        )
        decision = await advisor.advise_entry({"token": "CAT"})
        self.assertEqual((decision.action, decision.size), (ACTION_BUY, 2.0))

    async def test_timeout_vetoes_entry_and_holds_exit(self) -> None:
        advisor = CommandAdvisor("sleep 5", timeout_seconds=0.2, strategy_file="/nonexistent/strategy.md")
        with self.assertLogs("trading.advisor", level="WARNING"):
            self.assertEqual((await advisor.advise_entry({})).action, ACTION_SKIP)
        with self.assertLogs("trading.advisor", level="WARNING"):
            self.assertEqual((await advisor.advise_exit({})).action, ACTION_HOLD)

    async def test_failing_command_is_skip(self) -> None:
        advisor = CommandAdvisor("cat >/dev/null; exit 3", timeout_seconds=10, strategy_file="/nonexistent")
        with self.assertLogs("trading.advisor", level="WARNING") as logs:
            decision = await advisor.advise_entry({})
        self.assertEqual(decision.action, ACTION_SKIP)
        self.assertIn("rc=3", logs.output[0])

    async def test_null_advisor_and_builder(self) -> None:
        self.assertIsInstance(build_advisor(""), NullAdvisor)
        self.assertIsInstance(build_advisor("true"), CommandAdvisor)
        null = NullAdvisor()
        self.assertFalse(null.enabled)
        self.assertEqual((await null.advise_exit({})).action, ACTION_HOLD)

    def test_prompt_carries_strategy_and_context(self) -> None:
        prompt = build_prompt("exit", {"pnl_percent": 12.5}, "Cut losers fast.")
        self.assertIn("Cut losers fast.", prompt)
        self.assertIn('"pnl_percent": 12.5', prompt)
        self.assertIn("sell_percent", prompt)


if __name__ == "__main__":
    unittest.main()
