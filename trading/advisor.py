"""Optional discretionary advisor consulted after mechanical rules have had their say."""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import config

logger = logging.getLogger(__name__)

ACTION_BUY = "BUY"
ACTION_SELL = "SELL"
ACTION_HOLD = "HOLD"
ACTION_SKIP = "SKIP"
ACTIONS = (ACTION_BUY, ACTION_SELL, ACTION_HOLD, ACTION_SKIP)

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*\n?(.*?)\n?```", re.DOTALL | re.IGNORECASE)


@dataclass(frozen=True)
class AdvisorDecision:
    action: str = ACTION_SKIP
    confidence: float = 0.0
    size: Optional[float] = None
    sell_percent: Optional[float] = None
    reasoning: str = ""


def _opt_positive(value: Any) -> Optional[float]:
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    return out if out > 0 else None


def decision_from_dict(raw: Any) -> AdvisorDecision:
    if not isinstance(raw, dict):
        return AdvisorDecision(reasoning="advisor response is not an object")
    action = str(raw.get("action") or "").strip().upper()
    if action not in ACTIONS:
        return AdvisorDecision(reasoning=f"unknown advisor action: {action or 'empty'}")
    try:
        confidence = max(0.0, min(100.0, float(raw.get("confidence", 0) or 0)))
    except (TypeError, ValueError):
        confidence = 0.0
    sell_percent = _opt_positive(raw.get("sell_percent", raw.get("sellPercent")))
    if sell_percent is not None:
        sell_percent = min(100.0, sell_percent)
    return AdvisorDecision(
        action=action,
        confidence=confidence,
        size=_opt_positive(raw.get("size", raw.get("amount"))),
        sell_percent=sell_percent,
        reasoning=str(raw.get("reasoning") or raw.get("reason") or ""),
    )


def parse_advisor_response(text: str) -> AdvisorDecision:
    """Fenced ```json block first, then the outermost {...}; anything unparsable is a SKIP."""
    body = str(text or "")
    match = _FENCED_JSON_RE.search(body)
    candidate = match.group(1) if match else None
    if candidate is None:
        start, end = body.find("{"), body.rfind("}")
        if start == -1 or end <= start:
            return AdvisorDecision(reasoning="no JSON object in advisor response")
        candidate = body[start : end + 1]
    try:
        return decision_from_dict(json.loads(candidate))
    except json.JSONDecodeError as exc:
        return AdvisorDecision(reasoning=f"advisor parse error: {exc}")


def entry_size(decision: Optional[AdvisorDecision], *, default_size: float = None, max_size: float = None,
               min_confidence: float = None) -> Optional[float]:
    """Notional to buy, or None when the advisor vetoes the entry.

    No advisor (or a low-confidence / sizeless BUY, or HOLD) keeps the fixed size.
    """
    default_size = config.POSITION_SIZE if default_size is None else default_size
    max_size = config.MAX_POSITION_SIZE if max_size is None else max_size
    min_confidence = config.ADVISOR_MIN_CONFIDENCE if min_confidence is None else min_confidence
    if decision is None:
        return default_size
    if decision.action == ACTION_SKIP:
        return None
    if decision.action == ACTION_BUY and decision.confidence >= min_confidence and decision.size:
        return min(decision.size, max_size)
    return default_size


class Advisor:
    """Polymorphic advisor. `enabled=False` means the caller can skip the round trip."""

    name = "base"
    enabled = True

    async def advise_entry(self, context: dict[str, Any]) -> AdvisorDecision:
        raise NotImplementedError

    async def advise_exit(self, context: dict[str, Any]) -> AdvisorDecision:
        raise NotImplementedError


class NullAdvisor(Advisor):
    name = "none"
    enabled = False

    async def advise_entry(self, context: dict[str, Any]) -> AdvisorDecision:
        return AdvisorDecision(action=ACTION_HOLD, reasoning="no advisor configured")

    async def advise_exit(self, context: dict[str, Any]) -> AdvisorDecision:
        return AdvisorDecision(action=ACTION_HOLD, reasoning="no advisor configured")


def _load_strategy(path: str) -> str:
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError:
        return "Use a conservative approach. Focus on risk management."


def build_prompt(kind: str, context: dict[str, Any], strategy: str) -> str:
    if kind == "entry":
        ask = (
            'Decide whether to enter. Reply with JSON: {"action": "BUY"|"SKIP", '
            '"confidence": 0-100, "size": <quote amount>, "reasoning": "..."}'
        )
    else:
        ask = (
            'Decide whether to exit early. Reply with JSON: {"action": "SELL"|"HOLD", '
            '"confidence": 0-100, "sell_percent": 1-100, "reasoning": "..."}'
        )
    return "\n\n".join(
        [
            "# Strategy",
            strategy.strip(),
            f"# {kind.capitalize()} context",
            json.dumps(context, indent=2, sort_keys=True, default=str),
            "# Task",
            ask,
        ]
    )


class CommandAdvisor(Advisor):
    """Pipes a prompt into an external command and parses its stdout."""

    name = "command"

    def __init__(self, command: str, *, timeout_seconds: float = None, strategy_file: str = None) -> None:
        if not command:
            raise ValueError("CommandAdvisor needs a command")
        self.command = command
        self.timeout_seconds = config.ADVISOR_TIMEOUT_SECONDS if timeout_seconds is None else timeout_seconds
        self.strategy_file = strategy_file or config.ADVISOR_STRATEGY_FILE

    async def _ask(self, kind: str, context: dict[str, Any]) -> AdvisorDecision:
        prompt = build_prompt(kind, context, _load_strategy(self.strategy_file))
        proc = await asyncio.create_subprocess_shell(
            self.command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(prompt.encode("utf-8")), self.timeout_seconds)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning("ADVISOR_TIMEOUT kind=%s timeout=%.0fs", kind, self.timeout_seconds)
            return AdvisorDecision(reasoning="advisor timed out")
        if proc.returncode != 0:
            logger.warning(
                "ADVISOR_FAIL kind=%s rc=%s err=%s", kind, proc.returncode, stderr.decode("utf-8", "replace")[:200]
            )
            return AdvisorDecision(reasoning=f"advisor exited with {proc.returncode}")
        decision = parse_advisor_response(stdout.decode("utf-8", "replace"))
        logger.info(
            "ADVISOR kind=%s action=%s confidence=%.0f reason=%s",
            kind,
            decision.action,
            decision.confidence,
            decision.reasoning[:120],
        )
        return decision

    async def advise_entry(self, context: dict[str, Any]) -> AdvisorDecision:
        return await self._ask("entry", context)

    async def advise_exit(self, context: dict[str, Any]) -> AdvisorDecision:
        decision = await self._ask("exit", context)
        # An unreachable advisor must never force a sell.
        if decision.action == ACTION_SKIP:
            return AdvisorDecision(action=ACTION_HOLD, reasoning=decision.reasoning)
        return decision


def build_advisor(command: str = None) -> Advisor:
    command = config.ADVISOR_COMMAND if command is None else command
    return CommandAdvisor(command) if command else NullAdvisor()
