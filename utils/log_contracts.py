"""Versioned row contracts for the candidate and trade decision JSONL logs."""

from __future__ import annotations

import hashlib
import logging
import re
from datetime import datetime, timezone
from typing import Any

from utils.state_file import append_jsonl

logger = logging.getLogger(__name__)

LOG_SCHEMA_VERSION = "2026-10-01.v1"

SCHEMA_CANDIDATE_DECISION = "candidate_decision.v1"
SCHEMA_TRADE_DECISION = "trade_decision.v1"

_STAGE_PREFIX: dict[str, str] = {
    "entry_filter": "FILTER",
    "entry_gate": "GATE",
    "advisor": "ADVISOR",
    "trade_open": "EXEC",
    "trade_partial": "EXIT",
    "trade_close": "EXIT",
    "trade_fail": "EXEC",
    "breaker": "BREAKER",
    "unknown": "UNKNOWN",
}

_REASON_CODE_OVERRIDES: dict[str, str] = {
    "not_on_cooldown": "FILTER_COOLDOWN",
    "has_signals": "FILTER_SIGNALS",
    "good_ratio": "FILTER_BUY_SELL_RATIO",
    "is_pumping": "FILTER_NOT_PUMPING",
    "not_topped": "FILTER_TOPPED",
    "has_liquidity": "FILTER_LIQUIDITY",
    "not_too_old": "FILTER_TOO_OLD",
    "not_dumping": "FILTER_DUMPING",
    "halted": "GATE_HALTED",
    "max_positions": "GATE_MAX_POSITIONS",
    "daily_loss_limit": "GATE_DAILY_LOSS",
    "already_open": "GATE_ALREADY_OPEN",
    "advisor_skip": "ADVISOR_SKIP",
    "advisor_low_confidence": "ADVISOR_LOW_CONFIDENCE",
    "buy_paper": "EXEC_BUY_PAPER",
    "buy_live": "EXEC_BUY_LIVE",
    "buy_fail": "EXEC_BUY_FAIL",
    "sell_fail": "EXEC_SELL_FAIL",
    "book_fail": "EXEC_BOOK_FAIL",
    "flash_crash": "EXIT_FLASH_CRASH",
    "stop_loss": "EXIT_STOP_LOSS",
    "take_profit": "EXIT_TAKE_PROFIT",
    "trailing_stop": "EXIT_TRAILING_STOP",
    "timeout": "EXIT_TIMEOUT",
    "advisor": "EXIT_ADVISOR",
    "drawdown": "BREAKER_DRAWDOWN",
    "session_loss": "BREAKER_SESSION_LOSS",
}

REASON_CODE_TAXONOMY: dict[str, dict[str, str]] = {
    "FILTER_COOLDOWN": {"severity": "INFO", "category": "filter", "title": "Token on re-entry cooldown"},
    "FILTER_SIGNALS": {"severity": "INFO", "category": "filter", "title": "Too few signals"},
    "FILTER_BUY_SELL_RATIO": {"severity": "INFO", "category": "filter", "title": "Buy/sell ratio below minimum"},
    "FILTER_NOT_PUMPING": {"severity": "INFO", "category": "filter", "title": "5m change below minimum"},
    "FILTER_TOPPED": {"severity": "INFO", "category": "filter", "title": "5m change above maximum"},
    "FILTER_LIQUIDITY": {"severity": "INFO", "category": "filter", "title": "Liquidity below floor"},
    "FILTER_TOO_OLD": {"severity": "INFO", "category": "filter", "title": "Token older than maximum age"},
    "FILTER_DUMPING": {"severity": "INFO", "category": "filter", "title": "Token already reversing"},
    "GATE_HALTED": {"severity": "WARN", "category": "gate", "title": "Session halted"},
    "GATE_MAX_POSITIONS": {"severity": "INFO", "category": "gate", "title": "No free position slot"},
    "GATE_DAILY_LOSS": {"severity": "WARN", "category": "gate", "title": "Daily loss limit reached"},
    "GATE_ALREADY_OPEN": {"severity": "INFO", "category": "gate", "title": "Position already open"},
    "ADVISOR_SKIP": {"severity": "INFO", "category": "advisor", "title": "Advisor vetoed entry"},
    "ADVISOR_LOW_CONFIDENCE": {"severity": "INFO", "category": "advisor", "title": "Advisor confidence too low"},
    "EXEC_BUY_PAPER": {"severity": "INFO", "category": "execute", "title": "Paper buy opened"},
    "EXEC_BUY_LIVE": {"severity": "INFO", "category": "execute", "title": "Live buy opened"},
    "EXEC_BUY_FAIL": {"severity": "WARN", "category": "execute", "title": "Buy execution failed"},
    "EXEC_SELL_FAIL": {"severity": "WARN", "category": "execute", "title": "Sell execution failed"},
    "EXEC_BOOK_FAIL": {"severity": "ERROR", "category": "execute", "title": "Filled sell could not be booked"},
    "EXIT_FLASH_CRASH": {"severity": "WARN", "category": "exit", "title": "Closed by flash crash"},
    "EXIT_STOP_LOSS": {"severity": "WARN", "category": "exit", "title": "Closed by stop loss"},
    "EXIT_TAKE_PROFIT": {"severity": "INFO", "category": "exit", "title": "Take-profit rung filled"},
    "EXIT_TRAILING_STOP": {"severity": "INFO", "category": "exit", "title": "Closed by trailing stop"},
    "EXIT_TIMEOUT": {"severity": "INFO", "category": "exit", "title": "Closed by timeout"},
    "EXIT_ADVISOR": {"severity": "INFO", "category": "exit", "title": "Closed on advisor request"},
    "BREAKER_DRAWDOWN": {"severity": "ERROR", "category": "breaker", "title": "Drawdown halt"},
    "BREAKER_SESSION_LOSS": {"severity": "ERROR", "category": "breaker", "title": "Session loss halt"},
}


def _as_ts(value: Any) -> float:
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, datetime):
        return value.timestamp()
    text = str(value or "").strip()
    if text:
        try:
            dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.timestamp()
        except ValueError:
            pass
    return datetime.now(timezone.utc).timestamp()


def _normalize_reason_text(value: Any) -> str:
    text = re.sub(r"[^a-z0-9]+", "_", str(value or "").strip().lower())
    return re.sub(r"_+", "_", text).strip("_")


def _sanitize_code_token(value: str) -> str:
    text = re.sub(r"[^A-Z0-9]+", "_", str(value or "").strip().upper())
    return re.sub(r"_+", "_", text).strip("_") or "UNKNOWN"


def reason_code_for_event(*, reason: Any, decision_stage: Any = "", decision: Any = "") -> str:
    normalized = _normalize_reason_text(reason)
    prefix = _STAGE_PREFIX.get(_normalize_reason_text(decision_stage) or "unknown", "UNKNOWN")
    if not normalized:
        fallback = _normalize_reason_text(decision)
        return f"{prefix}_{_sanitize_code_token(fallback)}" if fallback else "UNKNOWN"
    return _REASON_CODE_OVERRIDES.get(normalized) or f"{prefix}_{_sanitize_code_token(normalized)}"


def reason_code_meta(code: str) -> dict[str, str]:
    key = _sanitize_code_token(code)
    if key in REASON_CODE_TAXONOMY:
        return dict(REASON_CODE_TAXONOMY[key])
    return {"severity": "INFO", "category": "unknown", "title": key.replace("_", " ").title()}


def _digest(*parts: Any) -> str:
    seed = "|".join(str(p or "").strip() for p in parts)
    return hashlib.sha1(seed.encode("utf-8", errors="ignore")).hexdigest()[:20]


def _stamp(event: dict[str, Any], *, schema_name: str, run_tag: str) -> dict[str, Any]:
    payload = dict(event or {})
    ts = _as_ts(payload.get("ts"))
    payload["ts"] = ts
    payload["timestamp"] = datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()
    payload.setdefault("schema_version", LOG_SCHEMA_VERSION)
    payload.setdefault("schema_name", schema_name)
    if run_tag:
        payload.setdefault("run_tag", run_tag)
    token_id = str(payload.get("token_id", "") or "").strip()
    payload["token_id"] = token_id
    payload["symbol"] = str(payload.get("symbol", "") or "N/A")
    payload.setdefault("decision_stage", "unknown")
    payload.setdefault("decision", "unknown")
    payload["reason"] = str(payload.get("reason", "") or "")
    if not payload.get("trace_id"):
        payload["trace_id"] = f"tr_{_digest(token_id, payload['symbol'], f'{ts:.6f}')}"
    if not payload.get("decision_id"):
        payload["decision_id"] = "dec_" + _digest(
            run_tag, payload["trace_id"], payload["decision_stage"], payload["decision"], payload["reason"], token_id
        )
    code = str(
        payload.get("reason_code")
        or reason_code_for_event(
            reason=payload["reason"], decision_stage=payload["decision_stage"], decision=payload["decision"]
        )
    ).strip().upper()
    meta = reason_code_meta(code)
    payload["reason_code"] = code
    payload["reason_severity"] = meta["severity"]
    payload["reason_category"] = meta["category"]
    return payload


def candidate_decision_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    payload = _stamp(event, schema_name=SCHEMA_CANDIDATE_DECISION, run_tag=run_tag)
    payload["tags"] = sorted(str(t) for t in payload.get("tags", []) or [])
    payload["failed"] = [str(r) for r in payload.get("failed", []) or []]
    payload.setdefault("tier", "")
    return payload


def trade_decision_event(event: dict[str, Any], *, run_tag: str = "") -> dict[str, Any]:
    payload = _stamp(event, schema_name=SCHEMA_TRADE_DECISION, run_tag=run_tag)
    stage = _normalize_reason_text(payload["decision_stage"])
    if not payload.get("position_id") and stage in {"trade_open", "trade_partial", "trade_close", "trade_fail"} and payload["token_id"]:
        # One token holds at most one position at a time, so token + entry time identifies it.
        payload["position_id"] = "pos_" + _digest(payload["token_id"], payload.get("entry_time", ""))
    payload.setdefault("position_id", "")
    payload["notional"] = float(payload.get("notional", 0.0) or 0.0)
    return payload


class DecisionLog:
    """Appends contract rows to JSONL files; a write failure is logged, never raised into a loop."""

    def __init__(
        self,
        candidates_path: str | None,
        trades_path: str | None,
        *,
        run_tag: str = "",
    ) -> None:
        self.candidates_path = candidates_path
        self.trades_path = trades_path
        self.run_tag = run_tag

    def candidate(self, event: dict[str, Any]) -> dict[str, Any]:
        row = candidate_decision_event(event, run_tag=self.run_tag)
        self._append(self.candidates_path, row)
        return row

    def trade(self, event: dict[str, Any]) -> dict[str, Any]:
        row = trade_decision_event(event, run_tag=self.run_tag)
        self._append(self.trades_path, row)
        return row

    @staticmethod
    def _append(path: str | None, row: dict[str, Any]) -> None:
        if not path:
            return
        try:
            append_jsonl(path, row)
        except OSError as exc:
            logger.warning("DECISION_LOG write failed path=%s err=%s", path, exc)
