"""Auto-trading engine: the discovery cycle opens positions, the monitoring cycle walks them through exits."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, Protocol, Sequence

import config
from bot.notifier import Notifier, NullNotifier
from monitor.signal_aggregator import aggregate, select_for_screening
from monitor.sources import CandidateSource, fetch_all
from trading import entry_filter
from trading.advisor import ACTION_SELL, Advisor, AdvisorDecision, NullAdvisor, entry_size
from trading.entry_filter import EntryRules
from trading.executor import ExecutionResult, TradeExecutor
from trading.exit_engine import ExitDecision, ExitRules, evaluate_tick
from trading.models import EXIT_ADVISOR, TIER_NAMES, Candidate, MarketSnapshot, Position, utc_now
from trading.state_store import ExitRecord, StateStore, StateStoreError
from utils.addressing import short_address
from utils.log_contracts import DecisionLog

logger = logging.getLogger(__name__)

REASON_ALREADY_OPEN = "already_open"
REASON_NO_PRICE = "no_price"


class MarketData(Protocol):
    async def token_snapshot(self, token_id: str) -> Optional[MarketSnapshot]: ...

    async def price(self, token_id: str) -> Optional[float]: ...


def _iso(value: datetime) -> str:
    return value.isoformat()


class AutoTrader:
    """Owns no position state of its own; every read and write goes through the store."""

    def __init__(
        self,
        store: StateStore,
        *,
        sources: Sequence[CandidateSource],
        market: MarketData,
        executor: TradeExecutor,
        advisor: Optional[Advisor] = None,
        notifier: Optional[Notifier] = None,
        decision_log: Optional[DecisionLog] = None,
        entry_rules: Optional[EntryRules] = None,
        exit_rules: Optional[ExitRules] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.sources = list(sources)
        self.market = market
        self.executor = executor
        self.advisor = advisor or NullAdvisor()
        self.notifier = notifier or NullNotifier()
        self.decision_log = decision_log or DecisionLog(None, None)
        self.entry_rules = entry_rules or EntryRules.from_config()
        self.exit_rules = exit_rules or ExitRules.from_config()
        self._clock = clock
        self._advisor_exit_checked_at: dict[str, datetime] = {}
        self.total_scans = 0
        self.total_opened = 0
        self.total_exits = 0

    # ---- discovery ----

    async def _enrich(self, candidate: Candidate) -> Candidate:
        """Overlay a fresh token snapshot; a slow or missing lookup keeps the aggregated view."""
        try:
            fresh = await asyncio.wait_for(
                self.market.token_snapshot(candidate.token_id), timeout=config.PRICE_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            logger.warning("ENRICH_TIMEOUT token=%s", short_address(candidate.token_id))
            return candidate
        if fresh is None:
            return candidate
        return Candidate(candidate.token_id, candidate.tags, candidate.snapshot.merged_with(fresh), candidate.tier)

    def _log_candidate(
        self,
        candidate: Candidate,
        now: datetime,
        *,
        stage: str,
        decision: str,
        reason: str,
        result: Optional[entry_filter.FilterResult] = None,
    ) -> None:
        snap = candidate.snapshot
        self.decision_log.candidate(
            {
                "ts": now,
                "token_id": candidate.token_id,
                "symbol": candidate.symbol,
                "tags": list(candidate.tags),
                "tier": TIER_NAMES.get(candidate.tier, ""),
                "decision_stage": stage,
                "decision": decision,
                "reason": reason,
                "failed": list(result.failed) if result else [],
                "signals": result.signals if result else None,
                "buy_sell_ratio": result.buy_sell_ratio if result else None,
                "price_usd": snap.price_usd,
                "change_5m": snap.change_5m,
                "change_1h": snap.change_1h,
                "liquidity_usd": snap.liquidity_usd,
                "age_hours": snap.age_hours,
            }
        )

    def _entry_context(self, candidate: Candidate, result: entry_filter.FilterResult, summary: dict) -> dict:
        return {
            "token_id": candidate.token_id,
            "symbol": candidate.symbol,
            "tags": sorted(candidate.tags),
            "tier": TIER_NAMES.get(candidate.tier, ""),
            "market": asdict(candidate.snapshot),
            "signals": result.signals,
            "buy_sell_ratio": result.buy_sell_ratio,
            "default_size": config.POSITION_SIZE,
            "max_size": config.MAX_POSITION_SIZE,
            "session": summary,
        }

    async def _execute(self, order: Awaitable[ExecutionResult], what: str) -> ExecutionResult:
        try:
            return await asyncio.wait_for(order, timeout=config.EXECUTION_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            return ExecutionResult(ok=False, error=f"{what}_timeout")
        except Exception as exc:
            logger.exception("EXECUTION_ERROR op=%s", what)
            return ExecutionResult(ok=False, error=f"{what}_error:{exc}")

    async def _size_for(self, candidate: Candidate, result: entry_filter.FilterResult, now: datetime) -> Optional[float]:
        if not self.advisor.enabled:
            return config.POSITION_SIZE
        try:
            decision = await self.advisor.advise_entry(self._entry_context(candidate, result, await self.store.summary()))
        except Exception as exc:
            logger.warning("ADVISOR_ERROR kind=entry token=%s err=%s", short_address(candidate.token_id), exc)
            decision = AdvisorDecision(reasoning=f"advisor error: {exc}")
        size = entry_size(decision)
        if size is None:
            self._log_candidate(candidate, now, stage="advisor", decision="skip", reason="advisor_skip", result=result)
        return size

    async def _open(self, candidate: Candidate, size: float, now: datetime) -> Optional[Position]:
        price = float(candidate.snapshot.price_usd or 0.0)
        result = await self._execute(self.executor.buy(candidate.token_id, size, price), "buy")
        if not result.ok:
            logger.warning(
                "AUTO_BUY failed token=%s symbol=%s err=%s",
                short_address(candidate.token_id),
                candidate.symbol,
                result.error,
            )
            self.decision_log.trade(
                {
                    "ts": now,
                    "token_id": candidate.token_id,
                    "symbol": candidate.symbol,
                    "decision_stage": "trade_fail",
                    "decision": "buy",
                    "reason": "buy_fail",
                    "error": result.error,
                    "notional": size,
                }
            )
            return None

        position = Position(
            token_id=candidate.token_id,
            symbol=candidate.symbol,
            entry_price=float(result.fill_price or price),
            entry_time=now,
            size=size,
            initial_size=size,
            tags=sorted(candidate.tags),
        )
        try:
            position = await self.store.add_position(position)
        except StateStoreError as exc:
            logger.error("AUTO_BUY book_failed token=%s code=%s err=%s", candidate.token_id, exc.code, exc)
            return None

        self.total_opened += 1
        logger.info(
            "AUTO_BUY mode=%s token=%s symbol=%s price=%.10g size=%.4f tags=%s tx=%s",
            self.executor.mode,
            short_address(position.token_id),
            position.symbol,
            position.entry_price,
            position.size,
            ",".join(position.tags),
            result.tx_id,
        )
        self.decision_log.trade(
            {
                "ts": now,
                "token_id": position.token_id,
                "symbol": position.symbol,
                "decision_stage": "trade_open",
                "decision": "buy",
                "reason": f"buy_{self.executor.mode}",
                "entry_time": _iso(position.entry_time),
                "price": position.entry_price,
                "notional": position.size,
                "tx_id": result.tx_id,
            }
        )
        await self.notifier.position_opened(position, result.tx_id)
        return position

    async def scan_cycle(self, now: Optional[datetime] = None) -> int:
        """One discovery pass. Returns the number of positions opened."""
        now = now or self._clock()
        self.total_scans += 1
        hit_groups = await fetch_all(self.sources, config.SOURCE_TIMEOUT_SECONDS)
        candidates = aggregate(hit_groups)
        selected = select_for_screening(candidates, config.SCAN_TIER_LIMITS, config.SCAN_MAX_CANDIDATES)

        passed = 0
        opened = 0
        for candidate in selected:
            if await self.store.get_position(candidate.token_id) is not None:
                self._log_candidate(candidate, now, stage="entry_gate", decision="skip", reason=REASON_ALREADY_OPEN)
                continue
            # Cooldown is checked before enrichment so blocked tokens cost no lookups.
            if await self.store.is_on_cooldown(candidate.token_id, now):
                result = entry_filter.evaluate(candidate, self.entry_rules, on_cooldown=True)
                self._log_candidate(candidate, now, stage="entry_filter", decision="reject", reason=result.failed[0], result=result)
                continue

            candidate = await self._enrich(candidate)
            result = entry_filter.evaluate(candidate, self.entry_rules, on_cooldown=False)
            if not result.passed:
                self._log_candidate(candidate, now, stage="entry_filter", decision="reject", reason=result.failed[0], result=result)
                continue
            passed += 1

            allowed, gate = await self.store.can_open_position(now)
            if not allowed:
                self._log_candidate(candidate, now, stage="entry_gate", decision="skip", reason=gate, result=result)
                logger.info("AUTO_GATE blocked reason=%s token=%s", gate, short_address(candidate.token_id))
                break

            if not candidate.snapshot.price_usd or candidate.snapshot.price_usd <= 0:
                self._log_candidate(candidate, now, stage="entry_gate", decision="skip", reason=REASON_NO_PRICE, result=result)
                continue

            size = await self._size_for(candidate, result, now)
            if size is None:
                continue
            self._log_candidate(candidate, now, stage="entry_filter", decision="pass", reason="passed", result=result)
            if await self._open(candidate, size, now) is not None:
                opened += 1

        logger.info(
            "SCAN n=%s hits=%s unique=%s screened=%s passed=%s opened=%s",
            self.total_scans,
            sum(len(group) for group in hit_groups),
            len(candidates),
            len(selected),
            passed,
            opened,
        )
        return opened

    # ---- monitoring ----

    async def _price(self, token_id: str) -> Optional[float]:
        try:
            price = await asyncio.wait_for(self.market.price(token_id), timeout=config.PRICE_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            return None
        except Exception as exc:
            logger.warning("PRICE_FAIL token=%s err=%s", short_address(token_id), exc)
            return None
        if price is None or price <= 0:
            return None
        return float(price)

    async def _advisor_exit(self, position: Position, price: float, pnl_percent: float, now: datetime) -> Optional[ExitDecision]:
        if not self.advisor.enabled:
            return None
        last = self._advisor_exit_checked_at.get(position.token_id)
        if last is not None and (now - last).total_seconds() < config.ADVISOR_EXIT_INTERVAL_SECONDS:
            return None
        self._advisor_exit_checked_at[position.token_id] = now
        context = {
            "token_id": position.token_id,
            "symbol": position.symbol,
            "entry_price": position.entry_price,
            "price": price,
            "highest_price": max(position.highest_price, price),
            "pnl_percent": round(pnl_percent, 2),
            "size": position.size,
            "take_profit_hits": list(position.take_profit_hits),
            "hold_minutes": round(position.hold_seconds(now) / 60.0, 1),
        }
        try:
            decision = await self.advisor.advise_exit(context)
        except Exception as exc:
            logger.warning("ADVISOR_ERROR kind=exit token=%s err=%s", short_address(position.token_id), exc)
            return None
        if decision.action != ACTION_SELL or decision.confidence < config.ADVISOR_MIN_CONFIDENCE:
            return None
        return ExitDecision(EXIT_ADVISOR, decision.sell_percent or 100.0)

    async def _book_exit(self, position: Position, decision: ExitDecision, fill_price: float, now: datetime, tx_id: str) -> ExitRecord:
        if decision.is_full:
            return await self.store.close_position(
                position.token_id, exit_price=fill_price, reason=decision.reason, now=now, tx_id=tx_id
            )
        return await self.store.apply_partial_exit(
            position.token_id,
            sell_percent=decision.sell_percent,
            exit_price=fill_price,
            reason=decision.reason,
            rung=decision.rung,
            now=now,
            tx_id=tx_id,
        )

    def _log_book_failure(
        self, position: Position, decision: ExitDecision, fill_price: float, tx_id: str, exc: Exception, now: datetime
    ) -> None:
        self.decision_log.trade(
            {
                "ts": now,
                "token_id": position.token_id,
                "symbol": position.symbol,
                "decision_stage": "trade_fail",
                "decision": "sell",
                "reason": "book_fail",
                "exit_reason": decision.reason,
                "price": fill_price,
                "sell_percent": decision.sell_percent,
                "tx_id": tx_id,
                "error": f"{type(exc).__name__}: {exc}",
                "entry_time": _iso(position.entry_time),
            }
        )

    async def process_tick(self, position: Position, price: float, now: Optional[datetime] = None) -> Optional[ExitRecord]:
        """Run one accepted price through the exit ladder.

        Nothing is persisted unless no trigger fired (price update) or the sell was
        definitely filled (exit booked). A failed sell leaves the stored position as it
        was, so the same trigger is evaluated again on the next tick.
        """
        now = now or self._clock()
        outcome = evaluate_tick(position, price, now, self.exit_rules)
        decision = outcome.decision or await self._advisor_exit(position, price, outcome.pnl_percent, now)
        if decision is None:
            try:
                await self.store.update_position_price(position.token_id, price)
            except StateStoreError as exc:
                logger.warning("MONITOR_SKIP token=%s reason=%s", short_address(position.token_id), exc)
            except Exception:
                logger.exception("MONITOR_ERROR stage=price_update token=%s", short_address(position.token_id))
            return None

        result = await self._execute(self.executor.sell(position.token_id, decision.sell_percent, price), "sell")
        if not result.ok:
            logger.warning(
                "AUTO_SELL failed token=%s reason=%s pct=%.0f err=%s",
                short_address(position.token_id),
                decision.reason,
                decision.sell_percent,
                result.error,
            )
            self.decision_log.trade(
                {
                    "ts": now,
                    "token_id": position.token_id,
                    "symbol": position.symbol,
                    "decision_stage": "trade_fail",
                    "decision": "sell",
                    "reason": "sell_fail",
                    "exit_reason": decision.reason,
                    "error": result.error,
                    "entry_time": _iso(position.entry_time),
                }
            )
            return None

        fill_price = float(result.fill_price or price)
        try:
            record = await self._book_exit(position, decision, fill_price, now, result.tx_id)
        except StateStoreError as exc:
            logger.error("AUTO_SELL book_failed token=%s tx=%s code=%s err=%s", position.token_id, result.tx_id, exc.code, exc)
            self._log_book_failure(position, decision, fill_price, result.tx_id, exc, now)
            return None
        except Exception as exc:
            # Filled but unbooked; the tx id is the reconciliation handle.
            logger.exception("AUTO_SELL book_failed token=%s tx=%s", position.token_id, result.tx_id)
            self._log_book_failure(position, decision, fill_price, result.tx_id, exc, now)
            return None

        trade = record.trade
        self.total_exits += 1
        if record.position is None:
            self._advisor_exit_checked_at.pop(position.token_id, None)
        logger.info(
            "AUTO_SELL mode=%s token=%s symbol=%s reason=%s pct=%.0f price=%.10g pnl=%.4f pnl_pct=%.2f partial=%s",
            self.executor.mode,
            short_address(trade.token_id),
            trade.symbol,
            trade.exit_reason,
            trade.sell_percent,
            trade.exit_price,
            trade.pnl,
            trade.pnl_percent,
            trade.partial,
        )
        self.decision_log.trade(
            {
                "ts": now,
                "token_id": trade.token_id,
                "symbol": trade.symbol,
                "decision_stage": "trade_partial" if trade.partial else "trade_close",
                "decision": "sell",
                "reason": trade.exit_reason,
                "entry_time": _iso(trade.entry_time),
                "price": trade.exit_price,
                "notional": trade.notional_sold,
                "sell_percent": trade.sell_percent,
                "pnl": trade.pnl,
                "pnl_percent": trade.pnl_percent,
                "tx_id": trade.tx_id,
            }
        )
        await self.notifier.trade_closed(trade)
        if record.halt_reason:
            self.decision_log.trade(
                {
                    "ts": now,
                    "token_id": trade.token_id,
                    "symbol": trade.symbol,
                    "decision_stage": "breaker",
                    "decision": "halt",
                    "reason": record.halt_reason.split(":", 1)[0],
                    "detail": record.halt_reason,
                }
            )
            await self.notifier.halted(record.halt_reason)
        return record

    async def monitor_cycle(self, now: Optional[datetime] = None) -> int:
        """One pass over open positions. Returns the number of exit fills booked."""
        now = now or self._clock()
        positions = await self.store.get_positions()
        if not positions:
            return 0
        prices = await asyncio.gather(*[self._price(p.token_id) for p in positions])
        exits = 0
        for position, price in zip(positions, prices):
            if price is None:
                logger.info("MONITOR_SKIP token=%s reason=price_unavailable", short_address(position.token_id))
                continue
            try:
                if await self.process_tick(position, price, now) is not None:
                    exits += 1
            except Exception:
                logger.exception("MONITOR_ERROR token=%s", short_address(position.token_id))
        return exits

    async def shutdown(self, reason: str = "shutdown") -> list[Position]:
        """Stop trading without touching positions; report what is still open."""
        positions = await self.store.get_positions()
        for p in positions:
            logger.warning(
                "OPEN_AT_SHUTDOWN reason=%s token=%s symbol=%s entry=%.10g size=%.4f last=%.10g pnl_pct=%.2f",
                reason,
                p.token_id,
                p.symbol,
                p.entry_price,
                p.size,
                p.last_price,
                p.pnl_percent,
            )
        if positions:
            await self.notifier.shutdown(positions)
        return positions


class PeriodicRunner:
    """Fixed-cadence scheduler. A tick that comes due while the previous cycle runs is skipped."""

    def __init__(self, name: str, interval_seconds: float, cycle: Callable[[], Awaitable[Any]]) -> None:
        self.name = name
        self.interval_seconds = interval_seconds
        self.cycle = cycle
        self._running = False
        self.completed = 0
        self.skipped = 0

    @property
    def in_progress(self) -> bool:
        return self._running

    async def tick(self) -> bool:
        if self._running:
            self.skipped += 1
            logger.warning("CYCLE_SKIP name=%s reason=previous_cycle_in_progress skipped=%s", self.name, self.skipped)
            return False
        self._running = True
        try:
            await self.cycle()
        except Exception:
            logger.exception("%s cycle error", self.name)
        finally:
            self._running = False
        self.completed += 1
        return True

    async def run(self, stop: asyncio.Event) -> None:
        loop = asyncio.get_running_loop()
        pending: set[asyncio.Task] = set()
        next_at = loop.time()
        while not stop.is_set():
            task = asyncio.create_task(self.tick())
            pending.add(task)
            task.add_done_callback(pending.discard)
            next_at += self.interval_seconds
            try:
                await asyncio.wait_for(stop.wait(), timeout=max(0.0, next_at - loop.time()))
            except asyncio.TimeoutError:
                pass
        # Let an in-flight cycle finish so no fill is left half-booked.
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
