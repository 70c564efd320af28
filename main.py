"""Entry point for the momentum scalper: `run [--live]`, `resume`, `status`."""

import argparse
import asyncio
import json
import logging
import os
import signal
from logging.handlers import RotatingFileHandler

import config
from bot.notifier import build_notifier
from config import APP_LOG_FILE, LOG_DIR, LOG_LEVEL
from monitor.dexscreener import (
    BoostsSource,
    DexScreenerClient,
    GainersSource,
    NewPairsSource,
    ProfilesSource,
    SearchSource,
    VolumeSpikeSource,
)
from monitor.geckoterminal import GeckoNewPoolsSource, GeckoTerminalClient, GeckoTrendingSource
from monitor.helius import HeliusClient, WhaleCopySource
from monitor.sources import CandidateSource
from monitor.token_scorer import ViralScorer
from trading.advisor import build_advisor
from trading.auto_trader import AutoTrader, PeriodicRunner
from trading.executor import JupiterExecutor, PaperExecutor, TradeExecutor, load_signer
from trading.state_store import StateStore, build_backend
from utils.http_client import ResilientHttpClient
from utils.log_contracts import DecisionLog


def configure_logging() -> None:
    os.makedirs(LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    # Avoid leaking bot token in verbose transport logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("telegram").setLevel(logging.INFO)


logger = logging.getLogger(__name__)


def build_sources(
    dex: DexScreenerClient, gecko: GeckoTerminalClient, helius: HeliusClient | None = None
) -> list[CandidateSource]:
    """Adapters in merge order: later feeds overlay earlier snapshot fields."""
    scorer = ViralScorer()
    sources: list[CandidateSource] = [
        ProfilesSource(dex),
        SearchSource(dex),
        NewPairsSource(dex),
        GainersSource(dex),
        BoostsSource(dex, scorer, kind="latest"),
        BoostsSource(dex, scorer, kind="top"),
        VolumeSpikeSource(dex),
        GeckoTrendingSource(gecko),
        GeckoNewPoolsSource(gecko),
    ]
    if helius is not None and helius.enabled and config.WHALE_WALLETS:
        sources.append(WhaleCopySource(helius, config.WHALE_WALLETS))
    else:
        logger.info("WHALE_COPY disabled reason=%s", "no_api_key" if helius is None or not helius.enabled else "no_wallets")
    return sources


def build_executor(live: bool) -> TradeExecutor:
    if not live:
        return PaperExecutor()
    signer = load_signer(config.LIVE_SIGNER)
    http = ResilientHttpClient(timeout_seconds=config.EXECUTION_TIMEOUT_SECONDS)
    return JupiterExecutor(http, signer)


def build_store() -> StateStore:
    return StateStore(build_backend())


async def run(live: bool) -> None:
    store = build_store()
    http = ResilientHttpClient(timeout_seconds=config.SOURCE_TIMEOUT_SECONDS)
    dex = DexScreenerClient(http)
    gecko = GeckoTerminalClient(http)
    executor = build_executor(live)
    notifier = build_notifier()
    trader = AutoTrader(
        store,
        sources=build_sources(dex, gecko, HeliusClient(http, config.HELIUS_API_KEY)),
        market=dex,
        executor=executor,
        advisor=build_advisor(),
        notifier=notifier,
        decision_log=DecisionLog(
            config.CANDIDATE_DECISIONS_LOG_FILE if config.CANDIDATE_DECISIONS_LOG_ENABLED else None,
            config.TRADE_DECISIONS_LOG_FILE if config.TRADE_DECISIONS_LOG_ENABLED else None,
            run_tag=config.RUN_TAG,
        ),
    )

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows event loops have no signal handlers; Ctrl+C surfaces as KeyboardInterrupt instead.
            pass

    summary = await store.summary()
    logger.info(
        "STARTUP mode=%s backend=%s open_positions=%s cumulative_pnl=%.4f halted=%s",
        executor.mode,
        config.STATE_BACKEND,
        summary["open_positions"],
        summary["cumulative_pnl"],
        summary["halted"],
    )
    if summary["halted"]:
        logger.error("STARTUP halted reason=%s; run `main.py resume` to allow new entries", summary["halt_reason"])
    await notifier.started(executor.mode, summary)

    async def scan_and_report() -> None:
        try:
            await trader.scan_cycle()
        finally:
            http.log_stats(reset=True)

    scan = PeriodicRunner("scan", config.SCAN_INTERVAL_SECONDS, scan_and_report)
    monitor = PeriodicRunner("monitor", config.MONITOR_INTERVAL_SECONDS, trader.monitor_cycle)
    try:
        await asyncio.gather(scan.run(stop), monitor.run(stop))
    finally:
        await trader.shutdown("signal" if stop.is_set() else "exit")
        await executor.close()
        await dex.close()
        await notifier.close()
        store.close()
        logger.info("SHUTDOWN scans=%s opened=%s exits=%s", trader.total_scans, trader.total_opened, trader.total_exits)


async def resume(note: str) -> bool:
    store = build_store()
    try:
        cleared = await store.resume(note)
        summary = await store.summary()
    finally:
        store.close()
    if cleared:
        logger.warning("RESUME note=%s cumulative_pnl=%.4f peak=%.4f", note, summary["cumulative_pnl"], summary["peak_pnl"])
    else:
        logger.info("RESUME not_halted")
    return cleared


async def status() -> dict:
    store = build_store()
    try:
        summary = await store.summary()
        summary["positions"] = [
            {
                "token_id": p.token_id,
                "symbol": p.symbol,
                "entry_price": p.entry_price,
                "last_price": p.last_price,
                "size": p.size,
                "pnl_percent": round(p.pnl_percent, 2),
                "take_profit_hits": p.take_profit_hits,
            }
            for p in await store.get_positions()
        ]
    finally:
        store.close()
    return summary


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Solana memecoin momentum scalper")
    sub = parser.add_subparsers(dest="command", required=True)
    run_cmd = sub.add_parser("run", help="start the discovery and monitoring loops")
    run_cmd.add_argument("--live", action="store_true", default=config.LIVE_MODE_DEFAULT, help="execute real swaps")
    resume_cmd = sub.add_parser("resume", help="clear a circuit-breaker halt")
    resume_cmd.add_argument("--note", default="", help="operator note recorded in the log")
    sub.add_parser("status", help="print the session summary and open positions")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    if args.command == "run":
        try:
            asyncio.run(run(args.live))
        except KeyboardInterrupt:
            logger.info("Interrupted")
        return 0
    if args.command == "resume":
        return 0 if asyncio.run(resume(args.note)) else 1
    print(json.dumps(asyncio.run(status()), indent=2, default=str))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
