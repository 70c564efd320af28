"""Application configuration."""

import os
from pathlib import Path
from typing import Dict, List, Tuple

from dotenv import load_dotenv


def _load_dotenv_safe(dotenv_path: str | None = None, *, override: bool = False) -> None:
    """Load dotenv using UTF-8-SIG so BOM-prefixed files don't break first key parsing."""
    try:
        load_dotenv(dotenv_path=dotenv_path, override=override, encoding="utf-8-sig")
    except TypeError:
        # Older python-dotenv versions may not expose the `encoding` argument.
        load_dotenv(dotenv_path=dotenv_path, override=override)


# Load base environment first, then optional per-instance override env file.
_load_dotenv_safe()
_BOT_ENV_FILE = os.getenv("BOT_ENV_FILE", "").strip()
if _BOT_ENV_FILE:
    _bot_env_path = Path(_BOT_ENV_FILE).expanduser()
    if not _bot_env_path.is_absolute():
        _bot_env_path = (Path.cwd() / _bot_env_path).resolve()
    if not _bot_env_path.exists():
        raise FileNotFoundError(f"BOT_ENV_FILE does not exist: {_bot_env_path}")
    if not _bot_env_path.is_file():
        raise IsADirectoryError(f"BOT_ENV_FILE is not a file: {_bot_env_path}")
    try:
        _load_dotenv_safe(str(_bot_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load BOT_ENV_FILE '{_bot_env_path}': {exc}") from exc


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "y", "on")


def _parse_source_rate_limits(raw: str) -> Dict[str, Tuple[int, float]]:
    out: Dict[str, Tuple[int, float]] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        source_part, rate_part = item.split(":", 1)
        source = source_part.strip().lower()
        if not source or "/" not in rate_part:
            continue
        count_part, window_part = rate_part.split("/", 1)
        try:
            count = max(1, int(float(count_part.strip())))
            window_seconds = max(1.0, float(window_part.strip()))
        except ValueError:
            continue
        out[source] = (count, window_seconds)
    return out


def _parse_tag_float_map(raw: str) -> Dict[str, float]:
    """Parse `TAG:value,TAG:value` into an upper-cased tag map."""
    out: Dict[str, float] = {}
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        tag_part, value_part = item.split(":", 1)
        tag = tag_part.strip().upper()
        if not tag:
            continue
        try:
            out[tag] = max(0.0, float(value_part.strip()))
        except ValueError:
            continue
    return out


def _parse_take_profit_ladder(raw: str) -> List[Tuple[float, float]]:
    """Parse `threshold:sell_percent` pairs, ascending by threshold."""
    rungs: List[Tuple[float, float]] = []
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item or ":" not in item:
            continue
        threshold_part, sell_part = item.split(":", 1)
        try:
            threshold = float(threshold_part.strip())
            sell_percent = float(sell_part.strip())
        except ValueError:
            continue
        if threshold <= 0 or not (0 < sell_percent <= 100):
            continue
        rungs.append((threshold, sell_percent))
    rungs.sort(key=lambda rung: rung[0])
    return rungs


def _parse_whale_wallets(raw: str) -> List[Tuple[str, str]]:
    """Parse `address[:label],address[:label]` into (address, label) pairs."""
    out: List[Tuple[str, str]] = []
    for chunk in str(raw or "").split(","):
        address, _, label = chunk.strip().partition(":")
        address = address.strip()
        if address and address not in {a for a, _ in out}:
            out.append((address, label.strip() or address[:8]))
    return out


def _parse_tag_limits(raw: str) -> Dict[str, int]:
    return {tag: int(value) for tag, value in _parse_tag_float_map(raw).items()}


RUN_TAG = os.getenv("RUN_TAG", "").strip()
CHAIN_ID = os.getenv("CHAIN_ID", "solana").strip().lower()
QUOTE_SYMBOL = os.getenv("QUOTE_SYMBOL", "SOL")
QUOTE_MINT = os.getenv("QUOTE_MINT", "So11111111111111111111111111111111111111112")

# Loop cadence
SCAN_INTERVAL_SECONDS = max(5.0, float(os.getenv("SCAN_INTERVAL_SECONDS", "30")))
MONITOR_INTERVAL_SECONDS = max(0.2, float(os.getenv("MONITOR_INTERVAL_SECONDS", "2")))
SOURCE_TIMEOUT_SECONDS = max(1.0, float(os.getenv("SOURCE_TIMEOUT_SECONDS", "10")))
PRICE_TIMEOUT_SECONDS = max(0.5, float(os.getenv("PRICE_TIMEOUT_SECONDS", "5")))
EXECUTION_TIMEOUT_SECONDS = max(1.0, float(os.getenv("EXECUTION_TIMEOUT_SECONDS", "45")))

# Discovery feeds
DEXSCREENER_API = os.getenv("DEXSCREENER_API", "https://api.dexscreener.com")
GECKOTERMINAL_API = os.getenv("GECKOTERMINAL_API", "https://api.geckoterminal.com/api/v2")
GECKO_NETWORK = os.getenv("GECKO_NETWORK", "solana")
PUMP_FUN_DEX_ID = os.getenv("PUMP_FUN_DEX_ID", "pump-fun")
DEX_SEARCH_TERMS = [
    q.strip()
    for q in os.getenv(
        "DEX_SEARCH_TERMS",
        "pump,moon,pepe,dog,cat,ai,meme,sol,doge,shib,elon,trump,wojak,chad,based",
    ).split(",")
    if q.strip()
]
DEX_SEARCH_PICKS_PER_SCAN = max(1, int(os.getenv("DEX_SEARCH_PICKS_PER_SCAN", "4")))
DEX_RETRIES = max(1, int(os.getenv("DEX_RETRIES", "2")))
SOURCE_DISCOVERY_MIN_LIQUIDITY_USD = max(0.0, float(os.getenv("SOURCE_DISCOVERY_MIN_LIQUIDITY_USD", "5000")))
SOURCE_PUMP_FUN_MIN_LIQUIDITY_USD = max(0.0, float(os.getenv("SOURCE_PUMP_FUN_MIN_LIQUIDITY_USD", "2000")))
SOURCE_FRESH_MAX_AGE_MINUTES = max(1.0, float(os.getenv("SOURCE_FRESH_MAX_AGE_MINUTES", "60")))
SOURCE_NEW_PAIRS_MAX_AGE_HOURS = max(0.1, float(os.getenv("SOURCE_NEW_PAIRS_MAX_AGE_HOURS", "2")))
SOURCE_MAX_ROWS = max(1, int(os.getenv("SOURCE_MAX_ROWS", "20")))
VIRAL_MIN_SCORE = max(0, int(os.getenv("VIRAL_MIN_SCORE", "40")))
SCAN_MAX_CANDIDATES = max(1, int(os.getenv("SCAN_MAX_CANDIDATES", "40")))
SCAN_TIER_LIMITS = _parse_tag_limits(os.getenv("SCAN_TIER_LIMITS", "FRESH:10,SOCIAL:8,GENERIC:22"))

# Volume spikes: 1h volume or txns vs the previous look, boosted tokens plus recently seen ones
VOLUME_SPIKE_MIN_MULTIPLE = max(1.0, float(os.getenv("VOLUME_SPIKE_MIN_MULTIPLE", "3")))
VOLUME_SPIKE_MIN_BUY_SELL_RATIO = max(0.0, float(os.getenv("VOLUME_SPIKE_MIN_BUY_SELL_RATIO", "1.5")))
VOLUME_SPIKE_BOOSTED_LIMIT = max(1, int(os.getenv("VOLUME_SPIKE_BOOSTED_LIMIT", "20")))
VOLUME_SPIKE_TRACKED_LIMIT = max(0, int(os.getenv("VOLUME_SPIKE_TRACKED_LIMIT", "30")))
VOLUME_SPIKE_HISTORY_TTL_SECONDS = max(60.0, float(os.getenv("VOLUME_SPIKE_HISTORY_TTL_SECONDS", "3600")))

# Whale copy: recent swap buys by tracked wallets, via Helius enhanced transactions
HELIUS_API = os.getenv("HELIUS_API", "https://api.helius.xyz/v0")
HELIUS_API_KEY = os.getenv("HELIUS_API_KEY", "").strip()
WHALE_WALLETS = _parse_whale_wallets(os.getenv("WHALE_WALLETS", ""))
WHALE_TX_LIMIT = max(1, int(os.getenv("WHALE_TX_LIMIT", "20")))
WHALE_MAX_AGE_MINUTES = max(1.0, float(os.getenv("WHALE_MAX_AGE_MINUTES", "30")))
WHALE_IGNORED_MINTS = frozenset(
    m.strip()
    for m in os.getenv(
        "WHALE_IGNORED_MINTS",
        "So11111111111111111111111111111111111111112,"
        "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v,"
        "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB",
    ).split(",")
    if m.strip()
)

# HTTP client
HTTP_CONNECTOR_LIMIT = max(1, int(os.getenv("HTTP_CONNECTOR_LIMIT", "30")))
HTTP_DEFAULT_CONCURRENCY = max(1, int(os.getenv("HTTP_DEFAULT_CONCURRENCY", "8")))
HTTP_RETRY_ATTEMPTS = max(1, int(os.getenv("HTTP_RETRY_ATTEMPTS", "3")))
HTTP_BACKOFF_BASE_SECONDS = max(0.05, float(os.getenv("HTTP_BACKOFF_BASE_SECONDS", "0.50")))
HTTP_BACKOFF_MAX_SECONDS = max(0.10, float(os.getenv("HTTP_BACKOFF_MAX_SECONDS", "8.00")))
HTTP_JITTER_SECONDS = max(0.0, float(os.getenv("HTTP_JITTER_SECONDS", "0.25")))
HTTP_429_COOLDOWN_SECONDS = max(1.0, float(os.getenv("HTTP_429_COOLDOWN_SECONDS", "30")))
HTTP_SOURCE_RATE_LIMITS = _parse_source_rate_limits(
    os.getenv(
        "HTTP_SOURCE_RATE_LIMITS",
        "dexscreener:280/60,dex_profiles:55/60,geckoterminal:28/60,helius:100/60,jupiter:50/60",
    )
)

# Entry rules
POSITION_SIZE = max(0.0, float(os.getenv("POSITION_SIZE", "5")))
MAX_POSITION_SIZE = max(POSITION_SIZE, float(os.getenv("MAX_POSITION_SIZE", "5")))
MAX_POSITIONS = max(1, int(os.getenv("MAX_POSITIONS", "1")))
MIN_SIGNALS = max(0, int(os.getenv("MIN_SIGNALS", "1")))
MIN_BUY_SELL_RATIO = max(0.0, float(os.getenv("MIN_BUY_SELL_RATIO", "1.0")))
MIN_5M_CHANGE = float(os.getenv("MIN_5M_CHANGE", "5"))
MAX_5M_CHANGE = float(os.getenv("MAX_5M_CHANGE", "40"))
DUMP_FLOOR_5M_CHANGE = float(os.getenv("DUMP_FLOOR_5M_CHANGE", "-5"))
STRONG_TREND_1H_CHANGE = float(os.getenv("STRONG_TREND_1H_CHANGE", "50"))
STRONG_PUMP_5M_CHANGE = float(os.getenv("STRONG_PUMP_5M_CHANGE", "8"))
MIN_LIQUIDITY_USD = max(0.0, float(os.getenv("MIN_LIQUIDITY_USD", "8000")))
MIN_LIQUIDITY_BY_TAG = _parse_tag_float_map(os.getenv("MIN_LIQUIDITY_BY_TAG", "PUMP_FUN:2000"))
MAX_AGE_HOURS = max(0.0, float(os.getenv("MAX_AGE_HOURS", "4")))

# Cooldowns
LOSS_COOLDOWN_MINUTES = max(0.0, float(os.getenv("LOSS_COOLDOWN_MINUTES", "10")))
PROFIT_COOLDOWN_MINUTES = max(0.0, float(os.getenv("PROFIT_COOLDOWN_MINUTES", "30")))

# Exit ladder
FLASH_CRASH_PERCENT = max(0.0, float(os.getenv("FLASH_CRASH_PERCENT", "5")))
STOP_LOSS_PERCENT = -abs(float(os.getenv("STOP_LOSS_PERCENT", "-15")))
TAKE_PROFIT_LADDER = _parse_take_profit_ladder(os.getenv("TAKE_PROFIT_LADDER", "20:50,40:30,100:20"))
TRAILING_STOP_PERCENT = max(0.0, float(os.getenv("TRAILING_STOP_PERCENT", "12")))
MAX_HOLD_MINUTES = max(0.0, float(os.getenv("MAX_HOLD_MINUTES", "10")))
MIN_PROFIT_TO_HOLD_PERCENT = float(os.getenv("MIN_PROFIT_TO_HOLD_PERCENT", "5"))

# Session circuit breaker
MAX_DRAWDOWN = max(0.0, float(os.getenv("MAX_DRAWDOWN", "15")))
MAX_SESSION_LOSS = max(0.0, float(os.getenv("MAX_SESSION_LOSS", "0")))
MAX_LOSS_PER_DAY = max(0.0, float(os.getenv("MAX_LOSS_PER_DAY", "20")))

# Discretionary advisor
ADVISOR_MIN_CONFIDENCE = max(0.0, min(100.0, float(os.getenv("ADVISOR_MIN_CONFIDENCE", "50"))))
# Optional external command that reads a prompt on stdin and prints a JSON decision.
ADVISOR_COMMAND = os.getenv("ADVISOR_COMMAND", "").strip()
ADVISOR_TIMEOUT_SECONDS = max(1.0, float(os.getenv("ADVISOR_TIMEOUT_SECONDS", "120")))
ADVISOR_STRATEGY_FILE = os.getenv("ADVISOR_STRATEGY_FILE", "STRATEGY.md")
ADVISOR_EXIT_INTERVAL_SECONDS = max(0.0, float(os.getenv("ADVISOR_EXIT_INTERVAL_SECONDS", "60")))

# Execution
LIVE_MODE_DEFAULT = _env_bool("LIVE_MODE", "false")
JUPITER_API = os.getenv("JUPITER_API", "https://quote-api.jup.ag/v6")
JUPITER_SLIPPAGE_BPS = max(1, int(os.getenv("JUPITER_SLIPPAGE_BPS", "500")))
LIVE_SIGNER = os.getenv("LIVE_SIGNER", "").strip()
LIVE_CONFIRM_TIMEOUT_SECONDS = max(1.0, float(os.getenv("LIVE_CONFIRM_TIMEOUT_SECONDS", "30")))

# Persistence
STATE_BACKEND = os.getenv("STATE_BACKEND", "json").strip().lower()
STATE_FILE = os.getenv("STATE_FILE", os.path.join("data", "state.json"))
TRADE_HISTORY_FILE = os.getenv("TRADE_HISTORY_FILE", os.path.join("data", "trade-history.jsonl"))
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///data/scalper.db")
STATE_FILE_LOCK_TIMEOUT_SECONDS = max(0.1, float(os.getenv("STATE_FILE_LOCK_TIMEOUT_SECONDS", "2.0")))
STATE_FILE_LOCK_RETRY_SECONDS = max(0.01, float(os.getenv("STATE_FILE_LOCK_RETRY_SECONDS", "0.05")))
STATE_ATOMIC_REPLACE_RETRIES = max(0, int(os.getenv("STATE_ATOMIC_REPLACE_RETRIES", "8")))

# Notifications
TELEGRAM_BOT_TOKEN = os.getenv("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_CHAT_ID = int(os.getenv("TELEGRAM_CHAT_ID", "0") or 0)

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.path.join(LOG_DIR, "app.log")
CANDIDATE_DECISIONS_LOG_ENABLED = _env_bool("CANDIDATE_DECISIONS_LOG_ENABLED", "true")
CANDIDATE_DECISIONS_LOG_FILE = os.getenv("CANDIDATE_DECISIONS_LOG_FILE", os.path.join(LOG_DIR, "candidates.jsonl"))
TRADE_DECISIONS_LOG_ENABLED = _env_bool("TRADE_DECISIONS_LOG_ENABLED", "true")
TRADE_DECISIONS_LOG_FILE = os.getenv("TRADE_DECISIONS_LOG_FILE", os.path.join(LOG_DIR, "trade_decisions.jsonl"))
