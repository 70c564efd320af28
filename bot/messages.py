"""Message templates."""

from html import escape

from config import QUOTE_SYMBOL
from trading.models import ClosedTrade, Position
from utils.addressing import short_address

STARTUP_MESSAGE = (
    "🚀 <b>Scalper started</b>\n\n"
    "Mode: <b>{mode}</b>\n"
    "Open positions: <b>{open_positions}</b>\n"
    "Session P&L: <b>{cumulative_pnl:+.4f} {quote}</b>\n"
    "Halted: <b>{halted}</b>"
)

BUY_TEMPLATE = (
    "🟢 <b>BUY {symbol}</b>\n\n"
    "Token: <code>{token}</code>\n"
    "Entry: <b>${price:.8g}</b>\n"
    "Size: <b>{size:.4f} {quote}</b>\n"
    "Tags: {tags}\n"
    "Tx: <code>{tx_id}</code>"
)

PARTIAL_TEMPLATE = (
    "🟡 <b>PARTIAL {symbol}</b> ({reason})\n\n"
    "Sold: <b>{sell_percent:.0f}%</b> at <b>${price:.8g}</b>\n"
    "P&L: <b>{pnl:+.4f}</b> ({pnl_percent:+.1f}%)"
)

CLOSE_TEMPLATE = (
    "{icon} <b>CLOSE {symbol}</b> ({reason})\n\n"
    "Exit: <b>${price:.8g}</b>\n"
    "P&L: <b>{pnl:+.4f}</b> ({pnl_percent:+.1f}%)\n"
    "Held: <b>{held}</b>"
)

HALT_TEMPLATE = (
    "🛑 <b>Circuit breaker tripped</b>\n\n"
    "Reason: <b>{reason}</b>\n"
    "New entries are blocked until <code>main.py resume</code>."
)

SHUTDOWN_TEMPLATE = (
    "⏹ <b>Scalper stopped</b>\n\n"
    "Open positions left for manual action: <b>{count}</b>\n"
    "{lines}"
)


def _held(seconds: float) -> str:
    minutes, secs = divmod(int(max(0.0, seconds)), 60)
    return f"{minutes}m {secs:02d}s"


def format_startup(mode: str, summary: dict) -> str:
    return STARTUP_MESSAGE.format(
        mode=escape(mode),
        open_positions=summary.get("open_positions", 0),
        cumulative_pnl=float(summary.get("cumulative_pnl", 0.0) or 0.0),
        quote=QUOTE_SYMBOL,
        halted="yes" if summary.get("halted") else "no",
    )


def format_buy(position: Position, tx_id: str = "") -> str:
    return BUY_TEMPLATE.format(
        symbol=escape(position.symbol or "N/A"),
        token=escape(position.token_id),
        price=position.entry_price,
        size=position.initial_size,
        quote=QUOTE_SYMBOL,
        tags=escape(", ".join(sorted(position.tags)) or "-"),
        tx_id=escape(tx_id or "-"),
    )


def format_exit(trade: ClosedTrade) -> str:
    if trade.partial:
        return PARTIAL_TEMPLATE.format(
            symbol=escape(trade.symbol or "N/A"),
            reason=escape(trade.exit_reason),
            sell_percent=trade.sell_percent,
            price=trade.exit_price,
            pnl=trade.pnl,
            pnl_percent=trade.pnl_percent,
        )
    return CLOSE_TEMPLATE.format(
        icon="✅" if trade.pnl_percent >= 0 else "🔴",
        symbol=escape(trade.symbol or "N/A"),
        reason=escape(trade.exit_reason),
        price=trade.exit_price,
        pnl=trade.pnl,
        pnl_percent=trade.pnl_percent,
        held=_held(trade.hold_seconds),
    )


def format_halt(reason: str) -> str:
    return HALT_TEMPLATE.format(reason=escape(reason))


def format_shutdown(positions: list[Position]) -> str:
    lines = "\n".join(
        f"- {escape(p.symbol or 'N/A')} <code>{escape(short_address(p.token_id))}</code> "
        f"size={p.size:.4f} pnl={p.pnl_percent:+.1f}%"
        for p in positions
    )
    return SHUTDOWN_TEMPLATE.format(count=len(positions), lines=lines)
