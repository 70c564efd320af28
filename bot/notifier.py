"""Operator notifications over Telegram."""

import logging

from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup, LinkPreviewOptions

import config
from bot import messages
from trading.models import ClosedTrade, Position

logger = logging.getLogger(__name__)


class Notifier:
    async def send(self, text: str, token_id: str = "") -> bool:
        raise NotImplementedError

    async def position_opened(self, position: Position, tx_id: str = "") -> bool:
        return await self.send(messages.format_buy(position, tx_id), position.token_id)

    async def trade_closed(self, trade: ClosedTrade) -> bool:
        return await self.send(messages.format_exit(trade), trade.token_id)

    async def started(self, mode: str, summary: dict) -> bool:
        return await self.send(messages.format_startup(mode, summary))

    async def halted(self, reason: str) -> bool:
        return await self.send(messages.format_halt(reason))

    async def shutdown(self, positions: list[Position]) -> bool:
        return await self.send(messages.format_shutdown(positions))

    async def close(self) -> None:
        return None


class NullNotifier(Notifier):
    """Keeps a copy of every message; used when Telegram is not configured and in tests."""

    def __init__(self) -> None:
        self.sent: list[str] = []

    async def send(self, text: str, token_id: str = "") -> bool:
        self.sent.append(text)
        return True


class TelegramNotifier(Notifier):
    def __init__(self, token: str, chat_id: int, bot: Bot | None = None) -> None:
        self.chat_id = int(chat_id)
        self.bot = bot or Bot(token=token)

    @staticmethod
    def _chart_keyboard(token_id: str) -> InlineKeyboardMarkup | None:
        if not token_id:
            return None
        return InlineKeyboardMarkup(
            [[InlineKeyboardButton("📈 Chart", url=f"https://dexscreener.com/{config.CHAIN_ID}/{token_id}")]]
        )

    async def send(self, text: str, token_id: str = "") -> bool:
        try:
            await self.bot.send_message(
                chat_id=self.chat_id,
                text=text,
                parse_mode="HTML",
                reply_markup=self._chart_keyboard(token_id),
                link_preview_options=LinkPreviewOptions(is_disabled=True),
            )
            return True
        except Exception as exc:
            logger.warning("NOTIFY_FAIL chat_id=%s err=%s", self.chat_id, exc)
            return False

    async def close(self) -> None:
        try:
            await self.bot.shutdown()
        except Exception as exc:
            logger.debug("Telegram bot shutdown failed: %s", exc)


def build_notifier() -> Notifier:
    if config.TELEGRAM_BOT_TOKEN and config.TELEGRAM_CHAT_ID:
        return TelegramNotifier(config.TELEGRAM_BOT_TOKEN, config.TELEGRAM_CHAT_ID)
    logger.info("Telegram not configured; notifications are kept in memory only.")
    return NullNotifier()
