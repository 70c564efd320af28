"""Whale-copy feed: recent swap buys by tracked wallets, from Helius enhanced transactions."""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Optional

from config import (
    HELIUS_API,
    SOURCE_MAX_ROWS,
    WHALE_IGNORED_MINTS,
    WHALE_MAX_AGE_MINUTES,
    WHALE_TX_LIMIT,
)
from monitor.sources import CandidateSource, SourceHit, opt_float
from trading.models import TAG_WHALE, MarketSnapshot
from utils.addressing import normalize_address, short_address
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)


class HeliusClient:
    def __init__(self, http: ResilientHttpClient, api_key: str, base_url: str = HELIUS_API) -> None:
        self._http = http
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")

    @property
    def enabled(self) -> bool:
        return bool(self._api_key)

    async def wallet_transactions(self, wallet: str, limit: int = WHALE_TX_LIMIT) -> list[dict[str, Any]]:
        if not self.enabled:
            return []
        result = await self._http.get_json(
            f"{self._base_url}/addresses/{wallet}/transactions",
            source="helius",
            params={"api-key": self._api_key, "limit": limit},
        )
        if not result.ok or not isinstance(result.data, list):
            logger.warning("HELIUS_FETCH_FAIL wallet=%s status=%s err=%s", short_address(wallet), result.status, result.error)
            return []
        return [tx for tx in result.data if isinstance(tx, dict)]


def _is_swap(tx: dict[str, Any]) -> bool:
    return tx.get("type") == "SWAP" or "swap" in str(tx.get("description") or "").lower()


def swap_buys(transactions: Iterable[dict[str, Any]], wallet: str) -> list[tuple[str, datetime]]:
    """(mint, time) for every token the wallet received in a swap."""
    out: list[tuple[str, datetime]] = []
    for tx in transactions:
        if not _is_swap(tx):
            continue
        seconds = opt_float(tx.get("timestamp"))
        if seconds is None:
            continue
        at = datetime.fromtimestamp(seconds, tz=timezone.utc)
        for transfer in tx.get("tokenTransfers") or []:
            if not isinstance(transfer, dict):
                continue
            mint = normalize_address(transfer.get("mint"))
            if mint and transfer.get("toUserAccount") == wallet:
                out.append((mint, at))
    return out


class WhaleCopySource(CandidateSource):
    """Tokens bought by tracked wallets within the last `max_age`, newest first."""

    name = "helius_whales"

    def __init__(
        self,
        client: HeliusClient,
        wallets: list[tuple[str, str]],
        *,
        max_age: timedelta = timedelta(minutes=WHALE_MAX_AGE_MINUTES),
        ignored_mints: Iterable[str] = WHALE_IGNORED_MINTS,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.client = client
        self.wallets = list(wallets)
        self.max_age = max_age
        self.ignored_mints = frozenset(ignored_mints)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def fetch(self) -> list[SourceHit]:
        if not self.client.enabled or not self.wallets:
            return []
        results = await asyncio.gather(
            *[self.client.wallet_transactions(address) for address, _ in self.wallets],
            return_exceptions=True,
        )
        now = self._clock()
        cutoff = now - self.max_age
        latest: dict[str, tuple[datetime, str]] = {}
        for (address, label), txs in zip(self.wallets, results):
            if isinstance(txs, Exception):
                logger.warning("WHALE_CHECK_FAIL whale=%s err=%s", label, txs)
                continue
            for mint, at in swap_buys(txs, address):
                if at <= cutoff or mint in self.ignored_mints:
                    continue
                if mint not in latest or at > latest[mint][0]:
                    latest[mint] = (at, label)

        ordered = sorted(latest.items(), key=lambda item: item[1][0], reverse=True)[:SOURCE_MAX_ROWS]
        for mint, (at, label) in ordered:
            logger.info("WHALE_BUY whale=%s token=%s age_s=%.0f", label, short_address(mint), (now - at).total_seconds())
        return [SourceHit(mint, TAG_WHALE, MarketSnapshot(fetched_at=now)) for mint, _ in ordered]
