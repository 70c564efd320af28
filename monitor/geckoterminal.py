"""GeckoTerminal new-pool and trending-pool feeds."""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from config import (
    GECKO_NETWORK,
    GECKOTERMINAL_API,
    PUMP_FUN_DEX_ID,
    SOURCE_DISCOVERY_MIN_LIQUIDITY_USD,
    SOURCE_FRESH_MAX_AGE_MINUTES,
    SOURCE_MAX_ROWS,
    SOURCE_PUMP_FUN_MIN_LIQUIDITY_USD,
)
from monitor.sources import CandidateSource, SourceHit, age_hours_since, opt_float, opt_int, parse_rfc3339
from trading.models import TAG_GECKO_NEW, TAG_GECKO_TREND, TAG_PUMP_FUN, MarketSnapshot
from utils.addressing import normalize_address
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)


def _relationship_id(pool: dict[str, Any], name: str) -> str:
    return str((((pool.get("relationships") or {}).get(name) or {}).get("data") or {}).get("id") or "")


def pool_token_id(pool: dict[str, Any]) -> str:
    """Base token mint; relationship ids look like `<network>_<mint>`."""
    raw = _relationship_id(pool, "base_token")
    prefix = f"{GECKO_NETWORK}_"
    return normalize_address(raw[len(prefix) :] if raw.startswith(prefix) else raw)


def is_pump_fun(pool: dict[str, Any]) -> bool:
    return _relationship_id(pool, "dex") == PUMP_FUN_DEX_ID


def pool_snapshot(pool: dict[str, Any], now: Optional[datetime] = None) -> MarketSnapshot:
    now = now or datetime.now(timezone.utc)
    attrs = pool.get("attributes") or {}
    change = attrs.get("price_change_percentage") or {}
    txns_h1 = (attrs.get("transactions") or {}).get("h1") or {}
    name = str(attrs.get("name") or "")
    return MarketSnapshot(
        symbol=name.split("/")[0].strip() or None,
        price_usd=opt_float(attrs.get("base_token_price_usd")),
        change_5m=opt_float(change.get("m5")),
        change_1h=opt_float(change.get("h1")),
        change_24h=opt_float(change.get("h24")),
        liquidity_usd=opt_float(attrs.get("reserve_in_usd")),
        buys=opt_int(txns_h1.get("buys")),
        sells=opt_int(txns_h1.get("sells")),
        age_hours=age_hours_since(parse_rfc3339(attrs.get("pool_created_at")), now),
        fetched_at=now,
    )


class GeckoTerminalClient:
    def __init__(self, http: ResilientHttpClient) -> None:
        self._http = http

    async def pools(self, listing: str) -> list[dict[str, Any]]:
        url = f"{GECKOTERMINAL_API}/networks/{GECKO_NETWORK}/{listing}"
        result = await self._http.get_json(
            url,
            source="geckoterminal",
            params={"page": 1},
            headers={"Accept": "application/json"},
        )
        if not result.ok or not isinstance(result.data, dict):
            logger.warning("GECKO_FETCH_FAIL listing=%s status=%s err=%s", listing, result.status, result.error)
            return []
        return [p for p in result.data.get("data") or [] if isinstance(p, dict)]


class GeckoNewPoolsSource(CandidateSource):
    """Pools younger than an hour. pump.fun launches get their own tag and a lower liquidity bar."""

    name = "gecko_new_pools"

    def __init__(self, client: GeckoTerminalClient) -> None:
        self.client = client

    async def fetch(self) -> list[SourceHit]:
        now = datetime.now(timezone.utc)
        hits: list[SourceHit] = []
        for pool in await self.client.pools("new_pools"):
            token_id = pool_token_id(pool)
            if not token_id:
                continue
            pump = is_pump_fun(pool)
            snapshot = pool_snapshot(pool, now)
            min_liq = SOURCE_PUMP_FUN_MIN_LIQUIDITY_USD if pump else SOURCE_DISCOVERY_MIN_LIQUIDITY_USD
            if (snapshot.liquidity_usd or 0.0) < min_liq:
                continue
            if snapshot.age_hours is None or snapshot.age_hours * 60 > SOURCE_FRESH_MAX_AGE_MINUTES:
                continue
            hits.append(SourceHit(token_id, TAG_PUMP_FUN if pump else TAG_GECKO_NEW, snapshot))
            if len(hits) >= SOURCE_MAX_ROWS:
                break
        return hits


class GeckoTrendingSource(CandidateSource):
    name = "gecko_trending"

    def __init__(self, client: GeckoTerminalClient) -> None:
        self.client = client

    async def fetch(self) -> list[SourceHit]:
        now = datetime.now(timezone.utc)
        hits: list[SourceHit] = []
        for pool in await self.client.pools("trending_pools"):
            token_id = pool_token_id(pool)
            snapshot = pool_snapshot(pool, now)
            if token_id and (snapshot.liquidity_usd or 0.0) >= SOURCE_DISCOVERY_MIN_LIQUIDITY_USD:
                hits.append(SourceHit(token_id, TAG_GECKO_TREND, snapshot))
            if len(hits) >= 10:
                break
        return hits
