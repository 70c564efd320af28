"""DexScreener discovery feeds, token snapshots and price lookup."""

import asyncio
import logging
import random
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from config import (
    CHAIN_ID,
    DEX_RETRIES,
    DEX_SEARCH_PICKS_PER_SCAN,
    DEX_SEARCH_TERMS,
    DEXSCREENER_API,
    MAX_AGE_HOURS,
    MIN_5M_CHANGE,
    SOURCE_DISCOVERY_MIN_LIQUIDITY_USD,
    SOURCE_MAX_ROWS,
    SOURCE_NEW_PAIRS_MAX_AGE_HOURS,
    VOLUME_SPIKE_BOOSTED_LIMIT,
    VOLUME_SPIKE_HISTORY_TTL_SECONDS,
    VOLUME_SPIKE_MIN_BUY_SELL_RATIO,
    VOLUME_SPIKE_MIN_MULTIPLE,
    VOLUME_SPIKE_TRACKED_LIMIT,
)
from monitor.sources import CandidateSource, SourceHit, age_hours_since, opt_float, opt_int
from monitor.token_scorer import ViralScorer
from trading.models import (
    TAG_BOOST,
    TAG_GAINER,
    TAG_NEW,
    TAG_PROFILE,
    TAG_SEARCH,
    TAG_TREND,
    TAG_VOLUME_SPIKE,
    MarketSnapshot,
)
from utils.addressing import normalize_address, short_address
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

# /tokens/v1 accepts at most this many comma-separated addresses.
_TOKENS_BATCH_SIZE = 30


def _pair_created_at(pair: dict[str, Any]) -> Optional[datetime]:
    created_ms = opt_float(pair.get("pairCreatedAt"))
    if not created_ms:
        return None
    return datetime.fromtimestamp(created_ms / 1000, tz=timezone.utc)


def pair_snapshot(pair: dict[str, Any], now: Optional[datetime] = None) -> MarketSnapshot:
    now = now or datetime.now(timezone.utc)
    base = pair.get("baseToken") or {}
    change = pair.get("priceChange") or {}
    txns_h1 = (pair.get("txns") or {}).get("h1") or {}
    return MarketSnapshot(
        symbol=base.get("symbol") or None,
        price_usd=opt_float(pair.get("priceUsd")),
        change_5m=opt_float(change.get("m5")),
        change_1h=opt_float(change.get("h1")),
        change_24h=opt_float(change.get("h24")),
        liquidity_usd=opt_float((pair.get("liquidity") or {}).get("usd")),
        buys=opt_int(txns_h1.get("buys")),
        sells=opt_int(txns_h1.get("sells")),
        age_hours=age_hours_since(_pair_created_at(pair), now),
        fetched_at=now,
    )


def best_pair(pairs: Any) -> Optional[dict[str, Any]]:
    """Deepest-liquidity pair on our chain with a usable price."""
    best: Optional[dict[str, Any]] = None
    best_liq = -1.0
    for pair in pairs or []:
        if not isinstance(pair, dict) or str(pair.get("chainId", "")).lower() != CHAIN_ID:
            continue
        price = opt_float(pair.get("priceUsd"))
        if price is None or price <= 0:
            continue
        liq = opt_float((pair.get("liquidity") or {}).get("usd")) or 0.0
        if liq > best_liq:
            best, best_liq = pair, liq
    return best


class DexScreenerClient:
    def __init__(self, http: ResilientHttpClient) -> None:
        self._http = http

    async def _fetch_json(self, url: str, source: str = "dexscreener", retries: int | None = None) -> Any | None:
        result = await self._http.get_json(
            url,
            source=source,
            max_attempts=(retries if retries is not None else DEX_RETRIES),
        )
        if result.ok:
            return result.data
        logger.warning("DEX_FETCH_FAIL source=%s status=%s err=%s url=%s", source, result.status, result.error, url)
        return None

    async def search_pairs(self, query: str) -> list[dict[str, Any]]:
        data = await self._fetch_json(f"{DEXSCREENER_API}/latest/dex/search?q={query}")
        if not isinstance(data, dict):
            return []
        return [
            p for p in data.get("pairs") or [] if isinstance(p, dict) and str(p.get("chainId", "")).lower() == CHAIN_ID
        ]

    async def token_rows(self, path: str, source: str = "dex_profiles") -> list[dict[str, Any]]:
        """Profile/boost listings: flat rows carrying `chainId` and `tokenAddress`."""
        data = await self._fetch_json(f"{DEXSCREENER_API}{path}", source=source, retries=1)
        if not isinstance(data, list):
            return []
        out = []
        for row in data:
            if not isinstance(row, dict) or str(row.get("chainId", "")).lower() != CHAIN_ID:
                continue
            if normalize_address(row.get("tokenAddress")):
                out.append(row)
        return out

    async def token_snapshot(self, token_id: str) -> Optional[MarketSnapshot]:
        token_id = normalize_address(token_id)
        if not token_id:
            return None
        data = await self._fetch_json(f"{DEXSCREENER_API}/latest/dex/tokens/{token_id}", retries=1)
        if not isinstance(data, dict):
            return None
        pair = best_pair(data.get("pairs"))
        return pair_snapshot(pair) if pair else None

    async def price(self, token_id: str) -> Optional[float]:
        snapshot = await self.token_snapshot(token_id)
        if snapshot is None or snapshot.price_usd is None or snapshot.price_usd <= 0:
            return None
        return snapshot.price_usd

    async def pairs_by_token(self, token_ids: list[str]) -> dict[str, dict[str, Any]]:
        out: dict[str, dict[str, Any]] = {}
        for start in range(0, len(token_ids), _TOKENS_BATCH_SIZE):
            chunk = token_ids[start : start + _TOKENS_BATCH_SIZE]
            data = await self._fetch_json(f"{DEXSCREENER_API}/tokens/v1/{CHAIN_ID}/{','.join(chunk)}", retries=1)
            by_token: dict[str, list[dict[str, Any]]] = {}
            for pair in data if isinstance(data, list) else []:
                if not isinstance(pair, dict):
                    continue
                address = normalize_address((pair.get("baseToken") or {}).get("address"))
                by_token.setdefault(address, []).append(pair)
            for address, pairs in by_token.items():
                pair = best_pair(pairs)
                if pair is not None:
                    out[address] = pair
        return out

    async def close(self) -> None:
        await self._http.close()


def _fresh_pairs(pairs: list[dict[str, Any]], max_age_hours: float, now: datetime) -> list[dict[str, Any]]:
    out = []
    for pair in pairs:
        age = age_hours_since(_pair_created_at(pair), now)
        liq = opt_float((pair.get("liquidity") or {}).get("usd")) or 0.0
        if age is not None and age <= max_age_hours and liq >= SOURCE_DISCOVERY_MIN_LIQUIDITY_USD:
            out.append(pair)
    return out


def _change_5m(pair: dict[str, Any]) -> float:
    return opt_float((pair.get("priceChange") or {}).get("m5")) or 0.0


def _hits_from_pairs(pairs: list[dict[str, Any]], tag: str, now: datetime) -> list[SourceHit]:
    hits = []
    for pair in pairs:
        token_id = normalize_address((pair.get("baseToken") or {}).get("address"))
        if token_id:
            hits.append(SourceHit(token_id, tag, pair_snapshot(pair, now)))
    return hits


class ProfilesSource(CandidateSource):
    name = "dex_profiles"

    def __init__(self, client: DexScreenerClient) -> None:
        self.client = client

    async def fetch(self) -> list[SourceHit]:
        rows = await self.client.token_rows("/token-profiles/latest/v1")
        now = datetime.now(timezone.utc)
        return [
            SourceHit(normalize_address(row["tokenAddress"]), TAG_PROFILE, MarketSnapshot(fetched_at=now))
            for row in rows[:SOURCE_MAX_ROWS]
        ]


class SearchSource(CandidateSource):
    """A random handful of meme search terms per scan, keeping young pairs that are ticking up."""

    name = "dex_search"

    def __init__(self, client: DexScreenerClient, rng: random.Random | None = None) -> None:
        self.client = client
        self._rng = rng or random.Random()

    async def fetch(self) -> list[SourceHit]:
        terms = self._rng.sample(DEX_SEARCH_TERMS, min(DEX_SEARCH_PICKS_PER_SCAN, len(DEX_SEARCH_TERMS)))
        results = await asyncio.gather(*[self.client.search_pairs(term) for term in terms], return_exceptions=True)
        now = datetime.now(timezone.utc)
        hits: list[SourceHit] = []
        seen: set[str] = set()
        for term, pairs in zip(terms, results):
            if isinstance(pairs, Exception):
                logger.warning("Dex search failed term=%s: %s", term, pairs)
                continue
            rising = [p for p in _fresh_pairs(pairs, MAX_AGE_HOURS, now) if _change_5m(p) > 0]
            for hit in _hits_from_pairs(rising[:5], TAG_SEARCH, now):
                if hit.token_id not in seen:
                    seen.add(hit.token_id)
                    hits.append(hit)
        return hits


class GainersSource(CandidateSource):
    name = "dex_gainers"

    def __init__(self, client: DexScreenerClient, query: str = "pump") -> None:
        self.client = client
        self.query = query

    async def fetch(self) -> list[SourceHit]:
        now = datetime.now(timezone.utc)
        pairs = _fresh_pairs(await self.client.search_pairs(self.query), MAX_AGE_HOURS, now)
        gainers = sorted((p for p in pairs if _change_5m(p) >= MIN_5M_CHANGE), key=_change_5m, reverse=True)
        return _hits_from_pairs(gainers[:10], TAG_GAINER, now)


class NewPairsSource(CandidateSource):
    name = "dex_new_pairs"

    def __init__(self, client: DexScreenerClient, query: str = "new") -> None:
        self.client = client
        self.query = query

    async def fetch(self) -> list[SourceHit]:
        now = datetime.now(timezone.utc)
        pairs = _fresh_pairs(await self.client.search_pairs(self.query), SOURCE_NEW_PAIRS_MAX_AGE_HOURS, now)
        return _hits_from_pairs(pairs[:10], TAG_NEW, now)


class BoostsSource(CandidateSource):
    """Paid boosts (`top` -> TREND, `latest` -> BOOST), resolved to pairs and given a viral score."""

    def __init__(self, client: DexScreenerClient, scorer: ViralScorer, *, kind: str = "latest") -> None:
        if kind not in ("top", "latest"):
            raise ValueError(f"unknown boost listing: {kind}")
        self.client = client
        self.scorer = scorer
        self.kind = kind
        self.tag = TAG_TREND if kind == "top" else TAG_BOOST
        self.name = f"dex_boosts_{kind}"

    async def fetch(self) -> list[SourceHit]:
        rows = (await self.client.token_rows(f"/token-boosts/{self.kind}/v1"))[:10]
        boosts: dict[str, float] = {}
        for row in rows:
            address = normalize_address(row["tokenAddress"])
            amount = opt_float(row.get("totalAmount")) or opt_float(row.get("amount")) or 0.0
            boosts[address] = max(boosts.get(address, 0.0), amount)
        if not boosts:
            return []
        pairs = await self.client.pairs_by_token(list(boosts))
        now = datetime.now(timezone.utc)
        hits: list[SourceHit] = []
        for address, amount in boosts.items():
            pair = pairs.get(address)
            snapshot = pair_snapshot(pair, now) if pair else MarketSnapshot(fetched_at=now)
            txns_24h = None
            volume_24h = None
            if pair:
                h24 = (pair.get("txns") or {}).get("h24") or {}
                txns_24h = (opt_int(h24.get("buys")) or 0) + (opt_int(h24.get("sells")) or 0)
                volume_24h = opt_float((pair.get("volume") or {}).get("h24"))
            scored = self.scorer.calculate_score(
                address,
                boosts=amount,
                boosted=True,
                txns_24h=txns_24h,
                change_1h=snapshot.change_1h,
                volume_24h=volume_24h,
            )
            hits.append(SourceHit(address, self.tag, snapshot.merged_with(MarketSnapshot(score=float(scored["score"])))))
        return hits


def _txns_1h(pair: dict[str, Any]) -> int:
    h1 = (pair.get("txns") or {}).get("h1") or {}
    return (opt_int(h1.get("buys")) or 0) + (opt_int(h1.get("sells")) or 0)


def buy_sell_ratio(buys: int, sells: int) -> float:
    if sells > 0:
        return buys / sells
    return 2.0 if buys > 0 else 1.0


class VolumeSpikeSource(CandidateSource):
    """Tokens whose 1h volume or txn count jumped by a multiple since the previous look.

    Watches the top boosts plus tokens already seen in the last hour. A token's first
    look only records a baseline, so spikes surface from the second scan on.
    """

    name = "dex_volume_spikes"

    def __init__(
        self,
        client: DexScreenerClient,
        *,
        min_multiple: float = VOLUME_SPIKE_MIN_MULTIPLE,
        min_buy_sell_ratio: float = VOLUME_SPIKE_MIN_BUY_SELL_RATIO,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.min_multiple = min_multiple
        self.min_buy_sell_ratio = min_buy_sell_ratio
        self._clock = clock
        # token -> (volume_1h, txns_1h, seen_at)
        self._history: dict[str, tuple[float, int, float]] = {}

    def _watchlist(self, boosted: list[str]) -> list[str]:
        tracked = [t for t in self._history if t not in boosted][:VOLUME_SPIKE_TRACKED_LIMIT]
        return list(dict.fromkeys(boosted[:VOLUME_SPIKE_BOOSTED_LIMIT] + tracked))

    def _prune(self, now: float) -> None:
        expired = [t for t, (_, _, seen) in self._history.items() if now - seen > VOLUME_SPIKE_HISTORY_TTL_SECONDS]
        for token_id in expired:
            self._history.pop(token_id, None)

    async def fetch(self) -> list[SourceHit]:
        self._prune(self._clock())
        rows = await self.client.token_rows("/token-boosts/top/v1")
        boosted = list(dict.fromkeys(normalize_address(row["tokenAddress"]) for row in rows))
        watch = self._watchlist(boosted)
        if not watch:
            return []
        pairs = await self.client.pairs_by_token(watch)
        now = self._clock()
        wall_now = datetime.now(timezone.utc)

        spikes: list[tuple[float, SourceHit]] = []
        for token_id in watch:
            pair = pairs.get(token_id)
            if pair is None:
                continue
            volume_1h = opt_float((pair.get("volume") or {}).get("h1")) or 0.0
            txns_1h = _txns_1h(pair)
            previous = self._history.get(token_id)
            self._history[token_id] = (volume_1h, txns_1h, now)
            if previous is None:
                continue

            volume_multiple = volume_1h / (previous[0] or 1.0)
            activity_multiple = txns_1h / (previous[1] or 1)
            snapshot = pair_snapshot(pair, wall_now)
            ratio = buy_sell_ratio(snapshot.buys or 0, snapshot.sells or 0)
            spiking = volume_multiple >= self.min_multiple or activity_multiple >= self.min_multiple
            if spiking and ratio > self.min_buy_sell_ratio:
                logger.info(
                    "VOLUME_SPIKE token=%s volume_x=%.1f activity_x=%.1f buy_sell=%.2f",
                    short_address(token_id),
                    volume_multiple,
                    activity_multiple,
                    ratio,
                )
                spikes.append((volume_multiple + activity_multiple, SourceHit(token_id, TAG_VOLUME_SPIKE, snapshot)))

        spikes.sort(key=lambda item: item[0], reverse=True)
        return [hit for _, hit in spikes]
