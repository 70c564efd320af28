from __future__ import annotations

import asyncio
import unittest
from datetime import datetime, timedelta, timezone

import config
from monitor.dexscreener import DexScreenerClient, VolumeSpikeSource, best_pair, buy_sell_ratio, pair_snapshot
from monitor.geckoterminal import GeckoNewPoolsSource, GeckoTerminalClient, pool_snapshot, pool_token_id
from monitor.helius import HeliusClient, WhaleCopySource, swap_buys
from monitor.sources import CandidateSource, SourceHit, fetch_all, opt_float
from trading.models import TAG_GECKO_NEW, TAG_PUMP_FUN, TAG_VOLUME_SPIKE, TAG_WHALE, MarketSnapshot
from utils.http_client import HttpResult, ResilientHttpClient

MINT = "7GCihgDB8fe6KNjn2MYtkzZcRjQy3t9GHdC8uHYmW2hr"
OTHER_MINT = "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin"
WHALE = "5Q544fKrFoe6tsEbD7S8EmxGTJYAKtTVhAW5Q5pge4j1"
USDC = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


class FakeHttp:
    def __init__(self, routes: dict[str, HttpResult]) -> None:
        self.routes = routes
        self.calls: list[str] = []

    async def get_json(self, url: str, **kwargs: object) -> HttpResult:
        self.calls.append(url)
        for fragment, result in self.routes.items():
            if fragment in url:
                return result
        return HttpResult(ok=False, status=404, data=None, error="http_status_404")

    async def close(self) -> None:
        return None


class StaticSource(CandidateSource):
    def __init__(self, name: str, hits: list[SourceHit]) -> None:
        self.name = name
        self.hits = hits

    async def fetch(self) -> list[SourceHit]:
        return list(self.hits)


class BrokenSource(CandidateSource):
    name = "broken"

    async def fetch(self) -> list[SourceHit]:
        raise RuntimeError("feed is down")


class SlowSource(CandidateSource):
    name = "slow"

    async def fetch(self) -> list[SourceHit]:
        await asyncio.sleep(5)
        return []


def _pair(chain: str = "solana", price: str = "0.002", liquidity: float = 8000.0, **extra: object) -> dict:
    pair = {
        "chainId": chain,
        "baseToken": {"address": MINT, "symbol": "CAT"},
        "priceUsd": price,
        "priceChange": {"m5": 12.5, "h1": 40, "h24": None},
        "liquidity": {"usd": liquidity},
        "txns": {"h1": {"buys": 120, "sells": 30}},
        "pairCreatedAt": int((NOW - timedelta(minutes=30)).timestamp() * 1000),
    }
    pair.update(extra)
    return pair


class FetchAllTests(unittest.IsolatedAsyncioTestCase):
    async def test_failing_and_slow_adapters_contribute_nothing(self) -> None:
        hit = SourceHit(MINT, TAG_PUMP_FUN, MarketSnapshot())
        sources = [StaticSource("first", [hit]), BrokenSource(), SlowSource(), StaticSource("last", [hit, hit])]
        with self.assertLogs("monitor.sources", level="WARNING") as logs:
            results = await fetch_all(sources, timeout_seconds=0.05)
        self.assertEqual([len(r) for r in results], [1, 0, 0, 2])
        joined = "\n".join(logs.output)
        self.assertIn("SOURCE_FAIL source=broken", joined)
        self.assertIn("SOURCE_TIMEOUT source=slow", joined)

    async def test_hits_with_malformed_mints_are_dropped(self) -> None:
        good = SourceHit(MINT, TAG_PUMP_FUN, MarketSnapshot())
        bad = [
            SourceHit(token_id, TAG_PUMP_FUN, MarketSnapshot())
            for token_id in ("0xdeadbeef", "", "OtherMint1111111111111111111111111111111111")
        ]
        with self.assertLogs("monitor.sources", level="INFO") as logs:
            results = await fetch_all([StaticSource("mixed", [good, *bad])], timeout_seconds=1.0)
        self.assertEqual(results, [[good]])
        self.assertIn("dropped=3", "\n".join(logs.output))

    def test_opt_float_keeps_unknowns_unknown(self) -> None:
        self.assertIsNone(opt_float(None))
        self.assertIsNone(opt_float(""))
        self.assertIsNone(opt_float("n/a"))
        self.assertIsNone(opt_float("nan"))
        self.assertEqual(opt_float("0"), 0.0)


class DexScreenerParsingTests(unittest.IsolatedAsyncioTestCase):
    def test_pair_snapshot_maps_fields_and_keeps_missing_as_none(self) -> None:
        snap = pair_snapshot(_pair(), NOW)
        self.assertEqual(snap.symbol, "CAT")
        self.assertAlmostEqual(snap.price_usd, 0.002)
        self.assertEqual(snap.change_5m, 12.5)
        self.assertIsNone(snap.change_24h)
        self.assertEqual((snap.buys, snap.sells), (120, 30))
        self.assertAlmostEqual(snap.age_hours, 0.5)

    def test_best_pair_prefers_deepest_liquidity_on_chain(self) -> None:
        shallow = _pair(liquidity=3000.0)
        deep = _pair(liquidity=50000.0)
        other_chain = _pair(chain="base", liquidity=900000.0)
        no_price = _pair(price="", liquidity=700000.0)
        self.assertIs(best_pair([shallow, other_chain, deep, no_price]), deep)
        self.assertIsNone(best_pair([other_chain]))
        self.assertIsNone(best_pair(None))

    async def test_token_snapshot_and_price(self) -> None:
        http = FakeHttp(
            {f"/latest/dex/tokens/{MINT}": HttpResult(ok=True, status=200, data={"pairs": [_pair()]})}
        )
        client = DexScreenerClient(http)
        snap = await client.token_snapshot(MINT)
        self.assertEqual(snap.symbol, "CAT")
        self.assertAlmostEqual(await client.price(MINT), 0.002)

    async def test_price_unavailable_on_fetch_failure(self) -> None:
        client = DexScreenerClient(FakeHttp({}))
        with self.assertLogs("monitor.dexscreener", level="WARNING"):
            self.assertIsNone(await client.price(MINT))
        self.assertIsNone(await client.token_snapshot(""))


def _pool(dex: str, liquidity: str, created: datetime) -> dict:
    return {
        "attributes": {
            "name": "CAT / SOL",
            "base_token_price_usd": "0.0021",
            "reserve_in_usd": liquidity,
            "pool_created_at": created.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "price_change_percentage": {"m5": "9.1", "h1": "33", "h24": "120"},
            "transactions": {"h1": {"buys": 80, "sells": 20}},
        },
        "relationships": {
            "base_token": {"data": {"id": f"solana_{MINT}"}},
            "dex": {"data": {"id": dex}},
        },
    }


class GeckoTerminalTests(unittest.IsolatedAsyncioTestCase):
    def test_pool_parsing(self) -> None:
        pool = _pool("pump-fun", "2500", NOW - timedelta(minutes=15))
        self.assertEqual(pool_token_id(pool), MINT)
        snap = pool_snapshot(pool, NOW)
        self.assertEqual(snap.symbol, "CAT")
        self.assertAlmostEqual(snap.liquidity_usd, 2500.0)
        self.assertAlmostEqual(snap.change_5m, 9.1)
        self.assertAlmostEqual(snap.age_hours, 0.25)

    async def test_new_pools_tags_pump_fun_and_applies_floors(self) -> None:
        fresh = datetime.now(timezone.utc) - timedelta(minutes=10)
        stale = datetime.now(timezone.utc) - timedelta(hours=3)
        pools = [
            _pool("pump-fun", "2500", fresh),
            _pool("raydium", "2500", fresh),
            _pool("raydium", "9000", fresh),
            _pool("raydium", "9000", stale),
        ]
        http = FakeHttp({"/new_pools": HttpResult(ok=True, status=200, data={"data": pools})})
        hits = await GeckoNewPoolsSource(GeckoTerminalClient(http)).fetch()
        self.assertEqual([hit.tag for hit in hits], [TAG_PUMP_FUN, TAG_GECKO_NEW])
        self.assertTrue(all(hit.token_id == MINT for hit in hits))

    async def test_new_pools_failure_is_empty(self) -> None:
        http = FakeHttp({"/new_pools": HttpResult(ok=False, status=503, data=None, error="http_status_503")})
        with self.assertLogs("monitor.geckoterminal", level="WARNING"):
            self.assertEqual(await GeckoNewPoolsSource(GeckoTerminalClient(http)).fetch(), [])


def _spike_pair(token_id: str, volume_1h: float, buys: int, sells: int) -> dict:
    pair = _pair(txns={"h1": {"buys": buys, "sells": sells}}, volume={"h1": volume_1h, "h24": volume_1h * 10})
    pair["baseToken"] = {"address": token_id, "symbol": "CAT"}
    return pair


class VolumeSpikeTests(unittest.IsolatedAsyncioTestCase):
    def _http(self, pairs: list[dict]) -> FakeHttp:
        boosts = [{"chainId": "solana", "tokenAddress": MINT}, {"chainId": "solana", "tokenAddress": OTHER_MINT}]
        return FakeHttp(
            {
                "/token-boosts/top/v1": HttpResult(ok=True, status=200, data=boosts),
                "/tokens/v1/solana/": HttpResult(ok=True, status=200, data=pairs),
            }
        )

    async def test_first_look_is_baseline_then_spike_with_buy_pressure(self) -> None:
        http = self._http([_spike_pair(MINT, 1000.0, 60, 40), _spike_pair(OTHER_MINT, 1000.0, 60, 40)])
        clock = [0.0]
        source = VolumeSpikeSource(DexScreenerClient(http), clock=lambda: clock[0])
        self.assertEqual(await source.fetch(), [])

        clock[0] = 60.0
        http.routes["/tokens/v1/solana/"] = HttpResult(
            ok=True,
            status=200,
            data=[_spike_pair(MINT, 4000.0, 90, 30), _spike_pair(OTHER_MINT, 5000.0, 50, 50)],
        )
        hits = await source.fetch()
        self.assertEqual([(hit.token_id, hit.tag) for hit in hits], [(MINT, TAG_VOLUME_SPIKE)])
        self.assertEqual((hits[0].snapshot.buys, hits[0].snapshot.sells), (90, 30))

    async def test_activity_multiple_alone_counts(self) -> None:
        http = self._http([_spike_pair(MINT, 1000.0, 8, 2)])
        clock = [0.0]
        source = VolumeSpikeSource(DexScreenerClient(http), clock=lambda: clock[0])
        await source.fetch()
        clock[0] = 30.0
        http.routes["/tokens/v1/solana/"] = HttpResult(ok=True, status=200, data=[_spike_pair(MINT, 1100.0, 40, 10)])
        self.assertEqual([hit.token_id for hit in await source.fetch()], [MINT])

    async def test_stale_baseline_expires(self) -> None:
        http = self._http([_spike_pair(MINT, 1000.0, 60, 40)])
        clock = [0.0]
        source = VolumeSpikeSource(DexScreenerClient(http), clock=lambda: clock[0])
        await source.fetch()
        clock[0] = 7200.0
        http.routes["/tokens/v1/solana/"] = HttpResult(ok=True, status=200, data=[_spike_pair(MINT, 4000.0, 90, 30)])
        self.assertEqual(await source.fetch(), [])

    def test_buy_sell_ratio_without_sells(self) -> None:
        self.assertEqual(buy_sell_ratio(10, 0), 2.0)
        self.assertEqual(buy_sell_ratio(0, 0), 1.0)
        self.assertEqual(buy_sell_ratio(30, 10), 3.0)


def _swap(mint: str, to: str, at: datetime, kind: str = "SWAP") -> dict:
    return {
        "type": kind,
        "description": "",
        "timestamp": int(at.timestamp()),
        "signature": "sig",
        "tokenTransfers": [
            {"mint": USDC, "fromUserAccount": to, "toUserAccount": "pool"},
            {"mint": mint, "fromUserAccount": "pool", "toUserAccount": to},
        ],
    }


class WhaleCopyTests(unittest.IsolatedAsyncioTestCase):
    def test_swap_buys_keeps_only_received_tokens(self) -> None:
        txs = [
            _swap(MINT, WHALE, NOW),
            _swap(OTHER_MINT, WHALE, NOW, kind="TRANSFER"),
            {
                "type": "UNKNOWN",
                "description": "Whale swapped 2 SOL for CAT",
                "timestamp": NOW.timestamp(),
                "tokenTransfers": [{"mint": OTHER_MINT, "toUserAccount": WHALE}],
            },
        ]
        self.assertEqual(swap_buys(txs, WHALE), [(MINT, NOW), (OTHER_MINT, NOW)])

    async def test_recent_whale_buys_newest_first(self) -> None:
        txs = [
            _swap(MINT, WHALE, NOW - timedelta(minutes=5)),
            _swap(OTHER_MINT, WHALE, NOW - timedelta(minutes=1)),
            _swap("DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263", WHALE, NOW - timedelta(hours=2)),
        ]
        http = FakeHttp({f"/addresses/{WHALE}/transactions": HttpResult(ok=True, status=200, data=txs)})
        source = WhaleCopySource(HeliusClient(http, "key"), [(WHALE, "alpha")], clock=lambda: NOW)
        with self.assertLogs("monitor.helius", level="INFO"):
            hits = await source.fetch()
        self.assertEqual([hit.token_id for hit in hits], [OTHER_MINT, MINT])
        self.assertTrue(all(hit.tag == TAG_WHALE for hit in hits))

    async def test_without_api_key_nothing_is_fetched(self) -> None:
        http = FakeHttp({})
        source = WhaleCopySource(HeliusClient(http, ""), [(WHALE, "alpha")], clock=lambda: NOW)
        self.assertEqual(await source.fetch(), [])
        self.assertEqual(http.calls, [])

    async def test_failed_wallet_fetch_is_empty(self) -> None:
        http = FakeHttp({})
        source = WhaleCopySource(HeliusClient(http, "key"), [(WHALE, "alpha")], clock=lambda: NOW)
        with self.assertLogs("monitor.helius", level="WARNING"):
            self.assertEqual(await source.fetch(), [])


class HttpStatsTests(unittest.TestCase):
    def test_log_stats_reports_and_resets(self) -> None:
        client = ResilientHttpClient(timeout_seconds=5)
        counter = client._counter("dexscreener")
        counter.ok, counter.fail, counter.retries = 3, 1, 2
        counter.latency_total_ms, counter.latency_count = 400.0, 4
        with self.assertLogs("utils.http_client", level="INFO") as logs:
            stats = client.log_stats()
        self.assertEqual(stats["dexscreener"]["error_percent"], 25.0)
        self.assertEqual(stats["dexscreener"]["latency_avg_ms"], 100.0)
        self.assertIn("HTTP_STATS source=dexscreener ok=3 fail=1", logs.output[0])
        self.assertEqual(client.snapshot_stats(), {})


class BuildSourcesTests(unittest.TestCase):
    def test_whale_feed_needs_key_and_wallets(self) -> None:
        import main

        http = ResilientHttpClient(timeout_seconds=5)
        dex, gecko = DexScreenerClient(http), GeckoTerminalClient(http)
        old_wallets = config.WHALE_WALLETS
        config.WHALE_WALLETS = [(WHALE, "alpha")]
        try:
            names = [source.name for source in main.build_sources(dex, gecko, HeliusClient(http, "key"))]
            self.assertIn("helius_whales", names)
            self.assertIn("dex_volume_spikes", names)
            with self.assertLogs("main", level="INFO"):
                names = [source.name for source in main.build_sources(dex, gecko, HeliusClient(http, ""))]
            self.assertNotIn("helius_whales", names)
        finally:
            config.WHALE_WALLETS = old_wallets


if __name__ == "__main__":
    unittest.main()
