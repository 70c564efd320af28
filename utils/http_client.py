"""Shared aiohttp client: retries with jittered backoff, per-source concurrency and rate windows."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import Any

import aiohttp

import config

logger = logging.getLogger(__name__)


@dataclass
class HttpResult:
    ok: bool
    status: int
    data: Any | None
    error: str = ""


@dataclass
class SourceCounters:
    ok: int = 0
    fail: int = 0
    rate_limited: int = 0
    retries: int = 0
    latency_total_ms: float = 0.0
    latency_count: int = 0


def _source_key(source: str) -> str:
    return str(source or "default").strip().lower() or "default"


class ResilientHttpClient:
    """One pooled session for every feed; a failed call always degrades to `HttpResult(ok=False)`."""

    def __init__(
        self,
        timeout_seconds: float,
        headers: dict[str, str] | None = None,
        source_limits: dict[str, int] | None = None,
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self._headers = dict(headers or {})
        self._source_limits = dict(source_limits or {})
        self._session: aiohttp.ClientSession | None = None
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._counters: dict[str, SourceCounters] = {}
        self._windows: dict[str, deque[float]] = {}
        self._window_locks: dict[str, asyncio.Lock] = {}
        self._cooldown_until: dict[str, float] = {}

    async def close(self) -> None:
        session, self._session = self._session, None
        if session is not None and not session.closed:
            await session.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=config.HTTP_CONNECTOR_LIMIT)
            self._session = aiohttp.ClientSession(timeout=self._timeout, connector=connector)
        return self._session

    def _semaphore(self, key: str) -> asyncio.Semaphore:
        sem = self._semaphores.get(key)
        if sem is None:
            limit = max(1, int(self._source_limits.get(key, config.HTTP_DEFAULT_CONCURRENCY)))
            sem = asyncio.Semaphore(limit)
            self._semaphores[key] = sem
        return sem

    def _counter(self, key: str) -> SourceCounters:
        return self._counters.setdefault(key, SourceCounters())

    async def _wait_rate_slot(self, key: str) -> None:
        limit = config.HTTP_SOURCE_RATE_LIMITS.get(key)
        if not limit:
            return
        max_calls, window_seconds = limit
        lock = self._window_locks.setdefault(key, asyncio.Lock())
        while True:
            async with lock:
                now = time.monotonic()
                window = self._windows.setdefault(key, deque())
                while window and window[0] <= now - window_seconds:
                    window.popleft()
                if len(window) < max_calls:
                    window.append(now)
                    return
                wait_for = max(0.01, window[0] + window_seconds - now)
            logger.debug("HTTP_RATE_WAIT source=%s wait=%.2fs", key, wait_for)
            await asyncio.sleep(wait_for)

    async def _wait_cooldown(self, key: str) -> None:
        wait_for = self._cooldown_until.get(key, 0.0) - time.monotonic()
        if wait_for > 0:
            logger.debug("HTTP_COOLDOWN_WAIT source=%s wait=%.2fs", key, wait_for)
            await asyncio.sleep(wait_for)

    def _start_cooldown(self, key: str, response: aiohttp.ClientResponse) -> None:
        try:
            retry_after = max(0.0, float(response.headers.get("Retry-After", "") or 0.0))
        except ValueError:
            retry_after = 0.0
        seconds = max(config.HTTP_429_COOLDOWN_SECONDS, retry_after)
        until = time.monotonic() + seconds
        self._cooldown_until[key] = max(self._cooldown_until.get(key, 0.0), until)
        logger.warning("HTTP_429 source=%s cooldown=%.1fs", key, seconds)

    @staticmethod
    def _backoff(attempt: int) -> float:
        base = config.HTTP_BACKOFF_BASE_SECONDS
        delay = min(config.HTTP_BACKOFF_MAX_SECONDS, base * (2 ** max(0, attempt - 1)))
        return delay + random.uniform(0.0, config.HTTP_JITTER_SECONDS)

    def snapshot_stats(self, reset: bool = False) -> dict[str, dict[str, int | float]]:
        out: dict[str, dict[str, int | float]] = {}
        for key, row in self._counters.items():
            total = row.ok + row.fail
            out[key] = {
                "ok": row.ok,
                "fail": row.fail,
                "rate_limited": row.rate_limited,
                "retries": row.retries,
                "error_percent": round(row.fail / total * 100.0, 2) if total else 0.0,
                "latency_avg_ms": round(row.latency_total_ms / row.latency_count, 2) if row.latency_count else 0.0,
            }
        if reset:
            self._counters = {}
        return out

    def log_stats(self, reset: bool = True) -> dict[str, dict[str, int | float]]:
        """Emit one HTTP_STATS line per source seen since the last reset."""
        stats = self.snapshot_stats(reset=reset)
        for key, row in sorted(stats.items()):
            logger.info(
                "HTTP_STATS source=%s ok=%s fail=%s rate_limited=%s retries=%s error_percent=%.2f latency_avg_ms=%.2f",
                key,
                row["ok"],
                row["fail"],
                row["rate_limited"],
                row["retries"],
                row["error_percent"],
                row["latency_avg_ms"],
            )
        return stats

    async def request_json(
        self,
        method: str,
        url: str,
        *,
        source: str = "default",
        params: dict[str, Any] | None = None,
        json_body: Any | None = None,
        headers: dict[str, str] | None = None,
        max_attempts: int | None = None,
    ) -> HttpResult:
        attempts = max(1, int(max_attempts or config.HTTP_RETRY_ATTEMPTS))
        req_headers = {**self._headers, **(headers or {})}
        key = _source_key(source)
        counter = self._counter(key)

        for attempt in range(1, attempts + 1):
            status = 0
            await self._wait_cooldown(key)
            await self._wait_rate_slot(key)
            async with self._semaphore(key):
                started = time.perf_counter()
                try:
                    session = await self._get_session()
                    async with session.request(
                        method, url, params=params, json=json_body, headers=req_headers
                    ) as response:
                        status = int(response.status or 0)
                        if status == 200:
                            payload = await response.json(content_type=None)
                            counter.ok += 1
                            return HttpResult(ok=True, status=status, data=payload)
                        if status == 429:
                            counter.rate_limited += 1
                            self._start_cooldown(key, response)
                        retryable = status == 429 or 500 <= status <= 599
                        if not retryable or attempt >= attempts:
                            counter.fail += 1
                            return HttpResult(ok=False, status=status, data=None, error=f"http_status_{status}")
                except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                    if attempt >= attempts:
                        counter.fail += 1
                        return HttpResult(ok=False, status=status, data=None, error=f"http_error:{exc}")
                finally:
                    counter.latency_total_ms += (time.perf_counter() - started) * 1000.0
                    counter.latency_count += 1

            counter.retries += 1
            delay = self._backoff(attempt)
            logger.debug(
                "HTTP_RETRY source=%s attempt=%s/%s status=%s delay=%.2fs url=%s",
                key,
                attempt,
                attempts,
                status,
                delay,
                url,
            )
            await asyncio.sleep(delay)

        return HttpResult(ok=False, status=0, data=None, error="http_exhausted")

    async def get_json(self, url: str, **kwargs: Any) -> HttpResult:
        return await self.request_json("GET", url, **kwargs)

    async def post_json(self, url: str, body: Any, **kwargs: Any) -> HttpResult:
        return await self.request_json("POST", url, json_body=body, **kwargs)
