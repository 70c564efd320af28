"""Candidate source adapter contract and failure-isolated fan-out."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional, Sequence

from trading.models import MarketSnapshot
from utils.addressing import is_mint_address

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SourceHit:
    token_id: str
    tag: str
    snapshot: MarketSnapshot


class CandidateSource:
    """One discovery feed. `fetch` returns a finite list of hits for this cycle."""

    name = "source"

    async def fetch(self) -> List[SourceHit]:
        raise NotImplementedError


def opt_float(value: Any) -> Optional[float]:
    """Parse a feed number; missing, blank or non-finite values stay unknown."""
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def opt_int(value: Any) -> Optional[int]:
    number = opt_float(value)
    return int(number) if number is not None else None


def age_hours_since(created_at: Optional[datetime], now: datetime) -> Optional[float]:
    if created_at is None:
        return None
    return max(0.0, (now - created_at).total_seconds() / 3600.0)


def parse_rfc3339(value: Any) -> Optional[datetime]:
    text = str(value or "").strip()
    if not text:
        return None
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


async def _run_one(source: CandidateSource, timeout_seconds: float) -> List[SourceHit]:
    return await asyncio.wait_for(source.fetch(), timeout=timeout_seconds)


async def fetch_all(sources: Sequence[CandidateSource], timeout_seconds: float) -> List[List[SourceHit]]:
    """Run every adapter concurrently. A failing or slow adapter contributes an empty list.

    Results keep the order of `sources`, which is the fetch order the aggregator merges in.
    Hits whose token id is not a base58 mint are dropped.
    """
    results = await asyncio.gather(
        *[_run_one(source, timeout_seconds) for source in sources],
        return_exceptions=True,
    )
    out: List[List[SourceHit]] = []
    for source, result in zip(sources, results):
        if isinstance(result, asyncio.TimeoutError):
            logger.warning("SOURCE_TIMEOUT source=%s timeout=%.1fs", source.name, timeout_seconds)
            out.append([])
        elif isinstance(result, asyncio.CancelledError):
            raise result
        elif isinstance(result, BaseException):
            logger.warning("SOURCE_FAIL source=%s err=%s", source.name, result)
            out.append([])
        else:
            hits = list(result or [])
            valid = [hit for hit in hits if is_mint_address(hit.token_id)]
            if len(valid) != len(hits):
                logger.info("SOURCE_DROP source=%s reason=bad_mint dropped=%s", source.name, len(hits) - len(valid))
            out.append(valid)
    return out
