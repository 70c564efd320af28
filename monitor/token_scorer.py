"""Viral/social attention score for boosted and trending tokens."""

import time
from typing import Any, Optional

import config

_VOLUME_CACHE_TTL_SECONDS = 24 * 3600


class ViralScorer:
    """Scores attention signals; remembers each token's last 24h volume to spot spikes."""

    def __init__(self) -> None:
        self._volume_cache: dict[str, tuple[float, float]] = {}

    def calculate_score(
        self,
        token_id: str,
        *,
        boosts: float = 0.0,
        boosted: bool = False,
        txns_24h: Optional[int] = None,
        change_1h: Optional[float] = None,
        volume_24h: Optional[float] = None,
    ) -> dict[str, Any]:
        now = time.time()
        self._prune(now)
        previous = self._volume_cache.get(token_id)
        prev_volume = previous[0] if previous else 0.0

        breakdown = {
            "boost_score": self._score_boost(boosted, boosts),
            "activity_score": self._score_activity(txns_24h or 0),
            "momentum_score": self._score_momentum(change_1h),
            "volume_spike_score": self._score_volume_spike(volume_24h or 0.0, prev_volume),
        }
        if volume_24h is not None:
            self._volume_cache[token_id] = (float(volume_24h), now)

        score = sum(breakdown.values())
        return {
            "score": score,
            "breakdown": breakdown,
            "viral": score >= config.VIRAL_MIN_SCORE,
        }

    def _prune(self, now: float) -> None:
        expired = [k for k, (_, seen) in self._volume_cache.items() if now - seen > _VOLUME_CACHE_TTL_SECONDS]
        for k in expired:
            self._volume_cache.pop(k, None)

    @staticmethod
    def _score_boost(boosted: bool, boosts: float) -> int:
        if not boosted:
            return 0
        return 30 + int(min(max(0.0, boosts), 50))

    @staticmethod
    def _score_activity(txns_24h: int) -> int:
        if txns_24h > 100:
            return 20
        if txns_24h > 50:
            return 10
        return 0

    @staticmethod
    def _score_momentum(change_1h: Optional[float]) -> int:
        if change_1h is None:
            return 0
        if change_1h > 50:
            return 25
        if change_1h > 20:
            return 15
        if change_1h > 0:
            return 5
        return 0

    @staticmethod
    def _score_volume_spike(volume_24h: float, prev_volume_24h: float) -> int:
        if prev_volume_24h <= 0:
            return 0
        multiple = volume_24h / prev_volume_24h
        if multiple > 5:
            return 30
        if multiple > 2:
            return 15
        return 0
