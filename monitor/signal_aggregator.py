"""Merge per-adapter hits into unique candidates and expose reproducible top-K selections."""

from __future__ import annotations

import math
from typing import Dict, Iterable, List, Mapping, Tuple

from monitor.sources import SourceHit
from trading.models import TIER_FRESH, TIER_NAMES, TIER_SOCIAL, Candidate, MarketSnapshot, tier_for_tags


def aggregate(hit_groups: Iterable[Iterable[SourceHit]]) -> Dict[str, Candidate]:
    """Union tags per token and overlay snapshots in fetch order.

    A later hit's known fields override earlier ones; its unknown fields never
    erase what an earlier adapter reported.
    """
    tags: Dict[str, set] = {}
    snapshots: Dict[str, MarketSnapshot] = {}
    for hits in hit_groups:
        for hit in hits:
            if not hit.token_id:
                continue
            tags.setdefault(hit.token_id, set()).add(hit.tag)
            previous = snapshots.get(hit.token_id)
            snapshots[hit.token_id] = previous.merged_with(hit.snapshot) if previous else hit.snapshot
    out: Dict[str, Candidate] = {}
    for token_id, token_tags in tags.items():
        frozen = frozenset(token_tags)
        out[token_id] = Candidate(token_id, frozen, snapshots[token_id], tier_for_tags(frozen))
    return out


def _ascending(value) -> float:
    return value if value is not None else math.inf


def _descending(value) -> float:
    return -value if value is not None else math.inf


def sort_key(candidate: Candidate) -> Tuple[int, float, str]:
    """Tier first; freshest launches first, then highest social score; token id breaks ties."""
    if candidate.tier == TIER_FRESH:
        rank = _ascending(candidate.snapshot.age_hours)
    elif candidate.tier == TIER_SOCIAL:
        rank = _descending(candidate.snapshot.score)
    else:
        rank = 0.0
    return (candidate.tier, rank, candidate.token_id)


def ranked(candidates: Mapping[str, Candidate]) -> List[Candidate]:
    return sorted(candidates.values(), key=sort_key)


def top_k(candidates: Mapping[str, Candidate], tier: int, k: int) -> List[Candidate]:
    if k <= 0:
        return []
    return [c for c in ranked(candidates) if c.tier == tier][:k]


def select_for_screening(
    candidates: Mapping[str, Candidate],
    limits: Mapping[str, int],
    total_cap: int,
) -> List[Candidate]:
    """Per-tier top-K (keyed by tier name), concatenated in tier order and capped overall.

    A tier missing from `limits` is not capped on its own.
    """
    ordered = ranked(candidates)
    selected: List[Candidate] = []
    for tier, name in sorted(TIER_NAMES.items()):
        limit = limits.get(name)
        members = [c for c in ordered if c.tier == tier]
        selected.extend(members if limit is None else members[: max(0, int(limit))])
    return selected[: max(0, total_cap)]
