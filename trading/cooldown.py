"""Per-token re-entry cooldowns conditioned on the outcome of the last exit."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

import config
from trading.models import CooldownEntry


@dataclass(frozen=True)
class CooldownPolicy:
    loss_duration: timedelta
    profit_duration: timedelta

    def __post_init__(self) -> None:
        if self.profit_duration <= self.loss_duration:
            raise ValueError(
                f"profit cooldown must be longer than loss cooldown "
                f"(profit={self.profit_duration} loss={self.loss_duration})"
            )

    @classmethod
    def from_config(cls) -> "CooldownPolicy":
        return cls(
            loss_duration=timedelta(minutes=config.LOSS_COOLDOWN_MINUTES),
            profit_duration=timedelta(minutes=config.PROFIT_COOLDOWN_MINUTES),
        )

    def duration_for(self, was_profitable: bool) -> timedelta:
        return self.profit_duration if was_profitable else self.loss_duration


class CooldownTracker:
    """Keyed "do not re-enter before T" markers.

    Only the time check matters for behaviour; expired entries are harmless and
    `prune()` exists purely to keep the persisted map small.
    """

    def __init__(self, policy: CooldownPolicy, entries: Optional[Dict[str, CooldownEntry]] = None) -> None:
        self.policy = policy
        self.entries: Dict[str, CooldownEntry] = dict(entries or {})

    def mark_exited(self, token_id: str, was_profitable: bool, now: datetime) -> None:
        self.entries[token_id] = CooldownEntry(exited_at=now, was_profitable=bool(was_profitable))

    def is_on_cooldown(self, token_id: str, now: datetime) -> bool:
        entry = self.entries.get(token_id)
        if entry is None:
            return False
        return now - entry.exited_at < self.policy.duration_for(entry.was_profitable)

    def remaining(self, token_id: str, now: datetime) -> timedelta:
        entry = self.entries.get(token_id)
        if entry is None:
            return timedelta(0)
        left = entry.exited_at + self.policy.duration_for(entry.was_profitable) - now
        return max(timedelta(0), left)

    def prune(self, now: datetime) -> int:
        expired = [token_id for token_id in self.entries if not self.is_on_cooldown(token_id, now)]
        for token_id in expired:
            del self.entries[token_id]
        return len(expired)
