"""Token identifier helpers."""

from __future__ import annotations

import re

_BASE58_RE = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")


def normalize_address(value: str | None) -> str:
    """Normalize a mint address used as a map/dedup key.

    Solana base58 mints are case-sensitive, so this only trims whitespace.
    """
    return str(value or "").strip()


def is_mint_address(value: str | None) -> bool:
    return bool(_BASE58_RE.match(normalize_address(value)))


def short_address(value: str | None, keep: int = 4) -> str:
    text = normalize_address(value)
    if len(text) <= keep * 2 + 3:
        return text
    return f"{text[:keep]}...{text[-keep:]}"
