"""Trade execution: paper fills, or live Jupiter swaps signed by an injected signer."""

from __future__ import annotations

import asyncio
import importlib
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional

import config
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000


@dataclass
class ExecutionResult:
    """Definite outcome of one order. `ok=False` guarantees nothing should be booked."""

    ok: bool
    fill_price: Optional[float] = None
    tx_id: str = ""
    error: str = ""


class TradeExecutor:
    mode = "base"

    async def buy(self, token_id: str, notional: float, quote_price: float) -> ExecutionResult:
        raise NotImplementedError

    async def sell(self, token_id: str, percent: float, quote_price: float) -> ExecutionResult:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class PaperExecutor(TradeExecutor):
    """Fills every order at the quoted price without side effects."""

    mode = "paper"

    async def buy(self, token_id: str, notional: float, quote_price: float) -> ExecutionResult:
        return ExecutionResult(ok=True, fill_price=quote_price, tx_id=f"paper-{uuid.uuid4().hex[:12]}")

    async def sell(self, token_id: str, percent: float, quote_price: float) -> ExecutionResult:
        return ExecutionResult(ok=True, fill_price=quote_price, tx_id=f"paper-{uuid.uuid4().hex[:12]}")


class SwapSigner:
    """Wallet-side collaborator for live mode. Key custody lives entirely behind this interface."""

    public_key: str = ""

    async def sign_and_send(self, swap_transaction_b64: str) -> str:
        """Sign a serialized Jupiter transaction, broadcast it, return its signature."""
        raise NotImplementedError

    async def confirmation_status(self, tx_id: str) -> Optional[bool]:
        """True when confirmed, False when it failed on chain, None while still unknown."""
        raise NotImplementedError

    async def token_balance(self, mint: str) -> int:
        """Raw token units held by the wallet."""
        raise NotImplementedError


def load_signer(dotted_path: str) -> SwapSigner:
    """Instantiate `package.module:attr` (or `package.module.attr`), a SwapSigner class or factory."""
    path = str(dotted_path or "").strip()
    if not path:
        raise ValueError("LIVE_SIGNER is empty; live mode needs a signer factory path")
    module_name, sep, attr = path.partition(":")
    if not sep:
        module_name, _, attr = path.rpartition(".")
    if not module_name or not attr:
        raise ValueError(f"LIVE_SIGNER must look like 'package.module:Factory', got {path!r}")
    factory = getattr(importlib.import_module(module_name), attr)
    signer = factory()
    for method in ("sign_and_send", "confirmation_status", "token_balance"):
        if not callable(getattr(signer, method, None)):
            raise TypeError(f"LIVE_SIGNER object {path!r} lacks {method}()")
    return signer


class JupiterExecutor(TradeExecutor):
    """Quote -> swap build -> sign/send -> confirm. Anything short of a confirmed tx is a failure."""

    mode = "live"

    def __init__(
        self,
        http: ResilientHttpClient,
        signer: SwapSigner,
        *,
        api_url: str = config.JUPITER_API,
        quote_mint: str = config.QUOTE_MINT,
        slippage_bps: int = config.JUPITER_SLIPPAGE_BPS,
        confirm_timeout_seconds: float = config.LIVE_CONFIRM_TIMEOUT_SECONDS,
        confirm_poll_seconds: float = 1.0,
    ) -> None:
        self._http = http
        self.signer = signer
        self.api_url = api_url.rstrip("/")
        self.quote_mint = quote_mint
        self.slippage_bps = slippage_bps
        self.confirm_timeout = confirm_timeout_seconds
        self.confirm_poll = confirm_poll_seconds

    async def _quote(self, input_mint: str, output_mint: str, amount: int) -> dict[str, Any] | None:
        result = await self._http.get_json(
            f"{self.api_url}/quote",
            source="jupiter",
            params={
                "inputMint": input_mint,
                "outputMint": output_mint,
                "amount": str(int(amount)),
                "slippageBps": str(self.slippage_bps),
            },
        )
        if not result.ok or not isinstance(result.data, dict) or not result.data.get("outAmount"):
            logger.warning("JUPITER_QUOTE_FAIL in=%s out=%s err=%s", input_mint, output_mint, result.error)
            return None
        return result.data

    async def _build_swap(self, quote: dict[str, Any]) -> str | None:
        result = await self._http.post_json(
            f"{self.api_url}/swap",
            {
                "quoteResponse": quote,
                "userPublicKey": self.signer.public_key,
                "wrapAndUnwrapSol": True,
                "dynamicComputeUnitLimit": True,
            },
            source="jupiter",
            max_attempts=1,
        )
        if not result.ok or not isinstance(result.data, dict):
            logger.warning("JUPITER_SWAP_BUILD_FAIL err=%s", result.error)
            return None
        return result.data.get("swapTransaction") or None

    async def _await_confirmation(self, tx_id: str) -> Optional[bool]:
        deadline = time.monotonic() + self.confirm_timeout
        while time.monotonic() < deadline:
            status = await self.signer.confirmation_status(tx_id)
            if status is not None:
                return status
            await asyncio.sleep(self.confirm_poll)
        return None

    async def _swap(self, input_mint: str, output_mint: str, amount: int, quote_price: float) -> ExecutionResult:
        if amount <= 0:
            return ExecutionResult(ok=False, error="amount_zero")
        quote = await self._quote(input_mint, output_mint, amount)
        if quote is None:
            return ExecutionResult(ok=False, error="no_quote")
        swap_tx = await self._build_swap(quote)
        if swap_tx is None:
            return ExecutionResult(ok=False, error="no_swap_tx")
        try:
            tx_id = await self.signer.sign_and_send(swap_tx)
        except Exception as exc:
            logger.warning("JUPITER_SEND_FAIL err=%s", exc)
            return ExecutionResult(ok=False, error=f"send_failed:{exc}")
        try:
            confirmed = await self._await_confirmation(tx_id)
        except Exception as exc:
            logger.warning("JUPITER_CONFIRM_ERROR tx=%s err=%s", tx_id, exc)
            confirmed = None
        if confirmed is None:
            logger.error("JUPITER_UNCONFIRMED tx=%s timeout=%.0fs treated_as=failure", tx_id, self.confirm_timeout)
            return ExecutionResult(ok=False, tx_id=tx_id, error="unconfirmed")
        if not confirmed:
            return ExecutionResult(ok=False, tx_id=tx_id, error="tx_failed")
        return ExecutionResult(ok=True, fill_price=quote_price, tx_id=tx_id)

    async def buy(self, token_id: str, notional: float, quote_price: float) -> ExecutionResult:
        lamports = int(notional * LAMPORTS_PER_SOL)
        return await self._swap(self.quote_mint, token_id, lamports, quote_price)

    async def sell(self, token_id: str, percent: float, quote_price: float) -> ExecutionResult:
        try:
            balance = await self.signer.token_balance(token_id)
        except Exception as exc:
            return ExecutionResult(ok=False, error=f"balance_failed:{exc}")
        amount = balance if percent >= 100 else int(balance * percent / 100.0)
        return await self._swap(token_id, self.quote_mint, amount, quote_price)

    async def close(self) -> None:
        await self._http.close()
