"""Interfaces of the external collaborators driven by the lifecycle engine."""

from __future__ import annotations

from typing import Any, Dict, Generic, Optional, Protocol, TypeVar

from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from ..core.types import PoolKeys, SwapInstructions, SwapQuote, TradeAttemptResult

T = TypeVar("T")


class MetadataCache(Protocol, Generic[T]):
    """Keyed lookup of pool or market metadata."""

    async def get(self, key: str) -> Optional[T]:
        """Return the cached value for ``key`` or ``None`` when unknown."""


class QualityGate(Protocol):
    """External pool quality rules."""

    async def evaluate(self, pool_keys: PoolKeys) -> bool:
        """Return whether the pool currently passes every rule."""


class AllowList(Protocol):
    def is_listed(self, mint: str) -> bool:
        """Return whether ``mint`` may be bought in allow-list mode."""


class AmmPricing(Protocol):
    """Pool state lookup and constant-product quoting."""

    async def fetch_pool_info(self, pool_keys: PoolKeys) -> Dict[str, Any]:
        """Return the live reserves and status of the pool."""

    async def quote(
        self,
        pool_keys: PoolKeys,
        pool_info: Dict[str, Any],
        amount_in_raw: int,
        mint_out: str,
        slippage_pct: float,
    ) -> SwapQuote:
        """Compute the output of swapping ``amount_in_raw`` into ``mint_out``.

        ``amount_in_raw`` is in the smallest units of the input mint. The
        returned ``amount_out`` is in decimal units of ``mint_out`` (so it
        compares directly with ``trading.quote_amount`` on sells), while
        ``min_amount_out_raw`` is the slippage-adjusted floor in raw units.
        """


class SwapInstructionBuilder(Protocol):
    async def swap_instructions(
        self,
        pool_keys: PoolKeys,
        *,
        token_account_in: Pubkey,
        token_account_out: Pubkey,
        owner: Pubkey,
        amount_in_raw: int,
        min_amount_out_raw: int,
    ) -> SwapInstructions:
        """Return the fixed-input swap instructions and any extra signers."""


class SubmissionChannel(Protocol):
    """Broadcasts a signed transaction and waits for its confirmation.

    ``supplies_priority_fee`` is true for channels that pay for inclusion
    themselves (relay tips), in which case swaps are built without
    compute-budget instructions.
    """

    supplies_priority_fee: bool

    async def latest_blockhash(self) -> tuple[Hash, int]:
        """Return a recent blockhash and its last valid block height."""

    async def submit(
        self,
        transaction: VersionedTransaction,
        blockhash: Hash,
        last_valid_block_height: int,
    ) -> TradeAttemptResult:
        """Send ``transaction`` and report whether it confirmed."""


class NotificationSink(Protocol):
    def publish(self, event_type: Any, payload: Optional[Dict[str, Any]] = None, **kwargs: Any) -> None:
        """Deliver a best-effort notification."""


__all__ = [
    "AllowList",
    "AmmPricing",
    "MetadataCache",
    "NotificationSink",
    "QualityGate",
    "SubmissionChannel",
    "SwapInstructionBuilder",
]
