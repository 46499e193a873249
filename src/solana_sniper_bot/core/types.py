"""Domain types shared by the lifecycle engine and its collaborators."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from solders.instruction import Instruction
from solders.keypair import Keypair

from ..utils.constants import OPENBOOK_PROGRAM_ID, RAYDIUM_AMM_V4_PROGRAM_ID

# PDA of the AMM v4 program seeded with b"amm authority".
RAYDIUM_AMM_V4_AUTHORITY = "5Q544fKrFoe6tsEbD7S8EmxGTJYAKtTVhAW5Q5pge4j1"


class SwapDirection(str, Enum):
    BUY = "buy"
    SELL = "sell"


class PipelineResult(str, Enum):
    """Terminal outcome of one buy or sell pipeline run."""

    SKIPPED_NOT_LISTED = "skipped_not_listed"
    SKIPPED_CAPACITY = "skipped_capacity"
    NO_MARKET = "no_market"
    NO_POOL = "no_pool"
    EMPTY_BALANCE = "empty_balance"
    FILTERED = "filtered"
    NO_SIGNAL = "no_signal"
    ABORTED = "aborted"
    CONFIRMED = "confirmed"
    DEADLINE = "deadline"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class PoolReference:
    """A liquidity pool as announced by the discovery layer."""

    pool_id: str
    base_mint: str
    quote_mint: str
    market_id: str
    base_decimals: int
    version: int = 4
    state: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "PoolReference":
        state = dict(payload.get("state") or {})
        return cls(
            pool_id=str(payload["pool_id"]),
            base_mint=str(payload["base_mint"]),
            quote_mint=str(payload["quote_mint"]),
            market_id=str(payload["market_id"]),
            base_decimals=int(payload["base_decimals"]),
            version=int(payload.get("version", 4)),
            state=state,
        )


@dataclass(slots=True)
class MarketMetadata:
    """Order book accounts of the market backing a pool."""

    market_id: str
    event_queue: str
    bids: str
    asks: str
    authority: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "MarketMetadata":
        return cls(
            market_id=str(payload["market_id"]),
            event_queue=str(payload["event_queue"]),
            bids=str(payload["bids"]),
            asks=str(payload["asks"]),
            authority=payload.get("authority"),
        )


@dataclass(slots=True)
class PoolKeys:
    """Every account the AMM needs to quote or swap against a pool."""

    id: str
    base_mint: str
    quote_mint: str
    lp_mint: str
    base_decimals: int
    quote_decimals: int
    lp_decimals: int
    version: int
    program_id: str
    authority: str
    open_orders: str
    target_orders: str
    base_vault: str
    quote_vault: str
    withdraw_queue: str
    lp_vault: str
    market_version: int
    market_program_id: str
    market_id: str
    market_authority: Optional[str]
    market_base_vault: str
    market_quote_vault: str
    market_bids: str
    market_asks: str
    market_event_queue: str

    def as_payload(self) -> Dict[str, Any]:
        """Camel-cased mapping understood by the Raydium SDK helper."""

        return {
            "id": self.id,
            "baseMint": self.base_mint,
            "quoteMint": self.quote_mint,
            "lpMint": self.lp_mint,
            "baseDecimals": self.base_decimals,
            "quoteDecimals": self.quote_decimals,
            "lpDecimals": self.lp_decimals,
            "version": self.version,
            "programId": self.program_id,
            "authority": self.authority,
            "openOrders": self.open_orders,
            "targetOrders": self.target_orders,
            "baseVault": self.base_vault,
            "quoteVault": self.quote_vault,
            "withdrawQueue": self.withdraw_queue,
            "lpVault": self.lp_vault,
            "marketVersion": self.market_version,
            "marketProgramId": self.market_program_id,
            "marketId": self.market_id,
            "marketAuthority": self.market_authority,
            "marketBaseVault": self.market_base_vault,
            "marketQuoteVault": self.market_quote_vault,
            "marketBids": self.market_bids,
            "marketAsks": self.market_asks,
            "marketEventQueue": self.market_event_queue,
        }


def create_pool_keys(pool: PoolReference, market: MarketMetadata) -> PoolKeys:
    """Combine decoded pool state with its market accounts."""

    state = pool.state

    def _get(name: str, default: Any = "") -> Any:
        return state.get(name, default)

    return PoolKeys(
        id=pool.pool_id,
        base_mint=pool.base_mint,
        quote_mint=pool.quote_mint,
        lp_mint=_get("lp_mint"),
        base_decimals=pool.base_decimals,
        quote_decimals=int(_get("quote_decimals", 9)),
        lp_decimals=int(_get("lp_decimals", pool.base_decimals)),
        version=pool.version,
        program_id=_get("program_id", RAYDIUM_AMM_V4_PROGRAM_ID),
        authority=_get("authority", RAYDIUM_AMM_V4_AUTHORITY),
        open_orders=_get("open_orders"),
        target_orders=_get("target_orders"),
        base_vault=_get("base_vault"),
        quote_vault=_get("quote_vault"),
        withdraw_queue=_get("withdraw_queue"),
        lp_vault=_get("lp_vault"),
        market_version=3,
        market_program_id=_get("market_program_id", OPENBOOK_PROGRAM_ID),
        market_id=market.market_id,
        market_authority=market.authority,
        market_base_vault=_get("market_base_vault"),
        market_quote_vault=_get("market_quote_vault"),
        market_bids=market.bids,
        market_asks=market.asks,
        market_event_queue=market.event_queue,
    )


@dataclass(slots=True)
class TokenAccountSnapshot:
    """A wallet token account as observed by the balance watcher."""

    address: str
    mint: str
    amount_raw: int

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "TokenAccountSnapshot":
        return cls(
            address=str(payload["address"]),
            mint=str(payload["mint"]),
            amount_raw=int(payload["amount"]),
        )


@dataclass(slots=True)
class SwapQuote:
    """Quote returned by the AMM collaborator.

    ``amount_out`` is in decimal units of the output mint, the two ``_raw``
    fields in its smallest units.
    """

    amount_in_raw: int
    amount_out: float
    min_amount_out_raw: int


@dataclass(slots=True)
class SwapInstructions:
    instructions: List[Instruction] = field(default_factory=list)
    signers: List[Keypair] = field(default_factory=list)


@dataclass(slots=True)
class TradeAttemptResult:
    """Outcome of handing one signed transaction to a submission channel."""

    confirmed: bool
    signature: Optional[str] = None
    error: Optional[str] = None


__all__ = [
    "MarketMetadata",
    "PipelineResult",
    "PoolKeys",
    "PoolReference",
    "RAYDIUM_AMM_V4_AUTHORITY",
    "SwapDirection",
    "SwapInstructions",
    "SwapQuote",
    "TokenAccountSnapshot",
    "TradeAttemptResult",
    "create_pool_keys",
]
