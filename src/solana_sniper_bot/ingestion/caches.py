"""Metadata caches feeding the lifecycle engine."""

from __future__ import annotations

import struct
import time
from pathlib import Path
from typing import Awaitable, Callable, Generic, Optional, Set, TypeVar

from cachetools import TTLCache
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solders.pubkey import Pubkey

from ..config.settings import SnipeListConfig, get_app_config
from ..core.types import MarketMetadata, PoolReference
from ..monitoring.logger import get_logger

T = TypeVar("T")
Loader = Callable[[str], Awaitable[Optional[T]]]

# Offsets into the OpenBook v3 market account (5 byte "serum" padding first).
_MARKET_NONCE_OFFSET = 45
_MARKET_EVENT_QUEUE_OFFSET = 253
_MARKET_BIDS_OFFSET = 285
_MARKET_ASKS_OFFSET = 317
_MARKET_MIN_SIZE = 349


class _LoadingCache(Generic[T]):
    """TTL cache that falls back to an async loader on a miss."""

    def __init__(self, *, maxsize: int, ttl: float, loader: Optional[Loader] = None) -> None:
        self._cache: TTLCache[str, T] = TTLCache(maxsize=maxsize, ttl=ttl)
        self._loader = loader
        self._logger = get_logger(__name__)

    def save(self, key: str, value: T) -> None:
        self._cache[key] = value

    def peek(self, key: str) -> Optional[T]:
        return self._cache.get(key)

    async def get(self, key: str) -> Optional[T]:
        cached = self._cache.get(key)
        if cached is not None or self._loader is None:
            return cached
        value = await self._loader(key)
        if value is not None:
            self._cache[key] = value
        return value

    def __contains__(self, key: object) -> bool:
        return key in self._cache

    def __len__(self) -> int:
        return len(self._cache)


class MarketCache(_LoadingCache[MarketMetadata]):
    """Order book accounts keyed by market id."""

    def __init__(self, loader: Optional[Loader] = None, *, ttl: float = 24 * 3600) -> None:
        super().__init__(maxsize=4096, ttl=ttl, loader=loader)

    def save_market(self, market: MarketMetadata) -> None:
        self.save(market.market_id, market)


class PoolCache(_LoadingCache[PoolReference]):
    """Discovered pools keyed by base mint, consulted when selling."""

    def __init__(self, *, ttl: float = 24 * 3600) -> None:
        super().__init__(maxsize=4096, ttl=ttl)

    def save_pool(self, pool: PoolReference) -> None:
        self.save(pool.base_mint, pool)


def decode_market_account(market_id: str, data: bytes, program_id: str) -> MarketMetadata:
    """Decode the accounts the AMM needs from a raw OpenBook v3 market."""

    if len(data) < _MARKET_MIN_SIZE:
        raise ValueError(f"Market account {market_id} is too small ({len(data)} bytes)")

    def _key(offset: int) -> str:
        return str(Pubkey.from_bytes(data[offset : offset + 32]))

    (nonce,) = struct.unpack_from("<Q", data, _MARKET_NONCE_OFFSET)
    market_key = Pubkey.from_string(market_id)
    authority = Pubkey.create_program_address(
        [bytes(market_key), nonce.to_bytes(8, "little")],
        Pubkey.from_string(program_id),
    )
    return MarketMetadata(
        market_id=market_id,
        event_queue=_key(_MARKET_EVENT_QUEUE_OFFSET),
        bids=_key(_MARKET_BIDS_OFFSET),
        asks=_key(_MARKET_ASKS_OFFSET),
        authority=str(authority),
    )


class OpenBookMarketLoader:
    """Fetches and decodes market accounts over RPC on a cache miss."""

    def __init__(self, client: AsyncClient) -> None:
        self._client = client
        self._logger = get_logger(__name__)

    async def __call__(self, market_id: str) -> Optional[MarketMetadata]:
        response = await self._client.get_account_info(Pubkey.from_string(market_id), commitment=Confirmed)
        account = response.value
        if account is None:
            self._logger.warning("Market account %s not found", market_id)
            return None
        return decode_market_account(market_id, bytes(account.data), str(account.owner))


class SnipeListCache:
    """Allow-list of base mints read from a text file, one mint per line.

    The file is re-read lazily once ``refresh_interval_seconds`` has passed
    so edits take effect without restarting the bot.
    """

    def __init__(
        self,
        config: Optional[SnipeListConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or get_app_config().snipe_list
        self._clock = clock
        self._mints: Set[str] = set()
        self._loaded_at: Optional[float] = None
        self._logger = get_logger(__name__)

    @property
    def path(self) -> Path:
        return Path(self._config.path).expanduser()

    def load(self) -> Set[str]:
        path = self.path
        try:
            content = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            self._logger.warning("Snipe list %s does not exist", path)
            content = ""
        mints = {line.strip() for line in content.splitlines()}
        self._mints = {mint for mint in mints if mint and not mint.startswith("#")}
        self._loaded_at = self._clock()
        self._logger.debug("Loaded %d mints from snipe list", len(self._mints))
        return set(self._mints)

    def is_listed(self, mint: str) -> bool:
        if self._loaded_at is None or self._clock() - self._loaded_at >= self._config.refresh_interval_seconds:
            self.load()
        return mint in self._mints


__all__ = [
    "MarketCache",
    "OpenBookMarketLoader",
    "PoolCache",
    "SnipeListCache",
    "decode_market_account",
]
