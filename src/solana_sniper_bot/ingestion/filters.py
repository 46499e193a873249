"""Pool quality rules consulted before buying."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solders.pubkey import Pubkey

from ..config.settings import FilterConfig, TradingConfig, get_app_config
from ..core.types import PoolKeys
from ..monitoring.logger import get_logger


@dataclass(slots=True)
class FilterResult:
    ok: bool
    message: Optional[str] = None


class PoolFilter(Protocol):
    async def check(self, pool_keys: PoolKeys) -> FilterResult:
        """Evaluate one rule against the pool."""


class PoolSizeFilter:
    """Rejects pools whose quote-side liquidity is outside the configured band."""

    def __init__(
        self,
        client: AsyncClient,
        *,
        min_size: float,
        max_size: float,
        quote_symbol: str = "",
    ) -> None:
        self._client = client
        self._min_size = min_size
        self._max_size = max_size
        self._quote_symbol = quote_symbol

    async def check(self, pool_keys: PoolKeys) -> FilterResult:
        response = await self._client.get_token_account_balance(
            Pubkey.from_string(pool_keys.quote_vault), commitment=Confirmed
        )
        balance = response.value
        size = int(balance.amount) / 10**balance.decimals
        if self._max_size and size > self._max_size:
            return FilterResult(False, f"PoolSize -> Pool size {size} {self._quote_symbol} > {self._max_size}")
        if self._min_size and size < self._min_size:
            return FilterResult(False, f"PoolSize -> Pool size {size} {self._quote_symbol} < {self._min_size}")
        return FilterResult(True)


class PoolFilters:
    """Composite quality gate. A pool passes when every configured rule passes."""

    def __init__(self, filters: Sequence[PoolFilter]) -> None:
        self._filters: List[PoolFilter] = list(filters)
        self._logger = get_logger(__name__)

    @classmethod
    def from_config(
        cls,
        client: AsyncClient,
        config: Optional[FilterConfig] = None,
        trading: Optional[TradingConfig] = None,
    ) -> "PoolFilters":
        cfg = config or get_app_config().filters
        trading_cfg = trading or get_app_config().trading
        filters: List[PoolFilter] = []
        if cfg.min_pool_size or cfg.max_pool_size:
            filters.append(
                PoolSizeFilter(
                    client,
                    min_size=cfg.min_pool_size,
                    max_size=cfg.max_pool_size,
                    quote_symbol=trading_cfg.quote_symbol,
                )
            )
        return cls(filters)

    def __len__(self) -> int:
        return len(self._filters)

    async def evaluate(self, pool_keys: PoolKeys) -> bool:
        if not self._filters:
            return True
        try:
            results = await asyncio.gather(*(item.check(pool_keys) for item in self._filters))
        except Exception as exc:  # noqa: BLE001
            self._logger.error("Failed to check filters for %s: %s", pool_keys.base_mint, exc)
            return False
        for result in results:
            if not result.ok:
                self._logger.debug("%s: %s", pool_keys.base_mint, result.message)
                return False
        return True


__all__ = ["FilterResult", "PoolFilter", "PoolFilters", "PoolSizeFilter"]
