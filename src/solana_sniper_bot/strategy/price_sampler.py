"""Quote-per-base price sampling for a single pool."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from ..core.types import PoolKeys
from ..execution.base import AmmPricing

PRICE_PRECISION = 16


@dataclass(slots=True)
class PriceSeries:
    """Append-only price history that skips repeated observations."""

    values: List[float] = field(default_factory=list)

    def append(self, price: float) -> bool:
        if self.values and self.values[-1] == price:
            return False
        self.values.append(price)
        return True

    @property
    def last(self) -> Optional[float]:
        return self.values[-1] if self.values else None

    def __len__(self) -> int:
        return len(self.values)


class PriceSampler:
    """Prices one whole unit of the quote asset against the pool's base asset."""

    def __init__(self, amm: AmmPricing, *, quote_decimals: int) -> None:
        self._amm = amm
        self._unit_raw = 10**quote_decimals

    async def sample(self, pool_keys: PoolKeys) -> float:
        pool_info = await self._amm.fetch_pool_info(pool_keys)
        quote = await self._amm.quote(
            pool_keys,
            pool_info,
            self._unit_raw,
            pool_keys.base_mint,
            0.0,
        )
        if quote.amount_out <= 0:
            raise ValueError(f"Pool {pool_keys.id} returned an empty quote")
        return round(1.0 / quote.amount_out, PRICE_PRECISION)


__all__ = ["PriceSampler", "PriceSeries"]
