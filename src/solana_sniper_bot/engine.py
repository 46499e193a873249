"""Position lifecycle engine wiring discovery events to the trade pipelines."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Optional, Set

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment, Confirmed

from .config.settings import AppConfig, get_app_config
from .core.errors import StartupValidationError
from .core.types import MarketMetadata, PipelineResult, PoolReference, TokenAccountSnapshot
from .execution.channels import create_channel
from .execution.node_bridge import RaydiumNodeBridge
from .execution.pipeline import ExecutionPipeline
from .execution.wallet import Wallet, load_wallet
from .ingestion.caches import MarketCache, OpenBookMarketLoader, PoolCache, SnipeListCache
from .ingestion.filters import PoolFilters
from .monitoring.logger import get_logger
from .monitoring.metrics import METRICS
from .strategy.admission import AdmissionController
from .strategy.entry_gate import EntryGate
from .strategy.exit_monitor import ExitMonitor
from .strategy.price_sampler import PriceSampler


class PositionEngine:
    """Entry points called by the discovery layer.

    Every pool and balance event runs as its own task so one misbehaving
    position never stalls the others. Task failures are logged by a done
    callback and otherwise ignored.
    """

    def __init__(
        self,
        pipeline: ExecutionPipeline,
        *,
        pools: PoolCache,
        markets: MarketCache,
        config: Optional[AppConfig] = None,
        client: Optional[AsyncClient] = None,
        wallet: Optional[Wallet] = None,
    ) -> None:
        self._pipeline = pipeline
        self._pools = pools
        self._markets = markets
        self._config = config or get_app_config()
        self._client = client
        self._wallet = wallet
        self._tasks: Set[asyncio.Task] = set()
        self._logger = get_logger(__name__)

    @classmethod
    def from_config(cls, config: Optional[AppConfig] = None) -> "PositionEngine":
        cfg = config or get_app_config()
        client = AsyncClient(
            str(cfg.rpc.primary_url), commitment=Commitment(cfg.rpc.commitment), timeout=cfg.rpc.request_timeout
        )
        wallet = load_wallet(cfg.wallet)
        bridge = RaydiumNodeBridge(config=cfg.node_bridge, rpc_config=cfg.rpc)
        markets = MarketCache(OpenBookMarketLoader(client))
        pools = PoolCache()
        admission = AdmissionController(cfg.trading.max_concurrent_positions)
        entry_gate = EntryGate(PriceSampler(bridge, quote_decimals=cfg.trading.quote_decimals), cfg.entry)
        exit_monitor = ExitMonitor(bridge, cfg.exit, cfg.trading)
        pipeline = ExecutionPipeline(
            wallet=wallet,
            markets=markets,
            pools=pools,
            amm=bridge,
            swap_builder=bridge,
            channel=create_channel(client, wallet, cfg.execution),
            admission=admission,
            entry_gate=entry_gate,
            exit_monitor=exit_monitor,
            quality_gate=PoolFilters.from_config(client, cfg.filters, cfg.trading),
            allow_list=SnipeListCache(cfg.snipe_list) if cfg.snipe_list.enabled else None,
            client=client,
            config=cfg,
        )
        return cls(pipeline, pools=pools, markets=markets, config=cfg, client=client, wallet=wallet)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def validate(self) -> None:
        """Fail fast when the wallet holds no quote token account."""

        if self._client is None:
            raise StartupValidationError("An RPC client is required to validate the wallet")
        response = await self._client.get_account_info(self._pipeline.quote_account, commitment=Confirmed)
        if response.value is None:
            owner = self._wallet.public_key if self._wallet is not None else "?"
            raise StartupValidationError(
                f"{self._config.trading.quote_symbol} token account not found in wallet: {owner}"
            )
        self._logger.info("Quote token account %s found", self._pipeline.quote_account)

    def on_market_discovered(self, market: MarketMetadata) -> None:
        self._markets.save_market(market)

    def on_pool_discovered(self, pool: PoolReference) -> "asyncio.Task[PipelineResult]":
        self._pools.save_pool(pool)
        METRICS.increment("engine.pools_discovered")
        return self._spawn(self._pipeline.buy(pool), f"buy:{pool.base_mint}")

    def on_balance_observed(
        self, mint: str, account: TokenAccountSnapshot
    ) -> "Optional[asyncio.Task[PipelineResult]]":
        if mint == self._config.trading.quote_mint:
            return None
        if not self._config.trading.auto_sell:
            self._logger.debug("Auto sell disabled, ignoring balance change of %s", mint)
            return None
        return self._spawn(self._pipeline.sell(account), f"sell:{mint}")

    async def drain(self) -> None:
        """Wait until every spawned pipeline and profit report has finished."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self._pipeline.drain()

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()

    def _spawn(self, coro: Awaitable[PipelineResult], name: str) -> "asyncio.Task[PipelineResult]":
        task = asyncio.ensure_future(coro)
        task.set_name(name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.error("Task %s failed: %s", task.get_name(), exc, exc_info=exc)
            METRICS.increment("engine.task_failures")


__all__ = ["PositionEngine"]
