"""Buy and sell orchestration under bounded retries and deadlines."""

from __future__ import annotations

import asyncio
import math
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Set

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solders.pubkey import Pubkey
from solders.signature import Signature

from ..config.settings import AppConfig, get_app_config
from ..core.types import (
    MarketMetadata,
    PipelineResult,
    PoolKeys,
    PoolReference,
    SwapDirection,
    TokenAccountSnapshot,
    TradeAttemptResult,
    create_pool_keys,
)
from ..monitoring.event_bus import EVENT_BUS, EventSeverity, EventType
from ..monitoring.logger import correlation_scope, get_logger
from ..monitoring.metrics import METRICS
from ..strategy.admission import AdmissionController
from ..strategy.entry_gate import EntryGate
from ..strategy.exit_monitor import ExitMonitor
from ..utils.constants import SOLSCAN_TX_URL
from .base import (
    AllowList,
    AmmPricing,
    MetadataCache,
    NotificationSink,
    QualityGate,
    SubmissionChannel,
    SwapInstructionBuilder,
)
from .transaction_builder import SwapTransactionBuilder
from .wallet import Wallet

Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], float]


def quote_balance_delta(meta: Any, quote_mint: str, owner: str) -> float:
    """Change of the owner's quote-mint token balances across a parsed transaction."""

    def _total(balances: Optional[Iterable[Any]]) -> float:
        total = 0.0
        for balance in balances or []:
            if str(balance.mint) != quote_mint or str(balance.owner) != owner:
                continue
            total += balance.ui_token_amount.ui_amount or 0.0
        return total

    return _total(meta.post_token_balances) - _total(meta.pre_token_balances)


class ExecutionPipeline:
    """Drives one side of a trade from precondition checks to confirmation.

    A buy passes the allow-list, admission, quality streak and entry gate
    before spending any retry. The retry loop stops at the first confirmed
    attempt, when ``max_buy_retries`` is used up, or when the wall-clock
    deadline measured from the first attempt has passed, whichever comes
    first. A sell consults the exit monitor once before its first attempt;
    retries go straight to submission.
    """

    def __init__(
        self,
        *,
        wallet: Wallet,
        markets: MetadataCache[MarketMetadata],
        pools: MetadataCache[PoolReference],
        amm: AmmPricing,
        swap_builder: SwapInstructionBuilder,
        channel: SubmissionChannel,
        admission: AdmissionController,
        entry_gate: EntryGate,
        exit_monitor: ExitMonitor,
        quality_gate: Optional[QualityGate] = None,
        allow_list: Optional[AllowList] = None,
        client: Optional[AsyncClient] = None,
        config: Optional[AppConfig] = None,
        notifier: Optional[NotificationSink] = None,
        tx_builder: Optional[SwapTransactionBuilder] = None,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
    ) -> None:
        self._config = config or get_app_config()
        self._wallet = wallet
        self._markets = markets
        self._pools = pools
        self._amm = amm
        self._swap_builder = swap_builder
        self._channel = channel
        self._admission = admission
        self._entry_gate = entry_gate
        self._exit_monitor = exit_monitor
        self._quality_gate = quality_gate
        self._allow_list = allow_list
        self._client = client
        self._notifier = notifier if notifier is not None else EVENT_BUS
        self._tx_builder = tx_builder or SwapTransactionBuilder(wallet, self._config.trading)
        self._sleep = sleep
        self._clock = clock
        self._background: Set[asyncio.Task] = set()
        self._logger = get_logger(__name__)

        trading = self._config.trading
        self._quote_mint = trading.quote_mint
        self._quote_amount_raw = int(round(trading.quote_amount * 10**trading.quote_decimals))
        self._quote_ata = wallet.associated_token_address(trading.quote_mint)

    @property
    def quote_account(self) -> Pubkey:
        return self._quote_ata

    async def buy(self, pool: PoolReference) -> PipelineResult:
        mint = pool.base_mint
        with correlation_scope(mint):
            self._logger.debug("Processing new pool %s", pool.pool_id)
            snipe_list = self._config.snipe_list.enabled
            if snipe_list and (self._allow_list is None or not self._allow_list.is_listed(mint)):
                self._logger.debug("Skipping buy because token is not in a snipe list")
                return self._record("buy", PipelineResult.SKIPPED_NOT_LISTED)

            delay = self._config.trading.auto_buy_delay_seconds
            if delay > 0:
                self._logger.debug("Waiting for %s s before buy", delay)
                await self._sleep(delay)

            if not self._admission.try_admit():
                self._logger.debug(
                    "Skipping buy, %d of %d positions already being processed",
                    self._admission.load(),
                    self._admission.capacity,
                )
                return self._record("buy", PipelineResult.SKIPPED_CAPACITY)

            async with self._admission.permit():
                try:
                    result = await self._buy_admitted(pool)
                except Exception:  # noqa: BLE001
                    self._logger.exception("Failed to buy token")
                    result = PipelineResult.FAILED
            return self._record("buy", result)

    async def _buy_admitted(self, pool: PoolReference) -> PipelineResult:
        trading = self._config.trading
        market = await self._markets.get(pool.market_id)
        if market is None:
            self._logger.warning("Market %s not found, can't buy", pool.market_id)
            return PipelineResult.NO_MARKET
        mint_ata = self._wallet.associated_token_address(pool.base_mint)
        pool_keys = create_pool_keys(pool, market)

        if not self._config.snipe_list.enabled and not await self._filter_match(pool_keys):
            self._logger.debug("Skipping buy because pool doesn't match filters")
            return PipelineResult.FILTERED

        if not await self._entry_gate.evaluate(pool_keys):
            self._logger.debug("Skipping buy because buy signal not received")
            return PipelineResult.NO_SIGNAL

        started = self._clock()
        deadline = trading.buy_deadline_seconds
        for attempt in range(trading.max_buy_retries):
            if self._clock() - started > deadline:
                self._logger.info("Not buying %s, %s s buy deadline exceeded", pool.base_mint, deadline)
                return PipelineResult.DEADLINE
            self._logger.info("Send buy transaction attempt: %d/%d", attempt + 1, trading.max_buy_retries)
            METRICS.increment("pipeline.buy.attempts")
            try:
                result = await self._swap(
                    pool_keys,
                    SwapDirection.BUY,
                    token_account_in=self._quote_ata,
                    token_account_out=mint_ata,
                    amount_in_raw=self._quote_amount_raw,
                    mint_out=pool.base_mint,
                    slippage_pct=trading.buy_slippage_pct,
                )
            except Exception as exc:  # noqa: BLE001
                self._logger.debug("Error confirming buy transaction: %s", exc)
                continue
            if result.confirmed:
                self._logger.info(
                    "Confirmed buy tx",
                    extra={"signature": result.signature, "url": SOLSCAN_TX_URL.format(signature=result.signature)},
                )
                self._notify(
                    EventType.BUY,
                    {"mint": pool.base_mint, "signature": result.signature, "attempt": attempt + 1},
                )
                return PipelineResult.CONFIRMED
            self._logger.info(
                "Error confirming buy tx",
                extra={"signature": result.signature, "error": result.error},
            )
        return PipelineResult.EXHAUSTED

    async def sell(self, account: TokenAccountSnapshot) -> PipelineResult:
        with correlation_scope(account.mint):
            if account.amount_raw <= 0:
                self._logger.info("Empty balance, can't sell")
                return self._record("sell", PipelineResult.EMPTY_BALANCE)
            with self._admission.track_sell():
                try:
                    result = await self._sell_tracked(account)
                except Exception:  # noqa: BLE001
                    self._logger.exception("Failed to sell token")
                    result = PipelineResult.FAILED
            return self._record("sell", result)

    async def _sell_tracked(self, account: TokenAccountSnapshot) -> PipelineResult:
        trading = self._config.trading
        pool = await self._pools.get(account.mint)
        if pool is None:
            self._logger.debug("Token pool data is not found, can't sell")
            return PipelineResult.NO_POOL

        delay = trading.auto_sell_delay_seconds
        if delay > 0:
            self._logger.debug("Waiting for %s s before sell", delay)
            await self._sleep(delay)

        market = await self._markets.get(pool.market_id)
        if market is None:
            self._logger.warning("Market %s not found, can't sell", pool.market_id)
            return PipelineResult.NO_MARKET
        pool_keys = create_pool_keys(pool, market)

        for attempt in range(trading.max_sell_retries):
            try:
                if attempt == 0:
                    decision = await self._exit_monitor.evaluate(pool_keys, account.amount_raw)
                    self._logger.debug("Exit decision %s", decision.outcome.value)
                    self._notify(
                        EventType.EXIT,
                        {
                            "mint": account.mint,
                            "outcome": decision.outcome.value,
                            "current": decision.last_amount_out,
                        },
                    )
                    if not decision.should_sell:
                        return PipelineResult.ABORTED
                self._logger.info("Send sell transaction attempt: %d/%d", attempt + 1, trading.max_sell_retries)
                METRICS.increment("pipeline.sell.attempts")
                result = await self._swap(
                    pool_keys,
                    SwapDirection.SELL,
                    token_account_in=Pubkey.from_string(account.address),
                    token_account_out=self._quote_ata,
                    amount_in_raw=account.amount_raw,
                    mint_out=self._quote_mint,
                    slippage_pct=trading.sell_slippage_pct,
                )
                if result.confirmed:
                    self._exit_monitor.book.clear(account.mint)
                    self._logger.info(
                        "Confirmed sell tx",
                        extra={
                            "signature": result.signature,
                            "url": SOLSCAN_TX_URL.format(signature=result.signature),
                        },
                    )
                    self._notify(
                        EventType.SELL,
                        {"mint": account.mint, "signature": result.signature, "attempt": attempt + 1},
                    )
                    self._spawn(self._report_profit(account.mint, result, attempt + 1))
                    return PipelineResult.CONFIRMED
                self._logger.info(
                    "Error confirming sell tx",
                    extra={"signature": result.signature, "error": result.error},
                )
            except Exception as exc:  # noqa: BLE001
                self._logger.debug("Error confirming sell transaction: %s", exc)
        return PipelineResult.EXHAUSTED

    async def _filter_match(self, pool_keys: PoolKeys) -> bool:
        cfg = self._config.filters
        if self._quality_gate is None or cfg.check_interval_seconds == 0 or cfg.check_duration_seconds == 0:
            return True
        max_ticks = max(1, math.ceil(cfg.check_duration_seconds / cfg.check_interval_seconds))
        matches = 0
        for _ in range(max_ticks):
            try:
                passed = await self._quality_gate.evaluate(pool_keys)
            except Exception as exc:  # noqa: BLE001
                self._logger.debug("Quality gate failed: %s", exc)
                passed = False
            if passed:
                matches += 1
                if matches >= cfg.consecutive_match_count:
                    self._logger.debug("Filter match %d/%d", matches, cfg.consecutive_match_count)
                    return True
            else:
                matches = 0
            await self._sleep(cfg.check_interval_seconds)
        return False

    async def _swap(
        self,
        pool_keys: PoolKeys,
        direction: SwapDirection,
        *,
        token_account_in: Pubkey,
        token_account_out: Pubkey,
        amount_in_raw: int,
        mint_out: str,
        slippage_pct: float,
    ) -> TradeAttemptResult:
        pool_info = await self._amm.fetch_pool_info(pool_keys)
        quote = await self._amm.quote(pool_keys, pool_info, amount_in_raw, mint_out, slippage_pct)
        blockhash, last_valid_block_height = await self._channel.latest_blockhash()
        swap = await self._swap_builder.swap_instructions(
            pool_keys,
            token_account_in=token_account_in,
            token_account_out=token_account_out,
            owner=self._wallet.public_key,
            amount_in_raw=amount_in_raw,
            min_amount_out_raw=quote.min_amount_out_raw,
        )
        transaction = self._tx_builder.build(
            direction,
            swap,
            token_account_in=token_account_in,
            mint_out=Pubkey.from_string(mint_out),
            include_priority_fee=not self._channel.supplies_priority_fee,
            blockhash=blockhash,
        )
        with METRICS.timer(f"pipeline.{direction.value}.submit_seconds"):
            return await self._channel.submit(transaction, blockhash, last_valid_block_height)

    async def _report_profit(self, mint: str, result: TradeAttemptResult, attempt: int) -> None:
        if self._client is None or not result.signature:
            return
        response = await self._client.get_transaction(
            Signature.from_string(result.signature),
            encoding="jsonParsed",
            commitment=Confirmed,
            max_supported_transaction_version=0,
        )
        confirmed = response.value
        meta = confirmed.transaction.meta if confirmed is not None else None
        if meta is None:
            self._logger.warning("Sell transaction %s has no status metadata", result.signature)
            return
        received = quote_balance_delta(meta, self._quote_mint, str(self._wallet.public_key))
        profit_or_loss = received - self._config.trading.quote_amount
        self._logger.info("Profit or loss for %s: %.5f", mint, profit_or_loss)
        self._notify(
            EventType.PNL,
            {
                "mint": mint,
                "signature": result.signature,
                "received": received,
                "profit_or_loss": profit_or_loss,
                "attempt": attempt,
                "max_attempts": self._config.trading.max_sell_retries,
            },
        )

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._logger.warning("Error fetching transaction details: %s", exc)

    async def drain(self) -> None:
        """Wait for background profit reports to finish."""

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def _record(self, side: str, result: PipelineResult) -> PipelineResult:
        METRICS.increment(f"pipeline.{side}.{result.value}")
        return result

    def _notify(
        self,
        event_type: EventType,
        payload: Dict[str, Any],
        *,
        severity: EventSeverity = EventSeverity.INFO,
    ) -> None:
        try:
            self._notifier.publish(event_type, payload, severity=severity, correlation_id=payload.get("mint"))
        except Exception:  # noqa: BLE001
            self._logger.exception("Failed to publish %s notification", event_type.value)


__all__ = ["ExecutionPipeline", "quote_balance_delta"]
