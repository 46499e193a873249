from __future__ import annotations

import asyncio
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Sequence

import pytest
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature

from solana_sniper_bot.config.settings import (
    AppConfig,
    FilterConfig,
    SnipeListConfig,
    TradingConfig,
)
from solana_sniper_bot.core.types import (
    MarketMetadata,
    PipelineResult,
    PoolReference,
    SwapDirection,
    SwapInstructions,
    SwapQuote,
    TokenAccountSnapshot,
    TradeAttemptResult,
)
from solana_sniper_bot.execution.pipeline import ExecutionPipeline, quote_balance_delta
from solana_sniper_bot.execution.wallet import Wallet
from solana_sniper_bot.ingestion.caches import MarketCache, PoolCache
from solana_sniper_bot.monitoring.event_bus import EventType
from solana_sniper_bot.strategy.admission import AdmissionController
from solana_sniper_bot.strategy.exit_monitor import ExitDecision, ExitOutcome, StopLossBook

SIGNATURE = str(Signature.default())


class FakeAmm:
    async def fetch_pool_info(self, pool_keys):
        return {"status": 6}

    async def quote(self, pool_keys, pool_info, amount_in_raw, mint_out, slippage_pct):
        return SwapQuote(amount_in_raw=amount_in_raw, amount_out=1.0, min_amount_out_raw=900)


class FakeSwapBuilder:
    def __init__(self) -> None:
        self.calls: List[Dict[str, Any]] = []

    async def swap_instructions(self, pool_keys, **kwargs) -> SwapInstructions:
        self.calls.append(kwargs)
        return SwapInstructions()


class FakeTxBuilder:
    def __init__(self) -> None:
        self.builds: List[Dict[str, Any]] = []

    def build(self, direction, swap, **kwargs):
        self.builds.append({"direction": direction, **kwargs})
        return object()


class ScriptedChannel:
    """Replays scripted submission outcomes; exceptions in the script are raised."""

    def __init__(self, outcomes: Sequence[Any], *, supplies_priority_fee: bool = False, on_submit=None) -> None:
        self._outcomes = list(outcomes)
        self.supplies_priority_fee = supplies_priority_fee
        self.submissions = 0
        self._on_submit = on_submit

    async def latest_blockhash(self):
        return Hash.default(), 100

    async def submit(self, transaction, blockhash, last_valid_block_height) -> TradeAttemptResult:
        self.submissions += 1
        if self._on_submit is not None:
            self._on_submit()
        outcome = self._outcomes.pop(0) if self._outcomes else TradeAttemptResult(False, SIGNATURE, "dropped")
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class StaticGate:
    def __init__(self, result: bool = True) -> None:
        self.result = result
        self.calls = 0

    async def evaluate(self, pool_keys) -> bool:
        self.calls += 1
        return self.result


class ScriptedQualityGate:
    def __init__(self, results: Sequence[Any]) -> None:
        self._results = list(results)
        self.calls = 0

    async def evaluate(self, pool_keys) -> bool:
        self.calls += 1
        result = self._results.pop(0) if self._results else False
        if isinstance(result, Exception):
            raise result
        return result


class FakeExitMonitor:
    def __init__(self, outcome: ExitOutcome = ExitOutcome.TAKE_PROFIT) -> None:
        self.outcome = outcome
        self.calls = 0
        self.book = StopLossBook()

    async def evaluate(self, pool_keys, amount_in_raw) -> ExitDecision:
        self.calls += 1
        self.book.ensure(pool_keys.base_mint, 0.008)
        return ExitDecision(self.outcome, 0.012)


class RecordingSink:
    def __init__(self) -> None:
        self.events: List[tuple] = []

    def publish(self, event_type, payload=None, **kwargs) -> None:
        self.events.append((event_type, dict(payload or {})))

    def of(self, event_type: EventType) -> List[Dict[str, Any]]:
        return [payload for kind, payload in self.events if kind is event_type]


class AllowList:
    def __init__(self, mints: Sequence[str]) -> None:
        self._mints = set(mints)

    def is_listed(self, mint: str) -> bool:
        return mint in self._mints


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


async def _no_sleep(delay: float) -> None:
    return None


def _config(**overrides: Any) -> AppConfig:
    trading = overrides.pop("trading", TradingConfig(quote_amount=0.01, max_buy_retries=3, max_sell_retries=3))
    filters = overrides.pop("filters", FilterConfig(check_interval_seconds=0))
    return AppConfig(trading=trading, filters=filters, **overrides)


def _pool() -> PoolReference:
    return PoolReference(
        pool_id=str(Pubkey.new_unique()),
        base_mint=str(Pubkey.new_unique()),
        quote_mint=TradingConfig().quote_mint,
        market_id=str(Pubkey.new_unique()),
        base_decimals=6,
    )


def _build(
    channel: ScriptedChannel,
    *,
    config: Optional[AppConfig] = None,
    entry_gate: Optional[StaticGate] = None,
    exit_monitor: Optional[FakeExitMonitor] = None,
    quality_gate: Any = None,
    allow_list: Any = None,
    client: Any = None,
    clock: Optional[FakeClock] = None,
    admission: Optional[AdmissionController] = None,
    pool: Optional[PoolReference] = None,
):
    wallet = Wallet(Keypair())
    markets = MarketCache()
    pools = PoolCache()
    if pool is not None:
        pools.save_pool(pool)
        markets.save(pool.market_id, MarketMetadata(pool.market_id, "eq", "bids", "asks", "auth"))
    sink = RecordingSink()
    tx_builder = FakeTxBuilder()
    pipeline = ExecutionPipeline(
        wallet=wallet,
        markets=markets,
        pools=pools,
        amm=FakeAmm(),
        swap_builder=FakeSwapBuilder(),
        channel=channel,
        admission=admission or AdmissionController(1),
        entry_gate=entry_gate or StaticGate(True),
        exit_monitor=exit_monitor or FakeExitMonitor(),
        quality_gate=quality_gate,
        allow_list=allow_list,
        client=client,
        config=config or _config(),
        notifier=sink,
        tx_builder=tx_builder,
        sleep=_no_sleep,
        clock=clock or FakeClock(),
    )
    return SimpleNamespace(pipeline=pipeline, sink=sink, tx_builder=tx_builder, wallet=wallet)


def test_buy_confirms_and_releases_permit() -> None:
    pool = _pool()
    channel = ScriptedChannel([TradeAttemptResult(False, SIGNATURE, "expired"), TradeAttemptResult(True, SIGNATURE)])
    admission = AdmissionController(1)
    ctx = _build(channel, pool=pool, admission=admission)

    result = asyncio.run(ctx.pipeline.buy(pool))

    assert result is PipelineResult.CONFIRMED
    assert channel.submissions == 2
    assert admission.available == 1
    buys = ctx.sink.of(EventType.BUY)
    assert buys == [{"mint": pool.base_mint, "signature": SIGNATURE, "attempt": 2}]
    build = ctx.tx_builder.builds[0]
    assert build["direction"] is SwapDirection.BUY
    assert build["include_priority_fee"] is True
    assert build["token_account_in"] == ctx.pipeline.quote_account


def test_buy_without_market_skips_retries() -> None:
    pool = _pool()
    channel = ScriptedChannel([])
    ctx = _build(channel)

    assert asyncio.run(ctx.pipeline.buy(pool)) is PipelineResult.NO_MARKET
    assert channel.submissions == 0


def test_buy_deadline_wins_over_remaining_retries() -> None:
    pool = _pool()
    clock = FakeClock()

    def _advance() -> None:
        clock.now += 6

    channel = ScriptedChannel([], on_submit=_advance)
    admission = AdmissionController(1)
    config = _config(trading=TradingConfig(max_buy_retries=10, buy_deadline_seconds=10))
    ctx = _build(channel, pool=pool, clock=clock, admission=admission, config=config)

    result = asyncio.run(ctx.pipeline.buy(pool))

    assert result is PipelineResult.DEADLINE
    assert channel.submissions == 2
    assert admission.available == 1


def test_buy_exhausts_retries_when_attempts_raise() -> None:
    pool = _pool()
    channel = ScriptedChannel([RuntimeError("node down")] * 3)
    ctx = _build(channel, pool=pool)

    assert asyncio.run(ctx.pipeline.buy(pool)) is PipelineResult.EXHAUSTED
    assert channel.submissions == 3


def test_buy_skipped_when_not_on_snipe_list() -> None:
    pool = _pool()
    channel = ScriptedChannel([TradeAttemptResult(True, SIGNATURE)])
    admission = AdmissionController(1)
    config = _config(snipe_list=SnipeListConfig(enabled=True))
    ctx = _build(channel, pool=pool, config=config, allow_list=AllowList([]), admission=admission)

    assert asyncio.run(ctx.pipeline.buy(pool)) is PipelineResult.SKIPPED_NOT_LISTED
    assert channel.submissions == 0
    assert admission.available == 1


def test_snipe_list_mode_bypasses_quality_filters() -> None:
    pool = _pool()
    channel = ScriptedChannel([TradeAttemptResult(True, SIGNATURE)])
    quality = ScriptedQualityGate([False] * 10)
    config = _config(
        snipe_list=SnipeListConfig(enabled=True),
        filters=FilterConfig(check_interval_seconds=1, check_duration_seconds=5),
    )
    ctx = _build(channel, pool=pool, config=config, allow_list=AllowList([pool.base_mint]), quality_gate=quality)

    assert asyncio.run(ctx.pipeline.buy(pool)) is PipelineResult.CONFIRMED
    assert quality.calls == 0


def test_buy_skipped_at_capacity() -> None:
    pool = _pool()
    channel = ScriptedChannel([TradeAttemptResult(True, SIGNATURE)])
    admission = AdmissionController(1)
    ctx = _build(channel, pool=pool, admission=admission)

    async def _scenario() -> PipelineResult:
        async with admission.permit():
            return await ctx.pipeline.buy(pool)

    assert asyncio.run(_scenario()) is PipelineResult.SKIPPED_CAPACITY
    assert channel.submissions == 0
    assert admission.available == 1


def test_running_sell_blocks_new_buy() -> None:
    pool = _pool()
    admission = AdmissionController(1)
    ctx = _build(ScriptedChannel([]), pool=pool, admission=admission)

    with admission.track_sell():
        assert asyncio.run(ctx.pipeline.buy(pool)) is PipelineResult.SKIPPED_CAPACITY


def test_filter_streak_must_be_consecutive() -> None:
    pool = _pool()
    quality = ScriptedQualityGate([True, False, RuntimeError("rpc"), True, True])
    config = _config(filters=FilterConfig(check_interval_seconds=1, check_duration_seconds=10, consecutive_match_count=2))
    channel = ScriptedChannel([TradeAttemptResult(True, SIGNATURE)])
    ctx = _build(channel, pool=pool, config=config, quality_gate=quality)

    assert asyncio.run(ctx.pipeline.buy(pool)) is PipelineResult.CONFIRMED
    assert quality.calls == 5


def test_filter_never_matching_skips_buy() -> None:
    pool = _pool()
    quality = ScriptedQualityGate([True, False] * 3)
    config = _config(filters=FilterConfig(check_interval_seconds=2, check_duration_seconds=12, consecutive_match_count=2))
    channel = ScriptedChannel([TradeAttemptResult(True, SIGNATURE)])
    ctx = _build(channel, pool=pool, config=config, quality_gate=quality)

    assert asyncio.run(ctx.pipeline.buy(pool)) is PipelineResult.FILTERED
    assert quality.calls == 6
    assert channel.submissions == 0


def test_filter_budget_rounds_up_and_checks_at_least_once() -> None:
    pool = _pool()
    quality = ScriptedQualityGate([False, False, True])
    config = _config(filters=FilterConfig(check_interval_seconds=2, check_duration_seconds=5))
    channel = ScriptedChannel([TradeAttemptResult(True, SIGNATURE)])
    ctx = _build(channel, pool=pool, config=config, quality_gate=quality)

    assert asyncio.run(ctx.pipeline.buy(pool)) is PipelineResult.CONFIRMED
    assert quality.calls == 3

    pool = _pool()
    quality = ScriptedQualityGate([True])
    config = _config(filters=FilterConfig(check_interval_seconds=2, check_duration_seconds=1))
    ctx = _build(ScriptedChannel([TradeAttemptResult(True, SIGNATURE)]), pool=pool, config=config, quality_gate=quality)

    assert asyncio.run(ctx.pipeline.buy(pool)) is PipelineResult.CONFIRMED
    assert quality.calls == 1


def test_missing_entry_signal_skips_buy() -> None:
    pool = _pool()
    channel = ScriptedChannel([TradeAttemptResult(True, SIGNATURE)])
    ctx = _build(channel, pool=pool, entry_gate=StaticGate(False))

    assert asyncio.run(ctx.pipeline.buy(pool)) is PipelineResult.NO_SIGNAL
    assert channel.submissions == 0


def test_priority_fee_left_to_relay_channel() -> None:
    pool = _pool()
    channel = ScriptedChannel([TradeAttemptResult(True, SIGNATURE)], supplies_priority_fee=True)
    ctx = _build(channel, pool=pool)

    asyncio.run(ctx.pipeline.buy(pool))

    assert ctx.tx_builder.builds[0]["include_priority_fee"] is False


def _account(pool: PoolReference, amount: int = 5_000) -> TokenAccountSnapshot:
    return TokenAccountSnapshot(address=str(Pubkey.new_unique()), mint=pool.base_mint, amount_raw=amount)


def test_sell_evaluates_exit_once_across_retries() -> None:
    pool = _pool()
    channel = ScriptedChannel([RuntimeError("blockhash expired"), TradeAttemptResult(True, SIGNATURE)])
    monitor = FakeExitMonitor(ExitOutcome.STOP_LOSS)
    admission = AdmissionController(1)
    ctx = _build(channel, pool=pool, exit_monitor=monitor, admission=admission)

    async def _scenario() -> PipelineResult:
        result = await ctx.pipeline.sell(_account(pool))
        await ctx.pipeline.drain()
        return result

    assert asyncio.run(_scenario()) is PipelineResult.CONFIRMED
    assert monitor.calls == 1
    assert channel.submissions == 2
    assert pool.base_mint not in monitor.book
    assert admission.active_sells == 0
    assert ctx.sink.of(EventType.EXIT)[0]["outcome"] == "stop_loss"
    assert ctx.sink.of(EventType.SELL)[0]["attempt"] == 2
    build = ctx.tx_builder.builds[0]
    assert build["direction"] is SwapDirection.SELL
    assert build["mint_out"] == Pubkey.from_string(pool.quote_mint)


def test_sell_aborted_by_exit_monitor() -> None:
    pool = _pool()
    channel = ScriptedChannel([TradeAttemptResult(True, SIGNATURE)])
    ctx = _build(channel, pool=pool, exit_monitor=FakeExitMonitor(ExitOutcome.ABORTED))

    assert asyncio.run(ctx.pipeline.sell(_account(pool))) is PipelineResult.ABORTED
    assert channel.submissions == 0


def test_sell_of_empty_balance_does_nothing() -> None:
    pool = _pool()
    monitor = FakeExitMonitor()
    admission = AdmissionController(1)
    ctx = _build(ScriptedChannel([]), pool=pool, exit_monitor=monitor, admission=admission)

    assert asyncio.run(ctx.pipeline.sell(_account(pool, amount=0))) is PipelineResult.EMPTY_BALANCE
    assert monitor.calls == 0
    assert admission.active_sells == 0


def test_sell_without_known_pool() -> None:
    pool = _pool()
    monitor = FakeExitMonitor()
    ctx = _build(ScriptedChannel([]), exit_monitor=monitor)

    assert asyncio.run(ctx.pipeline.sell(_account(pool))) is PipelineResult.NO_POOL
    assert monitor.calls == 0


def test_sell_exhausted_keeps_stop_loss_floor() -> None:
    pool = _pool()
    channel = ScriptedChannel([])
    monitor = FakeExitMonitor(ExitOutcome.TIMED_OUT)
    ctx = _build(channel, pool=pool, exit_monitor=monitor)

    assert asyncio.run(ctx.pipeline.sell(_account(pool))) is PipelineResult.EXHAUSTED
    assert channel.submissions == 3
    assert pool.base_mint in monitor.book


def _token_balance(mint: str, owner: str, amount: float) -> SimpleNamespace:
    return SimpleNamespace(mint=mint, owner=owner, ui_token_amount=SimpleNamespace(ui_amount=amount))


class FakeRpcClient:
    def __init__(self, meta: Any) -> None:
        self._meta = meta
        self.requests: List[Any] = []

    async def get_transaction(self, signature, **kwargs):
        self.requests.append((signature, kwargs))
        return SimpleNamespace(value=SimpleNamespace(transaction=SimpleNamespace(meta=self._meta)))


def test_confirmed_sell_reports_profit_in_background() -> None:
    pool = _pool()
    channel = ScriptedChannel([TradeAttemptResult(True, SIGNATURE)])
    placeholder = FakeRpcClient(None)
    ctx = _build(channel, pool=pool, client=placeholder)
    owner = str(ctx.wallet.public_key)
    quote_mint = pool.quote_mint
    placeholder._meta = SimpleNamespace(
        pre_token_balances=[_token_balance(quote_mint, owner, 1.0), _token_balance(pool.base_mint, owner, 50.0)],
        post_token_balances=[_token_balance(quote_mint, owner, 1.015), _token_balance(quote_mint, "other", 9.0)],
    )

    async def _scenario() -> None:
        await ctx.pipeline.sell(_account(pool))
        await ctx.pipeline.drain()

    asyncio.run(_scenario())

    pnl = ctx.sink.of(EventType.PNL)
    assert len(pnl) == 1
    assert pnl[0]["received"] == pytest.approx(0.015)
    assert pnl[0]["profit_or_loss"] == pytest.approx(0.005)
    assert pnl[0]["attempt"] == 1
    assert pnl[0]["max_attempts"] == 3
    signature, kwargs = placeholder.requests[0]
    assert str(signature) == SIGNATURE
    assert kwargs["max_supported_transaction_version"] == 0


def test_quote_balance_delta_filters_owner_and_mint() -> None:
    meta = SimpleNamespace(
        pre_token_balances=[_token_balance("Q", "me", 2.0)],
        post_token_balances=[_token_balance("Q", "me", 1.5), _token_balance("Q", "you", 3.0), _token_balance("X", "me", 7.0)],
    )
    assert quote_balance_delta(meta, "Q", "me") == pytest.approx(-0.5)
    assert quote_balance_delta(SimpleNamespace(pre_token_balances=None, post_token_balances=None), "Q", "me") == 0.0
