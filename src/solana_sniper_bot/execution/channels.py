"""Submission channels that broadcast swaps and wait for confirmation."""

from __future__ import annotations

import asyncio
import random
from typing import Any, Dict, List, Optional, Sequence

import base58
import requests
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException, TransactionExpiredBlockheightExceededError, UnconfirmedTxError
from solana.rpc.types import TxOpts
from solders.hash import Hash
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from ..config.settings import ExecutionConfig, get_app_config
from ..core.types import TradeAttemptResult
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from ..utils.constants import LAMPORTS_PER_SOL
from .wallet import Wallet

JITO_TIP_ACCOUNTS: Sequence[str] = (
    "96gYZGLnJYVFmbjzopPSU6QiEV5fGqZNyN9nmNhvrZU5",
    "HFqU5x63VTqvQss8hp11i4wVV8bD44PvwucfZ2bU7gRe",
    "Cw8CFyM9FkoMi7K7Crf6HNQqf4uEMzpKw6QNghXLvLkY",
    "ADaUMid9yfUytqMBgopwjb2DTLSokTSzL1zt6iGPaS49",
    "DfXygSm4jCyNCybVYYK6DwvWqjKee8pbDmJGcLWNDXjh",
    "ADuUkR4vqLUMWXxW9gh6D6L8pMSawimctcNZ5pGwDcEt",
    "DttWaMuVvTiduZRnguLF7jNxTgiMBZ1hyAumKUiL2KRL",
    "3AVi9Tg9Uo68tJfuvoKvqKNWKkC5wPdSSdeBnizKZ6jT",
)

_CONFIRM_ERRORS = (
    RPCException,
    UnconfirmedTxError,
    TransactionExpiredBlockheightExceededError,
    SolanaRpcException,
    asyncio.TimeoutError,
)


class RpcSubmissionChannel:
    """Sends transactions straight to the RPC node, relying on priority fees."""

    supplies_priority_fee = False

    def __init__(self, client: AsyncClient, config: Optional[ExecutionConfig] = None) -> None:
        self._client = client
        self._config = config or get_app_config().execution
        self._logger = get_logger(__name__)

    async def latest_blockhash(self) -> tuple[Hash, int]:
        return await fetch_latest_blockhash(self._client)

    async def submit(
        self,
        transaction: VersionedTransaction,
        blockhash: Hash,
        last_valid_block_height: int,
    ) -> TradeAttemptResult:
        try:
            response = await self._client.send_raw_transaction(
                bytes(transaction),
                opts=TxOpts(skip_preflight=self._config.skip_preflight, preflight_commitment=Confirmed),
            )
        except _CONFIRM_ERRORS as exc:
            METRICS.increment("submission.rpc.send_errors")
            return TradeAttemptResult(confirmed=False, error=str(exc))
        return await confirm_signature(self._client, response.value, last_valid_block_height, self._config)


class JitoBundleChannel:
    """Submits the swap in a bundle with a tip transfer to a block engine."""

    supplies_priority_fee = True

    def __init__(
        self,
        client: AsyncClient,
        wallet: Wallet,
        config: Optional[ExecutionConfig] = None,
        *,
        session: Optional[requests.Session] = None,
        tip_accounts: Sequence[str] = JITO_TIP_ACCOUNTS,
    ) -> None:
        self._client = client
        self._wallet = wallet
        self._config = config or get_app_config().execution
        self._session = session or requests.Session()
        self._tip_accounts = [Pubkey.from_string(account) for account in tip_accounts]
        self._logger = get_logger(__name__)

    @property
    def tip_lamports(self) -> int:
        return int(round(self._config.jito_tip_sol * LAMPORTS_PER_SOL))

    async def latest_blockhash(self) -> tuple[Hash, int]:
        return await fetch_latest_blockhash(self._client)

    def build_tip_transaction(self, blockhash: Hash) -> VersionedTransaction:
        payer = self._wallet.public_key
        instruction = transfer(
            TransferParams(
                from_pubkey=payer,
                to_pubkey=random.choice(self._tip_accounts),
                lamports=self.tip_lamports,
            )
        )
        message = MessageV0.try_compile(payer, [instruction], [], blockhash)
        return VersionedTransaction(message, [self._wallet.keypair])

    async def submit(
        self,
        transaction: VersionedTransaction,
        blockhash: Hash,
        last_valid_block_height: int,
    ) -> TradeAttemptResult:
        tip = self.build_tip_transaction(blockhash)
        bundle = [base58.b58encode(bytes(tx)).decode("ascii") for tx in (tip, transaction)]
        try:
            bundle_id = await asyncio.to_thread(self._send_bundle, bundle)
        except (requests.RequestException, RuntimeError) as exc:
            METRICS.increment("submission.jito.send_errors")
            self._logger.warning("Bundle submission failed: %s", exc)
            return TradeAttemptResult(
                confirmed=False,
                signature=str(transaction.signatures[0]),
                error=str(exc),
            )
        self._logger.debug("Bundle %s accepted by block engine", bundle_id)
        return await confirm_signature(
            self._client, transaction.signatures[0], last_valid_block_height, self._config
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_fixed(0.2),
        retry=retry_if_exception_type(requests.RequestException),
        reraise=True,
    )
    def _send_bundle(self, encoded: List[str]) -> str:
        payload: Dict[str, Any] = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "sendBundle",
            "params": [encoded],
        }
        response = self._session.post(
            str(self._config.jito_block_engine_url),
            json=payload,
            timeout=self._config.relay_timeout_seconds,
        )
        response.raise_for_status()
        body = response.json()
        if body.get("error"):
            raise RuntimeError(f"Block engine rejected bundle: {body['error']}")
        return str(body.get("result", ""))


@retry(
    stop=stop_after_attempt(3),
    wait=wait_fixed(0.5),
    retry=retry_if_exception_type(SolanaRpcException),
    reraise=True,
)
async def fetch_latest_blockhash(client: AsyncClient) -> tuple[Hash, int]:
    response = await client.get_latest_blockhash(Confirmed)
    return response.value.blockhash, response.value.last_valid_block_height


async def confirm_signature(
    client: AsyncClient,
    signature: Signature,
    last_valid_block_height: int,
    config: ExecutionConfig,
) -> TradeAttemptResult:
    """Wait for ``signature`` to reach confirmed commitment before the blockhash expires."""

    try:
        status = await asyncio.wait_for(
            client.confirm_transaction(
                signature,
                Confirmed,
                sleep_seconds=0.5,
                last_valid_block_height=last_valid_block_height,
            ),
            timeout=config.confirm_timeout_seconds,
        )
    except _CONFIRM_ERRORS as exc:
        METRICS.increment("submission.unconfirmed")
        return TradeAttemptResult(confirmed=False, signature=str(signature), error=str(exc))
    result = status.value[0] if status.value else None
    if result is None:
        return TradeAttemptResult(confirmed=False, signature=str(signature), error="signature status unavailable")
    if result.err is not None:
        METRICS.increment("submission.failed")
        return TradeAttemptResult(confirmed=False, signature=str(signature), error=str(result.err))
    METRICS.increment("submission.confirmed")
    return TradeAttemptResult(confirmed=True, signature=str(signature))


def create_channel(
    client: AsyncClient,
    wallet: Wallet,
    config: Optional[ExecutionConfig] = None,
) -> RpcSubmissionChannel | JitoBundleChannel:
    cfg = config or get_app_config().execution
    if cfg.channel.value == "jito":
        return JitoBundleChannel(client, wallet, cfg)
    return RpcSubmissionChannel(client, cfg)


__all__ = [
    "JITO_TIP_ACCOUNTS",
    "JitoBundleChannel",
    "RpcSubmissionChannel",
    "confirm_signature",
    "create_channel",
    "fetch_latest_blockhash",
]
