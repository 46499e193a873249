"""Bridge to the Raydium SDK through small Node.js helper scripts.

Pool reserve decoding, constant-product quoting and swap instruction layout
live in the official Raydium TypeScript SDK. The bot shells out to helper
scripts in the ``node_bridge`` directory (``npm install`` there first); each
script reads one JSON document on stdin and writes one to stdout.
"""

from __future__ import annotations

import asyncio
import json
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional

import base58
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from ..config.settings import NodeBridgeConfig, RPCConfig, get_app_config
from ..core.types import PoolKeys, SwapInstructions, SwapQuote
from ..monitoring.logger import get_logger
from ..monitoring.metrics import METRICS
from .transaction_builder import convert_instructions


class NodeBridgeError(RuntimeError):
    """Raised when a Node.js helper script fails."""


class NodeBridge:
    """Thin wrapper around the Node.js helper scripts."""

    def __init__(self, base_dir: Path | str | None = None, *, timeout: float = 15.0) -> None:
        if base_dir is not None:
            candidate = Path(base_dir).expanduser().resolve()
        else:
            candidate = self._discover_default_base_dir()
        self._base_dir = candidate
        self._timeout = timeout

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def _discover_default_base_dir(self) -> Path:
        current = Path(__file__).resolve()
        for parent in [Path.cwd(), *current.parents]:
            helper_dir = parent / "node_bridge"
            if (helper_dir / "package.json").exists():
                return helper_dir
        raise NodeBridgeError(
            "Unable to locate the node_bridge helpers; set NODE_BRIDGE__BASE_DIR explicitly."
        )

    def _ensure_environment(self) -> None:
        if not (self._base_dir / "package.json").exists():
            raise NodeBridgeError(f"Node helper package.json not found in {self._base_dir}")
        if not (self._base_dir / "node_modules").exists():
            raise NodeBridgeError(
                "Node dependencies missing. Run 'npm install' inside the node_bridge directory."
            )

    def run(self, script_name: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        self._ensure_environment()
        script_path = self._base_dir / script_name
        if not script_path.exists():
            raise NodeBridgeError(f"Node script {script_name} not found in {self._base_dir}")
        try:
            result = subprocess.run(
                ["node", script_path.name],
                input=json.dumps(payload),
                text=True,
                capture_output=True,
                cwd=self._base_dir,
                check=True,
                timeout=self._timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise NodeBridgeError(f"Node script {script_name} timed out after {self._timeout}s") from exc
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or "").strip()
            try:
                message = json.loads(stderr).get("error", stderr)
            except json.JSONDecodeError:
                message = stderr or str(exc)
            raise NodeBridgeError(message) from exc
        if not result.stdout:
            return {}
        return json.loads(result.stdout)


class RaydiumNodeBridge:
    """AMM pricing and swap-instruction builder backed by the Raydium SDK helper."""

    def __init__(
        self,
        bridge: Optional[NodeBridge] = None,
        config: Optional[NodeBridgeConfig] = None,
        rpc_config: Optional[RPCConfig] = None,
    ) -> None:
        self._config = config or get_app_config().node_bridge
        self._rpc_config = rpc_config or get_app_config().rpc
        self._bridge = bridge or NodeBridge(self._config.base_dir)
        self._logger = get_logger(__name__)

    async def _call(self, script: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        payload = {"rpcUrl": str(self._rpc_config.primary_url), **payload}
        with METRICS.timer(f"node_bridge.{script}"):
            return await asyncio.to_thread(self._bridge.run, script, payload)

    async def fetch_pool_info(self, pool_keys: PoolKeys) -> Dict[str, Any]:
        response = await self._call(self._config.pool_info_script, {"poolKeys": pool_keys.as_payload()})
        if not response:
            raise NodeBridgeError(f"No pool info returned for {pool_keys.id}")
        return response

    async def quote(
        self,
        pool_keys: PoolKeys,
        pool_info: Dict[str, Any],
        amount_in_raw: int,
        mint_out: str,
        slippage_pct: float,
    ) -> SwapQuote:
        mint_in = pool_keys.quote_mint if mint_out == pool_keys.base_mint else pool_keys.base_mint
        response = await self._call(
            self._config.quote_script,
            {
                "poolKeys": pool_keys.as_payload(),
                "poolInfo": pool_info,
                "amountIn": str(amount_in_raw),
                "mintIn": mint_in,
                "mintOut": mint_out,
                "slippage": slippage_pct,
            },
        )
        try:
            return SwapQuote(
                amount_in_raw=amount_in_raw,
                amount_out=float(response["amountOut"]),
                min_amount_out_raw=int(response["minAmountOut"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise NodeBridgeError(f"Malformed quote response: {response}") from exc

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
        response = await self._call(
            self._config.swap_script,
            {
                "poolKeys": pool_keys.as_payload(),
                "userKeys": {
                    "tokenAccountIn": str(token_account_in),
                    "tokenAccountOut": str(token_account_out),
                    "owner": str(owner),
                },
                "amountIn": str(amount_in_raw),
                "minAmountOut": str(min_amount_out_raw),
                "version": pool_keys.version,
            },
        )
        instructions = convert_instructions(response.get("instructions", []))
        if not instructions:
            raise NodeBridgeError("Raydium helper returned no swap instructions")
        signers: List[Keypair] = [
            Keypair.from_bytes(base58.b58decode(secret)) for secret in response.get("signers", [])
        ]
        return SwapInstructions(instructions=instructions, signers=signers)


__all__ = ["NodeBridge", "NodeBridgeError", "RaydiumNodeBridge"]
