"""Entrypoint for the Solana sniper bot."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, TextIO

from pydantic import ValidationError

from .config.settings import AppConfig, get_app_config
from .core.errors import StartupValidationError
from .core.types import MarketMetadata, PoolReference, TokenAccountSnapshot
from .engine import PositionEngine
from .execution.node_bridge import NodeBridgeError
from .monitoring import EVENT_BUS, bootstrap_observability
from .monitoring.event_bus import EventType
from .monitoring.logger import get_logger
from .monitoring.metrics import METRICS

logger = get_logger(__name__)


def dispatch_event(engine: PositionEngine, event: Dict[str, Any]) -> None:
    """Route one decoded ingestion event to the engine."""

    kind = event.get("type")
    if kind == "market":
        engine.on_market_discovered(MarketMetadata.from_payload(event))
    elif kind == "pool":
        engine.on_pool_discovered(PoolReference.from_payload(event))
    elif kind == "balance":
        account = TokenAccountSnapshot.from_payload(event)
        engine.on_balance_observed(account.mint, account)
    else:
        raise ValueError(f"Unknown event type: {kind!r}")


async def replay_events(engine: PositionEngine, stream: TextIO) -> int:
    """Feed JSON-lines events into the engine, returning how many were accepted."""

    accepted = 0
    while True:
        line = await asyncio.to_thread(stream.readline)
        if not line:
            break
        line = line.strip()
        if not line:
            continue
        try:
            dispatch_event(engine, json.loads(line))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Skipping malformed event: %s", exc)
            continue
        accepted += 1
    return accepted


async def run_async(config: AppConfig, *, check_only: bool = False, events: Optional[str] = None) -> int:
    try:
        engine = PositionEngine.from_config(config)
    except (NodeBridgeError, ValueError) as exc:
        logger.error("Startup failed: %s", exc)
        return 1
    try:
        try:
            await engine.validate()
        except (StartupValidationError, ValueError) as exc:
            logger.error("Startup failed: %s", exc)
            return 1
        EVENT_BUS.publish(EventType.HEALTH, {"message": "startup validation passed"})
        if check_only:
            return 0
        if events is None:
            logger.info("No event source given, nothing to do")
            return 0
        if events == "-":
            accepted = await replay_events(engine, sys.stdin)
        else:
            with Path(events).open("r", encoding="utf-8") as handle:
                accepted = await replay_events(engine, handle)
        logger.info("Replayed %d events, waiting for %d open pipelines", accepted, engine.pending)
        await engine.drain()
        return 0
    finally:
        await engine.close()
        EVENT_BUS.flush()
        if config.monitoring.metrics_path is not None:
            METRICS.write_prometheus(config.monitoring.metrics_path)


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run the Solana sniper bot")
    parser.add_argument(
        "--check",
        action="store_true",
        default=False,
        help="Validate configuration, wallet and quote token account, then exit.",
    )
    parser.add_argument(
        "--events",
        metavar="PATH",
        default=None,
        help="JSON-lines file of market/pool/balance events to process ('-' for stdin).",
    )
    args = parser.parse_args(argv)
    try:
        config = get_app_config()
    except ValidationError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2
    bootstrap_observability(config=config)
    return asyncio.run(run_async(config, check_only=args.check, events=args.events))


if __name__ == "__main__":
    sys.exit(main())
