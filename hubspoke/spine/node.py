"""
Node entry point - runs this process as either the hub or a spoke.

The role is chosen once from configuration and the matching component is
constructed explicitly with its dispatcher; nothing is created at import.

Usage:
    python -m hubspoke.spine.node --role hub
    HUBSPOKE_ROLE=spoke HUBSPOKE_MARKETS=BINANCE:btcusdt python -m hubspoke.spine.node
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
import sys
from typing import Union

from dotenv import load_dotenv

from hubspoke.core.config import (
    ConfigError,
    HubConfig,
    RoleConfig,
    RuntimeConfig,
    SpokeConfig,
    load_role_config,
    load_runtime_config,
)
from hubspoke.spine.dispatcher import EventDispatcher
from hubspoke.spine.hub import HubBindError, HubListener
from hubspoke.spine.spoke import SpokeClient

logger = logging.getLogger(__name__)

Node = Union[HubListener, SpokeClient]


def build_node(config: RoleConfig, dispatcher: EventDispatcher) -> Node:
    """Construct the component for the configured role."""
    if isinstance(config, HubConfig):
        return HubListener(config, dispatcher)
    if isinstance(config, SpokeConfig):
        return SpokeClient(config, dispatcher)
    raise TypeError(f"unknown role config: {type(config).__name__}")


async def start_node(node: Node) -> None:
    """Bind (hub) or connect (spoke). HubBindError propagates."""
    if isinstance(node, HubListener):
        await node.start()
    else:
        await node.connect()


async def _status_loop(node: Node, interval: float) -> None:
    """Log node stats periodically."""
    while True:
        await asyncio.sleep(interval)
        logger.info(f"[NODE] {node.stats}")
        if isinstance(node, HubListener):
            for entry in node.snapshot():
                logger.debug(f"[NODE] spoke {entry}")


async def run_node(
    config: RoleConfig,
    dispatcher: EventDispatcher,
    shutdown_event: asyncio.Event,
    status_interval: float = 60.0,
) -> Node:
    """Run the node until shutdown_event is set, then close it."""
    node = build_node(config, dispatcher)
    await start_node(node)
    logger.info(f"[NODE] Running as {config.role} on {config.socket_path}")

    status_task = None
    if status_interval > 0:
        status_task = asyncio.create_task(_status_loop(node, status_interval))

    try:
        await shutdown_event.wait()
    finally:
        if status_task is not None:
            status_task.cancel()
            try:
                await status_task
            except asyncio.CancelledError:
                pass
        await node.close()
        logger.info(f"[NODE] {config.role} stopped")

    return node


async def async_main(config: RoleConfig, runtime: RuntimeConfig) -> None:
    """Async main: wire signals to a shutdown event and run the node."""
    dispatcher = EventDispatcher()
    shutdown_event = asyncio.Event()

    def signal_handler():
        logger.info("[NODE] Shutdown signal received")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    try:
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, signal_handler)
    except NotImplementedError:
        # Windows doesn't support add_signal_handler
        pass

    await run_node(config, dispatcher, shutdown_event, runtime.status_interval_sec)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="hubspoke hub/spoke node")
    parser.add_argument(
        "--role",
        choices=("hub", "spoke"),
        default=None,
        help="Process role (default: HUBSPOKE_ROLE or HUBSPOKE_API/HUBSPOKE_COLLECT)",
    )
    parser.add_argument(
        "--socket-path",
        type=str,
        default=None,
        help="Unix socket path (default: HUBSPOKE_SOCKET_PATH)",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level (default: HUBSPOKE_LOG_LEVEL or INFO)",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """CLI entry point."""
    load_dotenv()
    args = parse_args(argv)

    env = dict(os.environ)
    if args.role:
        env["HUBSPOKE_ROLE"] = args.role
    if args.socket_path:
        env["HUBSPOKE_SOCKET_PATH"] = args.socket_path
    if args.log_level:
        env["HUBSPOKE_LOG_LEVEL"] = args.log_level

    level = env.get("HUBSPOKE_LOG_LEVEL", "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        runtime = load_runtime_config(env)
        config = load_role_config(env)
    except ConfigError as e:
        logger.error(f"[NODE] Invalid configuration: {e}")
        return 2

    try:
        asyncio.run(async_main(config, runtime))
    except HubBindError as e:
        logger.error(f"[NODE] Hub failed to start: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("[NODE] Interrupted")

    return 0


if __name__ == "__main__":
    sys.exit(main())
