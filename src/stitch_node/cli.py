"""CLI entry point for launching the stitch daemon.

Usage:
    stitch-node
    stitch-node --config /etc/stitch-node/config.json --log-level DEBUG

With no arguments the configuration is read from ``config.json`` in the
working directory.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys

from stitch_node.config import DEFAULT_CONFIG_PATH, StitchConfig, load_config
from stitch_node.errors import ConfigError, StitchError
from stitch_node.ledger import LedgerClient
from stitch_node.network.stitch import setup_p2p
from stitch_node.orchestrator import StitchDaemon
from stitch_node.wallet import Wallet

logger = logging.getLogger("stitch_node")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Watch a blockDAG for fractures and pay miners to stitch them",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--config", "-c",
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to JSON config file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--log-level", "-l",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    return parser.parse_args(argv)


async def run_daemon(config: StitchConfig) -> int:
    """Run until the stream closes (exit 1) or a signal arrives (exit 0)."""
    wallet = Wallet.load_or_generate(config.wallet_key_file)

    async with LedgerClient(config.rpc_url) as ledger:
        network = await setup_p2p(config, node_id=wallet.public_key_hex[:16])
        daemon = StitchDaemon(config, ledger, wallet, network)

        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def handle_signal() -> None:
            logger.info("Shutting down...")
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, handle_signal)

        run_task = asyncio.create_task(daemon.run())
        stop_task = asyncio.create_task(stop_event.wait())
        try:
            await asyncio.wait({run_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            if run_task.done():
                try:
                    run_task.result()
                except StitchError:
                    logger.exception("Daemon stopped")
                    return 1
            return 0
        finally:
            for task in (run_task, stop_task):
                task.cancel()
            await asyncio.gather(run_task, stop_task, return_exceptions=True)
            await daemon.close()
            await network.close()


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        config = load_config(args.config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    logger.info(
        "Starting stitch node: rpc=%s p2p=:%d peers=%d window=%d adaptive=%s",
        config.rpc_url,
        config.p2p_port,
        len(config.p2p_bootstrap_peers),
        config.dag_window,
        config.adaptive,
    )
    sys.exit(asyncio.run(run_daemon(config)))


if __name__ == "__main__":
    main()
