"""
Background process running the expiry sweep and anchoring retries.

Configured from environment variables (see config.load_config). Runs
until SIGINT/SIGTERM; the HTTP layer, if any, runs in its own process
against the same SQLite state.
"""

import argparse
import asyncio
import logging
import signal
import sys

from . import __version__
from .config import LedgerConfig, load_config
from .service import build_service

logger = logging.getLogger(__name__)


def setup_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%dT%H:%M:%S%z'
    )


async def run(config: LedgerConfig, once: bool = False):
    """Build the service and drive the sweep task until signalled."""
    service = build_service(config)
    task = service.sweep_task(config.sweep_interval_seconds, jitter_pct=5.0)

    try:
        if once:
            result = await task.run_once()
            logger.info(f"Single sweep complete: {result}")
            return

        shutdown_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, shutdown_event.set)

        logger.info(f"Dispute ledger v{__version__} starting sweep daemon")
        await task.start()
        await shutdown_event.wait()
        logger.info("Shutdown requested")
        await task.stop()
    finally:
        if service.registry.gateway is not None:
            await service.registry.gateway.close()
        service.registry.store.close()


def main():
    """Main entry point for the dispute-ledger console script."""
    parser = argparse.ArgumentParser(description="Dispute ledger expiry sweep daemon")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sweep and exit"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Override LOG_LEVEL"
    )
    args = parser.parse_args()

    try:
        config = load_config()
    except Exception as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    if args.log_level:
        config.log_level = args.log_level
    setup_logging(config.log_level)

    try:
        asyncio.run(run(config, once=args.once))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


if __name__ == "__main__":
    main()
