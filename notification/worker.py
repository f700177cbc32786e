#!/usr/bin/env python3
"""
Delivery worker - dispatcher lanes and retry scheduler without ingestion.

Picks up every delivery record that is due (retries, deferrals, expired
leases) and delivers it. Several workers can share one database; records
are claimed through their version column.

Usage:
    python -m notification.worker
    python -m notification.worker --burst
    python -m notification.worker --verbose
"""

import argparse
import logging
import signal
import sys
import threading

from core.app_context import AppContext
from core.config_loader import load_config
from database.database import init_db

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def start_worker(config_path: str = "config.yaml", burst: bool = False) -> int:
    """Start the delivery worker."""
    config = load_config(config_path)
    ctx = AppContext.build(config)
    init_db(ctx.engine)

    logger.info("Starting delivery worker")
    logger.info(f"Channels: {', '.join(c.value for c in ctx.registry.channels())}")
    logger.info(f"Burst mode: {burst}")

    try:
        if burst:
            passes = ctx.scheduler.run_until_idle()
            logger.info(f"Burst finished after {passes} passes")
            return 0

        stop = threading.Event()

        def signal_handler(sig, frame):
            logger.info("Shutdown signal received")
            stop.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        ctx.dispatcher.start()
        ctx.scheduler.start()
        logger.info("Worker started. Press Ctrl+C to stop.")
        stop.wait()

        ctx.scheduler.stop()
        ctx.dispatcher.shutdown()
        return 0
    finally:
        ctx.shutdown()
        logger.info("Worker stopped")


def main():
    parser = argparse.ArgumentParser(description='Opportunity alerts delivery worker')
    parser.add_argument('--config', default='config.yaml')
    parser.add_argument('--burst', action='store_true', help='Process everything due and exit')
    parser.add_argument('--verbose', action='store_true')

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    sys.exit(start_worker(config_path=args.config, burst=args.burst))


if __name__ == '__main__':
    main()
