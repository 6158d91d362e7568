#!/usr/bin/env python3
"""
Long-running newsletter delivery worker.

Run (from the project root):
    python scripts/run_delivery_worker.py

Options:
    python scripts/run_delivery_worker.py --concurrency 20 --batch-size 100
    python scripts/run_delivery_worker.py --once

SIGINT/SIGTERM stop the loop after the current batch.
"""
import sys
import asyncio
import argparse
import signal
from pathlib import Path

# Add the project root to the path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Newsletter delivery worker")
    parser.add_argument("--batch-size", type=int, default=None, help="Tasks claimed per batch")
    parser.add_argument("--concurrency", type=int, default=None, help="Concurrent sends")
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=None,
        help="Seconds to sleep when the queue is empty",
    )
    parser.add_argument("--once", action="store_true", help="Process a single batch and exit")
    return parser.parse_args()


async def main(args: argparse.Namespace) -> int:
    from app.core.config import settings
    from app.core.logging import setup_logging, get_logger
    from app.db.database import AsyncSessionLocal, engine
    from app.domain.services.delivery_worker import DeliveryWorker
    from app.domain.services.email import get_email_transport

    setup_logging(
        level="DEBUG" if settings.DEBUG else "INFO",
        json_format=not settings.DEBUG,
        app_name=f"{settings.APP_NAME} worker",
    )
    logger = get_logger("delivery_worker")

    worker = DeliveryWorker(
        AsyncSessionLocal,
        get_email_transport(),
        batch_size=args.batch_size,
        concurrency=args.concurrency,
        poll_interval_seconds=args.poll_interval,
    )

    try:
        if args.once:
            report = await worker.run_once()
            logger.info("Single batch finished", extra_data=report.to_dict())
            return 0

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)

        await worker.run_forever(stop_event)
        return 0
    finally:
        await engine.dispose()


if __name__ == "__main__":
    sys.exit(asyncio.run(main(parse_args())))
