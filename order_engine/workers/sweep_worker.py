"""
Stale payment sweep worker.

Every ``sweep_interval_seconds`` re-reads payments stuck in pending or
processing from the gateway and retries refunds owed on cancelled orders.
"""
import asyncio
import signal
from typing import Any, Dict, Optional

import structlog

from order_engine.api.dependencies import ServiceContainer, build_container
from order_engine.config import get_settings
from order_engine.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_sweep(container: ServiceContainer) -> Dict[str, int]:
    """Run one sweep pass."""
    logger.info("payment_sweep_started")
    summary = await container.sweeper.sweep()

    if summary["errors"] or summary["refund_errors"]:
        logger.warning(
            "payment_sweep_errors_detected",
            errors=summary["errors"],
            refund_errors=summary["refund_errors"],
        )
    return summary


async def start_sweep_worker(
    interval_seconds: Optional[int] = None,
    once: bool = False,
    container: Optional[ServiceContainer] = None,
) -> None:
    """
    Start the sweep worker.

    Args:
        interval_seconds: Seconds between passes (default: from settings)
        once: Run a single pass and exit
        container: Pre-built services; built from settings when omitted
    """
    settings = container.settings if container else get_settings()
    setup_logging(settings)
    interval = interval_seconds or settings.sweep_interval_seconds

    logger.info("sweep_worker_starting", interval_seconds=interval, once=once)

    owned = container is None
    if container is None:
        container = await build_container(settings)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("sweep_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await run_sweep(container)
            except Exception as e:
                logger.error("payment_sweep_execution_error", error=str(e))
                # Keep sweeping; the next pass picks the same payments up again

            if once:
                break

            # Wait for the next pass, checking for a shutdown signal every second
            remaining = float(interval)
            while remaining > 0 and running:
                sleep_time = min(remaining, 1.0)
                await asyncio.sleep(sleep_time)
                remaining -= sleep_time

    finally:
        if owned:
            await container.aclose()
        logger.info("sweep_worker_stopped")


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Stale payment sweep worker")
    parser.add_argument(
        "--interval", type=int, default=None, help="Seconds between sweeps (default: from settings)"
    )
    parser.add_argument("--once", action="store_true", help="Run a single sweep and exit")
    args = parser.parse_args()

    asyncio.run(start_sweep_worker(interval_seconds=args.interval, once=args.once))


if __name__ == "__main__":
    main()
