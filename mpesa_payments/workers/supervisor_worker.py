"""
Retry/timeout supervisor background worker.

Runs a supervisor cycle every ``supervisor_interval_seconds`` and purges
expired transaction log entries once a day. A cycle always finishes before
the next one starts, so one worker never overlaps itself; several workers
may run side by side since every transition is a conditional write.
"""
import asyncio
import signal
import time
from typing import Any, Optional

import structlog

from mpesa_payments.config import get_settings
from mpesa_payments.core.services import ServiceContainer, build_services
from mpesa_payments.database.connection import close_db, init_db
from mpesa_payments.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)

PURGE_INTERVAL_SECONDS = 24 * 60 * 60


async def run_once(services: ServiceContainer) -> None:
    """Run a single supervisor cycle."""
    report = await services.supervisor.run_cycle()
    logger.info("supervisor_cycle_report", scanned=report.scanned, actions=report.actions)


async def purge_transaction_log(services: ServiceContainer) -> int:
    """Delete transaction log entries past the retention window."""
    return await services.transaction_log.purge_expired(
        services.settings.transaction_log_retention_days
    )


async def start_supervisor_worker(
    interval_seconds: Optional[float] = None, once: bool = False
) -> None:
    """
    Start the supervisor worker.

    Args:
        interval_seconds: Seconds between cycles (defaults to settings)
        once: Run a single cycle and exit
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.supervisor_interval_seconds

    logger.info("supervisor_worker_starting", interval_seconds=interval, once=once)

    await init_db()
    services = build_services(settings)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("supervisor_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    last_purge = 0.0
    try:
        while running:
            try:
                await run_once(services)
                if time.monotonic() - last_purge >= PURGE_INTERVAL_SECONDS:
                    await purge_transaction_log(services)
                    last_purge = time.monotonic()
            except Exception as e:
                # Continue running even if one cycle fails
                logger.error("supervisor_cycle_error", error=str(e), exc_info=True)

            if once:
                break

            waited = 0.0
            while waited < interval and running:
                step = min(1.0, interval - waited)
                await asyncio.sleep(step)
                waited += step

    finally:
        await services.close()
        await close_db()
        logger.info("supervisor_worker_stopped")


def main() -> None:
    """Console entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Payment retry/timeout supervisor")
    parser.add_argument(
        "--interval", type=float, default=None, help="Seconds between supervisor cycles"
    )
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    args = parser.parse_args()

    asyncio.run(start_supervisor_worker(interval_seconds=args.interval, once=args.once))


if __name__ == "__main__":
    main()
