"""
Pending payment sweep worker.

Periodically rechecks payments that are still pending after the minimum
age, so payments whose webhook never arrived still converge. Runs inside
the API process (started by the FastAPI lifespan) or standalone:

    python -m savopay_relay.workers.sweep_worker --interval 60
"""
import argparse
import asyncio
import signal
from typing import Any, Dict, List, Optional

import structlog

from savopay_relay.core.reconciliation import ReconciliationDriver

logger = structlog.get_logger(__name__)


class PendingSweeper:
    """
    Runs ``ReconciliationDriver.sweep_pending`` on a fixed interval.

    A failing cycle is logged and the loop keeps going.
    """

    def __init__(
        self,
        driver: ReconciliationDriver,
        interval_seconds: float = 60.0,
        min_age_seconds: int = 60,
        batch_size: int = 25,
    ):
        self.driver = driver
        self.interval_seconds = interval_seconds
        self.min_age_seconds = min_age_seconds
        self.batch_size = batch_size
        self._stopped = asyncio.Event()

    @property
    def running(self) -> bool:
        return not self._stopped.is_set()

    async def run_once(self) -> Dict[str, Any]:
        """Run a single sweep cycle."""
        return await self.driver.sweep_pending(self.min_age_seconds, self.batch_size)

    async def start(self) -> None:
        """Sweep until ``stop()`` is called."""
        self._stopped.clear()
        logger.info(
            "pending_sweeper_started",
            interval_seconds=self.interval_seconds,
            min_age_seconds=self.min_age_seconds,
            batch_size=self.batch_size,
        )

        try:
            while self.running:
                try:
                    await self.run_once()
                except Exception as e:
                    logger.error("pending_sweep_failed", error=str(e), error_type=type(e).__name__)

                try:
                    await asyncio.wait_for(self._stopped.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            logger.info("pending_sweeper_stopped")

    def stop(self) -> None:
        """Ask the loop to exit after the current cycle."""
        self._stopped.set()


def install_signal_handlers(sweeper: PendingSweeper) -> List[int]:
    """
    Stop ``sweeper`` on SIGINT/SIGTERM from inside the running event loop.

    Returns:
        List[int]: Signals that were registered
    """
    loop = asyncio.get_running_loop()
    signals = [signal.SIGINT, signal.SIGTERM]

    def handle(sig: int) -> None:
        logger.info("sweep_worker_shutdown_signal_received", signal=sig)
        sweeper.stop()

    for sig in signals:
        loop.add_signal_handler(sig, handle, sig)
    return signals


async def start_sweep_worker(interval_seconds: Optional[float] = None) -> None:
    """
    Run the sweeper as a standalone process until SIGINT/SIGTERM.

    Args:
        interval_seconds: Override for the configured sweep interval
    """
    from savopay_relay.config import get_settings
    from savopay_relay.database import close_db, init_db
    from savopay_relay.integrations import ForumPayClient
    from savopay_relay.monitoring.logging import setup_logging
    from savopay_relay.store import create_stores

    settings = get_settings()
    setup_logging(settings)

    if settings.store_backend == "sql":
        await init_db()

    store, events = create_stores(settings)
    provider = ForumPayClient(settings)
    sweeper = PendingSweeper(
        ReconciliationDriver(store, events, provider, settings),
        interval_seconds=interval_seconds or settings.recheck_interval_seconds,
        min_age_seconds=settings.pending_min_age_seconds,
        batch_size=settings.sweep_batch_size,
    )

    signals = install_signal_handlers(sweeper)

    try:
        await sweeper.start()
    finally:
        loop = asyncio.get_running_loop()
        for sig in signals:
            loop.remove_signal_handler(sig)
        await provider.close()
        await close_db()


def main() -> None:
    """Command line entry point."""
    parser = argparse.ArgumentParser(description="Pending payment sweep worker")
    parser.add_argument(
        "--interval", type=float, default=None, help="Seconds between sweeps"
    )
    args = parser.parse_args()

    asyncio.run(start_sweep_worker(interval_seconds=args.interval))


if __name__ == "__main__":
    main()
