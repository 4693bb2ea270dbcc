"""
Lease reaper for recovering expired job leases.

The reaper runs periodically to find jobs with expired leases
and returns them to the queue. This handles worker crashes and
ensures at-least-once delivery. Worker pools run one as a background
task; the standalone process exists for deployments that sweep elsewhere.
"""

import asyncio
import logging
import signal
from datetime import timedelta

from jobqueue.config import get_settings
from jobqueue.db import QueueStore, close_db, get_session_factory, init_db
from jobqueue.observability.logging import setup_logging
from jobqueue.observability.metrics import MetricsCollector, get_metrics
from jobqueue.status import StatusService

logger = logging.getLogger(__name__)


class Reaper:
    """
    Lease reaper that recovers expired job leases.

    Runs periodically to:
    1. Find jobs in LEASED state with an expired lease_expires_at
    2. Return them to PENDING (or the dead-letter set when out of attempts)
    3. Remove workers that stopped heartbeating
    4. Refresh the pending/active gauges and record metrics
    """

    def __init__(
        self,
        store: QueueStore,
        interval_seconds: float | None = None,
        metrics: MetricsCollector | None = None,
        refresh_gauges: bool = True,
    ):
        """
        Initialize the reaper.

        Args:
            store: The queue store to sweep.
            interval_seconds: Seconds between reaper runs.
            metrics: Metrics collector; the process-wide one by default.
            refresh_gauges: Whether to refresh queue gauges after each sweep.
        """
        settings = get_settings()
        self.store = store
        self.interval = interval_seconds or settings.reaper_interval_seconds
        self.refresh_gauges = refresh_gauges
        self.stale_after = timedelta(seconds=settings.worker_stale_after_seconds)
        self._running = False
        self._stop_event = asyncio.Event()
        self._metrics = metrics or get_metrics()

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(f"Reaper starting with interval {self.interval}s")
        self._running = True
        self._stop_event.clear()

        while self._running:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._running = False
        self._stop_event.set()

    async def run_once(self) -> int:
        """
        Run the reaper once (for testing or cron-style execution).

        Returns:
            Number of jobs recovered.
        """
        count = await self.store.reclaim_expired_leases()
        self._metrics.record_leases_reclaimed(count)

        if count > 0:
            logger.info(f"Recovered {count} expired leases")

        await self.store.cleanup_stale_workers(self.stale_after)

        if self.refresh_gauges:
            await self._refresh_gauges()

        return count

    async def _refresh_gauges(self) -> None:
        async with self.store.session_factory() as session:
            await StatusService(session, self.store.clock).refresh_gauges(self._metrics)


async def run_async() -> None:
    """Run the reaper asynchronously."""
    settings = get_settings()
    setup_logging(settings, process="reaper")
    await init_db()

    reaper = Reaper(QueueStore.from_settings(get_session_factory(), settings))

    # Handle shutdown signals
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(reaper.stop())
        )

    try:
        await reaper.start()
    finally:
        await close_db()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
