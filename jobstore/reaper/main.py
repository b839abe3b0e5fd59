"""
Reaper for reclaiming abandoned jobs.

The reaper runs periodically to find processing jobs past their expiry or
stall deadline and returns them to the queue. This handles worker crashes
and unresponsive workers.
"""

import asyncio
import logging
import signal

from jobstore.config import StoreConfig, get_settings
from jobstore.constants import StoreEventType
from jobstore.db.repository import JobStore
from jobstore.errors import JobStoreError
from jobstore.observability.logging import bind_context, setup_logging
from jobstore.observability.tracing import setup_tracing
from jobstore.types.events import StoreEvent

logger = logging.getLogger(__name__)


class Reaper:
    """
    Timer-driven caller of the reclamation sweep.

    Runs periodically to:
    1. Reset processing jobs whose expiry deadline passed
    2. Reset processing jobs whose stall deadline passed
    """

    def __init__(self, store: JobStore, interval_seconds: float | None = None):
        """
        Initialize the reaper.

        Args:
            store: An open job store.
            interval_seconds: Seconds between sweeps.
        """
        settings = get_settings()
        self.store = store
        self.interval = interval_seconds or settings.reaper_interval_seconds
        self._running = False
        self._wakeup = asyncio.Event()

    @property
    def running(self) -> bool:
        """Check if the loop is running."""
        return self._running

    async def start(self) -> None:
        """Start the reaper loop."""
        logger.info(f"Reaper starting with interval {self.interval}s")
        bind_context(component="reaper")
        self._running = True
        self._wakeup.clear()

        while self._running:
            try:
                await self.run_once()
            except JobStoreError as e:
                logger.error(f"Reclamation sweep failed: {e}")
            except Exception as e:
                logger.exception(f"Error in reaper loop: {e}")

            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self.interval)
            except TimeoutError:
                pass

        logger.info("Reaper stopped")

    async def stop(self) -> None:
        """Stop the reaper."""
        logger.info("Reaper stopping")
        self._running = False
        self._wakeup.set()

    async def run_once(self) -> dict[str, int]:
        """
        Run both sweeps once (for testing or cron-style execution).

        Returns:
            Dictionary of reason -> reclaimed count.
        """
        reclaimed = await self.store.reclaim()

        if any(reclaimed.values()):
            logger.info("Reclaimed jobs", extra=reclaimed)

        return reclaimed


async def run_async() -> None:
    """Run the reaper against the configured store until signalled."""
    setup_logging()
    setup_tracing()

    reaper: Reaper | None = None

    async def on_event(store_event: StoreEvent) -> None:
        logger.info(f"Store {store_event.event_type}", extra={"error": repr(store_event.error)})
        if store_event.event_type is StoreEventType.CLOSED and reaper is not None:
            await reaper.stop()

    store = JobStore(StoreConfig.build(), events=on_event)
    if not await store.open():
        return

    reaper = Reaper(store)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(reaper.stop())
        )

    try:
        await reaper.start()
    finally:
        await store.close()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
