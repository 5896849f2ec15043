"""Periodic full reload of the row cache."""
import asyncio
import logging
from typing import Optional

from wordflow.row_store import RowStore

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_SECONDS = 30.0


class StorePoller:
    """
    Re-fetches everything on a fixed interval.

    There is no delta sync. A reload replaces the cache, including optimistic
    local changes whose remote write has not landed, so the window in which
    local and remote state disagree is bounded by the interval.
    """

    def __init__(self, row_store: RowStore, interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS):
        self.row_store = row_store
        self.interval_seconds = interval_seconds
        self.refresh_count = 0

    async def refresh_once(self) -> bool:
        ok = await self.row_store.load_all()
        self.refresh_count += 1
        logger.debug("Refresh #%d finished (ok=%s)", self.refresh_count, ok)
        return ok

    async def run(self, stop_event: Optional[asyncio.Event] = None, max_refreshes: Optional[int] = None) -> None:
        """Refresh until ``stop_event`` is set or ``max_refreshes`` refreshes have run."""
        stop_event = stop_event or asyncio.Event()
        logger.info("Polling the store every %.0f seconds", self.interval_seconds)
        while not stop_event.is_set():
            await self.refresh_once()
            if max_refreshes is not None and self.refresh_count >= max_refreshes:
                break
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
        logger.info("Polling stopped after %d refresh(es)", self.refresh_count)
