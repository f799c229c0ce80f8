import asyncio
import logging
import time
from typing import List, Sequence

from . import config
from .cache import WatchCache, wait_for_cache_sync
from .workqueue import RateLimitingQueue

logger = logging.getLogger(__name__)


class Controller:
    """
    Worker harness shared by the reconcilers.

    Subclasses implement sync_handler(key). A handler that raises has its key requeued with
    backoff; a handler that returns has its key forgotten.
    """

    name: str = "controller"
    queue: RateLimitingQueue
    caches: Sequence[WatchCache]

    def __init__(self, queue: RateLimitingQueue, caches: Sequence[WatchCache]):
        self.queue = queue
        self.caches = caches

    async def sync_handler(self, key: str) -> None:
        raise NotImplementedError

    async def run(
        self, workers: int, stop: asyncio.Event, sync_timeout: float = config.CACHE_SYNC_TIMEOUT_SECONDS
    ) -> None:
        """
        Waits for the caches, then processes keys with the given number of workers until stop is set.

        Returns without starting any worker if the caches fail to sync in time.
        """
        tasks: List[asyncio.Task] = []
        try:
            logger.info(f"Starting {self.name}")
            if not await wait_for_cache_sync(self.name, self.caches, sync_timeout):
                return

            logger.info(f"Starting {workers} {self.name} workers")
            tasks = [asyncio.create_task(self.run_worker()) for _ in range(workers)]
            await stop.wait()
            logger.info(f"Shutting down {self.name} workers")
        finally:
            self.queue.shut_down()
            if tasks:
                await asyncio.gather(*tasks)

    async def run_worker(self) -> None:
        while await self.process_next_work_item():
            pass

    async def process_next_work_item(self) -> bool:
        """
        Reads a single key off the queue and syncs it.

        Returns:
            False once the queue has shut down.
        """
        key, shutdown = await self.queue.get()
        if shutdown:
            return False

        try:
            if not isinstance(key, str):
                self.queue.forget(key)
                logger.error(f"Expected string in {self.queue.name} queue but got {key!r}")
                return True

            try:
                await self.sync(key)
            except Exception as e:
                self.queue.add_rate_limited(key)
                logger.error(f"Error syncing '{key}': {e}, requeuing")
                return True

            self.queue.forget(key)
            return True
        finally:
            self.queue.done(key)

    async def sync(self, key: str) -> None:
        start = time.monotonic()
        try:
            await self.sync_handler(key)
        finally:
            logger.debug(f"Finished syncing {self.name} '{key}' ({time.monotonic() - start:.3f}s)")
