import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import kr8s
from kr8s.asyncio.objects import APIObject

from . import config
from .kr8s_objects import watch_kind
from .workqueue import RateLimitingQueue

logger = logging.getLogger(__name__)

ADDED = "ADDED"
MODIFIED = "MODIFIED"
DELETED = "DELETED"
RESYNC = "RESYNC"

# (event_type, old, new) -> queue key or None. old is None for ADDED, new is None for DELETED.
KeyFunc = Callable[[str, Optional[APIObject], Optional[APIObject]], Optional[str]]


def meta_namespace_key(obj: APIObject) -> str:
    """Returns the "namespace/name" key of an object, or "name" when it is cluster-scoped."""
    metadata = obj.raw.get("metadata", {})
    name = metadata.get("name")
    if not name:
        raise ValueError(f"object has no name: {obj.raw!r}")
    namespace = metadata.get("namespace")
    return f"{namespace}/{name}" if namespace else name


def split_meta_namespace_key(key: str) -> Tuple[str, str]:
    """
    Splits a queue key into namespace and name.

    Raises:
        ValueError: If the key is not of the form "name" or "namespace/name".
    """
    parts = key.split("/")
    if len(parts) == 1 and parts[0]:
        return "", parts[0]
    if len(parts) == 2 and parts[1]:
        return parts[0], parts[1]
    raise ValueError(f"unexpected key format: {key!r}")


@dataclass
class _Registration:
    key_func: KeyFunc
    queue: RateLimitingQueue
    resync_seconds: Optional[float]


class WatchCache:
    """
    Local mirror of a remote collection, fed by a kr8s list and watch.

    The watch loop is the only writer. Readers get the cached objects themselves and must
    copy them before making changes.
    """

    def __init__(self, resource, namespace: Optional[str] = None):
        self.resource = resource
        self.namespace = namespace
        self.kind = watch_kind(resource)
        self._items: Dict[str, APIObject] = {}
        self._handlers: List[_Registration] = []
        self._synced = asyncio.Event()

    def __repr__(self) -> str:
        return f"WatchCache({self.kind!r}, namespace={self.namespace!r})"

    def add_event_handler(
        self, key_func: KeyFunc, queue: RateLimitingQueue, resync_seconds: Optional[float] = None
    ) -> None:
        """
        Registers a mapping from watch events to queue keys.

        Args:
            key_func: Called synchronously for every event; a returned key is added to queue.
            queue: The queue keys are added to.
            resync_seconds: If set, every cached object is replayed as a RESYNC event on this period.
        """
        self._handlers.append(_Registration(key_func, queue, resync_seconds))

    def get(self, key: str) -> Optional[APIObject]:
        return self._items.get(key)

    def list(self) -> List[APIObject]:
        return list(self._items.values())

    def has_synced(self) -> bool:
        return self._synced.is_set()

    async def wait_synced(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._synced.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def replace(self, objects: Iterable[APIObject]) -> None:
        """Installs a full listing and marks the cache as synced."""
        fresh = {meta_namespace_key(obj): self._coerce(obj) for obj in objects}
        for key in [k for k in self._items if k not in fresh]:
            self._dispatch(DELETED, self._items.pop(key), None)
        for key, obj in fresh.items():
            old = self._items.get(key)
            self._items[key] = obj
            self._dispatch(ADDED if old is None else MODIFIED, old, obj)
        self._synced.set()

    def _coerce(self, obj: APIObject) -> APIObject:
        # kr8s may hand back a generic class for custom resources
        if isinstance(obj, self.resource):
            return obj
        return self.resource(obj.raw)

    def apply(self, event_type: str, obj: APIObject) -> None:
        obj = self._coerce(obj)
        key = meta_namespace_key(obj)
        if event_type in (ADDED, MODIFIED):
            old = self._items.get(key)
            self._items[key] = obj
            self._dispatch(ADDED if old is None else MODIFIED, old, obj)
        elif event_type == DELETED:
            old = self._items.pop(key, None)
            self._dispatch(DELETED, old or obj, None)
        else:
            logger.debug(f"Ignoring {event_type} event for {self.kind} '{key}'")

    def resync(self, registration: Optional[_Registration] = None) -> None:
        handlers = [registration] if registration else self._handlers
        for obj in self.list():
            for handler in handlers:
                self._notify(handler, RESYNC, obj, obj)

    def _dispatch(self, event_type: str, old: Optional[APIObject], new: Optional[APIObject]) -> None:
        for handler in self._handlers:
            self._notify(handler, event_type, old, new)

    def _notify(
        self, handler: _Registration, event_type: str, old: Optional[APIObject], new: Optional[APIObject]
    ) -> None:
        try:
            key = handler.key_func(event_type, old, new)
        except Exception as e:
            logger.error(f"Error mapping {event_type} event on {self.kind} to a key: {e}")
            return
        if key is not None:
            handler.queue.add(key)

    async def _list_and_watch(self) -> None:
        while True:
            try:
                objects = [obj async for obj in kr8s.asyncio.get(self.kind, namespace=self.namespace)]
                self.replace(objects)
                logger.info(f"Listed {len(objects)} {self.kind}, watching for changes")
                async for event_type, obj in kr8s.asyncio.watch(self.kind, namespace=self.namespace):
                    self.apply(event_type, obj)
                logger.info(f"Watch on {self.kind} ended, relisting")
            except Exception as e:
                logger.error(f"Error in {self.kind} watch loop: {e}. Reconnecting in {config.WATCH_RETRY_SECONDS} seconds.")
                await asyncio.sleep(config.WATCH_RETRY_SECONDS)

    async def _resync_loop(self, registration: _Registration) -> None:
        while True:
            await asyncio.sleep(registration.resync_seconds)
            if self.has_synced():
                self.resync(registration)

    async def run(self, stop: asyncio.Event) -> None:
        """Keeps the cache populated until stop is set."""
        tasks = [asyncio.create_task(self._list_and_watch())]
        tasks += [
            asyncio.create_task(self._resync_loop(handler)) for handler in self._handlers if handler.resync_seconds
        ]
        try:
            await stop.wait()
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)


async def wait_for_cache_sync(name: str, caches: Sequence[WatchCache], timeout: float) -> bool:
    """
    Waits for every cache to finish its initial listing.

    Returns:
        False if any cache did not sync within timeout.
    """
    logger.info(f"Waiting for caches to sync for {name}")
    results = await asyncio.gather(*(cache.wait_synced(timeout) for cache in caches))
    if not all(results):
        unsynced = [repr(cache) for cache, ok in zip(caches, results) if not ok]
        logger.error(f"Unable to sync caches for {name}: {', '.join(unsynced)}")
        return False
    logger.info(f"Caches are synced for {name}")
    return True
