import logging
from typing import Optional

import kr8s
from kr8s.asyncio.objects import APIObject

from . import config
from .cache import ADDED, MODIFIED, RESYNC, WatchCache, meta_namespace_key, split_meta_namespace_key
from .controller import Controller
from .events import EventRecorder
from .ippool import IPPoolManager
from .nodepatch import node_has_cidr, patch_node_cidr_with_retry
from .workqueue import RateLimitingQueue

logger = logging.getLogger(__name__)


class IPPoolController(Controller):
    """Patches nodes with the CIDRs the cluster's IPPool status reports as allocated."""

    name = "ippool-controller"

    def __init__(
        self,
        store,
        node_cache: WatchCache,
        ippool_manager: IPPoolManager,
        recorder: EventRecorder,
        resync_seconds: float = config.IPPOOL_SYNC_SECONDS,
    ):
        super().__init__(RateLimitingQueue("IPPools"), [ippool_manager.cache, node_cache])
        self.store = store
        self.node_cache = node_cache
        self.ippool_manager = ippool_manager
        self.recorder = recorder
        ippool_manager.cache.add_event_handler(self.event_key, self.queue, resync_seconds)

    def event_key(self, event_type: str, old: Optional[APIObject], new: Optional[APIObject]) -> Optional[str]:
        # deletes are skipped, the network provider cleans up subnets
        if event_type in (ADDED, RESYNC):
            return meta_namespace_key(new)
        if event_type == MODIFIED and self.ippool_manager.has_meaningful_change(old, new):
            return meta_namespace_key(new)
        return None

    async def sync_handler(self, key: str) -> None:
        try:
            split_meta_namespace_key(key)
        except ValueError as e:
            logger.error(f"Invalid ippool key: {e}")
            return

        try:
            ippool = self.ippool_manager.get_from_cache(key)
        except kr8s.NotFoundError:
            logger.error(f"Unable to retrieve ippool '{key}' from store, it no longer exists")
            return
        await self.process_ippool_create_or_update(ippool)

    async def process_ippool_create_or_update(self, ippool: APIObject) -> None:
        subnets = self.ippool_manager.realized_results(ippool)

        for node in sorted(self.node_cache.list(), key=lambda n: n.name):
            cidr = subnets.get(node.name)
            if cidr is None or node_has_cidr(node):
                continue
            # the node has no CIDR yet, so set it. The first failure ends this pass.
            await patch_node_cidr_with_retry(self.store, node, cidr, self.recorder)
