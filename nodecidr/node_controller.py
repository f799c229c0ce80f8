import logging
from typing import Optional

from kr8s.asyncio.objects import APIObject

from .cache import ADDED, DELETED, WatchCache, meta_namespace_key, split_meta_namespace_key
from .controller import Controller
from .ipmanager import IPManager
from .nodepatch import node_has_cidr
from .workqueue import RateLimitingQueue

logger = logging.getLogger(__name__)


class NodeController(Controller):
    """
    Claims a pod CIDR for every node without one, and releases it when the node goes away.

    A node missing from the cache, or marked for deletion, is treated as gone.
    """

    name = "node-controller"

    def __init__(self, node_cache: WatchCache, ip_manager: IPManager, resync_seconds: Optional[float] = None):
        super().__init__(RateLimitingQueue("Nodes"), [node_cache, *ip_manager.caches])
        self.node_cache = node_cache
        self.ip_manager = ip_manager
        node_cache.add_event_handler(self.event_key, self.queue, resync_seconds)

    def event_key(self, event_type: str, old: Optional[APIObject], new: Optional[APIObject]) -> Optional[str]:
        """Adds and deletes always enqueue; updates only while the node still lacks a CIDR."""
        if event_type == DELETED:
            return meta_namespace_key(old)
        if event_type == ADDED or not node_has_cidr(new):
            return meta_namespace_key(new)
        return None

    async def sync_handler(self, key: str) -> None:
        try:
            _, name = split_meta_namespace_key(key)
        except ValueError as e:
            logger.error(f"Invalid node key: {e}")
            return

        node = self.node_cache.get(name)
        if node is None or node.raw.get("metadata", {}).get("deletionTimestamp"):
            # absence in the cache means the watch saw the deletion
            await self.process_node_delete(name)
            return
        await self.process_node_create_or_update(node)

    async def process_node_delete(self, name: str) -> None:
        logger.info(f"Node '{name}' deleted, releasing its pod CIDR")
        await self.ip_manager.release_pod_cidr(name)

    async def process_node_create_or_update(self, node: APIObject) -> None:
        if node_has_cidr(node):
            logger.debug(f"Node '{node.name}' already has pod CIDR {node.raw['spec']['podCIDR']}")
            return
        logger.info(f"Claiming pod CIDR for node '{node.name}'")
        await self.ip_manager.claim_pod_cidr(node)
