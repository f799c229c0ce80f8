import asyncio
import logging
from typing import Dict, List, Optional, Tuple

from kr8s.asyncio.objects import Node

from . import config
from .allocation_controller import IPAddressAllocationController
from .cache import WatchCache
from .controller import Controller
from .events import EventRecorder
from .ipmanager import AllocationIPManager, IPManager, PoolIPManager
from .ippool import get_ippool_manager
from .ippool_controller import IPPoolController
from .kr8s_objects import IPAddressAllocation
from .node_controller import NodeController
from .store import KubeStore

logger = logging.getLogger(__name__)

COMPONENT = "nodecidr"


class ControllerContext:
    """Everything the controllers share, built once at startup and passed to each of them."""

    def __init__(self, settings: config.Settings, store=None, recorder: Optional[EventRecorder] = None):
        self.settings = settings
        self.store = store or KubeStore()
        self.recorder = recorder or EventRecorder(self.store, COMPONENT)
        self.stop = asyncio.Event()
        self._caches: Dict[Tuple[object, Optional[str]], WatchCache] = {}

    def cache_for(self, resource, namespace: Optional[str] = None) -> WatchCache:
        """Returns the watch cache of a resource class in a namespace, creating it on first use."""
        key = (resource, namespace)
        if key not in self._caches:
            self._caches[key] = WatchCache(resource, namespace)
        return self._caches[key]

    @property
    def caches(self) -> List[WatchCache]:
        return list(self._caches.values())

    @property
    def node_cache(self) -> WatchCache:
        return self.cache_for(Node)


def start_controllers(ctx: ControllerContext) -> List[Controller]:
    """
    Builds the controllers for the configured topology.

    Returns:
        Node and IPPool controllers for the ippool topology, Node and IPAddressAllocation
        controllers for the allocation topology.
    """
    settings = ctx.settings
    settings.validate()

    ip_manager: IPManager
    if settings.topology == config.TOPOLOGY_ALLOCATION:
        allocation_cache = ctx.cache_for(IPAddressAllocation, settings.cluster_namespace)
        ip_manager = AllocationIPManager(
            ctx.store, allocation_cache, settings.cluster_namespace, settings.owner_reference, settings.pod_ip_pool_type
        )
        status_controller: Controller = IPAddressAllocationController(
            ctx.store, ctx.node_cache, allocation_cache, ctx.recorder
        )
    else:
        ippool_manager = get_ippool_manager(
            settings.pool_version, ctx.store, ctx.cache_for, settings.cluster_namespace, settings.pod_ip_pool_type
        )
        ip_manager = PoolIPManager(
            ippool_manager, settings.cluster_name, settings.cluster_namespace, settings.owner_reference
        )
        status_controller = IPPoolController(ctx.store, ctx.node_cache, ippool_manager, ctx.recorder)

    node_controller = NodeController(ctx.node_cache, ip_manager, settings.resync_seconds)
    logger.info(
        f"Configured {settings.topology} topology for cluster '{settings.cluster_name}' "
        f"in namespace '{settings.cluster_namespace}'"
    )
    return [node_controller, status_controller]
