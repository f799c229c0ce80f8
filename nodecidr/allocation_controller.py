import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import kr8s
from kr8s.asyncio.objects import APIObject

from . import config
from .cache import ADDED, MODIFIED, RESYNC, WatchCache, meta_namespace_key, split_meta_namespace_key
from .controller import Controller
from .events import EventRecorder
from .nodepatch import node_has_cidr, patch_node_cidr_with_retry
from .workqueue import RateLimitingQueue

logger = logging.getLogger(__name__)

READY_CONDITION = "Ready"


class AllocationNotReadyError(Exception):
    pass


class AllocationNoCIDRError(Exception):
    pass


def _transition_time(condition: Dict[str, Any]) -> datetime:
    earliest = datetime.min.replace(tzinfo=timezone.utc)
    value = condition.get("lastTransitionTime")
    if not value:
        return earliest
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning(f"Ignoring malformed lastTransitionTime {value!r}")
        return earliest
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def ready_condition(allocation: APIObject) -> Optional[Dict[str, Any]]:
    """
    Returns the effective Ready condition of an allocation.

    When several Ready conditions are present the one with the latest lastTransitionTime wins,
    ties going to the later entry.
    """
    best = None
    for condition in (allocation.raw.get("status") or {}).get("conditions") or []:
        if condition.get("type") != READY_CONDITION:
            continue
        if best is None or _transition_time(condition) >= _transition_time(best):
            best = condition
    return best


def allocation_state(allocation: Optional[APIObject]) -> Tuple[bool, str]:
    if allocation is None:
        return False, ""
    condition = ready_condition(allocation)
    ready = condition is not None and condition.get("status") == "True"
    return ready, ((allocation.raw.get("status") or {}).get("cidr") or "").strip()


class IPAddressAllocationController(Controller):
    """Patches each node with the CIDR of the IPAddressAllocation named after it, once that is ready."""

    name = "ipaddressallocation-controller"

    def __init__(
        self,
        store,
        node_cache: WatchCache,
        allocation_cache: WatchCache,
        recorder: EventRecorder,
        resync_seconds: float = config.ALLOCATION_SYNC_SECONDS,
    ):
        super().__init__(RateLimitingQueue("IPAddressAllocations"), [node_cache, allocation_cache])
        self.store = store
        self.node_cache = node_cache
        self.allocation_cache = allocation_cache
        self.recorder = recorder
        allocation_cache.add_event_handler(self.event_key, self.queue, resync_seconds)

    def event_key(self, event_type: str, old: Optional[APIObject], new: Optional[APIObject]) -> Optional[str]:
        if event_type in (ADDED, RESYNC):
            return meta_namespace_key(new)
        if event_type == MODIFIED and allocation_state(old) != allocation_state(new):
            return meta_namespace_key(new)
        return None

    async def sync_handler(self, key: str) -> None:
        try:
            split_meta_namespace_key(key)
        except ValueError:
            logger.error(f"Invalid resource key: {key!r}")
            return

        allocation = self.allocation_cache.get(key)
        if allocation is None:
            logger.error(f"IPAddressAllocation '{key}' in work queue no longer exists")
            return
        if allocation.raw.get("metadata", {}).get("deletionTimestamp"):
            logger.debug(f"IPAddressAllocation '{key}' is being deleted, skip")
            return
        await self.process_allocation_create_or_update(allocation)

    async def process_allocation_create_or_update(self, allocation: APIObject) -> None:
        """Copies the allocated CIDR to the node of the same name."""
        ready, cidr = allocation_state(allocation)
        if not ready:
            raise AllocationNotReadyError(f"IPAddressAllocation {allocation.name} is not ready")
        if not cidr:
            raise AllocationNoCIDRError(f"IPAddressAllocation {allocation.name} does not get CIDR allocated")

        node = self.node_cache.get(allocation.name)
        if node is None:
            raise kr8s.NotFoundError(f"node {allocation.name} not found")
        if node_has_cidr(node):
            logger.debug(f"Node '{node.name}' already has pod CIDR {node.raw['spec']['podCIDR']}")
            return

        await patch_node_cidr_with_retry(self.store, node, cidr, self.recorder)
