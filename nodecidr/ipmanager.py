import logging
from typing import Any, Dict, Sequence

import kr8s
from kr8s.asyncio.objects import APIObject

from . import config
from .cache import WatchCache
from .ippool import IPPoolManager
from .nodepatch import node_has_cidr

logger = logging.getLogger(__name__)


class IPManager:
    """Claims and releases a node's pod CIDR."""

    # watch caches that must be synced before claims are made
    caches: Sequence[WatchCache] = ()

    async def claim_pod_cidr(self, node: APIObject) -> None:
        raise NotImplementedError

    async def release_pod_cidr(self, node_name: str) -> None:
        raise NotImplementedError


class PoolIPManager(IPManager):
    """Claims pod CIDRs by adding subnet requests to the cluster's shared IPPool."""

    def __init__(self, ippool_manager: IPPoolManager, cluster_name: str, namespace: str, owner_ref: Dict[str, Any]):
        self.ippool_manager = ippool_manager
        self.cluster_name = cluster_name
        self.namespace = namespace
        self.owner_ref = owner_ref

    async def claim_pod_cidr(self, node: APIObject) -> None:
        try:
            ippool = await self.ippool_manager.get(self.namespace, self.cluster_name)
        except kr8s.NotFoundError:
            logger.info(f"Creating ippool for cluster '{self.cluster_name}' in namespace '{self.namespace}'")
            try:
                await self.ippool_manager.create(self.namespace, self.cluster_name, self.owner_ref, node)
            except Exception as e:
                raise RuntimeError(f"fail to create IPPool with subnet for node {node.name}, err: {e}") from e
            logger.debug(f"Created the IPPool with a subnet for node '{node.name}'")
            return
        except Exception as e:
            raise RuntimeError(
                f"fail to get ippool in namespace {self.namespace} for cluster {self.cluster_name}: {e}"
            ) from e

        try:
            await self.ippool_manager.add_request(node, ippool, self.owner_ref)
        except Exception as e:
            raise RuntimeError(f"fail to add subnet in IPPool for node {node.name}, err: {e}") from e
        logger.debug(f"Added the subnet in IPPool for node '{node.name}'")

    async def release_pod_cidr(self, node_name: str) -> None:
        try:
            ippool = await self.ippool_manager.get(self.namespace, self.cluster_name)
        except kr8s.NotFoundError:
            logger.info(f"IPPool is gone, no need to remove the request of node '{node_name}'")
            return
        except Exception as e:
            raise RuntimeError(
                f"fail to get ippool in namespace {self.namespace} for cluster {self.cluster_name}: {e}"
            ) from e

        try:
            await self.ippool_manager.remove_request(node_name, ippool)
        except Exception as e:
            raise RuntimeError(f"fail to delete subnet in IPPool for node {node_name}, err: {e}") from e
        logger.debug(f"Removed the subnet in IPPool for node '{node_name}'")


def ip_address_visibility(pod_ip_pool_type: str) -> str:
    """Public pools are called External on IPAddressAllocation."""
    if pod_ip_pool_type == config.PUBLIC_IP_POOL_TYPE:
        return "External"
    return "Private"


class AllocationIPManager(IPManager):
    """Claims pod CIDRs by creating one IPAddressAllocation per node."""

    def __init__(self, store, cache: WatchCache, namespace: str, owner_ref: Dict[str, Any], pod_ip_pool_type: str):
        self.store = store
        self.cache = cache
        self.caches = [cache]
        self.namespace = namespace
        self.owner_ref = owner_ref
        self.pod_ip_pool_type = pod_ip_pool_type

    def _allocation_key(self, name: str) -> str:
        return f"{self.namespace}/{name}"

    async def claim_pod_cidr(self, node: APIObject) -> None:
        if node_has_cidr(node):
            logger.debug(f"Pod CIDR {node.raw['spec']['podCIDR']} is already set on node '{node.name}'")
            return
        if self.cache.get(self._allocation_key(node.name)) is not None:
            logger.debug(f"Node '{node.name}' already requested an IPAddressAllocation")
            return

        logger.info(f"Creating IPAddressAllocation '{self.namespace}/{node.name}'")
        await self.store.create_allocation(
            {
                "apiVersion": "crd.nsx.vmware.com/v1alpha1",
                "kind": "IPAddressAllocation",
                "metadata": {
                    "name": node.name,
                    "namespace": self.namespace,
                    "ownerReferences": [dict(self.owner_ref)],
                },
                "spec": {
                    "ipAddressBlockVisibility": ip_address_visibility(self.pod_ip_pool_type),
                    "allocationSize": config.ALLOCATION_SIZE,
                },
            }
        )

    async def release_pod_cidr(self, node_name: str) -> None:
        if self.cache.get(self._allocation_key(node_name)) is None:
            logger.debug(f"IPAddressAllocation '{node_name}' not found, no need to delete it")
            return
        try:
            await self.store.delete_allocation(self.namespace, node_name)
        except kr8s.NotFoundError:
            logger.debug(f"IPAddressAllocation '{node_name}' is already gone")
