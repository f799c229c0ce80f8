"""
Pool abstraction over the nsx.vmware.com IPPool resource versions.

An IPPoolManager is chosen once at startup for the configured version. The reconcilers only
talk to this interface, so they never branch on the pool version themselves.
"""

import copy
import logging
from typing import Any, Callable, Dict, Optional

import kr8s
from kr8s.asyncio.objects import APIObject

from . import config
from .cache import WatchCache
from .kr8s_objects import IPPoolV1alpha1, IPPoolV1alpha2
from .nodepatch import node_has_cidr

logger = logging.getLogger(__name__)


class UnknownPoolError(TypeError):
    pass


def ippool_name_from_cluster_name(cluster_name: str) -> str:
    return f"{cluster_name}-ippool"


def _describe(pool: APIObject) -> str:
    # read from raw, kr8s refuses namespace lookups on objects that were never awaited
    metadata = pool.raw.get("metadata") or {}
    return f"{metadata.get('name')} in namespace {metadata.get('namespace')}"


class IPPoolManager:
    """Base class binding the pool operations to one IPPool resource class."""

    pool_class: Any = None
    ip_family: str = ""

    def __init__(self, store, cache: WatchCache):
        self.store = store
        self.cache = cache

    def _check(self, pool: Any) -> APIObject:
        if not isinstance(pool, self.pool_class):
            raise UnknownPoolError(f"unknown ippool type {type(pool).__name__}, expected {self.pool_class.version} IPPool")
        return pool

    def _new_pool_spec(self) -> Dict[str, Any]:
        return {"subnets": []}

    async def get(self, namespace: str, cluster_name: str) -> APIObject:
        """Reads the cluster's pool from the API server."""
        return await self.store.get_pool(self.pool_class, namespace, ippool_name_from_cluster_name(cluster_name))

    def get_from_cache(self, key: str) -> APIObject:
        """
        Reads a pool from the watch cache.

        Raises:
            kr8s.NotFoundError: If the cache holds no pool under key.
        """
        pool = self.cache.get(key)
        if pool is None:
            raise kr8s.NotFoundError(f"ippool '{key}' not found in cache")
        return pool

    def _subnet_request(self, node_name: str) -> Dict[str, Any]:
        return {"name": node_name, "ipFamily": self.ip_family, "prefixLength": config.IPV4_PREFIX}

    async def create(
        self, namespace: str, cluster_name: str, owner_ref: Dict[str, Any], node: Optional[APIObject] = None
    ) -> APIObject:
        """
        Creates the cluster's pool. When node is given and has no pod CIDR, its request is part of the
        created pool.
        """
        spec = self._new_pool_spec()
        if node is not None and not node_has_cidr(node):
            spec["subnets"].append(self._subnet_request(node.name))
        manifest = {
            "apiVersion": self.pool_class.version,
            "kind": self.pool_class.kind,
            "metadata": {
                "name": ippool_name_from_cluster_name(cluster_name),
                "namespace": namespace,
                "ownerReferences": [dict(owner_ref)],
            },
            "spec": spec,
        }
        return await self.store.create_pool(self.pool_class, manifest)

    async def add_request(self, node: APIObject, pool: Any, owner_ref: Dict[str, Any]) -> None:
        """
        Adds a subnet request named after the node. A no-op when the request already exists.
        """
        ipp = self._check(pool)
        subnets = (ipp.raw.get("spec") or {}).get("subnets") or []
        if any(sub.get("name") == node.name for sub in subnets):
            logger.debug(f"Node '{node.name}' already requested a subnet")
            return

        manifest = copy.deepcopy(ipp.raw)
        spec = manifest.setdefault("spec", {})
        spec["subnets"] = list(spec.get("subnets") or [])
        changed = False
        # add the request only when the node doesn't have a pod CIDR
        if not node_has_cidr(node):
            logger.debug(f"Adding subnet request to ippool for node '{node.name}'")
            spec["subnets"].append(self._subnet_request(node.name))
            changed = True

        metadata = manifest.setdefault("metadata", {})
        if not metadata.get("ownerReferences"):
            metadata["ownerReferences"] = [dict(owner_ref)]
            changed = True

        if not changed:
            return
        try:
            await self.store.update_pool(self.pool_class, manifest)
        except Exception as e:
            raise RuntimeError(f"fail to update ippool {_describe(ipp)} with err: {e}") from e

    async def remove_request(self, node_name: str, pool: Any) -> None:
        """Removes the subnet request named after the node. A no-op when there is none."""
        ipp = self._check(pool)
        subnets = (ipp.raw.get("spec") or {}).get("subnets") or []
        remaining = [sub for sub in subnets if sub.get("name") != node_name]
        if len(remaining) == len(subnets):
            logger.debug(f"No subnet request for node '{node_name}' in ippool {_describe(ipp)}")
            return

        manifest = copy.deepcopy(ipp.raw)
        manifest["spec"]["subnets"] = copy.deepcopy(remaining)
        try:
            await self.store.update_pool(self.pool_class, manifest)
        except Exception as e:
            raise RuntimeError(f"fail to update ippool {_describe(ipp)} with err: {e}") from e

    def realized_results(self, pool: Any) -> Dict[str, str]:
        """Maps node names to their allocated CIDR. Results without a CIDR (exhausted pool) are skipped."""
        ipp = self._check(pool)
        results = {}
        for sub in (ipp.raw.get("status") or {}).get("subnets") or []:
            if sub.get("cidr"):
                results[sub["name"]] = sub["cidr"]
        return results

    def has_meaningful_change(self, old: Any, new: Any) -> bool:
        """True when the allocation results in the pool status differ."""
        if not isinstance(old, self.pool_class) or not isinstance(new, self.pool_class):
            return False
        old_results = (old.raw.get("status") or {}).get("subnets") or []
        new_results = (new.raw.get("status") or {}).get("subnets") or []
        return old_results != new_results


class V1alpha1IPPoolManager(IPPoolManager):
    pool_class = IPPoolV1alpha1
    ip_family = config.IP_FAMILY_V1ALPHA1


class V1alpha2IPPoolManager(IPPoolManager):
    pool_class = IPPoolV1alpha2
    ip_family = config.IP_FAMILY_V1ALPHA2

    def __init__(self, store, cache: WatchCache, pod_ip_pool_type: Optional[str] = None):
        super().__init__(store, cache)
        self.pod_ip_pool_type = pod_ip_pool_type

    def _new_pool_spec(self) -> Dict[str, Any]:
        spec: Dict[str, Any] = {"subnets": []}
        if self.pod_ip_pool_type:
            spec["type"] = self.pod_ip_pool_type
        return spec


IPPOOL_MANAGERS = {
    "v1alpha1": V1alpha1IPPoolManager,
    "v1alpha2": V1alpha2IPPoolManager,
}


def get_ippool_manager(
    pool_version: str, store, cache_for: Callable[[Any, str], WatchCache], namespace: str,
    pod_ip_pool_type: Optional[str] = None,
) -> IPPoolManager:
    """
    Builds the pool manager for a pool version, backed by a cache of that version's pools.

    Args:
        pool_version: v1alpha1 or v1alpha2.
        store: The remote store.
        cache_for: Returns the watch cache for a resource class in a namespace.
        namespace: Namespace holding the cluster's pool.
        pod_ip_pool_type: Pool type set on v1alpha2 pools at creation.
    """
    try:
        manager_class = IPPOOL_MANAGERS[pool_version]
    except KeyError:
        raise ValueError(f"unknown ippool version '{pool_version}'") from None
    cache = cache_for(manager_class.pool_class, namespace)
    if manager_class is V1alpha2IPPoolManager:
        return V1alpha2IPPoolManager(store, cache, pod_ip_pool_type)
    return manager_class(store, cache)
