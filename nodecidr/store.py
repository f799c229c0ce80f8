import logging
from typing import Any, Dict, Optional, Type

from kr8s.asyncio.objects import APIObject, Event, Node

from .kr8s_objects import IPAddressAllocation

logger = logging.getLogger(__name__)


class KubeStore:
    """
    Remote reads and writes of nodes, pools, allocations and events through kr8s.

    Every lookup raises kr8s.NotFoundError when the object does not exist.
    """

    async def get_node(self, name: str) -> Node:
        return await Node.get(name)

    async def patch_node(self, name: str, patch: Dict[str, Any]) -> None:
        node = await Node({"metadata": {"name": name}})
        await node.patch(patch)

    async def get_pool(self, pool_class: Type[APIObject], namespace: str, name: str) -> APIObject:
        return await pool_class.get(name, namespace=namespace)

    async def create_pool(self, pool_class: Type[APIObject], manifest: Dict[str, Any]) -> APIObject:
        metadata = manifest["metadata"]
        pool = await pool_class(manifest, namespace=metadata["namespace"])
        await pool.create()
        logger.info(f"Created {pool.kind} '{metadata['namespace']}/{metadata['name']}'")
        return pool

    async def update_pool(self, pool_class: Type[APIObject], manifest: Dict[str, Any]) -> APIObject:
        """
        Writes spec and owner references of a pool back to the API server.

        The patch carries metadata.resourceVersion so a concurrent write makes the API server
        reject this one with a conflict.
        """
        metadata = manifest["metadata"]
        pool = await pool_class(manifest, namespace=metadata["namespace"])
        patch: Dict[str, Any] = {"spec": manifest.get("spec", {}), "metadata": {}}
        if rv := metadata.get("resourceVersion"):
            patch["metadata"]["resourceVersion"] = rv
        if owners := metadata.get("ownerReferences"):
            patch["metadata"]["ownerReferences"] = owners
        await pool.patch(patch)
        return pool

    async def get_allocation(self, namespace: str, name: str) -> APIObject:
        return await IPAddressAllocation.get(name, namespace=namespace)

    async def create_allocation(self, manifest: Dict[str, Any]) -> APIObject:
        metadata = manifest["metadata"]
        allocation = await IPAddressAllocation(manifest, namespace=metadata["namespace"])
        await allocation.create()
        logger.info(f"Created {allocation.kind} '{metadata['namespace']}/{metadata['name']}'")
        return allocation

    async def delete_allocation(self, namespace: str, name: str) -> None:
        allocation = await IPAddressAllocation.get(name, namespace=namespace)
        await allocation.delete()
        logger.info(f"Deleted {allocation.kind} '{namespace}/{name}'")

    async def create_event(self, manifest: Dict[str, Any], namespace: Optional[str] = None) -> None:
        event = await Event(manifest, namespace=namespace or manifest["metadata"].get("namespace"))
        await event.create()
