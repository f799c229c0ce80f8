import logging
from typing import Any, Dict

from kr8s.asyncio.objects import APIObject

from .events import EventRecorder

logger = logging.getLogger(__name__)

CIDR_UPDATE_RETRIES = 3
# Event reason when the pod CIDR fails to be assigned to a node
CIDR_ASSIGNMENT_FAILED = "CIDRAssignmentFailed"


class NodePatchError(Exception):
    pass


def node_has_cidr(node: APIObject) -> bool:
    spec = node.raw.get("spec") or {}
    return bool(spec.get("podCIDR")) and bool(spec.get("podCIDRs"))


def node_cidr_patch(cidr: str) -> Dict[str, Any]:
    return {"spec": {"podCIDR": cidr, "podCIDRs": [cidr]}}


async def patch_node_cidr(store, name: str, cidr: str) -> None:
    """Merge patches the pod CIDR fields of a node."""
    try:
        await store.patch_node(name, node_cidr_patch(cidr))
    except Exception as e:
        raise NodePatchError(f"failed to patch CIDR of node {name}: {e}") from e


async def patch_node_cidr_with_retry(store, node: APIObject, cidr: str, recorder: EventRecorder) -> None:
    """
    Patches a node's pod CIDR, retrying up to CIDR_UPDATE_RETRIES times.

    On the last failure a CIDRAssignmentFailed event is recorded against the node and the
    error is raised so the caller's queue retries later.
    """
    err = None
    for _ in range(CIDR_UPDATE_RETRIES):
        try:
            await patch_node_cidr(store, node.name, cidr)
        except NodePatchError as e:
            err = e
            continue
        logger.info(f"Set PodCIDR to {cidr} on node '{node.name}'")
        return

    logger.error(f"Failed to set PodCIDR {cidr} on node '{node.name}' after {CIDR_UPDATE_RETRIES} attempts: {err}")
    await recorder.node_status_change(node, CIDR_ASSIGNMENT_FAILED)
    logger.error(f"CIDR assignment for node '{node.name}' failed. Try again in next reconcile")
    raise err
