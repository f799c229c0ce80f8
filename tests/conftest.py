from __future__ import annotations

import copy
from typing import Any

import kr8s
import pytest
from kr8s.asyncio.objects import Node

from nodecidr.events import EventRecorder
from nodecidr.kr8s_objects import IPAddressAllocation, IPPoolV1alpha1


class ConflictError(Exception):
    pass


class FakeStore:
    """In-memory stand-in for KubeStore that records every write."""

    def __init__(self) -> None:
        self.nodes: dict[str, dict[str, Any]] = {}
        self.pools: dict[tuple[str, str], dict[str, Any]] = {}
        self.allocations: dict[tuple[str, str], dict[str, Any]] = {}
        self.events: list[dict[str, Any]] = []
        self.writes: list[tuple[str, str]] = []
        self.reads: list[tuple[str, str]] = []
        self.node_patches: list[tuple[str, dict[str, Any]]] = []
        # node name -> remaining failures, -1 fails forever
        self.patch_failures: dict[str, int] = {}
        self.get_pool_error: Exception | None = None
        self.event_error: Exception | None = None
        self._rv = 0

    def _next_rv(self) -> str:
        self._rv += 1
        return str(self._rv)

    async def get_node(self, name: str) -> Node:
        if name not in self.nodes:
            raise kr8s.NotFoundError(name)
        return Node(copy.deepcopy(self.nodes[name]))

    async def patch_node(self, name: str, patch: dict[str, Any]) -> None:
        self.node_patches.append((name, copy.deepcopy(patch)))
        remaining = self.patch_failures.get(name, 0)
        if remaining:
            if remaining > 0:
                self.patch_failures[name] = remaining - 1
            raise RuntimeError(f"patch of {name} failed")
        node = self.nodes.setdefault(name, {"metadata": {"name": name}, "spec": {}})
        node.setdefault("spec", {}).update(patch["spec"])
        self.writes.append(("patch_node", name))

    async def get_pool(self, pool_class: Any, namespace: str, name: str) -> Any:
        self.reads.append(("get_pool", f"{namespace}/{name}"))
        if self.get_pool_error is not None:
            raise self.get_pool_error
        if (namespace, name) not in self.pools:
            raise kr8s.NotFoundError(name)
        return pool_class(copy.deepcopy(self.pools[(namespace, name)]))

    async def create_pool(self, pool_class: Any, manifest: dict[str, Any]) -> Any:
        metadata = manifest["metadata"]
        stored = copy.deepcopy(manifest)
        stored["metadata"]["resourceVersion"] = self._next_rv()
        self.pools[(metadata["namespace"], metadata["name"])] = stored
        self.writes.append(("create_pool", metadata["name"]))
        return pool_class(copy.deepcopy(stored))

    async def update_pool(self, pool_class: Any, manifest: dict[str, Any]) -> Any:
        metadata = manifest["metadata"]
        key = (metadata["namespace"], metadata["name"])
        current = self.pools[key]
        if metadata.get("resourceVersion") != current["metadata"].get("resourceVersion"):
            raise ConflictError(f"ippool {metadata['name']} was modified")
        stored = copy.deepcopy(manifest)
        stored["metadata"]["resourceVersion"] = self._next_rv()
        self.pools[key] = stored
        self.writes.append(("update_pool", metadata["name"]))
        return pool_class(copy.deepcopy(stored))

    async def get_allocation(self, namespace: str, name: str) -> Any:
        if (namespace, name) not in self.allocations:
            raise kr8s.NotFoundError(name)
        return IPAddressAllocation(copy.deepcopy(self.allocations[(namespace, name)]))

    async def create_allocation(self, manifest: dict[str, Any]) -> Any:
        metadata = manifest["metadata"]
        self.allocations[(metadata["namespace"], metadata["name"])] = copy.deepcopy(manifest)
        self.writes.append(("create_allocation", metadata["name"]))
        return IPAddressAllocation(copy.deepcopy(manifest))

    async def delete_allocation(self, namespace: str, name: str) -> None:
        if (namespace, name) not in self.allocations:
            raise kr8s.NotFoundError(name)
        del self.allocations[(namespace, name)]
        self.writes.append(("delete_allocation", name))

    async def create_event(self, manifest: dict[str, Any], namespace: str | None = None) -> None:
        if self.event_error is not None:
            raise self.event_error
        self.events.append(manifest)

    def pool_subnet_names(self, namespace: str = "ns", name: str = "cluster-ippool") -> list[str]:
        return [sub["name"] for sub in self.pools[(namespace, name)]["spec"]["subnets"]]


def make_node(name: str, cidr: str | None = None, deleting: bool = False) -> Node:
    raw: dict[str, Any] = {
        "apiVersion": "v1",
        "kind": "Node",
        "metadata": {"name": name, "uid": f"uid-{name}"},
        "spec": {},
    }
    if cidr:
        raw["spec"] = {"podCIDR": cidr, "podCIDRs": [cidr]}
    if deleting:
        raw["metadata"]["deletionTimestamp"] = "2026-01-01T00:00:00Z"
    return Node(raw)


def pool_manifest(
    requests: list[str] | None = None,
    results: dict[str, str] | None = None,
    namespace: str = "ns",
    name: str = "cluster-ippool",
    version: str = "nsx.vmware.com/v1alpha1",
    owner_refs: list[dict[str, Any]] | None = None,
) -> dict[str, Any]:
    return {
        "apiVersion": version,
        "kind": "IPPool",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "resourceVersion": "1",
            "ownerReferences": owner_refs if owner_refs is not None else [],
        },
        "spec": {"subnets": [{"name": n, "ipFamily": "ipv4", "prefixLength": 24} for n in requests or []]},
        "status": {"subnets": [{"name": n, "cidr": c} for n, c in (results or {}).items()]},
    }


def make_pool(pool_class: Any = IPPoolV1alpha1, **kwargs: Any) -> Any:
    return pool_class(pool_manifest(version=pool_class.version, **kwargs))


def make_allocation(
    name: str,
    ready: str | None = "True",
    cidr: str = "",
    namespace: str = "ns",
    conditions: list[dict[str, Any]] | None = None,
) -> Any:
    if conditions is None:
        conditions = [{"type": "Ready", "status": ready}] if ready is not None else []
    return IPAddressAllocation(
        {
            "apiVersion": "crd.nsx.vmware.com/v1alpha1",
            "kind": "IPAddressAllocation",
            "metadata": {"name": name, "namespace": namespace},
            "spec": {"ipAddressBlockVisibility": "Private", "allocationSize": 256},
            "status": {"conditions": conditions, "cidr": cidr},
        }
    )


OWNER_REF = {
    "apiVersion": "cluster.x-k8s.io/v1beta1",
    "kind": "Cluster",
    "name": "cluster",
    "uid": "1234",
}


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def recorder(store: FakeStore) -> EventRecorder:
    return EventRecorder(store, "nodecidr-test")


@pytest.fixture
def owner_ref() -> dict[str, Any]:
    return dict(OWNER_REF)
