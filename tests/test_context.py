import pytest
from kr8s.asyncio.objects import Node

from conftest import OWNER_REF
from nodecidr.allocation_controller import IPAddressAllocationController
from nodecidr.config import Settings
from nodecidr.context import ControllerContext, start_controllers
from nodecidr.ipmanager import AllocationIPManager, PoolIPManager
from nodecidr.ippool import V1alpha2IPPoolManager
from nodecidr.ippool_controller import IPPoolController
from nodecidr.kr8s_objects import IPAddressAllocation, IPPoolV1alpha1, IPPoolV1alpha2
from nodecidr.node_controller import NodeController


def make_context(store, **overrides):
    settings = Settings(cluster_name="cluster", cluster_namespace="ns", owner_reference=dict(OWNER_REF), **overrides)
    return ControllerContext(settings, store=store)


def test_cache_for_is_memoized(store):
    ctx = make_context(store)

    assert ctx.cache_for(Node) is ctx.node_cache
    assert ctx.cache_for(IPPoolV1alpha1, "ns") is ctx.cache_for(IPPoolV1alpha1, "ns")
    assert ctx.cache_for(IPPoolV1alpha1, "other") is not ctx.cache_for(IPPoolV1alpha1, "ns")
    assert len(ctx.caches) == 3


def test_ippool_topology(store):
    ctx = make_context(store)

    node_controller, pool_controller = start_controllers(ctx)
    assert isinstance(node_controller, NodeController)
    assert isinstance(node_controller.ip_manager, PoolIPManager)
    assert isinstance(pool_controller, IPPoolController)
    assert {cache.resource for cache in ctx.caches} == {Node, IPPoolV1alpha1}
    assert pool_controller.recorder is ctx.recorder


def test_ippool_v1alpha2_topology(store):
    ctx = make_context(store, pool_version="v1alpha2", pod_ip_pool_type="Public")

    _, pool_controller = start_controllers(ctx)
    assert isinstance(pool_controller.ippool_manager, V1alpha2IPPoolManager)
    assert pool_controller.ippool_manager.pod_ip_pool_type == "Public"
    assert {cache.resource for cache in ctx.caches} == {Node, IPPoolV1alpha2}


def test_allocation_topology(store):
    ctx = make_context(store, topology="allocation")

    node_controller, allocation_controller = start_controllers(ctx)
    assert isinstance(node_controller.ip_manager, AllocationIPManager)
    assert isinstance(allocation_controller, IPAddressAllocationController)
    assert allocation_controller.allocation_cache is ctx.cache_for(IPAddressAllocation, "ns")
    # node claims wait for the allocation cache too
    assert allocation_controller.allocation_cache in node_controller.caches


def test_invalid_settings_are_rejected(store):
    ctx = make_context(store, topology="mesh")

    with pytest.raises(ValueError):
        start_controllers(ctx)
