import pytest
from kr8s.asyncio.objects import Node

from conftest import make_node, pool_manifest
from nodecidr.cache import ADDED, DELETED, MODIFIED, RESYNC, WatchCache
from nodecidr.ipmanager import IPManager, PoolIPManager
from nodecidr.ippool import V1alpha1IPPoolManager
from nodecidr.kr8s_objects import IPPoolV1alpha1
from nodecidr.node_controller import NodeController


class RecordingIPManager(IPManager):
    def __init__(self):
        self.claimed = []
        self.released = []

    async def claim_pod_cidr(self, node):
        self.claimed.append(node.name)

    async def release_pod_cidr(self, node_name):
        self.released.append(node_name)


@pytest.fixture
def node_cache():
    cache = WatchCache(Node)
    cache.replace([])
    return cache


@pytest.fixture
def ip_manager():
    return RecordingIPManager()


@pytest.fixture
def controller(node_cache, ip_manager):
    return NodeController(node_cache, ip_manager)


def test_event_key(controller):
    bare = make_node("n1")
    assigned = make_node("n1", cidr="10.0.1.0/24")

    assert controller.event_key(ADDED, None, bare) == "n1"
    assert controller.event_key(ADDED, None, assigned) == "n1"
    assert controller.event_key(MODIFIED, bare, bare) == "n1"
    assert controller.event_key(MODIFIED, bare, assigned) is None
    assert controller.event_key(RESYNC, assigned, assigned) is None
    assert controller.event_key(DELETED, assigned, None) == "n1"


def test_cache_events_reach_the_queue(controller, node_cache):
    node_cache.apply(ADDED, make_node("n1"))
    node_cache.apply(ADDED, make_node("n2", cidr="10.0.2.0/24"))
    node_cache.apply(MODIFIED, make_node("n2", cidr="10.0.2.0/24"))

    assert len(controller.queue) == 2


async def test_node_without_cidr_is_claimed(controller, node_cache, ip_manager):
    node_cache.apply(ADDED, make_node("n1"))

    await controller.sync_handler("n1")
    assert ip_manager.claimed == ["n1"]
    assert ip_manager.released == []


async def test_node_with_cidr_is_left_alone(controller, node_cache, ip_manager):
    node_cache.apply(ADDED, make_node("n1", cidr="10.0.1.0/24"))

    await controller.sync_handler("n1")
    assert ip_manager.claimed == []
    assert ip_manager.released == []


async def test_missing_node_is_released(controller, ip_manager):
    await controller.sync_handler("gone")
    assert ip_manager.released == ["gone"]


async def test_node_marked_for_deletion_is_released(controller, node_cache, ip_manager):
    node_cache.apply(ADDED, make_node("n1", deleting=True))

    await controller.sync_handler("n1")
    assert ip_manager.released == ["n1"]
    assert ip_manager.claimed == []


async def test_invalid_key_is_dropped(controller, ip_manager):
    await controller.sync_handler("a/b/c")
    assert ip_manager.claimed == []
    assert ip_manager.released == []


async def test_claim_and_release_through_the_pool(node_cache, store, owner_ref):
    ippool_manager = V1alpha1IPPoolManager(store, WatchCache(IPPoolV1alpha1, "ns"))
    controller = NodeController(node_cache, PoolIPManager(ippool_manager, "cluster", "ns", owner_ref))
    store.pools[("ns", "cluster-ippool")] = pool_manifest(requests=["n2"], owner_refs=[owner_ref])
    node_cache.apply(ADDED, make_node("n1"))

    await controller.sync_handler("n1")
    assert store.pool_subnet_names() == ["n2", "n1"]

    node_cache.apply(DELETED, make_node("n1"))
    await controller.sync_handler("n1")
    assert store.pool_subnet_names() == ["n2"]


async def test_claim_failure_propagates(controller, node_cache, ip_manager):
    async def fail(node):
        raise RuntimeError("fail to add subnet")

    ip_manager.claim_pod_cidr = fail
    node_cache.apply(ADDED, make_node("n1"))

    with pytest.raises(RuntimeError):
        await controller.sync_handler("n1")
