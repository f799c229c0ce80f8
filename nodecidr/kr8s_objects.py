from kr8s.asyncio.objects import new_class

IPPoolV1alpha1 = new_class(
    kind="IPPool",
    version="nsx.vmware.com/v1alpha1",
    namespaced=True,
    plural="ippools",
)

IPPoolV1alpha2 = new_class(
    kind="IPPool",
    version="nsx.vmware.com/v1alpha2",
    namespaced=True,
    plural="ippools",
)

IPAddressAllocation = new_class(
    kind="IPAddressAllocation",
    version="crd.nsx.vmware.com/v1alpha1",
    namespaced=True,
    plural="ipaddressallocations",
)


def watch_kind(resource) -> str:
    """Returns the kind string kr8s uses to list and watch a resource class."""
    group, _, version = resource.version.rpartition("/")
    if not group:
        return resource.plural
    return f"{resource.plural}.{group}/{version}"
