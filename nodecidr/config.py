import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

import yaml

# Get log level from environment variable or default to INFO
NODECIDR_LOG_LEVEL = os.environ.get("NODECIDR_LOG_LEVEL", "INFO").upper()
# Get dependencies log level from environment variable or default to WARNING
DEPENDENCIES_LOG_LEVEL = os.environ.get("DEPENDENCIES_LOG_LEVEL", "WARNING").upper()

# Configure logging
logging.basicConfig(
    level=getattr(logging, DEPENDENCIES_LOG_LEVEL, logging.WARNING),  # Set default level for all loggers
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

# Set specific level for nodecidr loggers
nodecidr_logger = logging.getLogger("nodecidr")
nodecidr_logger.setLevel(getattr(logging, NODECIDR_LOG_LEVEL, logging.INFO))

# Topologies
TOPOLOGY_IPPOOL = "ippool"
TOPOLOGY_ALLOCATION = "allocation"
TOPOLOGIES = (TOPOLOGY_IPPOOL, TOPOLOGY_ALLOCATION)

POOL_VERSIONS = ("v1alpha1", "v1alpha2")

# Pod IP pool types
PUBLIC_IP_POOL_TYPE = "Public"
PRIVATE_IP_POOL_TYPE = "Private"
IP_POOL_TYPES = (PUBLIC_IP_POOL_TYPE, PRIVATE_IP_POOL_TYPE)

# IPPool subnet requests
IP_FAMILY_V1ALPHA1 = "ipv4"
IP_FAMILY_V1ALPHA2 = "IPv4"
IPV4_PREFIX = 24

# IPAddressAllocation
ALLOCATION_SIZE = 256

# Timing
DEFAULT_RESYNC_SECONDS = 60.0
IPPOOL_SYNC_SECONDS = 30.0
ALLOCATION_SYNC_SECONDS = 30.0
CACHE_SYNC_TIMEOUT_SECONDS = 120.0
WATCH_RETRY_SECONDS = 10.0

ENV_PREFIX = "NODECIDR_"
CONFIG_PATH_ENV = "NODECIDR_CONFIG"


@dataclass
class Settings:
    """Startup parameters for the controllers."""

    cluster_name: str = ""
    cluster_namespace: str = ""
    owner_reference: Dict[str, Any] = field(default_factory=dict)
    topology: str = TOPOLOGY_IPPOOL
    pool_version: str = "v1alpha1"
    pod_ip_pool_type: str = PRIVATE_IP_POOL_TYPE
    resync_seconds: float = DEFAULT_RESYNC_SECONDS
    workers: int = 1

    def validate(self) -> None:
        if not self.cluster_name:
            raise ValueError("cluster name can't be empty")
        if not self.cluster_namespace:
            raise ValueError("cluster namespace can't be empty")
        for key in ("apiVersion", "kind", "name", "uid"):
            if not self.owner_reference.get(key):
                raise ValueError(f"owner reference is missing '{key}'")
        if self.topology not in TOPOLOGIES:
            raise ValueError(f"unknown topology '{self.topology}', expected one of {TOPOLOGIES}")
        if self.pool_version not in POOL_VERSIONS:
            raise ValueError(f"unknown pool version '{self.pool_version}', expected one of {POOL_VERSIONS}")
        if self.pod_ip_pool_type not in IP_POOL_TYPES:
            raise ValueError(f"unknown pod IP pool type '{self.pod_ip_pool_type}', expected one of {IP_POOL_TYPES}")
        if self.workers < 1:
            raise ValueError(f"worker count must be positive, got {self.workers}")
        if self.resync_seconds <= 0:
            raise ValueError(f"resync period must be positive, got {self.resync_seconds}")


def _from_env(environ: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for name in ("cluster_name", "cluster_namespace", "topology", "pool_version", "pod_ip_pool_type"):
        if (value := environ.get(ENV_PREFIX + name.upper())) is not None:
            values[name] = value
    if (value := environ.get(ENV_PREFIX + "RESYNC_SECONDS")) is not None:
        values["resync_seconds"] = float(value)
    if (value := environ.get(ENV_PREFIX + "WORKERS")) is not None:
        values["workers"] = int(value)

    owner = {}
    for key, env in (
        ("apiVersion", "OWNER_API_VERSION"),
        ("kind", "OWNER_KIND"),
        ("name", "OWNER_NAME"),
        ("uid", "OWNER_UID"),
    ):
        if (value := environ.get(ENV_PREFIX + env)) is not None:
            owner[key] = value
    if owner:
        values["owner_reference"] = owner
    return values


def load_settings(path: Optional[str] = None, environ: Mapping[str, str] = os.environ) -> Settings:
    """
    Loads settings from an optional YAML file, overridden by NODECIDR_* environment variables.

    Args:
        path: YAML file to read. Defaults to the file named by NODECIDR_CONFIG, if any.
        environ: Environment to read overrides from.

    Returns:
        The merged, unvalidated settings.
    """
    path = path or environ.get(CONFIG_PATH_ENV)
    values: Dict[str, Any] = {}
    if path:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"config file '{path}' must contain a mapping")
        values.update({k.replace("-", "_"): v for k, v in data.items()})

    env_values = _from_env(environ)
    if "owner_reference" in env_values:
        owner = dict(values.get("owner_reference") or {})
        owner.update(env_values.pop("owner_reference"))
        env_values["owner_reference"] = owner
    values.update(env_values)

    known = Settings.__dataclass_fields__.keys()
    unknown = set(values) - set(known)
    if unknown:
        raise ValueError(f"unknown settings: {', '.join(sorted(unknown))}")

    settings = Settings(**values)
    settings.workers = int(settings.workers)
    settings.resync_seconds = float(settings.resync_seconds)
    settings.owner_reference = dict(settings.owner_reference)
    return settings
