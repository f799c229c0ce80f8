import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict

from kr8s.asyncio.objects import APIObject

logger = logging.getLogger(__name__)

EVENT_TYPE_NORMAL = "Normal"
EVENT_TYPE_WARNING = "Warning"

# Events about cluster-scoped objects are recorded here
DEFAULT_EVENT_NAMESPACE = "default"


class EventRecorder:
    """Best-effort recorder of core/v1 Events."""

    def __init__(self, store, component: str):
        self.store = store
        self.component = component

    def _object_reference(self, obj: APIObject) -> Dict[str, Any]:
        metadata = obj.raw.get("metadata", {})
        ref = {
            "apiVersion": obj.raw.get("apiVersion", obj.version),
            "kind": obj.raw.get("kind", obj.kind),
            "name": metadata.get("name", ""),
        }
        if uid := metadata.get("uid"):
            ref["uid"] = uid
        if namespace := metadata.get("namespace"):
            ref["namespace"] = namespace
        return ref

    async def event(self, obj: APIObject, event_type: str, reason: str, message: str) -> None:
        """
        Records an event about obj. Failures are logged, never raised.

        Args:
            obj: The object the event is about.
            event_type: Normal or Warning.
            reason: Short CamelCase reason.
            message: Human readable description.
        """
        involved = self._object_reference(obj)
        namespace = involved.get("namespace") or DEFAULT_EVENT_NAMESPACE
        now = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
        manifest = {
            "apiVersion": "v1",
            "kind": "Event",
            "metadata": {
                "name": f"{involved['name']}.{uuid.uuid4().hex[:16]}",
                "namespace": namespace,
            },
            "involvedObject": involved,
            "type": event_type,
            "reason": reason,
            "message": message,
            "source": {"component": self.component},
            "firstTimestamp": now,
            "lastTimestamp": now,
            "count": 1,
        }
        try:
            await self.store.create_event(manifest, namespace)
        except Exception as e:
            logger.error(f"Failed to record {reason} event for {involved['kind']} '{involved['name']}': {e}")

    async def node_status_change(self, node: APIObject, new_status: str) -> None:
        """Records an event related to a node status change."""
        logger.debug(f"Recording status change {new_status} event message for node {node.name}")
        await self.event(node, EVENT_TYPE_NORMAL, new_status, f"Node {node.name} status is now: {new_status}")
