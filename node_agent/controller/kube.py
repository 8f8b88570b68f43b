"""Cluster client backed by the Kubernetes API server.

The kubernetes client library is synchronous, so every request runs in a
worker thread. Watch streams are read one event at a time and bounded by a
server side timeout, so an abandoned stream never outlives the resync
period.
"""

import asyncio
import base64
import binascii
from collections.abc import AsyncIterator
import datetime
import logging
import os
import tempfile
from typing import Any

from kubernetes import client, watch
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from ..exceptions import ClusterException, InputException
from ..metadata import NodeMetadata
from .cluster import ClusterClient, EventType, Node, NodeEvent, NodeEventType

__all__ = [
    "KubernetesClusterClient",
]

_LOGGER = logging.getLogger(__name__)

EVENT_COMPONENT = "agent"
EVENT_NAMESPACE = "default"
DEFAULT_WATCH_TIMEOUT = 30
RETRY_DELAY = 5.0
HTTP_STATUS_GONE = 410


def _to_node(obj: Any) -> Node:
    metadata = obj.metadata
    return Node(
        name=metadata.name,
        uid=metadata.uid or "",
        resource_version=metadata.resource_version or "",
        annotations=dict(metadata.annotations or {}),
    )


class KubernetesClusterClient(ClusterClient):
    """ClusterClient using the official kubernetes client."""

    def __init__(
        self,
        api: client.CoreV1Api,
        resync_period: float,
        watch_timeout: int = DEFAULT_WATCH_TIMEOUT,
        ca_file: str | None = None,
    ) -> None:
        """Initialize the KubernetesClusterClient."""
        self._api = api
        self._resync_period = resync_period
        self._watch_timeout = watch_timeout
        self._ca_file = ca_file

    @classmethod
    def from_metadata(
        cls, metadata: NodeMetadata, resync_period: float
    ) -> "KubernetesClusterClient":
        """Create a client authenticated with the node token.

        The cluster CA of the metadata is written to a temporary file
        removed by `close`.
        """
        try:
            ca_data = base64.b64decode(metadata.cluster_ca, validate=True)
        except (binascii.Error, ValueError) as err:
            raise InputException(
                f"Failed to decode Kubernetes CA certificate: {err}"
            ) from err
        with tempfile.NamedTemporaryFile(
            "wb", prefix="node-agent-ca-", suffix=".crt", delete=False
        ) as ca_file:
            ca_file.write(ca_data)

        configuration = client.Configuration()
        configuration.host = metadata.cluster_url
        configuration.ssl_ca_cert = ca_file.name
        configuration.api_key = {"authorization": metadata.token}
        configuration.api_key_prefix = {"authorization": "Bearer"}
        api = client.CoreV1Api(client.ApiClient(configuration))
        return cls(api, resync_period, ca_file=ca_file.name)

    @property
    def resync_period(self) -> float:
        """Return the interval in seconds between two resync events."""
        return self._resync_period

    async def _call(self, action: str, func: Any, *args: Any, **kwargs: Any) -> Any:
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except ApiException as err:
            raise ClusterException(
                f"Failed to {action}: {err.status} {err.reason}", status=err.status
            ) from err
        except (HTTPError, OSError) as err:
            raise ClusterException(f"Failed to {action}: {err}") from err

    async def get_node(self, name: str) -> Node:
        """Read the node from the API server."""
        obj = await self._call(f"get node {name}", self._api.read_node, name)
        return _to_node(obj)

    async def update_node(self, node: Node) -> Node:
        """Replace the annotations of the node, guarded by its resource version."""

        def replace() -> Any:
            obj = self._api.read_node(node.name)
            obj.metadata.annotations = dict(node.annotations)
            obj.metadata.resource_version = node.resource_version
            return self._api.replace_node(node.name, obj)

        obj = await self._call(f"update node {node.name}", replace)
        return _to_node(obj)

    async def record_event(
        self, node: Node, event_type: EventType, reason: str, message: str
    ) -> None:
        """Create a core/v1 Event referencing the node."""
        now = datetime.datetime.now(datetime.timezone.utc)
        event = client.CoreV1Event(
            metadata=client.V1ObjectMeta(
                generate_name=f"{node.name}.", namespace=EVENT_NAMESPACE
            ),
            involved_object=client.V1ObjectReference(
                api_version="v1",
                kind="Node",
                name=node.name,
                uid=node.uid,
                resource_version=node.resource_version,
            ),
            type=str(event_type),
            reason=reason,
            message=message,
            source=client.V1EventSource(component=EVENT_COMPONENT, host=node.name),
            first_timestamp=now,
            last_timestamp=now,
            count=1,
        )
        try:
            await self._call(
                "record event",
                self._api.create_namespaced_event,
                EVENT_NAMESPACE,
                event,
            )
        except ClusterException as err:
            _LOGGER.warning("Unable to record event %s on %s: %s", reason, node.name, err)

    async def _stream(
        self, selector: str, resource_version: str, timeout: int
    ) -> AsyncIterator[dict[str, Any]]:
        watcher = watch.Watch()
        stream = watcher.stream(
            self._api.list_node,
            field_selector=selector,
            resource_version=resource_version,
            timeout_seconds=timeout,
            _request_timeout=timeout + 10,
        )
        try:
            while (event := await self._call("watch node", next, stream, None)) is not None:
                yield event
        finally:
            watcher.stop()

    async def watch_node(self, name: str) -> AsyncIterator[NodeEvent]:
        """List then watch the node, listing again when the watch expires."""
        loop = asyncio.get_running_loop()
        selector = f"metadata.name={name}"
        cached: Node | None = None
        synced = False
        while True:
            try:
                node_list = await self._call(
                    "list nodes", self._api.list_node, field_selector=selector
                )
            except ClusterException as err:
                _LOGGER.warning("%s, retrying in %ss", err, RETRY_DELAY)
                await asyncio.sleep(RETRY_DELAY)
                continue

            listed = [_to_node(item) for item in node_list.items]
            if cached is not None and not listed:
                yield NodeEvent(NodeEventType.DELETED, cached)
            for node in listed:
                event_type = NodeEventType.ADDED if cached is None else NodeEventType.MODIFIED
                yield NodeEvent(event_type, node)
            cached = listed[0] if listed else None
            if not synced:
                synced = True
                yield NodeEvent(NodeEventType.SYNCED)

            resource_version = node_list.metadata.resource_version
            next_resync = loop.time() + self._resync_period
            while True:
                remaining = next_resync - loop.time()
                timeout = max(1, min(self._watch_timeout, int(remaining)))
                try:
                    async for event in self._stream(selector, resource_version, timeout):
                        if event["type"] not in (
                            NodeEventType.ADDED,
                            NodeEventType.MODIFIED,
                            NodeEventType.DELETED,
                        ):
                            continue
                        node = _to_node(event["object"])
                        resource_version = node.resource_version
                        cached = None if event["type"] == NodeEventType.DELETED else node
                        yield NodeEvent(NodeEventType(event["type"]), node)
                except ClusterException as err:
                    if err.status == HTTP_STATUS_GONE:
                        _LOGGER.debug("Watch expired, listing node again")
                    else:
                        _LOGGER.warning("%s, retrying in %ss", err, RETRY_DELAY)
                        await asyncio.sleep(RETRY_DELAY)
                    break
                if loop.time() >= next_resync:
                    if cached is not None:
                        yield NodeEvent(NodeEventType.RESYNC, cached)
                    next_resync = loop.time() + self._resync_period

    async def close(self) -> None:
        """Close the API connections and remove the CA file."""
        await asyncio.to_thread(self._api.api_client.close)
        if self._ca_file is not None:
            await asyncio.to_thread(os.remove, self._ca_file)
            self._ca_file = None
