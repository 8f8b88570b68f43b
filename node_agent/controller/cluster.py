"""Interface to the cluster API server used by the node controller.

The controller only needs a narrow view of its own Node object: its
identity, resource version and annotations. Implementations translate
between that view and the API server.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import StrEnum

__all__ = [
    "Node",
    "NodeEvent",
    "NodeEventType",
    "EventType",
    "ClusterClient",
]


@dataclass
class Node:
    """The parts of a cluster Node object managed by the agent."""

    name: str
    uid: str = ""
    resource_version: str = ""
    """Version of the object, updates are rejected when it is stale."""

    annotations: dict[str, str] = field(default_factory=dict)


class NodeEventType(StrEnum):
    """Type of a change observed on the node."""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"
    RESYNC = "RESYNC"
    """The last known node, delivered periodically without any change."""

    SYNCED = "SYNCED"
    """The initial listing of the node is complete, carries no node."""


@dataclass(frozen=True)
class NodeEvent:
    """A change observed on the node."""

    type: NodeEventType
    node: Node | None = None


class EventType(StrEnum):
    """Type of an event recorded on the node."""

    NORMAL = "Normal"
    WARNING = "Warning"


class ClusterClient(ABC):
    """Reads, updates and watches a Node object of the cluster."""

    @property
    @abstractmethod
    def resync_period(self) -> float:
        """Return the interval in seconds between two resync events."""

    @abstractmethod
    async def get_node(self, name: str) -> Node:
        """Return the current state of the node."""

    @abstractmethod
    async def update_node(self, node: Node) -> Node:
        """Replace the annotations of the node.

        The update fails when the node has changed since `node` was read.
        """

    @abstractmethod
    async def record_event(
        self, node: Node, event_type: EventType, reason: str, message: str
    ) -> None:
        """Record an event on the node.

        Failures are logged and never raised.
        """

    @abstractmethod
    def watch_node(self, name: str) -> AsyncIterator[NodeEvent]:
        """Yield the changes of the node until cancelled.

        The initial listing is reported as ADDED events followed by a single
        SYNCED event. The last known node is then delivered as a RESYNC event
        every `resync_period`.
        """

    async def close(self) -> None:
        """Release any resources held by the client."""
