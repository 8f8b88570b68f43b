"""
The controller module keeps the node in sync with its Node object in the
cluster.

The `NodeController` reacts to changes of the Node object: it upgrades the
node when requested through an annotation and reports the installed
component versions back as annotations. The cluster is accessed through
the `ClusterClient` interface, implemented on top of the Kubernetes API by
`KubernetesClusterClient`.
"""

from .cluster import ClusterClient, EventType, Node, NodeEvent, NodeEventType
from .controller import EngineRunner, NodeController, metadata_engine_runner
from .kube import KubernetesClusterClient
from .queue import RateLimitingQueue

__all__ = [
    "ClusterClient",
    "EventType",
    "Node",
    "NodeEvent",
    "NodeEventType",
    "EngineRunner",
    "NodeController",
    "metadata_engine_runner",
    "KubernetesClusterClient",
    "RateLimitingQueue",
]
