"""Configuration objects for node-agent."""

from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_VERSIONS_FILE = Path("/etc/scw-k8s-versions.json")
DEFAULT_USERDATA_CACHE_FILE = Path("/etc/scw-k8s-userdata")
UPGRADE_ANNOTATION = "k8s.scaleway.com/agent"
UPGRADE_VALUE = "upgrade"
COMPONENT_ANNOTATION_PREFIX = "k8s.scaleway.com/component-"
AGENT_COMPONENT = "agent"


@dataclass
class QueueConfig:
    """Retry settings for the controller work queue."""

    base_delay: float = 0.005
    """Initial per-item backoff in seconds, doubled on every failure."""

    max_delay: float = 1000.0
    """Upper bound of the per-item backoff in seconds."""

    qps: float = 50.0
    """Sustained rate of the global token bucket."""

    burst: int = 300
    """Size of the global token bucket."""


@dataclass
class AgentConfig:
    """Configuration for the node agent process."""

    versions_file: Path = DEFAULT_VERSIONS_FILE
    userdata_cache_file: Path = DEFAULT_USERDATA_CACHE_FILE
    external_node: bool = False
    """Register as an external node from environment variables instead of
    reading the instance user-data."""

    upgrade_annotation: str = UPGRADE_ANNOTATION
    upgrade_value: str = UPGRADE_VALUE
    component_annotation_prefix: str = COMPONENT_ANNOTATION_PREFIX
    resync_period: float = 60.0
    """Interval in seconds at which the node is queued again without changes."""

    queue: QueueConfig = field(default_factory=QueueConfig)
