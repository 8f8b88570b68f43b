"""Tests for the node controller."""

import asyncio
from collections.abc import AsyncIterator, Callable
import dataclasses

import pytest

from node_agent.config import AgentConfig, QueueConfig
from node_agent.controller import (
    ClusterClient,
    EventType,
    Node,
    NodeController,
    NodeEvent,
    NodeEventType,
)
from node_agent.exceptions import (
    AgentException,
    ClusterException,
    ComponentFailedError,
)
from node_agent.store import InMemoryVersionStore

NODE_NAME = "node-1"
AGENT_VERSION = "1.3.0"
UPGRADE_ANNOTATION = "k8s.scaleway.com/agent"
PREFIX = "k8s.scaleway.com/component-"


class FakeClusterClient(ClusterClient):
    """An in memory cluster holding a single node."""

    def __init__(self, annotations: dict[str, str] | None = None) -> None:
        self.node = Node(
            name=NODE_NAME,
            uid="uid-1",
            resource_version="1",
            annotations=dict(annotations or {}),
        )
        self.events: list[tuple[EventType, str, str]] = []
        self.updates: list[dict[str, str]] = []
        self.watch_events: asyncio.Queue[NodeEvent] = asyncio.Queue()
        self.synced = True

    @property
    def resync_period(self) -> float:
        return 60.0

    async def get_node(self, name: str) -> Node:
        assert name == NODE_NAME
        return dataclasses.replace(self.node, annotations=dict(self.node.annotations))

    async def update_node(self, node: Node) -> Node:
        if node.resource_version != self.node.resource_version:
            raise ClusterException("Failed to update node: conflict", status=409)
        self.updates.append(dict(node.annotations))
        self.node = dataclasses.replace(
            node,
            resource_version=str(int(node.resource_version) + 1),
            annotations=dict(node.annotations),
        )
        self.watch_events.put_nowait(NodeEvent(NodeEventType.MODIFIED, self.node))
        return self.node

    async def record_event(
        self, node: Node, event_type: EventType, reason: str, message: str
    ) -> None:
        self.events.append((event_type, reason, message))

    def set_annotation(self, key: str, value: str) -> None:
        """Change the node as a user of the cluster would."""
        annotations = {**self.node.annotations, key: value}
        self.node = dataclasses.replace(
            self.node,
            resource_version=str(int(self.node.resource_version) + 1),
            annotations=annotations,
        )
        self.watch_events.put_nowait(NodeEvent(NodeEventType.MODIFIED, self.node))

    async def watch_node(self, name: str) -> AsyncIterator[NodeEvent]:
        yield NodeEvent(NodeEventType.ADDED, self.node)
        if self.synced:
            yield NodeEvent(NodeEventType.SYNCED)
        while True:
            yield await self.watch_events.get()


class FakeEngineRunner:
    """Records the runs of the lifecycle engine."""

    def __init__(self, store: InMemoryVersionStore, failures: int = 0) -> None:
        self.calls: list[asyncio.Event | None] = []
        self._store = store
        self._failures = failures

    async def __call__(self, cancel: asyncio.Event | None) -> None:
        self.calls.append(cancel)
        if len(self.calls) <= self._failures:
            raise ComponentFailedError("cni", "1.1.0", "install", "Failed to run script")
        await self._store.set("cni", "1.1.0")


@pytest.fixture(name="store")
def store_fixture() -> InMemoryVersionStore:
    """Fixture for the installed versions."""
    return InMemoryVersionStore({"containerd": "1.7.20"})


@pytest.fixture(name="cluster")
def cluster_fixture() -> FakeClusterClient:
    """Fixture for the cluster."""
    return FakeClusterClient({"kubernetes.io/hostname": NODE_NAME})


@pytest.fixture(name="runner")
def runner_fixture(store: InMemoryVersionStore) -> FakeEngineRunner:
    """Fixture for the lifecycle engine."""
    return FakeEngineRunner(store)


def _controller(
    cluster: ClusterClient,
    runner: FakeEngineRunner,
    store: InMemoryVersionStore,
) -> NodeController:
    return NodeController(
        cluster,
        runner,
        store,
        NODE_NAME,
        AGENT_VERSION,
        AgentConfig(queue=QueueConfig(base_delay=0.001, max_delay=0.01)),
    )


async def _wait_for(predicate: Callable[[], bool]) -> None:
    async def wait() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(wait(), 2)


async def test_sync_versions_annotations(
    cluster: FakeClusterClient, runner: FakeEngineRunner, store: InMemoryVersionStore
) -> None:
    """Test the installed versions are reported as annotations."""
    cluster.node.annotations[f"{PREFIX}cni"] = "1.0.0"
    cluster.node.annotations[f"{PREFIX}removed"] = "2.0.0"
    await store.set("cni", "1.1.0")
    controller = _controller(cluster, runner, store)

    await controller.sync_versions_annotations()

    assert cluster.node.annotations == {
        "kubernetes.io/hostname": NODE_NAME,
        f"{PREFIX}containerd": "1.7.20",
        f"{PREFIX}cni": "1.1.0",
        f"{PREFIX}agent": AGENT_VERSION,
    }
    assert await store.list() == {"containerd": "1.7.20", "cni": "1.1.0"}

    # Nothing changed, the node is not updated again
    await controller.sync_versions_annotations()
    assert len(cluster.updates) == 1


async def test_upgrade_node(
    cluster: FakeClusterClient, runner: FakeEngineRunner, store: InMemoryVersionStore
) -> None:
    """Test the upgrade annotation runs the engine and is then removed."""
    cluster.node.annotations[UPGRADE_ANNOTATION] = "upgrade"
    controller = _controller(cluster, runner, store)

    await controller.upgrade_node()

    assert len(runner.calls) == 1
    assert UPGRADE_ANNOTATION not in cluster.node.annotations
    assert cluster.node.annotations == {"kubernetes.io/hostname": NODE_NAME}
    assert cluster.events == [
        (EventType.NORMAL, "NodeUpgrade", "Node upgrading"),
        (EventType.NORMAL, "NodeUpgrade", "Node upgraded"),
    ]


@pytest.mark.parametrize("value", [None, "", "done"])
async def test_upgrade_node_not_requested(
    cluster: FakeClusterClient,
    runner: FakeEngineRunner,
    store: InMemoryVersionStore,
    value: str | None,
) -> None:
    """Test the engine only runs when the annotation requests an upgrade."""
    if value is not None:
        cluster.node.annotations[UPGRADE_ANNOTATION] = value
    controller = _controller(cluster, runner, store)

    await controller.upgrade_node()

    assert runner.calls == []
    assert cluster.events == []
    assert cluster.updates == []


async def test_upgrade_node_failure(
    cluster: FakeClusterClient, store: InMemoryVersionStore
) -> None:
    """Test a failed upgrade is reported and keeps the annotation."""
    cluster.node.annotations[UPGRADE_ANNOTATION] = "upgrade"
    runner = FakeEngineRunner(store, failures=2)
    controller = _controller(cluster, runner, store)

    with pytest.raises(ComponentFailedError):
        await controller.upgrade_node()

    assert cluster.node.annotations[UPGRADE_ANNOTATION] == "upgrade"
    assert cluster.events == [
        (EventType.NORMAL, "NodeUpgrade", "Node upgrading"),
        (
            EventType.WARNING,
            "NodeUpgrade",
            "Failed to upgrade node: Failed to install component cni 1.1.0: "
            "Failed to run script",
        ),
    ]

    with pytest.raises(AgentException, match="Failed to upgrade node node-1"):
        await controller.sync_handler()
    assert len(runner.calls) == 2
    assert cluster.node.annotations[UPGRADE_ANNOTATION] == "upgrade"

    await controller.sync_handler()
    assert len(runner.calls) == 3
    assert UPGRADE_ANNOTATION not in cluster.node.annotations
    assert cluster.node.annotations[f"{PREFIX}cni"] == "1.1.0"


async def test_upgrade_node_update_conflict(
    runner: FakeEngineRunner, store: InMemoryVersionStore
) -> None:
    """Test a failure to remove the annotation is reported."""

    class ConflictClusterClient(FakeClusterClient):
        async def update_node(self, node: Node) -> Node:
            raise ClusterException("Failed to update node node-1: 409 Conflict", status=409)

    cluster = ConflictClusterClient({UPGRADE_ANNOTATION: "upgrade"})
    controller = _controller(cluster, runner, store)

    with pytest.raises(ClusterException, match="Conflict"):
        await controller.upgrade_node()

    assert len(runner.calls) == 1
    assert cluster.events == [
        (EventType.NORMAL, "NodeUpgrade", "Node upgrading"),
        (
            EventType.WARNING,
            "NodeUpgrade",
            "Failed to remove annotation: Failed to update node node-1: 409 Conflict",
        ),
    ]


async def test_run(
    cluster: FakeClusterClient, runner: FakeEngineRunner, store: InMemoryVersionStore
) -> None:
    """Test the controller reports versions and upgrades on request."""
    controller = _controller(cluster, runner, store)
    cancel = asyncio.Event()
    task = asyncio.create_task(controller.run(cancel))

    await _wait_for(lambda: f"{PREFIX}agent" in cluster.node.annotations)
    assert cluster.node.annotations[f"{PREFIX}containerd"] == "1.7.20"
    assert runner.calls == []

    cluster.set_annotation(UPGRADE_ANNOTATION, "upgrade")
    await _wait_for(lambda: f"{PREFIX}cni" in cluster.node.annotations)
    assert UPGRADE_ANNOTATION not in cluster.node.annotations
    assert runner.calls == [cancel]

    cancel.set()
    await asyncio.wait_for(task, 2)
    assert controller.queue.shutting_down


async def test_run_retries_failures(
    cluster: FakeClusterClient, store: InMemoryVersionStore
) -> None:
    """Test a failed sync is retried until it succeeds."""
    cluster.node.annotations[UPGRADE_ANNOTATION] = "upgrade"
    runner = FakeEngineRunner(store, failures=2)
    controller = _controller(cluster, runner, store)
    cancel = asyncio.Event()
    task = asyncio.create_task(controller.run(cancel))

    await _wait_for(lambda: UPGRADE_ANNOTATION not in cluster.node.annotations)
    assert len(runner.calls) == 3
    await _wait_for(lambda: controller.queue.num_requeues(NODE_NAME) == 0)

    cancel.set()
    await asyncio.wait_for(task, 2)


async def test_run_cancelled_before_sync(
    cluster: FakeClusterClient, runner: FakeEngineRunner, store: InMemoryVersionStore
) -> None:
    """Test the controller stops while waiting for the node to be listed."""
    cluster.synced = False
    controller = _controller(cluster, runner, store)
    cancel = asyncio.Event()
    task = asyncio.create_task(controller.run(cancel))
    await asyncio.sleep(0.05)

    cancel.set()
    await asyncio.wait_for(task, 2)
    assert cluster.updates == []


async def test_run_watch_failure(
    runner: FakeEngineRunner, store: InMemoryVersionStore
) -> None:
    """Test the controller fails when the node cannot be watched."""

    class BrokenClusterClient(FakeClusterClient):
        async def watch_node(self, name: str) -> AsyncIterator[NodeEvent]:
            raise ClusterException("Failed to list nodes: 403 Forbidden", status=403)
            yield NodeEvent(NodeEventType.SYNCED)

    controller = _controller(BrokenClusterClient(), runner, store)
    with pytest.raises(ClusterException, match="Forbidden"):
        await controller.run(asyncio.Event())
