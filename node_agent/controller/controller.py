"""Controller reconciling the node with its cluster Node object.

The controller watches the Node object of the agent and, for every change
and periodically:

- Upgrades the node when the upgrade annotation is set: the node metadata
  is fetched again, the lifecycle engine is run, and the annotation is
  removed once every component is installed.
- Reports the installed component versions, and the version of the agent
  itself, as annotations of the Node object.

Changes are collapsed in a work queue processed by a single worker, so at
most one upgrade runs at a time. Failures are retried with a rate limited
backoff.
"""

import asyncio
from collections.abc import Awaitable, Callable
import dataclasses
import logging

from ..config import AGENT_COMPONENT, AgentConfig
from ..exceptions import AgentException
from ..lifecycle import ComponentLifecycleEngine
from ..metadata import CredentialProvider, MetadataFetcher, fetch_node_metadata
from ..store import VersionStore
from .cluster import ClusterClient, EventType, Node, NodeEventType
from .queue import RateLimitingQueue, default_rate_limiter

__all__ = [
    "NodeController",
    "EngineRunner",
    "metadata_engine_runner",
]

_LOGGER = logging.getLogger(__name__)

UPGRADE_REASON = "NodeUpgrade"

EngineRunner = Callable[[asyncio.Event | None], Awaitable[None]]
"""Fetches the latest node metadata and runs the lifecycle engine with it."""


def metadata_engine_runner(
    credentials: CredentialProvider,
    fetcher: MetadataFetcher,
    engine: ComponentLifecycleEngine,
) -> EngineRunner:
    """Return an EngineRunner fetching fresh credentials and metadata on each run."""

    async def run(cancel: asyncio.Event | None) -> None:
        metadata = await fetch_node_metadata(credentials, fetcher)
        await engine.run(metadata, cancel)

    return run


class NodeController:
    """Watches and reconciles the Node object of the agent."""

    def __init__(
        self,
        cluster: ClusterClient,
        engine_runner: EngineRunner,
        store: VersionStore,
        node_name: str,
        agent_version: str,
        config: AgentConfig | None = None,
    ) -> None:
        """Initialize the NodeController."""
        self._cluster = cluster
        self._engine_runner = engine_runner
        self._store = store
        self._node_name = node_name
        self._agent_version = agent_version
        self._config = config or AgentConfig()
        queue_config = self._config.queue
        self._queue: RateLimitingQueue[str] = RateLimitingQueue(
            default_rate_limiter(
                queue_config.base_delay,
                queue_config.max_delay,
                queue_config.qps,
                queue_config.burst,
            )
        )
        self._synced = asyncio.Event()
        self._cancel: asyncio.Event | None = None

    @property
    def queue(self) -> RateLimitingQueue[str]:
        """Return the work queue of the controller."""
        return self._queue

    async def run(self, cancel: asyncio.Event) -> None:
        """Run the controller until cancelled.

        The worker only starts once the node was listed. On cancellation the
        queue is shut down and the item being processed runs to completion.
        """
        self._cancel = cancel
        _LOGGER.info("Starting controller")
        watch_task = asyncio.create_task(self._watch(), name="node-watch")
        cancel_task = asyncio.create_task(cancel.wait(), name="node-cancel")
        try:
            _LOGGER.info("Waiting for informer cache to sync")
            synced_task = asyncio.create_task(self._synced.wait())
            await asyncio.wait(
                {synced_task, cancel_task, watch_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
            synced_task.cancel()
            if watch_task.done():
                watch_task.result()
                raise AgentException("Failed to wait for caches to sync")
            if not self._synced.is_set():
                return

            worker = asyncio.create_task(self._run_worker(), name="node-worker")
            _LOGGER.info("Starting worker")
            await asyncio.wait(
                {cancel_task, watch_task}, return_when=asyncio.FIRST_COMPLETED
            )
            _LOGGER.info("Shutting down worker")
            self._queue.shut_down()
            await worker
            _LOGGER.info("Worker stopped")
            if watch_task.done():
                watch_task.result()
        finally:
            cancel_task.cancel()
            watch_task.cancel()
            await asyncio.gather(watch_task, cancel_task, return_exceptions=True)

    async def _watch(self) -> None:
        async for event in self._cluster.watch_node(self._node_name):
            if event.type == NodeEventType.SYNCED:
                self._synced.set()
                continue
            if event.node is not None:
                _LOGGER.debug("Node event %s", event.type)
                self._queue.add(event.node.name)

    async def _run_worker(self) -> None:
        while await self.process_next_work_item():
            pass

    async def process_next_work_item(self) -> bool:
        """Process one item of the queue, returning False on shutdown."""
        item, shutdown = await self._queue.get()
        if shutdown or item is None:
            return False
        try:
            await self.sync_handler()
        except Exception as err:
            _LOGGER.error("Sync error, requeuing: %s", err)
            self._queue.add_rate_limited(item)
        else:
            self._queue.forget(item)
        finally:
            self._queue.done(item)
        return True

    async def sync_handler(self) -> None:
        """Upgrade the node if requested, then report the installed versions."""
        try:
            await self.upgrade_node()
        except AgentException as err:
            raise AgentException(f"Failed to upgrade node {self._node_name}: {err}") from err
        try:
            await self.sync_versions_annotations()
        except AgentException as err:
            raise AgentException(f"Failed to sync versions annotations: {err}") from err

    async def upgrade_node(self) -> None:
        """Run the lifecycle engine when the upgrade annotation is set."""
        node = await self._cluster.get_node(self._node_name)
        annotation = self._config.upgrade_annotation
        if node.annotations.get(annotation) != self._config.upgrade_value:
            return

        _LOGGER.info("Upgrading node")
        await self._cluster.record_event(
            node, EventType.NORMAL, UPGRADE_REASON, "Node upgrading"
        )
        try:
            await self._engine_runner(self._cancel)
        except AgentException as err:
            await self._cluster.record_event(
                node,
                EventType.WARNING,
                UPGRADE_REASON,
                f"Failed to upgrade node: {err}",
            )
            raise

        node = await self._cluster.get_node(self._node_name)
        annotations = dict(node.annotations)
        annotations.pop(annotation, None)
        try:
            await self._cluster.update_node(dataclasses.replace(node, annotations=annotations))
        except AgentException as err:
            await self._cluster.record_event(
                node,
                EventType.WARNING,
                UPGRADE_REASON,
                f"Failed to remove annotation: {err}",
            )
            raise

        _LOGGER.info("Node upgraded")
        await self._cluster.record_event(
            node, EventType.NORMAL, UPGRADE_REASON, "Node upgraded"
        )

    def versions_annotations(
        self, node: Node, versions: dict[str, str]
    ) -> dict[str, str]:
        """Return the node annotations reporting exactly the given versions."""
        prefix = self._config.component_annotation_prefix
        annotations = {
            key: value
            for key, value in node.annotations.items()
            if not key.startswith(prefix)
        }
        annotations.update(
            {f"{prefix}{component}": version for component, version in versions.items()}
        )
        return annotations

    async def sync_versions_annotations(self) -> None:
        """Report the installed versions as annotations of the node."""
        versions = await self._store.list()
        versions[AGENT_COMPONENT] = self._agent_version
        node = await self._cluster.get_node(self._node_name)
        annotations = self.versions_annotations(node, versions)
        if annotations == node.annotations:
            return
        _LOGGER.debug("Updating versions annotations: %s", versions)
        await self._cluster.update_node(dataclasses.replace(node, annotations=annotations))
