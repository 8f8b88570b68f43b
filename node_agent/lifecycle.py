"""Component lifecycle engine.

The engine converges the components installed on the node to the release
of the node's cluster version:

    1. The release components are resolved for the cluster version and
       the installer tags of the node.
    2. Components whose installed version differs from the target are
       uninstalled, in reverse release order, using the recipe of the
       installed version.
    3. Components whose installed version differs from the target are
       installed, in release order, using the recipe of the target
       version. The new version is recorded once all resources of the
       component were applied.

Any failure aborts the run. Since versions are only recorded after a
successful install, running the engine again resumes where it stopped,
and running it with an unchanged release applies nothing.

Cancellation is checked between components. Once a component has started,
all of its resources are applied before the run can stop.
"""

import asyncio
from collections.abc import Awaitable, Callable
import logging

from .applier import ApplyContext, ResourceApplier
from .context import trace_context
from .exceptions import (
    AgentException,
    CancelledRunError,
    ComponentFailedError,
    RecipeNotFoundError,
)
from .manifest import RECIPE_FILE, Component, ComponentSections, parse_recipe
from .metadata import NodeMetadata
from .release import read_releases, resolve_components
from .repo import RepositoryReader, open_repository
from .store import VersionStore
from .versions import expand_version, trim_version

__all__ = [
    "ComponentLifecycleEngine",
    "load_recipe",
]

_LOGGER = logging.getLogger(__name__)

RepositoryOpener = Callable[[str], Awaitable[RepositoryReader]]


async def load_recipe(
    reader: RepositoryReader, component: str, version: str
) -> ComponentSections:
    """Return the recipe block of a component for the base of the version."""
    content = await reader.read_file(f"{component}/{RECIPE_FILE}")
    recipe = parse_recipe(content, component)
    base_version = trim_version(version)
    if (sections := recipe.get(base_version)) is None:
        raise RecipeNotFoundError(component, base_version)
    return sections


def _check_cancelled(cancel: asyncio.Event | None) -> None:
    if cancel is not None and cancel.is_set():
        raise CancelledRunError("Component processing cancelled")


class ComponentLifecycleEngine:
    """Transitions the node from its installed components to a release."""

    def __init__(
        self,
        store: VersionStore,
        applier: ResourceApplier,
        opener: RepositoryOpener = open_repository,
    ) -> None:
        """Initialize the ComponentLifecycleEngine.

        Args:
            store: The record of installed component versions.
            applier: Performs the side effects of the recipes.
            opener: Opens the repository from the node repository URI.
        """
        self._store = store
        self._applier = applier
        self._opener = opener

    async def run(
        self, metadata: NodeMetadata, cancel: asyncio.Event | None = None
    ) -> None:
        """Open the node repository and process the components.

        The repository is always cleaned up, also when processing fails.
        """
        _LOGGER.info("Opening repositories %s", metadata.repo_uri)
        reader = await self._opener(metadata.repo_uri)
        try:
            await self.process(metadata, reader, cancel)
        finally:
            await reader.cleanup()

    async def process(
        self,
        metadata: NodeMetadata,
        reader: RepositoryReader,
        cancel: asyncio.Event | None = None,
    ) -> None:
        """Uninstall then install the release components."""
        with trace_context(f"Release {metadata.pool_version}"):
            releases = await read_releases(reader)
            components = resolve_components(
                releases, metadata.pool_version, metadata.installer_tags
            )
            context = ApplyContext(reader=reader, metadata=metadata)
            await self.uninstall_components(components, context, cancel)
            await self.install_components(components, context, cancel)

    async def uninstall_components(
        self,
        components: list[Component],
        context: ApplyContext,
        cancel: asyncio.Event | None = None,
    ) -> None:
        """Uninstall the changed components, in reverse order.

        The installed version recipe is used. The version store is left
        untouched, the install pass records the new version.
        """
        pool_version = context.metadata.pool_version
        for component in reversed(components):
            _check_cancelled(cancel)
            installed_version = await self._store.get(component.name)
            expected_version = expand_version(component.version, pool_version)
            if not installed_version or installed_version == expected_version:
                continue

            with trace_context(f"Uninstall {component.name}"):
                _LOGGER.info(
                    "Uninstall component %s version %s",
                    component.name,
                    installed_version,
                )
                try:
                    sections = await load_recipe(
                        context.reader, component.name, installed_version
                    )
                    await self._applier.apply(
                        component.name, installed_version, sections.uninstall, context
                    )
                except AgentException as err:
                    raise ComponentFailedError(
                        component.name, installed_version, "uninstall", str(err)
                    ) from err

    async def install_components(
        self,
        components: list[Component],
        context: ApplyContext,
        cancel: asyncio.Event | None = None,
    ) -> None:
        """Install the changed components, in order, recording their version."""
        pool_version = context.metadata.pool_version
        for component in components:
            _check_cancelled(cancel)
            installed_version = await self._store.get(component.name)
            expected_version = expand_version(component.version, pool_version)
            if installed_version == expected_version:
                _LOGGER.info(
                    "Component already installed %s version %s",
                    component.name,
                    expected_version,
                )
                continue

            with trace_context(f"Install {component.name}"):
                _LOGGER.info(
                    "Install component %s version %s", component.name, expected_version
                )
                try:
                    sections = await load_recipe(
                        context.reader, component.name, expected_version
                    )
                    await self._applier.apply(
                        component.name, expected_version, sections.install, context
                    )
                    await self._store.set(component.name, expected_version)
                except AgentException as err:
                    raise ComponentFailedError(
                        component.name, expected_version, "install", str(err)
                    ) from err
