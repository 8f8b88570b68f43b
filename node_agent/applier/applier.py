"""Resource applier interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from node_agent.manifest import ResourceGroup
from node_agent.metadata import NodeMetadata
from node_agent.repo import RepositoryReader


@dataclass
class ApplyContext:
    """Everything a resource may need besides its own definition."""

    reader: RepositoryReader
    """Reader for the component source files."""

    metadata: NodeMetadata
    """Metadata of the node, exposed to templates."""


class ResourceApplier(ABC):
    """Applies the resource groups of a component."""

    @abstractmethod
    async def apply(
        self,
        component: str,
        version: str,
        groups: list[ResourceGroup],
        context: ApplyContext,
    ) -> None:
        """Apply every group in order, stopping at the first failure.

        Args:
            component: The name of the component, also its source directory.
            version: The component version the resources belong to.
            groups: The install or uninstall groups of the recipe.
            context: The repository and node metadata.
        """
