"""Release catalog resolution.

Selects the ordered list of components a node must converge to, from the
release manifest of the node's cluster version and the installer tags of
the node.
"""

from collections.abc import Iterable, Mapping
import logging

from .exceptions import ReleaseNotFoundError
from .manifest import RELEASES_FILE, Component, parse_releases
from .repo import RepositoryReader

__all__ = [
    "read_releases",
    "resolve_components",
]

_LOGGER = logging.getLogger(__name__)


async def read_releases(reader: RepositoryReader) -> dict[str, list[Component]]:
    """Read the release manifest at the root of the repository."""
    content = await reader.read_file(RELEASES_FILE)
    return parse_releases(content)


def resolve_components(
    releases: Mapping[str, list[Component]],
    cluster_version: str,
    tags: Iterable[str] | None = None,
) -> list[Component]:
    """Return the components of a release selected by the installer tags.

    An empty set of tags selects every component. Otherwise a component is
    selected when it shares at least one tag with the filter. Manifest order
    is preserved in both cases.
    """
    if (components := releases.get(cluster_version)) is None:
        raise ReleaseNotFoundError(cluster_version)
    tag_filter = set(tags or ())
    if not tag_filter:
        return list(components)
    selected = [
        component for component in components if tag_filter.intersection(component.tags)
    ]
    _LOGGER.debug(
        "Selected %d of %d components for tags %s",
        len(selected),
        len(components),
        sorted(tag_filter),
    )
    return selected
