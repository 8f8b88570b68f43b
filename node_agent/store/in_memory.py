"""Module for in memory version store."""

import logging

from .store import VersionStore

_LOGGER = logging.getLogger(__name__)


class InMemoryVersionStore(VersionStore):
    """In-memory implementation of the VersionStore interface."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        """Initialize the InMemoryVersionStore."""
        self._versions: dict[str, str] = dict(initial or {})

    async def get(self, name: str) -> str | None:
        """Return the installed version of a component, or None if not installed."""
        return self._versions.get(name)

    async def set(self, name: str, version: str) -> None:
        """Record the installed version of a component."""
        _LOGGER.debug("Setting component %s version to %s", name, version)
        self._versions[name] = version

    async def list(self) -> dict[str, str]:
        """Return a copy of all installed component versions."""
        return dict(self._versions)
