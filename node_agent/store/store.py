"""Store module for holding installed component versions."""

from abc import ABC, abstractmethod


class VersionStore(ABC):
    """Abstract base class for the record of installed component versions."""

    @abstractmethod
    async def get(self, name: str) -> str | None:
        """Return the installed version of a component, or None if not installed."""

    @abstractmethod
    async def set(self, name: str, version: str) -> None:
        """Record the installed version of a component, keeping all other entries."""

    @abstractmethod
    async def list(self) -> dict[str, str]:
        """Return a copy of all installed component versions."""
