"""Module for a version store persisted as a JSON file.

The file holds a single JSON object of component name to version:

    {
       "cni": "1.2.0",
       "kubelet": "1.30~2"
    }

The store assumes a single writer process. The file is replaced as a whole
so an interrupted write never leaves a partial file behind.
"""

import asyncio
import json
import logging
import os
from pathlib import Path
from typing import Any

import aiofiles
import aiofiles.os
from aiofiles.ospath import exists, isfile

from node_agent.exceptions import VersionStoreException

from .store import VersionStore

_LOGGER = logging.getLogger(__name__)

FILE_MODE = 0o644


def _validate(path: Path, versions: Any) -> dict[str, str]:
    if not isinstance(versions, dict):
        raise VersionStoreException(
            f"Invalid versions file {path}: expected a JSON object"
        )
    for name, version in versions.items():
        if not isinstance(version, str):
            raise VersionStoreException(
                f"Invalid versions file {path}: version of {name} is not a string"
            )
    return versions


class JsonFileVersionStore(VersionStore):
    """VersionStore backed by a JSON file on the node."""

    def __init__(self, path: Path) -> None:
        """Initialize the JsonFileVersionStore."""
        self._path = path

    @property
    def path(self) -> Path:
        """Return the path of the versions file."""
        return self._path

    async def _read(self) -> dict[str, str]:
        """Read the whole versions file, a missing file is an empty store."""
        if not await exists(self._path):
            return {}
        if not await isfile(self._path):
            raise VersionStoreException(f"Versions file {self._path} is not a file")
        try:
            async with aiofiles.open(self._path) as versions_file:
                content = await versions_file.read()
        except OSError as err:
            raise VersionStoreException(
                f"Failed to read versions file {self._path}: {err}"
            ) from err
        try:
            versions = json.loads(content)
        except json.JSONDecodeError as err:
            raise VersionStoreException(
                f"Failed to unmarshal versions file {self._path}: {err}"
            ) from err
        return _validate(self._path, versions)

    async def _write(self, versions: dict[str, str]) -> None:
        """Write the versions to a temporary file then move it in place."""
        content = json.dumps(versions)
        tmp_path = self._path.with_name(f".{self._path.name}.tmp")
        try:
            async with aiofiles.open(tmp_path, mode="w") as versions_file:
                await versions_file.write(content)
                await versions_file.flush()
                await asyncio.to_thread(os.fsync, versions_file.fileno())
            await asyncio.to_thread(os.chmod, tmp_path, FILE_MODE)
            await aiofiles.os.replace(tmp_path, self._path)
        except OSError as err:
            if await exists(tmp_path):
                await aiofiles.os.remove(tmp_path)
            raise VersionStoreException(
                f"Failed to write versions file {self._path}: {err}"
            ) from err

    async def get(self, name: str) -> str | None:
        """Return the installed version of a component, or None if not installed."""
        versions = await self._read()
        return versions.get(name)

    async def set(self, name: str, version: str) -> None:
        """Record the installed version of a component, keeping all other entries."""
        versions = await self._read()
        versions[name] = version
        _LOGGER.debug("Writing component %s version %s to %s", name, version, self._path)
        await self._write(versions)

    async def list(self) -> dict[str, str]:
        """Return all installed component versions."""
        return await self._read()
