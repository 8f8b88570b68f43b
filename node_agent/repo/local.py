"""Repositories read from the local filesystem."""

import asyncio
import logging
import os
from pathlib import Path, PurePosixPath
import zipfile

import aiofiles
from aiofiles.ospath import isdir, isfile

from node_agent.exceptions import InputException, RepositoryFileNotFoundError

from .repo import RepositoryReader

_LOGGER = logging.getLogger(__name__)


def _relative_path(path: str) -> str:
    """Normalize a repository path, refusing paths escaping the root."""
    parts = PurePosixPath(path.lstrip("/")).parts
    if ".." in parts:
        raise InputException(f"Invalid repository path {path}")
    return str(PurePosixPath(*parts)) if parts else ""


class DirectoryRepository(RepositoryReader):
    """Reads repository files from a local directory."""

    def __init__(self, root: Path) -> None:
        """Initialize the DirectoryRepository."""
        self._root = root

    @property
    def root(self) -> Path:
        """Return the root directory of the repository."""
        return self._root

    @classmethod
    async def open(cls, path: str) -> "DirectoryRepository":
        """Open a repository from an existing directory."""
        root = Path(path)
        if not await isdir(root):
            raise InputException(f"Repository directory {root} does not exist")
        return cls(root)

    async def read_file(self, path: str) -> bytes:
        """Read a file from the repository directory."""
        file_path = self._root / _relative_path(path)
        if not await isfile(file_path):
            raise RepositoryFileNotFoundError(path)
        async with aiofiles.open(file_path, mode="rb") as repo_file:
            return await repo_file.read()

    async def cleanup(self) -> None:
        """Nothing to release for a plain directory."""


class ZipRepository(RepositoryReader):
    """Reads repository files from a local zip archive.

    The archive is only needed for a single run, so cleanup removes it.
    """

    def __init__(self, archive: zipfile.ZipFile, path: Path) -> None:
        """Initialize the ZipRepository."""
        self._archive = archive
        self._path = path

    @classmethod
    async def open(cls, path: str) -> "ZipRepository":
        """Open a zip archive."""
        archive_path = Path(path)
        try:
            archive = await asyncio.to_thread(zipfile.ZipFile, archive_path)
        except (OSError, zipfile.BadZipFile) as err:
            raise InputException(f"Failed to open zip file {archive_path}: {err}") from err
        return cls(archive, archive_path)

    async def read_file(self, path: str) -> bytes:
        """Read a file from the archive."""
        name = _relative_path(path)
        try:
            return await asyncio.to_thread(self._archive.read, name)
        except KeyError as err:
            raise RepositoryFileNotFoundError(path) from err

    async def cleanup(self) -> None:
        """Close and remove the archive."""
        self._archive.close()
        try:
            await asyncio.to_thread(os.remove, self._path)
        except FileNotFoundError:
            return
        _LOGGER.info("Removed repository archive %s", self._path)
