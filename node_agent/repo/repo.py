"""Repository reader interface and URI resolution."""

from abc import ABC, abstractmethod
import logging

from node_agent.exceptions import AgentException, InputException

_LOGGER = logging.getLogger(__name__)

HTTP_SCHEMES = ("http://", "https://")
ZIP_SCHEME = "zip://"
OCI_SCHEME = "oci://"
FILE_SCHEME = "file://"


class RepositoryReader(ABC):
    """Read-only access to files in a component repository."""

    @abstractmethod
    async def read_file(self, path: str) -> bytes:
        """Return the contents of a file relative to the repository root.

        Raises:
            RepositoryFileNotFoundError: If the file does not exist.
            FetchException: If the file could not be fetched.
        """

    @abstractmethod
    async def cleanup(self) -> None:
        """Release any local resource held by the reader."""


async def open_repository(uri: str) -> RepositoryReader:
    """Open the first reachable repository from a comma separated list of URIs."""
    # Imported here since the implementations depend on this module
    from .http import HTTPRepository
    from .local import DirectoryRepository, ZipRepository
    from .oci import OCIRepository

    repos = [repo.strip() for repo in uri.split(",") if repo.strip()]
    if not repos:
        raise InputException("At least one repository URI must be defined")

    for repo in repos:
        reader: RepositoryReader
        try:
            if repo.startswith(HTTP_SCHEMES):
                reader = HTTPRepository(repo)
            elif repo.startswith(ZIP_SCHEME):
                reader = await ZipRepository.open(repo.removeprefix(ZIP_SCHEME))
            elif repo.startswith(OCI_SCHEME):
                reader = await OCIRepository.pull(repo.removeprefix(OCI_SCHEME))
            elif repo.startswith(FILE_SCHEME):
                reader = await DirectoryRepository.open(repo.removeprefix(FILE_SCHEME))
            else:
                _LOGGER.warning("Unsupported repository URI %s, trying next URI", repo)
                continue
        except AgentException as err:
            _LOGGER.info("Failed to open repository %s, trying next URI: %s", repo, err)
            continue
        _LOGGER.info("Using repository %s", repo)
        return reader

    raise InputException(f"No valid repository found in {repos}")
