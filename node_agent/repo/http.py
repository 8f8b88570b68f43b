"""Repository served over http(s)."""

import logging

import aiohttp

from node_agent.exceptions import FetchException, RepositoryFileNotFoundError

from .repo import RepositoryReader

_LOGGER = logging.getLogger(__name__)

_TIMEOUT = aiohttp.ClientTimeout(total=10)


class HTTPRepository(RepositoryReader):
    """Reads repository files relative to a base URL."""

    def __init__(self, base_url: str) -> None:
        """Initialize the HTTPRepository."""
        self._base_url = base_url.rstrip("/")
        self._session: aiohttp.ClientSession | None = None

    @property
    def base_url(self) -> str:
        """Return the base URL of the repository."""
        return self._base_url

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=_TIMEOUT)
        return self._session

    async def read_file(self, path: str) -> bytes:
        """Fetch a file from the repository."""
        url = f"{self._base_url}/{path.lstrip('/')}"
        _LOGGER.debug("Fetching %s", url)
        try:
            async with self._get_session().get(url) as resp:
                if resp.status != 200:
                    _LOGGER.debug("Fetching %s returned status %s", url, resp.status)
                    raise RepositoryFileNotFoundError(path)
                return await resp.read()
        except (aiohttp.ClientError, TimeoutError) as err:
            raise FetchException(f"Failed to fetch {url}: {err}") from err

    async def cleanup(self) -> None:
        """Close the http session."""
        if self._session is not None:
            await self._session.close()
            self._session = None
