"""Repository pulled from an OCI registry."""

import asyncio
import hashlib
import logging
from pathlib import Path
from shutil import rmtree
import tempfile

from oras.client import OrasClient
from slugify import slugify

from node_agent.exceptions import FetchException

from .local import DirectoryRepository

_LOGGER = logging.getLogger(__name__)

CACHE_DIR_NAME = "node-agent-cache"


def cache_path(reference: str, cache_dir: Path | None = None) -> Path:
    """Return the local directory used for an OCI reference.

    e.g. /tmp/node-agent-cache/k8s-components/ab1234567890abcd
    """
    base = cache_dir or Path(tempfile.gettempdir()) / CACHE_DIR_NAME
    repository = reference.split("@", 1)[0].rsplit(":", 1)[0]
    slug = slugify(repository.split("/")[-1], max_length=50, lowercase=True, separator="-")
    hash_str = hashlib.sha256(reference.encode("utf-8")).hexdigest()[:16]
    return base / (slug or "repository") / hash_str


class OCIRepository(DirectoryRepository):
    """Reads repository files from a pulled OCI artifact."""

    @classmethod
    async def pull(
        cls, reference: str, cache_dir: Path | None = None
    ) -> "OCIRepository":
        """Pull the OCI artifact to a local cache directory."""
        path = cache_path(reference, cache_dir)
        path.mkdir(parents=True, exist_ok=True)
        _LOGGER.info("Pulling OCI repository %s", reference)
        client = OrasClient()
        try:
            res = await asyncio.to_thread(client.pull, target=reference, outdir=str(path))
        except Exception as err:
            await asyncio.to_thread(rmtree, path, True)
            raise FetchException(f"Failed to pull OCI repository {reference}: {err}") from err
        _LOGGER.debug("Downloaded resources: %s", res)
        return cls(path)

    async def cleanup(self) -> None:
        """Remove the pulled artifact."""
        _LOGGER.info("Cleaning up pulled repository: %s", self.root)
        await asyncio.to_thread(rmtree, self.root, True)
