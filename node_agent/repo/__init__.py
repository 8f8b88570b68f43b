"""Readers for the repository holding releases and component recipes.

A repository is addressed by a comma separated list of URIs that are tried
in order until one can be opened:

    - `http://` and `https://`: files are fetched from a web server
    - `zip://<path>`: a local archive, removed on cleanup
    - `oci://<reference>`: an OCI artifact pulled to a local cache, removed on cleanup
    - `file://<path>`: a local directory
"""

from .repo import RepositoryReader, open_repository
from .http import HTTPRepository
from .local import DirectoryRepository, ZipRepository
from .oci import OCIRepository

__all__ = [
    "RepositoryReader",
    "open_repository",
    "HTTPRepository",
    "DirectoryRepository",
    "ZipRepository",
    "OCIRepository",
]
