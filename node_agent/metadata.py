"""Node credentials and metadata.

The node first obtains its credentials (the metadata endpoint and a secret
token), either from the instance user-data or by registering as an
external node, then fetches its metadata: cluster endpoint and CA, target
cluster version, repository location, installer tags and the values used
to render component templates.
"""

from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass, field
import json
import logging
import os
from pathlib import Path
import socket
from typing import Any, cast

import aiofiles
import aiohttp
from mashumaro import DataClassDictMixin
from mashumaro.config import BaseConfig
from mashumaro.exceptions import InvalidFieldValue, MissingField

from .config import DEFAULT_USERDATA_CACHE_FILE
from .exceptions import FetchException, InputException

__all__ = [
    "UserData",
    "NodeMetadata",
    "NodeTaint",
    "CredentialProvider",
    "MetadataFetcher",
    "InstanceCredentialProvider",
    "ExternalNodeCredentialProvider",
    "HTTPMetadataFetcher",
    "fetch_node_metadata",
]

_LOGGER = logging.getLogger(__name__)

USER_DATA_URL = "http://169.254.42.42/user_data/k8s"
DEFAULT_API_URL = "https://api.scaleway.com"
AUTH_HEADER = "X-Auth-Token"

# Ports that conflict with other services running on the node
# 179: calico-bird BGP
EXCLUDED_PORTS = {179}

_TIMEOUT = aiohttp.ClientTimeout(total=10)


@dataclass
class UserData(DataClassDictMixin):
    """Credentials used to fetch the node metadata."""

    metadata_url: str
    node_secret_key: str


@dataclass
class NodeTaint(DataClassDictMixin):
    """A taint registered on the node."""

    key: str
    effect: str
    value: str = ""


@dataclass
class NodeMetadata(DataClassDictMixin):
    """Metadata describing the node and the state it should converge to."""

    name: str
    cluster_url: str
    cluster_ca: str
    """Base64 encoded CA bundle of the cluster API server."""

    pool_version: str
    """The cluster version of the node pool, used to select the release."""

    repo_uri: str
    """Comma separated list of repository URIs."""

    id: str = ""
    credential_provider_config: str = ""
    kubelet_config: str = ""
    node_labels: dict[str, str] = field(default_factory=dict)
    node_taints: list[NodeTaint] = field(default_factory=list)
    provider_id: str = ""
    resolvconf_path: str = ""
    template_args: dict[str, str] = field(default_factory=dict)
    has_gpu: bool = False
    external_ip: str = ""
    installer_tags: list[str] = field(default_factory=list)

    token: str = field(default="", metadata={"serialize": "omit"})
    """Token from the node credentials, never part of the metadata document."""

    class Config(BaseConfig):
        omit_none = True

    def template_context(self) -> dict[str, Any]:
        """Return the metadata fields exposed to component templates."""
        return self.to_dict()


def _decode_json(content: bytes | str, source: str) -> dict[str, Any]:
    try:
        doc = json.loads(content)
    except json.JSONDecodeError as err:
        raise InputException(f"Failed to unmarshal {source}: {err}") from err
    if not isinstance(doc, dict):
        raise InputException(f"Invalid {source}: expected a JSON object")
    # Explicit nulls mean the field is unset
    return {key: value for key, value in doc.items() if value is not None}


def parse_user_data(content: bytes | str) -> UserData:
    """Parse the node credentials document."""
    doc = _decode_json(content, "user-data")
    try:
        return UserData.from_dict(doc)
    except (MissingField, InvalidFieldValue) as err:
        raise InputException(f"Invalid user-data: {err}") from err


def parse_node_metadata(content: bytes | str, token: str = "") -> NodeMetadata:
    """Parse the node metadata document."""
    doc = _decode_json(content, "node metadata")
    doc.pop("token", None)
    try:
        metadata = NodeMetadata.from_dict(doc)
    except (MissingField, InvalidFieldValue) as err:
        raise InputException(f"Invalid node metadata: {err}") from err
    metadata.token = token
    return metadata


class CredentialProvider(ABC):
    """Provides the credentials needed to fetch the node metadata."""

    @abstractmethod
    async def get_user_data(self) -> UserData:
        """Return the node credentials."""


class MetadataFetcher(ABC):
    """Fetches the node metadata using the node credentials."""

    @abstractmethod
    async def get_node_metadata(self, user_data: UserData) -> NodeMetadata:
        """Return the current node metadata."""


def find_privileged_port() -> int:
    """Return a free local port below 1024.

    The user-data endpoint only answers requests from privileged ports.
    """
    for port in range(1, 1024):
        if port in EXCLUDED_PORTS:
            continue
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind(("0.0.0.0", port))
            except OSError:
                continue
        return port
    raise FetchException("Failed to get a privileged port")


class InstanceCredentialProvider(CredentialProvider):
    """Reads the node credentials from the instance user-data endpoint."""

    def __init__(self, url: str = USER_DATA_URL) -> None:
        """Initialize the InstanceCredentialProvider."""
        self._url = url

    async def get_user_data(self) -> UserData:
        """Fetch the node credentials from the instance user-data."""
        port = await asyncio.to_thread(find_privileged_port)
        connector = aiohttp.TCPConnector(local_addr=("0.0.0.0", port), force_close=True)
        try:
            async with aiohttp.ClientSession(
                connector=connector, timeout=_TIMEOUT
            ) as session:
                async with session.get(self._url) as resp:
                    if resp.status != 200:
                        raise FetchException(
                            f"Failed to get instance user-data: {resp.status} {resp.reason}"
                        )
                    content = await resp.read()
        except (aiohttp.ClientError, TimeoutError) as err:
            raise FetchException(f"Failed to get instance user-data: {err}") from err
        return parse_user_data(content)


class ExternalNodeCredentialProvider(CredentialProvider):
    """Registers the node as an external node of a pool.

    The registration response is cached so the node only registers once.
    """

    def __init__(
        self,
        env: dict[str, str] | None = None,
        cache_file: Path = DEFAULT_USERDATA_CACHE_FILE,
    ) -> None:
        """Initialize the ExternalNodeCredentialProvider."""
        self._env = env if env is not None else dict(os.environ)
        self._cache_file = cache_file

    def _require_env(self, name: str) -> str:
        if not (value := self._env.get(name)):
            raise InputException(f"{name} env var must be set when using external node mode")
        return value

    async def _read_cache(self) -> bytes | None:
        try:
            async with aiofiles.open(self._cache_file, mode="rb") as cache:
                return cast(bytes, await cache.read())
        except FileNotFoundError:
            return None
        except OSError as err:
            raise InputException(f"Failed to read userdata cache: {err}") from err

    async def _write_cache(self, content: bytes) -> None:
        async with aiofiles.open(self._cache_file, mode="wb") as cache:
            await cache.write(content)
        await asyncio.to_thread(os.chmod, self._cache_file, 0o600)

    async def get_user_data(self) -> UserData:
        """Return cached credentials or register the node."""
        pool_id = self._require_env("POOL_ID")
        pool_region = self._require_env("POOL_REGION")
        secret_key = self._require_env("SCW_SECRET_KEY")
        api_url = self._env.get("SCW_API_URL") or DEFAULT_API_URL

        if (cached := await self._read_cache()) is not None:
            _LOGGER.debug("Using cached registration %s", self._cache_file)
            return parse_user_data(cached)

        url = f"{api_url.rstrip('/')}/k8s/v1/regions/{pool_region}/pools/{pool_id}/external-nodes/auth"
        _LOGGER.info("Registering external node in pool %s", pool_id)
        try:
            async with aiohttp.ClientSession(timeout=_TIMEOUT) as session:
                async with session.post(url, headers={AUTH_HEADER: secret_key}) as resp:
                    if resp.status != 200:
                        raise FetchException(
                            f"Failed to register external node: {resp.status} {resp.reason}"
                        )
                    content = await resp.read()
        except (aiohttp.ClientError, TimeoutError) as err:
            raise FetchException(f"Failed to register external node: {err}") from err

        user_data = parse_user_data(content)
        await self._write_cache(content)
        return user_data


class HTTPMetadataFetcher(MetadataFetcher):
    """Fetches the node metadata from the metadata endpoint."""

    async def get_node_metadata(self, user_data: UserData) -> NodeMetadata:
        """Fetch and decode the node metadata."""
        try:
            async with aiohttp.ClientSession(timeout=_TIMEOUT) as session:
                async with session.get(
                    user_data.metadata_url,
                    headers={AUTH_HEADER: user_data.node_secret_key},
                ) as resp:
                    if resp.status != 200:
                        raise FetchException(
                            f"Failed to get node metadata: {resp.status} {resp.reason}"
                        )
                    content = await resp.read()
        except (aiohttp.ClientError, TimeoutError) as err:
            raise FetchException(f"Failed to get node metadata: {err}") from err
        return parse_node_metadata(content, token=user_data.node_secret_key)


async def fetch_node_metadata(
    credentials: CredentialProvider, fetcher: MetadataFetcher
) -> NodeMetadata:
    """Acquire the node credentials then fetch the node metadata."""
    user_data = await credentials.get_user_data()
    return await fetcher.get_node_metadata(user_data)
