"""Tests for node credentials and metadata."""

from collections.abc import AsyncGenerator
import json
import os
from pathlib import Path
import stat
from typing import Any

from aiohttp import web
from aiohttp.test_utils import TestServer
import pytest

from node_agent.exceptions import FetchException, InputException
from node_agent.metadata import (
    ExternalNodeCredentialProvider,
    HTTPMetadataFetcher,
    NodeTaint,
    UserData,
    fetch_node_metadata,
    parse_node_metadata,
    parse_user_data,
)

SECRET_KEY = "11111111-2222-3333-4444-555555555555"
NODE_SECRET = "node-secret"

NODE_METADATA: dict[str, Any] = {
    "id": "node-id",
    "name": "scw-pool-default-1",
    "cluster_url": "https://cluster.example.com:6443",
    "cluster_ca": "Q0EK",
    "pool_version": "1.30.2",
    "repo_uri": "https://repo.example.com/components",
    "node_labels": {"k8s.scaleway.com/pool-name": "default"},
    "node_taints": [{"key": "dedicated", "effect": "NoSchedule", "value": "gpu"}],
    "template_args": {"max_pods": "110"},
    "has_gpu": True,
    "installer_tags": ["kapsule"],
    "external_ip": None,
    "unknown_field": "ignored",
}


@pytest.fixture(name="requests")
def requests_fixture() -> list[dict[str, str]]:
    """Fixture recording the requests received by the server."""
    return []


@pytest.fixture(name="server")
async def server_fixture(
    requests: list[dict[str, str]],
) -> AsyncGenerator[TestServer, None]:
    """Fixture for the registration and metadata endpoints."""

    async def register(request: web.Request) -> web.Response:
        requests.append({"path": request.path, **request.headers})
        if request.headers.get("X-Auth-Token") != SECRET_KEY:
            raise web.HTTPForbidden()
        return web.json_response(
            {
                "metadata_url": str(request.url.with_path("/node-metadata")),
                "node_secret_key": NODE_SECRET,
            }
        )

    async def node_metadata(request: web.Request) -> web.Response:
        requests.append({"path": request.path, **request.headers})
        if request.headers.get("X-Auth-Token") != NODE_SECRET:
            raise web.HTTPForbidden()
        return web.json_response(NODE_METADATA)

    app = web.Application()
    app.router.add_post(
        "/k8s/v1/regions/fr-par/pools/pool-id/external-nodes/auth", register
    )
    app.router.add_get("/node-metadata", node_metadata)
    async with TestServer(app) as server:
        yield server


def test_parse_user_data() -> None:
    """Test parsing the node credentials."""
    user_data = parse_user_data(
        b'{"metadata_url": "https://metadata.example.com", "node_secret_key": "key"}'
    )
    assert user_data == UserData(
        metadata_url="https://metadata.example.com", node_secret_key="key"
    )


@pytest.mark.parametrize(
    "content",
    [b"", b"[]", b'{"metadata_url": "https://metadata.example.com"}'],
)
def test_parse_user_data_invalid(content: bytes) -> None:
    """Test malformed node credentials."""
    with pytest.raises(InputException):
        parse_user_data(content)


def test_parse_node_metadata() -> None:
    """Test parsing the node metadata."""
    metadata = parse_node_metadata(json.dumps(NODE_METADATA), token="token")
    assert metadata.name == "scw-pool-default-1"
    assert metadata.pool_version == "1.30.2"
    assert metadata.node_taints == [
        NodeTaint(key="dedicated", effect="NoSchedule", value="gpu")
    ]
    assert metadata.has_gpu
    assert metadata.installer_tags == ["kapsule"]
    assert metadata.external_ip == ""
    assert metadata.token == "token"

    context = metadata.template_context()
    assert context["template_args"] == {"max_pods": "110"}
    assert "token" not in context


def test_parse_node_metadata_ignores_token() -> None:
    """Test the token always comes from the credentials."""
    metadata = parse_node_metadata(json.dumps({**NODE_METADATA, "token": "other"}))
    assert metadata.token == ""


def test_parse_node_metadata_missing_field() -> None:
    """Test node metadata without a cluster version."""
    content = {key: value for key, value in NODE_METADATA.items() if key != "pool_version"}
    with pytest.raises(InputException, match="Invalid node metadata"):
        parse_node_metadata(json.dumps(content))


async def test_external_node_registration(
    server: TestServer, requests: list[dict[str, str]], tmp_path: Path
) -> None:
    """Test registering an external node, then reusing the cached registration."""
    cache_file = tmp_path / "userdata"
    provider = ExternalNodeCredentialProvider(
        env={
            "POOL_ID": "pool-id",
            "POOL_REGION": "fr-par",
            "SCW_SECRET_KEY": SECRET_KEY,
            "SCW_API_URL": str(server.make_url("/")),
        },
        cache_file=cache_file,
    )

    user_data = await provider.get_user_data()
    assert user_data.node_secret_key == NODE_SECRET
    assert stat.S_IMODE(os.stat(cache_file).st_mode) == 0o600

    assert await provider.get_user_data() == user_data
    assert len(requests) == 1

    metadata = await fetch_node_metadata(provider, HTTPMetadataFetcher())
    assert metadata.name == "scw-pool-default-1"
    assert metadata.token == NODE_SECRET
    assert [r["path"] for r in requests] == [
        "/k8s/v1/regions/fr-par/pools/pool-id/external-nodes/auth",
        "/node-metadata",
    ]


async def test_external_node_registration_refused(
    server: TestServer, tmp_path: Path
) -> None:
    """Test a registration refused by the API is not cached."""
    cache_file = tmp_path / "userdata"
    provider = ExternalNodeCredentialProvider(
        env={
            "POOL_ID": "pool-id",
            "POOL_REGION": "fr-par",
            "SCW_SECRET_KEY": "wrong",
            "SCW_API_URL": str(server.make_url("/")),
        },
        cache_file=cache_file,
    )
    with pytest.raises(FetchException, match="403"):
        await provider.get_user_data()
    assert not cache_file.exists()


@pytest.mark.parametrize("missing", ["POOL_ID", "POOL_REGION", "SCW_SECRET_KEY"])
async def test_external_node_missing_env(missing: str, tmp_path: Path) -> None:
    """Test the environment variables required to register."""
    env = {"POOL_ID": "pool-id", "POOL_REGION": "fr-par", "SCW_SECRET_KEY": SECRET_KEY}
    del env[missing]
    provider = ExternalNodeCredentialProvider(env=env, cache_file=tmp_path / "userdata")
    with pytest.raises(InputException, match=missing):
        await provider.get_user_data()


async def test_metadata_fetcher_refused(server: TestServer) -> None:
    """Test fetching the metadata with a wrong secret."""
    user_data = UserData(
        metadata_url=str(server.make_url("/node-metadata")), node_secret_key="wrong"
    )
    with pytest.raises(FetchException, match="403"):
        await HTTPMetadataFetcher().get_node_metadata(user_data)
