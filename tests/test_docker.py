# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Container control client tests against a mocked Engine API.
"""

import json
from pathlib import Path

import httpx
import pytest

from pbagent.docker import DockerClient
from pbagent.docker.client import _split_image


def engine(routes: dict, seen: list):
    """MockTransport handler answering (method, path) from `routes`."""

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        key = (request.method, request.url.path)
        if key not in routes:
            return httpx.Response(404, json={"message": "no such route"})
        response = routes[key]
        return response(request) if callable(response) else response

    return handler


def client_for(routes: dict, seen: list) -> DockerClient:
    return DockerClient(transport=httpx.MockTransport(engine(routes, seen)))


# ============================================================================
# Test 1: Exec
# ============================================================================

@pytest.mark.asyncio
async def test_exec_success_and_argv():
    seen = []
    routes = {
        ("POST", "/containers/mongodb/exec"): httpx.Response(201, json={"Id": "e1"}),
        ("POST", "/exec/e1/start"): httpx.Response(200, content=b""),
        ("GET", "/exec/e1/json"): httpx.Response(200, json={"ExitCode": 0, "Running": False}),
    }
    docker = client_for(routes, seen)

    result = await docker.exec("mongodb", "rm  -f /data/db/dump.archive")

    assert result
    assert json.loads(seen[0].content)["Cmd"] == ["rm", "-f", "/data/db/dump.archive"]


@pytest.mark.asyncio
async def test_exec_nonzero_exit_fails():
    seen = []
    routes = {
        ("POST", "/containers/mongodb/exec"): httpx.Response(201, json={"Id": "e1"}),
        ("POST", "/exec/e1/start"): httpx.Response(200, content=b"auth failed"),
        ("GET", "/exec/e1/json"): httpx.Response(200, json={"ExitCode": 1}),
    }
    result = await client_for(routes, seen).exec("mongodb", "mongodump -u x -p y")

    assert not result
    assert result.message == "mongodump exited with code 1"


@pytest.mark.asyncio
async def test_exec_missing_container_fails():
    result = await client_for({}, []).exec("absent", "true")
    assert not result
    assert "404" in result.message


# ============================================================================
# Test 2: Lifecycle
# ============================================================================

@pytest.mark.asyncio
async def test_stop_accepts_already_stopped():
    seen = []
    routes = {("POST", "/containers/thinger/stop"): httpx.Response(304)}

    assert await client_for(routes, seen).stop("thinger")
    assert seen[0].url.params["t"] == "0"


@pytest.mark.asyncio
async def test_restart_requires_no_content():
    routes = {("POST", "/containers/thinger/restart"): httpx.Response(500)}
    assert not await client_for(routes, []).restart("thinger")


@pytest.mark.asyncio
async def test_transport_failure_is_a_failed_result():
    def broken(request):
        raise httpx.ConnectError("socket missing", request=request)

    docker = DockerClient(transport=httpx.MockTransport(broken))
    result = await docker.start("thinger")

    assert not result
    assert "socket missing" in result.message


# ============================================================================
# Test 3: Inspect and recreate
# ============================================================================

@pytest.mark.asyncio
async def test_network_create_strips_runtime_fields(temp_dir: Path):
    seen = []
    saved = {
        "Name": "alice",
        "Id": "old-id",
        "Created": "2024-01-01T00:00:00Z",
        "Scope": "local",
        "Driver": "bridge",
        "Containers": {},
        "IPAM": {"Driver": "default"},
        "Labels": {"owner": "alice"},
    }
    routes = {
        ("GET", "/networks/alice"): httpx.Response(200, json=saved),
        ("POST", "/networks/create"): httpx.Response(201, json={"Id": "new-net"}),
    }
    docker = client_for(routes, seen)

    inspected = await docker.inspect_network("alice", temp_dir, "alice-network.json")
    assert inspected
    assert json.loads((temp_dir / "alice-network.json").read_text()) == saved

    created = await docker.create_network_from_inspect(temp_dir / "alice-network.json")

    assert created.data == "new-net"
    assert json.loads(seen[-1].content) == {
        "Name": "alice",
        "Driver": "bridge",
        "Labels": {"owner": "alice"},
    }


@pytest.mark.asyncio
async def test_container_create_rewires_network(temp_dir: Path):
    seen = []
    inspect = {
        "Name": "/alice-plugin",
        "Config": {"Image": "registry.local:5000/plugin:1.2", "Env": ["A=1"]},
        "HostConfig": {"RestartPolicy": {"Name": "always"}},
        "NetworkSettings": {"Networks": {"alice": {"NetworkID": "old-net", "Aliases": ["p"]}}},
    }
    path = temp_dir / "alice-plugin.json"
    path.write_text(json.dumps(inspect))

    routes = {
        ("POST", "/images/create"): httpx.Response(200, content=b'{"status":"done"}'),
        ("POST", "/containers/create"): httpx.Response(201, json={"Id": "c-new"}),
    }
    docker = client_for(routes, seen)

    created = await docker.create_container_from_inspect(path, "new-net")

    assert created.data == "c-new"
    pull, create = seen
    assert pull.url.params["fromImage"] == "registry.local:5000/plugin"
    assert pull.url.params["tag"] == "1.2"
    assert create.url.params["name"] == "alice-plugin"

    body = json.loads(create.content)
    assert body["Image"] == "registry.local:5000/plugin:1.2"
    assert body["HostConfig"] == {"RestartPolicy": {"Name": "always"}}
    assert body["NetworkingConfig"]["EndpointsConfig"]["alice"]["NetworkID"] == "new-net"


@pytest.mark.asyncio
async def test_container_create_fails_when_pull_fails(temp_dir: Path):
    path = temp_dir / "p.json"
    path.write_text(json.dumps({"Name": "/p", "Config": {"Image": "plugin"}}))
    seen = []
    routes = {("POST", "/images/create"): httpx.Response(500)}

    assert not await client_for(routes, seen).create_container_from_inspect(path)
    assert len(seen) == 1


def test_split_image():
    assert _split_image("mongo:7") == ("mongo", "7")
    assert _split_image("mongo") == ("mongo", "latest")
    assert _split_image("registry.local:5000/plugin") == ("registry.local:5000/plugin", "latest")
    assert _split_image("plugin@sha256:abc") == ("plugin@sha256:abc", "")


# ============================================================================
# Test 4: File transfer
# ============================================================================

@pytest.mark.asyncio
async def test_copy_round_trip(temp_dir: Path):
    stored = {}

    def put_archive(request):
        stored["body"] = request.content
        return httpx.Response(200)

    routes = {
        ("PUT", "/containers/mongodb/archive"): put_archive,
        ("GET", "/containers/mongodb/archive"): lambda request: httpx.Response(
            200, content=stored["body"]
        ),
    }
    docker = client_for(routes, [])
    src = temp_dir / "dump.tar"
    src.write_bytes(b"x" * 200_000)

    assert await docker.copy_to_container("mongodb", src, "/")
    copied = await docker.copy_from_container("mongodb", "/dump", temp_dir / "back.tar")

    assert copied.data == 200_000
    assert (temp_dir / "back.tar").read_bytes() == src.read_bytes()


@pytest.mark.asyncio
async def test_copy_to_missing_file(temp_dir: Path):
    assert not await client_for({}, []).copy_to_container("mongodb", temp_dir / "no.tar", "/")
