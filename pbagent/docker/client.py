# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Container Control Client - Docker Engine API over the local Unix socket.

Each operation opens its own connection, issues its requests and returns a
ContainerResult. Transport failures and unexpected status codes become
failed results carrying a message; nothing is retried, callers decide
whether a failure aborts their pipeline or is only recorded.
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Dict

import aiofiles
import httpx
import structlog

from pbagent.exceptions import AgentError, ProtocolError, TransportError

logger = structlog.get_logger()

STREAM_CHUNK_SIZE = 64 * 1024

# Fields assigned by the runtime that a network create request must not carry
NETWORK_RUNTIME_FIELDS = ("Id", "Created", "Scope", "Containers", "IPAM")


@dataclass
class ContainerResult:
    """Outcome of one container runtime operation."""

    ok: bool
    message: str = ""
    data: Any = None

    def __bool__(self) -> bool:
        return self.ok


def _split_image(image: str) -> tuple:
    """Split `repo[:tag][@digest]` into (fromImage, tag)."""
    if "@" in image:
        return image, ""
    name, _, tag = image.rpartition(":")
    # A colon before the last slash belongs to a registry port
    if not name or "/" in tag:
        return image, "latest"
    return name, tag


class DockerClient:
    """
    Docker Engine API client.

    Args:
        socket_path: Unix socket of the container runtime
        read_timeout: Seconds to wait for a response, dumps can take minutes
        transport: Optional httpx transport replacing the socket (tests)
    """

    def __init__(
        self,
        socket_path: Path | str = "/var/run/docker.sock",
        read_timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.socket_path = str(socket_path)
        self.read_timeout = read_timeout
        self._transport = transport

    @classmethod
    def from_config(cls, config, transport: httpx.AsyncBaseTransport | None = None) -> "DockerClient":
        return cls(config.docker_socket, config.docker_read_timeout, transport)

    def _client(self) -> httpx.AsyncClient:
        transport = self._transport or httpx.AsyncHTTPTransport(uds=self.socket_path)
        return httpx.AsyncClient(
            transport=transport,
            base_url="http://docker",
            timeout=httpx.Timeout(30.0, read=self.read_timeout),
        )

    async def _call(
        self,
        client: httpx.AsyncClient,
        method: str,
        path: str,
        expected: tuple,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise TransportError(
                f"{method} {path} failed: {e}",
                details={"socket": self.socket_path},
            ) from e
        if response.status_code not in expected:
            raise ProtocolError(
                f"{method} {path} returned HTTP {response.status_code}",
                status_code=response.status_code,
                details={"body": response.text[:512]},
            )
        return response

    # ------------------------------------------------------------------
    # Exec
    # ------------------------------------------------------------------

    async def exec(self, container: str, command: str) -> ContainerResult:
        """
        Run a command inside a container and wait for it to finish.

        The command is split on whitespace; quoting is not supported, so
        arguments must not contain spaces.

        Returns:
            Success iff every call succeeded and the exit code is 0
        """
        argv = command.split()
        if not argv:
            return ContainerResult(False, "Empty command")

        try:
            async with self._client() as client:
                created = await self._call(
                    client,
                    "POST",
                    f"/containers/{container}/exec",
                    (201,),
                    json={
                        "AttachStdin": False,
                        "AttachStdout": False,
                        "AttachStderr": True,
                        "Tty": False,
                        "Cmd": argv,
                    },
                )
                exec_id = created.json()["Id"]

                started = await self._call(
                    client,
                    "POST",
                    f"/exec/{exec_id}/start",
                    (200,),
                    json={"Detach": False, "Tty": False},
                )

                inspected = await self._call(client, "GET", f"/exec/{exec_id}/json", (200,))
                exit_code = inspected.json().get("ExitCode")
        except (AgentError, KeyError, ValueError) as e:
            # Only the program name is logged, arguments may hold credentials
            logger.error("container_exec_failed", container=container, program=argv[0], error=str(e))
            return ContainerResult(False, str(e))

        if exit_code != 0:
            logger.error(
                "container_exec_nonzero_exit",
                container=container,
                program=argv[0],
                exit_code=exit_code,
            )
            return ContainerResult(
                False,
                f"{argv[0]} exited with code {exit_code}",
                data=started.content[-2048:],
            )

        logger.debug("container_exec_completed", container=container, program=argv[0])
        return ContainerResult(True, data=exit_code)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _lifecycle(self, container: str, action: str, expected: tuple, **kwargs: Any) -> ContainerResult:
        try:
            async with self._client() as client:
                response = await self._call(
                    client, "POST", f"/containers/{container}/{action}", expected, **kwargs
                )
        except AgentError as e:
            logger.error("container_lifecycle_failed", container=container, action=action, error=str(e))
            return ContainerResult(False, str(e))
        logger.info("container_lifecycle", container=container, action=action, status_code=response.status_code)
        return ContainerResult(True, data=response.status_code)

    async def start(self, container: str) -> ContainerResult:
        return await self._lifecycle(container, "start", (204,))

    async def stop(self, container: str) -> ContainerResult:
        # 304: already stopped
        return await self._lifecycle(container, "stop", (204, 304), params={"t": 0})

    async def restart(self, container: str) -> ContainerResult:
        return await self._lifecycle(container, "restart", (204,), params={"t": 0})

    # ------------------------------------------------------------------
    # File transfer
    # ------------------------------------------------------------------

    async def copy_from_container(self, container: str, src: str, dst: Path | str) -> ContainerResult:
        """
        Stream `src` out of a container into the tar file `dst`.
        """
        dst = Path(dst)
        size = 0
        try:
            async with self._client() as client:
                async with client.stream(
                    "GET", f"/containers/{container}/archive", params={"path": src}
                ) as response:
                    if response.status_code != 200:
                        await response.aread()
                        raise ProtocolError(
                            f"GET archive {src} returned HTTP {response.status_code}",
                            status_code=response.status_code,
                        )
                    async with aiofiles.open(dst, "wb") as f:
                        async for chunk in response.aiter_bytes(STREAM_CHUNK_SIZE):
                            await f.write(chunk)
                            size += len(chunk)
        except httpx.TransportError as e:
            logger.error("container_copy_from_failed", container=container, src=src, error=str(e))
            return ContainerResult(False, f"Copy from {container}:{src} failed: {e}")
        except (AgentError, OSError) as e:
            logger.error("container_copy_from_failed", container=container, src=src, error=str(e))
            return ContainerResult(False, str(e))

        logger.info("container_copy_from", container=container, src=src, dst=str(dst), size=size)
        return ContainerResult(True, data=size)

    async def copy_to_container(self, container: str, src: Path | str, dst: str) -> ContainerResult:
        """
        Stream the tar file `src` into a container, unpacked under `dst`.
        """
        src = Path(src)

        async def body() -> AsyncIterator[bytes]:
            async with aiofiles.open(src, "rb") as f:
                while chunk := await f.read(STREAM_CHUNK_SIZE):
                    yield chunk

        try:
            if not src.is_file():
                raise FileNotFoundError(f"No such archive: {src}")
            async with self._client() as client:
                await self._call(
                    client,
                    "PUT",
                    f"/containers/{container}/archive",
                    (200,),
                    params={"path": dst},
                    content=body(),
                    headers={"Content-Type": "application/x-tar"},
                )
        except (AgentError, OSError) as e:
            logger.error("container_copy_to_failed", container=container, dst=dst, error=str(e))
            return ContainerResult(False, str(e))

        logger.info("container_copy_to", container=container, src=str(src), dst=dst)
        return ContainerResult(True)

    # ------------------------------------------------------------------
    # Inspect and recreate
    # ------------------------------------------------------------------

    async def _inspect(self, path: str, name: str, dest_dir: Path, filename: str | None) -> ContainerResult:
        target = Path(dest_dir) / (filename or f"{name}.json")
        try:
            async with self._client() as client:
                response = await self._call(client, "GET", path, (200,))
            async with aiofiles.open(target, "wb") as f:
                await f.write(response.content)
        except (AgentError, OSError) as e:
            logger.error("inspect_failed", object=name, error=str(e))
            return ContainerResult(False, str(e))
        logger.info("inspect_saved", object=name, path=str(target))
        return ContainerResult(True, data=target)

    async def inspect_container(
        self, container: str, dest_dir: Path | str, filename: str | None = None
    ) -> ContainerResult:
        """Save the container inspect document to `<dest_dir>/<container>.json`."""
        return await self._inspect(f"/containers/{container}/json", container, Path(dest_dir), filename)

    async def inspect_network(
        self, network: str, dest_dir: Path | str, filename: str | None = None
    ) -> ContainerResult:
        """Save the network inspect document to `<dest_dir>/<network>.json`."""
        return await self._inspect(f"/networks/{network}", network, Path(dest_dir), filename)

    async def pull_image(self, image: str) -> ContainerResult:
        from_image, tag = _split_image(image)
        params = {"fromImage": from_image}
        if tag:
            params["tag"] = tag
        try:
            async with self._client() as client:
                # Pull progress is streamed; the call returns once it ends
                await self._call(client, "POST", "/images/create", (200,), params=params)
        except AgentError as e:
            logger.error("image_pull_failed", image=image, error=str(e))
            return ContainerResult(False, str(e))
        logger.info("image_pulled", image=image)
        return ContainerResult(True)

    async def create_container_from_inspect(
        self, inspect_path: Path | str, network_id: str | None = None
    ) -> ContainerResult:
        """
        Recreate a container from a saved inspect document.

        The image is pulled first. When `network_id` is given every endpoint
        is rewired onto that network.

        Returns:
            Result whose data is the new container id
        """
        try:
            async with aiofiles.open(inspect_path, "r") as f:
                inspect = json.loads(await f.read())
        except (OSError, ValueError) as e:
            return ContainerResult(False, f"Can't read {inspect_path}: {e}")

        config: Dict[str, Any] = dict(inspect.get("Config") or {})
        image = config.get("Image")
        name = (inspect.get("Name") or "").lstrip("/")
        if not image or not name:
            return ContainerResult(False, f"Inspect document {inspect_path} has no image or name")

        pulled = await self.pull_image(image)
        if not pulled:
            return pulled

        endpoints = dict((inspect.get("NetworkSettings") or {}).get("Networks") or {})
        if network_id:
            for endpoint in endpoints.values():
                endpoint["NetworkID"] = network_id

        body = {
            **config,
            "HostConfig": inspect.get("HostConfig") or {},
            "NetworkingConfig": {"EndpointsConfig": endpoints},
        }

        try:
            async with self._client() as client:
                response = await self._call(
                    client, "POST", "/containers/create", (201,), params={"name": name}, json=body
                )
            container_id = response.json()["Id"]
        except (AgentError, KeyError, ValueError) as e:
            logger.error("container_create_failed", container=name, error=str(e))
            return ContainerResult(False, str(e))

        logger.info("container_created", container=name, container_id=container_id)
        return ContainerResult(True, data=container_id)

    async def create_network_from_inspect(self, inspect_path: Path | str) -> ContainerResult:
        """
        Recreate a network from a saved inspect document.

        Returns:
            Result whose data is the new network id
        """
        try:
            async with aiofiles.open(inspect_path, "r") as f:
                inspect = json.loads(await f.read())
        except (OSError, ValueError) as e:
            return ContainerResult(False, f"Can't read {inspect_path}: {e}")

        body = {k: v for k, v in inspect.items() if k not in NETWORK_RUNTIME_FIELDS}

        try:
            async with self._client() as client:
                response = await self._call(client, "POST", "/networks/create", (201,), json=body)
            network_id = response.json()["Id"]
        except (AgentError, KeyError, ValueError) as e:
            logger.error("network_create_failed", network=body.get("Name"), error=str(e))
            return ContainerResult(False, str(e))

        logger.info("network_created", network=body.get("Name"), network_id=network_id)
        return ContainerResult(True, data=network_id)
