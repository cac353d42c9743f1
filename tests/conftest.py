# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Test fixtures for the backup agent tests.

Provides an in-memory container runtime, a directory-backed object store,
and test configuration helpers.
"""

import os
import random
import shutil
import tempfile
from pathlib import Path
from typing import Dict, Generator, List, Tuple

import pytest

from pbagent.backup.session import remove_path
from pbagent.docker.client import ContainerResult

# Set test environment variables
os.environ["PBAGENT_ADMIN_API_KEY"] = "test-api-key-12345"

MiB = 1024 * 1024

COMPOSE_FILE = """\
services:
  mongodb:
    image: mongo:7
    environment:
      - MONGO_INITDB_ROOT_USERNAME=thinger
      - MONGO_INITDB_ROOT_PASSWORD=mongo-secret
  influxdb2:
    image: influxdb:2.7
    environment:
      - DOCKER_INFLUXDB_INIT_MODE=setup
      - DOCKER_INFLUXDB_INIT_ADMIN_TOKEN=influx-token
"""


def random_bytes(size: int, seed: int = 0) -> bytes:
    return random.Random(seed).randbytes(size)


def snapshot(directory: Path) -> Dict[str, bytes]:
    """Relative path -> content of every file below `directory`."""
    return {
        str(path.relative_to(directory)): path.read_bytes()
        for path in sorted(directory.rglob("*"))
        if path.is_file()
    }


class FakeDocker:
    """
    Container runtime double.

    Container paths are mapped onto host directories under the data path,
    the way the platform's volumes are mounted. Dump and restore programs
    are simulated on those directories.
    """

    def __init__(self, data_path: Path, dump_size: int = 5 * MiB):
        self.data_path = data_path
        self.dump_size = dump_size
        self.mounts = {
            "thinger": ("/data", data_path / "thinger"),
            "mongodb": ("/data/db", data_path / "mongodb"),
            "influxdb2": ("/var/lib/influxdb2", data_path / "influxdb2"),
        }
        self.calls: List[Tuple[str, str, str]] = []
        self.restarts: List[str] = []
        self.dumps: Dict[str, bytes] = {}
        self.restored: Dict[str, object] = {}
        self.failing_programs: set = set()

    def host_path(self, container: str, path: str) -> Path | None:
        """Host location of a container path, None outside the volume."""
        if container not in self.mounts:
            return None
        mount, host = self.mounts[container]
        if path != mount and not path.startswith(f"{mount}/"):
            return None
        return host / path[len(mount):].lstrip("/")

    async def exec(self, container: str, command: str) -> ContainerResult:
        self.calls.append((container, "exec", command))
        argv = command.split()
        if argv[0] in self.failing_programs:
            return ContainerResult(False, f"{argv[0]} exited with code 1")

        if argv[0] == "mongodump":
            target = self.host_path(container, argv[-1].split("=", 1)[1])
            target.parent.mkdir(parents=True, exist_ok=True)
            content = random_bytes(self.dump_size, seed=1)
            target.write_bytes(content)
            self.dumps[container] = content
        elif argv[0] == "mongorestore":
            archive = next((a.split("=", 1)[1] for a in argv if a.startswith("--archive=")), None)
            if archive is None:
                # Directory dump copied into the container
                self.restored[container] = argv[-1]
            else:
                self.restored[container] = self.host_path(container, archive).read_bytes()
        elif argv[:2] == ["influx", "backup"]:
            target = self.host_path(container, argv[2])
            target.mkdir(parents=True)
            (target / "20240101T000000Z.manifest").write_text("{}")
        elif argv[:2] == ["influx", "restore"]:
            source = self.host_path(container, argv[2])
            if source is None:
                self.restored[container] = argv[2]
            else:
                self.restored[container] = sorted(p.name for p in source.iterdir())
        elif argv[0] == "rm":
            for target in argv[2:]:
                host = self.host_path(container, target)
                if host is not None:
                    remove_path(host)

        return ContainerResult(True, data=0)

    async def start(self, container: str) -> ContainerResult:
        self.calls.append((container, "start", ""))
        return ContainerResult(True, data=204)

    async def stop(self, container: str) -> ContainerResult:
        self.calls.append((container, "stop", ""))
        return ContainerResult(True, data=204)

    async def restart(self, container: str) -> ContainerResult:
        self.calls.append((container, "restart", ""))
        self.restarts.append(container)
        return ContainerResult(True, data=204)

    async def copy_to_container(self, container: str, src, dst: str) -> ContainerResult:
        self.calls.append((container, "copy_to", dst))
        return ContainerResult(True)

    async def inspect_network(self, network: str, dest_dir, filename=None) -> ContainerResult:
        target = Path(dest_dir) / (filename or f"{network}.json")
        target.write_text(f'{{"Name": "{network}", "Id": "net-{network}", "Driver": "bridge"}}')
        self.calls.append((network, "inspect_network", str(target)))
        return ContainerResult(True, data=target)

    async def inspect_container(self, container: str, dest_dir, filename=None) -> ContainerResult:
        target = Path(dest_dir) / (filename or f"{container}.json")
        target.write_text(
            f'{{"Name": "/{container}", "Config": {{"Image": "plugin:1.0"}}, "HostConfig": {{}}}}'
        )
        self.calls.append((container, "inspect_container", str(target)))
        return ContainerResult(True, data=target)

    async def create_network_from_inspect(self, inspect_path) -> ContainerResult:
        self.calls.append(("", "create_network", Path(inspect_path).name))
        return ContainerResult(True, data="new-network-id")

    async def create_container_from_inspect(self, inspect_path, network_id=None) -> ContainerResult:
        self.calls.append((network_id or "", "create_container", Path(inspect_path).name))
        return ContainerResult(True, data="new-container-id")

    def programs(self, container: str) -> List[str]:
        return [cmd.split()[0] for name, op, cmd in self.calls if name == container and op == "exec"]


class FakeStorage:
    """Object store backed by a local directory."""

    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)
        self.uploads: List[str] = []
        self.fail_uploads = False

    async def upload(self, source, key=None) -> bool:
        source = Path(source)
        key = key or source.name
        if self.fail_uploads:
            return False
        shutil.copyfile(source, self.root / key)
        self.uploads.append(key)
        return True

    async def download(self, key: str, dest) -> bool:
        stored = self.root / key
        if not stored.is_file():
            return False
        Path(dest).parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(stored, dest)
        return True


async def no_timeseries() -> None:
    return None


async def timeseries_v2() -> str:
    return "v2.7.1"


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def data_path(temp_dir: Path) -> Path:
    path = temp_dir / "data"
    path.mkdir()
    return path


@pytest.fixture
def test_config(temp_dir: Path, data_path: Path):
    """Create a test configuration rooted in the temporary directory."""
    from pbagent.builder import create_config

    compose_path = temp_dir / "compose"
    compose_path.mkdir()
    (compose_path / "docker-compose.yml").write_text(COMPOSE_FILE)

    return create_config(
        bucket="test-bucket",
        access_key="AKIDEXAMPLE",
        secret_key="wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY",
        region="us-east-1",
        data_path=data_path,
        compose_path=compose_path,
        device_id="device-01",
    )


@pytest.fixture
def fake_docker(data_path: Path) -> FakeDocker:
    return FakeDocker(data_path)


@pytest.fixture
def fake_storage(temp_dir: Path) -> FakeStorage:
    return FakeStorage(temp_dir / "bucket")


def populate_application(data_path: Path, total_size: int = 25 * MiB) -> Path:
    """Create users/ and certificates/ holding `total_size` bytes."""
    app_dir = data_path / "thinger"
    users = app_dir / "users"
    files = 5
    for index in range(files):
        user_dir = users / f"user{index}" / "buckets"
        user_dir.mkdir(parents=True)
        (user_dir / "data.bin").write_bytes(random_bytes(total_size // files, seed=10 + index))
    certificates = app_dir / "certificates"
    certificates.mkdir(parents=True)
    (certificates / "server.pem").write_text("-----BEGIN CERTIFICATE-----\n")
    return app_dir
