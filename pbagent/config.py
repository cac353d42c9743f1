# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Agent Configuration - Immutable configuration data structures.

All configuration is frozen (immutable) after creation so that a running
backup or restore never sees settings change underneath it.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List
import re


class BackupSystem(str, Enum):
    """Backup implementation selected by the `backups/system` setting."""

    PLATFORM = "platform"


class StorageBackend(str, Enum):
    """Off-site storage backend."""

    S3 = "S3"


def _validate_bucket_name(bucket: str) -> bool:
    """
    Validate S3 bucket name according to AWS rules.

    Rules:
    - 3-63 characters
    - Lowercase letters, numbers, hyphens
    - Must start and end with letter or number
    - No consecutive periods
    - Not formatted as IP address
    """
    if not bucket or len(bucket) < 3 or len(bucket) > 63:
        return False

    if not re.match(r"^[a-z0-9][a-z0-9.-]*[a-z0-9]$", bucket):
        return False

    if ".." in bucket:
        return False

    if re.match(r"^\d+\.\d+\.\d+\.\d+$", bucket):
        return False

    return True


def _validate_cron_time(time_str: str) -> bool:
    """Validate HH:MM time format."""
    if not time_str:
        return False
    try:
        parts = time_str.split(":")
        if len(parts) != 2:
            return False
        hour, minute = int(parts[0]), int(parts[1])
        return 0 <= hour <= 23 and 0 <= minute <= 59
    except (ValueError, AttributeError):
        return False


def _validate_container_name(name: str) -> bool:
    return bool(re.match(r"^[a-zA-Z0-9][a-zA-Z0-9_.-]*$", name or ""))


@dataclass(frozen=True)
class AgentConfig:
    """
    Immutable configuration for the backup agent.

    Storage settings are only validated when a backup system is selected;
    an agent without backups still serves update triggers.
    """

    # Backup implementation; None disables backup and restore triggers
    backup_system: BackupSystem | None = BackupSystem.PLATFORM

    # Off-site storage backend
    storage: StorageBackend = StorageBackend.S3

    # S3 bucket receiving the backup archives
    bucket: str = ""

    # AWS region (default: us-east-1)
    region: str = "us-east-1"

    # Storage credentials
    access_key: str = ""
    secret_key: str = ""

    # Custom S3-compatible endpoint; path-style addressing when set
    endpoint_url: str | None = None

    # Root of the live platform data (application and database volumes)
    data_path: Path = field(default_factory=lambda: Path("/data"))

    # Directory holding docker-compose.yml
    compose_path: Path = field(default_factory=lambda: Path("/"))

    # Container runtime control socket
    docker_socket: Path = field(default_factory=lambda: Path("/var/run/docker.sock"))

    # Read timeout for container runtime calls, dumps can take minutes
    docker_read_timeout: float = 300.0

    # Timeseries database HTTP API, used to probe its version
    timeseries_url: str = "http://localhost:8086"

    # Core service containers
    application_container: str = "thinger"
    primary_db_container: str = "mongodb"
    timeseries_container: str = "influxdb2"

    # Container of a 1.x timeseries database, on deployments that still run one
    legacy_timeseries_container: str = "influxdb"

    # Database user for dump and restore commands
    primary_db_user: str = "thinger"

    # Identity reported with every operation report
    device_id: str | None = None

    # Callback receiving operation reports: POST {callback_url}/{endpoint}
    callback_url: str | None = None
    callback_token: str | None = None

    # Daily backup time in HH:MM format (UTC)
    schedule_cron: str | None = None

    def __post_init__(self) -> None:
        """Validate configuration after creation."""
        errors: List[str] = []

        if self.backup_system is not None:
            if not _validate_bucket_name(self.bucket):
                errors.append(f"Invalid bucket name: {self.bucket}")

            if not self.region:
                errors.append("region must not be empty")

            if not self.access_key or not self.secret_key:
                errors.append("access_key and secret_key are required when backups are enabled")

        if self.docker_read_timeout <= 0:
            errors.append(
                f"docker_read_timeout must be > 0, got {self.docker_read_timeout}"
            )

        for name in (
            self.application_container,
            self.primary_db_container,
            self.timeseries_container,
            self.legacy_timeseries_container,
        ):
            if not _validate_container_name(name):
                errors.append(f"Invalid container name: {name!r}")

        if self.schedule_cron:
            if not _validate_cron_time(self.schedule_cron):
                errors.append(f"Invalid schedule_cron format: {self.schedule_cron}, expected HH:MM")
            if self.backup_system is None:
                errors.append("schedule_cron requires a backup system")

        if self.endpoint_url and not self.endpoint_url.startswith(("http://", "https://")):
            errors.append(f"endpoint_url must be an http(s) URL, got {self.endpoint_url}")

        if errors:
            from pbagent.exceptions import ConfigurationError

            raise ConfigurationError(
                "Configuration validation failed",
                details={"errors": errors},
            )

    @property
    def compose_file(self) -> Path:
        """Path of the compose file holding database credentials."""
        return self.compose_path / "docker-compose.yml"

    @property
    def backups_folder(self) -> Path:
        return self.data_path / "backups"

    def with_updates(self, **kwargs) -> "AgentConfig":
        """
        Create a new config with updated values.

        Since the config is frozen, this creates a new instance.
        """
        from dataclasses import asdict

        current = asdict(self)
        current.update(kwargs)
        return AgentConfig(**current)
