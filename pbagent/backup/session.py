# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Session helpers shared by the backup and restore pipelines.

A session is scoped by its tag: every scratch path and artifact name of one
run derives from it, so two sessions with different tags never touch the
same files.
"""

import os
import shutil
from dataclasses import dataclass
from datetime import datetime, UTC
from pathlib import Path

import httpx
import structlog

from pbagent.errors import explain_invalid_tag
from pbagent.exceptions import ConfigurationError

logger = structlog.get_logger()

TAG_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def new_tag(now: datetime | None = None) -> str:
    """Session tag for `now`, e.g. 2024-01-01T00:00:00Z."""
    return (now or datetime.now(UTC)).strftime(TAG_FORMAT)


def is_valid_tag(tag: str | None) -> bool:
    """True if `tag` is a session timestamp in TAG_FORMAT."""
    if not tag:
        return False
    try:
        datetime.strptime(tag, TAG_FORMAT)
    except ValueError:
        return False
    return True


@dataclass(frozen=True)
class SessionPaths:
    """Filesystem layout of one session."""

    backups_folder: Path
    hostname: str
    tag: str

    def __post_init__(self) -> None:
        # Every session path is removed recursively, it must stay below backups_folder
        if not is_valid_tag(self.tag):
            raise ConfigurationError(
                explain_invalid_tag(self.tag),
                details={"tag": self.tag},
            )

    @property
    def folder(self) -> Path:
        """Per-tag scratch directory."""
        return self.backups_folder / self.tag

    @property
    def archive_name(self) -> str:
        return f"{self.hostname}_{self.tag}.tar.gz"

    @property
    def legacy_archive_name(self) -> str:
        return f"{self.hostname}_{self.tag}.tar"

    @property
    def archive(self) -> Path:
        return self.backups_folder / self.archive_name


def running_as_root() -> bool:
    return os.geteuid() == 0


def remove_path(path: Path) -> None:
    """Remove a file or directory tree if present."""
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    elif path.exists() or path.is_symlink():
        path.unlink()


async def probe_timeseries_version(url: str, timeout: float = 5.0) -> str | None:
    """
    Version of the timeseries database from its /ping endpoint.

    Returns:
        The X-Influxdb-Version header (e.g. "v2.7.1" or "1.8.10"), or None
        when the database is unreachable
    """
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.get(f"{url.rstrip('/')}/ping")
    except httpx.HTTPError as e:
        logger.warning("timeseries_ping_failed", url=url, error=str(e))
        return None
    return response.headers.get("X-Influxdb-Version") or None
