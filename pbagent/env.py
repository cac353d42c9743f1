# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Environment-based configuration helpers.

These helpers are small wrappers around create_config() that read a set of
well-known environment variables, so the agent can run inside a container
without a config file.
"""

from __future__ import annotations

import os
from pathlib import Path

from pbagent.builder import create_config
from pbagent.config import AgentConfig, BackupSystem, StorageBackend
from pbagent.errors import (
    explain_invalid_backup_system_env,
    explain_invalid_storage_env,
    explain_invalid_timeout_env,
    explain_missing_bucket_env,
    explain_missing_credentials,
)
from pbagent.exceptions import ConfigurationError


def _parse_backup_system(value: str | None) -> BackupSystem | None:
    if value is None:
        return BackupSystem.PLATFORM
    if not value.strip():
        return None
    try:
        return BackupSystem(value.strip().lower())
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_backup_system_env(value)) from exc


def _parse_storage(value: str | None) -> StorageBackend:
    if not value:
        return StorageBackend.S3
    try:
        return StorageBackend(value.strip().upper())
    except ValueError as exc:
        raise ConfigurationError(explain_invalid_storage_env(value)) from exc


def _parse_timeout(value: str | None) -> float:
    if not value:
        return 300.0
    try:
        timeout = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(explain_invalid_timeout_env(value)) from exc
    if timeout <= 0:
        raise ConfigurationError(explain_invalid_timeout_env(value))
    return timeout


def create_config_from_env() -> AgentConfig:
    """
    Create an AgentConfig from environment variables.

    Required when backups are enabled:
        - S3_BUCKET: Bucket receiving backup archives
        - AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY: Storage credentials

    Optional environment variables:
        - PBAGENT_BACKUP_SYSTEM: 'platform' (default) or empty to disable backups
        - PBAGENT_STORAGE: 'S3' (default)
        - AWS_REGION: AWS region (default: us-east-1)
        - S3_ENDPOINT_URL: Custom S3-compatible endpoint
        - PBAGENT_DATA_PATH: Live data root (default: /data)
        - PBAGENT_COMPOSE_PATH: Directory with docker-compose.yml (default: /)
        - DOCKER_SOCKET: Container runtime socket (default: /var/run/docker.sock)
        - PBAGENT_DOCKER_READ_TIMEOUT: Seconds (default: 300)
        - PBAGENT_DEVICE_ID: Device identity included in reports
        - PBAGENT_CALLBACK_URL / PBAGENT_CALLBACK_TOKEN: Report delivery
        - PBAGENT_SCHEDULE_CRON: Daily backup in HH:MM (UTC)
    """

    backup_system = _parse_backup_system(os.getenv("PBAGENT_BACKUP_SYSTEM"))
    storage = _parse_storage(os.getenv("PBAGENT_STORAGE"))

    bucket = os.getenv("S3_BUCKET", "")
    access_key = os.getenv("AWS_ACCESS_KEY_ID", "")
    secret_key = os.getenv("AWS_SECRET_ACCESS_KEY", "")

    if backup_system is not None:
        if not bucket:
            raise ConfigurationError(explain_missing_bucket_env())
        if not access_key or not secret_key:
            raise ConfigurationError(explain_missing_credentials())

    return create_config(
        bucket=bucket,
        access_key=access_key,
        secret_key=secret_key,
        region=os.getenv("AWS_REGION", "us-east-1"),
        backup_system=backup_system,
        data_path=Path(os.getenv("PBAGENT_DATA_PATH", "/data")),
        compose_path=Path(os.getenv("PBAGENT_COMPOSE_PATH", "/")),
        endpoint_url=os.getenv("S3_ENDPOINT_URL") or None,
        callback_url=os.getenv("PBAGENT_CALLBACK_URL") or None,
        callback_token=os.getenv("PBAGENT_CALLBACK_TOKEN") or None,
        device_id=os.getenv("PBAGENT_DEVICE_ID") or None,
        schedule_cron=os.getenv("PBAGENT_SCHEDULE_CRON") or None,
        storage=storage,
        docker_socket=Path(os.getenv("DOCKER_SOCKET", "/var/run/docker.sock")),
        docker_read_timeout=_parse_timeout(os.getenv("PBAGENT_DOCKER_READ_TIMEOUT")),
    )
