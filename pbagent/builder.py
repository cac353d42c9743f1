# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Agent Builder - Functional builder pattern for configuration.

This module provides pure functions for building AgentConfig objects.
Each function takes a config dict and returns a new dict with the
modification applied (immutable updates).
"""

from pathlib import Path
from typing import Any, Callable, Dict

from pbagent.config import AgentConfig, BackupSystem, StorageBackend


# Type alias for builder functions
ConfigDict = Dict[str, Any]
BuilderFunc = Callable[[ConfigDict], ConfigDict]


def create_empty_config() -> ConfigDict:
    """
    Create an initial empty configuration dictionary.

    Returns:
        Dict with default values for all configuration fields
    """
    return {
        "backup_system": None,
        "storage": StorageBackend.S3,
        "bucket": "",
        "region": "us-east-1",
        "access_key": "",
        "secret_key": "",
        "endpoint_url": None,
        "data_path": Path("/data"),
        "compose_path": Path("/"),
        "docker_socket": Path("/var/run/docker.sock"),
        "docker_read_timeout": 300.0,
        "timeseries_url": "http://localhost:8086",
        "application_container": "thinger",
        "primary_db_container": "mongodb",
        "timeseries_container": "influxdb2",
        "legacy_timeseries_container": "influxdb",
        "primary_db_user": "thinger",
        "device_id": None,
        "callback_url": None,
        "callback_token": None,
        "schedule_cron": None,
    }


def with_bucket(config: ConfigDict, bucket_name: str) -> ConfigDict:
    """
    Set the S3 bucket name.

    Args:
        config: Current configuration dictionary
        bucket_name: Name of the S3 bucket receiving backups

    Returns:
        New configuration dictionary with bucket set
    """
    return {**config, "bucket": bucket_name}


def with_region(config: ConfigDict, region: str) -> ConfigDict:
    """
    Set the AWS region.

    Args:
        config: Current configuration dictionary
        region: AWS region (e.g., 'us-east-1', 'eu-west-1')

    Returns:
        New configuration dictionary with region set
    """
    return {**config, "region": region}


def with_credentials(config: ConfigDict, access_key: str, secret_key: str) -> ConfigDict:
    """
    Set the storage credentials.

    Args:
        config: Current configuration dictionary
        access_key: Access key id
        secret_key: Secret access key

    Returns:
        New configuration dictionary with credentials set
    """
    return {**config, "access_key": access_key, "secret_key": secret_key}


def with_endpoint(config: ConfigDict, endpoint_url: str) -> ConfigDict:
    """Use a custom S3-compatible endpoint (path-style addressing)."""
    return {**config, "endpoint_url": endpoint_url}


def with_data_path(config: ConfigDict, data_path: Path | str) -> ConfigDict:
    """
    Set the root of the live platform data.

    Args:
        config: Current configuration dictionary
        data_path: Directory holding the application and database volumes

    Returns:
        New configuration dictionary with data path set
    """
    path = Path(data_path) if isinstance(data_path, str) else data_path
    return {**config, "data_path": path}


def with_compose_path(config: ConfigDict, compose_path: Path | str) -> ConfigDict:
    path = Path(compose_path) if isinstance(compose_path, str) else compose_path
    return {**config, "compose_path": path}


def with_docker_socket(config: ConfigDict, socket_path: Path | str) -> ConfigDict:
    path = Path(socket_path) if isinstance(socket_path, str) else socket_path
    return {**config, "docker_socket": path}


def platform_backups(config: ConfigDict) -> ConfigDict:
    """
    Enable platform backups (application, primary and timeseries databases).

    Args:
        config: Current configuration dictionary

    Returns:
        New configuration dictionary with the platform backup system
    """
    return {**config, "backup_system": BackupSystem.PLATFORM}


def report_to(
    config: ConfigDict,
    callback_url: str,
    token: str | None = None,
    device_id: str | None = None,
) -> ConfigDict:
    """
    Deliver operation reports to a callback URL.

    Args:
        config: Current configuration dictionary
        callback_url: Base URL, reports are posted to {callback_url}/{endpoint}
        token: Optional bearer token
        device_id: Identity included in every report

    Returns:
        New configuration dictionary with reporting enabled
    """
    return {
        **config,
        "callback_url": callback_url,
        "callback_token": token,
        "device_id": device_id if device_id is not None else config["device_id"],
    }


def run_daily_at(config: ConfigDict, time: str) -> ConfigDict:
    """
    Schedule a daily backup at a specific time.

    Args:
        config: Current configuration dictionary
        time: Time in HH:MM format (UTC), e.g., "02:30"

    Returns:
        New configuration dictionary with schedule set

    Example:
        config = run_daily_at(config, "03:00")  # Run at 3 AM UTC
    """
    return {**config, "schedule_cron": time}


def build_config(config_dict: ConfigDict) -> AgentConfig:
    """
    Build a validated AgentConfig from a config dictionary.

    Args:
        config_dict: Configuration dictionary

    Returns:
        Validated, immutable AgentConfig

    Raises:
        ConfigurationError: If configuration is invalid
    """
    return AgentConfig(**config_dict)


def pipe(*funcs: BuilderFunc) -> BuilderFunc:
    """
    Compose multiple builder functions into one.

    This allows a more readable pipeline style:

        config = pipe(
            lambda c: with_bucket(c, "my-backups"),
            platform_backups,
            lambda c: run_daily_at(c, "02:00"),
        )(create_empty_config())
    """

    def composed(config: ConfigDict) -> ConfigDict:
        for func in funcs:
            config = func(config)
        return config

    return composed


def create_config(
    bucket: str,
    *,
    access_key: str,
    secret_key: str,
    region: str = "us-east-1",
    backup_system: str | BackupSystem | None = "platform",
    data_path: str | Path | None = None,
    compose_path: str | Path | None = None,
    endpoint_url: str | None = None,
    callback_url: str | None = None,
    callback_token: str | None = None,
    device_id: str | None = None,
    schedule_cron: str | None = None,
    **kwargs: Any,
) -> AgentConfig:
    """
    Create agent configuration from simple parameters.

    This is the recommended user-facing API for creating configurations.

    Args:
        bucket: S3 bucket name (required)
        access_key: Storage access key id (required)
        secret_key: Storage secret key (required)
        region: AWS region (default: "us-east-1")
        backup_system: "platform", or None to disable backups
        data_path: Live platform data root (default: "/data")
        compose_path: Directory holding docker-compose.yml (default: "/")
        endpoint_url: Custom S3-compatible endpoint (optional)
        callback_url: Base URL receiving operation reports (optional)
        callback_token: Bearer token for the callback (optional)
        device_id: Device identity included in reports (optional)
        schedule_cron: Daily backup time in HH:MM format (optional)
        **kwargs: Additional configuration options

    Returns:
        Validated, immutable AgentConfig instance

    Example:
        config = create_config(
            bucket="device-backups",
            access_key="AKIA...",
            secret_key="...",
            region="eu-west-1",
            data_path="/data",
            schedule_cron="02:30",
        )
    """
    config_dict = create_empty_config()

    config_dict = with_bucket(config_dict, bucket)
    config_dict = with_credentials(config_dict, access_key, secret_key)

    if region:
        config_dict = with_region(config_dict, region)

    if backup_system:
        if isinstance(backup_system, str):
            config_dict["backup_system"] = BackupSystem(backup_system.lower())
        else:
            config_dict["backup_system"] = backup_system

    if data_path:
        config_dict = with_data_path(config_dict, data_path)

    if compose_path:
        config_dict = with_compose_path(config_dict, compose_path)

    if endpoint_url:
        config_dict = with_endpoint(config_dict, endpoint_url)

    if callback_url:
        config_dict = report_to(config_dict, callback_url, callback_token, device_id)
    elif device_id:
        config_dict["device_id"] = device_id

    if schedule_cron:
        config_dict = run_daily_at(config_dict, schedule_cron)

    for key, value in kwargs.items():
        if key in config_dict:
            config_dict[key] = value

    return build_config(config_dict)
