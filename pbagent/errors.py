# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for the backup agent.

These helpers centralize wording for common configuration and runtime
errors so that all modules present consistent, actionable messages.
"""


def explain_missing_bucket_env() -> str:
    """
    Explain that the S3 bucket environment variable is missing.
    """

    return (
        "S3 bucket is not configured. "
        "Set the S3_BUCKET environment variable or pass bucket=... to create_config()."
    )


def explain_missing_credentials() -> str:
    """
    Explain that storage credentials are missing.
    """

    return (
        "S3 credentials are not configured. "
        "Set AWS_ACCESS_KEY_ID and AWS_SECRET_ACCESS_KEY, or pass access_key=... "
        "and secret_key=... to create_config()."
    )


def explain_invalid_backup_system_env(value: str | None) -> str:
    """
    Explain that PBAGENT_BACKUP_SYSTEM is invalid.
    """

    return (
        f"Invalid PBAGENT_BACKUP_SYSTEM value: {value!r}. "
        "Expected 'platform', or set it to an empty value to disable backups."
    )


def explain_invalid_storage_env(value: str | None) -> str:
    """
    Explain that PBAGENT_STORAGE is invalid.
    """

    return f"Invalid PBAGENT_STORAGE value: {value!r}. Only 'S3' is supported."


def explain_invalid_timeout_env(value: str | None) -> str:
    return (
        f"Invalid PBAGENT_DOCKER_READ_TIMEOUT value: {value!r}. "
        "It must be a positive number of seconds."
    )


def explain_backups_not_configured(task: str) -> str:
    """
    Explain that a backup or restore was triggered without a backup system.
    """

    return f"Can't launch {task}. Set backups property."


def explain_missing_restore_tag() -> str:
    return "Can't launch restore. A backup tag is required."


def explain_update_requires_root() -> str:
    return "Can't launch update. The agent must run as root to upgrade packages."


def explain_missing_compose_secret(variable: str, compose_file: str) -> str:
    """
    Explain that a credential could not be scraped from the compose file.
    """

    return (
        f"{variable} not found in {compose_file}. "
        f"Add a '- {variable}=<value>' line to the service environment."
    )


def explain_invalid_tag(tag: str | None) -> str:
    """
    Explain that a backup tag is not a session timestamp.
    """

    return (
        f"Invalid backup tag: {tag!r}. "
        "Expected a UTC timestamp like 2024-01-01T00:00:00Z."
    )
