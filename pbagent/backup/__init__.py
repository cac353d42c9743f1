# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Backup module - backup and restore pipelines, selected by backup system.
"""

from pbagent.backup.platform import PlatformBackup
from pbagent.backup.restore import PlatformRestore
from pbagent.backup.session import SessionPaths, is_valid_tag, new_tag
from pbagent.config import AgentConfig, BackupSystem
from pbagent.exceptions import ConfigurationError

BACKUP_VARIANTS = {
    BackupSystem.PLATFORM: (PlatformBackup, PlatformRestore),
}


def _variant(config: AgentConfig) -> tuple:
    try:
        return BACKUP_VARIANTS[config.backup_system]
    except KeyError:
        raise ConfigurationError(
            "No backup implementation for the configured backup system",
            details={"backup_system": config.backup_system},
        ) from None


def create_backup(config: AgentConfig, hostname: str, tag: str, docker, storage, **kwargs):
    """Backup pipeline for the configured backup system."""
    backup_cls, _ = _variant(config)
    return backup_cls(config, hostname, tag, docker, storage, **kwargs)


def create_restore(config: AgentConfig, hostname: str, tag: str, docker, storage):
    """Restore pipeline for the configured backup system."""
    _, restore_cls = _variant(config)
    return restore_cls(config, hostname, tag, docker, storage)


__all__ = [
    "BACKUP_VARIANTS",
    "PlatformBackup",
    "PlatformRestore",
    "SessionPaths",
    "create_backup",
    "create_restore",
    "is_valid_tag",
    "new_tag",
]
