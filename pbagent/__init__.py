# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Platform Backup Agent - device-resident backup and restore for a
multi-container platform.

Snapshots the application data and its databases into a single archive,
uploads it to S3-compatible storage with multipart uploads, and restores
it back onto the running containers. One maintenance operation runs at a
time; reports are delivered to a remote callback. Package name: pbagent.
"""

__version__ = "0.1.0"

# Configuration creation (user-facing API)
from pbagent.builder import create_config

# Core orchestration
from pbagent.core import Orchestrator, TriggerResult

# Environment-based configuration
from pbagent.env import create_config_from_env

__all__ = [
    # Version
    "__version__",
    # Configuration creation
    "create_config",
    "create_config_from_env",
    # Core orchestration
    "Orchestrator",
    "TriggerResult",
]
