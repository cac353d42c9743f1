# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Docker module - container runtime control over the Engine API socket.
"""

from pbagent.docker.client import ContainerResult, DockerClient

__all__ = ["ContainerResult", "DockerClient"]
