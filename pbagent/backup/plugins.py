# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Plugin discovery under the application's users directory.

Layout: <users>/<user>/plugins/<plugin>/files/plugin.json. A plugin runs in
its own container, named <user>-<plugin> on the user's network <user>, when
its manifest declares task.type == "docker".
"""

import json
from pathlib import Path
from typing import List

import aiofiles
import structlog

logger = structlog.get_logger()


def users_with_plugins(users_dir: Path) -> List[Path]:
    if not users_dir.is_dir():
        return []
    return [u for u in sorted(users_dir.iterdir()) if (u / "plugins").is_dir()]


def plugin_dirs(user_dir: Path) -> List[Path]:
    return [p for p in sorted((user_dir / "plugins").iterdir()) if p.is_dir()]


def container_name(user_dir: Path, plugin_dir: Path) -> str:
    return f"{user_dir.name}-{plugin_dir.name}"


async def is_container_plugin(plugin_dir: Path) -> bool:
    """True if the plugin manifest declares a docker task."""
    manifest = plugin_dir / "files" / "plugin.json"
    try:
        async with aiofiles.open(manifest, "r") as f:
            document = json.loads(await f.read())
    except FileNotFoundError:
        return False
    except (OSError, ValueError) as e:
        logger.warning("plugin_manifest_unreadable", manifest=str(manifest), error=str(e))
        return False

    task = document.get("task") if isinstance(document, dict) else None
    return isinstance(task, dict) and task.get("type") == "docker"
