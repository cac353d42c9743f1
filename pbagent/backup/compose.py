# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Database credentials scraped from the platform compose file.
"""

from pathlib import Path

import aiofiles

from pbagent.errors import explain_missing_compose_secret
from pbagent.exceptions import NotFoundError

PRIMARY_DB_PASSWORD = "MONGO_INITDB_ROOT_PASSWORD"
TIMESERIES_ADMIN_TOKEN = "DOCKER_INFLUXDB_INIT_ADMIN_TOKEN"


async def read_compose_secret(compose_file: Path, variable: str) -> str:
    """
    Read `- VARIABLE=value` from a compose file. The last assignment wins.

    Raises:
        NotFoundError: If the file is missing, or the variable is absent or
            empty
    """
    marker = f"- {variable}="
    value = ""
    try:
        async with aiofiles.open(compose_file, "r") as f:
            async for line in f:
                if line.strip().startswith(marker):
                    value = line.split("=", 1)[1].strip()
    except FileNotFoundError as e:
        raise NotFoundError(
            f"Compose file not found: {compose_file}",
            details={"variable": variable},
        ) from e

    if not value:
        raise NotFoundError(
            explain_missing_compose_secret(variable, str(compose_file)),
            details={"variable": variable},
        )
    return value
