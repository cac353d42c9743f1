# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Example FastAPI Application running the backup agent.

The agent exposes its triggers under /admin/pbagent and, when a schedule
is configured, launches a backup every day.

Run with:
    uvicorn examples.agent_app:app

Environment variables:
    S3_BUCKET: Bucket receiving backups
    AWS_ACCESS_KEY_ID / AWS_SECRET_ACCESS_KEY: Storage credentials
    PBAGENT_DEVICE_ID: Device identifier sent with reports
    PBAGENT_CALLBACK_URL / PBAGENT_CALLBACK_TOKEN: Report destination
    PBAGENT_ADMIN_API_KEY: API key for the trigger endpoints
"""

import os

from fastapi import FastAPI

from pbagent.builder import (
    build_config,
    create_empty_config,
    platform_backups,
    report_to,
    run_daily_at,
    with_bucket,
    with_credentials,
    with_region,
)
from pbagent.env import create_config_from_env
from pbagent.integrations.fastapi import agent_lifespan


def create_agent_config():
    """
    Build the agent configuration.

    Environment variables win; the builder form below documents the same
    configuration for deployments that assemble it in code.
    """
    if os.getenv("S3_BUCKET"):
        return create_config_from_env()

    config = create_empty_config()
    config = platform_backups(config)
    config = with_bucket(config, "device-backups")
    config = with_region(config, "eu-west-1")
    config = with_credentials(config, "AKIDEXAMPLE", "wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY")
    config = report_to(config, "https://console.example.com/v1/devices", None, "device-01")

    # Daily backup at 03:15 UTC
    config = run_daily_at(config, "03:15")

    return build_config(config)


agent_config = create_agent_config()

app = FastAPI(
    title="Platform Backup Agent",
    description="Backup, restore and update triggers for a platform device",
    version="0.1.0",
    lifespan=lambda app: agent_lifespan(app, agent_config),
)


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "message": "Platform Backup Agent",
        "docs": "/docs",
        "admin": "/admin/pbagent/status",
    }


# ============================================================================
# Agent Endpoints (registered by the lifespan)
# ============================================================================
#
# POST /admin/pbagent/backup         - Launch a backup {"tag"?, "endpoint"?}
# POST /admin/pbagent/restore        - Launch a restore {"tag", "endpoint"?}
# POST /admin/pbagent/update         - Upgrade packages {"endpoint"?}
# POST /admin/pbagent/update-distro  - Upgrade release {"endpoint"?}
# GET  /admin/pbagent/status         - Running task and last reports
# GET  /admin/pbagent/config         - Configuration (redacted)
#
# All endpoints require: Authorization: Bearer <PBAGENT_ADMIN_API_KEY>


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
