# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Agent FastAPI Integration - remote trigger surface for maintenance tasks.

This module provides:
- Protected trigger endpoints (backup, restore, update, update-distro)
- Status and redacted configuration endpoints
- Lifespan management with an optional daily scheduled backup
"""

import os
from contextlib import asynccontextmanager

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from fastapi import Depends, FastAPI, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from pbagent.config import AgentConfig
from pbagent.core import Orchestrator

logger = structlog.get_logger()

DEFAULT_PREFIX = "/admin/pbagent"

# Callback endpoint receiving reports of scheduled backups
SCHEDULED_BACKUP_ENDPOINT = "backup_finished"

# Security
security = HTTPBearer(auto_error=False)


class BackupRequest(BaseModel):
    tag: str | None = None
    endpoint: str | None = None


class RestoreRequest(BaseModel):
    tag: str
    endpoint: str | None = None


class UpdateRequest(BaseModel):
    endpoint: str | None = None


async def verify_api_key(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> bool:
    """
    Verify API key from Authorization header.

    The API key is read from the PBAGENT_ADMIN_API_KEY environment variable.
    Requests must include: Authorization: Bearer <api_key>

    Raises:
        HTTPException: If API key is missing or invalid
    """
    api_key = os.getenv("PBAGENT_ADMIN_API_KEY")

    if not api_key:
        raise HTTPException(
            status_code=500,
            detail="PBAGENT_ADMIN_API_KEY environment variable not set",
        )

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Authorization header required",
        )

    if credentials.credentials != api_key:
        raise HTTPException(
            status_code=403,
            detail="Invalid API key",
        )

    return True


def register_agent_routes(
    app: FastAPI,
    orchestrator: Orchestrator,
    prefix: str = DEFAULT_PREFIX,
) -> None:
    """
    Register agent trigger endpoints on a FastAPI app.

    All endpoints require Bearer token authentication. Triggers answer
    immediately with "Launched", "Already executing", "Executing: <task>"
    or "ERROR"; reports follow through the callback endpoint.

    Args:
        app: FastAPI application
        orchestrator: Agent orchestrator
        prefix: URL prefix for endpoints (default: /admin/pbagent)
    """
    config = orchestrator.config

    @app.post(f"{prefix}/backup", dependencies=[Depends(verify_api_key)])
    async def trigger_backup(request: BackupRequest | None = None) -> dict:
        """Launch a backup. The tag defaults to the current UTC time."""
        request = request or BackupRequest()
        return orchestrator.trigger_backup(request.endpoint, request.tag).to_dict()

    @app.post(f"{prefix}/restore", dependencies=[Depends(verify_api_key)])
    async def trigger_restore(request: RestoreRequest) -> dict:
        """Launch a restore of the backup with the given tag."""
        return orchestrator.trigger_restore(request.tag, request.endpoint).to_dict()

    @app.post(f"{prefix}/update", dependencies=[Depends(verify_api_key)])
    async def trigger_update(request: UpdateRequest | None = None) -> dict:
        """Launch a package upgrade."""
        request = request or UpdateRequest()
        return orchestrator.trigger_update(request.endpoint).to_dict()

    @app.post(f"{prefix}/update-distro", dependencies=[Depends(verify_api_key)])
    async def trigger_update_distro(request: UpdateRequest | None = None) -> dict:
        """Launch a distribution release upgrade."""
        request = request or UpdateRequest()
        return orchestrator.trigger_update_distro(request.endpoint).to_dict()

    @app.get(f"{prefix}/status", dependencies=[Depends(verify_api_key)])
    async def get_status() -> dict:
        """
        Get the running task and the last report of each task.
        """
        return {
            **orchestrator.status(),
            "hostname": orchestrator.hostname,
            "backup_system": config.backup_system.value if config.backup_system else None,
        }

    @app.get(f"{prefix}/config", dependencies=[Depends(verify_api_key)])
    async def get_config() -> dict:
        """
        Get current configuration (sensitive values redacted).
        """
        return {
            "backup_system": config.backup_system.value if config.backup_system else None,
            "storage": config.storage.value,
            "bucket": config.bucket,
            "region": config.region,
            "endpoint_url": config.endpoint_url,
            "access_key": "***" if config.access_key else None,
            "secret_key": "***" if config.secret_key else None,
            "data_path": str(config.data_path),
            "compose_path": str(config.compose_path),
            "docker_socket": str(config.docker_socket),
            "device_id": config.device_id,
            "callback_url": config.callback_url,
            "callback_token": "***" if config.callback_token else None,
            "schedule_cron": config.schedule_cron,
        }


def setup_agent_plugin(
    app: FastAPI,
    config: AgentConfig,
    prefix: str = DEFAULT_PREFIX,
    orchestrator: Orchestrator | None = None,
) -> Orchestrator:
    """
    Set up the agent on a FastAPI app and register its routes.

    Args:
        app: FastAPI application
        config: Agent configuration
        prefix: URL prefix for endpoints
        orchestrator: Pre-built orchestrator (default: built from config)

    Returns:
        The orchestrator serving the routes
    """
    orchestrator = orchestrator or Orchestrator(config)
    app.state.pbagent_config = config
    app.state.pbagent_orchestrator = orchestrator
    register_agent_routes(app, orchestrator, prefix)
    logger.info(
        "agent_plugin_registered",
        prefix=prefix,
        backup_system=config.backup_system.value if config.backup_system else None,
    )
    return orchestrator


def setup_scheduled_backup(config: AgentConfig, orchestrator: Orchestrator) -> AsyncIOScheduler:
    """Start an APScheduler job launching a backup daily at schedule_cron (UTC)."""
    scheduler = AsyncIOScheduler(timezone="UTC")

    hour, minute = map(int, config.schedule_cron.split(":"))

    async def scheduled_backup():
        """Launch the scheduled backup. The guard still applies."""
        endpoint = SCHEDULED_BACKUP_ENDPOINT if orchestrator.reporter else None
        result = orchestrator.trigger_backup(endpoint)
        logger.info(
            "scheduled_backup_triggered",
            status=result.status,
            tag=result.tag,
        )

    scheduler.add_job(
        scheduled_backup,
        trigger=CronTrigger(hour=hour, minute=minute, timezone="UTC"),
        id="pbagent_scheduled_backup",
        replace_existing=True,
    )
    scheduler.start()

    logger.info(
        "scheduler_started",
        schedule=config.schedule_cron,
        next_run=scheduler.get_job("pbagent_scheduled_backup").next_run_time.isoformat(),
    )
    return scheduler


@asynccontextmanager
async def agent_lifespan(
    app: FastAPI,
    config: AgentConfig,
    orchestrator: Orchestrator | None = None,
    prefix: str = DEFAULT_PREFIX,
):
    """
    Lifespan context manager for FastAPI.

        app = FastAPI(lifespan=lambda app: agent_lifespan(app, config))

    Args:
        app: FastAPI application
        config: Agent configuration
        orchestrator: Pre-built orchestrator (default: built from config)
        prefix: URL prefix for endpoints
    """
    logger.info("agent_lifespan_starting")

    orchestrator = setup_agent_plugin(app, config, prefix, orchestrator)

    scheduler = None
    if config.schedule_cron:
        scheduler = setup_scheduled_backup(config, orchestrator)

    logger.info("agent_lifespan_started")

    try:
        yield
    finally:
        logger.info("agent_lifespan_stopping")
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        logger.info("agent_lifespan_stopped")


def get_orchestrator(app: FastAPI) -> Orchestrator:
    """
    Get the agent orchestrator from a FastAPI app.

    Raises:
        RuntimeError: If the agent is not set up
    """
    orchestrator = getattr(app.state, "pbagent_orchestrator", None)
    if orchestrator is None:
        raise RuntimeError("Agent not initialized. Call setup_agent_plugin first.")
    return orchestrator
