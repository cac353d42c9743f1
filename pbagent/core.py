# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Agent Core - binds triggers to maintenance workers.

Triggers answer immediately: the guard either admits the operation, which
then runs as a detached worker, or reports what is already running. Each
worker builds an OperationReport and delivers it to the callback endpoint
named by the trigger, whether the operation succeeded or not.
"""

import asyncio
import os
import socket
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, Tuple

import structlog

from pbagent.backup import create_backup, create_restore, is_valid_tag, new_tag
from pbagent.config import AgentConfig
from pbagent.docker import DockerClient
from pbagent.errors import (
    explain_backups_not_configured,
    explain_invalid_tag,
    explain_missing_restore_tag,
    explain_update_requires_root,
)
from pbagent.guard import TaskGuard
from pbagent.integrations.callback import CallbackReporter
from pbagent.report import OperationReport, StepResult
from pbagent.storage import S3Client

logger = structlog.get_logger()

STATUS_LAUNCHED = "Launched"
STATUS_ALREADY_EXECUTING = "Already executing"
STATUS_ERROR = "ERROR"

UPDATE_COMMANDS = {
    "update": (
        "sudo apt -y update && sudo DEBIAN_FRONTEND=noninteractive DEBIAN_PRIORITY=critical "
        "UCF_FORCE_CONFFOLD=1 apt -qq -y -o Dpkg::Options::=--force-confdef "
        "-o Dpkg::Options::=--force-confold upgrade"
    ),
    "update_distro": (
        "sudo apt -y update && sudo do-release-upgrade -f DistUpgradeViewNonInteractive"
    ),
}

ShellRunner = Callable[[str], Awaitable[Tuple[int, str]]]


@dataclass
class TriggerResult:
    """Synchronous answer to a trigger."""

    status: str
    error: str | None = None
    tag: str | None = None
    task_id: str | None = None

    @property
    def launched(self) -> bool:
        return self.status == STATUS_LAUNCHED

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


async def run_shell(command: str) -> Tuple[int, str]:
    """Run a shell command, returning (exit code, combined output)."""
    process = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    output, _ = await process.communicate()
    return process.returncode, output.decode("utf-8", errors="replace")


class Orchestrator:
    """
    Entry point for backup, restore and update triggers.

    All collaborators are injectable; defaults are built from the config.
    """

    def __init__(
        self,
        config: AgentConfig,
        guard: TaskGuard | None = None,
        docker=None,
        storage=None,
        reporter=None,
        hostname: str | None = None,
        version_probe=None,
        shell_runner: ShellRunner | None = None,
        root_check: Callable[[], bool] | None = None,
    ):
        self.config = config
        self.guard = guard or TaskGuard()
        self.docker = docker or DockerClient.from_config(config)
        if storage is None and config.backup_system is not None:
            storage = S3Client.from_config(config)
        self.storage = storage
        if reporter is None and config.callback_url:
            reporter = CallbackReporter(config.callback_url, config.callback_token)
        self.reporter = reporter
        self.hostname = hostname or socket.gethostname()
        self.version_probe = version_probe
        self._shell_runner = shell_runner or run_shell
        self._root_check = root_check or (lambda: os.geteuid() == 0)
        self.last_reports: Dict[str, Dict[str, Any]] = {}

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def trigger_backup(self, endpoint: str | None = None, tag: str | None = None) -> TriggerResult:
        if self.config.backup_system is None:
            return TriggerResult(STATUS_ERROR, error=explain_backups_not_configured("backup"))
        tag = tag or new_tag()
        if not is_valid_tag(tag):
            return TriggerResult(STATUS_ERROR, error=explain_invalid_tag(tag))
        return self._submit("backup", lambda: self.run_backup(tag, endpoint), tag)

    def trigger_restore(self, tag: str | None, endpoint: str | None = None) -> TriggerResult:
        if self.config.backup_system is None:
            return TriggerResult(STATUS_ERROR, error=explain_backups_not_configured("restore"))
        if not tag:
            return TriggerResult(STATUS_ERROR, error=explain_missing_restore_tag())
        if not is_valid_tag(tag):
            return TriggerResult(STATUS_ERROR, error=explain_invalid_tag(tag))
        return self._submit("restore", lambda: self.run_restore(tag, endpoint), tag)

    def trigger_update(self, endpoint: str | None = None) -> TriggerResult:
        return self._trigger_update("update", endpoint)

    def trigger_update_distro(self, endpoint: str | None = None) -> TriggerResult:
        return self._trigger_update("update_distro", endpoint)

    def _trigger_update(self, name: str, endpoint: str | None) -> TriggerResult:
        if not self._root_check():
            return TriggerResult(STATUS_ERROR, error=explain_update_requires_root())
        return self._submit(name, lambda: self.run_update(name, endpoint), None)

    def _submit(self, name: str, worker, tag: str | None) -> TriggerResult:
        admission = self.guard.submit(name, worker, tag)
        if admission.accepted:
            return TriggerResult(STATUS_LAUNCHED, tag=tag, task_id=admission.task.task_id)

        running = admission.running
        if running.name == name:
            status = STATUS_ALREADY_EXECUTING
        else:
            status = f"Executing: {running.name}"
        return TriggerResult(status, tag=running.tag, task_id=running.task_id)

    def status(self) -> Dict[str, Any]:
        running = self.guard.current()
        return {
            "running": running.name if running else None,
            "task_id": running.task_id if running else None,
            "tag": running.tag if running else None,
            "started_at": running.started_at.isoformat() if running else None,
            "last_reports": dict(self.last_reports),
        }

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def run_backup(self, tag: str, endpoint: str | None = None) -> Dict[str, Any]:
        """Backup, upload, then clean whatever the upload returned."""
        report = OperationReport()
        try:
            backup = create_backup(
                self.config,
                self.hostname,
                tag,
                self.docker,
                self.storage,
                version_probe=self.version_probe,
            )
            logger.info("backup_worker_creating", tag=tag)
            report.record("backup", await backup.create())
            logger.info("backup_worker_uploading", tag=tag)
            uploaded = report.record("upload", await backup.upload())
            if not uploaded.ok:
                logger.warning("backup_upload_failed", tag=tag, archive=str(backup.archive))

            logger.info("backup_worker_cleaning", tag=tag)
            report.record("clean", await backup.clean())
        except Exception as e:
            logger.error("backup_worker_failed", tag=tag, error=str(e))
            report.record("worker", StepResult().fail(f"Backup worker failed: {e}"))

        return await self._finish("backup", report, endpoint)

    async def run_restore(self, tag: str, endpoint: str | None = None) -> Dict[str, Any]:
        """Download, restore (only if downloaded), then clean."""
        report = OperationReport()
        try:
            restore = create_restore(self.config, self.hostname, tag, self.docker, self.storage)
            logger.info("restore_worker_downloading", tag=tag)
            downloaded = report.record("download", await restore.download())

            if downloaded.ok:
                logger.info("restore_worker_restoring", tag=tag)
                report.record("restore", await restore.restore())
            else:
                logger.error("restore_download_failed", tag=tag)

            logger.info("restore_worker_cleaning", tag=tag)
            report.record("clean", await restore.clean())
        except Exception as e:
            logger.error("restore_worker_failed", tag=tag, error=str(e))
            report.record("worker", StepResult().fail(f"Restore worker failed: {e}"))

        return await self._finish("restore", report, endpoint)

    async def run_update(self, name: str, endpoint: str | None = None) -> Dict[str, Any]:
        """Upgrade system packages (update) or the distribution release (update_distro)."""
        report = OperationReport()
        step = report.record(name, StepResult())
        try:
            code, output = await self._shell_runner(UPDATE_COMMANDS[name])
            if code != 0:
                step.fail(f"Command exited with code {code}")
                tail = output.strip().splitlines()[-5:]
                for line in tail:
                    step.note(line)
        except Exception as e:
            logger.error("update_worker_failed", task=name, error=str(e))
            step.fail(f"Update failed: {e}")

        return await self._finish(name, report, endpoint)

    async def _finish(self, task: str, report: OperationReport, endpoint: str | None) -> Dict[str, Any]:
        payload = {
            "device": self.config.device_id,
            "hostname": self.hostname,
            task: report.to_dict(),
        }
        self.last_reports[task] = payload
        logger.info("maintenance_task_finished", task=task, status=report.ok)

        if endpoint and self.reporter is not None:
            await self.reporter.deliver(endpoint, payload)
        elif endpoint:
            logger.warning("report_not_delivered", task=task, reason="no callback configured")
        return payload
