# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Platform Backup - snapshot of the application and its databases.

One backup session produces, under <data>/backups/<tag>/:

    <app>-<tag>.tar          users/ and certificates/ of the application,
                             plus plugins.tar with network and container
                             inspect documents of docker-managed plugins
    <db>-<tag>.archive       gzip archive dump of the primary database
    influxdb2-<tag>.tar      timeseries database backup (when present)

and folds them into <data>/backups/<hostname>_<tag>.tar.gz, one entry each.
The restore side dispatches on those entry name prefixes.
"""

import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict

import structlog

from pbagent.archive import create_from_paths, run_blocking
from pbagent.backup.compose import (
    PRIMARY_DB_PASSWORD,
    TIMESERIES_ADMIN_TOKEN,
    read_compose_secret,
)
from pbagent.backup.plugins import (
    container_name,
    is_container_plugin,
    plugin_dirs,
    users_with_plugins,
)
from pbagent.backup.session import (
    SessionPaths,
    probe_timeseries_version,
    remove_path,
)
from pbagent.config import AgentConfig
from pbagent.exceptions import AgentError
from pbagent.report import OperationReport, StepResult

logger = structlog.get_logger()

# Primary database data directory inside its container
PRIMARY_DB_MOUNT = "/data/db"

# Primary database process owner, also the data directory's original owner
PRIMARY_DB_OWNER = "999:999"

VersionProbe = Callable[[], Awaitable[str | None]]


@dataclass(frozen=True)
class TimeseriesGeneration:
    """One CLI generation of the timeseries database."""

    prefix: str
    container: str
    mount: str
    owner: str
    backup_command: str
    restore_command: str
    needs_token: bool


def timeseries_generations(config: AgentConfig) -> Dict[str, TimeseriesGeneration]:
    return {
        "v2": TimeseriesGeneration(
            prefix="influxdb2",
            container=config.timeseries_container,
            mount="/var/lib/influxdb2",
            owner="0:0",
            backup_command="influx backup {dir} -t {token}",
            restore_command="influx restore {dir} --full",
            needs_token=True,
        ),
        "v1": TimeseriesGeneration(
            prefix="influxdb",
            container=config.legacy_timeseries_container,
            mount="/var/lib/influxdb",
            owner="0:0",
            backup_command="influxd backup -portable {dir}",
            restore_command="influxd restore -portable {dir}",
            needs_token=False,
        ),
    }


def select_generation(config: AgentConfig, version: str | None) -> TimeseriesGeneration | None:
    """Pick the command ladder for a reported version (v2.x, 2.x or 1.x)."""
    if not version:
        return None
    generations = timeseries_generations(config)
    if version.startswith(("v2.", "2.")):
        return generations["v2"]
    if version.startswith(("v1.", "1.")):
        return generations["v1"]
    return None


def generation_for_entry(config: AgentConfig, entry: str) -> TimeseriesGeneration | None:
    """Generation of an archive entry, by name prefix."""
    generations = timeseries_generations(config)
    if entry.startswith("influxdb2"):
        return generations["v2"]
    if entry.startswith("influxdb"):
        return generations["v1"]
    return None


class PlatformBackup:
    """
    Backup pipeline for the platform deployment.

    create() snapshots everything into the session archive, upload() sends
    it to storage and clean() removes local artifacts. Each returns its own
    OperationReport.
    """

    def __init__(
        self,
        config: AgentConfig,
        hostname: str,
        tag: str,
        docker,
        storage,
        version_probe: VersionProbe | None = None,
    ):
        self.config = config
        self.hostname = hostname
        self.tag = tag
        self.docker = docker
        self.storage = storage
        self.paths = SessionPaths(config.backups_folder, hostname, tag)
        self.app_dir = config.data_path / config.application_container
        self._version_probe = version_probe or (
            lambda: probe_timeseries_version(config.timeseries_url)
        )

    @property
    def archive(self) -> Path:
        return self.paths.archive

    async def create(self) -> OperationReport:
        """
        Snapshot application data and databases into the session archive.

        Every step is attempted and recorded; only a session folder failure
        stops the run.
        """
        report = OperationReport()
        logger.info("backup_started", tag=self.tag, hostname=self.hostname)

        folder = report.record(
            "create_session_folder", await run_blocking(self._create_session_folder)
        )
        if not folder.ok:
            logger.error("backup_aborted", tag=self.tag, error=folder.error)
            return report

        report.record("backup_application", await self.backup_application())
        report.record("backup_primary_database", await self.backup_primary_database())
        report.record("backup_timeseries_database", await self.backup_timeseries_database())
        report.record("assemble_archive", await self.assemble_archive())

        logger.info(
            "backup_completed",
            tag=self.tag,
            status=report.ok,
            archive=str(self.archive),
        )
        return report

    def _create_session_folder(self) -> StepResult:
        step = StepResult()
        try:
            remove_path(self.paths.folder)
            self.paths.folder.mkdir(parents=True)
        except OSError as e:
            step.fail(f"Failed to create backup directory: {e}")
        return step

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    async def backup_application(self) -> StepResult:
        """Archive users/ and certificates/ with plugin inspect documents."""
        step = StepResult()
        users_dir = self.app_dir / "users"
        if not users_dir.is_dir():
            step.note("Platform has no users folder")
            return step

        folder = self.paths.folder
        staging = folder / "plugins"
        nested = folder / "plugins.tar"
        target = folder / f"{self.config.application_container}-{self.tag}.tar"

        try:
            plugins = await self._backup_plugins(users_dir, staging)
            if plugins is not None:
                step.add_child("plugins", plugins)

            sources = [(users_dir, "users")]
            certificates = self.app_dir / "certificates"
            if certificates.is_dir():
                sources.append((certificates, "certificates"))

            if staging.is_dir() and any(staging.iterdir()):
                await run_blocking(
                    create_from_paths,
                    nested,
                    [(p, p.name) for p in sorted(staging.iterdir())],
                )
                sources.append((nested, "plugins.tar"))

            count = await run_blocking(create_from_paths, target, sources)
            step.note(f"Archived {count} application entries")
        except (AgentError, OSError) as e:
            step.fail(f"Failed archiving application data: {e}")
        finally:
            await run_blocking(self._remove_staging, staging, nested)

        return step

    def _remove_staging(self, *paths: Path) -> None:
        for path in paths:
            try:
                remove_path(path)
            except OSError as e:
                logger.warning("staging_cleanup_failed", path=str(path), error=str(e))

    async def _backup_plugins(self, users_dir: Path, staging: Path) -> StepResult | None:
        users = users_with_plugins(users_dir)
        if not users:
            return None

        step = StepResult()
        staging.mkdir(parents=True, exist_ok=True)

        for user_dir in users:
            user = user_dir.name
            network = await self.docker.inspect_network(user, staging, f"{user}-network.json")
            if network:
                step.note(f"Backed up {user} docker network")
            else:
                step.fail(f"Failed backing up {user} docker network: {network.message}")

            for plugin_dir in plugin_dirs(user_dir):
                name = container_name(user_dir, plugin_dir)
                if not await is_container_plugin(plugin_dir):
                    step.note(f"Ignored {name} backup as it has no container associated")
                    continue
                inspected = await self.docker.inspect_container(name, staging)
                if inspected:
                    step.note(f"Backed up {name} docker container")
                else:
                    step.fail(f"Failed backing up {name} docker container: {inspected.message}")

        return step

    # ------------------------------------------------------------------
    # Databases
    # ------------------------------------------------------------------

    async def backup_primary_database(self) -> StepResult:
        """Dump the primary database into its mounted data directory and collect it."""
        step = StepResult()
        db = self.config.primary_db_container

        try:
            password = await read_compose_secret(self.config.compose_file, PRIMARY_DB_PASSWORD)
        except AgentError as e:
            return step.fail(e.message)

        dump_name = f"{db}-{self.tag}.archive"
        container_path = f"{PRIMARY_DB_MOUNT}/{dump_name}"

        dumped = await self.docker.exec(
            db,
            f"mongodump -u {self.config.primary_db_user} -p {password} "
            f"--gzip --archive={container_path}",
        )
        if not dumped:
            return step.fail(f"Failed executing {db} backup: {dumped.message}")

        host_dump = self.config.data_path / db / dump_name
        try:
            await run_blocking(shutil.copy2, host_dump, self.paths.folder / dump_name)
        except OSError as e:
            step.fail(f"Failed collecting {db} dump: {e}")

        removed = await self.docker.exec(db, f"rm -f {container_path}")
        if not removed:
            logger.warning("dump_left_in_container", container=db, path=container_path)
            step.note(f"Left {container_path} inside {db}")

        return step

    async def backup_timeseries_database(self) -> StepResult:
        """Back up the timeseries database with the command set of its version."""
        step = StepResult()

        version = await self._version_probe()
        generation = select_generation(self.config, version)
        if generation is None:
            logger.info("timeseries_database_skipped", version=version)
            return step.note("No timeseries database detected")

        token = ""
        if generation.needs_token:
            try:
                token = await read_compose_secret(self.config.compose_file, TIMESERIES_ADMIN_TOKEN)
            except AgentError as e:
                return step.fail(e.message)

        dump_name = f"{generation.prefix}-{self.tag}"
        container_dir = f"{generation.mount}/{dump_name}"

        dumped = await self.docker.exec(
            generation.container,
            generation.backup_command.format(dir=container_dir, token=token),
        )
        if not dumped:
            return step.fail(f"Failed executing {generation.container} backup: {dumped.message}")

        host_dir = self.config.data_path / generation.prefix / dump_name
        try:
            await run_blocking(
                create_from_paths,
                self.paths.folder / f"{dump_name}.tar",
                [(host_dir, dump_name)],
            )
        except (AgentError, OSError) as e:
            step.fail(f"Failed archiving {generation.container} backup: {e}")

        removed = await self.docker.exec(generation.container, f"rm -rf {container_dir}")
        if not removed:
            logger.warning("dump_left_in_container", container=generation.container, path=container_dir)
            step.note(f"Left {container_dir} inside {generation.container}")

        step.note(f"Backed up timeseries database {version}")
        return step

    async def assemble_archive(self) -> StepResult:
        """Fold every session file into the main archive, one entry each."""
        step = StepResult()
        try:
            await run_blocking(remove_path, self.archive)
            files = sorted(self.paths.folder.iterdir())
            count = await run_blocking(
                create_from_paths, self.archive, [(p, p.name) for p in files]
            )
            step.note(f"Archived {count} entries into {self.paths.archive_name}")
        except (AgentError, OSError) as e:
            step.fail(f"Failed creating {self.paths.archive_name}: {e}")
        return step

    # ------------------------------------------------------------------
    # Upload and clean
    # ------------------------------------------------------------------

    async def upload(self) -> OperationReport:
        report = OperationReport()
        step = report.record("upload_s3", StepResult())

        if not self.archive.is_file():
            step.fail(f"No backup archive to upload: {self.paths.archive_name}")
        elif await self.storage.upload(self.archive, self.paths.archive_name):
            step.note(f"Uploaded {self.paths.archive_name}")
        else:
            step.fail("Failed uploading to S3")

        logger.info("backup_upload_finished", tag=self.tag, status=report.ok)
        return report

    async def clean(self) -> OperationReport:
        report = OperationReport()
        step = report.record("remove_local_files", StepResult())
        for path in (self.paths.folder, self.archive):
            try:
                await run_blocking(remove_path, path)
            except OSError as e:
                step.fail(f"Failed removing {path}: {e}")
        return report
