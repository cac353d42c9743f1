# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Platform Restore - bring a backup archive back onto the live platform.

The main archive is read forward-only: it is listed once to discover which
members it holds, then reopened for every single extraction. Members are
dispatched on their name prefix, which is what lets archives from older
layouts (flat docker-archive dumps, plain .tar main archives) restore next
to current ones.
"""

import os
from pathlib import Path

import structlog

from pbagent.archive import extract_archive, extract_entry, read_entries, run_blocking
from pbagent.backup.compose import PRIMARY_DB_PASSWORD, read_compose_secret
from pbagent.backup.platform import (
    PRIMARY_DB_MOUNT,
    PRIMARY_DB_OWNER,
    TimeseriesGeneration,
    generation_for_entry,
)
from pbagent.backup.plugins import (
    container_name,
    is_container_plugin,
    plugin_dirs,
    users_with_plugins,
)
from pbagent.backup.session import SessionPaths, remove_path, running_as_root
from pbagent.config import AgentConfig
from pbagent.exceptions import AgentError, OwnershipError, RestoreError
from pbagent.report import OperationReport, StepResult

logger = structlog.get_logger()

# Application data directory inside its container
APPLICATION_MOUNT = "/data"

# Where docker-archive dumps of the older layout unpack inside a container
LEGACY_DUMP_DIR = "/dump"


def agent_owner() -> str:
    """uid:gid of the agent process, owner of files it extracts."""
    return f"{os.getuid()}:{os.getgid()}"


class PlatformRestore:
    """
    Restore pipeline for the platform deployment.

    download() fetches the session archive, restore() applies it and
    restarts the core services, clean() removes local artifacts.
    """

    def __init__(
        self,
        config: AgentConfig,
        hostname: str,
        tag: str,
        docker,
        storage,
    ):
        self.config = config
        self.hostname = hostname
        self.tag = tag
        self.docker = docker
        self.storage = storage
        self.paths = SessionPaths(config.backups_folder, hostname, tag)
        self.app_dir = config.data_path / config.application_container
        self.archive_path: Path = self.paths.archive
        self.timeseries_container = config.timeseries_container

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    async def download(self) -> OperationReport:
        """Create the session folder and fetch the archive, current layout first."""
        report = OperationReport()
        folder = report.record(
            "create_session_folder", await run_blocking(self._create_session_folder)
        )
        if not folder.ok:
            return report

        step = report.record("download_s3", StepResult())
        for name in (self.paths.archive_name, self.paths.legacy_archive_name):
            target = self.paths.backups_folder / name
            if await self.storage.download(name, target):
                self.archive_path = target
                step.note(f"Downloaded {name}")
                break
        else:
            step.fail("Failed downloading from S3")

        logger.info("restore_download_finished", tag=self.tag, status=report.ok)
        return report

    def _create_session_folder(self) -> StepResult:
        step = StepResult()
        try:
            self.paths.folder.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            step.fail(f"Failed to create backup directory: {e}")
        return step

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    async def restore(self) -> OperationReport:
        """
        Apply every recognised archive member, then restart the platform.

        Only a failure to open the archive stops the run; every member and
        the restart are attempted regardless of earlier outcomes.
        """
        report = OperationReport()
        logger.info("restore_started", tag=self.tag, archive=str(self.archive_path))

        listing = report.record("list_entries", StepResult())
        try:
            entries = await run_blocking(read_entries, self.archive_path)
        except AgentError as e:
            listing.fail(f"Failed opening {self.archive_path.name}: {e.message}")
            logger.error("restore_aborted", tag=self.tag, error=str(e))
            return report
        listing.note(f"Found {len(entries)} entries")

        for entry in entries:
            if "/" in entry.strip("/"):
                continue
            if entry.startswith(self.config.application_container):
                report.record("restore_application", await self.restore_application(entry))
            elif entry.startswith(self.config.primary_db_container):
                report.record("restore_primary_database", await self.restore_primary_database(entry))
            elif (generation := generation_for_entry(self.config, entry)) is not None:
                report.record(
                    "restore_timeseries_database",
                    await self.restore_timeseries_database(entry, generation),
                )
            else:
                logger.info("restore_entry_ignored", entry=entry)

        report.record("restart_platform", await self.restart_platform())

        logger.info("restore_completed", tag=self.tag, status=report.ok)
        return report

    async def _chown(self, container: str, owner: str, path: str) -> None:
        result = await self.docker.exec(container, f"chown {owner} {path}")
        if not result:
            raise OwnershipError(
                f"Failed changing ownership of {path} in {container}",
                details={"owner": owner, "error": result.message},
            )

    async def restore_application(self, entry: str) -> StepResult:
        """Replace users/ and certificates/ and bring back plugin containers."""
        step = StepResult()
        app = self.config.application_container

        if not running_as_root():
            # Data written by the container may not be removable by the agent
            for command in (
                f"rm -rf {APPLICATION_MOUNT}/users {APPLICATION_MOUNT}/certificates",
                f"chown {agent_owner()} {APPLICATION_MOUNT}",
            ):
                result = await self.docker.exec(app, command)
                if not result:
                    return step.fail(f"Failed removing {app} installed directories: {result.message}")

        stopped = await self.docker.stop(app)
        if not stopped:
            return step.fail(f"Failed stopping {app} container: {stopped.message}")

        try:
            sub_archive = await run_blocking(
                extract_entry, self.archive_path, entry, self.paths.folder
            )
            await run_blocking(self._replace_application_data, sub_archive)
        except (AgentError, OSError) as e:
            step.fail(f"Failed extracting {app} backup into data directory: {e}")

        step.add_child("plugins", await self.restore_plugins())
        return step

    def _replace_application_data(self, sub_archive: Path) -> None:
        self.app_dir.mkdir(parents=True, exist_ok=True)
        for name in ("users", "certificates"):
            remove_path(self.app_dir / name)
        extract_archive(sub_archive, self.app_dir)
        sub_archive.unlink()

        nested = self.app_dir / "plugins.tar"
        if nested.is_file():
            extract_archive(nested, self.app_dir / "plugins")
            nested.unlink()

    async def restore_plugins(self) -> StepResult:
        """Recreate user networks, then plugin containers rewired onto them."""
        step = StepResult()
        saved = self.app_dir / "plugins"
        if not saved.is_dir():
            return step.note("Platform has no plugins to restore")

        for user_dir in users_with_plugins(self.app_dir / "users"):
            user = user_dir.name
            network = await self.docker.create_network_from_inspect(saved / f"{user}-network.json")
            network_id = network.data if network else None
            if network:
                step.note(f"Restored {user} docker network")
            else:
                step.fail(f"Failed restoring {user} docker network: {network.message}")

            for plugin_dir in plugin_dirs(user_dir):
                name = container_name(user_dir, plugin_dir)
                if not await is_container_plugin(plugin_dir):
                    step.note(f"Ignored {name} restore as it has no container associated")
                    continue

                created = await self.docker.create_container_from_inspect(
                    saved / f"{name}.json", network_id
                )
                if not created:
                    step.fail(f"Failed restoring {name} docker container: {created.message}")
                    continue
                step.note(f"Restored {name} docker container")

                started = await self.docker.start(name)
                if started:
                    step.note(f"Started {name} docker container")
                else:
                    step.fail(f"Failed starting {name} docker container: {started.message}")

        try:
            await run_blocking(remove_path, saved)
        except OSError as e:
            logger.warning("plugins_cleanup_failed", path=str(saved), error=str(e))

        return step

    async def restore_primary_database(self, entry: str) -> StepResult:
        """
        Restore the primary database dump.

        Ownership is flipped twice: to the agent so it can write the dump
        into the mounted data directory, then back to the database user
        that reads it and owns the directory.
        """
        step = StepResult()
        db = self.config.primary_db_container

        try:
            if not running_as_root():
                await self._chown(db, agent_owner(), PRIMARY_DB_MOUNT)

            if entry.endswith(".archive"):
                await run_blocking(
                    extract_entry, self.archive_path, entry, self.config.data_path / db
                )
                dump = f"{PRIMARY_DB_MOUNT}/{entry}"
                command = "mongorestore --gzip --archive={dump} -u {user} -p {password}"
                cleanup = f"rm -f {dump}"
            else:
                # Older layout: docker-archive of the container's /dump
                await self._copy_legacy_dump(db, entry)
                dump = LEGACY_DUMP_DIR
                command = "mongorestore -u {user} -p {password} {dump}"
                cleanup = f"rm -rf {dump}"

            password = await read_compose_secret(self.config.compose_file, PRIMARY_DB_PASSWORD)
            await self._chown(db, PRIMARY_DB_OWNER, PRIMARY_DB_MOUNT)

            restored = await self.docker.exec(
                db,
                command.format(dump=dump, user=self.config.primary_db_user, password=password),
            )
            if not restored:
                step.fail(f"Failed restoring {db} backup: {restored.message}")

            removed = await self.docker.exec(db, cleanup)
            if not removed:
                step.note(f"Left {dump} inside {db}")
        except OwnershipError as e:
            step.fail(e.message)
        except (AgentError, OSError) as e:
            step.fail(f"Failed restoring {db} backup: {e}")

        return step

    async def restore_timeseries_database(
        self, entry: str, generation: TimeseriesGeneration
    ) -> StepResult:
        """Restore a timeseries backup with the same two-phase ownership flip."""
        step = StepResult()
        container = generation.container
        self.timeseries_container = container

        try:
            if not running_as_root():
                await self._chown(container, agent_owner(), generation.mount)

            if "dump-" in entry:
                # Older layout: docker-archive of the container's /dump
                await self._copy_legacy_dump(container, entry)
                dump = LEGACY_DUMP_DIR
            else:
                sub_archive = await run_blocking(
                    extract_entry, self.archive_path, entry, self.paths.folder
                )
                await run_blocking(
                    extract_archive, sub_archive, self.config.data_path / generation.prefix
                )
                await run_blocking(remove_path, sub_archive)
                dump_name = entry[: -len(".tar")] if entry.endswith(".tar") else entry
                dump = f"{generation.mount}/{dump_name}"

            await self._chown(container, generation.owner, generation.mount)

            restored = await self.docker.exec(
                container, generation.restore_command.format(dir=dump)
            )
            if not restored:
                step.fail(f"Failed restoring {container} backup: {restored.message}")

            removed = await self.docker.exec(container, f"rm -rf {dump}")
            if not removed:
                step.note(f"Left {dump} inside {container}")
        except OwnershipError as e:
            step.fail(e.message)
        except (AgentError, OSError) as e:
            step.fail(f"Failed restoring {container} backup: {e}")

        return step

    async def _copy_legacy_dump(self, container: str, entry: str) -> None:
        sub_archive = await run_blocking(
            extract_entry, self.archive_path, entry, self.paths.folder
        )
        try:
            copied = await self.docker.copy_to_container(container, sub_archive, "/")
            if not copied:
                raise RestoreError(
                    f"Failed copying {entry} into {container}",
                    details={"error": copied.message},
                )
        finally:
            await run_blocking(remove_path, sub_archive)

    async def restart_platform(self) -> StepResult:
        """
        Restart primary database, timeseries database and application, in that order.

        The timeseries container is the one a restored entry belonged to, the
        configured current one otherwise.
        """
        step = StepResult()
        for container in (
            self.config.primary_db_container,
            self.timeseries_container,
            self.config.application_container,
        ):
            restarted = await self.docker.restart(container)
            if restarted:
                step.note(f"Restarted {container}")
            else:
                step.fail(f"Failed restarting {container} container: {restarted.message}")
        return step

    # ------------------------------------------------------------------
    # Clean
    # ------------------------------------------------------------------

    async def clean(self) -> OperationReport:
        """Remove the downloaded archive and the session folder, best-effort."""
        report = OperationReport()
        step = report.record("remove_local_files", StepResult())
        for path in (
            self.paths.folder,
            self.paths.backups_folder / self.paths.archive_name,
            self.paths.backups_folder / self.paths.legacy_archive_name,
        ):
            try:
                await run_blocking(remove_path, path)
            except OSError as e:
                logger.warning("restore_cleanup_failed", path=str(path), error=str(e))
                step.fail(f"Failed removing {path}: {e}")
        return report
