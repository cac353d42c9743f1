# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Trigger and worker tests.

Triggers answer synchronously; workers run detached and deliver their
report to the callback endpoint named by the trigger.
"""

import asyncio
import json

import httpx
import pytest

from pbagent.builder import create_config
from pbagent.core import Orchestrator, TriggerResult
from pbagent.integrations.callback import CallbackReporter

from tests.conftest import MiB, no_timeseries, populate_application

TAG = "2024-01-01T00:00:00Z"


class RecordingReporter:
    def __init__(self):
        self.delivered = []

    async def deliver(self, endpoint, payload):
        self.delivered.append((endpoint, payload))
        return True


class BlockingShell:
    """Shell runner that waits until released."""

    def __init__(self, code: int = 0, output: str = ""):
        self.release = asyncio.Event()
        self.commands = []
        self.code = code
        self.output = output

    async def __call__(self, command: str):
        self.commands.append(command)
        await self.release.wait()
        return self.code, self.output


def make_orchestrator(config, docker, storage, **kwargs) -> Orchestrator:
    kwargs.setdefault("reporter", RecordingReporter())
    kwargs.setdefault("root_check", lambda: True)
    return Orchestrator(
        config,
        docker=docker,
        storage=storage,
        hostname="device",
        version_probe=no_timeseries,
        **kwargs,
    )


async def finish(orchestrator: Orchestrator):
    running = orchestrator.guard.current()
    return await running.handle


# ============================================================================
# Test 1: Trigger answers
# ============================================================================

@pytest.mark.asyncio
async def test_busy_answers(test_config, fake_docker, fake_storage):
    """Same task: Already executing. Other task: Executing: <task>."""
    shell = BlockingShell()
    orchestrator = make_orchestrator(test_config, fake_docker, fake_storage, shell_runner=shell)

    first = orchestrator.trigger_update("update_finished")
    assert first.status == "Launched"
    assert first.launched

    assert orchestrator.trigger_update().status == "Already executing"
    assert orchestrator.trigger_backup(tag=TAG).status == "Executing: update"
    assert orchestrator.trigger_restore(TAG).status == "Executing: update"
    assert orchestrator.trigger_update_distro().status == "Executing: update"

    shell.release.set()
    await finish(orchestrator)

    assert orchestrator.trigger_update_distro().status == "Launched"
    await finish(orchestrator)


@pytest.mark.asyncio
async def test_backups_not_configured(temp_dir, fake_docker):
    config = create_config(
        bucket="",
        access_key="",
        secret_key="",
        backup_system=None,
        data_path=temp_dir,
    )
    orchestrator = make_orchestrator(config, fake_docker, None)

    backup = orchestrator.trigger_backup()
    restore = orchestrator.trigger_restore(TAG)

    assert backup == TriggerResult("ERROR", error="Can't launch backup. Set backups property.")
    assert restore.error == "Can't launch restore. Set backups property."
    assert not orchestrator.guard.is_busy()


@pytest.mark.asyncio
async def test_restore_requires_tag(test_config, fake_docker, fake_storage):
    orchestrator = make_orchestrator(test_config, fake_docker, fake_storage)
    assert orchestrator.trigger_restore("").status == "ERROR"


@pytest.mark.asyncio
@pytest.mark.parametrize("tag", ["../victim", "/etc", "/", "2024-01-01", "2024-01-01T00:00:00Z/.."])
async def test_tags_outside_backups_folder_refused(
    test_config, fake_docker, fake_storage, data_path, tag
):
    """Only timestamp tags are accepted; nothing outside backups/ is touched."""
    victim = data_path / "victim"
    victim.mkdir()
    (victim / "keep.txt").write_text("keep")
    orchestrator = make_orchestrator(test_config, fake_docker, fake_storage)

    backup = orchestrator.trigger_backup("backup_finished", tag)
    restore = orchestrator.trigger_restore(tag, "restore_finished")

    assert backup.status == "ERROR"
    assert restore.status == "ERROR"
    assert tag in backup.error
    assert not orchestrator.guard.is_busy()
    assert (victim / "keep.txt").read_text() == "keep"


@pytest.mark.asyncio
async def test_update_requires_root(test_config, fake_docker, fake_storage):
    orchestrator = make_orchestrator(
        test_config, fake_docker, fake_storage, root_check=lambda: False
    )
    result = orchestrator.trigger_update()

    assert result.status == "ERROR"
    assert not orchestrator.guard.is_busy()


def test_trigger_result_to_dict():
    assert TriggerResult("Launched", tag=TAG, task_id="01J").to_dict() == {
        "status": "Launched",
        "tag": TAG,
        "task_id": "01J",
    }


# ============================================================================
# Test 2: Backup worker
# ============================================================================

@pytest.mark.asyncio
async def test_backup_worker_reports(test_config, fake_docker, fake_storage, data_path):
    populate_application(data_path, MiB)
    reporter = RecordingReporter()
    orchestrator = make_orchestrator(test_config, fake_docker, fake_storage, reporter=reporter)

    result = orchestrator.trigger_backup("backup_finished", TAG)
    assert result.status == "Launched"
    assert result.tag == TAG
    payload = await finish(orchestrator)

    assert reporter.delivered == [("backup_finished", payload)]
    assert payload["device"] == "device-01"
    assert payload["hostname"] == "device"
    assert payload["backup"]["status"] is True
    assert list(payload["backup"]["operation"]) == ["backup", "upload", "clean"]
    assert fake_storage.uploads == [f"device_{TAG}.tar.gz"]
    assert not (data_path / "backups" / f"device_{TAG}.tar.gz").exists()
    json.dumps(payload)


@pytest.mark.asyncio
async def test_clean_runs_when_upload_fails(test_config, fake_docker, fake_storage, data_path):
    """A failed upload still removes the local archive and session folder."""
    populate_application(data_path, MiB)
    fake_storage.fail_uploads = True
    orchestrator = make_orchestrator(test_config, fake_docker, fake_storage)

    orchestrator.trigger_backup("backup_finished", TAG)
    payload = await finish(orchestrator)

    operation = payload["backup"]["operation"]
    assert payload["backup"]["status"] is False
    assert operation["upload"]["status"] is False
    assert operation["clean"]["status"] is True
    assert not (data_path / "backups" / f"device_{TAG}.tar.gz").exists()
    assert not (data_path / "backups" / TAG).exists()


@pytest.mark.asyncio
async def test_no_delivery_without_endpoint(test_config, fake_docker, fake_storage):
    reporter = RecordingReporter()
    orchestrator = make_orchestrator(test_config, fake_docker, fake_storage, reporter=reporter)

    orchestrator.trigger_backup(tag=TAG)
    await finish(orchestrator)

    assert reporter.delivered == []
    assert orchestrator.status()["last_reports"]["backup"]["hostname"] == "device"


# ============================================================================
# Test 3: Restore and update workers
# ============================================================================

@pytest.mark.asyncio
async def test_restore_worker_skips_restore_after_failed_download(
    test_config, fake_docker, fake_storage
):
    orchestrator = make_orchestrator(test_config, fake_docker, fake_storage)

    orchestrator.trigger_restore(TAG, "restore_finished")
    payload = await finish(orchestrator)

    operation = payload["restore"]["operation"]
    assert payload["restore"]["status"] is False
    assert list(operation) == ["download", "clean"]
    assert fake_docker.restarts == []


@pytest.mark.asyncio
async def test_restore_worker_round_trip(test_config, fake_docker, fake_storage, data_path, monkeypatch):
    monkeypatch.setattr("pbagent.backup.restore.running_as_root", lambda: False)
    populate_application(data_path, MiB)
    orchestrator = make_orchestrator(test_config, fake_docker, fake_storage)

    orchestrator.trigger_backup(tag=TAG)
    await finish(orchestrator)
    orchestrator.trigger_restore(TAG, "restore_finished")
    payload = await finish(orchestrator)

    assert payload["restore"]["status"] is True
    assert list(payload["restore"]["operation"]) == ["download", "restore", "clean"]
    assert fake_docker.restarts == ["mongodb", "influxdb2", "thinger"]


@pytest.mark.asyncio
async def test_update_failure_reports_output(test_config, fake_docker, fake_storage):
    shell = BlockingShell(code=100, output="Reading package lists...\nE: Could not get lock\n")
    shell.release.set()
    orchestrator = make_orchestrator(test_config, fake_docker, fake_storage, shell_runner=shell)

    orchestrator.trigger_update("update_finished")
    payload = await finish(orchestrator)

    step = payload["update"]["operation"]["update"]
    assert step["status"] is False
    assert step["error"] == ["Command exited with code 100"]
    assert "E: Could not get lock" in step["msg"]
    assert shell.commands[0].startswith("sudo apt -y update")


@pytest.mark.asyncio
async def test_status_while_running(test_config, fake_docker, fake_storage):
    shell = BlockingShell()
    orchestrator = make_orchestrator(test_config, fake_docker, fake_storage, shell_runner=shell)

    launched = orchestrator.trigger_update_distro()
    status = orchestrator.status()

    assert status["running"] == "update_distro"
    assert status["task_id"] == launched.task_id

    shell.release.set()
    await finish(orchestrator)
    assert orchestrator.status()["running"] is None


# ============================================================================
# Test 4: Callback delivery
# ============================================================================

@pytest.mark.asyncio
async def test_callback_reporter_posts_json():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200)

    reporter = CallbackReporter(
        "https://console.example.com/v1/devices/",
        token="device-token",
        transport=httpx.MockTransport(handler),
    )

    assert await reporter.deliver("backup_finished", {"device": "d1", "backup": {"status": True}})

    request = seen[0]
    assert str(request.url) == "https://console.example.com/v1/devices/backup_finished"
    assert request.headers["Authorization"] == "Bearer device-token"
    assert json.loads(request.content) == {"device": "d1", "backup": {"status": True}}


@pytest.mark.asyncio
async def test_callback_failure_returns_false():
    reporter = CallbackReporter(
        "https://console.example.com",
        transport=httpx.MockTransport(lambda request: httpx.Response(503)),
    )
    assert await reporter.deliver("backup_finished", {}) is False
