# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Task Exclusivity Guard - at most one maintenance task at a time.

The guard holds a single slot describing the running maintenance task
(update, update_distro, backup or restore). Admission is decided by a
non-blocking poll of the slot's completion handle: a trigger arriving while
a task is running is rejected immediately, never queued and never waited on.

Workers are detached asyncio tasks. The guard never cancels or times them
out; a stuck worker is only cleared by restarting the process.
"""

import asyncio
import threading
from dataclasses import dataclass, field
from datetime import datetime, UTC
from typing import Any, Awaitable, Callable

import structlog
from ulid import ULID

logger = structlog.get_logger()


@dataclass
class MaintenanceTask:
    """The task occupying the guard slot."""

    name: str
    handle: asyncio.Future | None = None
    tag: str | None = None
    task_id: str = field(default_factory=lambda: str(ULID()))
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def finished(self) -> bool:
        # An unset handle counts as finished
        return self.handle is None or self.handle.done()


@dataclass
class Admission:
    """Outcome of a submit: accepted, or busy with the running task."""

    accepted: bool
    task: MaintenanceTask | None = None
    running: MaintenanceTask | None = None


class TaskGuard:
    """Compare-and-swap guarded slot for the running maintenance task."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._slot: MaintenanceTask | None = None

    def current(self) -> MaintenanceTask | None:
        """Return the running task, or None if the slot is free."""
        with self._lock:
            return self._poll()

    def is_busy(self) -> bool:
        return self.current() is not None

    def submit(
        self,
        name: str,
        worker: Callable[[], Awaitable[Any]],
        tag: str | None = None,
    ) -> Admission:
        """
        Admit `worker` as task `name` if no task is running.

        Must be called from inside a running event loop. The worker is
        scheduled as a detached task owned by the guard slot.

        Args:
            name: Task name (update, update_distro, backup, restore)
            worker: Zero-argument coroutine function running the task
            tag: Optional session tag for reporting

        Returns:
            Admission with accepted=True, or accepted=False and the
            running task
        """
        with self._lock:
            running = self._poll()
            if running is not None:
                logger.info(
                    "maintenance_task_rejected",
                    requested=name,
                    running=running.name,
                    running_id=running.task_id,
                )
                return Admission(accepted=False, running=running)

            task = MaintenanceTask(name=name, tag=tag)
            task.handle = asyncio.get_running_loop().create_task(
                worker(), name=f"pbagent-{name}-{task.task_id}"
            )
            self._slot = task

        logger.info(
            "maintenance_task_started",
            task=name,
            task_id=task.task_id,
            tag=tag,
        )
        return Admission(accepted=True, task=task)

    def _poll(self) -> MaintenanceTask | None:
        # Caller holds the lock
        if self._slot is not None and self._slot.finished:
            logger.debug("maintenance_task_cleared", task=self._slot.name)
            self._slot = None
        return self._slot
