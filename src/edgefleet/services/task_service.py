"""Business logic for the device task queue: enqueue, poll, report."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
import weakref
from datetime import timedelta
from typing import Any

from edgefleet.dao.task_dao import TaskDAO
from edgefleet.models.task import TERMINAL_STATUSES, DeviceTask, TaskStatus, TaskType
from edgefleet.utils.time import Time

logger = logging.getLogger(__name__)

_TIMED_OUT_RESULT = {"error": "timed out waiting for report"}


class UnknownTaskTypeError(Exception):
    """Raised when a task type is not in the recognized set."""


class InvalidTaskPayloadError(Exception):
    """Raised when a task payload is not a JSON object."""


class InvalidReportStatusError(Exception):
    """Raised when a report carries a non-terminal status."""


class TaskNotFoundError(Exception):
    """Raised when the task does not exist or belongs to another device."""


class TaskNotRunningError(Exception):
    """Raised when a report targets a task that is not RUNNING."""


class TaskService:
    """Built once at startup with its DAO pre-wired.

    Polls for the same device are serialized in-process by a per-device
    lock, and across processes by the QUEUED -> RUNNING compare-and-set
    tagged with a per-poll delivery id.
    """

    def __init__(
        self,
        task_dao: TaskDAO,
        *,
        batch_size: int = 5,
        running_timeout_seconds: int = 900,
    ) -> None:
        self._dao = task_dao
        self._batch_size = batch_size
        self._running_timeout = (
            timedelta(seconds=running_timeout_seconds)
            if running_timeout_seconds > 0 else None
        )
        self._poll_locks: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @staticmethod
    def recognized_types() -> list[str]:
        """Task types accepted by enqueue."""
        return [t.value for t in TaskType]

    async def enqueue(
        self,
        device_id: str,
        task_type: str,
        payload: dict[str, Any] | None,
        created_by: str | None = None,
    ) -> dict[str, Any]:
        """Queue a task. The device need not exist or be enrolled yet.

        Raises:
            UnknownTaskTypeError: If ``task_type`` is not recognized.
            InvalidTaskPayloadError: If ``payload`` is not an object or null.
        """
        if task_type not in self.recognized_types():
            raise UnknownTaskTypeError(f"Unknown task type: {task_type}")
        if payload is not None and not isinstance(payload, dict):
            raise InvalidTaskPayloadError("payload must be a JSON object")
        payload_json = json.dumps(payload) if payload is not None else None
        async with self._dao.transaction():
            task = await self._dao.create_task(
                device_id=device_id,
                task_type=task_type,
                payload=payload_json,
                created_by=created_by,
            )
            await self._dao.commit()
        logger.info("Queued task %s (%s) for device %s", task.id, task_type, device_id)
        return self.task_to_dict(task)

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        """Return the poll lock for a device, creating it on demand."""
        lock = self._poll_locks.get(device_id)
        if lock is None:
            lock = asyncio.Lock()
            self._poll_locks[device_id] = lock
        return lock

    async def poll(self, device_id: str) -> list[dict[str, Any]]:
        """Deliver the oldest queued tasks and mark them RUNNING.

        Reading the page and marking it RUNNING happen in one transaction;
        a task returned here is never returned by another poll.

        Returns:
            Up to ``batch_size`` poll-format dicts, oldest first.
        """
        delivery_id = uuid.uuid4().hex
        async with self._lock_for(device_id), self._dao.transaction():
            expired = 0
            if self._running_timeout is not None:
                expired = await self._dao.fail_stale_running(
                    device_id,
                    Time.now() - self._running_timeout,
                    json.dumps(_TIMED_OUT_RESULT),
                )
            task_ids = await self._dao.list_queued_ids(device_id, self._batch_size)
            tasks: list[DeviceTask] = []
            if task_ids:
                await self._dao.mark_running(task_ids, delivery_id)
                tasks = await self._dao.list_delivered(delivery_id)
            if expired or task_ids:
                await self._dao.commit()
        if expired:
            logger.warning(
                "Failed %d task(s) for device %s: no report within %s",
                expired, device_id, self._running_timeout,
            )
        if tasks:
            logger.info(
                "Delivered %d task(s) to device %s: %s",
                len(tasks), device_id, [t.id for t in tasks],
            )
        return [self.task_to_poll_dict(t) for t in tasks]

    async def report(
        self,
        device_id: str,
        task_id: int,
        status: str,
        result: Any,
    ) -> dict[str, Any]:
        """Store the terminal outcome reported by the owning device.

        Raises:
            InvalidReportStatusError: If ``status`` is not DONE or FAILED.
            TaskNotFoundError: If the task is unknown or not this device's.
            TaskNotRunningError: If the task is not currently RUNNING.
        """
        if status not in TERMINAL_STATUSES:
            raise InvalidReportStatusError("status must be DONE or FAILED")
        result_json = json.dumps(result)
        async with self._dao.transaction():
            task = await self._dao.find_by_id(task_id)
            if task is None or task.device_id != device_id:
                logger.warning(
                    "Device %s reported on task %s it does not own", device_id, task_id,
                )
                raise TaskNotFoundError("Task not found")
            if not await self._dao.mark_terminal(task, status, result_json):
                raise TaskNotRunningError(f"Task is {task.status}, not RUNNING")
            await self._dao.commit()
        logger.info("Device %s reported task %s %s", device_id, task_id, status)
        return self.task_to_dict(task)

    async def list_tasks(
        self, device_id: str, status: str | None = None,
    ) -> list[dict[str, Any]]:
        """List a device's tasks, optionally filtered by status."""
        async with self._dao.transaction():
            tasks = await self._dao.list_by_device(device_id, status=status)
        return [self.task_to_dict(t) for t in tasks]

    async def get_task(self, task_id: int) -> dict[str, Any]:
        """Get a single task by id.

        Raises:
            TaskNotFoundError: If the task does not exist.
        """
        async with self._dao.transaction():
            task = await self._dao.find_by_id(task_id)
        if task is None:
            raise TaskNotFoundError("Task not found")
        return self.task_to_dict(task)

    @staticmethod
    def task_to_dict(task: DeviceTask) -> dict[str, Any]:
        """Serialize a task to a full dict for admin views."""
        return {
            "id": task.id,
            "device_id": task.device_id,
            "type": task.type,
            "payload": json.loads(task.payload) if task.payload else None,
            "status": task.status,
            "result": json.loads(task.result) if task.result else None,
            "created_by": task.created_by,
            "created_at": Time.isoformat(task.created_at),
            "delivered_at": Time.isoformat(task.delivered_at),
            "completed_at": Time.isoformat(task.completed_at),
        }

    @staticmethod
    def task_to_poll_dict(task: DeviceTask) -> dict[str, Any]:
        """Serialize a task to the minimal dict a device receives."""
        return {
            "id": task.id,
            "type": task.type,
            "payload": json.loads(task.payload) if task.payload else None,
        }
