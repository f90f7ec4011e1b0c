"""Task resource — protocol-agnostic task enqueue and dispatch."""

from __future__ import annotations

from typing import Any

from edgefleet.models.device import Device
from edgefleet.services.task_service import (
    InvalidReportStatusError,
    InvalidTaskPayloadError,
    TaskNotFoundError,
    TaskNotRunningError,
    TaskService,
    UnknownTaskTypeError,
)

__all__ = [
    "InvalidReportStatusError",
    "InvalidTaskPayloadError",
    "TaskNotFoundError",
    "TaskNotRunningError",
    "TaskResource",
    "UnknownTaskTypeError",
]


class TaskResource:
    """Admin enqueue/read paths and the device poll/report paths.

    Built once at startup with all dependencies pre-wired.
    """

    def __init__(self, *, task_service: TaskService) -> None:
        self._service = task_service

    async def enqueue(
        self,
        device_id: str,
        task_type: str,
        payload: dict[str, Any] | None,
        created_by: str | None,
    ) -> dict[str, Any]:
        """Queue a task for a device.

        Raises:
            UnknownTaskTypeError: If the type is not recognized.
            InvalidTaskPayloadError: If the payload is not an object.
        """
        return await self._service.enqueue(device_id, task_type, payload, created_by)

    async def list_tasks(
        self, device_id: str, status: str | None = None,
    ) -> list[dict[str, Any]]:
        """List tasks for a device."""
        return await self._service.list_tasks(device_id, status)

    async def get_task(self, task_id: int) -> dict[str, Any]:
        """Return one task.

        Raises:
            TaskNotFoundError: If the task does not exist.
        """
        return await self._service.get_task(task_id)

    async def poll(self, device: Device) -> list[dict[str, Any]]:
        """Deliver the next page of queued tasks to an enrolled device."""
        return await self._service.poll(device.device_id)

    async def report(
        self, device: Device, task_id: int, status: str, result: Any,
    ) -> dict[str, Any]:
        """Store a device's terminal report for one of its tasks.

        Raises:
            InvalidReportStatusError: If status is not DONE/FAILED.
            TaskNotFoundError: If the task is not this device's.
            TaskNotRunningError: If the task is not RUNNING.
        """
        task = await self._service.report(device.device_id, task_id, status, result)
        return {"id": task["id"], "status": task["status"]}
