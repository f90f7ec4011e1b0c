"""Data access for the DeviceTask model."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, cast

from sqlalchemy import CursorResult, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from edgefleet.models.task import DeviceTask, TaskStatus
from edgefleet.utils.time import Time

_active_conn: ContextVar[AsyncSession] = ContextVar("_task_dao_conn")


class TaskDAO:
    """Data access for device tasks.

    Use transaction() to wrap a group of operations in one unit of work.
    """

    def __init__(self, pool: async_sessionmaker[AsyncSession]) -> None:
        self._pool = pool

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        """Open a unit of work. All DAO calls inside share one connection."""
        async with self._pool() as connection:
            context_token = _active_conn.set(connection)
            try:
                yield
            finally:
                _active_conn.reset(context_token)

    def _conn(self) -> AsyncSession:
        """Return the current unit-of-work connection."""
        return _active_conn.get()

    async def create_task(
        self,
        *,
        device_id: str,
        task_type: str,
        payload: str | None,
        created_by: str | None = None,
    ) -> DeviceTask:
        """Insert a QUEUED task and flush to assign its id."""
        task = DeviceTask(
            device_id=device_id,
            type=task_type,
            payload=payload,
            status=TaskStatus.QUEUED.value,
            created_by=created_by,
        )
        self._conn().add(task)
        await self._conn().flush()
        return task

    async def list_queued_ids(self, device_id: str, limit: int) -> list[int]:
        """Ids of the oldest QUEUED tasks for a device, at most ``limit``."""
        result = await self._conn().execute(
            select(DeviceTask.id)
            .where(
                DeviceTask.device_id == device_id,
                DeviceTask.status == TaskStatus.QUEUED.value,
            )
            .order_by(DeviceTask.created_at, DeviceTask.id)
            .limit(limit)
            .with_for_update(skip_locked=True),
        )
        return list(result.scalars().all())

    async def mark_running(self, task_ids: list[int], delivery_id: str) -> int:
        """QUEUED -> RUNNING, tagged with the delivering poll. Returns rows won."""
        now = Time.now()
        result = await self._conn().execute(
            update(DeviceTask)
            .where(
                DeviceTask.id.in_(task_ids),
                DeviceTask.status == TaskStatus.QUEUED.value,
            )
            .values(
                status=TaskStatus.RUNNING.value,
                delivery_id=delivery_id,
                delivered_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False),
        )
        return cast(CursorResult[Any], result).rowcount

    async def list_delivered(self, delivery_id: str) -> list[DeviceTask]:
        """Tasks moved to RUNNING by one poll, oldest first."""
        result = await self._conn().execute(
            select(DeviceTask)
            .where(DeviceTask.delivery_id == delivery_id)
            .order_by(DeviceTask.created_at, DeviceTask.id),
        )
        return list(result.scalars().all())

    async def fail_stale_running(
        self, device_id: str, cutoff: datetime, result_json: str,
    ) -> int:
        """RUNNING tasks delivered before ``cutoff`` -> FAILED. Returns count."""
        now = Time.now()
        result = await self._conn().execute(
            update(DeviceTask)
            .where(
                DeviceTask.device_id == device_id,
                DeviceTask.status == TaskStatus.RUNNING.value,
                DeviceTask.delivered_at < cutoff,
            )
            .values(
                status=TaskStatus.FAILED.value,
                result=result_json,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False),
        )
        return cast(CursorResult[Any], result).rowcount

    async def mark_terminal(
        self, task: DeviceTask, status: str, result_json: str,
    ) -> bool:
        """RUNNING -> DONE/FAILED. Returns False if the task was not RUNNING."""
        now = Time.now()
        result = await self._conn().execute(
            update(DeviceTask)
            .where(
                DeviceTask.id == task.id,
                DeviceTask.status == TaskStatus.RUNNING.value,
            )
            .values(
                status=status,
                result=result_json,
                completed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False),
        )
        if cast(CursorResult[Any], result).rowcount != 1:
            return False
        await self._conn().refresh(task)
        return True

    async def find_by_id(self, task_id: int) -> DeviceTask | None:
        """Find a task by its id."""
        result = await self._conn().execute(
            select(DeviceTask).where(DeviceTask.id == task_id),
        )
        return result.scalar_one_or_none()

    async def list_by_device(
        self,
        device_id: str,
        status: str | None = None,
    ) -> list[DeviceTask]:
        """List tasks for a device, optionally filtered by status."""
        stmt = select(DeviceTask).where(DeviceTask.device_id == device_id)
        if status is not None:
            stmt = stmt.where(DeviceTask.status == status)
        stmt = stmt.order_by(DeviceTask.created_at, DeviceTask.id)
        result = await self._conn().execute(stmt)
        return list(result.scalars().all())

    async def commit(self) -> None:
        """Commit the current transaction."""
        await self._conn().commit()
