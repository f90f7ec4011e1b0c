"""Data access for the Device model."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, cast

from sqlalchemy import CursorResult, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from edgefleet.models.device import Device, DeviceState
from edgefleet.utils.time import Time

_active_conn: ContextVar[AsyncSession] = ContextVar("_device_dao_conn")


class DeviceDAO:
    """Data access built once at startup with the connection pool.

    Use transaction() to wrap a group of operations in one unit of work.
    State transitions are compare-and-set updates guarded on the current
    state, so a concurrent writer can never move a record backward.
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

    async def create_device(self, *, device_id: str, pairing_code: str) -> Device:
        """Insert a new PENDING device and flush."""
        device = Device(
            device_id=device_id,
            pairing_code=pairing_code,
            state=DeviceState.PENDING.value,
        )
        self._conn().add(device)
        await self._conn().flush()
        return device

    async def find_by_id(self, device_id: str) -> Device | None:
        """Find a device by its id."""
        result = await self._conn().execute(
            select(Device).where(Device.device_id == device_id)
        )
        return result.scalar_one_or_none()

    async def list_devices(self, state: str | None = None) -> list[Device]:
        """Return devices, optionally filtered by state, oldest first."""
        stmt = select(Device)
        if state is not None:
            stmt = stmt.where(Device.state == state)
        result = await self._conn().execute(stmt.order_by(Device.created_at))
        return list(result.scalars().all())

    async def mark_claimed(
        self, device_id: str, *, enrollment_token: str, claimed_by: str | None,
    ) -> bool:
        """PENDING -> CLAIMED. Returns False if the device left PENDING first."""
        now = Time.now()
        result = await self._conn().execute(
            update(Device)
            .where(
                Device.device_id == device_id,
                Device.state == DeviceState.PENDING.value,
            )
            .values(
                state=DeviceState.CLAIMED.value,
                enrollment_token=enrollment_token,
                claimed_by=claimed_by,
                claimed_at=now,
                updated_at=now,
            )
        )
        return cast(CursorResult[Any], result).rowcount == 1

    async def mark_enrolled(
        self,
        device_id: str,
        *,
        enrollment_token: str,
        fingerprint: str,
        serial: str,
        not_after: datetime,
    ) -> bool:
        """CLAIMED -> ENROLLED for the matching token. False if the CAS lost."""
        now = Time.now()
        result = await self._conn().execute(
            update(Device)
            .where(
                Device.device_id == device_id,
                Device.state == DeviceState.CLAIMED.value,
                Device.enrollment_token == enrollment_token,
            )
            .values(
                state=DeviceState.ENROLLED.value,
                certificate_fingerprint=fingerprint,
                certificate_serial=serial,
                certificate_not_after=not_after,
                enrolled_at=now,
                updated_at=now,
            )
        )
        return cast(CursorResult[Any], result).rowcount == 1

    async def update_heartbeat(self, device_id: str, health_json: str) -> None:
        """Touch last_seen_at and overwrite last_health."""
        await self._conn().execute(
            update(Device)
            .where(Device.device_id == device_id)
            .values(last_seen_at=Time.now(), last_health=health_json)
        )

    async def commit(self) -> None:
        """Commit the current transaction."""
        await self._conn().commit()

    async def rollback(self) -> None:
        """Roll back the current transaction."""
        await self._conn().rollback()
