"""Device task queue model."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from edgefleet.utils.db import Base
from edgefleet.utils.time import Time


class TaskType(str, Enum):
    """Recognized command kinds. Anything else is rejected at enqueue."""

    SET_PROXY = "SET_PROXY"
    APPLY_NETPLAN = "APPLY_NETPLAN"
    LXD_NETWORK = "LXD_NETWORK"
    MICROK8S_ADDONS = "MICROK8S_ADDONS"


class TaskStatus(str, Enum):
    """Lifecycle: QUEUED -> RUNNING -> DONE | FAILED."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    DONE = "DONE"
    FAILED = "FAILED"


TERMINAL_STATUSES = frozenset({TaskStatus.DONE.value, TaskStatus.FAILED.value})


class DeviceTask(Base):
    """Command queued for a device, delivered by polling."""

    __tablename__ = "device_tasks"
    __table_args__ = (
        Index("ix_device_tasks_device_status_created", "device_id", "status", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(String(128), index=True)
    type: Mapped[str] = mapped_column(String(64))
    payload: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=TaskStatus.QUEUED.value)
    result: Mapped[str | None] = mapped_column(Text, nullable=True)
    delivery_id: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    created_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=Time.now)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=Time.now, onupdate=Time.now,
    )
