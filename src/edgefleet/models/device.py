"""Device identity record and enrollment state."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from edgefleet.utils.db import Base
from edgefleet.utils.time import Time


class DeviceState(str, Enum):
    """Enrollment states. Transitions only move forward."""

    PENDING = "PENDING"
    CLAIMED = "CLAIMED"
    ENROLLED = "ENROLLED"


class Device(Base):
    """Edge device known to the fleet. One row per device_id, never reset."""

    __tablename__ = "devices"

    device_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    pairing_code: Mapped[str] = mapped_column(String(64))
    state: Mapped[str] = mapped_column(
        String(16), default=DeviceState.PENDING.value, index=True,
    )
    enrollment_token: Mapped[str | None] = mapped_column(String(128), nullable=True)
    claimed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    enrolled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    certificate_fingerprint: Mapped[str | None] = mapped_column(String(64), nullable=True)
    certificate_serial: Mapped[str | None] = mapped_column(String(64), nullable=True)
    certificate_not_after: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_health: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=Time.now)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=Time.now, onupdate=Time.now,
    )
