"""Business logic for the device registry and its enrollment state machine."""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy.exc import IntegrityError

from edgefleet.clients.ca_client import SignedCertificate
from edgefleet.dao.device_dao import DeviceDAO
from edgefleet.models.device import Device, DeviceState
from edgefleet.utils.crypto import Crypto
from edgefleet.utils.time import Time

logger = logging.getLogger(__name__)


class InvalidDeviceRequestError(Exception):
    """Raised when device_id or pairing_code is malformed."""


class DeviceNotFoundError(Exception):
    """Raised when no record exists for the device id."""


class PairingCodeMismatchError(Exception):
    """Raised when the supplied pairing code does not match the stored one."""


class DeviceAlreadyClaimedError(Exception):
    """Raised when a claim targets a device that already left PENDING."""


class DeviceAlreadyEnrolledError(Exception):
    """Raised when a device has already completed enrollment."""


class InvalidDeviceCredentialsError(Exception):
    """Raised for an unknown device or a wrong pairing code on the device path."""


class DeviceService:
    """Built once at startup with its DAO pre-wired.

    Each method wraps its DAO calls in a transaction — one unit of work
    per service call. States only ever move PENDING -> CLAIMED -> ENROLLED.
    """

    def __init__(self, device_dao: DeviceDAO) -> None:
        self._dao = device_dao

    @staticmethod
    def validate_identity(device_id: str, pairing_code: str) -> None:
        """Raise InvalidDeviceRequestError for malformed identifiers."""
        if not Crypto.is_valid_device_id(device_id):
            raise InvalidDeviceRequestError(
                "device_id must be 1-128 characters of [A-Za-z0-9._-]",
            )
        if not Crypto.is_valid_pairing_code(pairing_code):
            raise InvalidDeviceRequestError(
                "pairing_code must be 4-64 printable characters",
            )

    async def hello(self, device_id: str, pairing_code: str) -> bool:
        """Register a device on first contact.

        A hello for an existing device is a no-op: the stored pairing code
        and state are never overwritten.

        Returns:
            True if a new PENDING record was created.
        """
        self.validate_identity(device_id, pairing_code)
        async with self._dao.transaction():
            if await self._dao.find_by_id(device_id) is not None:
                return False
            try:
                await self._dao.create_device(
                    device_id=device_id, pairing_code=pairing_code,
                )
                await self._dao.commit()
            except IntegrityError:
                await self._dao.rollback()
                return False
        logger.info("Device %s said hello, now PENDING", device_id)
        return True

    async def claim(
        self, device_id: str, pairing_code: str, claimed_by: str | None = None,
    ) -> str:
        """Admin claim: PENDING -> CLAIMED with a fresh enrollment token.

        Returns:
            The enrollment token.

        Raises:
            DeviceNotFoundError: If the device is unknown.
            PairingCodeMismatchError: If the pairing code is wrong.
            DeviceAlreadyClaimedError: If the device is no longer PENDING.
        """
        token = Crypto.generate_enrollment_token()
        async with self._dao.transaction():
            device = await self._dao.find_by_id(device_id)
            if device is None:
                logger.info("Claim rejected for %s: unknown device", device_id)
                raise DeviceNotFoundError("Unknown device")
            if not Crypto.secrets_match(pairing_code, device.pairing_code):
                logger.info("Claim rejected for %s: pairing code mismatch", device_id)
                raise PairingCodeMismatchError("Pairing code does not match")
            if device.state != DeviceState.PENDING.value:
                logger.info(
                    "Claim rejected for %s: device is %s", device_id, device.state,
                )
                raise DeviceAlreadyClaimedError("Device already claimed")
            won = await self._dao.mark_claimed(
                device_id, enrollment_token=token, claimed_by=claimed_by,
            )
            if not won:
                raise DeviceAlreadyClaimedError("Device already claimed")
            await self._dao.commit()
        logger.info("Device %s claimed by %s", device_id, claimed_by or "unknown")
        return token

    async def enrollment_status(
        self, device_id: str, pairing_code: str,
    ) -> dict[str, str]:
        """Device-side poll for its enrollment token.

        Returns:
            ``{"status": "authorization_pending"}`` while PENDING, or
            ``{"status": "claimed", "enrollment_token": ...}`` once claimed.

        Raises:
            InvalidDeviceCredentialsError: Unknown device or wrong code.
            DeviceAlreadyEnrolledError: If the device is already ENROLLED.
        """
        async with self._dao.transaction():
            device = await self._dao.find_by_id(device_id)
        if device is None or not Crypto.secrets_match(pairing_code, device.pairing_code):
            raise InvalidDeviceCredentialsError("Invalid device credentials")
        if device.state == DeviceState.PENDING.value:
            return {"status": "authorization_pending"}
        if device.state == DeviceState.CLAIMED.value and device.enrollment_token:
            return {"status": "claimed", "enrollment_token": device.enrollment_token}
        raise DeviceAlreadyEnrolledError("Device already enrolled")

    async def get_device(self, device_id: str) -> Device | None:
        """Look up a device record."""
        async with self._dao.transaction():
            return await self._dao.find_by_id(device_id)

    async def mark_enrolled(
        self, device_id: str, enrollment_token: str, signed: SignedCertificate,
    ) -> None:
        """CLAIMED -> ENROLLED after a successful signing.

        Raises:
            DeviceAlreadyEnrolledError: If another submission enrolled first.
        """
        async with self._dao.transaction():
            won = await self._dao.mark_enrolled(
                device_id,
                enrollment_token=enrollment_token,
                fingerprint=signed.fingerprint,
                serial=signed.serial,
                not_after=signed.not_after,
            )
            if not won:
                raise DeviceAlreadyEnrolledError("Device already enrolled")
            await self._dao.commit()
        logger.info("Device %s enrolled, certificate serial=%s", device_id, signed.serial)

    async def resolve_enrolled_device(self, device_id: str, fingerprint: str) -> Device:
        """Map a verified client certificate to its ENROLLED device.

        Raises:
            DeviceNotFoundError: If no enrolled device holds this certificate.
        """
        async with self._dao.transaction():
            device = await self._dao.find_by_id(device_id)
        if (
            device is None
            or device.state != DeviceState.ENROLLED.value
            or not Crypto.secrets_match(fingerprint, device.certificate_fingerprint)
        ):
            raise DeviceNotFoundError("No enrolled device for this certificate")
        return device

    async def record_heartbeat(self, device_id: str, payload: dict[str, Any]) -> None:
        """Overwrite the stored health snapshot and touch last_seen_at."""
        async with self._dao.transaction():
            await self._dao.update_heartbeat(device_id, json.dumps(payload))
            await self._dao.commit()

    async def list_devices(self, state: str | None = None) -> list[dict[str, Any]]:
        """Return all devices, optionally filtered by state."""
        async with self._dao.transaction():
            devices = await self._dao.list_devices(state)
        return [self.device_to_dict(d) for d in devices]

    @staticmethod
    def device_to_dict(device: Device) -> dict[str, Any]:
        """Serialize a Device for admin views. Secrets are never included."""
        return {
            "device_id": device.device_id,
            "state": device.state,
            "claimed_by": device.claimed_by,
            "claimed_at": Time.isoformat(device.claimed_at),
            "enrolled_at": Time.isoformat(device.enrolled_at),
            "certificate_serial": device.certificate_serial,
            "certificate_not_after": Time.isoformat(device.certificate_not_after),
            "last_seen_at": Time.isoformat(device.last_seen_at),
            "last_health": json.loads(device.last_health) if device.last_health else None,
            "created_at": Time.isoformat(device.created_at),
            "updated_at": Time.isoformat(device.updated_at),
        }
