"""Device resource — protocol-agnostic bootstrap and registry operations."""

from __future__ import annotations

from typing import Any

from edgefleet.clients.ca_client import (
    CertificateAuthorityClient,
    InvalidClientCertificateError,
    InvalidCSRError,
    SigningError,
)
from edgefleet.models.device import Device
from edgefleet.services.device_service import (
    DeviceAlreadyClaimedError,
    DeviceAlreadyEnrolledError,
    DeviceNotFoundError,
    DeviceService,
    InvalidDeviceCredentialsError,
    InvalidDeviceRequestError,
    PairingCodeMismatchError,
)
from edgefleet.services.enrollment_service import (
    EnrollmentService,
    InvalidEnrollmentCredentialsError,
)

__all__ = [
    "DeviceAlreadyClaimedError",
    "DeviceAlreadyEnrolledError",
    "DeviceNotFoundError",
    "DeviceResource",
    "InvalidCSRError",
    "InvalidClientCertificateError",
    "InvalidDeviceCredentialsError",
    "InvalidDeviceRequestError",
    "InvalidEnrollmentCredentialsError",
    "SigningError",
    "UnknownDeviceOrCodeError",
]


class UnknownDeviceOrCodeError(Exception):
    """Raised to admins for an unknown device or a wrong pairing code alike."""


class DeviceResource:
    """Device bootstrap, client-certificate identity and registry views.

    Built once at startup with all dependencies pre-wired.
    """

    def __init__(
        self,
        *,
        device_service: DeviceService,
        enrollment_service: EnrollmentService,
        ca_client: CertificateAuthorityClient,
    ) -> None:
        self._service = device_service
        self._enrollment = enrollment_service
        self._ca = ca_client

    # --- bootstrap (server-authenticated channel) ---

    async def hello(self, device_id: str, pairing_code: str) -> dict[str, str]:
        """First contact. Idempotent; never reveals whether the device existed.

        Raises:
            InvalidDeviceRequestError: If the identifiers are malformed.
        """
        await self._service.hello(device_id, pairing_code)
        return {"status": "ok"}

    async def enrollment_status(
        self, device_id: str, pairing_code: str,
    ) -> dict[str, str]:
        """Device polls for its enrollment token.

        Raises:
            InvalidDeviceCredentialsError: Unknown device or wrong code.
            DeviceAlreadyEnrolledError: If the device is already enrolled.
        """
        return await self._service.enrollment_status(device_id, pairing_code)

    async def submit_csr(
        self, device_id: str, enrollment_token: str, csr_pem: str,
    ) -> dict[str, str | None]:
        """Exchange an enrollment token and CSR for a client certificate.

        Raises:
            InvalidEnrollmentCredentialsError: Bad device or token.
            DeviceAlreadyEnrolledError: If already enrolled.
            InvalidCSRError: If the CSR is malformed.
            SigningError: If the CA fails.
        """
        return await self._enrollment.submit_csr(device_id, enrollment_token, csr_pem)

    # --- mutual-TLS identity ---

    async def authenticate_certificate(self, certificate_pem: str) -> Device:
        """Resolve a presented client certificate to its enrolled device.

        Raises:
            InvalidClientCertificateError: If the certificate is not ours,
                expired, or not the one issued to an enrolled device.
        """
        device_id, fingerprint = self._ca.verify_client_certificate(certificate_pem)
        try:
            return await self._service.resolve_enrolled_device(device_id, fingerprint)
        except DeviceNotFoundError as error:
            raise InvalidClientCertificateError(str(error)) from error

    async def record_heartbeat(
        self, device: Device, payload: dict[str, object],
    ) -> dict[str, str]:
        """Store the heartbeat snapshot and touch last_seen_at."""
        await self._service.record_heartbeat(device.device_id, payload)
        return {"status": "ok"}

    # --- admin ---

    async def claim(
        self, device_id: str, pairing_code: str, claimed_by: str | None,
    ) -> dict[str, str]:
        """Admin claims a pending device after checking its pairing code.

        Raises:
            UnknownDeviceOrCodeError: Unknown device or wrong pairing code.
            DeviceAlreadyClaimedError: If the device already left PENDING.
        """
        try:
            token = await self._service.claim(device_id, pairing_code, claimed_by)
        except (DeviceNotFoundError, PairingCodeMismatchError) as error:
            raise UnknownDeviceOrCodeError("Unknown device or pairing code") from error
        return {
            "device_id": device_id,
            "state": "CLAIMED",
            "enrollment_token": token,
        }

    async def list_devices(self, state: str | None = None) -> list[dict[str, Any]]:
        """Return all devices, optionally filtered by state."""
        return await self._service.list_devices(state)

    async def get_device(self, device_id: str) -> dict[str, Any]:
        """Return one device for admin views.

        Raises:
            DeviceNotFoundError: If the device is unknown.
        """
        device = await self._service.get_device(device_id)
        if device is None:
            raise DeviceNotFoundError("Device not found")
        return DeviceService.device_to_dict(device)
