"""Business logic for CSR submission: claimed device -> signed certificate."""

from __future__ import annotations

import logging

from edgefleet.clients.ca_client import CertificateAuthorityClient
from edgefleet.models.device import DeviceState
from edgefleet.services.device_service import (
    DeviceAlreadyEnrolledError,
    DeviceService,
)
from edgefleet.utils.crypto import Crypto
from edgefleet.utils.time import Time

logger = logging.getLogger(__name__)


class InvalidEnrollmentCredentialsError(Exception):
    """Raised for an unknown device, a wrong token, or a device not yet claimed."""


class EnrollmentService:
    """Couples the device registry with the certificate authority."""

    def __init__(
        self, device_service: DeviceService, ca_client: CertificateAuthorityClient,
    ) -> None:
        self._devices = device_service
        self._ca = ca_client

    async def submit_csr(
        self, device_id: str, enrollment_token: str, csr_pem: str,
    ) -> dict[str, str | None]:
        """Sign the device's CSR and move it to ENROLLED.

        The registry is only written after signing succeeds, so a CA failure
        leaves the device CLAIMED and the device may retry.

        Returns:
            Dict with device_certificate, ca_certificate and not_after.

        Raises:
            InvalidEnrollmentCredentialsError: Unknown device, wrong token,
                or device still PENDING.
            DeviceAlreadyEnrolledError: Token matches but the device is
                already ENROLLED.
            InvalidCSRError: If the CSR fails validation.
            SigningError: If the CA fails or times out.
        """
        device = await self._devices.get_device(device_id)
        if device is None or not Crypto.secrets_match(
            enrollment_token, device.enrollment_token,
        ):
            logger.info("CSR rejected for %s: bad credentials", device_id)
            raise InvalidEnrollmentCredentialsError("Invalid enrollment credentials")
        if device.state == DeviceState.ENROLLED.value:
            logger.info("CSR rejected for %s: already enrolled", device_id)
            raise DeviceAlreadyEnrolledError("Device already enrolled")
        if device.state != DeviceState.CLAIMED.value:
            raise InvalidEnrollmentCredentialsError("Invalid enrollment credentials")

        signed = await self._ca.sign(csr_pem, device_id)
        await self._devices.mark_enrolled(device_id, enrollment_token, signed)
        return {
            "device_id": device_id,
            "device_certificate": signed.certificate_pem,
            "ca_certificate": signed.ca_certificate_pem,
            "not_after": Time.isoformat(signed.not_after),
        }
