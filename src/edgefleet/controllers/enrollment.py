"""Enrollment controller — bootstrap endpoints for devices without a certificate.

These routes only need server-authenticated TLS. Wire responses never tell
an unauthenticated caller whether a device id exists.
"""

from __future__ import annotations

from typing import Any

from litestar import Controller, post
from litestar.exceptions import HTTPException, PermissionDeniedException

from edgefleet.controllers.params import require_str
from edgefleet.resources.device import (
    DeviceAlreadyEnrolledError,
    DeviceResource,
    InvalidCSRError,
    InvalidDeviceCredentialsError,
    InvalidDeviceRequestError,
    InvalidEnrollmentCredentialsError,
    SigningError,
)


class EnrollmentController(Controller):
    """HTTP adapter for hello, token fetch and CSR submission."""

    path = "/api/enroll"

    @post("/hello", status_code=200)
    async def hello(
        self,
        data: dict[str, Any],
        device_resource: DeviceResource,
    ) -> dict[str, str]:
        """Device announces itself.

        Body: {"device_id": "...", "pairing_code": "..."}
        """
        device_id = require_str(data, "device_id")
        pairing_code = require_str(data, "pairing_code")
        try:
            return await device_resource.hello(device_id, pairing_code)
        except InvalidDeviceRequestError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error

    @post("/token", status_code=200)
    async def enrollment_token(
        self,
        data: dict[str, Any],
        device_resource: DeviceResource,
    ) -> dict[str, str]:
        """Device polls until an admin has claimed it.

        Body: {"device_id": "...", "pairing_code": "..."}
        """
        device_id = require_str(data, "device_id")
        pairing_code = require_str(data, "pairing_code")
        try:
            return await device_resource.enrollment_status(device_id, pairing_code)
        except InvalidDeviceCredentialsError as error:
            raise PermissionDeniedException(detail=str(error)) from error
        except DeviceAlreadyEnrolledError as error:
            raise HTTPException(status_code=409, detail=str(error)) from error

    @post("/csr", status_code=201)
    async def submit_csr(
        self,
        data: dict[str, Any],
        device_resource: DeviceResource,
    ) -> dict[str, str | None]:
        """Device exchanges its enrollment token and CSR for a certificate.

        Body: {"device_id": "...", "enrollment_token": "...", "csr": "-----BEGIN ..."}
        """
        device_id = require_str(data, "device_id")
        enrollment_token = require_str(data, "enrollment_token")
        csr = require_str(data, "csr")
        try:
            return await device_resource.submit_csr(device_id, enrollment_token, csr)
        except InvalidEnrollmentCredentialsError as error:
            raise PermissionDeniedException(detail=str(error)) from error
        except DeviceAlreadyEnrolledError as error:
            raise HTTPException(status_code=409, detail=str(error)) from error
        except InvalidCSRError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        except SigningError as error:
            raise HTTPException(status_code=502, detail=str(error)) from error
