"""Device API controller — mutual-TLS endpoints for enrolled devices."""

from __future__ import annotations

from typing import Any

from litestar import Controller, Request, get, post
from litestar.datastructures import State
from litestar.di import Provide
from litestar.exceptions import HTTPException, NotAuthorizedException
from litestar.types import Dependencies

from edgefleet.config import Settings
from edgefleet.models.device import Device
from edgefleet.resources.device import (
    DeviceResource,
    InvalidClientCertificateError,
    SigningError,
)
from edgefleet.resources.task import (
    InvalidReportStatusError,
    TaskNotFoundError,
    TaskNotRunningError,
    TaskResource,
)


def _presented_certificate(request: Request[object, object, State]) -> str | None:
    """Return the client certificate PEM from the TLS layer or a trusted proxy."""
    extensions = request.scope.get("extensions") or {}
    tls = extensions.get("tls") or {}
    chain = tls.get("client_cert_chain") or []
    if chain:
        return str(chain[0])
    settings: Settings = request.app.state.settings
    if settings.trust_client_cert_header:
        header = request.headers.get(settings.client_cert_header, "")
        return header or None
    return None


async def _provide_device_from_certificate(
    request: Request[object, object, State],
    device_resource: DeviceResource,
) -> Device:
    """Resolve the verified client certificate to an enrolled Device.

    Raises:
        NotAuthorizedException: If no certificate was presented, or it is
            not the certificate issued to an enrolled device.
        HTTPException: 503 if the CA root cannot be loaded to verify it.
    """
    certificate = _presented_certificate(request)
    if certificate is None:
        raise NotAuthorizedException(detail="Client certificate required")
    try:
        return await device_resource.authenticate_certificate(certificate)
    except InvalidClientCertificateError as error:
        raise NotAuthorizedException(detail=str(error)) from error
    except SigningError as error:
        raise HTTPException(
            status_code=503, detail="Certificate authority unavailable",
        ) from error


class DeviceApiController(Controller):
    """Certificate-authenticated endpoints called by enrolled devices."""

    path = "/api/device"
    # Litestar declares dependencies as an instance var, so ClassVar
    # would fail mypy.  Suppress RUF012 (mutable class attribute).
    dependencies: Dependencies = {  # noqa: RUF012
        "device": Provide(_provide_device_from_certificate),
    }

    @post("/heartbeat", status_code=200)
    async def heartbeat(
        self,
        data: dict[str, object],
        device: Device,
        device_resource: DeviceResource,
    ) -> dict[str, str]:
        """Device sends a heartbeat with its inventory snapshot."""
        return await device_resource.record_heartbeat(device, data)

    @get("/tasks", status_code=200)
    async def poll_tasks(
        self,
        device: Device,
        task_resource: TaskResource,
    ) -> list[dict[str, Any]]:
        """Device polls for queued tasks."""
        return await task_resource.poll(device)

    @post("/tasks/{task_id:int}/report", status_code=200)
    async def report_task(
        self,
        task_id: int,
        data: dict[str, Any],
        device: Device,
        task_resource: TaskResource,
    ) -> dict[str, Any]:
        """Device reports the terminal outcome of a task.

        Body: {"status": "DONE" | "FAILED", "result": {...}}
        """
        status = data.get("status")
        if not isinstance(status, str):
            raise HTTPException(status_code=400, detail="status is required")
        try:
            return await task_resource.report(
                device, task_id, status, data.get("result"),
            )
        except InvalidReportStatusError as error:
            raise HTTPException(status_code=400, detail=str(error)) from error
        except TaskNotFoundError as error:
            raise HTTPException(status_code=404, detail=str(error)) from error
        except TaskNotRunningError as error:
            raise HTTPException(status_code=409, detail=str(error)) from error
