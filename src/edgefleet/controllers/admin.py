"""Admin controller — bearer-token endpoints for fleet operators."""

from __future__ import annotations

from typing import Annotated, Any

from litestar import Controller, Request, get, post
from litestar.datastructures import State
from litestar.di import Provide
from litestar.exceptions import (
    HTTPException,
    NotAuthorizedException,
    PermissionDeniedException,
)
from litestar.params import Parameter
from litestar.types import Dependencies

from edgefleet.config import Settings
from edgefleet.controllers.params import require_str
from edgefleet.models.device import DeviceState
from edgefleet.models.task import TaskStatus
from edgefleet.resources.device import (
    DeviceAlreadyClaimedError,
    DeviceNotFoundError,
    DeviceResource,
    UnknownDeviceOrCodeError,
)
from edgefleet.resources.task import (
    InvalidTaskPayloadError,
    TaskNotFoundError,
    TaskResource,
    UnknownTaskTypeError,
)
from edgefleet.utils.token_verifier import AdminTokenVerifier


async def _provide_admin_claims(
    request: Request[object, object, State],
) -> dict[str, Any]:
    """Verify the bearer token and require the admin role.

    Raises:
        NotAuthorizedException: If the header is missing or the token invalid.
        PermissionDeniedException: If the token lacks the admin role.
    """
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        raise NotAuthorizedException(
            detail="Missing or invalid Authorization header",
        )
    verifier: AdminTokenVerifier = request.app.state.token_verifier
    settings: Settings = request.app.state.settings
    try:
        claims = await verifier.verify(header[len("Bearer "):])
    except ValueError as error:
        raise NotAuthorizedException(detail=str(error)) from error
    if not AdminTokenVerifier.has_role(claims, settings.admin_role):
        raise PermissionDeniedException(
            detail=f"Missing required role: {settings.admin_role}",
        )
    return claims


def _operator(claims: dict[str, Any]) -> str | None:
    """Best display name for the operator behind a token."""
    for key in ("preferred_username", "email", "sub"):
        value = claims.get(key)
        if isinstance(value, str) and value:
            return value
    return None


class AdminController(Controller):
    """HTTP adapter for claiming devices and queueing tasks."""

    path = "/api/admin"
    # Litestar declares dependencies as an instance var, so ClassVar
    # would fail mypy.  Suppress RUF012 (mutable class attribute).
    dependencies: Dependencies = {  # noqa: RUF012
        "admin": Provide(_provide_admin_claims),
    }

    @get("/devices")
    async def list_devices(
        self,
        admin: dict[str, Any],
        device_resource: DeviceResource,
        device_state: Annotated[str | None, Parameter(query="state")] = None,
    ) -> list[dict[str, Any]]:
        """List devices, optionally filtered by enrollment state."""
        if device_state is not None and device_state not in {s.value for s in DeviceState}:
            raise HTTPException(status_code=400, detail=f"Unknown state: {device_state}")
        return await device_resource.list_devices(device_state)

    @get("/devices/{device_id:str}")
    async def get_device(
        self,
        device_id: str,
        admin: dict[str, Any],
        device_resource: DeviceResource,
    ) -> dict[str, Any]:
        """Return one device. Pairing code and token are never included."""
        try:
            return await device_resource.get_device(device_id)
        except DeviceNotFoundError as error:
            raise HTTPException(status_code=404, detail=str(error)) from error

    @post("/devices/{device_id:str}/claim", status_code=200)
    async def claim_device(
        self,
        device_id: str,
        data: dict[str, Any],
        admin: dict[str, Any],
        device_resource: DeviceResource,
    ) -> dict[str, str]:
        """Claim a pending device after out-of-band pairing code check.

        Body: {"pairing_code": "..."}
        """
        pairing_code = require_str(data, "pairing_code")
        try:
            return await device_resource.claim(device_id, pairing_code, _operator(admin))
        except UnknownDeviceOrCodeError as error:
            raise HTTPException(status_code=404, detail=str(error)) from error
        except DeviceAlreadyClaimedError as error:
            raise HTTPException(status_code=409, detail=str(error)) from error

    @post("/devices/{device_id:str}/tasks", status_code=201)
    async def enqueue_task(
        self,
        device_id: str,
        data: dict[str, Any],
        admin: dict[str, Any],
        task_resource: TaskResource,
    ) -> dict[str, Any]:
        """Queue a task for a device.

        Body: {"type": "SET_PROXY", "payload": {...}}
        """
        task_type = require_str(data, "type")
        try:
            return await task_resource.enqueue(
                device_id, task_type, data.get("payload"), _operator(admin),
            )
        except (UnknownTaskTypeError, InvalidTaskPayloadError) as error:
            raise HTTPException(status_code=400, detail=str(error)) from error

    @get("/devices/{device_id:str}/tasks")
    async def list_tasks(
        self,
        device_id: str,
        admin: dict[str, Any],
        task_resource: TaskResource,
        status: str | None = None,
    ) -> list[dict[str, Any]]:
        """List a device's tasks, optionally filtered by status."""
        if status is not None and status not in {s.value for s in TaskStatus}:
            raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
        return await task_resource.list_tasks(device_id, status)

    @get("/tasks/{task_id:int}")
    async def get_task(
        self,
        task_id: int,
        admin: dict[str, Any],
        task_resource: TaskResource,
    ) -> dict[str, Any]:
        """Return one task."""
        try:
            return await task_resource.get_task(task_id)
        except TaskNotFoundError as error:
            raise HTTPException(status_code=404, detail=str(error)) from error
