"""Fleet server client — bootstrap calls and certificate-authenticated calls."""

from __future__ import annotations

import ssl
from pathlib import Path
from typing import Any

import httpx


class FleetClientError(Exception):
    """Raised when the fleet server answers with an error status."""

    def __init__(self, status_code: int, detail: str) -> None:
        super().__init__(f"HTTP {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class FleetClient:
    """Talks to the fleet server. Built once per agent process.

    Bootstrap calls authenticate the server only; once certificates exist,
    ``use_client_certificate()`` switches device calls to mutual TLS.
    """

    def __init__(
        self,
        *,
        server_url: str,
        server_ca_bundle: str = "",
        timeout: float = 15.0,
    ) -> None:
        self._server_url = server_url.rstrip("/")
        self._server_ca_bundle = server_ca_bundle
        self._timeout = timeout
        self._bootstrap = httpx.AsyncClient(
            base_url=self._server_url,
            verify=self._ssl_context(),
            timeout=timeout,
        )
        self._device: httpx.AsyncClient | None = None

    def _ssl_context(self) -> ssl.SSLContext:
        """Server-verifying TLS context, pinned to a CA bundle when configured."""
        return ssl.create_default_context(cafile=self._server_ca_bundle or None)

    def use_client_certificate(self, cert_path: Path, key_path: Path) -> None:
        """Enable mutual TLS for device calls with the issued certificate."""
        context = self._ssl_context()
        context.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path))
        self._device = httpx.AsyncClient(
            base_url=self._server_url, verify=context, timeout=self._timeout,
        )

    @staticmethod
    def _check(response: httpx.Response) -> Any:
        """Return the JSON body or raise FleetClientError.

        Error statuses and bodies that are not JSON (a captive portal or a
        misrouted proxy answering 200) both raise, so callers retry them.
        """
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = None
            detail = (
                str(body.get("detail", response.text))
                if isinstance(body, dict) else response.text
            )
            raise FleetClientError(response.status_code, detail)
        try:
            return response.json()
        except ValueError as error:
            raise FleetClientError(
                response.status_code, "Response body is not JSON",
            ) from error

    def _device_client(self) -> httpx.AsyncClient:
        """The mutual-TLS client; only usable after enrollment."""
        if self._device is None:
            raise RuntimeError("call use_client_certificate() before device calls")
        return self._device

    # --- bootstrap ---

    async def hello(self, device_id: str, pairing_code: str) -> dict[str, Any]:
        """Announce the device. Idempotent."""
        response = await self._bootstrap.post(
            "/api/enroll/hello",
            json={"device_id": device_id, "pairing_code": pairing_code},
        )
        result: dict[str, Any] = self._check(response)
        return result

    async def fetch_enrollment_token(
        self, device_id: str, pairing_code: str,
    ) -> str | None:
        """Return the enrollment token, or None while the claim is pending."""
        response = await self._bootstrap.post(
            "/api/enroll/token",
            json={"device_id": device_id, "pairing_code": pairing_code},
        )
        body: dict[str, Any] = self._check(response)
        token = body.get("enrollment_token")
        return str(token) if token else None

    async def submit_csr(
        self, device_id: str, enrollment_token: str, csr_pem: str,
    ) -> dict[str, Any]:
        """Exchange the token and CSR for the device and CA certificates."""
        response = await self._bootstrap.post(
            "/api/enroll/csr",
            json={
                "device_id": device_id,
                "enrollment_token": enrollment_token,
                "csr": csr_pem,
            },
        )
        result: dict[str, Any] = self._check(response)
        return result

    # --- steady state (mutual TLS) ---

    async def heartbeat(self, payload: dict[str, object]) -> None:
        """Send a heartbeat with the inventory snapshot."""
        response = await self._device_client().post("/api/device/heartbeat", json=payload)
        self._check(response)

    async def poll_tasks(self) -> list[dict[str, Any]]:
        """Fetch the next page of tasks; the server marks them RUNNING."""
        response = await self._device_client().get("/api/device/tasks")
        tasks: list[dict[str, Any]] = self._check(response)
        return tasks

    async def report_task(self, task_id: int, status: str, result: Any) -> None:
        """Report a task's terminal status and result."""
        response = await self._device_client().post(
            f"/api/device/tasks/{task_id}/report",
            json={"status": status, "result": result},
        )
        self._check(response)

    async def close(self) -> None:
        """Close both HTTP clients."""
        await self._bootstrap.aclose()
        if self._device is not None:
            await self._device.aclose()
